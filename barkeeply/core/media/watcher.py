"""
Reactive URL state for a changing reference.

Views bind to a watcher instead of calling the resolver directly. When
the reference changes while a previous resolution is still in flight,
the older result must not overwrite the newer state. A generation
counter decides which completion is current; the network call itself is
not cancelled.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .resolver import SignedUrlResolver

logger = logging.getLogger(__name__)


class UrlStatus(Enum):
    LOADING = "loading"
    READY = "ready"
    ABSENT = "absent"  # No reference, or it couldn't be resolved


@dataclass(frozen=True)
class UrlState:
    status: UrlStatus
    reference: Optional[str] = None
    url: Optional[str] = None


class SignedUrlWatcher:
    """Three-state view of a single image reference."""

    def __init__(
        self,
        resolver: SignedUrlResolver,
        on_change: Optional[Callable[[UrlState], None]] = None,
    ) -> None:
        self._resolver = resolver
        self._on_change = on_change
        self._generation = 0
        self._state = UrlState(status=UrlStatus.ABSENT)

    @property
    def state(self) -> UrlState:
        return self._state

    async def set_reference(self, reference: Optional[str]) -> UrlState:
        """
        Point the watcher at a new reference and resolve it.

        Returns the watcher's state after this call finishes, which is the
        state of a newer reference if one was set in the meantime.
        """
        self._generation += 1
        generation = self._generation

        if not reference:
            self._apply(UrlState(status=UrlStatus.ABSENT))
            return self._state

        entry = self._resolver.cached_entry(reference)
        if entry:
            self._apply(UrlState(UrlStatus.READY, reference, entry.resolved_url))
            return self._state

        self._apply(UrlState(status=UrlStatus.LOADING, reference=reference))

        url = await self._resolver.resolve(reference)

        if generation != self._generation:
            logger.debug(
                "Discarding superseded URL resolution",
                extra={"reference": reference}
            )
            return self._state

        if url:
            self._apply(UrlState(UrlStatus.READY, reference, url))
        else:
            self._apply(UrlState(UrlStatus.ABSENT, reference))

        return self._state

    def reset(self) -> None:
        """Detach from the current reference; late completions are ignored."""
        self._generation += 1
        self._apply(UrlState(status=UrlStatus.ABSENT))

    def _apply(self, state: UrlState) -> None:
        self._state = state
        if self._on_change:
            self._on_change(state)
