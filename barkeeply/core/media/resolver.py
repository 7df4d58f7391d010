"""
Signed URL resolution with an in-memory cache.

Every drink card, avatar and collection cover renders an image stored in
a private bucket. Asking the storage backend for a fresh signed URL on
every render would mean dozens of round-trips per screen, so resolved
URLs are cached per reference until shortly before they expire.

The resolver never raises for expected failures. A reference that can't
be resolved comes back as None and the caller shows a placeholder.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

from .references import is_external_url, parse_storage_reference

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_SAFETY_MARGIN_SECONDS = 300


# ---------------------------------------------------------------------------
# Protocols (interfaces)
# ---------------------------------------------------------------------------

class SignedUrlProvider(Protocol):
    """
    Anything that can mint time-limited URLs for stored objects.

    The storage client implements this; tests pass a fake that counts
    calls.
    """

    async def create_signed_url(
        self,
        bucket: str,
        path: str,
        expiry_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> str:
        """Return a signed URL, raising on failure."""
        ...


class PublicUrlProvider(Protocol):
    """Builds unsigned URLs for buckets that allow anonymous reads."""

    def get_public_url(self, bucket: str, path: str) -> str:
        ...


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CachedUrlEntry:
    """
    A resolved URL and the moment the cache stops trusting it.

    expires_at is earlier than the signature's real expiry
    so a URL handed out just before eviction still works while the image
    loads.
    """
    source_reference: str
    resolved_url: str
    expires_at: float

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


class SignedUrlResolver:
    """
    Translate storage references into usable URLs.

    One instance is shared by everything that renders images in a
    process, and cleared on sign-out so authorized URLs don't leak across
    accounts.
    """

    def __init__(
        self,
        provider: SignedUrlProvider,
        storage_host: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        safety_margin_seconds: int = DEFAULT_SAFETY_MARGIN_SECONDS,
        public_buckets: Iterable[str] = (),
        public_url_provider: Optional[PublicUrlProvider] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if not 0 <= safety_margin_seconds < ttl_seconds:
            raise ValueError("safety_margin_seconds must be smaller than ttl_seconds")
        public_buckets = frozenset(public_buckets)
        if public_buckets and public_url_provider is None:
            raise ValueError("public_url_provider is required when public_buckets are set")

        self._provider = provider
        self._public_url_provider = public_url_provider
        self._storage_host = storage_host
        self._ttl_seconds = ttl_seconds
        self._safety_margin_seconds = safety_margin_seconds
        self._public_buckets = public_buckets
        self._clock = clock
        self._cache: dict[str, CachedUrlEntry] = {}

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def cached_entry(self, reference: str) -> Optional[CachedUrlEntry]:
        """Return the live cache entry for a reference, if any."""
        entry = self._cache.get(reference)
        if entry and entry.is_live(self._clock()):
            return entry
        return None

    async def resolve(self, reference: Optional[str]) -> Optional[str]:
        """
        Return a usable URL for a reference, or None.

        Resolution order:
        1. Empty reference -> None
        2. URL on another host -> unchanged
        3. Unrecognised shape -> unchanged (fail open so images still render)
        4. Live cache entry -> cached URL, no network call
        5. Public bucket -> unsigned URL, no network call
        6. Otherwise ask the backend for a signed URL
        """
        if not reference:
            return None

        if is_external_url(reference, self._storage_host):
            return reference

        location = parse_storage_reference(reference)
        if location is None:
            logger.debug(
                "Unrecognised storage reference, passing through",
                extra={"reference": reference}
            )
            return reference

        entry = self.cached_entry(reference)
        if entry:
            logger.debug("Signed URL cache hit", extra={"reference": reference})
            return entry.resolved_url

        if location.bucket in self._public_buckets:
            url = self._public_url_provider.get_public_url(location.bucket, location.path)
            self._store(reference, url)
            return url

        try:
            url = await self._provider.create_signed_url(
                location.bucket,
                location.path,
                expiry_seconds=self._ttl_seconds,
            )
        except Exception as e:
            logger.error(
                "Failed to resolve signed URL",
                extra={
                    "bucket": location.bucket,
                    "path": location.path,
                    "error": str(e),
                }
            )
            return None

        if not url:
            logger.error(
                "Storage backend returned an empty signed URL",
                extra={"bucket": location.bucket, "path": location.path}
            )
            return None

        self._store(reference, url)
        return url

    async def resolve_many(self, references: Iterable[Optional[str]]) -> dict[str, str]:
        """
        Resolve several references concurrently.

        Failed references are left out of the result. Nothing is retried.
        """
        unique = list(dict.fromkeys(ref for ref in references if ref))
        if not unique:
            return {}

        results = await asyncio.gather(*(self.resolve(ref) for ref in unique))

        return {
            ref: url
            for ref, url in zip(unique, results)
            if url
        }

    def invalidate(self, reference: str) -> None:
        """Forget one reference, e.g. after its image was replaced."""
        self._cache.pop(reference, None)

    def clear_owner(self, owner_id: str) -> int:
        """
        Drop cached URLs for objects stored under one user's folder.

        Uploads live at {user_id}/..., so this clears what a signed-out
        user could see without touching other users' entries. Returns the
        number of entries dropped.
        """
        prefix = f"{owner_id}/"
        stale = []
        for reference in self._cache:
            location = parse_storage_reference(reference)
            if location is not None and location.path.startswith(prefix):
                stale.append(reference)

        for reference in stale:
            del self._cache[reference]
        logger.info(
            "Cleared signed URL cache for user",
            extra={"user_id": owner_id, "entries": len(stale)}
        )
        return len(stale)

    def clear_cache(self) -> None:
        """Drop every cached URL. Called on sign-out."""
        count = len(self._cache)
        self._cache.clear()
        logger.info("Cleared signed URL cache", extra={"entries": count})

    def _store(self, reference: str, url: str) -> None:
        lifetime = self._ttl_seconds - self._safety_margin_seconds
        self._cache[reference] = CachedUrlEntry(
            source_reference=reference,
            resolved_url=url,
            expires_at=self._clock() + lifetime,
        )

