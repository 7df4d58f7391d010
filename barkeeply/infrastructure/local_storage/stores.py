"""
Local key-value stores.

Two flavours, matching the two lifetimes the analytics queue needs:
- FileKeyValueStore: durable, survives restarts (the queue mirror)
- MemoryKeyValueStore: session-scoped, gone when the process ends
  (the session id)

Both raise the error types declared next to the KeyValueStore protocol
in barkeeply.core.analytics.
"""

import errno
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from ...core.analytics.queue import LocalStorageError, StorageQuotaExceededError

logger = logging.getLogger(__name__)

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class MemoryKeyValueStore:
    """In-process store; its lifetime is the session."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()


class FileKeyValueStore:
    """
    Durable store backed by a single JSON file.

    Writes go to a temporary file that replaces the original, so a crash
    mid-write leaves the previous contents intact. max_bytes emulates a
    storage quota; writes that would exceed it raise
    StorageQuotaExceededError, as does a full disk.
    """

    def __init__(self, path: str | Path, max_bytes: Optional[int] = None) -> None:
        self._path = Path(path)
        self._max_bytes = max_bytes

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def _read(self) -> dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise LocalStorageError(f"Read failed: {e}")

        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning(
                "Local store is corrupt, starting empty",
                extra={"path": str(self._path)}
            )
            return {}

        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, str]) -> None:
        payload = json.dumps(data).encode("utf-8")

        if self._max_bytes is not None and len(payload) > self._max_bytes:
            raise StorageQuotaExceededError(
                f"{len(payload)} bytes exceeds quota of {self._max_bytes}"
            )

        tmp_name = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".kv-")
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(payload)
            os.replace(tmp_name, self._path)
            tmp_name = None

        except OSError as e:
            if e.errno in _QUOTA_ERRNOS:
                raise StorageQuotaExceededError(f"Write failed: {e}")
            raise LocalStorageError(f"Write failed: {e}")

        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError as e:
                    logger.debug("Could not remove temp file", extra={"error": str(e)})
