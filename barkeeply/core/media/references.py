"""
Storage reference parsing.

Drink photos and avatars are stored as opaque references. A reference is
one of:
- a bare "bucket/path" string, which is what uploads return
- a full storage-service URL (public or previously signed)
- a URL on some other host (e.g. an image found on the web)

Only the first two need a round-trip to the storage backend.
"""

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse


# Matches the object route of the storage service, e.g.
# /storage/v1/object/public/drink-images/user-1/1700000000000.jpg
_STORAGE_OBJECT_PATH = re.compile(r"/storage/v1/object/(?:public|sign)/([^/]+)/(.+)")


@dataclass(frozen=True)
class StorageLocation:
    """Logical location of an object in the storage backend."""
    bucket: str
    path: str

    @property
    def reference(self) -> str:
        """The canonical "bucket/path" form."""
        return f"{self.bucket}/{self.path}"


def is_url(reference: str) -> bool:
    return reference.startswith(("http://", "https://"))


def is_external_url(reference: str, storage_host: str) -> bool:
    """
    True for fully-qualified URLs that don't point at managed storage.

    These are usable as-is and never need resolving.
    """
    if not is_url(reference):
        return False
    host = urlparse(reference).hostname or ""
    return host.lower() != storage_host.lower()


def parse_storage_reference(reference: Optional[str]) -> Optional[StorageLocation]:
    """
    Split a reference into bucket and path.

    Returns None when the reference has neither recognised shape. Callers
    treat that as "pass through unchanged" rather than an error.
    """
    if not reference:
        return None

    if is_url(reference):
        # Signed URLs carry a token in the query string; it's not part of the path
        match = _STORAGE_OBJECT_PATH.search(urlparse(reference).path)
        if match:
            return StorageLocation(bucket=match.group(1), path=match.group(2))
        return None

    bucket, sep, path = reference.partition("/")
    if bucket and sep and path:
        return StorageLocation(bucket=bucket, path=path)

    return None
