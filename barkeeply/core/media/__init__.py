"""
Media URL resolution.

Turns opaque storage references into URLs a client can load, with a
per-process cache of signed URLs and a reactive watcher for views.
"""

from .references import StorageLocation, is_external_url, parse_storage_reference
from .resolver import (
    CachedUrlEntry,
    PublicUrlProvider,
    SignedUrlProvider,
    SignedUrlResolver,
)
from .watcher import SignedUrlWatcher, UrlState, UrlStatus

__all__ = [
    "CachedUrlEntry",
    "PublicUrlProvider",
    "SignedUrlProvider",
    "SignedUrlResolver",
    "SignedUrlWatcher",
    "StorageLocation",
    "UrlState",
    "UrlStatus",
    "is_external_url",
    "parse_storage_reference",
]
