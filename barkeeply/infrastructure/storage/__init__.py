"""
Object storage integration for drink photos and avatars.

Uses the storage service's S3-compatible API.
Includes mock mode for local development without credentials.
"""

from .client import (
    DEFAULT_EXPIRY_SECONDS,
    MockStorageClient,
    S3StorageClient,
    StorageClient,
    StorageConfig,
    StorageError,
    build_image_path,
    build_public_url,
    create_storage_client,
)

__all__ = [
    "DEFAULT_EXPIRY_SECONDS",
    "MockStorageClient",
    "S3StorageClient",
    "StorageClient",
    "StorageConfig",
    "StorageError",
    "build_image_path",
    "build_public_url",
    "create_storage_client",
]
