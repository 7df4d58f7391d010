"""
Object storage client for drink photos and avatars.

Talks to the managed storage service through its S3-compatible API, with
a mock mode for local development.

Mock mode keeps objects in memory, enabling API testing without
provisioning real object storage.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_SECONDS = 3600

CONTENT_TYPES = {
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'webp': 'image/webp',
    'heic': 'image/heic',
    'gif': 'image/gif',
}


class StorageError(Exception):
    """Raised when storage operations fail."""
    pass


@dataclass
class StorageConfig:
    """
    Configuration for S3-compatible storage.

    The public host is where objects are served from; resolved URLs on
    that host are recognised as managed storage.
    """
    access_key_id: str
    secret_access_key: str
    endpoint_url: str
    public_host: str
    region: str = "auto"

    def __post_init__(self) -> None:
        if not self.endpoint_url:
            raise ValueError("endpoint_url is required")
        if not self.public_host:
            raise ValueError("public_host is required")


class StorageClient(Protocol):
    """
    What the service needs from object storage.

    The signed URL resolver only needs create_signed_url and
    get_public_url; uploads are used by the media routes.
    """

    async def create_signed_url(
        self,
        bucket: str,
        path: str,
        expiry_seconds: int = DEFAULT_EXPIRY_SECONDS,
    ) -> str:
        """Return a time-limited GET URL for the object."""
        ...

    def get_public_url(self, bucket: str, path: str) -> str:
        """Build the unsigned URL of an object in a public bucket."""
        ...

    async def upload_image(
        self,
        bucket: str,
        user_id: str,
        image_data: bytes,
        filename: Optional[str] = None,
    ) -> str:
        """Upload an image and return its "bucket/path" reference."""
        ...


def build_image_path(user_id: str, filename: Optional[str] = None) -> str:
    """
    Build the object path for a user's image.

    Path structure: {user_id}/{epoch_millis}.{ext}
    Keeping the user id first lets bucket policies scope access per user.
    """
    ext = 'jpg'
    if filename and '.' in filename:
        ext = filename.rsplit('.', 1)[-1].lower()
    return f"{user_id}/{int(time.time() * 1000)}.{ext}"


def build_public_url(public_host: str, bucket: str, path: str) -> str:
    return f"https://{public_host}/storage/v1/object/public/{bucket}/{path}"


class S3StorageClient:
    """
    Managed object storage client.

    Uses boto3 because the storage service exposes an S3-compatible API.

    All methods are async to match the Protocol even though boto3 is
    synchronous, which keeps the interface consistent with truly async
    storage clients.
    """

    def __init__(self, config: StorageConfig) -> None:
        try:
            import boto3
            from botocore.config import Config
        except ImportError:
            raise ImportError(
                "boto3 is required for object storage. Install with: pip install boto3"
            )

        self._config = config

        # Signed URLs need v4 signatures; path-style keeps the bucket out of the host
        boto_config = Config(
            signature_version='s3v4',
            s3={'addressing_style': 'path'},
        )

        self._s3_client = boto3.client(
            's3',
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
            config=boto_config,
        )

        logger.info(
            "Initialized storage client",
            extra={
                "endpoint": config.endpoint_url,
                "public_host": config.public_host,
            }
        )

    async def create_signed_url(
        self,
        bucket: str,
        path: str,
        expiry_seconds: int = DEFAULT_EXPIRY_SECONDS,
    ) -> str:
        """
        Presign a GET for one object.

        Signing happens locally with the configured credentials, so this
        only fails on bad configuration, not on missing objects.
        """
        try:
            return self._s3_client.generate_presigned_url(
                'get_object',
                Params={
                    'Bucket': bucket,
                    'Key': path,
                },
                ExpiresIn=expiry_seconds,
            )

        except Exception as e:
            logger.error(
                "Failed to generate signed URL",
                extra={"bucket": bucket, "path": path, "error": str(e)}
            )
            raise StorageError(f"Signed URL generation failed: {e}")

    def get_public_url(self, bucket: str, path: str) -> str:
        return build_public_url(self._config.public_host, bucket, path)

    async def upload_image(
        self,
        bucket: str,
        user_id: str,
        image_data: bytes,
        filename: Optional[str] = None,
    ) -> str:
        """Upload an image and return the reference stored on the drink row."""
        path = build_image_path(user_id, filename)
        ext = path.rsplit('.', 1)[-1]

        try:
            self._s3_client.put_object(
                Bucket=bucket,
                Key=path,
                Body=image_data,
                ContentType=CONTENT_TYPES.get(ext, 'application/octet-stream'),
                Metadata={'user-id': user_id},
            )

        except Exception as e:
            logger.error(
                "Failed to upload image",
                extra={"bucket": bucket, "user_id": user_id, "error": str(e)}
            )
            raise StorageError(f"Upload failed: {e}")

        logger.info(
            "Uploaded image",
            extra={
                "bucket": bucket,
                "path": path,
                "size_bytes": len(image_data),
            }
        )

        return f"{bucket}/{path}"


# ---------------------------------------------------------------------------
# Mock Storage for Local Development
# ---------------------------------------------------------------------------

class MockStorageClient:
    """
    Object storage held in a dict, for mock mode and tests.

    Objects live in a dictionary keyed by "bucket/path" and signed URLs
    are fake URLs on the mock host. Signing an object that was never
    uploaded fails, like a real lookup would.
    """

    def __init__(self, public_host: str = "storage.mock.local") -> None:
        self._public_host = public_host
        self._objects: dict[str, bytes] = {}
        self.signed_url_requests = 0
        logger.info("Initialized mock storage client (in-memory)")

    @property
    def public_host(self) -> str:
        return self._public_host

    def put(self, bucket: str, path: str, data: bytes = b"") -> str:
        """Seed an object directly (for tests)."""
        self._objects[f"{bucket}/{path}"] = data
        return f"{bucket}/{path}"

    async def create_signed_url(
        self,
        bucket: str,
        path: str,
        expiry_seconds: int = DEFAULT_EXPIRY_SECONDS,
    ) -> str:
        self.signed_url_requests += 1

        if f"{bucket}/{path}" not in self._objects:
            raise StorageError(f"Object not found: {bucket}/{path}")

        return (
            f"https://{self._public_host}/storage/v1/object/sign/{bucket}/{path}"
            f"?token=mock-{uuid4().hex}&expires_in={expiry_seconds}"
        )

    def get_public_url(self, bucket: str, path: str) -> str:
        return build_public_url(self._public_host, bucket, path)

    async def upload_image(
        self,
        bucket: str,
        user_id: str,
        image_data: bytes,
        filename: Optional[str] = None,
    ) -> str:
        path = build_image_path(user_id, filename)
        reference = self.put(bucket, path, image_data)

        logger.debug(
            "Stored image in mock storage",
            extra={"reference": reference, "size_bytes": len(image_data)}
        )

        return reference


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_storage_client(
    config: Optional[StorageConfig] = None,
    mock_mode: bool = False,
    public_host: str = "storage.mock.local",
) -> StorageClient:
    """
    Create storage client based on configuration.

    Args:
        config: Storage configuration (required if not mock_mode)
        mock_mode: If True, return mock client for testing
        public_host: Host used for mock URLs

    Returns:
        StorageClient implementation (S3 or Mock)
    """
    if mock_mode:
        return MockStorageClient(public_host=public_host)

    if config is None:
        raise ValueError("config is required when not in mock mode")

    return S3StorageClient(config)
