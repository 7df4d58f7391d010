"""
Media URL endpoints.

Clients send the references stored on drink, profile and collection
rows and get back URLs they can load directly. Resolution failures are
not errors here: the response just says the image is absent and the
client shows its placeholder.
"""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, File, Form, Header, HTTPException, UploadFile, status
from pydantic import BaseModel, Field

from ...infrastructure.storage import StorageError
from ..dependencies import (
    AuthenticatedUser,
    SettingsDep,
    StorageClientDep,
    UrlResolverDep,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class ResolveRequest(BaseModel):
    """Single reference to resolve."""
    reference: Optional[str] = Field(
        None,
        description="Storage reference (bucket/path), storage URL, or external URL",
        max_length=2048,
    )


class ResolveResponse(BaseModel):
    reference: Optional[str] = Field(description="The reference as sent")
    url: Optional[str] = Field(None, description="Loadable URL, if one could be produced")
    status: str = Field(description="'ready' when url is set, otherwise 'absent'")


class ResolveBatchRequest(BaseModel):
    references: list[Optional[str]] = Field(
        description="References to resolve; empty entries are ignored",
        max_length=200,
    )


class ResolveBatchResponse(BaseModel):
    urls: dict[str, str] = Field(description="Resolved URLs keyed by reference. Failures are omitted.")


class UploadResponse(BaseModel):
    reference: str = Field(description="Reference to store on the owning row")
    url: Optional[str] = Field(None, description="Resolved URL for immediate display")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/resolve",
    response_model=ResolveResponse,
    status_code=status.HTTP_200_OK,
    summary="Resolve one storage reference",
)
async def resolve_reference(
    request: ResolveRequest,
    api_key: AuthenticatedUser,
    resolver: UrlResolverDep,
) -> ResolveResponse:
    url = await resolver.resolve(request.reference)

    return ResolveResponse(
        reference=request.reference,
        url=url,
        status="ready" if url else "absent",
    )


@router.post(
    "/resolve-batch",
    response_model=ResolveBatchResponse,
    status_code=status.HTTP_200_OK,
    summary="Resolve many storage references concurrently",
)
async def resolve_batch(
    request: ResolveBatchRequest,
    api_key: AuthenticatedUser,
    resolver: UrlResolverDep,
) -> ResolveBatchResponse:
    urls = await resolver.resolve_many(request.references)

    logger.debug(
        "Resolved reference batch",
        extra={"requested": len(request.references), "resolved": len(urls)}
    )

    return ResolveBatchResponse(urls=urls)


@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a drink photo or avatar",
)
async def upload_image(
    image: Annotated[UploadFile, File(description="Image file (JPEG, PNG, WebP, HEIC)")],
    api_key: AuthenticatedUser,
    settings: SettingsDep,
    storage: StorageClientDep,
    resolver: UrlResolverDep,
    bucket: Annotated[str, Form()] = "drink-images",
    x_user_id: Annotated[Optional[str], Header()] = None,
) -> UploadResponse:
    """
    Store an image under the caller's user id.

    The returned reference is what the client saves on the drink or
    profile row; the URL is a convenience so the image can be shown
    without a second round-trip.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-Id header is required for uploads",
        )

    if bucket not in settings.storage_upload_buckets_list:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown bucket: {bucket}",
        )

    if image.content_type and not image.content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported file type: {image.content_type}",
        )

    image_data = await image.read()

    max_size_bytes = settings.max_image_size_mb * 1024 * 1024
    if len(image_data) > max_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Image too large. Maximum size: {settings.max_image_size_mb}MB",
        )

    try:
        reference = await storage.upload_image(
            bucket=bucket,
            user_id=x_user_id,
            image_data=image_data,
            filename=image.filename,
        )
    except StorageError as e:
        logger.error(
            "Image upload failed",
            extra={"bucket": bucket, "user_id": x_user_id, "error": str(e)}
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to store image",
        )

    return UploadResponse(reference=reference, url=await resolver.resolve(reference))


@router.delete(
    "/cache",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Clear cached URLs (sign-out)",
)
async def clear_url_cache(
    api_key: AuthenticatedUser,
    resolver: UrlResolverDep,
    x_user_id: Annotated[Optional[str], Header()] = None,
) -> None:
    """
    Drop cached signed URLs so they can't outlive the session.

    The cache is shared by every client of this process. With X-User-Id
    only that user's objects are dropped; without it the whole cache is
    cleared, for every client.
    """
    if x_user_id:
        resolver.clear_owner(x_user_id)
    else:
        resolver.clear_cache()
