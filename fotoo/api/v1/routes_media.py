from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from fotoo.api import deps
from fotoo.core.config import Settings
from fotoo.core.errors import AssetNotFound
from fotoo.services.media_service import serialize_asset

from . import schemas


router = APIRouter(prefix="/media", tags=["media"])


@router.post("/upload-url", response_model=schemas.UploadUrlResponse, status_code=status.HTTP_201_CREATED)
async def create_upload_url(
    payload: schemas.UploadUrlRequest,
    service: deps.MediaServiceDependency,
    context: deps.AuthDependency,
    settings: Settings = Depends(deps.get_app_settings),
) -> schemas.UploadUrlResponse:
    if payload.size > settings.max_upload_size_bytes:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="upload_too_large")

    asset, presigned = await service.create_upload_slot(
        owner_id=context.user_id,
        filename=payload.filename,
        mime_type=payload.mime_type,
        size=payload.size,
        captured_at=payload.captured_at,
    )
    return schemas.UploadUrlResponse(
        upload_url=presigned.url,
        method=presigned.method,
        headers=presigned.headers,
        asset=schemas.AssetResponse(**serialize_asset(asset)),
    )


@router.get("", response_model=list[schemas.AssetResponse])
async def list_media(
    service: deps.MediaServiceDependency,
    context: deps.AuthDependency,
    limit: int = Query(default=50, ge=1, le=200),
) -> list[schemas.AssetResponse]:
    assets = await service.list_assets(context.user_id, limit=limit)
    return [schemas.AssetResponse(**serialize_asset(asset)) for asset in assets]


@router.get("/{asset_id}", response_model=schemas.AssetResponse)
async def get_media(
    asset_id: str,
    service: deps.MediaServiceDependency,
    context: deps.AuthDependency,
) -> schemas.AssetResponse:
    asset = await service.get_asset(asset_id, context.user_id)
    if asset is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="asset_not_found")
    return schemas.AssetResponse(**serialize_asset(asset))


@router.post("/{asset_id}/process", response_model=schemas.ProcessAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def process_media(
    asset_id: str,
    service: deps.MediaServiceDependency,
    context: deps.AuthDependency,
) -> schemas.ProcessAcceptedResponse:
    try:
        await service.enqueue_processing(asset_id, context.user_id)
    except AssetNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="asset_not_found") from exc
    return schemas.ProcessAcceptedResponse(asset_id=asset_id)


@router.get("/{asset_id}/download-url", response_model=schemas.DownloadUrlResponse)
async def get_download_url(
    asset_id: str,
    service: deps.MediaServiceDependency,
    context: deps.AuthDependency,
    settings: Settings = Depends(deps.get_app_settings),
) -> schemas.DownloadUrlResponse:
    presigned = await service.get_download_url(asset_id, context.user_id)
    if presigned is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="processed_asset_not_found")
    return schemas.DownloadUrlResponse(url=presigned.url, expires_in=settings.presign_expiry_s)


@router.get("/{asset_id}/thumbnail")
async def get_thumbnail(
    asset_id: str,
    service: deps.MediaServiceDependency,
    context: deps.AuthDependency,
) -> StreamingResponse:
    result = await service.open_thumbnail(asset_id, context.user_id)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="thumbnail_not_found")
    stream, content_type = result

    def _chunks():
        try:
            while chunk := stream.read(64 * 1024):
                yield chunk
        finally:
            stream.close()

    return StreamingResponse(_chunks(), media_type=content_type)


@router.delete("/{asset_id}", response_model=schemas.DeleteResponse)
async def delete_media(
    asset_id: str,
    service: deps.MediaServiceDependency,
    context: deps.AuthDependency,
) -> schemas.DeleteResponse:
    return schemas.DeleteResponse(success=await service.delete_asset(asset_id, context.user_id))


__all__ = ["router"]
