import uuid

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from ..models import Asset, User
from ..dependencies import (
    authorize_asset_action, get_asset_or_404, get_current_user, get_request_context, get_thumbnail_cache,
)
from ..schemas.drive import ThumbnailInvalidateResponse
from ..services.audit_service import RequestContext
from ..services.exceptions import NoThumbnailError
from ..services.permission_engine import AssetAction
from ..services.thumbnail_service import ThumbnailCache, ThumbnailSize

router = APIRouter(
    tags=["Thumbnails"],
)

@router.get(
    "/assets/{asset_id}/thumbnail",
    responses={200: {"content": {"image/jpeg": {}}}},
    summary="Get a cached or freshly generated thumbnail",
)
def get_thumbnail(
    asset_id: uuid.UUID,
    size: str = Query(ThumbnailSize.MEDIUM.value, description="small, medium or large"),
    current_user: User = Depends(get_current_user),
    asset: Asset = Depends(get_asset_or_404),
    thumbnail_cache: ThumbnailCache = Depends(get_thumbnail_cache),
    request_context: RequestContext = Depends(get_request_context),
):
    authorize_asset_action(current_user, asset, AssetAction.READ)

    result = thumbnail_cache.get_thumbnail(asset, size, current_user, request_context)
    if not result.available:
        raise NoThumbnailError(icon=result.icon)

    return Response(
        content=result.data,
        media_type=result.content_type,
        headers={"Cache-Control": "private, max-age=86400"},
    )

@router.post(
    "/assets/{asset_id}/thumbnail/invalidate",
    response_model=ThumbnailInvalidateResponse,
    summary="Drop cached thumbnails after the source changed",
)
def invalidate_thumbnail(
    asset_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    asset: Asset = Depends(get_asset_or_404),
    thumbnail_cache: ThumbnailCache = Depends(get_thumbnail_cache),
):
    authorize_asset_action(current_user, asset, AssetAction.WRITE)
    return ThumbnailInvalidateResponse(asset_id=asset.id, deleted=thumbnail_cache.invalidate(asset.id))
