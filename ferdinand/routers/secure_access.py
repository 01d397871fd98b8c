import uuid
from datetime import datetime
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from ..core.db import get_db
from ..models import Asset, CapabilityAction, User
from ..dependencies import (
    authorize_asset_action, get_access_broker, get_asset_or_404, get_current_user, get_request_context,
)
from ..schemas.drive import (
    PermissionCheckRequest, PermissionCheckResponse, SecureUrlRequest, SecureUrlResponse,
)
from ..services.access_broker import SecureAccessBroker
from ..services.audit_service import RequestContext
from ..services.exceptions import DriveErrorCode, PermissionDeniedError, ProviderFileNotFoundError
from ..services.permission_engine import AssetAction, AssetContext, Principal, permission_engine

router = APIRouter(
    tags=["Secure Access"],
)

# Served under /api/v1/proxy; the capability token is the only credential
proxy_router = APIRouter(
    tags=["Secure Access"],
)

@router.post("/permissions/check", response_model=PermissionCheckResponse, summary="Ask the permission engine")
def check_permission(
    payload: PermissionCheckRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    asset = db.query(Asset).filter(Asset.id == payload.asset_id).first()
    if asset is None:
        raise PermissionDeniedError(DriveErrorCode.ASSET_NOT_FOUND)

    result = permission_engine.check(Principal.from_user(current_user), AssetContext.from_asset(asset), payload.action)
    return PermissionCheckResponse(
        allowed=result.allowed,
        reason=result.reason,
        code=result.code.value if result.code else None,
    )

@router.post(
    "/assets/{asset_id}/secure-url",
    response_model=SecureUrlResponse,
    summary="Issue a short-lived URL for a Drive-backed asset",
)
def create_secure_url(
    asset_id: uuid.UUID,
    payload: SecureUrlRequest,
    current_user: User = Depends(get_current_user),
    asset: Asset = Depends(get_asset_or_404),
    broker: SecureAccessBroker = Depends(get_access_broker),
):
    authorize_asset_action(current_user, asset, AssetAction.READ)
    if not asset.is_provider_file or not asset.provider_file_id:
        raise ProviderFileNotFoundError("This asset is not stored in Google Drive.")

    capability = broker.issue(
        current_user.id,
        asset.provider_file_id,
        payload.action,
        ttl_seconds=payload.ttl_seconds,
        asset_id=asset.id,
    )
    return SecureUrlResponse(
        url=broker.build_url(capability),
        token=capability.token,
        action=CapabilityAction(capability.action),
        expires_at=capability.expires_at,
        expires_in_seconds=max(0, int((capability.expires_at - datetime.utcnow()).total_seconds())),
    )

@proxy_router.get("/{provider_file_id}", response_class=StreamingResponse, summary="Stream a Drive file")
def proxy_file(
    provider_file_id: str,
    token: Optional[str] = Query(None),
    action: CapabilityAction = Query(CapabilityAction.READ),
    broker: SecureAccessBroker = Depends(get_access_broker),
    request_context: RequestContext = Depends(get_request_context),
):
    """
    Validates the capability token and streams the file from Google Drive.
    Download tokens work exactly once.
    """
    stream = broker.open_stream(token, provider_file_id, action, request_context)

    headers = {
        "Cache-Control": "private, max-age=300",
        "X-Content-Source": "drive",
    }
    if stream.content_length is not None:
        headers["Content-Length"] = str(stream.content_length)
    if action == CapabilityAction.DOWNLOAD:
        file_name = stream.grant.file_name or provider_file_id
        headers["Content-Disposition"] = f"attachment; filename*=UTF-8''{quote(file_name)}"

    return StreamingResponse(
        iter(stream),
        media_type=stream.content_type,
        headers=headers,
        background=BackgroundTask(stream.close),
    )
