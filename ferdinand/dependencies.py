from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from jose import JWTError
import uuid
import redis
from minio import Minio
from typing import Optional

from .core.db import get_db
from .core.object_storage import get_minio_client
from .core.redis_client import get_redis_client
from .core.security import decode_access_token
from .models import Asset, User, UserRole
from .services.access_broker import SecureAccessBroker
from .services.audit_service import AuditLogger, RequestContext
from .services.connection_service import ConnectionService
from .services.drive_provider import DriveProviderClient
from .services.exceptions import DriveErrorCode, PermissionDeniedError
from .services.permission_engine import AssetAction, AssetContext, Principal, permission_engine
from .services.thumbnail_service import ThumbnailCache
from .services.token_refresh import TokenRefreshCoordinator

# Bearer tokens are issued by the web layer's login endpoint
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")

# Holds no user credentials, so one instance serves every request
drive_provider = DriveProviderClient()

# --- Service Dependencies ---

def get_provider_client() -> DriveProviderClient:
    return drive_provider

def get_request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )

def get_audit_logger(db: Session = Depends(get_db)) -> AuditLogger:
    return AuditLogger(db=db)

def get_refresh_coordinator(
    db: Session = Depends(get_db),
    provider: DriveProviderClient = Depends(get_provider_client),
    redis_client: Optional[redis.Redis] = Depends(get_redis_client),
) -> TokenRefreshCoordinator:
    """Dependency to get an instance of TokenRefreshCoordinator."""
    return TokenRefreshCoordinator(db=db, provider=provider, redis_client=redis_client)

def get_connection_service(
    db: Session = Depends(get_db),
    provider: DriveProviderClient = Depends(get_provider_client),
) -> ConnectionService:
    return ConnectionService(db=db, provider=provider)

def get_access_broker(
    db: Session = Depends(get_db),
    coordinator: TokenRefreshCoordinator = Depends(get_refresh_coordinator),
    audit: AuditLogger = Depends(get_audit_logger),
) -> SecureAccessBroker:
    """Dependency to get an instance of SecureAccessBroker."""
    return SecureAccessBroker(db=db, coordinator=coordinator, audit=audit)

def get_thumbnail_cache(
    db: Session = Depends(get_db),
    broker: SecureAccessBroker = Depends(get_access_broker),
    minio: Minio = Depends(get_minio_client),
) -> ThumbnailCache:
    return ThumbnailCache(db=db, broker=broker, minio=minio)

# --- Authentication and Authorization Dependencies ---

def get_current_user(
    db: Session = Depends(get_db), token: str = Depends(oauth2_scheme)
) -> User:
    """Dependency to get the current user from a JWT token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        user_id = decode_access_token(token)
    except JWTError:
        raise credentials_exception

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise credentials_exception
    return user

def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Dependency to ensure the current user is an admin or super admin."""
    if current_user.role not in (UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This operation requires admin privileges",
        )
    return current_user

def authorize_asset_action(user: User, asset: Asset, action: AssetAction) -> None:
    """Raises PermissionDeniedError unless the permission engine allows the action."""
    result = permission_engine.check(Principal.from_user(user), AssetContext.from_asset(asset), action)
    if not result.allowed:
        raise PermissionDeniedError(result.code, result.reason)

# --- Resource-specific Dependencies ---

def get_asset_or_404(asset_id: uuid.UUID, db: Session = Depends(get_db)) -> Asset:
    asset = db.query(Asset).filter(Asset.id == asset_id).first()
    if asset is None:
        raise PermissionDeniedError(DriveErrorCode.ASSET_NOT_FOUND)
    return asset
