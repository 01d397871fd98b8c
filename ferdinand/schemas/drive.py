import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..models.access_capability import CapabilityAction
from ..services.permission_engine import AssetAction

# --- Connection Schemas ---

class AuthUrlResponse(BaseModel):
    auth_url: str

class ConnectionStatus(BaseModel):
    connected: bool
    needs_reauth: bool = False
    provider_email: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    scopes: List[str] = []
    consent_url: Optional[str] = Field(None, description="Present when the user has to (re)connect Google Drive.")

class DisconnectResponse(BaseModel):
    disconnected: bool

# --- Permission Schemas ---

class PermissionCheckRequest(BaseModel):
    asset_id: uuid.UUID
    action: AssetAction

class PermissionCheckResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None

# --- Secure Access Schemas ---

class SecureUrlRequest(BaseModel):
    action: CapabilityAction = CapabilityAction.READ
    ttl_seconds: Optional[int] = Field(
        None, description="Requested lifetime; clamped to the configured minimum and maximum."
    )

class SecureUrlResponse(BaseModel):
    url: str
    token: str
    action: CapabilityAction
    expires_at: datetime
    expires_in_seconds: int

# --- Monitoring Schemas ---

class TokenStats(BaseModel):
    active: int
    expired: int
    consumed: int

class CleanupResponse(BaseModel):
    deleted: int

class ThumbnailInvalidateResponse(BaseModel):
    asset_id: uuid.UUID
    deleted: int

class AuditRecordRead(BaseModel):
    id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    asset_id: Optional[uuid.UUID] = None
    provider_file_id: Optional[str] = None
    action: str
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    user_role: Optional[str] = None
    client_id: Optional[uuid.UUID] = None
    ip_address: Optional[str] = None
    details: Optional[Dict[str, Any]] = Field(None, serialization_alias="metadata")
    timestamp: datetime

    class Config:
        from_attributes = True

class ErrorResponse(BaseModel):
    code: str
    message: str
    consent_url: Optional[str] = None
    icon: Optional[str] = None
