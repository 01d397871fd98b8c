import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..models import User
from ..dependencies import get_access_broker, get_audit_logger, require_admin
from ..schemas.drive import AuditRecordRead, CleanupResponse, TokenStats
from ..services.access_broker import SecureAccessBroker
from ..services.audit_service import AuditLogger

router = APIRouter(
    tags=["Drive Administration"],
)

@router.get("/tokens/stats", response_model=TokenStats, summary="Capability token counts")
def get_token_stats(
    admin: User = Depends(require_admin),
    broker: SecureAccessBroker = Depends(get_access_broker),
):
    return TokenStats(**broker.stats())

@router.post("/tokens/cleanup", response_model=CleanupResponse, summary="Delete expired capability tokens")
def cleanup_tokens(
    admin: User = Depends(require_admin),
    broker: SecureAccessBroker = Depends(get_access_broker),
):
    return CleanupResponse(deleted=broker.cleanup_expired())

@router.get("/audit", response_model=List[AuditRecordRead], summary="Recent Drive access audit records")
def get_audit_records(
    limit: int = Query(100, ge=1, le=1000),
    user_id: Optional[uuid.UUID] = Query(None),
    admin: User = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
):
    return audit.recent(limit=limit, user_id=user_id)
