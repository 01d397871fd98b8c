import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import AuditRecord
from .exceptions import DriveErrorCode

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuditEntry:
    action: str
    success: bool
    user_id: Optional[uuid.UUID] = None
    asset_id: Optional[uuid.UUID] = None
    provider_file_id: Optional[str] = None
    error_code: Optional[DriveErrorCode] = None
    error_message: Optional[str] = None
    user_role: Optional[str] = None
    client_id: Optional[uuid.UUID] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Append-only writer for Drive file access attempts."""

    def __init__(self, db: Session):
        self.db = db

    def record(self, entry: AuditEntry, request: Optional[RequestContext] = None) -> Optional[AuditRecord]:
        request = request or RequestContext()
        row = AuditRecord(
            user_id=entry.user_id,
            asset_id=entry.asset_id,
            provider_file_id=entry.provider_file_id,
            action=entry.action,
            success=entry.success,
            error_code=entry.error_code.value if entry.error_code else None,
            error_message=entry.error_message,
            user_role=entry.user_role,
            client_id=entry.client_id,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            details=entry.metadata or {},
        )
        try:
            self.db.add(row)
            self.db.commit()
        except SQLAlchemyError:
            # Audit failures must not break the file access itself
            self.db.rollback()
            logger.exception("Failed to write Drive access audit record (%s, %s)", entry.action, entry.provider_file_id)
            return None
        return row

    def log_success(self, request: Optional[RequestContext] = None, **fields) -> Optional[AuditRecord]:
        return self.record(AuditEntry(success=True, **fields), request)

    def log_failure(self, error_code: DriveErrorCode, request: Optional[RequestContext] = None,
                    **fields) -> Optional[AuditRecord]:
        return self.record(AuditEntry(success=False, error_code=error_code, **fields), request)

    def recent(self, limit: int = 100, user_id: Optional[uuid.UUID] = None) -> List[AuditRecord]:
        query = self.db.query(AuditRecord)
        if user_id is not None:
            query = query.filter(AuditRecord.user_id == user_id)
        return query.order_by(AuditRecord.timestamp.desc()).limit(limit).all()
