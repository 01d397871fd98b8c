import uuid
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, JSON
from ..models.base import Base, UUIDChar

class AuditRecord(Base):
    """Append-only trail of Drive file access attempts."""
    __tablename__ = "drive_access_audit"

    id = Column(UUIDChar, primary_key=True, default=uuid.uuid4)
    user_id = Column(UUIDChar, nullable=True, index=True)
    asset_id = Column(UUIDChar, nullable=True)
    provider_file_id = Column(String, nullable=True, index=True)
    action = Column(String, nullable=False)
    success = Column(Boolean, nullable=False)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    user_role = Column(String, nullable=True)
    client_id = Column(UUIDChar, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
