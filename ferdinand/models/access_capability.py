import uuid
import enum
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey
from ..models.base import Base, UUIDChar

class CapabilityAction(str, enum.Enum):
    READ = "read"
    DOWNLOAD = "download"
    THUMBNAIL = "thumbnail"

class AccessCapability(Base):
    __tablename__ = "access_capabilities"

    id = Column(UUIDChar, primary_key=True, default=uuid.uuid4)
    token = Column(String, nullable=False, unique=True, index=True)
    provider_file_id = Column(String, nullable=False, index=True)
    asset_id = Column(UUIDChar, ForeignKey("assets.id"), nullable=True)
    issued_to = Column(UUIDChar, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # Plain string value of CapabilityAction
    action = Column(String, nullable=False)

    issued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    consumed = Column(Boolean, default=False, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
