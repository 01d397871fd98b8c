import uuid
import enum
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, JSON, ForeignKey, Enum as SQLAlchemyEnum
from ..models.base import Base, UUIDChar

class AssetVisibility(str, enum.Enum):
    PRIVATE = "private"
    SHARED = "shared"

class Asset(Base):
    __tablename__ = "assets"

    id = Column(UUIDChar, primary_key=True, default=uuid.uuid4)
    client_id = Column(UUIDChar, ForeignKey("clients.id"), nullable=False, index=True)
    uploaded_by = Column(UUIDChar, ForeignKey("users.id"), nullable=False, index=True)

    file_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False, default="application/octet-stream")

    visibility = Column(
        SQLAlchemyEnum(AssetVisibility, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=AssetVisibility.SHARED,
    )

    # Provider (Drive) origin
    is_provider_file = Column(Boolean, default=False, nullable=False)
    provider_file_id = Column(String, nullable=True, index=True)
    # owner_email, is_shared, has_public_link, shared_with, importer_role, download_restricted
    provider_sharing_metadata = Column(JSON, nullable=True)

    # Local origin, "/bucket/object"
    storage_path = Column(String, nullable=True)

    # Provider modifiedTime or local content hash; drives thumbnail invalidation
    source_version = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    # Tombstone; the core never hard-deletes assets
    deleted_at = Column(DateTime, nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
