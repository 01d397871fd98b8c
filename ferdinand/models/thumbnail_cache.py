from datetime import datetime
from sqlalchemy import Column, String, DateTime, LargeBinary, ForeignKey
from ..models.base import Base, UUIDChar

class ThumbnailCacheEntry(Base):
    __tablename__ = "thumbnail_cache"

    asset_id = Column(UUIDChar, ForeignKey("assets.id"), primary_key=True)
    size = Column(String, primary_key=True)  # "small", "medium" or "large"

    data = Column(LargeBinary, nullable=False)
    content_type = Column(String, nullable=False, default="image/jpeg")
    source_version = Column(String, nullable=False)
    cached_at = Column(DateTime, default=datetime.utcnow, nullable=False)
