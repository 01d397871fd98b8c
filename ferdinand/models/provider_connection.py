import uuid
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, Text, JSON, ForeignKey
from sqlalchemy.orm import relationship
from ..models.base import Base, UUIDChar

class ProviderConnection(Base):
    """Encrypted Drive OAuth credentials, one row per connected user."""
    __tablename__ = "provider_connections"

    id = Column(UUIDChar, primary_key=True, default=uuid.uuid4)
    user_id = Column(UUIDChar, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)

    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)

    provider_email = Column(String, nullable=True)
    scopes = Column(JSON, nullable=True)

    # Set when a refresh was rejected; every call fails fast until re-consent
    reauth_required = Column(Boolean, default=False, nullable=False)
    last_refresh_error = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="provider_connection")
