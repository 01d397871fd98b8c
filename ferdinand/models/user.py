import uuid
import enum
from datetime import datetime
from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from ..models.base import Base, UUIDChar

class UserRole(str, enum.Enum):
    GUEST = "guest"
    STANDARD = "standard"
    EDITOR = "editor"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

class User(Base):
    __tablename__ = "users"

    id = Column(UUIDChar, primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    display_name = Column(String, nullable=False, default="")
    # Stored as the plain string value of UserRole; changed only by administrators
    role = Column(String, default=UserRole.STANDARD.value, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    memberships = relationship("ClientMember", back_populates="user", cascade="all, delete-orphan")

    provider_connection = relationship(
        "ProviderConnection", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
