import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from ..models.base import Base, UUIDChar

class Client(Base):
    __tablename__ = "clients"

    id = Column(UUIDChar, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    members = relationship("ClientMember", back_populates="client", cascade="all, delete-orphan")


class ClientMember(Base):
    __tablename__ = "client_members"

    id = Column(UUIDChar, primary_key=True, default=uuid.uuid4)
    client_id = Column(UUIDChar, ForeignKey("clients.id"), nullable=False, index=True)
    user_id = Column(UUIDChar, ForeignKey("users.id"), nullable=False, index=True)
    joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="memberships")
    client = relationship("Client", back_populates="members")

    # Ensure a user can only be a member of a client once
    __table_args__ = (UniqueConstraint('client_id', 'user_id', name='_client_user_uc'),)
