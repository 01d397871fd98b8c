"""
Central import point for all SQLAlchemy models.

Importing every model here registers it with the shared Base metadata before
anything creates tables or resolves relationships.
"""
from .base import Base
from .user import User, UserRole
from .client import Client, ClientMember
from .asset import Asset, AssetVisibility
from .provider_connection import ProviderConnection
from .access_capability import AccessCapability, CapabilityAction
from .thumbnail_cache import ThumbnailCacheEntry
from .audit_record import AuditRecord


__all__ = [
    "Base",
    "User",
    "UserRole",
    "Client",
    "ClientMember",
    "Asset",
    "AssetVisibility",
    "ProviderConnection",
    "AccessCapability",
    "CapabilityAction",
    "ThumbnailCacheEntry",
    "AuditRecord",
]
