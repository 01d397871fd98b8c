"""
Role x ownership x visibility x provider-sharing permission model for assets.

Everything here is pure: no database access, no network, no clock. Callers
resolve users and assets into the frozen value objects below and ask
`PermissionEngine.check` before touching the vault, the broker or storage.

Role base matrix ("own" = allowed only for the uploader):

    role         read   write  delete share  import
    guest        yes*   no     no     no     no
    standard     yes    own    own    own    yes
    editor       yes    yes    own    yes    yes
    admin        yes    yes    yes    yes    yes
    super_admin  yes    yes    yes    yes    yes

* guests read only shared assets, or provider files shared with their email
  or through a public link. Standard users read private assets only when
  they uploaded them.
"""
import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from ..models import Asset, User, UserRole, AssetVisibility
from .exceptions import DriveErrorCode


class AssetAction(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    SHARE = "share"
    IMPORT = "import"


class Grant(enum.Enum):
    ALLOW = "allow"
    OWN = "own"
    DENY = "deny"


_A, _O, _D = Grant.ALLOW, Grant.OWN, Grant.DENY

ROLE_MATRIX: Dict[UserRole, Dict[AssetAction, Grant]] = {
    UserRole.GUEST: {
        AssetAction.READ: _A, AssetAction.WRITE: _D, AssetAction.DELETE: _D,
        AssetAction.SHARE: _D, AssetAction.IMPORT: _D,
    },
    UserRole.STANDARD: {
        AssetAction.READ: _A, AssetAction.WRITE: _O, AssetAction.DELETE: _O,
        AssetAction.SHARE: _O, AssetAction.IMPORT: _A,
    },
    UserRole.EDITOR: {
        AssetAction.READ: _A, AssetAction.WRITE: _A, AssetAction.DELETE: _O,
        AssetAction.SHARE: _A, AssetAction.IMPORT: _A,
    },
    UserRole.ADMIN: {
        AssetAction.READ: _A, AssetAction.WRITE: _A, AssetAction.DELETE: _A,
        AssetAction.SHARE: _A, AssetAction.IMPORT: _A,
    },
    UserRole.SUPER_ADMIN: {
        AssetAction.READ: _A, AssetAction.WRITE: _A, AssetAction.DELETE: _A,
        AssetAction.SHARE: _A, AssetAction.IMPORT: _A,
    },
}


@dataclass(frozen=True)
class ProviderSharingMetadata:
    owner_email: Optional[str] = None
    is_shared: bool = False
    has_public_link: bool = False
    shared_with: Tuple[str, ...] = ()
    importer_role: Optional[str] = None
    download_restricted: bool = False

    @classmethod
    def from_json(cls, data: Optional[Mapping[str, Any]]) -> Optional["ProviderSharingMetadata"]:
        if not data:
            return None
        shared_with = data.get("shared_with") or ()
        return cls(
            owner_email=data.get("owner_email"),
            is_shared=bool(data.get("is_shared", False)),
            has_public_link=bool(data.get("has_public_link", False)),
            shared_with=tuple(email.lower() for email in shared_with if isinstance(email, str)),
            importer_role=data.get("importer_role"),
            download_restricted=bool(data.get("download_restricted", False)),
        )

    def is_shared_with(self, email: Optional[str]) -> bool:
        if self.has_public_link:
            return True
        if not email or not self.is_shared:
            return False
        email = email.lower()
        return email in self.shared_with or (self.owner_email or "").lower() == email


@dataclass(frozen=True)
class Principal:
    id: uuid.UUID
    role: str
    email: str = ""
    client_ids: FrozenSet[uuid.UUID] = field(default_factory=frozenset)

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(
            id=user.id,
            role=user.role,
            email=user.email,
            client_ids=frozenset(m.client_id for m in user.memberships),
        )


@dataclass(frozen=True)
class AssetContext:
    id: Optional[uuid.UUID]
    client_id: uuid.UUID
    uploaded_by: uuid.UUID
    visibility: AssetVisibility = AssetVisibility.SHARED
    is_provider_file: bool = False
    provider_file_id: Optional[str] = None
    provider_sharing: Optional[ProviderSharingMetadata] = None
    deleted: bool = False

    @classmethod
    def from_asset(cls, asset: Asset) -> "AssetContext":
        return cls(
            id=asset.id,
            client_id=asset.client_id,
            uploaded_by=asset.uploaded_by,
            visibility=AssetVisibility(asset.visibility),
            is_provider_file=bool(asset.is_provider_file),
            provider_file_id=asset.provider_file_id,
            provider_sharing=ProviderSharingMetadata.from_json(asset.provider_sharing_metadata),
            deleted=asset.deleted_at is not None,
        )


@dataclass(frozen=True)
class PermissionResult:
    allowed: bool
    reason: Optional[str] = None
    code: Optional[DriveErrorCode] = None

    @classmethod
    def allow(cls) -> "PermissionResult":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, code: DriveErrorCode = DriveErrorCode.PERMISSION_DENIED) -> "PermissionResult":
        return cls(allowed=False, reason=reason, code=code)


class PermissionEngine:
    """Sole authority on whether a principal may act on an asset."""

    def check(self, user: Principal, asset: AssetContext, action: AssetAction) -> PermissionResult:
        action = AssetAction(action)
        role = self._role(user)
        if role is None:
            return PermissionResult.deny(f"Invalid user role: {user.role}")

        if asset.deleted:
            return PermissionResult.deny("Asset has been deleted", DriveErrorCode.ASSET_NOT_FOUND)

        membership = self._check_membership(user, role, asset.client_id)
        if not membership.allowed:
            return membership

        grant = ROLE_MATRIX[role][action]
        if grant is Grant.DENY:
            return PermissionResult.deny(f"Role '{role.value}' may not {action.value} assets")

        is_owner = asset.uploaded_by == user.id
        if grant is Grant.OWN and not is_owner:
            return PermissionResult.deny(f"Role '{role.value}' may only {action.value} own assets")

        if action is AssetAction.READ:
            return self._check_read_visibility(user, role, asset, is_owner)

        return PermissionResult.allow()

    def check_client_action(self, user: Principal, client_id: uuid.UUID, action: AssetAction) -> PermissionResult:
        """For actions with no existing asset, such as importing into a client library."""
        action = AssetAction(action)
        role = self._role(user)
        if role is None:
            return PermissionResult.deny(f"Invalid user role: {user.role}")

        membership = self._check_membership(user, role, client_id)
        if not membership.allowed:
            return membership

        # Creating an asset makes the caller its owner, so "own" grants apply
        if ROLE_MATRIX[role][action] is Grant.DENY:
            return PermissionResult.deny(f"Role '{role.value}' may not {action.value} assets")
        return PermissionResult.allow()

    @staticmethod
    def _role(user: Principal) -> Optional[UserRole]:
        try:
            return UserRole(user.role)
        except ValueError:
            return None

    @staticmethod
    def _check_membership(user: Principal, role: UserRole, client_id: uuid.UUID) -> PermissionResult:
        if role is UserRole.SUPER_ADMIN or client_id in user.client_ids:
            return PermissionResult.allow()
        return PermissionResult.deny(
            "User is not a member of the client that owns this asset",
            DriveErrorCode.CLIENT_ACCESS_DENIED,
        )

    @staticmethod
    def _check_read_visibility(user: Principal, role: UserRole, asset: AssetContext, is_owner: bool) -> PermissionResult:
        shared = asset.visibility == AssetVisibility.SHARED

        if role is UserRole.GUEST:
            if shared:
                return PermissionResult.allow()
            if asset.provider_sharing is not None and asset.provider_sharing.is_shared_with(user.email):
                return PermissionResult.allow()
            return PermissionResult.deny("Guests can only read shared assets")

        if role is UserRole.STANDARD and not shared and not is_owner:
            return PermissionResult.deny("Cannot read private assets owned by others")

        return PermissionResult.allow()


permission_engine = PermissionEngine()
