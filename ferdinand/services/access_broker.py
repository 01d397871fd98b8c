"""
Secure Access Broker.

Issues short-lived capability tokens for provider files, validates them when
the proxy endpoint is hit, and streams the file bytes through the server so
the provider credential never leaves it. Every proxy invocation leaves exactly
one audit record behind.
"""
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterator, Optional
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.security import generate_capability_token, mask_secret
from ..models import AccessCapability, Asset, CapabilityAction, User
from ..utils.file_utils import is_valid_provider_file_id
from .audit_service import AuditLogger, RequestContext
from .drive_provider import DriveProviderClient, ProviderDownload
from .exceptions import (
    CapabilityError,
    DriveAccessError,
    DriveErrorCode,
    InvalidRequestError,
    PermissionDeniedError,
    ProviderAccessDeniedError,
    ProviderAuthError,
    ProviderFileNotFoundError,
    UpstreamUnavailableError,
)
from .permission_engine import (
    AssetAction,
    AssetContext,
    PermissionEngine,
    Principal,
    ProviderSharingMetadata,
    permission_engine,
)
from .token_refresh import TokenRefreshCoordinator

logger = logging.getLogger(__name__)

# Provider-side roles that may download a file whose owner restricted downloads
DOWNLOAD_RESTRICTED_ROLES = {"owner", "writer", "organizer"}

_sweep_lock = threading.Lock()
_last_sweep: Optional[float] = None


def clamp_ttl(ttl_seconds: Optional[int]) -> int:
    if ttl_seconds is None:
        ttl_seconds = settings.CAPABILITY_DEFAULT_TTL_SECONDS
    return max(settings.CAPABILITY_MIN_TTL_SECONDS, min(settings.CAPABILITY_MAX_TTL_SECONDS, int(ttl_seconds)))


def action_satisfies(granted: CapabilityAction, requested: CapabilityAction) -> bool:
    """A token satisfies its own action; a download token also satisfies read."""
    if granted == requested:
        return True
    return granted == CapabilityAction.DOWNLOAD and requested == CapabilityAction.READ


@dataclass(frozen=True)
class ConsumeResult:
    """A validated capability, detached from the session that loaded it."""
    user_id: uuid.UUID
    user_role: str
    token: str
    provider_file_id: str
    granted_action: CapabilityAction
    requested_action: CapabilityAction
    asset_id: Optional[uuid.UUID] = None
    client_id: Optional[uuid.UUID] = None
    file_name: Optional[str] = None

    @property
    def single_use(self) -> bool:
        return self.granted_action == CapabilityAction.DOWNLOAD


class ProxyStream:
    """
    Iterable of file chunks handed to the web layer.

    The audit record is written when iteration finishes, fails or is closed
    early. `close()` must be called if the stream is dropped without being
    iterated.
    """

    def __init__(self, broker: "SecureAccessBroker", grant: ConsumeResult,
                 download: ProviderDownload, request: Optional[RequestContext] = None):
        self._broker = broker
        self._download = download
        self._request = request
        self._finished = False
        self.grant = grant
        self.content_type = download.content_type
        self.content_length = download.content_length
        self.bytes_sent = 0

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._download.iter_bytes():
                self.bytes_sent += len(chunk)
                yield chunk
        except GeneratorExit:
            self._finish(DriveErrorCode.STREAM_ABORTED)
            raise
        except DriveAccessError as e:
            self._finish(e.code, e.message)
            raise
        except Exception as e:
            self._finish(DriveErrorCode.STREAM_ABORTED, f"Stream failed: {e}")
            raise
        else:
            self._finish(None)
        finally:
            self._download.close()

    def read(self) -> bytes:
        return b"".join(self)

    def close(self) -> None:
        if not self._finished:
            self._finish(DriveErrorCode.STREAM_ABORTED)
        self._download.close()

    @property
    def finished(self) -> bool:
        return self._finished

    def _finish(self, error_code: Optional[DriveErrorCode], message: Optional[str] = None) -> None:
        if self._finished:
            return
        self._finished = True

        if error_code is None:
            self._broker.audit_proxy(self.grant, self._request, bytes_sent=self.bytes_sent,
                                     content_type=self.content_type)
            return

        if self.bytes_sent == 0 and self.grant.single_use:
            # Nothing reached the client, so the download may be retried
            self._broker.release(self.grant.token)
        logger.warning("Drive stream for %s ended early after %d bytes (%s)",
                       self.grant.provider_file_id, self.bytes_sent, error_code.value)
        self._broker.audit_proxy(self.grant, self._request, error_code=error_code,
                                 error_message=message or "Stream closed before completion",
                                 bytes_sent=self.bytes_sent)


class SecureAccessBroker:
    def __init__(
        self,
        db: Session,
        coordinator: TokenRefreshCoordinator,
        audit: Optional[AuditLogger] = None,
        engine: PermissionEngine = permission_engine,
        provider: Optional[DriveProviderClient] = None,
    ):
        self.db = db
        self.coordinator = coordinator
        self.audit = audit or AuditLogger(db)
        self.engine = engine
        self.provider = provider or coordinator.provider

    # --- Issuance ---

    def issue(self, user_id: uuid.UUID, provider_file_id: str, action: CapabilityAction,
              ttl_seconds: Optional[int] = None, asset_id: Optional[uuid.UUID] = None) -> AccessCapability:
        """
        Mints a capability for a file. The caller has already asked the
        permission engine; `consume` asks again.
        """
        if not is_valid_provider_file_id(provider_file_id):
            raise InvalidRequestError(DriveErrorCode.INVALID_FILE_ID)
        action = self._parse_action(action)
        self._sweep_if_due()

        now = datetime.utcnow()
        capability = AccessCapability(
            token=generate_capability_token(),
            provider_file_id=provider_file_id,
            asset_id=asset_id,
            issued_to=user_id,
            action=action.value,
            issued_at=now,
            expires_at=now + timedelta(seconds=clamp_ttl(ttl_seconds)),
            consumed=False,
        )
        self.db.add(capability)
        self.db.commit()
        self.db.refresh(capability)

        logger.info("Issued %s capability %s for Drive file %s to user %s",
                    action.value, mask_secret(capability.token), provider_file_id, user_id)
        return capability

    @staticmethod
    def build_url(capability: AccessCapability, prefix: str = "/api/v1") -> str:
        query = urlencode({"token": capability.token, "action": capability.action})
        return f"{prefix}/proxy/{capability.provider_file_id}?{query}"

    # --- Validation ---

    def consume(self, token: Optional[str], provider_file_id: str, action: CapabilityAction) -> ConsumeResult:
        if not token:
            raise CapabilityError(DriveErrorCode.MISSING_TOKEN)
        if not is_valid_provider_file_id(provider_file_id):
            raise InvalidRequestError(DriveErrorCode.INVALID_FILE_ID)
        requested = self._parse_action(action)

        capability = self._find(token)
        if capability is None:
            raise CapabilityError(DriveErrorCode.INVALID_TOKEN)

        now = datetime.utcnow()
        if capability.expires_at <= now:
            raise CapabilityError(DriveErrorCode.TOKEN_EXPIRED)
        if capability.consumed:
            raise CapabilityError(DriveErrorCode.TOKEN_CONSUMED)
        if capability.provider_file_id != provider_file_id:
            raise CapabilityError(DriveErrorCode.TOKEN_FILE_MISMATCH)

        granted = CapabilityAction(capability.action)
        if not action_satisfies(granted, requested):
            raise CapabilityError(DriveErrorCode.ACTION_NOT_PERMITTED)

        user = self.db.get(User, capability.issued_to)
        if user is None:
            raise CapabilityError(DriveErrorCode.INVALID_TOKEN)
        principal = Principal.from_user(user)

        asset = self._find_asset(capability, principal)
        if asset is None:
            raise PermissionDeniedError(DriveErrorCode.ASSET_NOT_FOUND)

        result = self.engine.check(principal, AssetContext.from_asset(asset), AssetAction.READ)
        if not result.allowed:
            raise PermissionDeniedError(result.code, result.reason)

        self._check_provider_overlay(principal, asset, capability.provider_file_id, granted)

        if granted == CapabilityAction.DOWNLOAD:
            self._mark_consumed(capability.id, now)

        return ConsumeResult(
            user_id=user.id,
            user_role=user.role,
            token=capability.token,
            provider_file_id=capability.provider_file_id,
            granted_action=granted,
            requested_action=requested,
            asset_id=asset.id,
            client_id=asset.client_id,
            file_name=asset.file_name,
        )

    def release(self, token: str) -> bool:
        """
        Returns a consumed download capability to the unconsumed state. Only
        valid when no byte of the file reached the client.
        """
        released = (
            self.db.query(AccessCapability)
            .filter(
                AccessCapability.token == token,
                AccessCapability.action == CapabilityAction.DOWNLOAD.value,
                AccessCapability.consumed.is_(True),
            )
            .update({AccessCapability.consumed: False, AccessCapability.consumed_at: None},
                    synchronize_session=False)
        )
        self.db.commit()
        if released:
            logger.info("Released download capability %s", mask_secret(token))
        return bool(released)

    # --- Streaming ---

    def proxy(self, grant: ConsumeResult, request: Optional[RequestContext] = None) -> ProxyStream:
        try:
            credential = self.coordinator.get_live_credential(grant.user_id)
            download = self.provider.open_download(
                credential,
                grant.provider_file_id,
                timeout=settings.PROVIDER_TIMEOUT_SECONDS,
                chunk_size=settings.PROXY_CHUNK_SIZE,
            )
        except ProviderAuthError as e:
            # The stored access token is dead even though it had not expired
            self.coordinator.mark_stale(grant.user_id)
            self._fail_before_stream(grant, e, request)
            raise
        except DriveAccessError as e:
            self._fail_before_stream(grant, e, request)
            raise
        except Exception as e:
            self._fail_before_stream(grant, UpstreamUnavailableError(f"Drive proxy failed: {e}"), request)
            raise

        return ProxyStream(self, grant, download, request)

    def open_stream(self, token: Optional[str], provider_file_id: str, action: CapabilityAction,
                    request: Optional[RequestContext] = None) -> ProxyStream:
        try:
            grant = self.consume(token, provider_file_id, action)
        except DriveAccessError as e:
            self._audit_rejection(token, provider_file_id, action, e, request)
            raise
        return self.proxy(grant, request)

    def audit_proxy(self, grant: ConsumeResult, request: Optional[RequestContext] = None,
                    error_code: Optional[DriveErrorCode] = None, error_message: Optional[str] = None,
                    **metadata) -> None:
        fields = dict(
            action=f"proxy_{grant.requested_action.value}",
            user_id=grant.user_id,
            user_role=grant.user_role,
            asset_id=grant.asset_id,
            client_id=grant.client_id,
            provider_file_id=grant.provider_file_id,
            metadata={"granted_action": grant.granted_action.value, **metadata},
        )
        if error_code is None:
            self.audit.log_success(request=request, **fields)
        else:
            self.audit.log_failure(error_code, request=request, error_message=error_message, **fields)

    # --- Maintenance ---

    def cleanup_expired(self) -> int:
        deleted = (
            self.db.query(AccessCapability)
            .filter(AccessCapability.expires_at <= datetime.utcnow())
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if deleted:
            logger.info("Cleaned up %d expired access capabilities", deleted)
        return deleted

    def _sweep_if_due(self) -> None:
        global _last_sweep
        with _sweep_lock:
            now = time.monotonic()
            if _last_sweep is not None and now - _last_sweep < settings.CAPABILITY_SWEEP_INTERVAL_SECONDS:
                return
            _last_sweep = now
        self.cleanup_expired()

    def stats(self) -> Dict[str, int]:
        now = datetime.utcnow()
        query = self.db.query(AccessCapability)
        return {
            "active": query.filter(AccessCapability.expires_at > now, AccessCapability.consumed.is_(False)).count(),
            "expired": query.filter(AccessCapability.expires_at <= now).count(),
            "consumed": query.filter(AccessCapability.consumed.is_(True)).count(),
        }

    # --- Internals ---

    @staticmethod
    def _parse_action(action) -> CapabilityAction:
        try:
            return CapabilityAction(action)
        except ValueError:
            raise InvalidRequestError(message=f"Unknown capability action: {action}")

    def _find(self, token: str) -> Optional[AccessCapability]:
        return self.db.query(AccessCapability).filter(AccessCapability.token == token).first()

    def _find_asset(self, capability: AccessCapability, principal: Principal) -> Optional[Asset]:
        if capability.asset_id is not None:
            return self.db.get(Asset, capability.asset_id)

        candidates = (
            self.db.query(Asset)
            .filter(Asset.provider_file_id == capability.provider_file_id)
            .order_by(Asset.created_at)
            .all()
        )
        # The same Drive file may be imported into several client libraries
        for asset in candidates:
            if asset.deleted_at is None and asset.client_id in principal.client_ids:
                return asset
        return candidates[0] if candidates else None

    @staticmethod
    def _check_provider_overlay(principal: Principal, asset: Asset, provider_file_id: str,
                                granted: CapabilityAction) -> None:
        if not asset.is_provider_file or asset.provider_file_id != provider_file_id:
            raise ProviderFileNotFoundError("Asset is no longer linked to this Google Drive file.")

        sharing = ProviderSharingMetadata.from_json(asset.provider_sharing_metadata)
        if granted != CapabilityAction.DOWNLOAD or sharing is None or not sharing.download_restricted:
            return

        is_provider_owner = bool(principal.email) and (sharing.owner_email or "").lower() == principal.email.lower()
        is_privileged_importer = (
            asset.uploaded_by == principal.id and (sharing.importer_role or "").lower() in DOWNLOAD_RESTRICTED_ROLES
        )
        if not (is_provider_owner or is_privileged_importer):
            raise ProviderAccessDeniedError("The Drive owner has restricted downloads of this file.")

    def _mark_consumed(self, capability_id: uuid.UUID, now: datetime) -> None:
        # Compare-and-swap: only one concurrent request can flip the flag
        updated = (
            self.db.query(AccessCapability)
            .filter(
                AccessCapability.id == capability_id,
                AccessCapability.consumed.is_(False),
                AccessCapability.expires_at > now,
            )
            .update({AccessCapability.consumed: True, AccessCapability.consumed_at: now},
                    synchronize_session=False)
        )
        self.db.commit()
        if updated == 0:
            raise CapabilityError(DriveErrorCode.TOKEN_CONSUMED)

    def _fail_before_stream(self, grant: ConsumeResult, error: DriveAccessError,
                            request: Optional[RequestContext]) -> None:
        if grant.single_use:
            self.release(grant.token)
        logger.warning("Drive proxy for %s failed before streaming: %s", grant.provider_file_id, error.code.value)
        self.audit_proxy(grant, request, error_code=error.code, error_message=error.message)

    def _audit_rejection(self, token: Optional[str], provider_file_id: str, action,
                         error: DriveAccessError, request: Optional[RequestContext]) -> None:
        capability = self._find(token) if token else None
        action_name = action.value if isinstance(action, CapabilityAction) else str(action)
        self.audit.log_failure(
            error.code,
            request=request,
            action=f"proxy_{action_name}",
            user_id=capability.issued_to if capability else None,
            asset_id=capability.asset_id if capability else None,
            provider_file_id=provider_file_id,
            error_message=error.message,
        )
