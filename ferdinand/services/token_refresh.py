import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Optional

import redis
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.security import create_oauth_state
from ..models import ProviderConnection
from ..utils.single_flight import SingleFlight
from .credential_vault import CredentialVault
from .drive_provider import Credential, DriveProviderClient
from .exceptions import (
    AuthRequiredError,
    RefreshRejectedError,
    TokenRefreshFailedError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)

# Shared by every coordinator in the process so concurrent requests for one
# user join the same refresh.
refresh_flights = SingleFlight()


class TokenRefreshCoordinator:
    """
    Hands out live Drive credentials, refreshing expired ones at most once per
    user at a time.
    """

    def __init__(
        self,
        db: Session,
        provider: DriveProviderClient,
        vault: Optional[CredentialVault] = None,
        redis_client: Optional[redis.Redis] = None,
        flights: Optional[SingleFlight] = None,
    ):
        self.db = db
        self.provider = provider
        self.vault = vault or CredentialVault()
        self.redis_client = redis_client
        self.flights = flights or refresh_flights

    def consent_url(self, user_id: uuid.UUID) -> str:
        return self.provider.build_consent_url(state=create_oauth_state(user_id))

    def get_live_credential(self, user_id: uuid.UUID) -> Credential:
        record = self._load(user_id)
        self._ensure_usable(user_id, record)

        if not self.vault.is_expired(record):
            return self._use(record)

        return self.flights.do(str(user_id), lambda: self._refresh_serialised(user_id))

    def mark_stale(self, user_id: uuid.UUID) -> None:
        """
        Forces the next call to refresh, e.g. after the provider rejected an
        access token we believed was live.
        """
        record = self._load(user_id)
        if record is None:
            return
        record.expires_at = None
        self.db.commit()

    # --- Internals ---

    def _load(self, user_id: uuid.UUID) -> Optional[ProviderConnection]:
        return self.db.query(ProviderConnection).filter(ProviderConnection.user_id == user_id).first()

    def _ensure_usable(self, user_id: uuid.UUID, record: Optional[ProviderConnection]) -> None:
        if record is None:
            raise AuthRequiredError(consent_url=self.consent_url(user_id))
        if record.reauth_required:
            raise TokenRefreshFailedError(consent_url=self.consent_url(user_id))

    def _use(self, record: ProviderConnection) -> Credential:
        tokens = self.vault.decrypt(record)
        record.last_used_at = datetime.utcnow()
        self.db.commit()
        return Credential(user_id=record.user_id, access_token=tokens.access_token, expires_at=record.expires_at)

    def _refresh_serialised(self, user_id: uuid.UUID) -> Credential:
        if self.redis_client is None:
            return self._refresh(user_id)

        lock = self.redis_client.lock(
            f"drive:refresh:{user_id}",
            timeout=settings.REFRESH_LOCK_TIMEOUT_SECONDS,
            blocking_timeout=settings.REFRESH_LOCK_TIMEOUT_SECONDS,
        )
        try:
            acquired = lock.acquire()
        except redis.RedisError as e:
            raise UpstreamUnavailableError(f"Could not coordinate token refresh: {e}") from e
        if not acquired:
            raise UpstreamUnavailableError("Timed out waiting for a token refresh in another worker")
        try:
            return self._refresh(user_id)
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                logger.warning("Refresh lock for user %s expired before release", user_id)

    def _refresh(self, user_id: uuid.UUID) -> Credential:
        # Another request or worker may have refreshed while we waited
        self.db.expire_all()
        record = self._load(user_id)
        self._ensure_usable(user_id, record)
        if not self.vault.is_expired(record):
            return self._use(record)

        tokens = self.vault.decrypt(record)
        logger.info("Refreshing Drive credentials for user %s", user_id)
        try:
            refreshed = self.provider.refresh(tokens.refresh_token)
        except RefreshRejectedError as e:
            record.reauth_required = True
            record.last_refresh_error = str(e)[:500]
            self.db.commit()
            logger.warning("Drive token refresh rejected for user %s; re-consent required", user_id)
            raise TokenRefreshFailedError(consent_url=self.consent_url(user_id)) from e

        if not refreshed.refresh_token:
            refreshed = replace(refreshed, refresh_token=tokens.refresh_token)

        self.vault.apply(record, refreshed)
        record.last_used_at = datetime.utcnow()
        record.last_refresh_error = None
        self.db.commit()
        logger.info("Successfully refreshed Drive credentials for user %s", user_id)

        return Credential(user_id=record.user_id, access_token=refreshed.access_token, expires_at=refreshed.expires_at)
