import logging
import uuid
from datetime import datetime
from typing import Optional

from jose import JWTError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.security import create_oauth_state, verify_oauth_state
from ..models import ProviderConnection
from ..schemas.drive import ConnectionStatus
from .credential_vault import CredentialVault
from .drive_provider import Credential, DriveProviderClient
from .exceptions import CredentialDecryptionError, DriveAccessError, InvalidRequestError

logger = logging.getLogger(__name__)


class ConnectionService:
    """Connects and disconnects a user's Google Drive account."""

    def __init__(self, db: Session, provider: DriveProviderClient, vault: Optional[CredentialVault] = None):
        self.db = db
        self.provider = provider
        self.vault = vault or CredentialVault()

    def authorization_url(self, user_id: uuid.UUID) -> str:
        return self.provider.build_consent_url(state=create_oauth_state(user_id))

    def complete_authorization(self, code: str, state: str) -> ProviderConnection:
        """
        Handles the OAuth callback: exchanges the code and stores the encrypted
        token pair for the user named in the signed state.
        """
        try:
            user_id = verify_oauth_state(state)
        except (JWTError, KeyError, ValueError):
            raise InvalidRequestError(message="Invalid or expired OAuth state. Please start the connection again.")

        tokens = self.provider.exchange_code(code)
        if not tokens.refresh_token:
            # Google only returns a refresh token on the first consent unless prompt=consent is honoured
            raise InvalidRequestError(
                message="Google did not return a refresh token. Remove the app's access in your Google account and reconnect."
            )

        provider_email = None
        try:
            provider_email = self.provider.get_user_email(
                Credential(user_id=user_id, access_token=tokens.access_token, expires_at=tokens.expires_at)
            )
        except DriveAccessError as e:
            logger.warning("Could not fetch Google account email for user %s: %s", user_id, e.code.value)

        record = self._load(user_id)
        if record is None:
            record = ProviderConnection(user_id=user_id)
            self.db.add(record)

        self.vault.apply(record, tokens)
        record.provider_email = provider_email
        record.scopes = list(settings.GOOGLE_OAUTH_SCOPES)
        record.reauth_required = False
        record.last_refresh_error = None
        record.last_used_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(record)

        logger.info("Stored Google Drive credentials for user %s", user_id)
        return record

    def status(self, user_id: uuid.UUID) -> ConnectionStatus:
        record = self._load(user_id)
        if record is None:
            return ConnectionStatus(connected=False, consent_url=self.authorization_url(user_id))

        return ConnectionStatus(
            connected=True,
            needs_reauth=bool(record.reauth_required),
            provider_email=record.provider_email,
            expires_at=record.expires_at,
            last_used_at=record.last_used_at,
            scopes=record.scopes or [],
            consent_url=self.authorization_url(user_id) if record.reauth_required else None,
        )

    def disconnect(self, user_id: uuid.UUID) -> bool:
        """
        Revokes the grant at Google, then deletes the stored credentials. A
        failed revocation is logged and does not block the local deletion.
        """
        record = self._load(user_id)
        if record is None:
            return False

        try:
            tokens = self.vault.decrypt(record)
        except CredentialDecryptionError:
            logger.warning("Skipping Google token revocation for user %s: credentials unreadable", user_id)
        else:
            if not self.provider.revoke(tokens.refresh_token):
                logger.warning("Google token revocation failed for user %s; deleting local credentials anyway", user_id)

        self.db.delete(record)
        self.db.commit()
        logger.info("Disconnected Google Drive for user %s", user_id)
        return True

    def _load(self, user_id: uuid.UUID) -> Optional[ProviderConnection]:
        return self.db.query(ProviderConnection).filter(ProviderConnection.user_id == user_id).first()
