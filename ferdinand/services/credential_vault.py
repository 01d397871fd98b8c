import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from ..core.config import settings
from ..core.security import get_fernet
from ..models import ProviderConnection
from .exceptions import CredentialDecryptionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class EncryptedPair:
    encrypted_access_token: str
    encrypted_refresh_token: str
    expires_at: Optional[datetime] = None


class CredentialVault:
    """
    Encrypts provider OAuth token pairs at rest.

    Fernet is authenticated (AES-CBC with an HMAC-SHA256 tag), so a flipped bit
    or a different server key surfaces as CredentialDecryptionError rather than
    as garbage plaintext.
    """

    def __init__(self, fernet: Optional[Fernet] = None):
        self.fernet = fernet or get_fernet()

    def encrypt(self, token_pair: TokenPair) -> EncryptedPair:
        if not token_pair.access_token:
            raise ValueError("Access token is required")
        if not token_pair.refresh_token:
            raise ValueError("Refresh token is required")

        return EncryptedPair(
            encrypted_access_token=self.fernet.encrypt(token_pair.access_token.encode()).decode(),
            encrypted_refresh_token=self.fernet.encrypt(token_pair.refresh_token.encode()).decode(),
            expires_at=token_pair.expires_at,
        )

    def decrypt(self, record: ProviderConnection) -> TokenPair:
        try:
            access_token = self.fernet.decrypt(record.encrypted_access_token.encode()).decode()
            refresh_token = self.fernet.decrypt(record.encrypted_refresh_token.encode()).decode()
        except (InvalidToken, AttributeError, UnicodeDecodeError) as e:
            logger.error("Failed to decrypt Drive credentials for user %s", record.user_id)
            raise CredentialDecryptionError(
                "Stored Drive credentials could not be decrypted; check CREDENTIAL_ENCRYPTION_KEY."
            ) from e

        if not refresh_token:
            raise CredentialDecryptionError("Stored Drive credentials have no refresh token.")

        return TokenPair(access_token=access_token, refresh_token=refresh_token, expires_at=record.expires_at)

    def apply(self, record: ProviderConnection, token_pair: TokenPair) -> None:
        """Writes an encrypted pair onto a connection row. The caller commits."""
        encrypted = self.encrypt(token_pair)
        record.encrypted_access_token = encrypted.encrypted_access_token
        record.encrypted_refresh_token = encrypted.encrypted_refresh_token
        record.expires_at = encrypted.expires_at

    @staticmethod
    def is_expired(record: ProviderConnection, skew_seconds: Optional[int] = None,
                   now: Optional[datetime] = None) -> bool:
        if skew_seconds is None:
            skew_seconds = settings.TOKEN_EXPIRY_SKEW_SECONDS
        if record.expires_at is None:
            return True
        now = now or datetime.utcnow()
        return now >= record.expires_at - timedelta(seconds=skew_seconds)
