from datetime import datetime, timedelta, timezone
import secrets
import uuid
from jose import jwt, JWTError
from cryptography.fernet import Fernet

from ..core.config import settings

# --- Capability Tokens ---
CAPABILITY_TOKEN_BYTES = 32

def generate_capability_token() -> str:
    """Returns a URL-safe token carrying 256 bits of randomness."""
    return secrets.token_urlsafe(CAPABILITY_TOKEN_BYTES)

def mask_secret(value: str) -> str:
    """Masks a secret for log output, keeping the first and last four characters."""
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}{'*' * max(4, len(value) - 8)}{value[-4:]}"

# --- JWT Bearer Tokens ---
def decode_access_token(token: str) -> uuid.UUID:
    """
    Decodes a bearer token issued by the web layer and returns the user id.
    Raises JWTError when the token is invalid, expired or malformed.
    """
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    # OAuth state tokens share the signing key but never authenticate a request
    if payload.get("type") != "access":
        raise JWTError("Not an access token")
    user_id_str = payload.get("sub")
    if user_id_str is None:
        raise JWTError("Token has no subject")
    try:
        return uuid.UUID(user_id_str)
    except ValueError:
        raise JWTError("Token subject is not a valid user id")

def create_access_token(user_id: uuid.UUID, expires_minutes: int = 30) -> str:
    """Creates a bearer token for a user. Used by tests and internal tooling."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode = {"sub": str(user_id), "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

# --- OAuth State ---
def create_oauth_state(user_id: uuid.UUID) -> str:
    """
    Signs the OAuth `state` parameter so the callback can be tied back to the
    user who started the consent flow.
    """
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.OAUTH_STATE_EXPIRE_MINUTES)
    to_encode = {
        "sub": str(user_id),
        "exp": expire,
        "type": "oauth_state",
        "nonce": secrets.token_urlsafe(8),
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

def verify_oauth_state(state: str) -> uuid.UUID:
    payload = jwt.decode(state, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    if payload.get("type") != "oauth_state":
        raise JWTError("Not an OAuth state token")
    return uuid.UUID(payload["sub"])

# --- Credential Encryption ---
try:
    fernet = Fernet(settings.CREDENTIAL_ENCRYPTION_KEY.encode())
except Exception as e:
    raise ValueError(f"Invalid CREDENTIAL_ENCRYPTION_KEY: {e}. Please generate a valid key.")

def get_fernet() -> Fernet:
    """Returns the process-wide Fernet instance built from the server key."""
    return fernet
