# ferdinand/services/exceptions.py
import enum
from typing import Optional


class DriveErrorCode(str, enum.Enum):
    # Credentials
    AUTH_REQUIRED = "AUTH_REQUIRED"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    CREDENTIAL_DECRYPTION_FAILED = "CREDENTIAL_DECRYPTION_FAILED"

    # Capability validation
    MISSING_TOKEN = "MISSING_TOKEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_CONSUMED = "TOKEN_CONSUMED"
    TOKEN_FILE_MISMATCH = "TOKEN_FILE_MISMATCH"
    ACTION_NOT_PERMITTED = "ACTION_NOT_PERMITTED"

    # Authorisation
    PERMISSION_DENIED = "PERMISSION_DENIED"
    CLIENT_ACCESS_DENIED = "CLIENT_ACCESS_DENIED"
    ASSET_NOT_FOUND = "ASSET_NOT_FOUND"

    # Provider
    PROVIDER_FILE_NOT_FOUND = "PROVIDER_FILE_NOT_FOUND"
    PROVIDER_ACCESS_DENIED = "PROVIDER_ACCESS_DENIED"
    PROVIDER_AUTH_FAILED = "PROVIDER_AUTH_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    STREAM_ABORTED = "STREAM_ABORTED"

    # Requests
    INVALID_FILE_ID = "INVALID_FILE_ID"
    INVALID_SIZE = "INVALID_SIZE"
    INVALID_REQUEST = "INVALID_REQUEST"
    NO_THUMBNAIL = "NO_THUMBNAIL"


ERROR_MESSAGES = {
    DriveErrorCode.AUTH_REQUIRED: "Google Drive authentication required. Please connect your Google Drive account.",
    DriveErrorCode.TOKEN_REFRESH_FAILED: "Your Google Drive session has expired. Please reconnect your Drive account.",
    DriveErrorCode.CREDENTIAL_DECRYPTION_FAILED: "Stored Drive credentials could not be decrypted.",
    DriveErrorCode.MISSING_TOKEN: "Access token is required. Please request a new secure URL.",
    DriveErrorCode.INVALID_TOKEN: "Your access link is invalid. Please request a new link.",
    DriveErrorCode.TOKEN_EXPIRED: "Your access link has expired. Please request a new link.",
    DriveErrorCode.TOKEN_CONSUMED: "This download link has already been used. Please request a new link.",
    DriveErrorCode.TOKEN_FILE_MISMATCH: "This access token is not valid for the requested file.",
    DriveErrorCode.ACTION_NOT_PERMITTED: "This token does not allow the requested action.",
    DriveErrorCode.PERMISSION_DENIED: "You don't have permission to access this file.",
    DriveErrorCode.CLIENT_ACCESS_DENIED: "You are not a member of the client that owns this file.",
    DriveErrorCode.ASSET_NOT_FOUND: "Asset not found. The file may have been deleted.",
    DriveErrorCode.PROVIDER_FILE_NOT_FOUND: "File not found in Google Drive. It may have been deleted or moved.",
    DriveErrorCode.PROVIDER_ACCESS_DENIED: "Access denied by Google Drive.",
    DriveErrorCode.PROVIDER_AUTH_FAILED: "Google Drive rejected the stored credentials. Please reconnect your Drive account.",
    DriveErrorCode.RATE_LIMIT_EXCEEDED: "Too many requests to Google Drive. Please try again later.",
    DriveErrorCode.UPSTREAM_UNAVAILABLE: "Google Drive is temporarily unavailable. Please try again later.",
    DriveErrorCode.STREAM_ABORTED: "The file transfer was interrupted.",
    DriveErrorCode.INVALID_FILE_ID: "Invalid Drive file ID format.",
    DriveErrorCode.INVALID_SIZE: "Invalid thumbnail size. Must be 'small', 'medium', or 'large'.",
    DriveErrorCode.INVALID_REQUEST: "Invalid request.",
    DriveErrorCode.NO_THUMBNAIL: "No thumbnail available for this file type.",
}


class DriveAccessError(Exception):
    """Base exception for the Drive access core. Matched by `code`, never by message."""
    status_code = 500
    retryable = False

    def __init__(self, code: DriveErrorCode, message: Optional[str] = None,
                 status_code: Optional[int] = None, consent_url: Optional[str] = None):
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, code.value)
        if status_code is not None:
            self.status_code = status_code
        self.consent_url = consent_url
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"code": self.code.value, "message": self.message}
        if self.consent_url:
            body["consent_url"] = self.consent_url
        return body


class AuthRequiredError(DriveAccessError):
    """No credential on file; the user has to go through the consent flow."""
    status_code = 401

    def __init__(self, consent_url: str, message: Optional[str] = None):
        super().__init__(DriveErrorCode.AUTH_REQUIRED, message, consent_url=consent_url)


class TokenRefreshFailedError(DriveAccessError):
    status_code = 401

    def __init__(self, consent_url: str, message: Optional[str] = None):
        super().__init__(DriveErrorCode.TOKEN_REFRESH_FAILED, message, consent_url=consent_url)


class CredentialDecryptionError(DriveAccessError):
    """Tampered ciphertext or wrong server key. A configuration fault, not a user fault."""
    status_code = 500

    def __init__(self, message: Optional[str] = None):
        super().__init__(DriveErrorCode.CREDENTIAL_DECRYPTION_FAILED, message)


_CAPABILITY_STATUS = {
    DriveErrorCode.MISSING_TOKEN: 400,
    DriveErrorCode.INVALID_TOKEN: 401,
    DriveErrorCode.TOKEN_EXPIRED: 401,
    DriveErrorCode.TOKEN_CONSUMED: 401,
    DriveErrorCode.TOKEN_FILE_MISMATCH: 403,
    DriveErrorCode.ACTION_NOT_PERMITTED: 403,
}


class CapabilityError(DriveAccessError):
    def __init__(self, code: DriveErrorCode, message: Optional[str] = None):
        super().__init__(code, message, status_code=_CAPABILITY_STATUS.get(code, 401))


class PermissionDeniedError(DriveAccessError):
    status_code = 403

    def __init__(self, code: DriveErrorCode = DriveErrorCode.PERMISSION_DENIED, message: Optional[str] = None):
        super().__init__(code, message)
        if code == DriveErrorCode.ASSET_NOT_FOUND:
            self.status_code = 404


class ProviderFileNotFoundError(DriveAccessError):
    status_code = 404

    def __init__(self, message: Optional[str] = None):
        super().__init__(DriveErrorCode.PROVIDER_FILE_NOT_FOUND, message)


class ProviderAccessDeniedError(DriveAccessError):
    status_code = 403

    def __init__(self, message: Optional[str] = None):
        super().__init__(DriveErrorCode.PROVIDER_ACCESS_DENIED, message)


class ProviderAuthError(DriveAccessError):
    """The provider rejected an access token that looked live to us."""
    status_code = 401

    def __init__(self, message: Optional[str] = None):
        super().__init__(DriveErrorCode.PROVIDER_AUTH_FAILED, message)


class RefreshRejectedError(ProviderAuthError):
    """The provider refused a refresh token (e.g. invalid_grant)."""


class RateLimitedError(DriveAccessError):
    status_code = 429
    retryable = True

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = None):
        super().__init__(DriveErrorCode.RATE_LIMIT_EXCEEDED, message)
        self.retry_after = retry_after


class UpstreamUnavailableError(DriveAccessError):
    """Provider outage (5xx, timeout, connection failure). Callers show 'try again later'."""
    status_code = 503
    retryable = True

    def __init__(self, message: Optional[str] = None):
        super().__init__(DriveErrorCode.UPSTREAM_UNAVAILABLE, message)


class NoThumbnailError(DriveAccessError):
    status_code = 404

    def __init__(self, icon: str, message: Optional[str] = None):
        super().__init__(DriveErrorCode.NO_THUMBNAIL, message)
        self.icon = icon

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["icon"] = self.icon
        return body


class InvalidRequestError(DriveAccessError):
    status_code = 400

    def __init__(self, code: DriveErrorCode = DriveErrorCode.INVALID_REQUEST, message: Optional[str] = None):
        super().__init__(code, message)
