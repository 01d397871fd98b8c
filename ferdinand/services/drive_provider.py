"""
Client for the Google Drive OAuth and REST endpoints.

Every call takes the credential it should use as an argument; the client
itself holds no user tokens, so one instance is safe to share between
concurrent requests.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Any, Iterator, List, Optional
from urllib.parse import urlencode

import requests

from ..core.config import settings
from .credential_vault import TokenPair
from .exceptions import (
    InvalidRequestError,
    ProviderAccessDeniedError,
    ProviderAuthError,
    ProviderFileNotFoundError,
    RateLimitedError,
    RefreshRejectedError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = {"ratelimitexceeded", "userratelimitexceeded", "quotaexceeded", "dailylimitexceeded"}


@dataclass(frozen=True)
class Credential:
    """A live provider access credential, passed explicitly per call."""
    user_id: Any
    access_token: str
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class ProviderFileMetadata:
    file_id: str
    name: str
    mime_type: str
    modified_time: Optional[str] = None
    size: Optional[int] = None
    owner_emails: List[str] = field(default_factory=list)
    shared: bool = False
    has_thumbnail: bool = False


class ProviderDownload:
    """A streamed provider response. Close it to release the connection."""

    def __init__(self, response: requests.Response, chunk_size: int):
        self._response = response
        self.chunk_size = chunk_size
        self.content_type = response.headers.get("Content-Type", "application/octet-stream")
        length = response.headers.get("Content-Length")
        self.content_length = int(length) if length and length.isdigit() else None

    def iter_bytes(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(chunk_size=self.chunk_size):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise UpstreamUnavailableError(f"Drive download interrupted: {e}") from e

    def close(self) -> None:
        self._response.close()


class DriveProviderClient:
    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[int] = None):
        self.session = session or requests.Session()
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    # --- OAuth ---

    def build_consent_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "redirect_uri": settings.GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": " ".join(settings.GOOGLE_OAUTH_SCOPES),
            "access_type": "offline",
            # Force the consent screen so Google always returns a refresh token
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        if state:
            params["state"] = state
        return f"{settings.GOOGLE_AUTH_URI}?{urlencode(params)}"

    def exchange_code(self, code: str) -> TokenPair:
        payload = self._token_request({
            "code": code,
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "redirect_uri": settings.GOOGLE_REDIRECT_URI,
            "grant_type": "authorization_code",
        })
        return self._token_pair(payload, fallback_refresh_token="")

    def refresh(self, refresh_token: str) -> TokenPair:
        """
        Exchanges a refresh token for a new access token. Google usually omits
        a new refresh token, in which case the old one stays valid.
        """
        payload = self._token_request({
            "refresh_token": refresh_token,
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "grant_type": "refresh_token",
        })
        return self._token_pair(payload, fallback_refresh_token=refresh_token)

    def revoke(self, token: str) -> bool:
        try:
            response = self.session.post(
                settings.GOOGLE_REVOKE_URI,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("Error revoking token with Google: %s", e)
            return False
        if response.status_code != 200:
            logger.warning("Failed to revoke token with Google: %s", response.status_code)
            return False
        return True

    def get_user_email(self, credential: Credential) -> Optional[str]:
        response = self._get(
            f"{settings.GOOGLE_DRIVE_API_URL}/about",
            credential,
            params={"fields": "user(emailAddress)"},
        )
        return response.json().get("user", {}).get("emailAddress")

    # --- Files ---

    def get_file_metadata(self, credential: Credential, file_id: str) -> ProviderFileMetadata:
        response = self._get(
            f"{settings.GOOGLE_DRIVE_API_URL}/files/{file_id}",
            credential,
            params={
                "fields": "id,name,mimeType,modifiedTime,size,owners(emailAddress),shared,hasThumbnail",
                "supportsAllDrives": "true",
            },
        )
        data = response.json()
        size = data.get("size")
        return ProviderFileMetadata(
            file_id=data.get("id", file_id),
            name=data.get("name", ""),
            mime_type=data.get("mimeType", "application/octet-stream"),
            modified_time=data.get("modifiedTime"),
            size=int(size) if size is not None else None,
            owner_emails=[o.get("emailAddress") for o in data.get("owners", []) if o.get("emailAddress")],
            shared=bool(data.get("shared", False)),
            has_thumbnail=bool(data.get("hasThumbnail", False)),
        )

    def open_download(self, credential: Credential, file_id: str,
                      timeout: Optional[int] = None, chunk_size: Optional[int] = None) -> ProviderDownload:
        response = self._get(
            f"{settings.GOOGLE_DRIVE_API_URL}/files/{file_id}",
            credential,
            params={"alt": "media", "supportsAllDrives": "true"},
            stream=True,
            timeout=timeout,
        )
        return ProviderDownload(response, chunk_size or settings.PROXY_CHUNK_SIZE)

    # --- Internals ---

    def _get(self, url: str, credential: Credential, params: Optional[Dict[str, str]] = None,
             stream: bool = False, timeout: Optional[int] = None) -> requests.Response:
        try:
            response = self.session.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {credential.access_token}"},
                stream=stream,
                timeout=timeout or self.timeout,
            )
        except requests.RequestException as e:
            raise UpstreamUnavailableError(f"Could not reach Google Drive: {e}") from e

        if response.status_code >= 400:
            try:
                raise_for_drive_error(response)
            finally:
                response.close()
        return response

    def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = self.session.post(settings.GOOGLE_TOKEN_URI, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamUnavailableError(f"Could not reach the Google token endpoint: {e}") from e

        if response.status_code >= 500:
            raise UpstreamUnavailableError(f"Google token endpoint returned {response.status_code}")
        if response.status_code >= 400:
            error = _json_or_empty(response).get("error", "unknown_error")
            raise RefreshRejectedError(f"Google rejected the token request: {error}")
        return response.json()

    @staticmethod
    def _token_pair(payload: Dict[str, Any], fallback_refresh_token: str) -> TokenPair:
        access_token = payload.get("access_token")
        if not access_token:
            raise RefreshRejectedError("Google did not return an access token")
        expires_in = payload.get("expires_in")
        expires_at = datetime.utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
        return TokenPair(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or fallback_refresh_token,
            expires_at=expires_at,
        )


def _json_or_empty(response: requests.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_reason(response: requests.Response) -> str:
    error = _json_or_empty(response).get("error")
    if not isinstance(error, dict):
        return ""
    errors = error.get("errors") or []
    if errors and isinstance(errors[0], dict):
        return (errors[0].get("reason") or "").lower()
    return (error.get("status") or "").lower()


def raise_for_drive_error(response: requests.Response) -> None:
    """Maps a failed Drive API response onto the typed error taxonomy."""
    status_code = response.status_code
    reason = _error_reason(response)

    if status_code == 404:
        raise ProviderFileNotFoundError()
    if status_code == 401:
        raise ProviderAuthError()
    if status_code == 429 or (status_code == 403 and reason in RATE_LIMIT_REASONS):
        retry_after = response.headers.get("Retry-After")
        raise RateLimitedError(retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None)
    if status_code == 403:
        raise ProviderAccessDeniedError()
    if status_code >= 500:
        raise UpstreamUnavailableError(f"Google Drive returned {status_code}")
    raise InvalidRequestError(message=f"Google Drive rejected the request ({status_code})")
