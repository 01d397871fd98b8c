import io
import json
from unittest import mock
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from ferdinand.services.drive_provider import Credential, DriveProviderClient
from ferdinand.services.exceptions import (
    DriveErrorCode,
    ProviderAccessDeniedError,
    ProviderAuthError,
    ProviderFileNotFoundError,
    RateLimitedError,
    RefreshRejectedError,
    UpstreamUnavailableError,
)

FILE_ID = "1AbCdEfGhIjKlMnOpQrStUvWxYz012345"
CREDENTIAL = Credential(user_id="user-1", access_token="ya29.live")


def make_response(status_code, payload=None, headers=None, raw=None):
    response = requests.Response()
    response.status_code = status_code
    if payload is not None:
        response._content = json.dumps(payload).encode()
        response.headers["Content-Type"] = "application/json"
    response.raw = io.BytesIO(raw or b"")
    response.headers.update(headers or {})
    return response


def drive_error(status_code, reason):
    return make_response(status_code, {"error": {"code": status_code, "errors": [{"reason": reason}]}})


@pytest.fixture
def session():
    return mock.MagicMock(spec=requests.Session)


@pytest.fixture
def client(session):
    return DriveProviderClient(session=session, timeout=5)


class TestErrorMapping:
    @pytest.mark.parametrize("response,error_type,code", [
        (drive_error(404, "notFound"), ProviderFileNotFoundError, DriveErrorCode.PROVIDER_FILE_NOT_FOUND),
        (drive_error(403, "insufficientFilePermissions"), ProviderAccessDeniedError,
         DriveErrorCode.PROVIDER_ACCESS_DENIED),
        (drive_error(403, "userRateLimitExceeded"), RateLimitedError, DriveErrorCode.RATE_LIMIT_EXCEEDED),
        (drive_error(429, "rateLimitExceeded"), RateLimitedError, DriveErrorCode.RATE_LIMIT_EXCEEDED),
        (drive_error(401, "authError"), ProviderAuthError, DriveErrorCode.PROVIDER_AUTH_FAILED),
        (make_response(503), UpstreamUnavailableError, DriveErrorCode.UPSTREAM_UNAVAILABLE),
    ])
    def test_status_codes_map_to_typed_errors(self, client, session, response, error_type, code):
        session.get.return_value = response

        with pytest.raises(error_type) as exc_info:
            client.get_file_metadata(CREDENTIAL, FILE_ID)
        assert exc_info.value.code == code

    def test_timeout_is_upstream_unavailable(self, client, session):
        session.get.side_effect = requests.Timeout("read timed out")

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            client.open_download(CREDENTIAL, FILE_ID)
        assert exc_info.value.retryable

    def test_any_transport_failure_is_upstream_unavailable(self, client, session):
        session.get.side_effect = requests.exceptions.TooManyRedirects("redirect loop")

        with pytest.raises(UpstreamUnavailableError):
            client.get_file_metadata(CREDENTIAL, FILE_ID)

    def test_broken_body_is_upstream_unavailable(self, client, session):
        response = make_response(200, headers={"Content-Type": "application/pdf"})

        def iter_content(chunk_size=1):
            yield b"0123"
            raise requests.exceptions.ChunkedEncodingError("connection broken")

        response.iter_content = iter_content
        session.get.return_value = response
        chunks = client.open_download(CREDENTIAL, FILE_ID, chunk_size=4).iter_bytes()

        assert next(chunks) == b"0123"
        with pytest.raises(UpstreamUnavailableError):
            next(chunks)

    def test_retry_after_is_kept(self, client, session):
        session.get.return_value = make_response(429, {"error": {}}, headers={"Retry-After": "12"})

        with pytest.raises(RateLimitedError) as exc_info:
            client.get_file_metadata(CREDENTIAL, FILE_ID)
        assert exc_info.value.retry_after == 12


class TestFiles:
    def test_metadata_is_parsed(self, client, session):
        session.get.return_value = make_response(200, {
            "id": FILE_ID,
            "name": "brand-guide.pdf",
            "mimeType": "application/pdf",
            "modifiedTime": "2024-05-01T10:00:00.000Z",
            "size": "2048",
            "owners": [{"emailAddress": "owner@acme.com"}],
            "shared": True,
        })

        metadata = client.get_file_metadata(CREDENTIAL, FILE_ID)

        assert metadata.name == "brand-guide.pdf"
        assert metadata.size == 2048
        assert metadata.owner_emails == ["owner@acme.com"]
        assert metadata.shared is True
        _, kwargs = session.get.call_args
        assert kwargs["headers"] == {"Authorization": "Bearer ya29.live"}

    def test_download_streams_with_the_callers_token(self, client, session):
        session.get.return_value = make_response(
            200, raw=b"0123456789", headers={"Content-Type": "application/pdf", "Content-Length": "10"},
        )

        download = client.open_download(CREDENTIAL, FILE_ID, chunk_size=4)

        assert download.content_type == "application/pdf"
        assert download.content_length == 10
        assert b"".join(download.iter_bytes()) == b"0123456789"
        _, kwargs = session.get.call_args
        assert kwargs["stream"] is True
        assert kwargs["params"]["alt"] == "media"


class TestOAuth:
    def test_consent_url_requests_offline_access(self, client):
        url = client.build_consent_url(state="signed-state")
        query = parse_qs(urlparse(url).query)

        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["state"] == ["signed-state"]
        assert "drive.readonly" in query["scope"][0]

    def test_refresh_keeps_old_refresh_token_when_omitted(self, client, session):
        session.post.return_value = make_response(200, {"access_token": "ya29.new", "expires_in": 3599})

        tokens = client.refresh("1//old-refresh")

        assert tokens.access_token == "ya29.new"
        assert tokens.refresh_token == "1//old-refresh"
        assert tokens.expires_at is not None

    def test_invalid_grant_is_refresh_rejected(self, client, session):
        session.post.return_value = make_response(400, {"error": "invalid_grant"})

        with pytest.raises(RefreshRejectedError) as exc_info:
            client.refresh("1//revoked")
        assert "invalid_grant" in exc_info.value.message

    def test_token_endpoint_outage_is_upstream_unavailable(self, client, session):
        session.post.return_value = make_response(502)

        with pytest.raises(UpstreamUnavailableError):
            client.refresh("1//old-refresh")

    def test_revoke_failure_returns_false(self, client, session):
        session.post.side_effect = requests.ConnectionError("no route")
        assert client.revoke("1//refresh") is False
