import threading
from datetime import datetime, timedelta
from concurrent.futures import ThreadPoolExecutor
from unittest import mock

import pytest
import redis

from ferdinand.models import ProviderConnection
from ferdinand.services.credential_vault import TokenPair
from ferdinand.services.exceptions import (
    AuthRequiredError,
    DriveErrorCode,
    TokenRefreshFailedError,
    UpstreamUnavailableError,
)
from ferdinand.services.token_refresh import TokenRefreshCoordinator


@pytest.fixture
def coordinator(db, provider, vault, flights):
    return TokenRefreshCoordinator(db=db, provider=provider, vault=vault, flights=flights)


def test_missing_record_requires_auth_with_consent_url(coordinator, make_user, provider):
    user = make_user()

    with pytest.raises(AuthRequiredError) as exc_info:
        coordinator.get_live_credential(user.id)

    assert exc_info.value.code == DriveErrorCode.AUTH_REQUIRED
    assert exc_info.value.consent_url.startswith("https://accounts.example.com/consent")
    assert provider.refresh_calls == 0


def test_live_credential_is_returned_without_refresh(coordinator, make_user, connect_drive, provider, db):
    user = make_user()
    record = connect_drive(user, expires_in=3600)

    credential = coordinator.get_live_credential(user.id)

    assert credential.access_token == "live-access"
    assert credential.user_id == user.id
    assert provider.refresh_calls == 0
    db.refresh(record)
    assert record.last_used_at is not None


def test_expired_credential_is_refreshed_and_persisted(coordinator, make_user, connect_drive, provider, vault, db):
    user = make_user()
    record = connect_drive(user, expires_in=-60)

    credential = coordinator.get_live_credential(user.id)

    assert credential.access_token == "refreshed-access-1"
    assert provider.refresh_calls == 1
    db.refresh(record)
    tokens = vault.decrypt(record)
    assert tokens.access_token == "refreshed-access-1"
    # Google omitted a new refresh token, so the old one is kept
    assert tokens.refresh_token == "live-refresh"
    assert not vault.is_expired(record)


def test_credential_inside_skew_window_is_refreshed(coordinator, make_user, connect_drive, provider):
    user = make_user()
    connect_drive(user, expires_in=30)

    coordinator.get_live_credential(user.id)

    assert provider.refresh_calls == 1


def test_concurrent_callers_share_one_refresh(session_factory, make_user, connect_drive, provider, vault, flights):
    user = make_user()
    connect_drive(user, expires_in=-60)
    user_id = user.id
    provider.refresh_delay = 0.3
    callers = 10
    barrier = threading.Barrier(callers)

    def get_credential():
        session = session_factory()
        try:
            coordinator = TokenRefreshCoordinator(db=session, provider=provider, vault=vault, flights=flights)
            barrier.wait()
            return coordinator.get_live_credential(user_id)
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=callers) as executor:
        credentials = list(executor.map(lambda _: get_credential(), range(callers)))

    assert provider.refresh_calls == 1
    assert {c.access_token for c in credentials} == {"refreshed-access-1"}


def test_rejected_refresh_flags_record_and_fails_fast(coordinator, make_user, connect_drive, provider,
                                                      rejected_refresh, db):
    user = make_user()
    record = connect_drive(user, expires_in=-60)
    provider.refresh_error = rejected_refresh

    with pytest.raises(TokenRefreshFailedError) as exc_info:
        coordinator.get_live_credential(user.id)
    assert exc_info.value.consent_url

    db.refresh(record)
    assert record.reauth_required is True
    assert "invalid_grant" in record.last_refresh_error

    # No second provider call once re-consent is required
    with pytest.raises(TokenRefreshFailedError):
        coordinator.get_live_credential(user.id)
    assert provider.refresh_calls == 1


def test_provider_outage_does_not_flag_reauth(coordinator, make_user, connect_drive, provider, db):
    user = make_user()
    record = connect_drive(user, expires_in=-60)
    provider.refresh_error = UpstreamUnavailableError()

    with pytest.raises(UpstreamUnavailableError):
        coordinator.get_live_credential(user.id)

    db.refresh(record)
    assert record.reauth_required is False


def test_mark_stale_forces_next_refresh(coordinator, make_user, connect_drive, provider):
    user = make_user()
    connect_drive(user, expires_in=3600)

    coordinator.mark_stale(user.id)
    coordinator.get_live_credential(user.id)

    assert provider.refresh_calls == 1


def test_refresh_is_serialised_with_redis_lock(db, provider, vault, flights, make_user, connect_drive):
    user = make_user()
    connect_drive(user, expires_in=-60)
    redis_client = mock.MagicMock()
    redis_client.lock.return_value.acquire.return_value = True
    coordinator = TokenRefreshCoordinator(db=db, provider=provider, vault=vault,
                                          redis_client=redis_client, flights=flights)

    coordinator.get_live_credential(user.id)

    assert redis_client.lock.call_args[0][0] == f"drive:refresh:{user.id}"
    redis_client.lock.return_value.release.assert_called_once()
    assert provider.refresh_calls == 1


def test_redis_failure_surfaces_as_upstream_unavailable(db, provider, vault, flights, make_user, connect_drive):
    user = make_user()
    connect_drive(user, expires_in=-60)
    redis_client = mock.MagicMock()
    redis_client.lock.return_value.acquire.side_effect = redis.ConnectionError("redis down")
    coordinator = TokenRefreshCoordinator(db=db, provider=provider, vault=vault,
                                          redis_client=redis_client, flights=flights)

    with pytest.raises(UpstreamUnavailableError):
        coordinator.get_live_credential(user.id)
    assert provider.refresh_calls == 0


def test_worker_reuses_token_refreshed_elsewhere(db, provider, vault, flights, make_user, connect_drive):
    """A worker that waited on the lock finds the record already rotated."""
    user = make_user()
    record = connect_drive(user, expires_in=-60)
    redis_client = mock.MagicMock()

    def acquire():
        # Simulate another process finishing its refresh while we waited
        other = db.query(ProviderConnection).filter(ProviderConnection.id == record.id).first()
        vault.apply(other, TokenPair("rotated-elsewhere", "live-refresh", datetime.utcnow() + timedelta(hours=1)))
        db.commit()
        return True

    redis_client.lock.return_value.acquire.side_effect = acquire
    coordinator = TokenRefreshCoordinator(db=db, provider=provider, vault=vault,
                                          redis_client=redis_client, flights=flights)

    credential = coordinator.get_live_credential(user.id)

    assert credential.access_token == "rotated-elsewhere"
    assert provider.refresh_calls == 0
