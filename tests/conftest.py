import os
import threading
import uuid
from datetime import datetime, timedelta

import pytest
from cryptography.fernet import Fernet

# Settings are read at import time, so the environment must be ready first
os.environ["CREDENTIAL_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["SQLITE_DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ.pop("REDIS_HOST", None)

from sqlalchemy.orm import sessionmaker

from ferdinand.core.db import build_engine
from ferdinand.models import (
    Asset, AssetVisibility, Base, Client, ClientMember, ProviderConnection, User, UserRole,
)
from ferdinand.services.credential_vault import CredentialVault, TokenPair
from ferdinand.services.drive_provider import ProviderFileMetadata
from ferdinand.services.exceptions import ProviderFileNotFoundError, RefreshRejectedError
from ferdinand.utils.single_flight import SingleFlight


DRIVE_FILE_ID = "1AbCdEfGhIjKlMnOpQrStUvWxYz012345"


class FakeDownload:
    def __init__(self, data: bytes, content_type: str, chunk_size: int = 4):
        self.data = data
        self.content_type = content_type
        self.content_length = len(data)
        self.chunk_size = chunk_size
        self.closed = False

    def iter_bytes(self):
        for i in range(0, len(self.data), self.chunk_size):
            yield self.data[i:i + self.chunk_size]

    def close(self):
        self.closed = True


class FakeDriveProvider:
    """In-memory stand-in for DriveProviderClient."""

    def __init__(self):
        self.files = {}
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.refresh_error = None
        self.download_error = None
        self.revoked = []
        self.events = []
        self.downloads = []
        self.modified_times = {}
        self.metadata_calls = 0
        self._lock = threading.Lock()

    def add_file(self, file_id: str, data: bytes, content_type: str = "application/pdf",
                 modified_time: str = "2024-05-01T10:00:00.000Z"):
        self.files[file_id] = (data, content_type)
        self.modified_times[file_id] = modified_time

    def build_consent_url(self, state=None):
        return f"https://accounts.example.com/consent?state={state}"

    def exchange_code(self, code):
        return TokenPair(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=datetime.utcnow() + timedelta(hours=1),
        )

    def refresh(self, refresh_token):
        with self._lock:
            self.refresh_calls += 1
        if self.refresh_delay:
            threading.Event().wait(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenPair(
            access_token=f"refreshed-access-{self.refresh_calls}",
            refresh_token="",
            expires_at=datetime.utcnow() + timedelta(hours=1),
        )

    def revoke(self, token):
        self.events.append("revoke")
        self.revoked.append(token)
        return True

    def get_user_email(self, credential):
        return "drive.user@example.com"

    def get_file_metadata(self, credential, file_id):
        self.metadata_calls += 1
        if file_id not in self.files:
            raise ProviderFileNotFoundError()
        _, content_type = self.files[file_id]
        return ProviderFileMetadata(
            file_id=file_id,
            name=file_id,
            mime_type=content_type,
            modified_time=self.modified_times.get(file_id),
        )

    def open_download(self, credential, file_id, timeout=None, chunk_size=None):
        if self.download_error is not None:
            raise self.download_error
        if file_id not in self.files:
            raise ProviderFileNotFoundError()
        data, content_type = self.files[file_id]
        download = FakeDownload(data, content_type)
        self.downloads.append((credential, download))
        return download


class FakeMinio:
    def __init__(self):
        self.objects = {}

    def get_object(self, bucket_name, object_name):
        return _FakeObject(self.objects[(bucket_name, object_name)])


class _FakeObject:
    def __init__(self, data):
        self.data = data

    def read(self):
        return self.data

    def close(self):
        pass

    def release_conn(self):
        pass


@pytest.fixture
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'ferdinand-test.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def provider():
    return FakeDriveProvider()


@pytest.fixture
def minio():
    return FakeMinio()


@pytest.fixture
def vault():
    return CredentialVault()


@pytest.fixture
def flights():
    return SingleFlight()


@pytest.fixture
def make_user(db):
    def _make_user(role=UserRole.STANDARD, email=None, clients=()):
        user = User(
            email=email or f"{uuid.uuid4().hex[:8]}@example.com",
            display_name="Test User",
            role=role.value if isinstance(role, UserRole) else role,
        )
        db.add(user)
        db.flush()
        for client in clients:
            db.add(ClientMember(client_id=client.id, user_id=user.id))
        db.commit()
        db.refresh(user)
        return user
    return _make_user


@pytest.fixture
def client_org(db):
    org = Client(name="Acme Brand")
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


@pytest.fixture
def make_asset(db, client_org):
    def _make_asset(uploaded_by, client=None, visibility=AssetVisibility.SHARED,
                    provider_file_id=DRIVE_FILE_ID, mime_type="application/pdf",
                    sharing=None, source_version="v1", storage_path=None, file_name="brand-guide.pdf"):
        asset = Asset(
            client_id=(client or client_org).id,
            uploaded_by=uploaded_by.id,
            file_name=file_name,
            mime_type=mime_type,
            visibility=visibility,
            is_provider_file=provider_file_id is not None,
            provider_file_id=provider_file_id,
            provider_sharing_metadata=sharing,
            source_version=source_version,
            storage_path=storage_path,
        )
        db.add(asset)
        db.commit()
        db.refresh(asset)
        return asset
    return _make_asset


@pytest.fixture
def connect_drive(db, vault):
    def _connect_drive(user, expires_in=3600, access_token="live-access", refresh_token="live-refresh"):
        record = ProviderConnection(user_id=user.id)
        vault.apply(record, TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.utcnow() + timedelta(seconds=expires_in),
        ))
        record.provider_email = user.email
        db.add(record)
        db.commit()
        db.refresh(record)
        return record
    return _connect_drive


@pytest.fixture
def rejected_refresh():
    return RefreshRejectedError("Google rejected the token request: invalid_grant")
