import io
import threading
from concurrent.futures import ThreadPoolExecutor

import fitz
import pytest
from PIL import Image

from ferdinand.models import AuditRecord, ThumbnailCacheEntry
from ferdinand.services.access_broker import SecureAccessBroker
from ferdinand.services.audit_service import AuditLogger
from ferdinand.services.exceptions import DriveErrorCode, InvalidRequestError, NoThumbnailError
from ferdinand.services.thumbnail_service import ThumbnailCache, ThumbnailSize, render_thumbnail
from ferdinand.services.token_refresh import TokenRefreshCoordinator

DRIVE_FILE_ID = "1AbCdEfGhIjKlMnOpQrStUvWxYz012345"


def png_bytes(width, height, mode="RGB", color=(200, 30, 30)):
    buffer = io.BytesIO()
    if mode == "RGBA":
        color = color + (128,)
    Image.new(mode, (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def pdf_bytes():
    document = fitz.open()
    page = document.new_page(width=595, height=842)
    page.insert_text((72, 72), "Brand guidelines")
    data = document.tobytes()
    document.close()
    return data


class CountingGenerator:
    def __init__(self, payload=b"thumbnail-bytes", delay=0.0):
        self.payload = payload
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
        if self.delay:
            threading.Event().wait(self.delay)
        return self.payload


@pytest.fixture
def owner(make_user, client_org):
    return make_user(email="owner@acme.com", clients=[client_org])


@pytest.fixture
def cache(db, flights):
    return ThumbnailCache(db=db, flights=flights)


class TestGetOrGenerate:
    def test_hit_and_miss_follow_source_version(self, cache, make_asset, owner):
        asset = make_asset(owner)
        generator = CountingGenerator()

        first = cache.get_or_generate(asset.id, ThumbnailSize.SMALL, "v1", generator)
        second = cache.get_or_generate(asset.id, ThumbnailSize.SMALL, "v1", generator)
        assert first == second
        assert generator.calls == 1

        cache.get_or_generate(asset.id, ThumbnailSize.SMALL, "v2", generator)
        assert generator.calls == 2

    def test_sizes_are_cached_separately(self, cache, make_asset, owner, db):
        asset = make_asset(owner)
        generator = CountingGenerator()

        cache.get_or_generate(asset.id, "small", "v1", generator)
        cache.get_or_generate(asset.id, "large", "v1", generator)

        assert generator.calls == 2
        assert db.query(ThumbnailCacheEntry).filter(ThumbnailCacheEntry.asset_id == asset.id).count() == 2

    def test_new_version_overwrites_entry(self, cache, make_asset, owner, db):
        asset = make_asset(owner)
        cache.get_or_generate(asset.id, "small", "v1", CountingGenerator(b"old"))
        cache.get_or_generate(asset.id, "small", "v2", CountingGenerator(b"new"))

        entry = db.get(ThumbnailCacheEntry, (asset.id, "small"))
        assert entry.data == b"new"
        assert entry.source_version == "v2"

    def test_invalid_size(self, cache, make_asset, owner):
        asset = make_asset(owner)
        with pytest.raises(InvalidRequestError) as exc_info:
            cache.get_or_generate(asset.id, "huge", "v1", CountingGenerator())
        assert exc_info.value.code == DriveErrorCode.INVALID_SIZE

    def test_invalidate_drops_every_size(self, cache, make_asset, owner):
        asset = make_asset(owner)
        generator = CountingGenerator()
        for size in ThumbnailSize:
            cache.get_or_generate(asset.id, size, "v1", generator)

        assert cache.invalidate(asset.id) == 3
        cache.get_or_generate(asset.id, "small", "v1", generator)
        assert generator.calls == 4

    def test_concurrent_generation_runs_once(self, session_factory, make_asset, owner, flights):
        asset_id = make_asset(owner).id
        generator = CountingGenerator(delay=0.2)
        callers = 5
        barrier = threading.Barrier(callers)

        def fetch():
            session = session_factory()
            try:
                barrier.wait()
                return ThumbnailCache(db=session, flights=flights).get_or_generate(asset_id, "medium", "v1", generator)
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=callers) as executor:
            results = list(executor.map(lambda _: fetch(), range(callers)))

        assert generator.calls == 1
        assert set(results) == {b"thumbnail-bytes"}


class TestRenderThumbnail:
    def test_image_fits_bounding_box_and_keeps_aspect(self):
        data = render_thumbnail(png_bytes(1000, 500), "image/png", ThumbnailSize.SMALL)

        image = Image.open(io.BytesIO(data))
        assert image.format == "JPEG"
        assert image.size == (150, 75)

    def test_small_image_is_not_upscaled(self):
        data = render_thumbnail(png_bytes(100, 50), "image/png", ThumbnailSize.LARGE)
        assert Image.open(io.BytesIO(data)).size == (100, 50)

    def test_transparent_image_is_flattened(self):
        data = render_thumbnail(png_bytes(300, 300, mode="RGBA"), "image/png", ThumbnailSize.SMALL)
        assert Image.open(io.BytesIO(data)).mode == "RGB"

    def test_pdf_first_page_is_rendered(self):
        data = render_thumbnail(pdf_bytes(), "application/pdf", ThumbnailSize.MEDIUM)

        image = Image.open(io.BytesIO(data))
        assert image.format == "JPEG"
        assert 395 <= image.size[1] <= 400
        assert image.size[0] < image.size[1]

    def test_corrupt_image_has_no_thumbnail(self):
        with pytest.raises(NoThumbnailError) as exc_info:
            render_thumbnail(b"definitely not a png", "image/png", ThumbnailSize.SMALL)
        assert exc_info.value.icon == "image"


class TestGetThumbnail:
    @pytest.fixture
    def full_cache(self, db, provider, vault, flights, minio):
        coordinator = TokenRefreshCoordinator(db=db, provider=provider, vault=vault, flights=flights)
        broker = SecureAccessBroker(db=db, coordinator=coordinator, audit=AuditLogger(db))
        return ThumbnailCache(db=db, broker=broker, minio=minio, flights=flights)

    def test_unsupported_type_returns_icon_without_generating(self, full_cache, make_asset, owner, provider):
        asset = make_asset(owner, mime_type="application/zip", file_name="logos.zip")

        result = full_cache.get_thumbnail(asset, "small", owner)

        assert not result.available
        assert result.icon == "archive"
        assert provider.downloads == []

    def test_drive_asset_is_fetched_through_broker_once(self, full_cache, make_asset, owner, connect_drive,
                                                        provider, db):
        connect_drive(owner)
        provider.add_file(DRIVE_FILE_ID, png_bytes(800, 800), "image/png")
        asset = make_asset(owner, mime_type="image/png", file_name="logo.png")

        first = full_cache.get_thumbnail(asset, "small", owner)
        second = full_cache.get_thumbnail(asset, "small", owner)

        assert first.available and first.data == second.data
        assert Image.open(io.BytesIO(first.data)).size == (150, 150)
        assert len(provider.downloads) == 1
        records = db.query(AuditRecord).all()
        assert len(records) == 1
        assert records[0].action == "proxy_thumbnail"

    def test_edit_in_drive_regenerates_thumbnail(self, full_cache, make_asset, owner, connect_drive, provider, db):
        connect_drive(owner)
        provider.add_file(DRIVE_FILE_ID, png_bytes(800, 800), "image/png", modified_time="2024-05-01T10:00:00.000Z")
        asset = make_asset(owner, mime_type="image/png", file_name="logo.png", source_version=None)

        first = full_cache.get_thumbnail(asset, "small", owner)
        assert asset.source_version == "2024-05-01T10:00:00.000Z"

        provider.add_file(DRIVE_FILE_ID, png_bytes(800, 400, color=(30, 30, 200)), "image/png",
                          modified_time="2024-06-12T08:30:00.000Z")
        second = full_cache.get_thumbnail(asset, "small", owner)

        assert len(provider.downloads) == 2
        assert first.data != second.data
        assert Image.open(io.BytesIO(second.data)).size == (150, 75)
        db.refresh(asset)
        assert asset.source_version == "2024-06-12T08:30:00.000Z"
        entry = db.get(ThumbnailCacheEntry, (asset.id, "small"))
        assert entry.source_version == "2024-06-12T08:30:00.000Z"

    def test_local_asset_is_read_from_object_storage(self, full_cache, make_asset, owner, minio):
        minio.objects[("ferdinand-assets", "logos/mark.png")] = png_bytes(400, 200)
        asset = make_asset(owner, provider_file_id=None, mime_type="image/png",
                           storage_path="/ferdinand-assets/logos/mark.png", file_name="mark.png")

        result = full_cache.get_thumbnail(asset, "small", owner)

        assert Image.open(io.BytesIO(result.data)).size == (150, 75)
