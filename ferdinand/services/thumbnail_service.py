import enum
import io
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import fitz  # PyMuPDF
from minio import Minio
from PIL import Image, ImageOps, UnidentifiedImageError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import Asset, CapabilityAction, ThumbnailCacheEntry, User
from ..utils.file_utils import can_generate_thumbnail, get_file_type_icon, is_pdf
from ..utils.single_flight import SingleFlight
from ..utils.storage_utils import read_object
from .access_broker import SecureAccessBroker
from .audit_service import RequestContext
from .exceptions import DriveErrorCode, InvalidRequestError, NoThumbnailError, ProviderAuthError

logger = logging.getLogger(__name__)


class ThumbnailSize(str, enum.Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


# Bounding box edge in pixels
THUMBNAIL_PIXELS = {
    ThumbnailSize.SMALL: 150,
    ThumbnailSize.MEDIUM: 400,
    ThumbnailSize.LARGE: 800,
}

THUMBNAIL_CONTENT_TYPE = "image/jpeg"

# Used when an asset predates version tracking
UNVERSIONED = "unversioned"

thumbnail_flights = SingleFlight()


@dataclass(frozen=True)
class ThumbnailResult:
    data: Optional[bytes] = None
    icon: Optional[str] = None
    content_type: str = THUMBNAIL_CONTENT_TYPE

    @property
    def available(self) -> bool:
        return self.data is not None


def parse_size(size) -> ThumbnailSize:
    try:
        return ThumbnailSize(size)
    except ValueError:
        raise InvalidRequestError(DriveErrorCode.INVALID_SIZE)


def render_thumbnail(data: bytes, mime_type: str, size: ThumbnailSize) -> bytes:
    """
    Rasterises an image or the first page of a PDF into a JPEG that fits the
    size's bounding box. Images are never upscaled.
    """
    box = THUMBNAIL_PIXELS[parse_size(size)]
    try:
        image = _render_pdf_page(data, box) if is_pdf(mime_type) else Image.open(io.BytesIO(data))
        image = ImageOps.exif_transpose(image)
        image = _flatten(image)
        image.thumbnail((box, box), Image.Resampling.LANCZOS)

        output = io.BytesIO()
        image.save(output, format="JPEG", quality=settings.THUMBNAIL_JPEG_QUALITY, optimize=True)
        return output.getvalue()
    except (UnidentifiedImageError, OSError, RuntimeError, ValueError) as e:
        logger.warning("Could not render %s thumbnail (%s): %s", mime_type, size, e)
        raise NoThumbnailError(icon=get_file_type_icon(mime_type))


def _render_pdf_page(data: bytes, box: int) -> Image.Image:
    pdf_document = None
    try:
        pdf_document = fitz.open(stream=data, filetype="pdf")
        if pdf_document.page_count == 0:
            raise ValueError("PDF has no pages")
        page = pdf_document.load_page(0)
        zoom = box / max(page.rect.width, page.rect.height, 1)
        pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
        return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
    finally:
        if pdf_document:
            pdf_document.close()


def _flatten(image: Image.Image) -> Image.Image:
    # JPEG has no alpha channel; composite onto white
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


class ThumbnailCache:
    """
    Thumbnails keyed by (asset_id, size), regenerated whenever the origin's
    source_version changes.
    """

    def __init__(self, db: Session, broker: Optional[SecureAccessBroker] = None,
                 minio: Optional[Minio] = None, flights: Optional[SingleFlight] = None):
        self.db = db
        self.broker = broker
        self.minio = minio
        self.flights = flights or thumbnail_flights

    def get_or_generate(self, asset_id: uuid.UUID, size, source_version: str,
                        generator: Callable[[], bytes]) -> bytes:
        size = parse_size(size)
        cached = self._lookup(asset_id, size, source_version)
        if cached is not None:
            return cached

        key = (str(asset_id), size.value, source_version)
        return self.flights.do(key, lambda: self._generate(asset_id, size, source_version, generator))

    def get_thumbnail(self, asset: Asset, size, requested_by: User,
                      request: Optional[RequestContext] = None) -> ThumbnailResult:
        """
        Serves the thumbnail for an asset the caller may already read. Types
        that cannot be rasterised get an icon name instead.
        """
        size = parse_size(size)
        if not can_generate_thumbnail(asset.mime_type):
            return ThumbnailResult(icon=get_file_type_icon(asset.mime_type))

        def generator() -> bytes:
            origin = self._fetch_origin(asset, requested_by, request)
            return render_thumbnail(origin, asset.mime_type, size)

        data = self.get_or_generate(asset.id, size, self._source_version(asset, requested_by), generator)
        return ThumbnailResult(data=data)

    def invalidate(self, asset_id: uuid.UUID) -> int:
        deleted = (
            self.db.query(ThumbnailCacheEntry)
            .filter(ThumbnailCacheEntry.asset_id == asset_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Invalidated %d cached thumbnails for asset %s", deleted, asset_id)
        return deleted

    # --- Internals ---

    def _source_version(self, asset: Asset, requested_by: User) -> str:
        """
        Drive files are versioned by their live modifiedTime so edits made in
        Drive invalidate the cached preview. The value is kept on the asset.
        """
        if not (asset.is_provider_file and asset.provider_file_id) or self.broker is None:
            return asset.source_version or UNVERSIONED

        coordinator = self.broker.coordinator
        credential = coordinator.get_live_credential(requested_by.id)
        try:
            metadata = self.broker.provider.get_file_metadata(credential, asset.provider_file_id)
        except ProviderAuthError:
            coordinator.mark_stale(requested_by.id)
            raise

        if metadata.modified_time and metadata.modified_time != asset.source_version:
            logger.info("Drive file %s changed (%s -> %s)", asset.provider_file_id,
                        asset.source_version, metadata.modified_time)
            asset.source_version = metadata.modified_time
            self.db.commit()
        return asset.source_version or UNVERSIONED

    def _lookup(self, asset_id: uuid.UUID, size: ThumbnailSize, source_version: str) -> Optional[bytes]:
        entry = self.db.get(ThumbnailCacheEntry, (asset_id, size.value))
        if entry is not None and entry.source_version == source_version:
            return entry.data
        return None

    def _generate(self, asset_id: uuid.UUID, size: ThumbnailSize, source_version: str,
                  generator: Callable[[], bytes]) -> bytes:
        # A previous flight may have filled the entry while we queued
        self.db.expire_all()
        cached = self._lookup(asset_id, size, source_version)
        if cached is not None:
            return cached

        logger.info("Generating %s thumbnail for asset %s (version %s)", size.value, asset_id, source_version)
        data = generator()
        self._store(asset_id, size, source_version, data)
        return data

    def _store(self, asset_id: uuid.UUID, size: ThumbnailSize, source_version: str, data: bytes) -> None:
        entry = self.db.get(ThumbnailCacheEntry, (asset_id, size.value))
        if entry is None:
            entry = ThumbnailCacheEntry(asset_id=asset_id, size=size.value)
            self.db.add(entry)
        entry.data = data
        entry.content_type = THUMBNAIL_CONTENT_TYPE
        entry.source_version = source_version
        entry.cached_at = datetime.utcnow()
        try:
            self.db.commit()
        except IntegrityError:
            # Another worker inserted the same key first; its bytes are equivalent
            self.db.rollback()
            logger.info("Thumbnail for asset %s (%s) was stored concurrently", asset_id, size.value)

    def _fetch_origin(self, asset: Asset, requested_by: User, request: Optional[RequestContext]) -> bytes:
        if asset.is_provider_file and asset.provider_file_id:
            if self.broker is None:
                raise RuntimeError("ThumbnailCache needs a SecureAccessBroker for Drive assets")
            capability = self.broker.issue(
                requested_by.id,
                asset.provider_file_id,
                CapabilityAction.THUMBNAIL,
                ttl_seconds=settings.CAPABILITY_MIN_TTL_SECONDS,
                asset_id=asset.id,
            )
            stream = self.broker.open_stream(capability.token, asset.provider_file_id,
                                             CapabilityAction.THUMBNAIL, request)
            return stream.read()

        if asset.storage_path:
            if self.minio is None:
                raise RuntimeError("ThumbnailCache needs a MinIO client for local assets")
            return read_object(self.minio, asset.storage_path)

        raise NoThumbnailError(icon=get_file_type_icon(asset.mime_type))
