"""
File helpers: hashing, MIME detection, thumbnail support and icon names.
"""

import hashlib
import mimetypes
import re


SUPPORTED_IMAGE_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/tiff",
}

SUPPORTED_PDF_TYPES = {"application/pdf"}

# Drive file ids are URL-safe base64-ish strings, typically 25-44 characters
_PROVIDER_FILE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{10,100}$")


def calculate_file_hash(content: bytes, algorithm: str = "sha256") -> str:
    """
    Returns the hex digest of the content.

    Args:
        content: file bytes
        algorithm: "sha256" (default) or "md5"
    """
    if algorithm.lower() == "sha256":
        return hashlib.sha256(content).hexdigest()
    elif algorithm.lower() == "md5":
        return hashlib.md5(content).hexdigest()
    else:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")


def detect_mime_type(filename: str, fallback: str = "application/octet-stream") -> str:
    detected_mime_type, _ = mimetypes.guess_type(filename)
    return detected_mime_type or fallback


def can_generate_thumbnail(mime_type: str) -> bool:
    mime_type = (mime_type or "").lower()
    return mime_type in SUPPORTED_IMAGE_TYPES or mime_type in SUPPORTED_PDF_TYPES


def is_pdf(mime_type: str) -> bool:
    return (mime_type or "").lower() in SUPPORTED_PDF_TYPES


def get_file_type_icon(mime_type: str) -> str:
    """Icon name the web layer shows when no thumbnail exists."""
    mime_type = (mime_type or "").lower()

    if mime_type.startswith("image/"):
        return "image"
    if "pdf" in mime_type:
        return "file-text"
    if "spreadsheet" in mime_type or "excel" in mime_type:
        return "table"
    if "presentation" in mime_type or "powerpoint" in mime_type:
        return "presentation"
    if "document" in mime_type or "word" in mime_type or "text" in mime_type:
        return "file-text"
    if mime_type.startswith("video/"):
        return "video"
    if mime_type.startswith("audio/"):
        return "music"
    if "zip" in mime_type or "rar" in mime_type or "tar" in mime_type:
        return "archive"
    return "file"


def is_valid_provider_file_id(file_id: str) -> bool:
    """
    Rejects anything that is not a plausible Drive file id before it is
    interpolated into a provider URL.
    """
    if not file_id or not isinstance(file_id, str):
        return False
    return _PROVIDER_FILE_ID_PATTERN.match(file_id) is not None
