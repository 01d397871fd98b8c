"""
Object storage helpers for MinIO.
"""

from typing import Tuple
from minio import Minio


def parse_storage_path(storage_path: str) -> Tuple[str, str]:
    """
    Splits a storage path into bucket and object names.

    Args:
        storage_path: path of the form "/bucket_name/object_name"

    Returns:
        (bucket_name, object_name)

    Raises:
        ValueError: if the path is malformed
    """
    if not storage_path or not storage_path.startswith('/'):
        raise ValueError("Storage path must start with '/'")

    parts = storage_path.split('/', 2)
    if len(parts) < 3 or not parts[1] or not parts[2]:
        raise ValueError("Invalid storage path, expected '/bucket_name/object_name'")

    return parts[1], parts[2]


def generate_storage_path(bucket_name: str, object_name: str) -> str:
    return f"/{bucket_name}/{object_name}"


def read_object(minio: Minio, storage_path: str) -> bytes:
    """Reads a whole object into memory and releases the connection."""
    bucket_name, object_name = parse_storage_path(storage_path)
    response = None
    try:
        response = minio.get_object(bucket_name=bucket_name, object_name=object_name)
        return response.read()
    finally:
        if response:
            response.close()
            response.release_conn()
