import logging

from minio import Minio
from ..core.config import settings

logger = logging.getLogger(__name__)

minio_client = Minio(
    endpoint=settings.MINIO_ENDPOINT,
    access_key=settings.MINIO_ROOT_USER,
    secret_key=settings.MINIO_ROOT_PASSWORD,
    secure=settings.MINIO_SECURE
)

def get_minio_client() -> Minio:
    """FastAPI dependency to get the Minio client."""
    return minio_client

def ensure_buckets_exist():
    """
    Checks if the asset bucket exists in Minio and creates it if it doesn't.
    This function is intended to be called on application startup.
    """
    bucket_name = settings.MINIO_BUCKET_ASSETS
    try:
        if not minio_client.bucket_exists(bucket_name):
            minio_client.make_bucket(bucket_name)
            logger.info("Created Minio bucket: %s", bucket_name)
        else:
            logger.info("Minio bucket '%s' already exists.", bucket_name)
    except Exception as e:
        logger.error("Error checking or creating Minio bucket '%s': %s", bucket_name, e)
        raise
