from pydantic_settings import BaseSettings
from typing import Optional, List


class Settings(BaseSettings):
    # Database Configuration - supports either SQLite or PostgreSQL
    SQLITE_DATABASE_URL: Optional[str] = None

    POSTGRES_USER: Optional[str] = None
    POSTGRES_PASSWORD: Optional[str] = None
    POSTGRES_DB: Optional[str] = None
    POSTGRES_HOST: Optional[str] = None
    POSTGRES_PORT: Optional[int] = None

    @property
    def DATABASE_URL(self) -> str:
        if self.SQLITE_DATABASE_URL:
            return self.SQLITE_DATABASE_URL
        elif all([self.POSTGRES_USER, self.POSTGRES_PASSWORD, self.POSTGRES_DB, self.POSTGRES_HOST, self.POSTGRES_PORT]):
            return f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        else:
            # Local development falls back to a file next to the process
            return "sqlite:///./ferdinand.db"

    # Minio (originals of locally uploaded assets)
    MINIO_ENDPOINT: str = "localhost:9000"
    MINIO_ROOT_USER: str = "minioadmin"
    MINIO_ROOT_PASSWORD: str = "minioadmin"
    MINIO_SECURE: bool = False
    MINIO_BUCKET_ASSETS: str = "ferdinand-assets"

    # Redis is optional; without it refreshes are only serialised in-process
    REDIS_HOST: Optional[str] = None
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REFRESH_LOCK_TIMEOUT_SECONDS: int = 30

    # JWT Authentication (tokens are issued by the web layer)
    SECRET_KEY: str = "a_very_secret_key_that_should_be_changed"
    ALGORITHM: str = "HS256"
    OAUTH_STATE_EXPIRE_MINUTES: int = 10

    # Credential Encryption
    CREDENTIAL_ENCRYPTION_KEY: str = "generate_a_32_byte_url_safe_base64_key_for_this"

    # Google Drive OAuth
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://localhost:8011/api/v1/drive/auth/callback"
    GOOGLE_OAUTH_SCOPES: List[str] = [
        "https://www.googleapis.com/auth/drive.readonly",
        "https://www.googleapis.com/auth/drive.metadata.readonly",
    ]
    GOOGLE_AUTH_URI: str = "https://accounts.google.com/o/oauth2/v2/auth"
    GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    GOOGLE_REVOKE_URI: str = "https://oauth2.googleapis.com/revoke"
    GOOGLE_DRIVE_API_URL: str = "https://www.googleapis.com/drive/v3"

    # Provider token handling
    TOKEN_EXPIRY_SKEW_SECONDS: int = 60
    PROVIDER_TIMEOUT_SECONDS: int = 30

    # Capability tokens
    CAPABILITY_DEFAULT_TTL_SECONDS: int = 300
    CAPABILITY_MIN_TTL_SECONDS: int = 60
    CAPABILITY_MAX_TTL_SECONDS: int = 900
    CAPABILITY_SWEEP_INTERVAL_SECONDS: int = 300
    PROXY_CHUNK_SIZE: int = 64 * 1024

    # Thumbnails
    THUMBNAIL_JPEG_QUALITY: int = 85

    # API Configuration
    API_BASE_URL: str = "http://localhost:8011"

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = 'ignore'

settings = Settings()
