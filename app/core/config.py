from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, Optional
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'fiscal_user'
    POSTGRES_PASSWORD: str = ''
    POSTGRES_DB: str = 'fiscal_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    # Full URL override (e.g. sqlite:// for local runs)
    DATABASE_URL: Optional[str] = None

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # MinIO settings
    MINIO_HOST: str = 'minio'
    MINIO_PORT: int = 9000
    MINIO_ACCESS_KEY: str = ''
    MINIO_SECRET_KEY: str = ''
    MINIO_CERTIFICATE_BUCKET: str = 'fiscal-certificates'
    MINIO_USE_SSL: bool = False

    # Certificate vault. No default: the process must not start without it.
    FISCAL_CERT_ENCRYPTION_KEY: str
    FISCAL_CERT_KEY_VERSION: int = 1
    # Retired secrets, keyed by version, kept so old rows stay decryptable
    FISCAL_CERT_PREVIOUS_KEYS: Dict[int, str] = {}
    MAX_CERTIFICATE_SIZE: int = 1 * 1024 * 1024  # 1MB

    # Focus NFe provider
    FOCUSNFE_PRODUCTION_URL: str = 'https://api.focusnfe.com.br'
    FOCUSNFE_SANDBOX_URL: str = 'https://homologacao.focusnfe.com.br'
    FOCUSNFE_TIMEOUT_SECONDS: float = 30.0
    FOCUSNFE_WEBHOOK_SECRET: Optional[str] = None

    # Background reconciliation
    FISCAL_RECONCILE_INTERVAL_SECONDS: float = 300.0
    FISCAL_RECONCILE_MIN_AGE_SECONDS: int = 120
    FISCAL_RECONCILE_BATCH_SIZE: int = 50

    # Pagination
    DEFAULT_PAGE_SIZE: int = 50
    MAX_PAGE_SIZE: int = 200

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def minio_endpoint(self) -> str:
        return f"{self.MINIO_HOST}:{self.MINIO_PORT}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("FISCAL_CERT_ENCRYPTION_KEY")
    @classmethod
    def require_encryption_key(cls, v):
        if not v or not v.strip():
            raise ValueError("FISCAL_CERT_ENCRYPTION_KEY must not be empty")
        return v

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("MINIO_USE_SSL", mode="before")
    @classmethod
    def parse_ssl(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

settings = Settings()
