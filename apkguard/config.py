from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
import os

class Settings(BaseSettings):
    # Database - DATABASE_URL from the platform, fallback to SQLite for local
    database_url: Optional[str] = None

    # Redis / job queue
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    queue_name: str = "decompilation-queue"
    job_attempts: int = 3
    job_backoff_ms: int = 5000
    job_backoff_cap_ms: int = 5 * 60 * 1000
    job_lock_ms: int = 10 * 60 * 1000  # A claimed job is considered stalled after this

    # File Storage
    upload_dir: str = "/tmp/uploads"
    output_dir: str = "/tmp/apk-output"
    max_upload_mb: int = 100
    retention_days: int = 7

    # Decompilation: "apktool" decodes binary manifests, "archive" only unzips (plain-XML fixtures)
    decompiler: str = "apktool"
    apktool_path: str = "apktool"
    decompile_timeout_seconds: int = 600

    # Worker
    worker_poll_interval: float = 2.0
    worker_max_idle_interval: float = 10.0

    # Auth
    jwt_secret: str = "change-me"
    jwt_expires_minutes: int = 60 * 24

    # Rate limits
    upload_rate_limit: str = "5 per 15 minutes"
    default_rate_limit: str = "100 per 15 minutes"

    # App Settings
    app_name: str = "APKGuard"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    allowed_origins: str = "*"

    # API Settings
    backend_host: str = "0.0.0.0"
    backend_port: int = int(os.getenv("PORT", "3000"))

    class Config:
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Auto-detect database URL
        if self.database_url is None:
            self.database_url = "sqlite+aiosqlite:///./database/apkguard.db"
        # Platforms hand out postgres:// URLs, SQLAlchemy async needs postgresql+asyncpg://
        if self.database_url.startswith("postgres://"):
            self.database_url = self.database_url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif self.database_url.startswith("postgresql://"):
            self.database_url = self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

@lru_cache()
def get_settings() -> Settings:
    return Settings()
