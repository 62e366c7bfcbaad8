from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional
import os

DEFAULT_ALLOWED_TYPES = (
    "application/pdf,"
    "application/msword,"
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
)


class Settings(BaseSettings):
    # Database - PostgreSQL via DATABASE_URL, fallback to SQLite for local
    database_url: Optional[str] = None
    debug: bool = False

    # File Storage
    upload_dir: str = "./uploads/cvs"
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    allowed_file_types: str = DEFAULT_ALLOWED_TYPES
    storage_quota_bytes: int = 10 * 1024 * 1024 * 1024  # 10GB

    # Email
    email_provider: str = "smtp"  # smtp | sendgrid
    email_from_address: str = "noreply@skilltude.com"
    email_from_name: str = "SkillTude Team"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_use_tls: bool = True
    smtp_user: str = ""
    smtp_password: str = ""
    sendgrid_api_key: str = ""

    # Delivery queue
    email_delay_hours: int = 24
    email_max_retries: int = 3
    email_retry_delay_minutes: int = 30
    email_batch_size: int = 100
    email_send_timeout_seconds: float = 30.0
    email_claim_lease_minutes: int = 15
    reanalysis_max_attempts: int = 3
    reanalysis_interval_minutes: int = 60
    worker_interval_minutes: int = 15

    # Optional Redis run lease for the worker
    redis_url: str = ""

    # Alerting
    alert_recipients: str = ""
    alert_cooldown_minutes: int = 60
    upload_failure_rate_threshold: float = 10.0  # percent
    email_delivery_rate_threshold: float = 90.0  # percent
    storage_usage_threshold: float = 80.0  # percent

    class Config:
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Auto-detect database URL
        db_url = self.database_url or os.getenv("DATABASE_URL")
        if db_url:
            # Hosted Postgres hands out postgres:// or postgresql://, async SQLAlchemy needs asyncpg
            if db_url.startswith("postgres://"):
                db_url = db_url.replace("postgres://", "postgresql+asyncpg://", 1)
            elif db_url.startswith("postgresql://"):
                db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
            self.database_url = db_url
        else:
            # Fallback to local SQLite
            self.database_url = "sqlite+aiosqlite:///./database/cv_pipeline.db"

    @property
    def allowed_types(self) -> List[str]:
        return [t.strip() for t in self.allowed_file_types.split(",") if t.strip()]

    @property
    def alert_recipient_list(self) -> List[str]:
        return [r.strip() for r in self.alert_recipients.split(",") if r.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
