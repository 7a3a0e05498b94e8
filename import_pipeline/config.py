"""
Runtime configuration loaded from environment variables (and .env if present).
"""
import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got: {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got: {raw!r}")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    database_url: str = ""
    environment: str = "production"
    log_level: str = "INFO"
    port: int = 8000

    # Job queue
    max_concurrent_jobs: int = 2
    job_timeout_seconds: float = 1800.0
    job_retention_hours: float = 24.0
    cleanup_interval_seconds: float = 3600.0

    # Input limits
    max_file_size_bytes: int = 10 * 1024 * 1024  # 10MB

    # Bulk loader
    staging_batch_size: int = 1000
    progress_interval: int = 1000

    # Progress broadcaster
    heartbeat_seconds: float = 30.0
    completed_grace_seconds: float = 5.0
    failed_grace_seconds: float = 10.0

    allowed_origins: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            database_url=os.getenv("DATABASE_URL", ""),
            environment=os.getenv("ENVIRONMENT", "production"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=_env_int("PORT", 8000),
            max_concurrent_jobs=_env_int("MAX_CONCURRENT_JOBS", 2),
            job_timeout_seconds=_env_float("JOB_TIMEOUT_SECONDS", 1800.0),
            job_retention_hours=_env_float("JOB_RETENTION_HOURS", 24.0),
            cleanup_interval_seconds=_env_float("CLEANUP_INTERVAL_SECONDS", 3600.0),
            max_file_size_bytes=_env_int("MAX_FILE_SIZE_BYTES", 10 * 1024 * 1024),
            staging_batch_size=_env_int("STAGING_BATCH_SIZE", 1000),
            progress_interval=_env_int("PROGRESS_INTERVAL", 1000),
            heartbeat_seconds=_env_float("HEARTBEAT_SECONDS", 30.0),
            completed_grace_seconds=_env_float("COMPLETED_GRACE_SECONDS", 5.0),
            failed_grace_seconds=_env_float("FAILED_GRACE_SECONDS", 10.0),
            allowed_origins=_env_list("ALLOWED_ORIGINS"),
        )

        if settings.max_concurrent_jobs < 1:
            raise ValueError("MAX_CONCURRENT_JOBS must be at least 1")
        if settings.staging_batch_size < 1:
            raise ValueError("STAGING_BATCH_SIZE must be at least 1")

        # In development, allow localhost
        if settings.environment == "development":
            settings.allowed_origins.extend([
                "http://localhost:3000",
                "http://localhost:5173",
            ])

        return settings
