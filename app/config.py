from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres settings
    DATABASE_URL: str = "postgresql://localhost:5432/proctoring"

    # Candidate / recruiter token verification
    AUTH_JWT_SECRET: str = "dev-only-proctoring-secret-change-me"
    AUTH_JWT_ALGORITHM: str = "HS256"

    # Object storage (Cloudflare R2 / S3 compatible). All-or-nothing:
    # a partial configuration falls back to local storage.
    R2_ENDPOINT: str | None = None
    R2_ACCOUNT_ID: str | None = None
    R2_ACCESS_KEY_ID: str | None = None
    R2_SECRET_ACCESS_KEY: str | None = None
    R2_BUCKET: str | None = None
    R2_PUBLIC_BASE_URL: str | None = None

    # Local storage
    PROCTORING_MEDIA_DIR: str | None = None

    # Transcoder
    FFMPEG_BIN: str = "ffmpeg"
    FFPROBE_BIN: str = "ffprobe"
    TRANSCODE_TIMEOUT_SECONDS: float = 3600.0
    PROBE_TIMEOUT_SECONDS: float = 30.0

    # =================================================================
    # MERGE QUEUE SETTINGS
    # =================================================================
    MERGE_MAX_RETRIES: int = 3
    MERGE_RETRY_DELAY_SECONDS: float = 60.0
    MERGE_INTER_JOB_DELAY_SECONDS: float = 2.0
    DELETE_CHUNKS_AFTER_MERGE: bool = False

    # Unmerged recording sweep (worker job)
    UNMERGED_SWEEP_INTERVAL_MINUTES: float = 30.0
    UNMERGED_SWEEP_GRACE_MINUTES: int = 30
    UNMERGED_SWEEP_BATCH_SIZE: int = 50

    # Local media cleanup job
    PROCTORING_CLEANUP_ENABLED: bool = True
    PROCTORING_CLEANUP_INTERVAL_MINUTES: float = 60.0
    PROCTORING_MEDIA_RETENTION_MINUTES: float = 120.0
    PROCTORING_MEDIA_CLEANUP_DRY_RUN: bool = False

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def media_root(self) -> Path:
        """Absolute root directory for locally stored proctoring media."""
        if self.PROCTORING_MEDIA_DIR:
            return Path(self.PROCTORING_MEDIA_DIR).resolve()
        return Path.cwd() / "proctoring-media"

    def r2_endpoint(self) -> str | None:
        """
        Explicit R2_ENDPOINT wins; otherwise derive the Cloudflare endpoint
        from R2_ACCOUNT_ID, e.g. https://<account>.r2.cloudflarestorage.com
        """
        if self.R2_ENDPOINT:
            return self.R2_ENDPOINT.rstrip("/")
        if self.R2_ACCOUNT_ID:
            return f"https://{self.R2_ACCOUNT_ID}.r2.cloudflarestorage.com"
        return None

    def missing_object_storage_settings(self) -> list[str]:
        """Names of the object storage settings that are not set."""
        required = {
            "R2_ENDPOINT/R2_ACCOUNT_ID": self.r2_endpoint(),
            "R2_ACCESS_KEY_ID": self.R2_ACCESS_KEY_ID,
            "R2_SECRET_ACCESS_KEY": self.R2_SECRET_ACCESS_KEY,
            "R2_BUCKET": self.R2_BUCKET,
        }
        return [name for name, value in required.items() if not value]

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update({"min_size": 1, "max_size": 5, "timeout": 15.0})

        return config


settings = Settings()
