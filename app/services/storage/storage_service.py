"""
Storage backend selection.

Object storage is used only when the endpoint, access key, secret and bucket
are all configured; anything less falls back to the local filesystem. The
choice is made once per process and cached.
"""

from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError

from app.config import Settings, settings
from app.infrastructure.observability.logging import get_logger, mask_value
from app.services.storage.backends import (
    LocalStorageBackend,
    ObjectStorageBackend,
    StorageBackend,
    StorageConfigError,
)

logger = get_logger(__name__)


def build_s3_client(config: Settings) -> Any:
    return boto3.client(
        "s3",
        region_name="auto",
        endpoint_url=config.r2_endpoint(),
        aws_access_key_id=config.R2_ACCESS_KEY_ID,
        aws_secret_access_key=config.R2_SECRET_ACCESS_KEY,
        config=Config(retries={"max_attempts": 3, "mode": "standard"}),
    )


class StorageService:
    """Owns the process-wide storage backend."""

    def __init__(self, config: Settings | None = None, client_factory=build_s3_client):
        self._config = config or settings
        self._client_factory = client_factory
        self._backend: StorageBackend | None = None
        self._local: LocalStorageBackend | None = None
        self.selection_reason: str | None = None

    def initialize(self) -> StorageBackend:
        """Select and cache the backend. Later calls return the cached one."""
        if self._backend is not None:
            return self._backend

        config = self._config
        self._local = LocalStorageBackend(config.media_root())
        missing = config.missing_object_storage_settings()

        if missing:
            self._backend = self._local
            self.selection_reason = "object storage not fully configured"
            logger.info(
                "Proctoring storage selected",
                backend="local",
                reason=self.selection_reason,
                missing=missing,
                media_root=str(self._local.media_root),
            )
            return self._backend

        try:
            client = self._client_factory(config)
        except (BotoCoreError, ValueError) as e:
            logger.error("Object storage client could not be created", error=str(e))
            raise StorageConfigError(
                f"Object storage client could not be created: {e}", operation="initialize", backend="r2"
            ) from e

        self._backend = ObjectStorageBackend(
            client, bucket=config.R2_BUCKET, public_base_url=config.R2_PUBLIC_BASE_URL
        )
        self.selection_reason = "object storage fully configured"
        logger.info(
            "Proctoring storage selected",
            backend="r2",
            reason=self.selection_reason,
            endpoint=config.r2_endpoint(),
            bucket=config.R2_BUCKET,
            access_key_id=mask_value(config.R2_ACCESS_KEY_ID),
            secret_access_key_set=bool(config.R2_SECRET_ACCESS_KEY),
            public_base_url=config.R2_PUBLIC_BASE_URL or "NOT SET",
        )
        return self._backend

    @property
    def backend(self) -> StorageBackend:
        return self._backend or self.initialize()

    @property
    def local(self) -> LocalStorageBackend:
        """Local filesystem backend; merge intermediates always live here."""
        if self._local is None:
            self.initialize()
        return self._local

    def describe(self) -> dict[str, Any]:
        backend = self.backend
        info: dict[str, Any] = {
            "backend": backend.kind,
            "reason": self.selection_reason,
            "media_root": str(self.local.media_root),
        }
        if isinstance(backend, ObjectStorageBackend):
            info["bucket"] = backend.bucket
            info["public_base_url"] = backend.public_base_url
        return info

    def reset(self) -> None:
        """Forget the cached selection (tests only)."""
        self._backend = None
        self._local = None
        self.selection_reason = None


storage_service = StorageService()


def get_storage_service() -> StorageService:
    return storage_service
