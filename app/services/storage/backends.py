"""
Storage backends for proctoring media.

Two interchangeable targets behind one contract:
    put(scope_id, blob_id, data, content_type) -> StorageLocator
    get(locator, byte_range=None) -> StoredObject | None
    put_named_file(scope_id, file_name, local_path, content_type) -> StorageLocator
    delete(locator) -> None

ObjectStorageBackend talks to an S3-compatible bucket (Cloudflare R2) through
boto3; blocking calls are pushed to a worker thread. LocalStorageBackend
writes under {media_root}/{scope_id}/{blob_id}.
"""

import asyncio
import shutil
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from app.infrastructure.observability.logging import get_logger
from app.models.domain.proctoring_domain import StorageKind

logger = get_logger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024


class StorageError(Exception):
    """Transport or filesystem failure while reading or writing a blob."""

    def __init__(self, message: str, operation: str = "unknown", backend: str | None = None):
        super().__init__(message)
        self.operation = operation
        self.backend = backend


class StorageConfigError(StorageError):
    """Object storage is configured but the client cannot be built."""


class RangeNotSatisfiable(StorageError):
    """Requested byte range starts beyond the end of the blob."""

    def __init__(self, total_size: int | None):
        super().__init__("Requested range not satisfiable", operation="get")
        self.total_size = total_size


@dataclass(slots=True, frozen=True)
class StorageLocator:
    """Opaque reference to a stored blob."""

    backend: StorageKind
    path: str | None = None
    key: str | None = None
    public_url: str | None = None

    @property
    def url(self) -> str:
        """Best fetchable reference: public URL, then object key, then local path."""
        return self.public_url or self.key or self.path or ""


@dataclass(slots=True, frozen=True)
class ByteRange:
    """Inclusive byte range; end=None means to the end of the blob."""

    start: int
    end: int | None = None

    def to_header(self) -> str:
        return f"bytes={self.start}-{'' if self.end is None else self.end}"


@dataclass(slots=True)
class StoredObject:
    """A readable blob, optionally restricted to a byte range."""

    body: Iterator[bytes]
    content_length: int | None
    content_type: str | None = None
    content_range: str | None = None  # set only for partial reads
    total_size: int | None = None

    def read_all(self) -> bytes:
        return b"".join(self.body)


def _iter_file(path: Path, start: int, length: int) -> Iterator[bytes]:
    with path.open("rb") as handle:
        handle.seek(start)
        remaining = length
        while remaining > 0:
            chunk = handle.read(min(STREAM_CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


class StorageBackend(ABC):
    kind: StorageKind

    @abstractmethod
    async def put(
        self, scope_id: str, blob_id: str, data: bytes, content_type: str
    ) -> StorageLocator: ...

    @abstractmethod
    async def get(
        self, locator: StorageLocator, byte_range: ByteRange | None = None
    ) -> StoredObject | None: ...

    @abstractmethod
    async def put_named_file(
        self, scope_id: str, file_name: str, local_path: str | Path, content_type: str
    ) -> StorageLocator: ...

    @abstractmethod
    async def delete(self, locator: StorageLocator) -> None: ...


class LocalStorageBackend(StorageBackend):
    kind: StorageKind = "local"

    def __init__(self, media_root: str | Path):
        self.media_root = Path(media_root).resolve()

    def path_for(self, scope_id: str, blob_id: str) -> Path:
        return self.media_root / scope_id / blob_id

    async def put(
        self, scope_id: str, blob_id: str, data: bytes, content_type: str
    ) -> StorageLocator:
        target = self.path_for(scope_id, blob_id)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Local write failed: {e}", operation="put", backend=self.kind) from e

        logger.debug("Segment stored locally", path=str(target), size=len(data))
        return StorageLocator(backend="local", path=str(target))

    async def get(
        self, locator: StorageLocator, byte_range: ByteRange | None = None
    ) -> StoredObject | None:
        if not locator.path:
            return None

        path = Path(locator.path)
        try:
            total_size = (await asyncio.to_thread(path.stat)).st_size
        except FileNotFoundError:
            return None

        if byte_range is None:
            return StoredObject(
                body=_iter_file(path, 0, total_size),
                content_length=total_size,
                total_size=total_size,
            )

        if byte_range.start >= total_size:
            raise RangeNotSatisfiable(total_size)

        end = total_size - 1 if byte_range.end is None else min(byte_range.end, total_size - 1)
        length = end - byte_range.start + 1
        return StoredObject(
            body=_iter_file(path, byte_range.start, length),
            content_length=length,
            content_range=f"bytes {byte_range.start}-{end}/{total_size}",
            total_size=total_size,
        )

    async def put_named_file(
        self, scope_id: str, file_name: str, local_path: str | Path, content_type: str
    ) -> StorageLocator:
        source = Path(local_path).resolve()
        target = self.path_for(scope_id, file_name)

        if source != target:

            def _move() -> None:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(source), str(target))

            try:
                await asyncio.to_thread(_move)
            except OSError as e:
                raise StorageError(
                    f"Local move failed: {e}", operation="put_named_file", backend=self.kind
                ) from e

        return StorageLocator(backend="local", path=str(target))

    async def delete(self, locator: StorageLocator) -> None:
        if locator.path:
            await asyncio.to_thread(Path(locator.path).unlink, missing_ok=True)


class ObjectStorageBackend(StorageBackend):
    kind: StorageKind = "r2"

    KEY_PREFIX = "proctoring"

    def __init__(self, client: Any, bucket: str, public_base_url: str | None = None):
        self._client = client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def key_for(self, scope_id: str, blob_id: str) -> str:
        return f"{self.KEY_PREFIX}/{scope_id}/{blob_id}"

    def public_url_for(self, key: str) -> str | None:
        return f"{self.public_base_url}/{key}" if self.public_base_url else None

    def _locator(self, key: str) -> StorageLocator:
        return StorageLocator(backend="r2", key=key, public_url=self.public_url_for(key))

    async def put(
        self, scope_id: str, blob_id: str, data: bytes, content_type: str
    ) -> StorageLocator:
        key = self.key_for(scope_id, blob_id)
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Object storage put failed", key=key, error=str(e))
            raise StorageError(f"Object storage put failed: {e}", operation="put", backend=self.kind) from e

        logger.debug("Segment stored in object storage", bucket=self.bucket, key=key, size=len(data))
        return self._locator(key)

    async def get(
        self, locator: StorageLocator, byte_range: ByteRange | None = None
    ) -> StoredObject | None:
        if not locator.key:
            return None

        params: dict[str, Any] = {"Bucket": self.bucket, "Key": locator.key}
        if byte_range is not None:
            params["Range"] = byte_range.to_header()

        try:
            response = await asyncio.to_thread(self._client.get_object, **params)
        except ClientError as e:
            code = (e.response.get("Error") or {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return None
            if code == "InvalidRange":
                raise RangeNotSatisfiable(None) from e
            raise StorageError(f"Object storage get failed: {e}", operation="get", backend=self.kind) from e
        except BotoCoreError as e:
            raise StorageError(f"Object storage get failed: {e}", operation="get", backend=self.kind) from e

        content_range = response.get("ContentRange") if byte_range is not None else None
        total_size = None
        if content_range and "/" in content_range:
            tail = content_range.rsplit("/", 1)[1]
            total_size = int(tail) if tail.isdigit() else None

        return StoredObject(
            body=response["Body"].iter_chunks(STREAM_CHUNK_SIZE),
            content_length=response.get("ContentLength"),
            content_type=response.get("ContentType"),
            content_range=content_range,
            total_size=total_size if content_range else response.get("ContentLength"),
        )

    async def put_named_file(
        self, scope_id: str, file_name: str, local_path: str | Path, content_type: str
    ) -> StorageLocator:
        key = self.key_for(scope_id, file_name)
        try:
            await asyncio.to_thread(
                self._client.upload_file,
                str(local_path),
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError, OSError) as e:
            logger.error("Object storage upload failed", key=key, error=str(e))
            raise StorageError(
                f"Object storage upload failed: {e}", operation="put_named_file", backend=self.kind
            ) from e

        return self._locator(key)

    async def delete(self, locator: StorageLocator) -> None:
        if not locator.key:
            return
        try:
            await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket, Key=locator.key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Object storage delete failed: {e}", operation="delete", backend=self.kind) from e
