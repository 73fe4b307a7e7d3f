"""Immutable evidence storage for raw and normalized chart artifacts.

Storage structure:
    snapshots/{date_utc}/{region}/{filename}

Example:
    snapshots/2024-01-15/global/t.csv
    snapshots/2024-01-15/global/t.json

Two backends share one async interface:
- S3ContentStore: any S3-compatible store (AWS S3, Cloudflare R2, MinIO) via
  boto3, with optional COMPLIANCE object lock for a fixed retention window.
- LocalContentStore: a directory tree, for development and tests.

Blocking I/O runs in asyncio.to_thread so the event loop is never blocked.
"""

import asyncio
import logging
import os
import stat
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from snapshotter.config import Settings
from snapshotter.errors import StoreError
from snapshotter.hashing import sha256_hex

logger = logging.getLogger(__name__)

CSV_FILENAME = "t.csv"
JSON_FILENAME = "t.json"

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def build_object_key(date_utc: str, region: str, filename: str) -> str:
    """Deterministic object key for one artifact of a snapshot."""
    return f"snapshots/{date_utc}/{region}/{filename}"


@dataclass(frozen=True)
class PutResult:
    """Location and hash of exactly the bytes written."""

    url: str
    sha256: str


class ContentStore(ABC):
    """Async put/exists/get against immutable object storage."""

    @abstractmethod
    def url_for(self, key: str) -> str:
        """Public URL recorded in the ledger for key."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """True if key is present.

        Raises:
            StoreError: For any failure other than "object absent"
        """

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str) -> PutResult:
        """Write data under key.

        Raises:
            StoreError: If the write fails
        """

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Read the bytes stored under key.

        Raises:
            StoreError: If the object is missing or the read fails
        """

    async def stored_sha256(self, key: str) -> str:
        """Hash of the bytes currently stored under key.

        The base implementation reads the object back and hashes it.
        """
        return sha256_hex(await self.get(key))


class S3ContentStore(ContentStore):
    """S3-compatible content store.

    Args:
        client: boto3 S3 client
        bucket: Evidence bucket
        endpoint: Endpoint used to build public URLs
        object_lock: Apply COMPLIANCE retention on every write
        object_lock_days: Retention window length
        clock: Returns "now" (tests)
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        endpoint: str,
        object_lock: bool = True,
        object_lock_days: int = 30,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.endpoint = endpoint.rstrip("/")
        self.object_lock = object_lock
        self.object_lock_days = object_lock_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3ContentStore":
        session = boto3.session.Session()
        client = session.client(
            "s3",
            endpoint_url=settings.object_store_endpoint,
            aws_access_key_id=settings.object_store_access_key,
            aws_secret_access_key=settings.object_store_secret_key,
            region_name="auto",
            config=Config(
                s3={"addressing_style": "path" if settings.object_store_force_path_style else "auto"},
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )
        return cls(
            client=client,
            bucket=settings.object_store_bucket,
            endpoint=settings.object_store_endpoint or "",
            object_lock=settings.object_store_object_lock,
            object_lock_days=settings.object_lock_days,
        )

    def url_for(self, key: str) -> str:
        return f"{self.endpoint}/{self.bucket}/{key}"

    def retain_until(self) -> datetime:
        return self._clock() + timedelta(days=self.object_lock_days)

    async def exists(self, key: str) -> bool:
        def _head() -> bool:
            try:
                self.client.head_object(Bucket=self.bucket, Key=key)
                return True
            except ClientError as e:
                code = str(e.response.get("Error", {}).get("Code", ""))
                status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
                if code in _NOT_FOUND_CODES or status == 404:
                    return False
                raise StoreError(f"HEAD s3://{self.bucket}/{key} failed: {e}") from e
            except BotoCoreError as e:
                raise StoreError(f"HEAD s3://{self.bucket}/{key} failed: {e}") from e

        return await asyncio.to_thread(_head)

    async def put(self, key: str, data: bytes, content_type: str) -> PutResult:
        digest = sha256_hex(data)
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
            "Metadata": {"sha256": digest},
        }
        if self.object_lock:
            params["ObjectLockMode"] = "COMPLIANCE"
            params["ObjectLockRetainUntilDate"] = self.retain_until()

        def _put() -> None:
            try:
                self.client.put_object(**params)
            except (ClientError, BotoCoreError) as e:
                raise StoreError(f"PUT s3://{self.bucket}/{key} failed: {e}") from e

        await asyncio.to_thread(_put)
        logger.debug("Stored s3://%s/%s (%d bytes, %s)", self.bucket, key, len(data), digest)
        return PutResult(url=self.url_for(key), sha256=digest)

    async def get(self, key: str) -> bytes:
        def _get() -> bytes:
            try:
                response = self.client.get_object(Bucket=self.bucket, Key=key)
                body = response.get("Body")
                if body is None:
                    raise StoreError(f"File not found: {key}")
                return body.read()
            except (ClientError, BotoCoreError) as e:
                raise StoreError(f"GET s3://{self.bucket}/{key} failed: {e}") from e

        return await asyncio.to_thread(_get)

    async def stored_sha256(self, key: str) -> str:
        """Hash recorded in the object's metadata at upload time.

        Objects written without a ``sha256`` metadata entry are read back and
        hashed instead.
        """
        def _head() -> str | None:
            try:
                response = self.client.head_object(Bucket=self.bucket, Key=key)
            except (ClientError, BotoCoreError) as e:
                raise StoreError(f"HEAD s3://{self.bucket}/{key} failed: {e}") from e
            return (response.get("Metadata") or {}).get("sha256")

        digest = await asyncio.to_thread(_head)
        if digest:
            return digest
        logger.debug("No sha256 metadata on s3://%s/%s, hashing stored bytes", self.bucket, key)
        return await super().stored_sha256(key)


class LocalContentStore(ContentStore):
    """Directory-backed content store.

    Files are written atomically (temp file + rename). With ``read_only``
    enabled, stored files are chmod'ed read-only; this marks artifacts as
    evidence but is not a retention control.

    Args:
        base_path: Root directory. Defaults to 'data/evidence'.
        read_only: Make written files read-only
    """

    def __init__(self, base_path: str | Path = "data/evidence", read_only: bool = True) -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.read_only = read_only

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalContentStore":
        return cls(base_path=settings.local_store_dir, read_only=settings.object_store_object_lock)

    def _get_file_path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if not path.is_relative_to(self.base_path.resolve()):
            raise StoreError(f"Key escapes store root: {key}")
        return path

    def url_for(self, key: str) -> str:
        return self._get_file_path(key).as_uri()

    async def exists(self, key: str) -> bool:
        file_path = self._get_file_path(key)

        def _stat() -> bool:
            try:
                return stat.S_ISREG(file_path.stat().st_mode)
            except FileNotFoundError:
                return False
            except OSError as e:
                raise StoreError(f"Failed to stat {file_path}: {e}") from e

        return await asyncio.to_thread(_stat)

    async def put(self, key: str, data: bytes, content_type: str) -> PutResult:
        file_path = self._get_file_path(key)

        def _write() -> None:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=file_path.parent, prefix=".tmp-")
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                if self.read_only:
                    os.chmod(tmp_name, stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
                os.replace(tmp_name, file_path)
            except OSError as e:
                raise StoreError(f"Failed to write {file_path}: {e}") from e

        await asyncio.to_thread(_write)
        return PutResult(url=self.url_for(key), sha256=sha256_hex(data))

    async def get(self, key: str) -> bytes:
        file_path = self._get_file_path(key)

        def _read() -> bytes:
            try:
                return file_path.read_bytes()
            except OSError as e:
                raise StoreError(f"Failed to read {file_path}: {e}") from e

        return await asyncio.to_thread(_read)


def create_content_store(settings: Settings) -> ContentStore:
    """Build the configured content store backend."""
    if settings.object_store_backend == "local":
        return LocalContentStore.from_settings(settings)
    return S3ContentStore.from_settings(settings)
