"""Tests for content store backends.

S3ContentStore runs against an in-memory fake boto3 client that raises real
botocore ClientErrors.
"""

import io
import stat
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from snapshotter.config import Settings
from snapshotter.errors import StoreError
from snapshotter.hashing import sha256_hex
from snapshotter.store import (
    LocalContentStore,
    S3ContentStore,
    build_object_key,
    create_content_store,
)


def make_client_error(operation_name: str, *, code: str, status: int = 400) -> ClientError:
    """Build a deterministic botocore ClientError payload for tests."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation_name,
    )


class FakeS3Client:
    """Minimal head/put/get object store with boto3's call shapes."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.metadata: dict[str, dict] = {}
        self.put_calls: list[dict] = []
        self.head_error: ClientError | None = None

    def head_object(self, Bucket: str, Key: str) -> dict:
        if self.head_error is not None:
            raise self.head_error
        if Key not in self.objects:
            # HEAD responses carry no body, so the code is the bare status
            raise make_client_error("HeadObject", code="404", status=404)
        return {"ContentLength": len(self.objects[Key]), "Metadata": self.metadata.get(Key, {})}

    def put_object(self, **kwargs) -> dict:
        self.put_calls.append(kwargs)
        self.objects[kwargs["Key"]] = kwargs["Body"]
        self.metadata[kwargs["Key"]] = kwargs.get("Metadata", {})
        return {"ETag": '"etag"'}

    def get_object(self, Bucket: str, Key: str) -> dict:
        if Key not in self.objects:
            raise make_client_error("GetObject", code="NoSuchKey", status=404)
        return {"Body": io.BytesIO(self.objects[Key])}


FIXED_NOW = datetime(2024, 1, 16, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def s3_store(s3_client) -> S3ContentStore:
    return S3ContentStore(
        client=s3_client,
        bucket="hitcastor-evidence",
        endpoint="https://r2.example.com/",
        clock=lambda: FIXED_NOW,
    )


def test_build_object_key():
    assert build_object_key("2024-01-15", "global", "t.csv") == "snapshots/2024-01-15/global/t.csv"


class TestS3ContentStore:
    def test_url_for(self, s3_store):
        assert s3_store.url_for("snapshots/2024-01-15/global/t.json") == (
            "https://r2.example.com/hitcastor-evidence/snapshots/2024-01-15/global/t.json"
        )

    @pytest.mark.asyncio
    async def test_put_returns_hash_and_applies_lock(self, s3_store, s3_client):
        key = "snapshots/2024-01-15/global/t.csv"

        result = await s3_store.put(key, b"a,b\n1,2\n", "text/csv")

        assert result.sha256 == sha256_hex(b"a,b\n1,2\n")
        assert result.url == s3_store.url_for(key)
        call = s3_client.put_calls[0]
        assert call["Bucket"] == "hitcastor-evidence"
        assert call["ContentType"] == "text/csv"
        assert call["Metadata"] == {"sha256": result.sha256}
        assert call["ObjectLockMode"] == "COMPLIANCE"
        assert call["ObjectLockRetainUntilDate"] == datetime(2024, 2, 15, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_put_without_lock(self, s3_client):
        store = S3ContentStore(
            client=s3_client, bucket="b", endpoint="https://s3.example.com", object_lock=False,
        )

        await store.put("k", b"x", "text/plain")

        assert "ObjectLockMode" not in s3_client.put_calls[0]

    @pytest.mark.asyncio
    async def test_exists(self, s3_store, s3_client):
        s3_client.objects["present"] = b"x"

        assert await s3_store.exists("present") is True
        assert await s3_store.exists("absent") is False

    @pytest.mark.asyncio
    async def test_exists_treats_no_such_key_as_absent(self, s3_store, s3_client):
        s3_client.head_error = make_client_error("HeadObject", code="NoSuchKey", status=404)
        assert await s3_store.exists("k") is False

    @pytest.mark.asyncio
    async def test_exists_propagates_other_errors(self, s3_store, s3_client):
        """Only "absent" maps to False; access errors surface as StoreError."""
        s3_client.head_error = make_client_error("HeadObject", code="403", status=403)

        with pytest.raises(StoreError, match="HEAD"):
            await s3_store.exists("k")

    @pytest.mark.asyncio
    async def test_get_round_trip(self, s3_store):
        await s3_store.put("k", b"payload", "application/json")
        assert await s3_store.get("k") == b"payload"

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, s3_store):
        with pytest.raises(StoreError, match="GET"):
            await s3_store.get("missing")

    @pytest.mark.asyncio
    async def test_stored_sha256_reads_metadata(self, s3_store, s3_client, mocker):
        """The upload-time hash comes from HEAD, without downloading the body."""
        await s3_store.put("k", b"payload", "text/csv")
        get_object = mocker.spy(s3_client, "get_object")

        assert await s3_store.stored_sha256("k") == sha256_hex(b"payload")
        get_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_stored_sha256_hashes_body_without_metadata(self, s3_store, s3_client):
        s3_client.objects["legacy"] = b"written elsewhere"

        assert await s3_store.stored_sha256("legacy") == sha256_hex(b"written elsewhere")

    @pytest.mark.asyncio
    async def test_stored_sha256_wraps_errors(self, s3_store, s3_client):
        s3_client.head_error = make_client_error("HeadObject", code="403", status=403)

        with pytest.raises(StoreError, match="HEAD"):
            await s3_store.stored_sha256("k")


class TestLocalContentStore:
    @pytest.mark.asyncio
    async def test_put_get_exists(self, tmp_path):
        store = LocalContentStore(base_path=tmp_path / "evidence", read_only=False)
        key = "snapshots/2024-01-15/global/t.json"

        assert await store.exists(key) is False
        result = await store.put(key, b'{"a": 1}', "application/json")

        assert await store.exists(key) is True
        assert await store.get(key) == b'{"a": 1}'
        assert result.sha256 == sha256_hex(b'{"a": 1}')
        assert result.url.startswith("file://")
        assert result.url.endswith(key)

    @pytest.mark.asyncio
    async def test_read_only_files(self, tmp_path):
        store = LocalContentStore(base_path=tmp_path, read_only=True)

        await store.put("snapshots/d/r/t.csv", b"x", "text/csv")

        mode = (tmp_path / "snapshots/d/r/t.csv").stat().st_mode
        assert not mode & stat.S_IWUSR

    @pytest.mark.asyncio
    async def test_force_overwrite_of_read_only_file(self, tmp_path):
        store = LocalContentStore(base_path=tmp_path, read_only=True)

        await store.put("k.csv", b"old", "text/csv")
        await store.put("k.csv", b"new", "text/csv")

        assert await store.get("k.csv") == b"new"

    @pytest.mark.asyncio
    async def test_rejects_keys_outside_root(self, tmp_path):
        store = LocalContentStore(base_path=tmp_path / "evidence")

        with pytest.raises(StoreError, match="escapes"):
            await store.put("../outside.csv", b"x", "text/csv")

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, tmp_path):
        with pytest.raises(StoreError):
            await LocalContentStore(base_path=tmp_path).get("missing")

    @pytest.mark.asyncio
    async def test_exists_wraps_stat_errors(self, tmp_path):
        """Failures other than "file absent" surface as StoreError."""
        store = LocalContentStore(base_path=tmp_path, read_only=False)
        await store.put("snapshots/2024-01-15", b"x", "text/plain")

        with pytest.raises(StoreError, match="stat"):
            await store.exists("snapshots/2024-01-15/global/t.csv")

    @pytest.mark.asyncio
    async def test_exists_is_false_for_directories(self, tmp_path):
        store = LocalContentStore(base_path=tmp_path)
        (tmp_path / "snapshots").mkdir()

        assert await store.exists("snapshots") is False

    @pytest.mark.asyncio
    async def test_stored_sha256_hashes_file(self, tmp_path):
        store = LocalContentStore(base_path=tmp_path)
        await store.put("k.csv", b"a,b\n", "text/csv")

        assert await store.stored_sha256("k.csv") == sha256_hex(b"a,b\n")


class TestCreateContentStore:
    def test_local_backend(self, tmp_path):
        settings = Settings(
            _env_file=None, object_store_backend="local", local_store_dir=str(tmp_path),
        )
        assert isinstance(create_content_store(settings), LocalContentStore)

    def test_s3_backend(self):
        settings = Settings(
            _env_file=None,
            object_store_backend="s3",
            object_store_endpoint="https://r2.example.com",
            object_store_access_key="key",
            object_store_secret_key="secret",
        )

        store = create_content_store(settings)

        assert isinstance(store, S3ContentStore)
        assert store.bucket == "hitcastor-evidence"
        assert store.url_for("k") == "https://r2.example.com/hitcastor-evidence/k"
