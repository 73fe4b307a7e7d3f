"""Tests for SnapshotPipeline — end-to-end job coordination.

Uses a real Normalizer and SQLite ledger with an in-memory content store and
a mocked fetcher, to verify:
- Idempotent re-runs perform no writes
- Force mode re-uploads and refreshes created_at
- Failures never create a ledger row
- Anchoring never fails a run
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from snapshotter.errors import FetchExhausted, InsufficientData, LedgerError, StoreError
from snapshotter.hashing import sha256_hex
from snapshotter.models import BestEffortResult, SnapshotJob
from snapshotter.pipeline import Normalizer, PipelineResult, PipelineState, SnapshotPipeline
from snapshotter.store import ContentStore, PutResult, SqliteSnapshotLedger

SOURCE_URL = "https://charts.example.com/regional-global-daily/latest"
CSV = (
    "rank,track_name,artist_name,streams,uri\n"
    "1,Blinding Lights,The Weeknd,1234567,spotify:track:0VjIjW4GlULA\n"
    "2,Shape of You,Ed Sheeran,987654,spotify:track:7qiZfU4dY1lWllzX7mPBI3\n"
    "3,Someone You Loved,Lewis Capaldi,876543,spotify:track:7qEHsqek33rTcFNT9PFqLf\n"
).encode("utf-8")
CSV_KEY = "snapshots/2024-01-15/global/t.csv"
JSON_KEY = "snapshots/2024-01-15/global/t.json"


# --- Fixtures ---


class MemoryStore(ContentStore):
    """In-memory content store that counts operations."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.puts: list[str] = []
        self.heads: list[str] = []
        self.gets: list[str] = []
        self.hash_checks: list[str] = []

    def url_for(self, key: str) -> str:
        return f"https://store.example.com/evidence/{key}"

    async def exists(self, key: str) -> bool:
        self.heads.append(key)
        return key in self.objects

    async def put(self, key: str, data: bytes, content_type: str) -> PutResult:
        self.puts.append(key)
        self.objects[key] = data
        return PutResult(url=self.url_for(key), sha256=sha256_hex(data))

    async def get(self, key: str) -> bytes:
        self.gets.append(key)
        return self.objects[key]

    async def stored_sha256(self, key: str) -> str:
        self.hash_checks.append(key)
        return sha256_hex(self.objects[key])


class TickingClock:
    """Returns a later timestamp on every call."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 16, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def make_fetcher(raw: bytes = CSV) -> MagicMock:
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(return_value=raw)
    fetcher.source_url = MagicMock(return_value=SOURCE_URL)
    return fetcher


def make_anchor(cid: str = "") -> MagicMock:
    anchor = MagicMock()
    result = BestEffortResult.success(cid) if cid else BestEffortResult.disabled("")
    anchor.anchor = AsyncMock(return_value=result)
    return anchor


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def ledger(tmp_path) -> SqliteSnapshotLedger:
    ledger = SqliteSnapshotLedger(db_path=tmp_path / "snapshots.db", clock=TickingClock())
    ledger._migrate()
    return ledger


def make_pipeline(store, ledger, fetcher=None, anchor=None, **kwargs) -> SnapshotPipeline:
    return SnapshotPipeline(
        fetcher=fetcher or make_fetcher(),
        normalizer=Normalizer(min_valid_items=3),
        store=store,
        ledger=ledger,
        anchor=anchor or make_anchor(),
        **kwargs,
    )


JOB = SnapshotJob(date_utc="2024-01-15", region="global")
FORCE_JOB = SnapshotJob(date_utc="2024-01-15", region="global", force=True)


class TestHappyPath:
    """Fresh snapshot for an unseen (date, region)."""

    @pytest.mark.asyncio
    async def test_commits_snapshot(self, store, ledger):
        pipeline = make_pipeline(store, ledger)

        result = await pipeline.run(JOB)

        assert result.state == PipelineState.DONE
        assert not result.skipped
        assert result.item_count == 3
        assert store.puts == [CSV_KEY, JSON_KEY]

        snapshot = await ledger.get("2024-01-15", "global")
        assert snapshot == result.snapshot
        assert snapshot.csv_sha256 == sha256_hex(CSV)
        assert snapshot.json_sha256 == sha256_hex(store.objects[JSON_KEY])
        assert snapshot.csv_url == store.url_for(CSV_KEY)
        assert snapshot.json_url == store.url_for(JSON_KEY)
        assert snapshot.ipfs_cid is None

    @pytest.mark.asyncio
    async def test_raw_bytes_stored_verbatim(self, store, ledger):
        await make_pipeline(store, ledger).run(JOB)
        assert store.objects[CSV_KEY] == CSV

    @pytest.mark.asyncio
    async def test_state_sequence(self, store, ledger):
        seen = []
        pipeline = make_pipeline(store, ledger, on_transition=lambda job, state: seen.append(state))

        result = await pipeline.run(JOB)

        assert seen == [
            PipelineState.CHECK_EXISTING,
            PipelineState.FETCHING,
            PipelineState.NORMALIZING,
            PipelineState.UPLOADING_CSV,
            PipelineState.UPLOADING_JSON,
            PipelineState.ANCHORING,
            PipelineState.COMMITTING,
            PipelineState.DONE,
        ]
        assert result.history[0] == PipelineState.INIT

    @pytest.mark.asyncio
    async def test_records_cid(self, store, ledger):
        pipeline = make_pipeline(store, ledger, anchor=make_anchor("bafybeicid"))

        result = await pipeline.run(JOB)

        assert result.snapshot.ipfs_cid == "bafybeicid"
        pipeline.anchor.anchor.assert_awaited_once()


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_run_performs_no_io(self, store, ledger):
        """An existing row short-circuits before fetch, store or anchor."""
        pipeline = make_pipeline(store, ledger)
        first = await pipeline.run(JOB)
        heads_after_first = len(store.heads)

        second = await pipeline.run(JOB)

        assert second.skipped
        assert second.state == PipelineState.DONE
        assert second.snapshot == first.snapshot
        assert pipeline.fetcher.fetch.await_count == 1
        assert pipeline.anchor.anchor.await_count == 1
        assert len(store.puts) == 2
        assert len(store.heads) == heads_after_first
        assert second.history == [
            PipelineState.INIT,
            PipelineState.CHECK_EXISTING,
            PipelineState.DONE,
        ]

    @pytest.mark.asyncio
    async def test_force_reuploads_and_refreshes_created_at(self, store, ledger):
        pipeline = make_pipeline(store, ledger)
        first = await pipeline.run(JOB)

        forced = await pipeline.run(FORCE_JOB)

        assert not forced.skipped
        assert store.puts == [CSV_KEY, JSON_KEY, CSV_KEY, JSON_KEY]
        assert forced.csv.uploaded and forced.json.uploaded
        assert forced.snapshot.id == first.snapshot.id
        assert forced.snapshot.csv_sha256 == first.snapshot.csv_sha256
        assert forced.snapshot.json_sha256 == first.snapshot.json_sha256
        assert forced.snapshot.created_at > first.snapshot.created_at

    @pytest.mark.asyncio
    async def test_existing_objects_without_row_are_reused(self, store, ledger):
        """Artifacts left by a failed run are not uploaded again."""
        await make_pipeline(store, ledger).run(JOB)
        expected_json = store.objects[JSON_KEY]
        other_ledger = SqliteSnapshotLedger(db_path=ledger.db_path.with_name("other.db"))
        other_ledger._migrate()
        store.puts.clear()

        result = await make_pipeline(store, other_ledger).run(JOB)

        assert store.puts == []
        assert not result.csv.uploaded and not result.json.uploaded
        assert result.snapshot.csv_sha256 == sha256_hex(CSV)
        assert result.snapshot.json_sha256 == sha256_hex(expected_json)
        assert store.gets == []
        assert store.hash_checks == [CSV_KEY, JSON_KEY]

    @pytest.mark.asyncio
    async def test_stale_object_from_failed_run_is_not_recorded(self, store, ledger):
        """A leftover CSV with different bytes fails the run instead of committing this run's hash."""
        stale = CSV.replace(b"1234567", b"1234568")
        store.objects[CSV_KEY] = stale

        with pytest.raises(StoreError, match="expected"):
            await make_pipeline(store, ledger).run(JOB)

        assert store.puts == []
        assert store.gets == []
        assert store.objects[CSV_KEY] == stale
        assert await ledger.get("2024-01-15", "global") is None

    @pytest.mark.asyncio
    async def test_force_replaces_stale_object(self, store, ledger):
        store.objects[CSV_KEY] = b"stale"

        result = await make_pipeline(store, ledger).run(FORCE_JOB)

        assert store.objects[CSV_KEY] == CSV
        assert result.snapshot.csv_sha256 == sha256_hex(store.objects[CSV_KEY])


class TestVerifyExisting:
    @pytest.mark.asyncio
    async def test_matching_objects_are_verified(self, store, ledger, tmp_path):
        await make_pipeline(store, ledger).run(JOB)
        other_ledger = SqliteSnapshotLedger(db_path=tmp_path / "other.db")
        other_ledger._migrate()

        result = await make_pipeline(store, other_ledger, verify_existing=True).run(JOB)

        assert result.csv.verified and result.json.verified
        assert store.gets == [CSV_KEY, JSON_KEY]

    @pytest.mark.asyncio
    async def test_mismatch_fails_without_row(self, store, ledger):
        store.objects[CSV_KEY] = b"tampered"

        with pytest.raises(StoreError, match="expected"):
            await make_pipeline(store, ledger, verify_existing=True).run(JOB)

        assert await ledger.get("2024-01-15", "global") is None


class TestFailures:
    """A failed run never creates or overwrites a ledger row."""

    @pytest.mark.asyncio
    async def test_fetch_exhausted(self, store, ledger):
        fetcher = make_fetcher()
        fetcher.fetch.side_effect = FetchExhausted("gave up", attempts=3)
        seen = []
        pipeline = make_pipeline(
            store, ledger, fetcher=fetcher, on_transition=lambda job, state: seen.append(state),
        )

        with pytest.raises(FetchExhausted):
            await pipeline.run(JOB)

        assert seen[-2:] == [PipelineState.FETCHING, PipelineState.FAILED]
        assert store.puts == []
        assert await ledger.get("2024-01-15", "global") is None

    @pytest.mark.asyncio
    async def test_insufficient_data(self, store, ledger):
        pipeline = make_pipeline(store, ledger)
        pipeline.normalizer = Normalizer(min_valid_items=50)

        with pytest.raises(InsufficientData):
            await pipeline.run(JOB)

        assert store.puts == []
        assert await ledger.get("2024-01-15", "global") is None

    @pytest.mark.asyncio
    async def test_store_error(self, store, ledger):
        store.put = AsyncMock(side_effect=StoreError("PUT failed"))

        with pytest.raises(StoreError):
            await make_pipeline(store, ledger).run(JOB)

        assert await ledger.get("2024-01-15", "global") is None

    @pytest.mark.asyncio
    async def test_ledger_error_propagates(self, store):
        ledger = MagicMock()
        ledger.get = AsyncMock(return_value=None)
        ledger.upsert = AsyncMock(side_effect=LedgerError("db down"))
        seen = []
        pipeline = make_pipeline(store, ledger, on_transition=lambda job, state: seen.append(state))

        with pytest.raises(LedgerError):
            await pipeline.run(JOB)

        ledger.upsert.assert_awaited_once()
        assert seen[-2:] == [PipelineState.COMMITTING, PipelineState.FAILED]

    @pytest.mark.asyncio
    async def test_force_failure_keeps_previous_row(self, store, ledger):
        first = (await make_pipeline(store, ledger).run(JOB)).snapshot
        fetcher = make_fetcher()
        fetcher.fetch.side_effect = FetchExhausted("gave up")

        with pytest.raises(FetchExhausted):
            await make_pipeline(store, ledger, fetcher=fetcher).run(FORCE_JOB)

        assert await ledger.get("2024-01-15", "global") == first


class TestAnchorFailure:
    @pytest.mark.asyncio
    async def test_anchor_failure_does_not_fail_run(self, store, ledger):
        anchor = MagicMock()
        anchor.anchor = AsyncMock(
            return_value=BestEffortResult(ok=False, value="", error=RuntimeError("ipfs down"))
        )

        result = await make_pipeline(store, ledger, anchor=anchor).run(JOB)

        assert result.state == PipelineState.DONE
        assert result.snapshot.ipfs_cid is None


def test_result_to_dict():
    """PipelineResult serializes for CLI JSON output."""
    data = PipelineResult(job=JOB).to_dict()

    assert data["date_utc"] == "2024-01-15"
    assert data["state"] == "init"
    assert data["snapshot"] is None
