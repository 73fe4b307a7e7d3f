"""Orchestrator — end-to-end snapshot job for one (date, region).

    INIT → CHECK_EXISTING → FETCHING → NORMALIZING → UPLOADING_CSV
         → UPLOADING_JSON → ANCHORING → COMMITTING → DONE

FAILED is reachable from every non-terminal state and re-raises the
originating error. The ledger upsert is the last step, so a failed run never
creates or overwrites a snapshot row; uploaded artifacts without a row are
picked up again by the next run when their stored hash matches the fresh bytes.

Usage:
    pipeline = SnapshotPipeline.from_settings(settings)
    result = await pipeline.run(SnapshotJob("2024-01-15", "global"))
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from snapshotter.config import Settings
from snapshotter.errors import StoreError
from snapshotter.hashing import sha256_hex
from snapshotter.models import (
    BestEffortResult,
    Snapshot,
    SnapshotJob,
    SnapshotRecord,
    UploadOutcome,
)
from snapshotter.pipeline.anchor import AnchorService
from snapshotter.pipeline.fetcher import ChartFetcher
from snapshotter.pipeline.normalizer import Normalizer
from snapshotter.store import (
    CSV_FILENAME,
    JSON_FILENAME,
    ContentStore,
    SnapshotLedger,
    build_object_key,
    create_content_store,
    create_ledger,
)

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    INIT = "init"
    CHECK_EXISTING = "check_existing"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    UPLOADING_CSV = "uploading_csv"
    UPLOADING_JSON = "uploading_json"
    ANCHORING = "anchoring"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PipelineResult:
    """What one pipeline run did."""

    job: SnapshotJob
    state: PipelineState = PipelineState.INIT
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.INIT])
    snapshot: Snapshot | None = None
    skipped: bool = False
    csv: UploadOutcome | None = None
    json: UploadOutcome | None = None
    anchor: BestEffortResult[str] | None = None
    item_count: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "date_utc": self.job.date_utc,
            "region": self.job.region,
            "force": self.job.force,
            "state": self.state.value,
            "skipped": self.skipped,
            "csv_uploaded": self.csv.uploaded if self.csv else None,
            "json_uploaded": self.json.uploaded if self.json else None,
            "item_count": self.item_count,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
        }


class SnapshotPipeline:
    """Composes fetcher, normalizer, store, anchor and ledger into one job.

    Args:
        fetcher: Chart fetcher
        normalizer: CSV normalizer
        store: Content store for both artifacts
        ledger: Snapshot ledger
        anchor: Best-effort IPFS anchor (default: disabled)
        verify_existing: Hash the stored bytes of already-stored artifacts
            instead of trusting the hash recorded at upload
        on_transition: Called with (job, state) on every state change
    """

    def __init__(
        self,
        fetcher: ChartFetcher,
        normalizer: Normalizer,
        store: ContentStore,
        ledger: SnapshotLedger,
        anchor: AnchorService | None = None,
        verify_existing: bool = False,
        on_transition: Callable[[SnapshotJob, PipelineState], None] | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.normalizer = normalizer
        self.store = store
        self.ledger = ledger
        self.anchor = anchor or AnchorService()
        self.verify_existing = verify_existing
        self.on_transition = on_transition

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        shutdown: asyncio.Event | None = None,
    ) -> "SnapshotPipeline":
        return cls(
            fetcher=ChartFetcher.from_settings(settings, shutdown=shutdown),
            normalizer=Normalizer(min_valid_items=settings.min_valid_items),
            store=create_content_store(settings),
            ledger=create_ledger(settings),
            anchor=AnchorService.from_settings(settings),
            verify_existing=settings.verify_existing_artifacts,
        )

    def _transition(self, result: PipelineResult, state: PipelineState) -> None:
        result.state = state
        result.history.append(state)
        logger.debug("[%s/%s] -> %s", result.job.date_utc, result.job.region, state.value)
        if self.on_transition:
            self.on_transition(result.job, state)

    async def run(self, job: SnapshotJob) -> PipelineResult:
        """Run the snapshot job.

        Returns:
            PipelineResult in state DONE

        Raises:
            FetchExhausted, InvalidChartData, InsufficientData, StoreError,
            LedgerError: The originating error, after moving to FAILED
        """
        result = PipelineResult(job=job)
        tag = f"[{job.date_utc}/{job.region}]"
        logger.info("%s Starting snapshot job (force=%s)", tag, job.force)

        try:
            self._transition(result, PipelineState.CHECK_EXISTING)
            if not job.force:
                existing = await self.ledger.get(job.date_utc, job.region)
                if existing is not None:
                    logger.info("%s Snapshot already exists, skipping", tag)
                    result.snapshot = existing
                    result.skipped = True
                    self._transition(result, PipelineState.DONE)
                    return result

            self._transition(result, PipelineState.FETCHING)
            raw = await self.fetcher.fetch(job.date_utc, job.region)
            source_url = self.fetcher.source_url(job.date_utc, job.region)

            self._transition(result, PipelineState.NORMALIZING)
            artifact, csv_hash = self.normalizer.normalize(raw, job.date_utc, job.region, source_url)
            json_bytes = artifact.to_json_bytes()
            result.item_count = len(artifact.items)

            self._transition(result, PipelineState.UPLOADING_CSV)
            result.csv = await self._store_artifact(
                build_object_key(job.date_utc, job.region, CSV_FILENAME),
                raw, csv_hash, "text/csv", job.force,
            )

            self._transition(result, PipelineState.UPLOADING_JSON)
            result.json = await self._store_artifact(
                build_object_key(job.date_utc, job.region, JSON_FILENAME),
                json_bytes, sha256_hex(json_bytes), "application/json", job.force,
            )

            self._transition(result, PipelineState.ANCHORING)
            result.anchor = await self.anchor.anchor(artifact)
            if not result.anchor.ok:
                logger.warning("%s Continuing without CID: %s", tag, result.anchor.error)

            self._transition(result, PipelineState.COMMITTING)
            result.snapshot = await self.ledger.upsert(
                SnapshotRecord(
                    date_utc=job.date_utc,
                    region=job.region,
                    csv_url=result.csv.url,
                    csv_sha256=result.csv.sha256,
                    json_url=result.json.url,
                    json_sha256=result.json.sha256,
                    ipfs_cid=result.anchor.value or None,
                )
            )
        except Exception as e:
            failed_in = result.state
            self._transition(result, PipelineState.FAILED)
            logger.error("%s Snapshot job failed during %s: %s", tag, failed_in.value, e)
            raise

        self._transition(result, PipelineState.DONE)
        logger.info(
            "%s Snapshot job completed: id=%s csv=%s json=%s cid=%s items=%d",
            tag,
            result.snapshot.id,
            result.snapshot.csv_sha256,
            result.snapshot.json_sha256,
            result.snapshot.ipfs_cid,
            result.item_count,
        )
        return result

    async def _store_artifact(
        self,
        key: str,
        data: bytes,
        local_hash: str,
        content_type: str,
        force: bool,
    ) -> UploadOutcome:
        """Upload unless already stored; returns the hash recorded in the ledger.

        An existing object is only reused when its stored hash equals this
        run's hash, so the ledger never records a hash for bytes other than
        those at the recorded URL.

        Raises:
            StoreError: On storage failure, or when the stored object differs
                from this run's bytes
        """
        if force or not await self.store.exists(key):
            put = await self.store.put(key, data, content_type)
            logger.info("Uploaded %s (%s)", key, put.sha256)
            return UploadOutcome(key=key, url=put.url, sha256=put.sha256, uploaded=True)

        if self.verify_existing:
            stored_hash = sha256_hex(await self.store.get(key))
        else:
            stored_hash = await self.store.stored_sha256(key)
        if stored_hash != local_hash:
            raise StoreError(
                f"Stored object {key} has hash {stored_hash}, expected {local_hash}; "
                "re-run with force to replace it"
            )
        logger.info("%s already exists in storage, upload skipped", key)
        return UploadOutcome(
            key=key,
            url=self.store.url_for(key),
            sha256=stored_hash,
            uploaded=False,
            verified=self.verify_existing,
        )
