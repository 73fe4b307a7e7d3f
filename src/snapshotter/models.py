"""Domain models for chart snapshots.

Chart entries and the normalized artifact are Pydantic models because their
JSON form is the evidence itself: field names, order and formatting are part of
the hashed bytes. Ledger rows and job inputs are plain dataclasses.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

from snapshotter.dates import validate_date_format

SCHEMA_TAG = "hitcastor.spotify.top100.v1"
PROVIDER = "spotify"
MAX_ITEMS = 100

T = TypeVar("T")


class ChartEntry(BaseModel):
    """One ranked chart row in canonical form."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    rank: int = Field(ge=1, le=MAX_ITEMS)
    track_id: str = Field(alias="trackId")
    title: str
    artist: str
    streams: int = Field(ge=0)
    isrc: str = ""
    spotify_url: str = Field(alias="spotifyUrl")

    @property
    def is_valid(self) -> bool:
        """Valid rows carry a track id, title and artist."""
        return bool(self.track_id and self.title and self.artist)


class NormalizedArtifact(BaseModel):
    """Canonical Top-100 document for one (date, region)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    schema_tag: str = Field(default=SCHEMA_TAG, alias="schema")
    date_utc: str = Field(alias="dateUTC")
    region: str
    provider: str = PROVIDER
    source_csv_url: str = Field(alias="sourceCsvUrl")
    source_csv_sha256: str = Field(alias="sourceCsvSha256")
    list_length: int = Field(alias="listLength")
    items: list[ChartEntry]

    @model_validator(mode="after")
    def check_ranks(self) -> "NormalizedArtifact":
        """listLength matches items, ranks are 1..N in order."""
        if self.list_length != len(self.items):
            raise ValueError(
                f"listLength {self.list_length} != item count {len(self.items)}"
            )
        if len(self.items) > MAX_ITEMS:
            raise ValueError(f"at most {MAX_ITEMS} items allowed, got {len(self.items)}")
        for expected, item in enumerate(self.items, start=1):
            if item.rank != expected:
                raise ValueError(f"rank {item.rank} at position {expected}")
        return self

    @property
    def valid_count(self) -> int:
        return sum(1 for item in self.items if item.is_valid)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the published JSON shape (camelCase keys)."""
        return self.model_dump(by_alias=True, mode="json")

    def to_json_bytes(self) -> bytes:
        """Canonical serialized form. These exact bytes are hashed, stored and pinned."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")


@dataclass(frozen=True)
class SnapshotRecord:
    """Fields written by one ledger upsert."""

    date_utc: str
    region: str
    csv_url: str
    csv_sha256: str
    json_url: str
    json_sha256: str
    ipfs_cid: str | None = None


@dataclass(frozen=True)
class Snapshot:
    """Authoritative ledger row for one (date_utc, region)."""

    id: int
    date_utc: str
    region: str
    csv_url: str
    csv_sha256: str
    json_url: str
    json_sha256: str
    ipfs_cid: str | None
    created_at: datetime

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass(frozen=True)
class SnapshotJob:
    """Job input: which snapshot to produce and whether to overwrite."""

    date_utc: str
    region: str
    force: bool = False

    def __post_init__(self) -> None:
        if not validate_date_format(self.date_utc):
            raise ValueError(f"date_utc must be YYYY-MM-DD, got '{self.date_utc}'")
        region = self.region.strip().lower()
        if not region:
            raise ValueError("region must not be empty")
        object.__setattr__(self, "region", region)


@dataclass
class BestEffortResult(Generic[T]):
    """Outcome of an operation whose failure must never block the pipeline.

    Callers inspect it for logging only.
    """

    ok: bool
    value: T | None = None
    error: Exception | None = None
    skipped: bool = False

    @classmethod
    def success(cls, value: T) -> "BestEffortResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Exception) -> "BestEffortResult[T]":
        return cls(ok=False, error=error)

    @classmethod
    def disabled(cls, value: T | None = None) -> "BestEffortResult[T]":
        return cls(ok=True, value=value, skipped=True)


@dataclass
class UploadOutcome:
    """Per-artifact result of the upload step."""

    key: str
    url: str
    sha256: str
    uploaded: bool
    verified: bool = False


@dataclass
class FailedJob:
    """Dead-lettered job kept by the worker for inspection."""

    job: SnapshotJob
    error: str
    attempts: int
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
