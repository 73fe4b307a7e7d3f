"""Normalizer — raw chart CSV → canonical Top-100 artifact.

Rank is always re-derived from source order; any rank column in the CSV is
ignored. Column names vary between chart exports, so every output field is
taken from the first non-empty value among a list of accepted aliases.
"""

import io
import logging
import re

import pandas as pd

from snapshotter.errors import InsufficientData, InvalidChartData
from snapshotter.hashing import sha256_hex
from snapshotter.models import MAX_ITEMS, ChartEntry, NormalizedArtifact

logger = logging.getLogger(__name__)

DEFAULT_MIN_VALID_ITEMS = 50

TRACK_ID_COLUMNS = ("track_id", "trackId", "uri", "track_url", "trackUrl")
SPOTIFY_URL_COLUMNS = ("spotify_url", "spotifyUrl", "url")
TITLE_COLUMNS = ("title", "track_name", "trackName")
ARTIST_COLUMNS = ("artist", "artist_name", "artistName")
STREAMS_COLUMNS = ("streams", "stream_count", "streamCount")
ISRC_COLUMNS = ("isrc", "ISRC")

TRACK_URI_PREFIX = "spotify:track:"
TRACK_URL_BASE = "https://open.spotify.com/track/"

_TRACK_PATH_RE = re.compile(r"/track/([a-zA-Z0-9]+)")
_LEADING_INT_RE = re.compile(r"^[+-]?\d+")


def first_present(record: dict[str, str], columns: tuple[str, ...]) -> str:
    """Return the first non-empty value among the candidate columns."""
    for column in columns:
        value = record.get(column, "")
        if value:
            return value
    return ""


def canonical_track_id(raw: str) -> str:
    """Rewrite a track URL to a ``spotify:track:<id>`` URI; pass others through."""
    if raw and not raw.startswith(TRACK_URI_PREFIX) and "/track/" in raw:
        match = _TRACK_PATH_RE.search(raw)
        if match:
            return f"{TRACK_URI_PREFIX}{match.group(1)}"
    return raw


def canonical_url(track_id: str, explicit_url: str) -> str:
    if explicit_url:
        return explicit_url
    if track_id.startswith(TRACK_URI_PREFIX):
        return TRACK_URL_BASE + track_id[len(TRACK_URI_PREFIX):]
    return ""


def parse_streams(raw: str) -> int:
    """Leading integer of a stream count; 0 when missing, unparsable or negative."""
    cleaned = raw.replace(",", "").replace("_", "").strip()
    match = _LEADING_INT_RE.match(cleaned)
    if not match:
        return 0
    return max(0, int(match.group(0)))


def read_records(raw: bytes) -> list[dict[str, str]]:
    """Parse header-row CSV into string records with trimmed values.

    Raises:
        InvalidChartData: If the CSV is malformed or has no data rows
    """
    try:
        frame = pd.read_csv(
            io.BytesIO(raw),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            index_col=False,
            encoding="utf-8-sig",
        )
    except (pd.errors.EmptyDataError, pd.errors.ParserError, UnicodeDecodeError) as e:
        raise InvalidChartData(f"Invalid or empty CSV data: {e}") from e

    if frame.empty:
        raise InvalidChartData("Invalid or empty CSV data: no records")

    # Short rows are padded with NaN even with keep_default_na=False
    frame = frame.fillna("")
    frame.columns = [str(c).strip() for c in frame.columns]
    frame = frame.apply(lambda col: col.astype(str).str.strip())
    return frame.to_dict(orient="records")


class Normalizer:
    """Turns raw chart bytes into a validated NormalizedArtifact.

    Args:
        min_valid_items: Minimum rows with id, title and artist (default: 50)
    """

    def __init__(self, min_valid_items: int = DEFAULT_MIN_VALID_ITEMS) -> None:
        self.min_valid_items = min_valid_items

    @staticmethod
    def to_entry(record: dict[str, str], rank: int) -> ChartEntry:
        track_id = canonical_track_id(first_present(record, TRACK_ID_COLUMNS))
        return ChartEntry(
            rank=rank,
            track_id=track_id,
            title=first_present(record, TITLE_COLUMNS),
            artist=first_present(record, ARTIST_COLUMNS),
            streams=parse_streams(first_present(record, STREAMS_COLUMNS)),
            isrc=first_present(record, ISRC_COLUMNS),
            spotify_url=canonical_url(track_id, first_present(record, SPOTIFY_URL_COLUMNS)),
        )

    def normalize(
        self,
        raw: bytes,
        date_utc: str,
        region: str,
        source_url: str,
    ) -> tuple[NormalizedArtifact, str]:
        """Normalize raw chart CSV.

        Args:
            raw: Bytes exactly as fetched
            date_utc: Snapshot date (YYYY-MM-DD)
            region: Chart region
            source_url: URL the bytes were fetched from

        Returns:
            (artifact, source_hash) where source_hash is the hash of ``raw``

        Raises:
            InvalidChartData: Unparseable CSV or zero records
            InsufficientData: Fewer than min_valid_items valid rows
        """
        source_hash = sha256_hex(raw)

        records = read_records(raw)[:MAX_ITEMS]
        items = [self.to_entry(record, rank) for rank, record in enumerate(records, start=1)]

        valid_count = sum(1 for item in items if item.is_valid)
        if valid_count < self.min_valid_items:
            raise InsufficientData(valid_count=valid_count, required=self.min_valid_items)

        artifact = NormalizedArtifact(
            date_utc=date_utc,
            region=region,
            source_csv_url=source_url,
            source_csv_sha256=source_hash,
            list_length=len(items),
            items=items,
        )
        logger.info(
            "Normalized %s/%s: %d items (%d valid)", date_utc, region, len(items), valid_count,
        )
        return artifact, source_hash
