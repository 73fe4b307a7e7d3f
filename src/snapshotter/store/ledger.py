"""Snapshot ledger — one authoritative metadata row per (date_utc, region).

The ledger reflects the most recent successful pipeline run, never a history:
an upsert overwrites urls, hashes and CID and refreshes created_at in a single
statement. "No such snapshot" is ``None``, not an error.

Backends:
- SqliteSnapshotLedger: stdlib sqlite3, WAL mode, one connection per call
- PostgresSnapshotLedger: psycopg2 with a process-local connection pool

Usage:
    ledger = create_ledger(settings)
    await ledger.migrate()
    snapshot = await ledger.upsert(record)
    existing = await ledger.get("2024-01-15", "global")
"""

import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool

from snapshotter.config import Settings
from snapshotter.errors import LedgerError
from snapshotter.models import Snapshot, SnapshotRecord

logger = logging.getLogger(__name__)


SQLITE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    date_utc TEXT NOT NULL,
    region TEXT NOT NULL,
    json_url TEXT NOT NULL,
    json_sha256 TEXT NOT NULL,
    csv_url TEXT NOT NULL,
    csv_sha256 TEXT NOT NULL,
    ipfs_cid TEXT DEFAULT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (date_utc, region)
);

CREATE INDEX IF NOT EXISTS idx_snapshots_region_date
    ON snapshots (region, date_utc DESC);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS snapshots (
    id BIGSERIAL PRIMARY KEY,
    date_utc DATE NOT NULL,
    region TEXT NOT NULL,
    json_url TEXT NOT NULL,
    json_sha256 TEXT NOT NULL,
    csv_url TEXT NOT NULL,
    csv_sha256 TEXT NOT NULL,
    ipfs_cid TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (date_utc, region)
);

CREATE INDEX IF NOT EXISTS idx_snapshots_region_date
    ON snapshots (region, date_utc DESC);
"""

_COLUMNS = "id, date_utc, region, json_url, json_sha256, csv_url, csv_sha256, ipfs_cid, created_at"


def _row_to_snapshot(row: Any) -> Snapshot:
    """Map a DB row (sqlite3.Row or dict cursor row) to a Snapshot."""
    date_utc = row["date_utc"]
    if isinstance(date_utc, date):
        date_utc = date_utc.isoformat()
    created_at = row["created_at"]
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at)
    return Snapshot(
        id=row["id"],
        date_utc=date_utc,
        region=row["region"],
        csv_url=row["csv_url"],
        csv_sha256=row["csv_sha256"],
        json_url=row["json_url"],
        json_sha256=row["json_sha256"],
        ipfs_cid=row["ipfs_cid"],
        created_at=created_at,
    )


class SnapshotLedger(ABC):
    """Async facade over a blocking ledger backend."""

    async def upsert(self, record: SnapshotRecord) -> Snapshot:
        """Insert or overwrite the row for (record.date_utc, record.region).

        Raises:
            LedgerError: If the write fails
        """
        return await asyncio.to_thread(self._upsert, record)

    async def get(self, date_utc: str, region: str) -> Snapshot | None:
        """Return the row for (date_utc, region), or None."""
        return await asyncio.to_thread(self._get, date_utc, region)

    async def get_latest(self, region: str) -> Snapshot | None:
        """Return the most recent snapshot date for region, or None."""
        return await asyncio.to_thread(self._get_latest, region)

    async def migrate(self) -> None:
        """Create the snapshots table if it does not exist."""
        await asyncio.to_thread(self._migrate)

    def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    def _upsert(self, record: SnapshotRecord) -> Snapshot: ...

    @abstractmethod
    def _get(self, date_utc: str, region: str) -> Snapshot | None: ...

    @abstractmethod
    def _get_latest(self, region: str) -> Snapshot | None: ...

    @abstractmethod
    def _migrate(self) -> None: ...


class SqliteSnapshotLedger(SnapshotLedger):
    """SQLite-backed ledger.

    Args:
        db_path: Path to the SQLite database file
        clock: Returns the created_at timestamp for writes (tests)
    """

    def __init__(
        self,
        db_path: str | Path = "data/snapshots.db",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _connect(self) -> sqlite3.Connection:
        """Create a database connection with WAL mode for concurrent readers."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _migrate(self) -> None:
        try:
            conn = self._connect()
            try:
                conn.executescript(SQLITE_SCHEMA_SQL)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LedgerError(f"Ledger migration failed: {e}") from e

    def _upsert(self, record: SnapshotRecord) -> Snapshot:
        created_at = self._clock().isoformat()
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO snapshots "
                        "(date_utc, region, json_url, json_sha256, csv_url, csv_sha256, ipfs_cid, created_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                        "ON CONFLICT (date_utc, region) DO UPDATE SET "
                        "json_url = excluded.json_url, "
                        "json_sha256 = excluded.json_sha256, "
                        "csv_url = excluded.csv_url, "
                        "csv_sha256 = excluded.csv_sha256, "
                        "ipfs_cid = excluded.ipfs_cid, "
                        "created_at = excluded.created_at",
                        (
                            record.date_utc,
                            record.region,
                            record.json_url,
                            record.json_sha256,
                            record.csv_url,
                            record.csv_sha256,
                            record.ipfs_cid,
                            created_at,
                        ),
                    )
                    row = conn.execute(
                        f"SELECT {_COLUMNS} FROM snapshots WHERE date_utc = ? AND region = ?",
                        (record.date_utc, record.region),
                    ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LedgerError(f"Snapshot upsert failed: {e}") from e
        return _row_to_snapshot(row)

    def _get(self, date_utc: str, region: str) -> Snapshot | None:
        return self._fetch_one(
            f"SELECT {_COLUMNS} FROM snapshots WHERE date_utc = ? AND region = ?",
            (date_utc, region),
        )

    def _get_latest(self, region: str) -> Snapshot | None:
        return self._fetch_one(
            f"SELECT {_COLUMNS} FROM snapshots WHERE region = ? ORDER BY date_utc DESC LIMIT 1",
            (region,),
        )

    def _fetch_one(self, sql: str, params: tuple) -> Snapshot | None:
        try:
            conn = self._connect()
            try:
                row = conn.execute(sql, params).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LedgerError(f"Snapshot query failed: {e}") from e
        return _row_to_snapshot(row) if row else None


class PostgresSnapshotLedger(SnapshotLedger):
    """PostgreSQL-backed ledger with a lazily created connection pool.

    Args:
        dsn: libpq connection string / URL
        max_connections: Pool upper bound
    """

    def __init__(self, dsn: str, max_connections: int = 5) -> None:
        self.dsn = dsn
        self.max_connections = max_connections
        self._pool: ThreadedConnectionPool | None = None

    def _get_pool(self) -> ThreadedConnectionPool:
        if self._pool is None:
            try:
                self._pool = ThreadedConnectionPool(
                    minconn=1,
                    maxconn=self.max_connections,
                    dsn=self.dsn,
                    connect_timeout=5,
                )
            except psycopg2.Error as e:
                raise LedgerError(f"Cannot connect to ledger database: {e}") from e
        return self._pool

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    def _run(self, sql: str, params: tuple = (), fetch: bool = True, commit: bool = False) -> Any:
        """Execute one statement on a pooled connection.

        Any open transaction is rolled back before the connection goes back to
        the pool. A connection that cannot be rolled back is discarded.
        """
        pool = self._get_pool()
        try:
            conn = pool.getconn()
        except psycopg2.Error as e:
            raise LedgerError(f"Cannot acquire ledger connection: {e}") from e

        broken = False
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                row = cur.fetchone() if fetch else None
            if commit:
                conn.commit()
            return row
        except psycopg2.Error as e:
            raise LedgerError(f"Ledger statement failed: {e}") from e
        finally:
            try:
                conn.rollback()
            except psycopg2.Error as e:
                logger.warning("Discarding ledger connection after failed rollback: %s", e)
                broken = True
            try:
                pool.putconn(conn, close=broken or bool(conn.closed))
            except psycopg2.Error as e:
                logger.warning("Failed to return ledger connection to pool: %s", e)
                try:
                    conn.close()
                except psycopg2.Error:
                    pass

    def _migrate(self) -> None:
        self._run(POSTGRES_SCHEMA_SQL, fetch=False, commit=True)

    def _upsert(self, record: SnapshotRecord) -> Snapshot:
        row = self._run(
            "INSERT INTO snapshots "
            "(date_utc, region, json_url, json_sha256, csv_url, csv_sha256, ipfs_cid) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (date_utc, region) DO UPDATE SET "
            "json_url = EXCLUDED.json_url, "
            "json_sha256 = EXCLUDED.json_sha256, "
            "csv_url = EXCLUDED.csv_url, "
            "csv_sha256 = EXCLUDED.csv_sha256, "
            "ipfs_cid = EXCLUDED.ipfs_cid, "
            "created_at = NOW() "
            f"RETURNING {_COLUMNS}",
            (
                record.date_utc,
                record.region,
                record.json_url,
                record.json_sha256,
                record.csv_url,
                record.csv_sha256,
                record.ipfs_cid,
            ),
            commit=True,
        )
        return _row_to_snapshot(row)

    def _get(self, date_utc: str, region: str) -> Snapshot | None:
        row = self._run(
            f"SELECT {_COLUMNS} FROM snapshots WHERE date_utc = %s AND region = %s",
            (date_utc, region),
        )
        return _row_to_snapshot(row) if row else None

    def _get_latest(self, region: str) -> Snapshot | None:
        row = self._run(
            f"SELECT {_COLUMNS} FROM snapshots WHERE region = %s ORDER BY date_utc DESC LIMIT 1",
            (region,),
        )
        return _row_to_snapshot(row) if row else None


def create_ledger(settings: Settings) -> SnapshotLedger:
    """Build the ledger backend selected by settings.database_url."""
    url = settings.database_url
    if url.startswith("sqlite:///"):
        return SqliteSnapshotLedger(db_path=url[len("sqlite:///"):])
    return PostgresSnapshotLedger(dsn=url, max_connections=settings.database_pool_max)
