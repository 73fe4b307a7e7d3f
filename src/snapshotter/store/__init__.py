"""Persistence for Hitcastor Snapshotter.

Immutable evidence objects (raw CSV + normalized JSON) and the snapshot
ledger that records their locations and hashes.
"""

from snapshotter.store.content_store import (
    CSV_FILENAME,
    JSON_FILENAME,
    ContentStore,
    LocalContentStore,
    PutResult,
    S3ContentStore,
    build_object_key,
    create_content_store,
)
from snapshotter.store.ledger import (
    PostgresSnapshotLedger,
    SnapshotLedger,
    SqliteSnapshotLedger,
    create_ledger,
)

__all__ = [
    "CSV_FILENAME",
    "JSON_FILENAME",
    "ContentStore",
    "LocalContentStore",
    "PutResult",
    "S3ContentStore",
    "build_object_key",
    "create_content_store",
    "PostgresSnapshotLedger",
    "SnapshotLedger",
    "SqliteSnapshotLedger",
    "create_ledger",
]
