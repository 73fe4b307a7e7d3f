"""Error taxonomy for the snapshot pipeline.

Only the chart fetcher retries internally. Everything else surfaces to the
caller (the worker or the CLI), which owns outer retry policy.
"""


class SnapshotterError(Exception):
    """Base exception for snapshotter failures."""


class FetchExhausted(SnapshotterError):
    """Chart source stayed unavailable for the whole retry budget."""

    def __init__(self, message: str, last_error: Exception | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class InvalidChartData(SnapshotterError):
    """Raw chart data could not be parsed into any records."""


class InsufficientData(SnapshotterError):
    """Too few valid chart rows to produce an authoritative snapshot."""

    def __init__(self, valid_count: int, required: int) -> None:
        super().__init__(
            f"Insufficient valid chart data: only {valid_count} valid items found "
            f"(need {required})"
        )
        self.valid_count = valid_count
        self.required = required


class StoreError(SnapshotterError):
    """Object storage failure other than "object absent"."""


class AnchorFailure(SnapshotterError):
    """Content-address anchoring failed. Always captured, never raised out of the pipeline."""


class LedgerError(SnapshotterError):
    """Snapshot ledger (metadata database) failure."""


# Data-quality failures: retrying the same job cannot succeed.
NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (InvalidChartData, InsufficientData)
