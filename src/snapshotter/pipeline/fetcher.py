"""Fetcher — Spotify Charts → raw CSV bytes.

Retries transport errors, non-2xx responses and empty bodies with exponential
backoff plus up to 10% jitter. The attempt budget is derived from
``max_retry_hours`` (see Settings.max_retry_attempts). Backoff sleeps wait on
a shutdown event so a terminating process never starts a new retry sleep.
"""

import asyncio
import logging
import random

import httpx

from snapshotter.clients import APIProviderError, ChartSourceClient, SlackNotifier
from snapshotter.config import Settings
from snapshotter.errors import FetchExhausted

logger = logging.getLogger(__name__)

_JITTER_FRACTION = 0.1


class ChartFetcher:
    """Fetches raw chart CSV with bounded, cancellable retry.

    Usage:
        fetcher = ChartFetcher.from_settings(settings, shutdown=stop_event)
        raw = await fetcher.fetch("2024-01-15", "global")
    """

    def __init__(
        self,
        url_template: str,
        max_attempts: int,
        initial_delay_ms: int,
        timeout: float = 30.0,
        notifier: SlackNotifier | None = None,
        shutdown: asyncio.Event | None = None,
        rng: random.Random | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize fetcher.

        Args:
            url_template: Chart URL template with ${REGION}/${DATE}
            max_attempts: Total request attempts before giving up
            initial_delay_ms: Backoff delay before the second attempt
            timeout: Per-request timeout in seconds
            notifier: Alert sink used once the budget is exhausted
            shutdown: Event set when the host process is draining
            rng: Random source for jitter
            transport: Optional httpx transport (tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.url_template = url_template
        self.max_attempts = max_attempts
        self.initial_delay_ms = initial_delay_ms
        self.timeout = timeout
        self.notifier = notifier or SlackNotifier(webhook_url=None)
        self.shutdown = shutdown or asyncio.Event()
        self._rng = rng or random.Random()
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        shutdown: asyncio.Event | None = None,
    ) -> "ChartFetcher":
        return cls(
            url_template=settings.spotify_charts_url_template,
            max_attempts=settings.max_retry_attempts,
            initial_delay_ms=settings.initial_retry_delay_ms,
            timeout=settings.fetch_timeout_seconds,
            notifier=SlackNotifier(webhook_url=settings.slack_webhook_url),
            shutdown=shutdown,
        )

    def _client(self) -> ChartSourceClient:
        return ChartSourceClient(
            url_template=self.url_template,
            timeout=self.timeout,
            transport=self._transport,
        )

    def source_url(self, date_utc: str, region: str) -> str:
        """The URL a fetch for (date_utc, region) downloads from."""
        return self._client().chart_url(date_utc, region)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt ``attempt`` (0-based)."""
        delay_ms = self.initial_delay_ms * (2 ** attempt)
        jitter_ms = self._rng.uniform(0, _JITTER_FRACTION * delay_ms)
        return (delay_ms + jitter_ms) / 1000.0

    async def _wait(self, seconds: float) -> bool:
        """Sleep unless shutdown is requested. Returns True if interrupted."""
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def fetch(self, date_utc: str, region: str) -> bytes:
        """Fetch raw chart bytes for (date_utc, region).

        Returns:
            Response body exactly as received

        Raises:
            FetchExhausted: After max_attempts failures, or when shutdown
                interrupts the retry loop
        """
        last_error: Exception | None = None
        attempts = 0

        async with self._client() as client:
            for attempt in range(self.max_attempts):
                if self.shutdown.is_set():
                    break
                attempts = attempt + 1
                logger.info(
                    "Fetching chart CSV for %s/%s, attempt %d/%d",
                    date_utc, region, attempts, self.max_attempts,
                )
                try:
                    raw = await client.get_csv(date_utc, region)
                    logger.info(
                        "Fetched chart CSV for %s/%s (%d bytes)", date_utc, region, len(raw),
                    )
                    return raw
                except APIProviderError as e:
                    last_error = e
                    logger.warning("Attempt %d failed: %s", attempts, e)

                if attempt < self.max_attempts - 1:
                    delay = self.backoff_delay(attempt)
                    logger.info("Retrying in %.0fs...", delay)
                    if await self._wait(delay):
                        break

        if self.shutdown.is_set():
            logger.warning(
                "Fetch for %s/%s interrupted by shutdown after %d attempts",
                date_utc, region, attempts,
            )
            raise FetchExhausted(
                f"Chart fetch interrupted by shutdown after {attempts} attempts",
                last_error=last_error,
                attempts=attempts,
            )

        await self.notifier.send_fetch_alert(date_utc, region, last_error)
        raise FetchExhausted(
            f"Failed to fetch chart CSV after {attempts} attempts: {last_error}",
            last_error=last_error,
            attempts=attempts,
        )
