"""Scheduler — daily trigger plus a single sequential worker.

DailyScheduler owns exactly one standing cron definition ("daily-snapshot");
registering again first removes every existing job. Each firing enqueues a
SnapshotJob for yesterday (UTC). SnapshotWorker is the only consumer of that
queue, so pipeline runs never overlap however many triggers are pending.

The worker owns outer retry: a failed job is retried with exponential backoff
up to ``attempts`` times, except for data-quality failures, then kept in a
bounded dead-letter list.

Usage:
    asyncio.run(run_service(get_settings()))
"""

import asyncio
import logging
import signal
from collections import deque
from datetime import timezone
from typing import Awaitable, Callable

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from snapshotter.config import Settings
from snapshotter.dates import yesterday_utc
from snapshotter.errors import NON_RETRYABLE_ERRORS
from snapshotter.models import FailedJob, SnapshotJob
from snapshotter.pipeline import PipelineResult, SnapshotPipeline

logger = logging.getLogger(__name__)

DAILY_JOB_ID = "daily-snapshot"

JobRunner = Callable[[SnapshotJob], Awaitable[PipelineResult]]


class SnapshotWorker:
    """Processes snapshot jobs one at a time.

    Args:
        runner: Coroutine function running one job (usually SnapshotPipeline.run)
        attempts: Tries per job (default: 3)
        backoff_seconds: Delay before the second try; doubles each retry
        shutdown: Event set when the process is draining
        failed_history: How many dead-lettered jobs to keep
    """

    def __init__(
        self,
        runner: JobRunner,
        attempts: int = 3,
        backoff_seconds: float = 30.0,
        shutdown: asyncio.Event | None = None,
        failed_history: int = 50,
    ) -> None:
        self.runner = runner
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.shutdown = shutdown or asyncio.Event()
        self.queue: asyncio.Queue[SnapshotJob] = asyncio.Queue()
        self.completed: deque[PipelineResult] = deque(maxlen=10)
        self.failed: deque[FailedJob] = deque(maxlen=failed_history)
        self._lock = asyncio.Lock()

    def enqueue(self, job: SnapshotJob) -> None:
        """Queue a job. Must be called from the worker's event loop."""
        logger.info("Queued snapshot job %s/%s (force=%s)", job.date_utc, job.region, job.force)
        self.queue.put_nowait(job)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless shutdown is requested. Returns True if interrupted."""
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def process(self, job: SnapshotJob) -> PipelineResult | None:
        """Run one job with retries. Returns None if it was dead-lettered.

        Calls made directly, outside run_forever, still run one at a time.
        """
        async with self._lock:
            last_error: Exception | None = None
            attempt = 0
            for attempt in range(1, self.attempts + 1):
                try:
                    result = await self.runner(job)
                except NON_RETRYABLE_ERRORS as e:
                    last_error = e
                    logger.error("Job %s/%s failed permanently: %s", job.date_utc, job.region, e)
                    break
                except Exception as e:
                    last_error = e
                    logger.error(
                        "Job %s/%s failed (attempt %d/%d): %s",
                        job.date_utc, job.region, attempt, self.attempts, e,
                    )
                    if attempt < self.attempts:
                        delay = self.backoff_seconds * (2 ** (attempt - 1))
                        if await self._sleep(delay):
                            break
                    continue

                logger.info("Job %s/%s completed", job.date_utc, job.region)
                self.completed.append(result)
                return result

            self.failed.append(FailedJob(job=job, error=str(last_error), attempts=attempt))
            return None

    async def _next_job(self) -> SnapshotJob | None:
        """Wait for the next job or for shutdown, whichever comes first."""
        get_task = asyncio.ensure_future(self.queue.get())
        stop_task = asyncio.ensure_future(self.shutdown.wait())
        done, _ = await asyncio.wait({get_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        stop_task.cancel()

        if get_task not in done:
            get_task.cancel()
            return None
        job = get_task.result()
        if self.shutdown.is_set():
            # Not started yet, leave it for the next process
            self.queue.put_nowait(job)
            self.queue.task_done()
            return None
        return job

    async def run_forever(self) -> None:
        """Consume the queue until shutdown is requested."""
        logger.info("Snapshot worker started (concurrency=1)")
        while not self.shutdown.is_set():
            job = await self._next_job()
            if job is None:
                break
            try:
                await self.process(job)
            finally:
                self.queue.task_done()
        logger.info("Snapshot worker stopped")


class DailyScheduler:
    """Single standing daily trigger that feeds a SnapshotWorker.

    Args:
        worker: Worker receiving triggered jobs
        region: Region snapshotted by the daily job
        hour: Trigger hour (UTC)
        minute: Trigger minute (UTC)
        scheduler: APScheduler instance (default: new AsyncIOScheduler in UTC)
    """

    def __init__(
        self,
        worker: SnapshotWorker,
        region: str,
        hour: int = 0,
        minute: int = 0,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.worker = worker
        self.region = region
        self.hour = hour
        self.minute = minute
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)

    async def trigger(self) -> None:
        """Scheduled callback: queue yesterday's snapshot."""
        self.worker.enqueue(SnapshotJob(date_utc=yesterday_utc(), region=self.region))

    def register(self) -> Job:
        """Install the daily job, removing any prior definitions first."""
        for existing in self.scheduler.get_jobs():
            logger.info("Removing existing scheduled job %s", existing.id)
            self.scheduler.remove_job(existing.id)

        job = self.scheduler.add_job(
            self.trigger,
            trigger=CronTrigger(hour=self.hour, minute=self.minute, timezone=timezone.utc),
            id=DAILY_JOB_ID,
            name="Daily chart snapshot",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
            replace_existing=True,
        )
        logger.info(
            "Daily snapshot schedule configured for %02d:%02d UTC (region=%s)",
            self.hour, self.minute, self.region,
        )
        return job

    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)


async def run_service(settings: Settings) -> None:
    """Run scheduler + worker until SIGINT/SIGTERM."""
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(shutdown.set))

    pipeline = SnapshotPipeline.from_settings(settings, shutdown=shutdown)
    await pipeline.ledger.migrate()

    worker = SnapshotWorker(
        runner=pipeline.run,
        attempts=settings.job_attempts,
        backoff_seconds=settings.job_backoff_seconds,
        shutdown=shutdown,
    )
    scheduler = DailyScheduler(
        worker=worker,
        region=settings.region,
        hour=settings.schedule_hour,
        minute=settings.schedule_minute,
    )
    scheduler.register()
    scheduler.start()
    logger.info("Hitcastor Snapshotter started")

    try:
        await worker.run_forever()
    finally:
        logger.info("Shutting down gracefully")
        scheduler.stop()
        pipeline.ledger.close()
        logger.info("Shutdown complete")
