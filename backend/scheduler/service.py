"""
Scheduler service for the predictions backend.
Periodically refreshes competition calendar feeds and runs reconciliation.
Each tick is a short, independent invocation; a failed tick is logged and the
next one simply tries again.
"""
from __future__ import annotations

import asyncio
import random
import signal
import time
from typing import Awaitable, Callable

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server

from ingest.normalization.normalizer import NameNormalizer, build_normalizer
from ingest.service import refresh_competitions
from results.pipeline import run_reconciliation
from storage.repository import FixtureRepository, create_repository

logger = get_logger(__name__)

# Idle granularity of the loop while waiting for the next due job
MAX_IDLE_S = 60.0


def jittered(interval_s: float, jitter: float) -> float:
    """interval_s spread by +/- jitter (a fraction), never below one second."""
    return max(1.0, interval_s + interval_s * jitter * (2 * random.random() - 1))


class PeriodicJob:
    """A named coroutine factory with its own jittered interval."""

    def __init__(self, name: str, interval_s: float, jitter: float, run: Callable[[], Awaitable[object]]) -> None:
        self.name = name
        self.interval_s = interval_s
        self.jitter = jitter
        self.run = run
        self.next_run_at: float = 0.0
        self.consecutive_errors: int = 0

    def schedule_next(self, now: float) -> None:
        self.next_run_at = now + jittered(self.interval_s, self.jitter)


class SchedulerService:
    """
    Drives the periodic jobs:
    1. competition feed refresh (calendar import)
    2. reconciliation over the default window
    Jobs never overlap each other; shutdown is honoured between jobs.
    """

    def __init__(
        self,
        repository: FixtureRepository,
        settings: Settings | None = None,
        normalizer: NameNormalizer | None = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or get_settings()
        self._normalizer = normalizer or build_normalizer(self._settings.alias_file)
        self._shutdown = asyncio.Event()
        jitter = self._settings.scheduler_jitter_factor
        self.jobs = [
            PeriodicJob("competition_refresh", self._settings.competition_refresh_interval_s, jitter, self._refresh),
            PeriodicJob("reconciliation", self._settings.scheduler_interval_s, jitter, self._reconcile),
        ]

    def request_shutdown(self) -> None:
        logger.info("scheduler_shutdown_requested")
        self._shutdown.set()

    async def _refresh(self) -> object:
        return await refresh_competitions(self._repository, self._settings, self._normalizer)

    async def _reconcile(self) -> object:
        return await run_reconciliation(
            repository=self._repository,
            settings=self._settings,
            normalizer=self._normalizer,
        )

    async def run_job(self, job: PeriodicJob) -> bool:
        """Run one job; True on success. Failures are logged and retried at the next due time."""
        started = time.perf_counter()
        try:
            await job.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.consecutive_errors += 1
            logger.exception(
                "scheduler_job_failed",
                job=job.name,
                error=str(exc),
                consecutive_errors=job.consecutive_errors,
            )
            return False
        job.consecutive_errors = 0
        logger.info("scheduler_job_done", job=job.name, duration_s=round(time.perf_counter() - started, 2))
        return True

    async def run(self) -> None:
        """Main loop: run whatever is due, then sleep until the next job or shutdown."""
        while not self._shutdown.is_set():
            now = time.monotonic()
            for job in self.jobs:
                if self._shutdown.is_set():
                    break
                if job.next_run_at <= now:
                    await self.run_job(job)
                    job.schedule_next(time.monotonic())

            next_due = min(job.next_run_at for job in self.jobs)
            delay = min(MAX_IDLE_S, max(0.0, next_due - time.monotonic()))
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass


async def main() -> None:
    """Scheduler service entrypoint."""
    settings = get_settings()
    setup_logging("scheduler")
    start_metrics_server()

    repository = create_repository(settings)
    await repository.open()

    service = SchedulerService(repository, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.request_shutdown)
        except NotImplementedError:
            pass

    logger.info(
        "scheduler_service_started",
        instance_id=settings.instance_id,
        reconcile_interval_s=settings.scheduler_interval_s,
        refresh_interval_s=settings.competition_refresh_interval_s,
    )

    try:
        await service.run()
    finally:
        await repository.close()
        logger.info("scheduler_service_stopped")


if __name__ == "__main__":
    asyncio.run(main())
