"""
Unit tests for the scheduler service: jitter bounds, job isolation, shutdown.

Run: pytest backend/tests/test_scheduler.py -v
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ingest.normalization.normalizer import NameNormalizer
from scheduler.service import PeriodicJob, SchedulerService, jittered
from shared.config import Settings


@pytest.fixture
def service() -> SchedulerService:
    settings = Settings(_env_file=None, scheduler_interval_s=900, competition_refresh_interval_s=3600)
    return SchedulerService(MagicMock(), settings, NameNormalizer())


# ── Jitter ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize("interval", [5.0, 60.0, 900.0])
def test_jittered_stays_within_bounds(interval: float) -> None:
    for _ in range(200):
        value = jittered(interval, 0.1)
        assert interval * 0.9 <= value <= interval * 1.1


def test_jittered_never_below_one_second() -> None:
    assert jittered(0.2, 0.5) == 1.0


def test_schedule_next_moves_due_time_forward() -> None:
    job = PeriodicJob("x", 100.0, 0.0, AsyncMock())
    job.schedule_next(50.0)
    assert job.next_run_at == 150.0


# ── Jobs ────────────────────────────────────────────────────────────────

def test_service_registers_both_jobs(service: SchedulerService) -> None:
    assert [job.name for job in service.jobs] == ["competition_refresh", "reconciliation"]
    assert [job.interval_s for job in service.jobs] == [3600, 900]


@pytest.mark.asyncio
async def test_failed_job_is_contained(service: SchedulerService) -> None:
    job = PeriodicJob("boom", 60.0, 0.0, AsyncMock(side_effect=RuntimeError("source down")))
    assert await service.run_job(job) is False
    assert await service.run_job(job) is False
    assert job.consecutive_errors == 2


@pytest.mark.asyncio
async def test_success_resets_error_count(service: SchedulerService) -> None:
    run = AsyncMock(side_effect=[RuntimeError("once"), None])
    job = PeriodicJob("flaky", 60.0, 0.0, run)
    await service.run_job(job)
    assert await service.run_job(job) is True
    assert job.consecutive_errors == 0


@pytest.mark.asyncio
async def test_cancellation_propagates(service: SchedulerService) -> None:
    job = PeriodicJob("cancelled", 60.0, 0.0, AsyncMock(side_effect=asyncio.CancelledError()))
    with pytest.raises(asyncio.CancelledError):
        await service.run_job(job)


@pytest.mark.asyncio
async def test_run_executes_due_jobs_then_stops(service: SchedulerService) -> None:
    refresh = AsyncMock()
    reconcile = AsyncMock(side_effect=lambda *args, **kwargs: service.request_shutdown())
    with patch("scheduler.service.refresh_competitions", refresh), \
         patch("scheduler.service.run_reconciliation", reconcile):
        await asyncio.wait_for(service.run(), timeout=5)

    refresh.assert_awaited_once()
    reconcile.assert_awaited_once()
    assert reconcile.await_args.kwargs["normalizer"] is not None
