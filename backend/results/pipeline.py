"""
run_reconciliation: the single trigger operation behind the CLI, scheduler and admin API.

scrape window -> reconcile against the store -> persist fixtures -> score affected
predictions -> persist again. Partial progress is committed; nothing here is fatal
except storage failures, which propagate to the caller.
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from ingest.normalization.normalizer import NameNormalizer, build_normalizer
from shared.config import Settings, get_settings
from shared.models.domain import Fixture, RunSummary
from shared.utils.logging import get_logger, run_context
from shared.utils.metrics import LAST_RUN_ROWS, LAST_RUN_UPDATED, RUN_DURATION
from shared.utils.http_client import SourceHTTPClient
from storage.fixture_store import FixtureStore
from storage.repository import FixtureRepository

from results.reconciliation import Reconciler
from results.scoring import ScoringService
from results.scraper import ResultScraper, window_dates
from results.sources.base import ResultSource
from results.sources.bbc import BBCResultSource

logger = get_logger(__name__)


def results_client(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> SourceHTTPClient:
    return SourceHTTPClient(
        "bbc",
        headers={"User-Agent": settings.results_user_agent},
        timeout_s=settings.fetch_timeout_s,
        transport=transport,
    )


def needs_review(store: FixtureStore, now: datetime, window_days: int) -> list[Fixture]:
    """Fixtures that kicked off within the last window_days and still have no result."""
    return sorted(
        store.unresolved_between(now - timedelta(days=window_days), now),
        key=lambda f: f.kickoff,
    )


async def run_reconciliation(
    days_back: Optional[int] = None,
    days_forward: Optional[int] = None,
    *,
    repository: FixtureRepository,
    settings: Settings | None = None,
    normalizer: NameNormalizer | None = None,
    source: ResultSource | None = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    now: Optional[datetime] = None,
) -> RunSummary:
    """
    Scrape [today - days_back, today + days_forward], attach new results, rescore.

    Args:
        days_back / days_forward: window around today; settings defaults when None.
        repository: storage for fixtures and predictions (already opened).
        source: results source; the BBC scores page over an owned client when None.
        transport: optional httpx transport for the owned client (tests).
        now: clock override; "today" and the review window derive from it.
    """
    settings = settings or get_settings()
    normalizer = normalizer or build_normalizer(settings.alias_file)
    days_back = settings.default_days_back if days_back is None else days_back
    days_forward = settings.default_days_forward if days_forward is None else days_forward
    now = now or datetime.now(timezone.utc)

    with run_context("reconciliation"):
        return await _reconcile_window(days_back, days_forward, repository, settings, normalizer, source, transport, now)


async def _reconcile_window(
    days_back: int,
    days_forward: int,
    repository: FixtureRepository,
    settings: Settings,
    normalizer: NameNormalizer,
    source: Optional[ResultSource],
    transport: Optional[httpx.AsyncBaseTransport],
    now: datetime,
) -> RunSummary:
    started = time.perf_counter()

    store = FixtureStore(await repository.load_fixtures(), settings=settings, team_key=normalizer.match_key)

    client: Optional[SourceHTTPClient] = None
    if source is None:
        client = results_client(settings, transport)
        await client.start()
        source = BBCResultSource(client, settings)
    try:
        scraped = await ResultScraper(source, settings).fetch_window(days_back, days_forward, today=now.date())
    finally:
        if client is not None:
            await client.close()

    report = Reconciler(store, normalizer, settings).reconcile(scraped)

    predictions_scored = 0
    if report.updated_count:
        # Results are committed before scoring so a scoring failure never loses them
        await repository.persist_fixtures(store.fixtures)
        store.mark_clean()
        scorer = ScoringService(store, repository, settings, team_key=normalizer.match_key)
        predictions_scored = await scorer.rescore(report.updated_fixture_ids, now=now)
        await repository.persist_fixtures(store.fixtures)
        store.mark_clean()

    summary = RunSummary(
        updated_count=report.updated_count,
        rows_found=len(scraped),
        dates_fetched=len(window_dates(days_back, days_forward, now.date())),
        unmatched=report.unmatched,
        predictions_scored=predictions_scored,
        needs_review=needs_review(store, now, settings.review_window_days),
        finished_at=datetime.now(timezone.utc),
    )

    RUN_DURATION.observe(time.perf_counter() - started)
    LAST_RUN_UPDATED.set(summary.updated_count)
    LAST_RUN_ROWS.set(summary.rows_found)
    logger.info(
        "reconciliation_run_complete",
        days_back=days_back,
        days_forward=days_forward,
        rows_found=summary.rows_found,
        updated=summary.updated_count,
        unmatched=len(summary.unmatched),
        predictions_scored=summary.predictions_scored,
        needs_review=len(summary.needs_review),
    )
    return summary
