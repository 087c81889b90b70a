"""
Admin trigger endpoints.

POST /v1/admin/reconcile              - scrape a window and attach new results
POST /v1/admin/competitions/refresh   - re-import every competition calendar feed
POST /v1/admin/recalculate            - re-derive points for every resolved fixture
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from ingest.normalization.normalizer import NameNormalizer
from ingest.service import refresh_competitions
from results.pipeline import run_reconciliation
from results.scoring import ScoringService
from shared.config import Settings, get_settings
from shared.utils.logging import get_logger
from storage.fixture_store import FixtureStore
from storage.repository import FixtureRepository

from api.dependencies import get_normalizer, get_repository, get_run_lock, require_admin

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])

MAX_WINDOW_DAYS = 31


@router.post("/reconcile")
async def reconcile(
    days_back: Optional[int] = Query(default=None, ge=0, le=MAX_WINDOW_DAYS, alias="daysBack"),
    days_forward: Optional[int] = Query(default=None, ge=0, le=MAX_WINDOW_DAYS, alias="daysForward"),
    repository: FixtureRepository = Depends(get_repository),
    normalizer: NameNormalizer = Depends(get_normalizer),
    lock: asyncio.Lock = Depends(get_run_lock),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """
    Run reconciliation over [today - daysBack, today + daysForward].

    Returns the run summary: updatedCount, rowsFound, unmatched rows and
    fixtures flagged for manual review.
    """
    async with lock:
        summary = await run_reconciliation(
            days_back,
            days_forward,
            repository=repository,
            settings=settings,
            normalizer=normalizer,
        )
    logger.info("admin_reconcile_done", updated=summary.updated_count)
    return summary.model_dump(mode="json", by_alias=True)


@router.post("/competitions/refresh")
async def refresh(
    repository: FixtureRepository = Depends(get_repository),
    normalizer: NameNormalizer = Depends(get_normalizer),
    lock: asyncio.Lock = Depends(get_run_lock),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    async with lock:
        summary = await refresh_competitions(repository, settings, normalizer)
    return summary.model_dump(mode="json", by_alias=True)


@router.post("/recalculate")
async def recalculate(
    repository: FixtureRepository = Depends(get_repository),
    normalizer: NameNormalizer = Depends(get_normalizer),
    lock: asyncio.Lock = Depends(get_run_lock),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Full leaderboard recalculation. Safe to re-trigger any number of times."""
    async with lock:
        store = FixtureStore(await repository.load_fixtures(), settings=settings, team_key=normalizer.match_key)
        scored = await ScoringService(store, repository, settings, team_key=normalizer.match_key).recalculate_all()
        if store.dirty:
            await repository.persist_fixtures(store.fixtures)
            store.mark_clean()
    return {"predictionsScored": scored}
