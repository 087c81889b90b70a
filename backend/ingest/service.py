"""
Competition feed refresh.
Fetches each competition's calendar feed, imports it through CalendarImporter,
and persists the fixture list once at the end.
"""
from __future__ import annotations

from typing import Iterable, Optional

import httpx

from ingest.calendar import CalendarFeedError, CalendarImporter, normalize_feed_url
from ingest.normalization.normalizer import NameNormalizer, build_normalizer
from shared.config import Settings, get_settings
from shared.models.domain import Competition, ImportSummary, RefreshSummary
from shared.utils.http_client import SourceHTTPClient
from shared.utils.logging import get_logger, run_context
from storage.fixture_store import FixtureStore
from storage.repository import FixtureRepository

logger = get_logger(__name__)

CALENDAR_SOURCE = "calendar"
CALENDAR_ACCEPT = "text/calendar, */*;q=0.9"


def calendar_client(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> SourceHTTPClient:
    return SourceHTTPClient(
        CALENDAR_SOURCE,
        headers={"User-Agent": settings.calendar_user_agent, "Accept": CALENDAR_ACCEPT},
        timeout_s=settings.calendar_timeout_s,
        transport=transport,
    )


class CompetitionRefresher:
    """
    Imports every competition's feed into one store.
    A competition whose fetch or parse fails is logged, listed in the summary, and skipped.
    """

    def __init__(
        self,
        importer: CalendarImporter,
        client: SourceHTTPClient,
    ) -> None:
        self._importer = importer
        self._client = client

    async def load_feed(self, competition: Competition) -> Optional[str]:
        """Inline feed text when the record carries one, else the body fetched from its URL."""
        if competition.feed_text:
            return competition.feed_text
        url = normalize_feed_url(competition.url)
        if not url:
            return None
        return await self._client.get_text(url)

    async def refresh_one(self, competition: Competition) -> Optional[ImportSummary]:
        feed_text = await self.load_feed(competition)
        if feed_text is None:
            logger.debug("competition_without_feed", competition=competition.name)
            return None
        return self._importer.import_feed(feed_text, competition)

    async def refresh_all(self, competitions: Iterable[Competition]) -> RefreshSummary:
        summary = RefreshSummary()
        for competition in competitions:
            try:
                result = await self.refresh_one(competition)
            except (httpx.HTTPError, CalendarFeedError) as exc:
                summary.failed.append(competition.name)
                logger.warning(
                    "competition_refresh_failed",
                    competition=competition.name,
                    url=competition.url,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if result is None:
                continue
            summary.added += result.added
            summary.updated += result.updated

        logger.info(
            "competitions_refreshed",
            added=summary.added,
            updated=summary.updated,
            failed=len(summary.failed),
        )
        return summary


async def refresh_competitions(
    repository: FixtureRepository,
    settings: Settings | None = None,
    normalizer: NameNormalizer | None = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RefreshSummary:
    """Load competitions and fixtures, refresh every feed, persist the fixture list if anything changed."""
    settings = settings or get_settings()
    normalizer = normalizer or build_normalizer(settings.alias_file)

    with run_context("competition_refresh"):
        competitions = await repository.load_competitions()
        store = FixtureStore(await repository.load_fixtures(), settings=settings, team_key=normalizer.match_key)
        importer = CalendarImporter(store, normalizer)

        async with calendar_client(settings, transport) as client:
            summary = await CompetitionRefresher(importer, client).refresh_all(competitions)

        if store.dirty:
            await repository.persist_fixtures(store.fixtures)
            store.mark_clean()
    return summary


async def import_calendar(
    repository: FixtureRepository,
    feed_text: str,
    competition: Competition,
    settings: Settings | None = None,
    normalizer: NameNormalizer | None = None,
) -> ImportSummary:
    """Import a single feed already in hand (file upload, CLI). Raises CalendarFeedError."""
    settings = settings or get_settings()
    normalizer = normalizer or build_normalizer(settings.alias_file)
    store = FixtureStore(await repository.load_fixtures(), settings=settings, team_key=normalizer.match_key)
    summary = CalendarImporter(store, normalizer).import_feed(feed_text, competition)
    if store.dirty:
        await repository.persist_fixtures(store.fixtures)
        store.mark_clean()
    return summary
