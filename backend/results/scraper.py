"""
Result scraper: one results page per date, fetched concurrently across a window.

Every date is fault-isolated. A failed fetch contributes nothing for that date
and is retried only by the next scheduled run; a page no extraction strategy
understands contributes nothing and is surfaced as rows_found=0.
"""
from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import httpx

from shared.config import Settings, get_settings
from shared.models.domain import ScrapedResult
from shared.utils.logging import get_logger
from shared.utils.metrics import SCRAPE_EMPTY_PAGES, SCRAPE_ROWS

from results.sources.base import ResultSource

logger = get_logger(__name__)


def window_dates(days_back: int, days_forward: int, today: Optional[date] = None) -> list[date]:
    """Every date in [today - days_back, today + days_forward], oldest first."""
    today = today or datetime.now(timezone.utc).date()
    return [today + timedelta(days=offset) for offset in range(-days_back, days_forward + 1)]


class ResultScraper:
    def __init__(self, source: ResultSource, settings: Settings | None = None) -> None:
        self._source = source
        self._settings = settings or get_settings()

    async def fetch_results(self, day: date) -> list[ScrapedResult]:
        """Scored rows for one date; [] when the fetch fails or the page has none."""
        try:
            html = await self._source.fetch_page(day)
        except httpx.HTTPError as exc:
            logger.warning(
                "results_fetch_failed",
                source=self._source.source_name,
                date=day.isoformat(),
                url=self._source.page_url(day),
                error=str(exc) or type(exc).__name__,
            )
            return []

        try:
            page = self._source.extract(html, day)
        except Exception as exc:
            # Parse drift degrades to zero rows, same as an empty page
            SCRAPE_EMPTY_PAGES.inc()
            logger.error(
                "results_extract_failed",
                source=self._source.source_name,
                date=day.isoformat(),
                rows_found=0,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            return []

        if page.rows:
            SCRAPE_ROWS.labels(strategy=page.strategy.value).inc(len(page.rows))
            logger.info(
                "results_page_fetched",
                source=self._source.source_name,
                date=day.isoformat(),
                rows_found=len(page.rows),
                strategy=page.strategy.value,
            )
        else:
            SCRAPE_EMPTY_PAGES.inc()
            logger.warning(
                "results_page_fetched",
                source=self._source.source_name,
                date=day.isoformat(),
                rows_found=0,
                strategy=page.strategy.value,
            )
        return page.rows

    async def fetch_window(
        self,
        days_back: int,
        days_forward: int,
        today: Optional[date] = None,
    ) -> list[ScrapedResult]:
        """
        Concatenation of fetch_results over the window, in date order.
        Dates are fetched concurrently (bounded); results are aggregated after all settle.
        """
        dates = window_dates(days_back, days_forward, today)
        semaphore = asyncio.Semaphore(max(1, self._settings.max_concurrent_fetches))

        async def _bounded(day: date) -> list[ScrapedResult]:
            async with semaphore:
                return await self.fetch_results(day)

        pages = await asyncio.gather(*(_bounded(d) for d in dates), return_exceptions=True)

        results: list[ScrapedResult] = []
        for day, page in zip(dates, pages):
            if isinstance(page, BaseException):
                if isinstance(page, asyncio.CancelledError):
                    raise page
                # Extraction bugs must not sink the other dates either
                logger.error(
                    "results_date_failed",
                    date=day.isoformat(),
                    error=str(page),
                    error_type=type(page).__name__,
                )
                continue
            results.extend(page)

        logger.info(
            "results_window_fetched",
            dates=len(dates),
            first=dates[0].isoformat() if dates else None,
            last=dates[-1].isoformat() if dates else None,
            rows_found=len(results),
        )
        return results
