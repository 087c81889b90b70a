"""
Results source interface.
A source turns a calendar date into a page of raw scored rows; matching them
to fixtures is the reconciler's job.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date

from shared.models.domain import ScrapedResult
from shared.models.enums import ExtractionStrategy


@dataclass(frozen=True)
class ExtractedPage:
    """Rows read off one page and the selector scheme that produced them."""
    rows: list[ScrapedResult] = field(default_factory=list)
    strategy: ExtractionStrategy = ExtractionStrategy.NONE


class ResultSource(ABC):
    """Base for scores-page scrapers."""

    @property
    @abstractmethod
    def source_name(self) -> str:
        pass

    @abstractmethod
    def page_url(self, day: date) -> str:
        pass

    @abstractmethod
    async def fetch_page(self, day: date) -> str:
        """
        Fetch the rendered page for day.
        Raises httpx.HTTPError on network failure or non-2xx; callers decide what that means.
        """
        pass

    @abstractmethod
    def extract(self, html: str, day: date) -> ExtractedPage:
        """
        Extract finished matches from html. Never raises on unfamiliar markup:
        a page no strategy understands yields an empty ExtractedPage.
        """
        pass
