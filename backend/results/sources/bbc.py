"""
BBC Sport rugby union scores page.

The markup is not a contract, so extraction is layered:
  1. primary:  [data-testid="match-block"] with team-name / team-score children
  2. fallback: older .sp-c-fixture / list-item markup
A block yields a row only when it carries two team names and two final scores;
unplayed fixtures on the same page are dropped without comment.
"""
from __future__ import annotations

import re
from datetime import date
from typing import Optional, Sequence

from bs4 import BeautifulSoup, Tag

from shared.config import Settings, get_settings
from shared.models.domain import ScrapedResult
from shared.models.enums import ExtractionStrategy
from shared.utils.http_client import SourceHTTPClient
from shared.utils.logging import get_logger

from results.sources.base import ExtractedPage, ResultSource

logger = get_logger(__name__)

HTML_ACCEPT = "text/html,application/xhtml+xml"

PRIMARY_BLOCK = '[data-testid="match-block"]'
PRIMARY_TEAM = '[data-testid="team-name"]'
PRIMARY_SCORE = '[data-testid="team-score"]'

FALLBACK_BLOCKS = (".sp-c-fixture", "li.gs-o-list-ui__item", ".qa-match-block")
FALLBACK_TEAMS = (".qa-full-team-name", ".sp-c-fixture__team-name")
FALLBACK_SCORES = ".sp-c-fixture__number--ft"
SINGLE_SCORE_CELLS = '.sp-c-fixture__score, [data-testid="score"]'

_SCORE_RE = re.compile(r"^\d{1,3}$")
_SCORE_PAIR_RE = re.compile(r"^\s*(\d{1,3})\s*[-–—:]\s*(\d{1,3})\s*$")


def _text(node: Tag) -> str:
    return " ".join(node.get_text(" ", strip=True).split())


def parse_scores(cells: Sequence[Tag]) -> Optional[tuple[int, int]]:
    """Two final scores from either two cells ("24", "18") or one cell ("24 - 18")."""
    texts = [_text(c) for c in cells]
    if len(texts) == 2 and all(_SCORE_RE.match(t) for t in texts):
        return int(texts[0]), int(texts[1])
    if len(texts) == 1:
        m = _SCORE_PAIR_RE.match(texts[0])
        if m:
            return int(m.group(1)), int(m.group(2))
    return None


class BBCResultSource(ResultSource):
    def __init__(self, client: SourceHTTPClient, settings: Settings | None = None) -> None:
        self._client = client
        self._settings = settings or get_settings()

    @property
    def source_name(self) -> str:
        return "bbc"

    def page_url(self, day: date) -> str:
        return self._settings.results_url_template.format(date=day.isoformat())

    async def fetch_page(self, day: date) -> str:
        return await self._client.get_text(self.page_url(day), extra_headers={"Accept": HTML_ACCEPT})

    def extract(self, html: str, day: date) -> ExtractedPage:
        soup = BeautifulSoup(html, "html.parser")

        blocks = [b for b in soup.select(PRIMARY_BLOCK) if len(b.select(PRIMARY_TEAM)) >= 2]
        if blocks:
            rows = [
                row for row in (
                    self._row(b.select(PRIMARY_TEAM), b.select(PRIMARY_SCORE) or b.select(SINGLE_SCORE_CELLS), day)
                    for b in blocks
                )
                if row is not None
            ]
            return ExtractedPage(rows, ExtractionStrategy.PRIMARY)

        blocks = self._fallback_blocks(soup)
        if not blocks:
            return ExtractedPage([], ExtractionStrategy.NONE)

        rows = []
        for block in blocks:
            teams: list[Tag] = []
            for selector in FALLBACK_TEAMS:
                teams = block.select(selector)
                if len(teams) >= 2:
                    break
            scores = block.select(FALLBACK_SCORES) or block.select(SINGLE_SCORE_CELLS)
            row = self._row(teams, scores, day)
            if row is not None:
                rows.append(row)
        return ExtractedPage(rows, ExtractionStrategy.FALLBACK)

    @staticmethod
    def _fallback_blocks(soup: BeautifulSoup) -> list[Tag]:
        for selector in FALLBACK_BLOCKS:
            blocks = soup.select(selector)
            if blocks:
                return blocks
        return []

    @staticmethod
    def _row(teams: Sequence[Tag], scores: Sequence[Tag], day: date) -> Optional[ScrapedResult]:
        if len(teams) < 2:
            return None
        parsed = parse_scores(scores)
        if parsed is None:
            return None
        team_a, team_b = _text(teams[0]), _text(teams[1])
        if not team_a or not team_b:
            return None
        return ScrapedResult(
            raw_team_a=team_a,
            raw_team_b=team_b,
            score_a=parsed[0],
            score_b=parsed[1],
            source_date=day,
        )
