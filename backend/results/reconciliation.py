"""
Reconciliation: match scraped rows to stored fixtures and attach results exactly once.

A scraped row is matched by its unordered team pair (normalized keys, either
orientation) and by kickoff distance from the page date, anchored at midday UTC.
Unmatched rows and already-resolved fixtures are reported, never raised.
"""
from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Iterable, Optional

from ingest.normalization.normalizer import NameNormalizer
from shared.config import Settings, get_settings
from shared.models.domain import Fixture, MatchResult, ReconcileReport, ScrapedResult
from shared.utils.logging import get_logger
from shared.utils.metrics import RESULTS_ATTACHED, RESULTS_UNMATCHED
from storage.fixture_store import AlreadyResolved, FixtureStore

logger = get_logger(__name__)

PAGE_ANCHOR = time(12, 0)


def page_anchor(row: ScrapedResult) -> datetime:
    return datetime.combine(row.source_date, PAGE_ANCHOR, tzinfo=timezone.utc)


def result_from_scores(fixture: Fixture, row: ScrapedResult, row_is_swapped: bool) -> MatchResult:
    """Winner as the fixture's own team name (None on a draw), margin as the absolute difference."""
    score_a, score_b = (row.score_b, row.score_a) if row_is_swapped else (row.score_a, row.score_b)
    if score_a > score_b:
        winner: Optional[str] = fixture.team_a
    elif score_b > score_a:
        winner = fixture.team_b
    else:
        winner = None
    return MatchResult(winner=winner, margin=abs(score_a - score_b))


class Reconciler:
    def __init__(
        self,
        store: FixtureStore,
        normalizer: NameNormalizer,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._normalizer = normalizer
        self._settings = settings or get_settings()
        self._tolerance = timedelta(hours=self._settings.match_tolerance_h)

    def find_fixture(self, row: ScrapedResult) -> Optional[Fixture]:
        """Nearest-kickoff fixture for the row's team pair within the page-date tolerance."""
        team_a = self._normalizer.normalize(row.raw_team_a)
        team_b = self._normalizer.normalize(row.raw_team_b)
        anchor = page_anchor(row)
        candidates = [
            f for f in self._store.find_by_teams(team_a, team_b)
            if abs(f.kickoff - anchor) <= self._tolerance
        ]
        if not candidates:
            return None
        if len(candidates) > 1:
            logger.debug(
                "result_multiple_candidates",
                teams=f"{team_a} vs {team_b}",
                date=row.source_date.isoformat(),
                candidates=[f.id for f in candidates],
            )
        return min(candidates, key=lambda f: (abs(f.kickoff - anchor), f.kickoff))

    def reconcile(self, scraped: Iterable[ScrapedResult]) -> ReconcileReport:
        report = ReconcileReport()
        for row in scraped:
            fixture = self.find_fixture(row)
            if fixture is None:
                report.unmatched.append(row)
                RESULTS_UNMATCHED.inc()
                logger.info(
                    "result_unmatched",
                    team_a=row.raw_team_a,
                    team_b=row.raw_team_b,
                    score=f"{row.score_a}-{row.score_b}",
                    date=row.source_date.isoformat(),
                )
                continue

            if fixture.result is not None:
                report.already_resolved += 1
                continue

            home_key = self._store.team_key(self._normalizer.normalize(row.raw_team_a))
            swapped = self._store.team_key(fixture.team_a) != home_key
            result = result_from_scores(fixture, row, swapped)
            try:
                self._store.attach_result(fixture.id, result)
            except AlreadyResolved:
                report.already_resolved += 1
                continue

            report.updated_count += 1
            report.updated_fixture_ids.append(fixture.id)
            RESULTS_ATTACHED.inc()
            logger.info(
                "result_attached",
                fixture_id=fixture.id,
                fixture=fixture.describe(),
                winner=result.winner,
                margin=result.margin,
                date=row.source_date.isoformat(),
            )

        logger.info(
            "reconciliation_complete",
            updated=report.updated_count,
            unmatched=len(report.unmatched),
            already_resolved=report.already_resolved,
        )
        return report
