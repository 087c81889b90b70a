"""
Prediction scoring.

score() is a pure function of (prediction, result); ScoringService applies it
to every prediction of a set of resolved fixtures and persists only those.
Running either any number of times over the same inputs gives the same points.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from ingest.normalization.normalizer import match_key
from shared.config import Settings, get_settings
from shared.models.domain import MatchResult, Prediction
from shared.utils.logging import get_logger
from shared.utils.metrics import PREDICTIONS_SCORED
from storage.fixture_store import FixtureStore
from storage.repository import FixtureRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScoringTiers:
    exact_margin: int = 3
    correct_winner: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringTiers":
        return cls(exact_margin=settings.points_exact_margin, correct_winner=settings.points_correct_winner)


DEFAULT_TIERS = ScoringTiers()


def score(
    prediction: Prediction,
    result: Optional[MatchResult],
    tiers: ScoringTiers = DEFAULT_TIERS,
    team_key: Callable[[str], str] = match_key,
) -> Optional[int]:
    """
    Points for prediction against result.

    No result leaves the prediction's points as they are. A draw rewards a
    no-winner pick with the correct-winner tier only. Otherwise the correct
    winner earns the correct-winner tier, or the exact-margin tier when the
    margin also matches; anything else earns 0.
    """
    if result is None:
        return prediction.points

    if result.winner is None:
        return tiers.correct_winner if prediction.predicted_winner is None else 0

    if prediction.predicted_winner is None:
        return 0
    if team_key(prediction.predicted_winner) != team_key(result.winner):
        return 0
    if prediction.predicted_margin == result.margin:
        return tiers.exact_margin
    return tiers.correct_winner


class ScoringService:
    """Re-derives points for the predictions of resolved fixtures and marks those fixtures scored."""

    def __init__(
        self,
        store: FixtureStore,
        repository: FixtureRepository,
        settings: Settings | None = None,
        team_key: Callable[[str], str] = match_key,
    ) -> None:
        self._store = store
        self._repository = repository
        self._tiers = ScoringTiers.from_settings(settings or get_settings())
        self._team_key = team_key

    async def rescore(self, fixture_ids: Iterable[str], now: Optional[datetime] = None) -> int:
        """Score every prediction of the given resolved fixtures. Returns predictions scored."""
        resolved = {}
        for fid in dict.fromkeys(fixture_ids):
            fixture = self._store.get(fid)
            if fixture.result is None:
                logger.debug("scoring_skipped_unresolved", fixture_id=fid)
                continue
            resolved[fid] = fixture
        if not resolved:
            return 0

        predictions = await self._repository.load_predictions(match_ids=resolved.keys())
        scored: list[Prediction] = []
        for prediction in predictions:
            fixture = resolved[prediction.match_id]
            points = score(prediction, fixture.result, self._tiers, self._team_key)
            scored.append(prediction.model_copy(update={"points": points}))

        await self._repository.persist_predictions(scored)

        scored_at = now or datetime.now(timezone.utc)
        for fid in resolved:
            self._store.mark_scored(fid, scored_at)

        PREDICTIONS_SCORED.inc(len(scored))
        logger.info("predictions_scored", fixtures=len(resolved), predictions=len(scored))
        return len(scored)

    async def recalculate_all(self, now: Optional[datetime] = None) -> int:
        """Full leaderboard recalculation across every resolved fixture."""
        return await self.rescore(
            (f.id for f in self._store.fixtures if f.result is not None),
            now=now,
        )
