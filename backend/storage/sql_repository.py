"""
Relational FixtureRepository over SQLAlchemy 2.0 async.

Result columns are only ever written by a conditional UPDATE guarded by
result_margin IS NULL, so two overlapping reconciliation passes converge on
the first committed result without any application-level lock.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import delete, select, update

from shared.models.domain import Competition, Fixture, MatchResult, Prediction
from shared.models.orm import Base, CompetitionORM, FixtureORM, PredictionORM
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger
from storage.repository import FixtureRepository

logger = get_logger(__name__)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; stored values are always UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_domain(row: FixtureORM) -> Fixture:
    result = None
    if row.result_margin is not None:
        result = MatchResult(winner=row.result_winner, margin=row.result_margin)
    return Fixture(
        id=row.id,
        competition_id=row.competition_id,
        team_a=row.team_a,
        team_b=row.team_b,
        kickoff=row.kickoff,
        result=result,
        scored_at=row.scored_at,
    )


class SqlFixtureRepository(FixtureRepository):
    """Fixtures, predictions and competitions in the fixtures/predictions/competitions tables."""

    def __init__(self, db: DatabaseManager, manage_connection: bool = False) -> None:
        self._db = db
        self._manage_connection = manage_connection

    async def open(self) -> None:
        if self._manage_connection:
            await self._db.connect()

    async def close(self) -> None:
        if self._manage_connection:
            await self._db.disconnect()

    async def create_schema(self) -> None:
        """Create missing tables. Deployments run migrations; this is for local and test databases."""
        async with self._db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def load_fixtures(self) -> list[Fixture]:
        async with self._db.read_session() as session:
            rows = (await session.execute(select(FixtureORM).order_by(FixtureORM.kickoff))).scalars().all()
        return [_to_domain(r) for r in rows]

    async def persist_fixtures(self, fixtures: list[Fixture], removed_ids: Iterable[str] = ()) -> None:
        written = 0
        lost_races = 0
        async with self._db.write_session() as session:
            for fixture in fixtures:
                row = await session.get(FixtureORM, fixture.id)
                if row is None:
                    session.add(FixtureORM(
                        id=fixture.id,
                        competition_id=fixture.competition_id,
                        team_a=fixture.team_a,
                        team_b=fixture.team_b,
                        kickoff=fixture.kickoff,
                        result_winner=fixture.result.winner if fixture.result else None,
                        result_margin=fixture.result.margin if fixture.result else None,
                        scored_at=fixture.scored_at,
                    ))
                    written += 1
                    continue

                if row.result_margin is None and _utc(row.kickoff) != fixture.kickoff:
                    row.kickoff = fixture.kickoff
                    written += 1

                if fixture.result is not None and row.result_margin is None:
                    stmt = (
                        update(FixtureORM)
                        .where(FixtureORM.id == fixture.id, FixtureORM.result_margin.is_(None))
                        .values(result_winner=fixture.result.winner, result_margin=fixture.result.margin)
                        .execution_options(synchronize_session=False)
                    )
                    outcome = await session.execute(stmt)
                    if outcome.rowcount == 0:
                        lost_races += 1
                    else:
                        written += 1

                if fixture.scored_at is not None and fixture.scored_at != _utc(row.scored_at):
                    row.scored_at = fixture.scored_at

            removed = list(removed_ids)
            if removed:
                await session.execute(delete(FixtureORM).where(FixtureORM.id.in_(removed)))
        if lost_races:
            logger.info("fixture_result_already_written", count=lost_races)
        logger.debug("fixtures_persisted", written=written, removed=len(removed))

    async def load_predictions(self, match_ids: Iterable[str] | None = None) -> list[Prediction]:
        stmt = select(PredictionORM)
        if match_ids is not None:
            stmt = stmt.where(PredictionORM.match_id.in_(list(match_ids)))
        async with self._db.read_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [Prediction.model_validate(r) for r in rows]

    async def persist_predictions(self, predictions: list[Prediction]) -> None:
        if not predictions:
            return
        async with self._db.write_session() as session:
            for p in predictions:
                row = (await session.execute(
                    select(PredictionORM).where(
                        PredictionORM.user_id == p.user_id,
                        PredictionORM.match_id == p.match_id,
                    )
                )).scalar_one_or_none()
                if row is None:
                    session.add(PredictionORM(
                        user_id=p.user_id,
                        match_id=p.match_id,
                        predicted_winner=p.predicted_winner,
                        predicted_margin=p.predicted_margin,
                        points=p.points,
                        submitted_at=p.submitted_at,
                    ))
                else:
                    # Only the derived column is ever written back
                    row.points = p.points
        logger.debug("predictions_persisted", count=len(predictions))

    async def reassign_predictions(self, replaced: dict[str, str]) -> int:
        if not replaced:
            return 0
        touched = 0
        async with self._db.write_session() as session:
            rows = (await session.execute(
                select(PredictionORM).where(PredictionORM.match_id.in_(list(replaced)))
            )).scalars().all()
            for row in rows:
                target = replaced[row.match_id]
                clash = (await session.execute(
                    select(PredictionORM.id).where(
                        PredictionORM.user_id == row.user_id,
                        PredictionORM.match_id == target,
                    )
                )).scalar_one_or_none()
                if clash is not None:
                    await session.delete(row)
                else:
                    row.match_id = target
                await session.flush()
                touched += 1
        return touched

    async def load_competitions(self) -> list[Competition]:
        async with self._db.read_session() as session:
            rows = (await session.execute(select(CompetitionORM).order_by(CompetitionORM.name))).scalars().all()
        return [Competition.model_validate(r) for r in rows]
