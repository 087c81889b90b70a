"""
Pydantic v2 domain models shared across the importer, scraper, reconciler and API.
These are the canonical internal representations, NOT ORM models.
Serialized field names are camelCase to stay compatible with the stored JSON files.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from shared.models.enums import FixtureState


def _new_id() -> str:
    return uuid.uuid4().hex


def _draw_to_none(value: Any) -> Any:
    """Some stored records spell a draw (or no pick) as "draw" or an empty string."""
    if isinstance(value, str) and value.strip().casefold() in ("", "draw"):
        return None
    return value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


# ── Reference entities ──────────────────────────────────────────────────
class Competition(DomainModel):
    """Competition record owned by the admin layer; only these fields matter here."""
    id: str
    name: str
    color: Optional[str] = None
    url: Optional[str] = None
    feed_text: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return str(v) if v is not None else v


# ── Fixtures ────────────────────────────────────────────────────────────
class MatchResult(DomainModel):
    """Final outcome. winner is one of the fixture's canonical team names, or None for a draw."""
    model_config = ConfigDict(frozen=True)

    winner: Optional[str] = None
    margin: int = Field(ge=0)

    @field_validator("winner", mode="before")
    @classmethod
    def _draw_is_none(cls, v: Any) -> Any:
        return _draw_to_none(v)


class Fixture(DomainModel):
    # Unknown keys in stored match records are carried through untouched
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=_new_id)
    competition_id: str
    team_a: str
    team_b: str
    kickoff: datetime
    result: Optional[MatchResult] = None
    scored_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_shape(cls, data: Any) -> Any:
        """Older match files carry the competition name and a placeholder result."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "competitionId" not in data and "competition_id" not in data and "competition" in data:
            data["competitionId"] = data.pop("competition")
        result = data.get("result")
        if isinstance(result, dict) and result.get("margin") is None:
            data["result"] = None
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @field_validator("kickoff", "scored_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v) if v is not None else None

    @property
    def state(self) -> FixtureState:
        if self.result is None:
            return FixtureState.SCHEDULED
        if self.scored_at is None:
            return FixtureState.COMPLETED
        return FixtureState.SCORED

    def describe(self) -> str:
        return f"{self.team_a} vs {self.team_b}"


class ScrapedResult(DomainModel):
    """One finished match read off a results page. Ephemeral, never persisted."""
    model_config = ConfigDict(frozen=True)

    raw_team_a: str
    raw_team_b: str
    score_a: int = Field(ge=0)
    score_b: int = Field(ge=0)
    source_date: date

    def swapped(self) -> "ScrapedResult":
        return ScrapedResult(
            raw_team_a=self.raw_team_b,
            raw_team_b=self.raw_team_a,
            score_a=self.score_b,
            score_b=self.score_a,
            source_date=self.source_date,
        )


# ── Predictions ─────────────────────────────────────────────────────────
class Prediction(DomainModel):
    user_id: str
    match_id: str
    predicted_winner: Optional[str] = None
    predicted_margin: Optional[int] = Field(default=None, ge=0)
    points: Optional[int] = None
    submitted_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: Any) -> Any:
        """Early prediction files stored the pick as winner/margin."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "winner" in data and "predictedWinner" not in data and "predicted_winner" not in data:
            data["predictedWinner"] = data.pop("winner")
        if "margin" in data and "predictedMargin" not in data and "predicted_margin" not in data:
            data["predictedMargin"] = data.pop("margin")
        return data

    @field_validator("user_id", "match_id", mode="before")
    @classmethod
    def _coerce_ids(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @field_validator("predicted_winner", mode="before")
    @classmethod
    def _draw_pick_is_none(cls, v: Any) -> Any:
        return _draw_to_none(v)

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_id, self.match_id)


# ── Run summaries ───────────────────────────────────────────────────────
class ImportSummary(DomainModel):
    added: int = 0
    updated: int = 0
    skipped: int = 0


class RefreshSummary(DomainModel):
    added: int = 0
    updated: int = 0
    failed: list[str] = Field(default_factory=list)


class ReconcileReport(DomainModel):
    updated_count: int = 0
    updated_fixture_ids: list[str] = Field(default_factory=list)
    unmatched: list[ScrapedResult] = Field(default_factory=list)
    already_resolved: int = 0


class RunSummary(DomainModel):
    updated_count: int = 0
    rows_found: int = 0
    dates_fetched: int = 0
    unmatched: list[ScrapedResult] = Field(default_factory=list)
    predictions_scored: int = 0
    needs_review: list[Fixture] = Field(default_factory=list)
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
