"""
Tests for prediction scoring and the scoring service.

Run: pytest backend/tests/test_scoring.py -v
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from results.scoring import DEFAULT_TIERS, ScoringService, ScoringTiers, score
from shared.config import Settings
from shared.models.domain import Fixture, MatchResult, Prediction
from shared.models.enums import FixtureState
from storage.fixture_store import FixtureStore
from storage.repository import JsonFileRepository

LEINSTER_BY_6 = MatchResult(winner="Leinster", margin=6)
DRAW = MatchResult(winner=None, margin=0)
NOW = datetime(2025, 10, 19, 9, 0, tzinfo=timezone.utc)


def _pick(winner: str | None, margin: int | None = None, **extra) -> Prediction:
    return Prediction(user_id="u1", match_id="m1", predicted_winner=winner, predicted_margin=margin, **extra)


# ── score() ─────────────────────────────────────────────────────────────

def test_exact_margin() -> None:
    assert score(_pick("Leinster", 6), LEINSTER_BY_6) == 3


def test_correct_winner_wrong_margin() -> None:
    assert score(_pick("Leinster", 10), LEINSTER_BY_6) == 2


def test_correct_winner_no_margin() -> None:
    assert score(_pick("Leinster"), LEINSTER_BY_6) == 2


def test_wrong_winner() -> None:
    assert score(_pick("Munster", 6), LEINSTER_BY_6) == 0


def test_no_pick_when_there_is_a_winner() -> None:
    assert score(_pick(None), LEINSTER_BY_6) == 0


def test_draw_rewards_no_winner_pick_with_winner_tier() -> None:
    assert score(_pick(None, 0), DRAW) == 2
    assert score(_pick("draw"), DRAW) == 2


def test_draw_with_team_pick() -> None:
    assert score(_pick("Leinster", 0), DRAW) == 0


def test_winner_compared_by_match_key() -> None:
    assert score(_pick("leinster", 6), LEINSTER_BY_6) == 3


def test_no_result_leaves_points_unchanged() -> None:
    assert score(_pick("Leinster", 6, points=5), None) == 5
    assert score(_pick("Leinster", 6), None) is None


def test_configured_tiers() -> None:
    tiers = ScoringTiers.from_settings(Settings(_env_file=None, points_exact_margin=5, points_correct_winner=1))
    assert score(_pick("Leinster", 6), LEINSTER_BY_6, tiers) == 5
    assert score(_pick("Leinster", 1), LEINSTER_BY_6, tiers) == 1


def test_tiers_are_monotonic() -> None:
    exact = score(_pick("Leinster", 6), LEINSTER_BY_6)
    winner = score(_pick("Leinster", 7), LEINSTER_BY_6)
    wrong = score(_pick("Munster", 6), LEINSTER_BY_6)
    assert exact >= winner > wrong == 0
    assert DEFAULT_TIERS == ScoringTiers(exact_margin=3, correct_winner=2)


def test_misordered_tiers_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, points_exact_margin=1, points_correct_winner=2)


# ── ScoringService ──────────────────────────────────────────────────────

def _write(path: Path, payload: list) -> None:
    path.write_text(json.dumps(payload), encoding="utf-8")


@pytest.mark.asyncio
async def test_rescore_persists_points_and_marks_scored(tmp_path: Path) -> None:
    settings = Settings(_env_file=None, data_dir=tmp_path)
    resolved = Fixture(
        id="m1", competition_id="urc", team_a="Leinster", team_b="Munster",
        kickoff=datetime(2025, 10, 18, 18, 35, tzinfo=timezone.utc), result=LEINSTER_BY_6,
    )
    pending = Fixture(
        id="m2", competition_id="urc", team_a="Ulster", team_b="Connacht",
        kickoff=datetime(2025, 10, 25, 18, 35, tzinfo=timezone.utc),
    )
    _write(tmp_path / "predictions.json", [
        {"userId": "u1", "matchId": "m1", "winner": "Leinster", "margin": 6, "username": "ann"},
        {"userId": "u2", "matchId": "m1", "predictedWinner": "Munster", "predictedMargin": 3},
        {"userId": "u1", "matchId": "m2", "predictedWinner": "Ulster", "predictedMargin": 5},
    ])
    store = FixtureStore([resolved, pending], settings=settings)
    repository = JsonFileRepository(tmp_path)

    scored = await ScoringService(store, repository, settings).rescore(["m1", "m2"], now=NOW)

    assert scored == 2
    assert store.get("m1").state == FixtureState.SCORED
    assert store.get("m1").scored_at == NOW
    assert store.get("m2").state == FixtureState.SCHEDULED

    records = json.loads((tmp_path / "predictions.json").read_text(encoding="utf-8"))
    by_key = {(r["userId"], r["matchId"]): r for r in records}
    assert by_key[("u1", "m1")]["points"] == 3
    assert by_key[("u1", "m1")]["username"] == "ann"
    assert by_key[("u2", "m1")]["points"] == 0
    assert "points" not in by_key[("u1", "m2")]


@pytest.mark.asyncio
async def test_recalculate_all_is_idempotent(tmp_path: Path) -> None:
    settings = Settings(_env_file=None, data_dir=tmp_path)
    fixture = Fixture(
        id="m1", competition_id="urc", team_a="Leinster", team_b="Munster",
        kickoff=datetime(2025, 10, 18, 18, 35, tzinfo=timezone.utc), result=DRAW,
    )
    _write(tmp_path / "predictions.json", [{"userId": "u1", "matchId": "m1", "predictedWinner": "draw"}])
    repository = JsonFileRepository(tmp_path)

    service = ScoringService(FixtureStore([fixture], settings=settings), repository, settings)
    assert await service.recalculate_all(now=NOW) == 1
    first = (tmp_path / "predictions.json").read_text(encoding="utf-8")
    assert await service.recalculate_all(now=NOW) == 1
    assert (tmp_path / "predictions.json").read_text(encoding="utf-8") == first
    assert json.loads(first)[0]["points"] == 2


@pytest.mark.asyncio
async def test_rescore_without_resolved_fixtures_reads_nothing(tmp_path: Path) -> None:
    settings = Settings(_env_file=None, data_dir=tmp_path)
    fixture = Fixture(
        id="m1", competition_id="urc", team_a="Leinster", team_b="Munster",
        kickoff=datetime(2025, 10, 18, 18, 35, tzinfo=timezone.utc),
    )
    service = ScoringService(FixtureStore([fixture], settings=settings), JsonFileRepository(tmp_path), settings)
    assert await service.rescore(["m1"]) == 0
    assert not (tmp_path / "predictions.json").exists()
