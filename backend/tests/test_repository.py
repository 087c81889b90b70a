"""
Tests for the JSON file repository: legacy record shapes, atomic writes,
prediction merge and re-pointing.

Run: pytest backend/tests/test_repository.py -v
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from shared.config import Settings, StorageBackend
from shared.models.domain import Fixture, MatchResult, Prediction
from shared.models.enums import FixtureState
from storage.fixture_store import FixtureStore
from storage.repository import JsonFileRepository, RepositoryError, create_repository

LEGACY_MATCH = {
    "id": 1729270000000,
    "competition": "United Rugby Championship",
    "teamA": "Leinster",
    "teamB": "Munster",
    "kickoff": "2025-10-18T18:35:00.000Z",
    "result": {"winner": None, "margin": None},
    "venue": "Aviva Stadium",
}


def _write(path: Path, payload) -> None:
    path.write_text(json.dumps(payload), encoding="utf-8")


def _read(path: Path):
    return json.loads(path.read_text(encoding="utf-8"))


# ── Fixtures ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_missing_files_load_empty(tmp_path: Path) -> None:
    repository = JsonFileRepository(tmp_path)
    assert await repository.load_fixtures() == []
    assert await repository.load_predictions() == []
    assert await repository.load_competitions() == []


@pytest.mark.asyncio
async def test_legacy_match_record_loads(tmp_path: Path) -> None:
    _write(tmp_path / "matches.json", [LEGACY_MATCH])
    (fixture,) = await JsonFileRepository(tmp_path).load_fixtures()

    assert fixture.id == "1729270000000"
    assert fixture.competition_id == "United Rugby Championship"
    assert fixture.kickoff == datetime(2025, 10, 18, 18, 35, tzinfo=timezone.utc)
    assert fixture.result is None
    assert fixture.state == FixtureState.SCHEDULED


@pytest.mark.asyncio
async def test_unknown_match_fields_survive_round_trip(tmp_path: Path) -> None:
    _write(tmp_path / "matches.json", [LEGACY_MATCH])
    repository = JsonFileRepository(tmp_path)
    (fixture,) = await repository.load_fixtures()
    resolved = fixture.model_copy(update={"result": MatchResult(winner="Leinster", margin=6)})

    await repository.persist_fixtures([resolved])

    (record,) = _read(tmp_path / "matches.json")
    assert record["venue"] == "Aviva Stadium"
    assert record["competitionId"] == "United Rugby Championship"
    assert record["result"] == {"winner": "Leinster", "margin": 6}


@pytest.mark.asyncio
async def test_invalid_match_record_refuses_to_load(tmp_path: Path) -> None:
    _write(tmp_path / "matches.json", [LEGACY_MATCH, {"teamA": "Ulster"}])
    with pytest.raises(RepositoryError):
        await JsonFileRepository(tmp_path).load_fixtures()


@pytest.mark.asyncio
async def test_corrupt_file_raises(tmp_path: Path) -> None:
    (tmp_path / "matches.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(RepositoryError):
        await JsonFileRepository(tmp_path).load_fixtures()


@pytest.mark.asyncio
async def test_persist_leaves_no_temp_files(tmp_path: Path) -> None:
    repository = JsonFileRepository(tmp_path / "data")
    fixture = Fixture(
        competition_id="urc", team_a="Ulster", team_b="Connacht",
        kickoff=datetime(2025, 10, 25, 17, 0, tzinfo=timezone.utc),
    )
    await repository.persist_fixtures([fixture])
    await repository.persist_fixtures([fixture])
    assert [p.name for p in (tmp_path / "data").iterdir()] == ["matches.json"]
    assert (await repository.load_fixtures())[0].id == fixture.id


def _unresolved(fixture_id: str, team_a: str, team_b: str) -> dict:
    return {
        "id": fixture_id,
        "competitionId": "urc",
        "teamA": team_a,
        "teamB": team_b,
        "kickoff": "2025-10-18T18:35:00Z",
    }


@pytest.mark.asyncio
async def test_overlapping_runs_keep_each_others_results(tmp_path: Path) -> None:
    _write(tmp_path / "matches.json", [_unresolved("x", "Leinster", "Munster"), _unresolved("y", "Ulster", "Connacht")])
    settings = Settings(_env_file=None)
    # separate instances stand in for the scheduler and API processes
    scheduler_repo, api_repo = JsonFileRepository(tmp_path), JsonFileRepository(tmp_path)
    first = FixtureStore(await scheduler_repo.load_fixtures(), settings=settings)
    second = FixtureStore(await api_repo.load_fixtures(), settings=settings)

    first.attach_result("x", MatchResult(winner="Leinster", margin=6))
    second.attach_result("y", MatchResult(winner="Connacht", margin=2))
    await scheduler_repo.persist_fixtures(first.fixtures)
    await api_repo.persist_fixtures(second.fixtures)

    loaded = {f.id: f for f in await JsonFileRepository(tmp_path).load_fixtures()}
    assert loaded["x"].result == MatchResult(winner="Leinster", margin=6)
    assert loaded["y"].result == MatchResult(winner="Connacht", margin=2)


@pytest.mark.asyncio
async def test_overlapping_runs_keep_first_result(tmp_path: Path) -> None:
    _write(tmp_path / "matches.json", [_unresolved("x", "Leinster", "Munster")])
    settings = Settings(_env_file=None)
    first_repo, second_repo = JsonFileRepository(tmp_path), JsonFileRepository(tmp_path)
    first = FixtureStore(await first_repo.load_fixtures(), settings=settings)
    second = FixtureStore(await second_repo.load_fixtures(), settings=settings)

    first.attach_result("x", MatchResult(winner="Leinster", margin=6))
    await first_repo.persist_fixtures(first.fixtures)
    second.attach_result("x", MatchResult(winner="Munster", margin=1))
    await second_repo.persist_fixtures(second.fixtures)

    (loaded,) = await first_repo.load_fixtures()
    assert loaded.result == MatchResult(winner="Leinster", margin=6)


@pytest.mark.asyncio
async def test_stale_snapshot_keeps_stored_result_kickoff_and_scored_at(tmp_path: Path) -> None:
    resolved = {
        **_unresolved("x", "Leinster", "Munster"),
        "result": {"winner": "Leinster", "margin": 6},
        "scoredAt": "2025-10-19T09:00:00Z",
    }
    stale = Fixture.model_validate({**_unresolved("x", "Leinster", "Munster"), "kickoff": "2025-10-18T19:35:00Z"})
    _write(tmp_path / "matches.json", [resolved])

    await JsonFileRepository(tmp_path).persist_fixtures([stale])

    (record,) = _read(tmp_path / "matches.json")
    assert record["result"] == {"winner": "Leinster", "margin": 6}
    assert record["kickoff"] == "2025-10-18T18:35:00Z"
    assert record["scoredAt"] == "2025-10-19T09:00:00Z"


@pytest.mark.asyncio
async def test_persist_keeps_unknown_records_unless_removed(tmp_path: Path) -> None:
    _write(tmp_path / "matches.json", [
        _unresolved("x", "Leinster", "Munster"),
        _unresolved("y", "Ulster", "Connacht"),
        _unresolved("z", "Ulster", "Connacht"),
    ])
    repository = JsonFileRepository(tmp_path)
    (kept,) = [f for f in await repository.load_fixtures() if f.id == "x"]

    await repository.persist_fixtures([kept], removed_ids={"z"})

    assert [r["id"] for r in _read(tmp_path / "matches.json")] == ["x", "y"]


# ── Predictions ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_load_predictions_filters_and_skips_invalid(tmp_path: Path) -> None:
    _write(tmp_path / "predictions.json", [
        {"userId": "u1", "matchId": "m1", "winner": "Leinster", "margin": 6},
        {"userId": "u2", "matchId": "m2", "predictedWinner": "Ulster"},
        {"matchId": "m1"},
    ])
    repository = JsonFileRepository(tmp_path)

    everything = await repository.load_predictions()
    only_m1 = await repository.load_predictions(match_ids=["m1"])

    assert len(everything) == 2
    assert [(p.user_id, p.predicted_winner, p.predicted_margin) for p in only_m1] == [("u1", "Leinster", 6)]


@pytest.mark.asyncio
async def test_persist_predictions_merges_by_key(tmp_path: Path) -> None:
    _write(tmp_path / "predictions.json", [
        {"userId": "u1", "matchId": "m1", "predictedWinner": "Leinster", "createdBy": "web"},
        {"userId": "u2", "matchId": "m1", "predictedWinner": "Munster"},
    ])
    repository = JsonFileRepository(tmp_path)
    await repository.persist_predictions([
        Prediction(user_id="u1", match_id="m1", predicted_winner="Leinster", points=2),
    ])

    records = _read(tmp_path / "predictions.json")
    assert len(records) == 2
    assert records[0] == {"userId": "u1", "matchId": "m1", "predictedWinner": "Leinster", "createdBy": "web", "points": 2}
    assert "points" not in records[1]


@pytest.mark.asyncio
async def test_reassign_predictions(tmp_path: Path) -> None:
    _write(tmp_path / "predictions.json", [
        {"userId": "u1", "matchId": "old", "predictedWinner": "Leinster"},
        {"userId": "u2", "matchId": "old", "predictedWinner": "Munster"},
        {"userId": "u2", "matchId": "kept", "predictedWinner": "Munster"},
        {"userId": "u3", "matchId": "other", "predictedWinner": "Ulster"},
    ])
    repository = JsonFileRepository(tmp_path)

    touched = await repository.reassign_predictions({"old": "kept"})

    assert touched == 2
    keys = [(r["userId"], r["matchId"]) for r in _read(tmp_path / "predictions.json")]
    assert keys == [("u1", "kept"), ("u2", "kept"), ("u3", "other")]


@pytest.mark.asyncio
async def test_reassign_nothing_does_not_write(tmp_path: Path) -> None:
    repository = JsonFileRepository(tmp_path)
    assert await repository.reassign_predictions({}) == 0
    assert not (tmp_path / "predictions.json").exists()


# ── Competitions / factory ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_competitions_load_and_skip_invalid(tmp_path: Path) -> None:
    _write(tmp_path / "competitions.json", [
        {"id": 7, "name": "URC", "color": "#123456", "url": "webcal://feeds.example.com/urc.ics"},
        {"id": "broken"},
    ])
    (competition,) = await JsonFileRepository(tmp_path).load_competitions()
    assert competition.id == "7"
    assert competition.url == "webcal://feeds.example.com/urc.ics"


def test_create_repository_defaults_to_json(tmp_path: Path) -> None:
    repository = create_repository(Settings(_env_file=None, data_dir=tmp_path, storage_backend=StorageBackend.JSON))
    assert isinstance(repository, JsonFileRepository)
    assert repository.data_dir == tmp_path
