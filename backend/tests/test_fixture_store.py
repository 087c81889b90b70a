"""
Unit tests for FixtureStore: dedup on upsert, write-if-absent results, compaction.

Run: pytest backend/tests/test_fixture_store.py -v
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ingest.normalization.normalizer import AliasTable, NameNormalizer
from shared.config import Settings
from shared.models.domain import Fixture, MatchResult
from shared.models.enums import FixtureState, UpsertOutcome
from storage.fixture_store import (
    AlreadyResolved,
    FixtureNotFound,
    FixtureStore,
    FixtureStoreError,
)

KICKOFF = datetime(2025, 10, 18, 18, 35, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


def _fixture(
    team_a: str = "Leinster",
    team_b: str = "Munster",
    kickoff: datetime = KICKOFF,
    competition_id: str = "urc",
    **extra,
) -> Fixture:
    return Fixture(competition_id=competition_id, team_a=team_a, team_b=team_b, kickoff=kickoff, **extra)


# ── Upsert / dedup ──────────────────────────────────────────────────────

def test_upsert_creates_new_fixture(settings: Settings) -> None:
    store = FixtureStore(settings=settings)
    outcome = store.upsert(_fixture())
    assert outcome.outcome == UpsertOutcome.CREATED
    assert len(store) == 1
    assert outcome.fixture.id in store.changed_ids


def test_upsert_same_identity_merges(settings: Settings) -> None:
    store = FixtureStore([_fixture()], settings=settings)
    outcome = store.upsert(_fixture())
    assert outcome.outcome == UpsertOutcome.MERGED
    assert not outcome.kickoff_changed
    assert len(store) == 1
    assert not store.dirty


def test_upsert_swapped_orientation_is_same_fixture(settings: Settings) -> None:
    original = _fixture()
    store = FixtureStore([original], settings=settings)
    outcome = store.upsert(_fixture("Munster", "Leinster"))
    assert outcome.fixture.id == original.id
    assert len(store) == 1


def test_upsert_refreshes_moved_kickoff(settings: Settings) -> None:
    original = _fixture()
    store = FixtureStore([original], settings=settings)
    moved = KICKOFF + timedelta(hours=26)
    outcome = store.upsert(_fixture(kickoff=moved))
    assert outcome.kickoff_changed
    assert store.get(original.id).kickoff == moved
    assert store.get(original.id).team_a == "Leinster"
    assert store.changed_ids == {original.id}


def test_upsert_outside_dedup_window_creates_second_fixture(settings: Settings) -> None:
    store = FixtureStore([_fixture()], settings=settings)
    outcome = store.upsert(_fixture(kickoff=KICKOFF + timedelta(hours=48)))
    assert outcome.outcome == UpsertOutcome.CREATED
    assert len(store) == 2


def test_upsert_other_competition_creates_second_fixture(settings: Settings) -> None:
    store = FixtureStore([_fixture()], settings=settings)
    outcome = store.upsert(_fixture(competition_id="champions-cup"))
    assert outcome.outcome == UpsertOutcome.CREATED
    assert len(store) == 2


def test_upsert_never_moves_resolved_fixture(settings: Settings) -> None:
    resolved = _fixture(result=MatchResult(winner="Leinster", margin=6))
    store = FixtureStore([resolved], settings=settings)
    outcome = store.upsert(_fixture(kickoff=KICKOFF + timedelta(hours=3)))
    assert outcome.outcome == UpsertOutcome.MERGED
    assert not outcome.kickoff_changed
    assert store.get(resolved.id).kickoff == KICKOFF
    assert store.get(resolved.id).result == MatchResult(winner="Leinster", margin=6)


def test_upsert_finds_fixture_stored_under_legacy_competition_key(settings: Settings) -> None:
    legacy = _fixture(competition_id="United Rugby Championship")
    store = FixtureStore([legacy], settings=settings)
    outcome = store.upsert(_fixture(competition_id="urc"), legacy_keys=("United Rugby Championship",))
    assert outcome.fixture.id == legacy.id
    assert len(store) == 1


def test_injected_team_key_sees_through_aliases(settings: Settings) -> None:
    normalizer = NameNormalizer(AliasTable({"Leinster": ["Leinster Rugby"]}))
    stored = _fixture(team_a="Leinster Rugby")
    store = FixtureStore([stored], settings=settings, team_key=normalizer.match_key)
    assert store.upsert(_fixture()).fixture.id == stored.id


def test_find_by_teams_across_competitions(settings: Settings) -> None:
    store = FixtureStore(
        [_fixture(), _fixture(competition_id="champions-cup"), _fixture("Ulster", "Connacht")],
        settings=settings,
    )
    assert len(store.find_by_teams("munster", "LEINSTER")) == 2
    assert len(store.find_by_teams("Leinster", "Munster", competition_id="urc")) == 1
    assert store.find_by_teams("Leinster", "Ulster") == []


# ── Results ─────────────────────────────────────────────────────────────

def test_attach_result_moves_fixture_to_completed(settings: Settings) -> None:
    fixture = _fixture()
    store = FixtureStore([fixture], settings=settings)
    updated = store.attach_result(fixture.id, MatchResult(winner="Leinster", margin=6))
    assert updated.state == FixtureState.COMPLETED
    assert store.changed_ids == {fixture.id}


def test_attach_result_is_write_if_absent(settings: Settings) -> None:
    fixture = _fixture(result=MatchResult(winner="Leinster", margin=6))
    store = FixtureStore([fixture], settings=settings)
    with pytest.raises(AlreadyResolved):
        store.attach_result(fixture.id, MatchResult(winner="Munster", margin=1))
    assert store.get(fixture.id).result == MatchResult(winner="Leinster", margin=6)
    assert not store.dirty


def test_attach_result_unknown_fixture(settings: Settings) -> None:
    store = FixtureStore(settings=settings)
    with pytest.raises(FixtureNotFound):
        store.attach_result("missing", MatchResult(winner=None, margin=0))


def test_mark_scored_requires_result(settings: Settings) -> None:
    fixture = _fixture()
    store = FixtureStore([fixture], settings=settings)
    with pytest.raises(FixtureStoreError):
        store.mark_scored(fixture.id, KICKOFF)


def test_mark_scored_moves_fixture_to_scored(settings: Settings) -> None:
    fixture = _fixture(result=MatchResult(winner=None, margin=0))
    store = FixtureStore([fixture], settings=settings)
    assert store.mark_scored(fixture.id, KICKOFF + timedelta(hours=3)).state == FixtureState.SCORED


def test_unresolved_between(settings: Settings) -> None:
    open_fixture = _fixture()
    done = _fixture("Ulster", "Connacht", result=MatchResult(winner="Ulster", margin=3))
    later = _fixture("Bulls", "Sharks", kickoff=KICKOFF + timedelta(days=10))
    store = FixtureStore([open_fixture, done, later], settings=settings)
    found = store.unresolved_between(KICKOFF - timedelta(days=1), KICKOFF + timedelta(days=1))
    assert [f.id for f in found] == [open_fixture.id]


# ── Compaction ──────────────────────────────────────────────────────────

def test_compact_keeps_resolved_duplicate(settings: Settings) -> None:
    first = _fixture()
    resolved = _fixture("Munster", "Leinster", kickoff=KICKOFF + timedelta(hours=1),
                        result=MatchResult(winner="Leinster", margin=6))
    store = FixtureStore([first, resolved], settings=settings)
    replaced = store.compact()
    assert replaced == {first.id: resolved.id}
    assert len(store) == 1
    assert store.removed_ids == {first.id}
    assert first.id not in store


def test_compact_keeps_first_when_none_resolved(settings: Settings) -> None:
    first = _fixture()
    second = _fixture(kickoff=KICKOFF + timedelta(hours=2))
    third = _fixture(kickoff=KICKOFF + timedelta(days=7))
    store = FixtureStore([first, second, third], settings=settings)
    assert store.compact() == {second.id: first.id}
    assert {f.id for f in store.fixtures} == {first.id, third.id}


def test_compact_without_duplicates_is_noop(settings: Settings) -> None:
    store = FixtureStore([_fixture(), _fixture("Ulster", "Connacht")], settings=settings)
    assert store.compact() == {}
    assert not store.dirty


def test_mark_clean_resets_tracking(settings: Settings) -> None:
    store = FixtureStore(settings=settings)
    store.upsert(_fixture())
    store.mark_clean()
    assert not store.dirty
    assert store.changed_ids == set()
