"""
Fixture store: the authoritative in-memory fixture list for one pipeline invocation.

Loaded from and persisted through a FixtureRepository; every component receives
the store explicitly. Two rules are enforced here:

- dedup: no two fixtures share (competition, unordered team pair) with kickoffs
  closer than the dedup window;
- write-if-absent: a result, once attached, is never replaced or removed.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from ingest.normalization.normalizer import match_key
from shared.config import Settings, get_settings
from shared.models.domain import Fixture, MatchResult
from shared.models.enums import FixtureState, UpsertOutcome
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class FixtureStoreError(Exception):
    """Base error for fixture store operations."""


class FixtureNotFound(FixtureStoreError):
    def __init__(self, fixture_id: str) -> None:
        super().__init__(f"fixture {fixture_id} not found")
        self.fixture_id = fixture_id


class AlreadyResolved(FixtureStoreError):
    """Raised when attaching a result to a fixture that already carries one."""

    def __init__(self, fixture: Fixture) -> None:
        super().__init__(f"fixture {fixture.id} ({fixture.describe()}) already has a result")
        self.fixture = fixture


@dataclass(frozen=True)
class UpsertResult:
    outcome: UpsertOutcome
    fixture: Fixture
    kickoff_changed: bool = False


TeamPair = frozenset[str]
TeamKey = Callable[[str], str]


class FixtureStore:
    """Dedup-aware fixture collection with write-if-absent result attachment."""

    def __init__(
        self,
        fixtures: Iterable[Fixture] = (),
        settings: Settings | None = None,
        team_key: TeamKey = match_key,
    ) -> None:
        # team_key maps a team name to its comparison key; NameNormalizer.match_key sees through aliases
        self._settings = settings or get_settings()
        self._team_key = team_key
        self._dedup_window = timedelta(hours=self._settings.dedup_window_h)
        self._fixtures: dict[str, Fixture] = {}
        self._by_pair: dict[tuple[str, TeamPair], list[str]] = {}
        self._changed: set[str] = set()
        self._removed: set[str] = set()
        for fixture in fixtures:
            self._add(fixture)

    # ── Queries ─────────────────────────────────────────────

    def team_key(self, name: str) -> str:
        return self._team_key(name)

    def team_pair(self, team_a: str, team_b: str) -> TeamPair:
        return frozenset((self._team_key(team_a), self._team_key(team_b)))

    def __len__(self) -> int:
        return len(self._fixtures)

    def __contains__(self, fixture_id: object) -> bool:
        return fixture_id in self._fixtures

    @property
    def fixtures(self) -> list[Fixture]:
        """All fixtures in load/insert order."""
        return list(self._fixtures.values())

    @property
    def changed_ids(self) -> set[str]:
        """Ids created or modified since load (or the last mark_clean)."""
        return set(self._changed)

    @property
    def removed_ids(self) -> set[str]:
        """Ids dropped by compact() since load (or the last mark_clean)."""
        return set(self._removed)

    @property
    def dirty(self) -> bool:
        return bool(self._changed or self._removed)

    def mark_clean(self) -> None:
        self._changed.clear()
        self._removed.clear()

    def get(self, fixture_id: str) -> Fixture:
        try:
            return self._fixtures[fixture_id]
        except KeyError:
            raise FixtureNotFound(fixture_id) from None

    def find_by_teams(
        self,
        team_a: str,
        team_b: str,
        competition_id: Optional[str] = None,
    ) -> list[Fixture]:
        """Fixtures between the two teams, in either orientation, optionally within one competition."""
        pair = self.team_pair(team_a, team_b)
        if competition_id is not None:
            ids = self._by_pair.get((competition_id, pair), [])
        else:
            ids = [fid for (_, p), fids in self._by_pair.items() if p == pair for fid in fids]
        return [self._fixtures[fid] for fid in ids]

    def find_duplicate(self, candidate: Fixture, legacy_keys: Iterable[str] = ()) -> Optional[Fixture]:
        """
        Stored fixture sharing candidate's identity, nearest kickoff first.
        legacy_keys are other competition keys the same competition was stored under.
        """
        matches = [
            f
            for comp in dict.fromkeys((candidate.competition_id, *legacy_keys))
            for f in self.find_by_teams(candidate.team_a, candidate.team_b, comp)
            if f.id != candidate.id and abs(f.kickoff - candidate.kickoff) < self._dedup_window
        ]
        if not matches:
            return None
        return min(matches, key=lambda f: abs(f.kickoff - candidate.kickoff))

    def unresolved_between(self, start: datetime, end: datetime) -> list[Fixture]:
        return [
            f for f in self._fixtures.values()
            if f.result is None and start <= f.kickoff <= end
        ]

    # ── Mutations ───────────────────────────────────────────

    def upsert(self, candidate: Fixture, legacy_keys: Iterable[str] = ()) -> UpsertResult:
        """
        Insert candidate, or merge it into the stored fixture with the same identity.

        A merge refreshes kickoff only while the stored fixture is still scheduled;
        teams and result are never touched.
        """
        existing = self.find_duplicate(candidate, legacy_keys)
        if existing is None:
            self._add(candidate)
            self._changed.add(candidate.id)
            return UpsertResult(UpsertOutcome.CREATED, candidate)

        if existing.kickoff == candidate.kickoff or existing.state != FixtureState.SCHEDULED:
            return UpsertResult(UpsertOutcome.MERGED, existing)

        refreshed = existing.model_copy(update={"kickoff": candidate.kickoff})
        self._fixtures[existing.id] = refreshed
        self._changed.add(existing.id)
        logger.debug(
            "fixture_kickoff_refreshed",
            fixture_id=existing.id,
            fixture=existing.describe(),
            old=existing.kickoff.isoformat(),
            new=candidate.kickoff.isoformat(),
        )
        return UpsertResult(UpsertOutcome.MERGED, refreshed, kickoff_changed=True)

    def attach_result(self, fixture_id: str, result: MatchResult) -> Fixture:
        """
        Write result onto a fixture that has none.

        Raises:
            FixtureNotFound: unknown id.
            AlreadyResolved: the fixture already carries a result; it is left as is.
        """
        fixture = self.get(fixture_id)
        if fixture.result is not None:
            raise AlreadyResolved(fixture)
        updated = fixture.model_copy(update={"result": result, "scored_at": None})
        self._fixtures[fixture_id] = updated
        self._changed.add(fixture_id)
        return updated

    def mark_scored(self, fixture_id: str, scored_at: datetime) -> Fixture:
        fixture = self.get(fixture_id)
        if fixture.result is None:
            raise FixtureStoreError(f"fixture {fixture_id} has no result to score")
        updated = fixture.model_copy(update={"scored_at": scored_at})
        self._fixtures[fixture_id] = updated
        self._changed.add(fixture_id)
        return updated

    def compact(self) -> dict[str, str]:
        """
        Collapse duplicate identities already present in loaded data.

        Within each duplicate group the resolved fixture is kept, else the first one
        seen. Returns {removed id: kept id} so dependent predictions can be re-pointed.
        """
        replaced: dict[str, str] = {}
        for key, ids in list(self._by_pair.items()):
            survivors: list[str] = []
            for fid in ids:
                fixture = self._fixtures[fid]
                twin_id = next(
                    (s for s in survivors
                     if abs(self._fixtures[s].kickoff - fixture.kickoff) < self._dedup_window),
                    None,
                )
                if twin_id is None:
                    survivors.append(fid)
                    continue
                keep, drop = twin_id, fid
                if self._fixtures[twin_id].result is None and fixture.result is not None:
                    keep, drop = fid, twin_id
                    survivors[survivors.index(twin_id)] = fid
                    for old, kept in replaced.items():
                        if kept == drop:
                            replaced[old] = keep
                replaced[drop] = keep
                del self._fixtures[drop]
                self._changed.discard(drop)
                self._removed.add(drop)
            self._by_pair[key] = survivors
        if replaced:
            logger.info("fixtures_compacted", removed=len(replaced), remaining=len(self._fixtures))
        return replaced

    def _add(self, fixture: Fixture) -> None:
        self._fixtures[fixture.id] = fixture
        key = (fixture.competition_id, self.team_pair(fixture.team_a, fixture.team_b))
        self._by_pair.setdefault(key, []).append(fixture.id)
