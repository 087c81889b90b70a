"""
Persistence boundary for fixtures, predictions and competitions.

The pipeline only ever needs: load everything, persist the full fixture list,
persist the predictions it touched, and read competitions. Storage media sit
behind FixtureRepository; create_repository() picks one from settings.
"""
from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from shared.config import Settings, StorageBackend, get_settings
from shared.models.domain import Competition, Fixture, Prediction
from shared.utils.logging import get_logger

logger = get_logger(__name__)

MATCHES_FILE = "matches.json"
PREDICTIONS_FILE = "predictions.json"
COMPETITIONS_FILE = "competitions.json"


class RepositoryError(Exception):
    """Stored data could not be read or written."""


class FixtureRepository(ABC):
    """Load/persist contract consumed by the pipeline."""

    async def open(self) -> None:
        """Acquire connections. No-op for file storage."""

    async def close(self) -> None:
        """Release connections. No-op for file storage."""

    async def __aenter__(self) -> "FixtureRepository":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @abstractmethod
    async def load_fixtures(self) -> list[Fixture]:
        ...

    @abstractmethod
    async def persist_fixtures(self, fixtures: list[Fixture], removed_ids: Iterable[str] = ()) -> None:
        """Write the full updated fixture list; removed_ids are fixtures compacted away."""

    @abstractmethod
    async def load_predictions(self, match_ids: Iterable[str] | None = None) -> list[Prediction]:
        """All predictions, or only those for match_ids when given."""

    @abstractmethod
    async def persist_predictions(self, predictions: list[Prediction]) -> None:
        """Write back the given (affected) predictions; others are left as stored."""

    @abstractmethod
    async def reassign_predictions(self, replaced: dict[str, str]) -> int:
        """
        Re-point predictions from removed fixture ids to the kept ones.
        A pick whose user already predicted the kept fixture is dropped. Returns rows touched.
        """

    @abstractmethod
    async def load_competitions(self) -> list[Competition]:
        ...


# ── Flat JSON files ─────────────────────────────────────────────────────

def _read_json_list(path: Path) -> list[Any]:
    if not path.exists():
        return []
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise RepositoryError(f"cannot read {path}: {exc}") from exc
    if not isinstance(data, list):
        raise RepositoryError(f"{path} does not hold a JSON array")
    return data


def _write_json_atomic(path: Path, payload: list[Any]) -> None:
    """Write to a temp file in the same directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False, indent=2)
            fh.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _has_result(record: dict[str, Any]) -> bool:
    result = record.get("result")
    return isinstance(result, dict) and result.get("margin") is not None


def _merge_fixture_records(
    stored: list[Any], incoming: list[dict[str, Any]], removed_ids: set[str]
) -> tuple[list[Any], int]:
    """
    Fold a run's fixture snapshot into what is on disk now.
    A stored result (with its kickoff and scoredAt) always wins over the
    snapshot, and records the snapshot never saw are kept unless compacted away.
    Returns the merged list and how many snapshot results lost to a stored one.
    """
    on_disk = {str(r.get("id")): r for r in stored if isinstance(r, dict)}
    merged: list[Any] = []
    lost_races = 0
    for record in incoming:
        current = on_disk.pop(record["id"], None)
        if current is not None and _has_result(current):
            if record.get("result") is not None and record["result"] != current["result"]:
                lost_races += 1
            record["result"] = current["result"]
            record["kickoff"] = current.get("kickoff", record["kickoff"])
        if current is not None and record.get("scoredAt") is None and current.get("scoredAt"):
            record["scoredAt"] = current["scoredAt"]
        merged.append(record)
    merged.extend(r for rid, r in on_disk.items() if rid not in removed_ids)
    return merged, lost_races


def _prediction_key(raw: dict[str, Any]) -> tuple[str, str]:
    user = raw.get("userId", raw.get("user_id"))
    match = raw.get("matchId", raw.get("match_id"))
    return (str(user), str(match))


class JsonFileRepository(FixtureRepository):
    """
    The data directory layout used by the web app: matches.json, predictions.json,
    competitions.json. Blocking file I/O runs in a worker thread.
    """

    def __init__(self, data_dir: Path) -> None:
        self._dir = Path(data_dir)
        self._write_lock = asyncio.Lock()

    @property
    def data_dir(self) -> Path:
        return self._dir

    async def load_fixtures(self) -> list[Fixture]:
        raw = await asyncio.to_thread(_read_json_list, self._dir / MATCHES_FILE)
        fixtures: list[Fixture] = []
        for i, record in enumerate(raw):
            try:
                fixtures.append(Fixture.model_validate(record))
            except ValidationError as exc:
                # Persisting would drop the record, so refuse instead of skipping it
                raise RepositoryError(f"{MATCHES_FILE}[{i}] is not a valid fixture: {exc}") from exc
        logger.debug("fixtures_loaded", count=len(fixtures), path=str(self._dir / MATCHES_FILE))
        return fixtures

    async def persist_fixtures(self, fixtures: list[Fixture], removed_ids: Iterable[str] = ()) -> None:
        """Merge into the current file so an overlapping run's results are never overwritten."""
        payload = [f.model_dump(mode="json", by_alias=True) for f in fixtures]
        path = self._dir / MATCHES_FILE
        async with self._write_lock:
            stored = await asyncio.to_thread(_read_json_list, path)
            merged, lost_races = _merge_fixture_records(stored, payload, set(removed_ids))
            await asyncio.to_thread(_write_json_atomic, path, merged)
        if lost_races:
            logger.info("fixture_result_already_written", count=lost_races)
        logger.debug("fixtures_persisted", count=len(merged))

    async def load_predictions(self, match_ids: Iterable[str] | None = None) -> list[Prediction]:
        wanted = set(match_ids) if match_ids is not None else None
        raw = await asyncio.to_thread(_read_json_list, self._dir / PREDICTIONS_FILE)
        predictions: list[Prediction] = []
        for record in raw:
            try:
                prediction = Prediction.model_validate(record)
            except ValidationError as exc:
                logger.warning("prediction_record_invalid", error=str(exc), record=record)
                continue
            if wanted is None or prediction.match_id in wanted:
                predictions.append(prediction)
        return predictions

    async def persist_predictions(self, predictions: list[Prediction]) -> None:
        if not predictions:
            return
        updates = {p.key: p.model_dump(mode="json", by_alias=True, exclude_none=True) for p in predictions}
        path = self._dir / PREDICTIONS_FILE
        async with self._write_lock:
            raw = await asyncio.to_thread(_read_json_list, path)
            seen: set[tuple[str, str]] = set()
            for record in raw:
                if not isinstance(record, dict):
                    continue
                key = _prediction_key(record)
                if key in updates:
                    # Extra fields written by the web app are preserved
                    record.update(updates[key])
                    seen.add(key)
            raw.extend(body for key, body in updates.items() if key not in seen)
            await asyncio.to_thread(_write_json_atomic, path, raw)
        logger.debug("predictions_persisted", count=len(updates))

    async def reassign_predictions(self, replaced: dict[str, str]) -> int:
        if not replaced:
            return 0
        path = self._dir / PREDICTIONS_FILE
        async with self._write_lock:
            raw = await asyncio.to_thread(_read_json_list, path)
            existing = {_prediction_key(r) for r in raw if isinstance(r, dict)}
            kept: list[Any] = []
            touched = 0
            for record in raw:
                if not isinstance(record, dict):
                    kept.append(record)
                    continue
                user_id, match_id = _prediction_key(record)
                target = replaced.get(match_id)
                if target is None:
                    kept.append(record)
                    continue
                touched += 1
                if (user_id, target) in existing:
                    logger.info("prediction_duplicate_dropped", user_id=user_id, match_id=match_id, kept=target)
                    continue
                record.pop("match_id", None)
                record["matchId"] = target
                existing.add((user_id, target))
                kept.append(record)
            if touched:
                await asyncio.to_thread(_write_json_atomic, path, kept)
        return touched

    async def load_competitions(self) -> list[Competition]:
        raw = await asyncio.to_thread(_read_json_list, self._dir / COMPETITIONS_FILE)
        competitions: list[Competition] = []
        for record in raw:
            try:
                competitions.append(Competition.model_validate(record))
            except ValidationError as exc:
                logger.warning("competition_record_invalid", error=str(exc), record=record)
        return competitions


def create_repository(settings: Settings | None = None) -> FixtureRepository:
    """Repository for the configured storage backend. Call open() (or use async with) before use."""
    settings = settings or get_settings()
    if settings.storage_backend == StorageBackend.SQL:
        from shared.utils.database import DatabaseManager
        from storage.sql_repository import SqlFixtureRepository

        return SqlFixtureRepository(DatabaseManager(settings), manage_connection=True)
    return JsonFileRepository(settings.data_dir)
