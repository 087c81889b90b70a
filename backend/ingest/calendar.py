"""
Calendar importer: iCalendar feed text -> fixtures in the FixtureStore.

Each VEVENT title is expected to read "<team> vs <team>", optionally prefixed
with the competition name or a league tag. A malformed entry is logged and
skipped; only a feed that cannot be parsed at all raises CalendarFeedError.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from typing import Any, Optional

from icalendar import Calendar

from ingest.normalization.normalizer import (
    NameNormalizer,
    is_placeholder,
    repair_mojibake,
    strip_glyphs,
)
from shared.models.domain import Competition, Fixture, ImportSummary
from shared.models.enums import UpsertOutcome
from shared.utils.logging import get_logger
from shared.utils.metrics import IMPORT_FIXTURES, IMPORT_SKIPPED
from storage.fixture_store import FixtureStore

logger = get_logger(__name__)

_TEAM_SEPARATOR_RE = re.compile(r"\s+(?:vs\.?|v)\s+", re.IGNORECASE)


class CalendarFeedError(Exception):
    """The feed as a whole is not parseable calendar data."""


class _SkipEntry(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def normalize_feed_url(url: Optional[str]) -> str:
    """Trim and turn webcal:// into https://. Never re-encodes: some feed hosts reject encoded URLs."""
    normalized = (url or "").strip()
    if normalized.lower().startswith("webcal://"):
        normalized = "https://" + normalized[len("webcal://"):]
    return normalized


def split_title(title: str) -> Optional[tuple[str, str]]:
    """Split a "<team> vs <team>" title on the first separator; None when there is none."""
    parts = _TEAM_SEPARATOR_RE.split(title.strip(), maxsplit=1)
    if len(parts) != 2:
        return None
    left, right = (p.strip() for p in parts)
    if not left or not right:
        return None
    return left, right


def to_utc_kickoff(value: Any) -> datetime:
    """DTSTART value as an aware UTC datetime. All-day dates start at midnight UTC; floating times are UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise _SkipEntry("bad_start")


class CalendarImporter:
    """Merges one competition's calendar feed into the store."""

    def __init__(self, store: FixtureStore, normalizer: NameNormalizer) -> None:
        self._store = store
        self._normalizer = normalizer

    def import_feed(self, feed_text: str, competition: Competition) -> ImportSummary:
        """
        Parse feed_text and upsert every well-formed entry.

        Returns counts of created fixtures, merged fixtures whose kickoff moved,
        and skipped entries. Raises CalendarFeedError when feed_text is not iCalendar data.
        """
        try:
            calendar = Calendar.from_ical(feed_text)
        except (ValueError, IndexError, KeyError) as exc:
            raise CalendarFeedError(f"{competition.name}: unparseable calendar feed: {exc}") from exc
        if calendar.name != "VCALENDAR":
            raise CalendarFeedError(f"{competition.name}: feed holds {calendar.name}, not VCALENDAR")

        prefix_re = self._competition_prefix_re(competition)
        legacy_keys = (competition.name,) if competition.name != competition.id else ()
        summary = ImportSummary()

        for event in calendar.walk("VEVENT"):
            title = str(event.get("SUMMARY", "") or "")
            try:
                candidate = self._to_fixture(event, title, competition, prefix_re)
                upserted = self._store.upsert(candidate, legacy_keys=legacy_keys)
            except _SkipEntry as skip:
                summary.skipped += 1
                IMPORT_SKIPPED.labels(competition=competition.id, reason=skip.reason).inc()
                logger.debug("calendar_entry_skipped", competition=competition.name, title=title, reason=skip.reason)
                continue
            except Exception as exc:
                # One bad entry never aborts the batch
                summary.skipped += 1
                IMPORT_SKIPPED.labels(competition=competition.id, reason="malformed").inc()
                logger.warning(
                    "calendar_entry_skipped",
                    competition=competition.name,
                    title=title,
                    reason="malformed",
                    error=str(exc),
                )
                continue

            if upserted.outcome == UpsertOutcome.CREATED:
                summary.added += 1
            elif upserted.kickoff_changed:
                summary.updated += 1
            IMPORT_FIXTURES.labels(competition=competition.id, outcome=upserted.outcome.value).inc()

        logger.info(
            "calendar_imported",
            competition=competition.name,
            added=summary.added,
            updated=summary.updated,
            skipped=summary.skipped,
        )
        return summary

    def _to_fixture(
        self,
        event: Any,
        title: str,
        competition: Competition,
        prefix_re: re.Pattern[str],
    ) -> Fixture:
        text = " ".join(strip_glyphs(repair_mojibake(title)).split())
        text = prefix_re.sub("", text)
        sides = split_title(text)
        if sides is None:
            raise _SkipEntry("unsplittable")

        team_a, team_b = (self._normalizer.normalize(s) for s in sides)
        if is_placeholder(team_a) and is_placeholder(team_b):
            raise _SkipEntry("placeholder")
        if not team_a or not team_b:
            raise _SkipEntry("unsplittable")

        start = event.get("DTSTART")
        if start is None:
            raise _SkipEntry("no_start")

        return Fixture(
            competition_id=competition.id,
            team_a=team_a,
            team_b=team_b,
            kickoff=to_utc_kickoff(start.dt),
        )

    @staticmethod
    def _competition_prefix_re(competition: Competition) -> re.Pattern[str]:
        names = sorted({competition.name.strip(), competition.id.strip()} - {""}, key=len, reverse=True)
        alternation = "|".join(re.escape(n) for n in names)
        return re.compile(rf"^\s*(?:{alternation})\s*[:\-|]\s*", re.IGNORECASE)
