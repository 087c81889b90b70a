"""Domain enumerations for the predictions backend."""
from __future__ import annotations

from enum import Enum


class FixtureState(str, Enum):
    """Lifecycle of a fixture: Scheduled -> Completed (result attached) -> Scored."""
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    SCORED = "scored"

    @property
    def is_resolved(self) -> bool:
        return self != FixtureState.SCHEDULED


class UpsertOutcome(str, Enum):
    CREATED = "created"
    MERGED = "merged"


class ExtractionStrategy(str, Enum):
    """Selector scheme that produced rows from a results page."""
    PRIMARY = "primary"
    FALLBACK = "fallback"
    NONE = "none"
