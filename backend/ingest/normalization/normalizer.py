"""
Team-name normalization shared by the calendar importer, reconciler and scorer.

Two independent text sources (calendar titles, scraped results pages) spell the
same team differently. normalize() turns either spelling into one canonical
name; match_key() is the stricter alias-free form used only for equality.

Processing order is fixed and every step is idempotent, so
normalize(normalize(x)) == normalize(x).
"""
from __future__ import annotations

import json
import re
import unicodedata
from abc import ABC, abstractmethod
from importlib import resources
from pathlib import Path
from typing import Iterable, Mapping, Optional

from shared.utils.logging import get_logger

logger = get_logger(__name__)

BUNDLED_ALIAS_FILE = "team_aliases.json"

# Matching keys that mean "team not known yet"
PLACEHOLDER_KEYS = frozenset({
    "tbc", "tbd", "tba",
    "tobeconfirmed", "tobedetermined", "tobeannounced",
})

# Unicode categories dropped as decoration: symbols (emoji, flags, trophies),
# modifiers (skin tones), enclosing marks (keycaps), controls, surrogates, private use.
_DROP_CATEGORIES = frozenset({"So", "Sk", "Me", "Cc", "Cf", "Cs", "Co", "Cn"})

# Lead byte of a UTF-8 sequence read back as cp1252, followed by a continuation byte.
_CP1252_CONT = "\u0080-¿Œ-ƒˆ-˜–-™"
_MOJIBAKE_RE = re.compile(f"[ÂÃâð][{_CP1252_CONT}]")
# What is left of a 4-byte emoji once an undefined cp1252 byte was lost in transit.
_MOJIBAKE_EMOJI_RE = re.compile(f"ð[{_CP1252_CONT}]{{1,3}}")
_MOJIBAKE_NBSP_RE = re.compile("Â(?=[ \u00a0])")

# Short upper-case league tag before a colon, e.g. "URC: " or "EPCR CC: "
_TAG_PREFIX_RE = re.compile(r"^\s*(?:[A-Z0-9][A-Z0-9&+.\-]{0,11}(?:\s[A-Z0-9][A-Z0-9&+.\-]{0,11})?\s*:\s+)+(?=\S)")
_TRAILING_DECORATION_RE = re.compile(
    r"(?:\s*\((?:time\s+)?tb[acd]\)|\s*\[[^\]]*\]|\s*[-|*:–—])+\s*$",
    re.IGNORECASE,
)


def _fold(text: str) -> str:
    return " ".join(text.split()).casefold()


def match_key(raw: str) -> str:
    """
    Strict comparison form: case-folded, accents removed, only letters and digits kept.
    Never consults the alias table; different keys are never the same team.

    Accent folding is deliberate: feeds and results pages disagree on accents
    ("Stade Français" / "Stade Francais"), and a name with and without its
    accents is the same spelling, not an alias.
    """
    decomposed = unicodedata.normalize("NFKD", raw or "")
    return "".join(
        ch for ch in decomposed.casefold()
        if ch.isalnum() and not unicodedata.combining(ch)
    )


def is_placeholder(name: str) -> bool:
    key = match_key(name)
    return not key or key in PLACEHOLDER_KEYS


def repair_mojibake(text: str) -> str:
    """Undo UTF-8 text that was decoded as cp1252 (possibly more than once)."""
    for _ in range(3):
        if not _MOJIBAKE_RE.search(text):
            break
        try:
            repaired = text.encode("cp1252").decode("utf-8")
        except UnicodeError:
            break
        if repaired == text:
            break
        text = repaired
    text = _MOJIBAKE_EMOJI_RE.sub("", text)
    return _MOJIBAKE_NBSP_RE.sub("", text)


def strip_glyphs(text: str) -> str:
    """Replace every whitespace variant (NBSP included) by a space and drop decorative glyphs."""
    out: list[str] = []
    for ch in text:
        if ch.isspace():
            out.append(" ")
        elif unicodedata.category(ch) not in _DROP_CATEGORIES:
            out.append(ch)
    return "".join(out)


# ── Alias lookup ────────────────────────────────────────────────────────

class AliasResolver(ABC):
    """Lookup from any known spelling to a canonical team name."""

    @abstractmethod
    def resolve(self, name: str) -> Optional[str]:
        """Return the canonical name for name, or None when the spelling is unknown."""


class AliasTable(AliasResolver):
    """
    In-memory alias table built from {canonical: [alias, ...]}.
    Case-insensitive; an exact canonical match wins over any alias.
    """

    def __init__(self, mapping: Mapping[str, Iterable[str]] | None = None) -> None:
        self._canonical: dict[str, str] = {}
        self._aliases: dict[str, str] = {}
        for canonical, aliases in (mapping or {}).items():
            self._canonical.setdefault(_fold(canonical), canonical)
            for alias in aliases:
                self._aliases.setdefault(_fold(alias), canonical)

    def __len__(self) -> int:
        return len(self._canonical)

    def resolve(self, name: str) -> Optional[str]:
        key = _fold(name)
        return self._canonical.get(key) or self._aliases.get(key)

    @classmethod
    def from_json(cls, path: Path) -> "AliasTable":
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
        table = cls(data)
        logger.info("alias_table_loaded", path=str(path), teams=len(table))
        return table

    @classmethod
    def bundled(cls) -> "AliasTable":
        text = resources.files(__package__).joinpath(BUNDLED_ALIAS_FILE).read_text(encoding="utf-8")
        return cls(json.loads(text))


# ── Normalizer ──────────────────────────────────────────────────────────

class NameNormalizer:
    """
    Canonicalizes free-text team names.

    Steps, in order:
      1. repair double-encoded text, turn NBSP into spaces, drop emoji/flags/markup glyphs
      2. drop league-tag prefixes and trailing decorations
      3. collapse whitespace
      4. resolve through the alias table; unknown names pass through as their own canonical form
    """

    def __init__(
        self,
        aliases: AliasResolver | None = None,
        prefixes: Iterable[str] = (),
    ) -> None:
        self._aliases = aliases if aliases is not None else AliasTable()
        known = sorted({p.strip() for p in prefixes if p and p.strip()}, key=len, reverse=True)
        self._known_prefix_re: Optional[re.Pattern[str]] = None
        if known:
            alternation = "|".join(re.escape(p) for p in known)
            self._known_prefix_re = re.compile(rf"^\s*(?:(?:{alternation})\s*:\s+)+(?=\S)", re.IGNORECASE)

    def clean(self, raw: str) -> str:
        """Steps 1-3: the cleaned spelling, before alias resolution."""
        # Run to a fixed point: dropping a glyph can join a mojibake pair, and
        # stripping one prefix can expose another, e.g. "URC: Top 14: X".
        # Every step only shortens or keeps the text, so this terminates.
        text = raw or ""
        previous = None
        while text != previous:
            previous = text
            text = strip_glyphs(repair_mojibake(text))
            if self._known_prefix_re is not None:
                text = self._known_prefix_re.sub("", text)
            text = _TAG_PREFIX_RE.sub("", text)
            text = _TRAILING_DECORATION_RE.sub("", text)
            text = " ".join(text.split())
        return text

    def normalize(self, raw: str) -> str:
        cleaned = self.clean(raw)
        if not cleaned:
            return cleaned
        return self._aliases.resolve(cleaned) or cleaned

    def match_key(self, raw: str) -> str:
        """Comparison key of the canonical form of raw."""
        return match_key(self.normalize(raw))

    def same_team(self, left: str, right: str) -> bool:
        key = self.match_key(left)
        return bool(key) and key == self.match_key(right)


def build_normalizer(alias_file: Path | None = None, prefixes: Iterable[str] = ()) -> NameNormalizer:
    """Normalizer over the alias file when given, else over the bundled table."""
    table = AliasTable.from_json(alias_file) if alias_file else AliasTable.bundled()
    return NameNormalizer(table, prefixes=prefixes)
