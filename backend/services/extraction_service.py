"""
Receipt facts: merchant and transaction date inferred from recognized text.

Both detectors are pure and never raise: an unknown merchant is
DetectedStore.UNKNOWN and an unreadable date is None (the caller falls back
to the capture time).
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

logger = logging.getLogger("basketscan.extraction")


# ── Store detection ───────────────────────────────────────────────────────────

class DetectedStore(str, Enum):
    ALDI = "ALDI"
    COLRUYT = "COLRUYT"
    DELHAIZE = "DELHAIZE"
    CARREFOUR = "CARREFOUR"
    LIDL = "LIDL"
    UNKNOWN = "Unknown Store"

    @property
    def display_name(self) -> str:
        return self.value


# Matched case-insensitively against the *full* OCR text, in this order, so
# a garbled header still resolves as long as an alias appears anywhere.
STORE_ALIASES: list[tuple[DetectedStore, list[str]]] = [
    (DetectedStore.ALDI,      ["aldi", "aldi nord", "aldi süd"]),
    (DetectedStore.COLRUYT,   ["colruyt", "okay", "bio-planet"]),
    (DetectedStore.DELHAIZE,  ["delhaize", "ad delhaize", "proxy delhaize"]),
    (DetectedStore.CARREFOUR, ["carrefour", "carrefour express", "carrefour market"]),
    (DetectedStore.LIDL,      ["lidl"]),
]


def detect_store(text: str) -> DetectedStore:
    """First merchant in table order with an alias in the text, else UNKNOWN."""
    lower = (text or "").lower()
    for store, aliases in STORE_ALIASES:
        if any(alias in lower for alias in aliases):
            return store
    return DetectedStore.UNKNOWN


# ── Date extraction ───────────────────────────────────────────────────────────

# "18/01/2026", "18-01-26", "18.01.2026", same separator on both sides
NUMERIC_DATE_RE = re.compile(r'(?<!\d)(\d{1,2})([./-])(\d{1,2})\2(\d{4}|\d{2})(?!\d)')
ISO_DATE_RE     = re.compile(r'(?<!\d)(\d{4})-(\d{1,2})-(\d{1,2})(?!\d)')
# "18 Jan 2026", "18 januari 2026", "1er février 2026"
NAMED_DATE_RE   = re.compile(
    r'(?<!\d)(\d{1,2})(?:st|nd|rd|th|er)?\.?\s+([^\W\d_]+)\.?,?\s+(\d{4})(?!\d)',
    re.IGNORECASE,
)
# Optional time of day directly after a date: "18/01/2026 14:32", "… om 14:32"
TIME_RE = re.compile(r'[\s,]*(?:(?:at|om|à)\s+)?(\d{1,2})[:h](\d{2})(?::(\d{2}))?(?!\d)', re.IGNORECASE)

MONTHS: dict[str, int] = {}
for _month, _names in enumerate([
    ["january", "jan", "januari", "janvier", "janv"],
    ["february", "feb", "februari", "février", "fevrier", "févr", "fevr", "fév", "fev"],
    ["march", "mar", "maart", "mrt", "mars"],
    ["april", "apr", "avril", "avr"],
    ["may", "mei", "mai"],
    ["june", "jun", "juni", "juin"],
    ["july", "jul", "juli", "juillet", "juil"],
    ["august", "aug", "augustus", "août", "aout"],
    ["september", "sep", "sept", "septembre"],
    ["october", "oct", "oktober", "okt", "octobre"],
    ["november", "nov", "novembre"],
    ["december", "dec", "décembre", "decembre", "déc"],
], start=1):
    for _name in _names:
        MONTHS[_name] = _month

MIN_YEAR, MAX_YEAR = 2000, 2099


def _build(year: int, month: int, day: int) -> Optional[datetime]:
    if not MIN_YEAR <= year <= MAX_YEAR:
        return None
    try:
        return datetime(year, month, day)
    except ValueError:
        return None


def _with_time(date: datetime, text: str, end: int) -> datetime:
    m = TIME_RE.match(text, end)
    if not m:
        return date
    hour, minute, second = int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)
    if hour > 23 or minute > 59 or second > 59:
        return date
    return date.replace(hour=hour, minute=minute, second=second)


class ReceiptDateExtractor:
    """
    Finds the first date-like substring in receipt text.

    Numeric dates are read day-first by default (European receipts:
    "03/01/2026" is 3 January).  If the preferred reading is not a real
    calendar date the other order is tried, so "01/18/2026" still parses.
    When several dates appear, the earliest one in the text wins, so a loyalty
    card expiry printed above the transaction date would be picked instead.
    """

    def __init__(self, day_first: bool = True):
        self.day_first = day_first

    def _numeric(self, m: re.Match) -> Optional[datetime]:
        a, b, year_raw = int(m.group(1)), int(m.group(3)), m.group(4)
        year = int(year_raw) + (2000 if len(year_raw) == 2 else 0)
        first, second = (b, a) if self.day_first else (a, b)   # (month, day)
        return _build(year, first, second) or _build(year, second, first)

    @staticmethod
    def _iso(m: re.Match) -> Optional[datetime]:
        return _build(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    @staticmethod
    def _named(m: re.Match) -> Optional[datetime]:
        month = MONTHS.get(m.group(2).lower())
        if month is None:
            return None
        return _build(int(m.group(3)), month, int(m.group(1)))

    def extract_date(self, text: str) -> Optional[datetime]:
        if not text:
            return None
        candidates = []
        for pattern, parse in (
            (NUMERIC_DATE_RE, self._numeric),
            (ISO_DATE_RE, self._iso),
            (NAMED_DATE_RE, self._named),
        ):
            for m in pattern.finditer(text):
                candidates.append((m.start(), m.end(), parse, m))

        for _start, end, parse, m in sorted(candidates, key=lambda c: c[0]):
            date = parse(m)
            if date is not None:
                return _with_time(date, text, end)
        return None


_default_extractor = ReceiptDateExtractor()


def extract_date(text: str) -> Optional[datetime]:
    return _default_extractor.extract_date(text)


# ── Facts ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReceiptFacts:
    store: DetectedStore
    date: datetime
    raw_text: str
