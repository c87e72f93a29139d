from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

_WHITESPACE_RE = re.compile(r"\s+")
_NUMBER_RE = re.compile(r"-?\d+(?:[.,]\d+)?")
_DMY_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")


class ExtractionError(Exception):
    """Raised when a source record cannot be turned into an opportunity."""


# What unexpected source values (nulls, numbers where text is expected, short
# lists) raise inside an extractor; each extract_* turns them into ExtractionError.
SOURCE_VALUE_ERRORS = (TypeError, ValueError, KeyError, AttributeError, IndexError)


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else str(value)
    return _WHITESPACE_RE.sub(" ", text).strip()


def parse_number(value: Any) -> float | None:
    """Best-effort numeric parse; zero and garbage both map to ``None``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) or None
    text = clean_text(str(value)).replace(" ", "").replace("€", "")
    match = _NUMBER_RE.search(text)
    if match is None:
        return None
    number = float(match.group(0).replace(",", "."))
    return number or None


def parse_int(value: Any) -> int | None:
    number = parse_number(value)
    return int(number) if number is not None else None


def parse_date(value: str | None) -> date | None:
    text = clean_text(value)
    if not text:
        return None
    match = _DMY_RE.search(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return None
    try:
        return datetime.fromisoformat(text[:10]).date()
    except ValueError:
        return None


def normalize_department(value: str | None) -> str | None:
    text = clean_text(value).upper()
    if not text:
        return None
    if text in {"2A", "2B"}:
        return text
    if text.isdigit():
        return text.zfill(2) if len(text) <= 2 else text
    return None
