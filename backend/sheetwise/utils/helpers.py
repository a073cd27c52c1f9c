"""Miscellaneous parsing helpers for model-produced values."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


def parse_iso_date(value: str | None) -> Optional[dt.date]:
    """Parse a ``YYYY-MM-DD`` (or full ISO8601 datetime) string into a date.

    Vision models sometimes answer with a full timestamp, sometimes with a
    lowercase ``z`` as the UTC designator. Returns ``None`` if the value
    cannot be parsed.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return dt.date.fromisoformat(value[:10])
    except ValueError:
        pass
    try:
        if value.endswith("z"):
            value = value[:-1] + "Z"
        return dt.datetime.fromisoformat(value).date()
    except ValueError:
        return None


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse a monetary amount into a ``Decimal``.

    Removes currency symbols and thousands separators. Returns ``None`` if
    the value is missing or not numeric.
    """
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, bool):
        return None
    try:
        cleaned = str(value).replace("$", "").replace(",", "").strip()
        amount = Decimal(cleaned)
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def normalise_currency(value: str | None, default: str) -> str:
    """Return an upper-case 3-letter code, falling back to ``default``."""
    code = (value or "").strip().upper()
    return code[:3] if code else default


_FENCE_PREFIXES = ("```json", "```JSON", "```")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding Markdown code fence from model output."""
    cleaned = text.strip()
    for prefix in _FENCE_PREFIXES:
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
            break
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()
