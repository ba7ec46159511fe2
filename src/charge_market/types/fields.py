# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Field conversion helpers shared by the domain dataclasses.

Backends persist entities as flat string mappings (Redis hashes, or copies
of the same mapping in memory). These helpers convert between those strings
and the typed values held by the dataclasses. Empty strings stand for None.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

MONEY_QUANTUM = Decimal("0.01")
"""Money values are rounded to cents."""


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_decimal(value: Any) -> Decimal:
    """Convert int/float/str to Decimal going through str() for floats."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_optional_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    return to_decimal(value)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def dump_datetime(value: datetime | None) -> str:
    return "" if value is None else ensure_utc(value).isoformat()


def load_datetime(raw: str | None) -> datetime | None:
    if raw is None or raw == "":
        return None
    return ensure_utc(datetime.fromisoformat(raw))


def dump_date(value: date) -> str:
    return value.isoformat()


def load_date(raw: str) -> date:
    return date.fromisoformat(raw)


def dump_optional(value: Any) -> str:
    return "" if value is None else str(value)


def load_optional(raw: str | None) -> str | None:
    if raw is None or raw == "":
        return None
    return raw


def dump_bool(value: bool) -> str:
    return "1" if value else "0"


def load_bool(raw: Any) -> bool:
    return str(raw).strip().lower() in ("1", "true", "yes")


__all__ = [
    "MONEY_QUANTUM",
    "dump_bool",
    "dump_date",
    "dump_datetime",
    "dump_optional",
    "ensure_utc",
    "load_bool",
    "load_date",
    "load_datetime",
    "load_optional",
    "to_decimal",
    "to_optional_decimal",
    "utcnow",
]
