from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Protocol

UTC = dt.timezone.utc


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_date(value: Any) -> dt.date | None:
    """Accepts date/datetime objects and ISO (YYYY-MM-DD) or US (MM/DD/YYYY) strings."""
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    s = str(value).strip()
    if not s:
        return None
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y"):
        try:
            return dt.datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


class Clock(Protocol):
    def today(self) -> dt.date: ...


class SystemClock:
    def today(self) -> dt.date:
        return utcnow().date()


@dataclass(frozen=True)
class FrozenClock:
    """Fixed as-of date, for backtests and reproducible runs."""

    as_of: dt.date

    def today(self) -> dt.date:
        return self.as_of
