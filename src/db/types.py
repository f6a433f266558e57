from __future__ import annotations

import datetime as dt
from decimal import Decimal

from sqlalchemy.types import DateTime as _DateTime
from sqlalchemy.types import String as _String
from sqlalchemy.types import TypeDecorator

from src.utils.time import UTC


class UTCDateTime(TypeDecorator):
    """
    Store datetimes as UTC and always return tz-aware UTC datetimes.

    SQLite doesn't have a native timezone-aware datetime type. This decorator treats
    naive datetimes as UTC and attaches tzinfo on read.
    """

    impl = _DateTime
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        v = value
        if v.tzinfo is None:
            v = v.replace(tzinfo=UTC)
        # Stored naive.
        return v.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class DecimalText(TypeDecorator):
    """
    Exact Decimal stored as its canonical string.

    Numeric columns round to a fixed scale (and SQLite keeps them as floats);
    lot basis after ratio division needs every digit back on read.
    """

    impl = _String
    cache_ok = True

    def process_bind_param(self, value: Decimal | int | str | None, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError("DecimalText refuses float values")
        return str(Decimal(value))

    def process_result_value(self, value: str | None, dialect):
        if value is None:
            return None
        return Decimal(value)
