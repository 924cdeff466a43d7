from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from dateutil import parser


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_today() -> date:
    return utc_now().date()


def iso_now() -> str:
    return utc_now().replace(microsecond=0).isoformat()


def days_before(day: date | str, days: int) -> str:
    return (as_date(day) - timedelta(days=days)).isoformat()


def as_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return parser.isoparse(value).date()
