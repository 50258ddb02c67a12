"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import datetime, timedelta

import pendulum

DEFAULT_TZ = "Europe/London"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def utcnow() -> datetime:
    """Naive UTC now; the store keeps every timestamp as naive UTC."""
    return pendulum.now("UTC").naive()


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return pendulum.instance(value).in_timezone("UTC").naive()


def parse_timestamp(value: str) -> datetime:
    return to_utc_naive(pendulum.parse(value))


def bucket_start(observed_at: datetime, minutes: int) -> datetime:
    """Truncate a timestamp to the start of its `minutes`-wide bucket."""
    if minutes <= 0:
        raise ValueError("bucket width must be positive")
    value = to_utc_naive(observed_at)
    midnight = value.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = int((value - midnight).total_seconds() // 60)
    return midnight + timedelta(minutes=elapsed - elapsed % minutes)
