from __future__ import annotations

import math
import time
from datetime import date, datetime, time as time_cls, timedelta, timezone
from typing import Any, Callable, Optional


Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(value: Optional[int]) -> Optional[str]:
    """Render epoch milliseconds the way browsers do (``2025-01-01T00:00:00.000Z``)."""
    if value is None:
        return None
    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp_ms(raw: Any) -> Optional[int]:
    """
    Parse an upstream timestamp into epoch milliseconds.

    Accepts epoch milliseconds (int/float), ISO-8601 strings with or without
    offset (naive values are UTC) and plain ``YYYY-MM-DD`` dates.
    """
    if raw is None or raw == "" or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return _epoch_ms_in_range(raw)
    if not isinstance(raw, str):
        return None

    text = raw.strip()
    if not text:
        return None
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _epoch_ms_in_range(value: float) -> Optional[int]:
    # NaN, infinities and values past year 9999 (e.g. epoch microseconds) are unusable
    try:
        if not math.isfinite(value):
            return None
        datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return int(value)


def utc_date(value_ms: int) -> date:
    return datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc).date()


def day_start_ms(value: date) -> int:
    return int(datetime.combine(value, time_cls(0, 0), tzinfo=timezone.utc).timestamp() * 1000)


def day_end_exclusive_ms(value: date) -> int:
    return day_start_ms(value + timedelta(days=1))
