"""Ordered JSON encoding of readings for the HTTP API."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from .readings import Readings

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _rfc3339(ts: datetime) -> str:
    text = (
        f"{ts.year:04d}-{ts.month:02d}-{ts.day:02d}"
        f"T{ts.hour:02d}:{ts.minute:02d}:{ts.second:02d}"
    )
    if ts.microsecond:
        text += "." + f"{ts.microsecond:06d}".rstrip("0")
    offset = ts.utcoffset()
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(offset) // timedelta(minutes=1)
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _unix(ts: datetime) -> int:
    return (ts - _EPOCH) // timedelta(seconds=1)


def _encode(value: Any) -> str:
    if isinstance(value, float):
        return "%f" % value
    if isinstance(value, datetime):
        return json.dumps(_rfc3339(value))
    return json.dumps(value, ensure_ascii=False)


def kv_json(pairs: Iterable[tuple[str, Any]]) -> str:
    """Encode key/value pairs as a JSON object, keeping their order."""
    members = (f"{json.dumps(key, ensure_ascii=False)}:{_encode(val)}" for key, val in pairs)
    return "{" + ",".join(members) + "}"


def api_data_json(readings: Readings) -> str:
    """Encode readings with timestamp, unix time and values sorted by name."""
    pairs: list[tuple[str, Any]] = [
        ("Timestamp", readings.timestamp),
        ("Unix", _unix(readings.timestamp)),
    ]
    pairs.extend((key, float(value)) for key, value in sorted(readings.values.items()))
    return kv_json(pairs)