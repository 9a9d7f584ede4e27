"""Publishing of measurement results to InfluxDB."""

from __future__ import annotations

import logging
import math
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

import requests

from .snips import QuerySnip

log = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _escape(text: str, chars: str) -> str:
    for ch in chars:
        text = text.replace(ch, "\\" + ch)
    return text


def _float(value: float) -> str:
    if math.isnan(value) or math.isinf(value):
        raise ValueError(f"unsupported field value {value}")
    text = repr(value)
    return text[:-2] if text.endswith(".0") else text


def _field_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"{value}i"
    if isinstance(value, float):
        return _float(value)
    if isinstance(value, str):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    raise ValueError(f"unsupported field value {value!r}")


def _nanoseconds(timestamp: datetime | int) -> int:
    if isinstance(timestamp, int):
        return timestamp
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return (timestamp - _EPOCH) // timedelta(microseconds=1) * 1000


def line_protocol(
    measurement: str,
    tags: Mapping[str, str],
    fields: Mapping[str, Any],
    timestamp: datetime | int,
) -> str:
    """Encode a point in InfluxDB line protocol with tags sorted by key."""
    if not fields:
        raise ValueError("point needs at least one field")
    head = _escape(measurement, ", ")
    for key in sorted(tags):
        head += f",{_escape(key, ',= ')}={_escape(tags[key], ',= ')}"
    body = ",".join(f"{_escape(key, ',= ')}={_field_value(val)}" for key, val in fields.items())
    return f"{head} {body} {_nanoseconds(timestamp)}"


class Influx:
    """Batched InfluxDB v2 writer."""

    def __init__(
        self,
        url: str,
        database: str,
        measurement: str,
        org: str = "",
        token: str = "",
        user: str = "",
        password: str = "",
        batch_size: int = 5000,
        flush_interval: float = 1.0,
        session: Any = None,
    ) -> None:
        if not database:
            raise ValueError("influx: missing database")
        if not measurement:
            raise ValueError("influx: missing measurement")
        # InfluxDB v1 compatibility
        if not token and user:
            token = f"{user}:{password}"
        self.url = url
        self.database = database
        self.measurement = measurement
        self.org = org
        self.token = token
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self._owns_session = session is None
        self._session = session if session is not None else requests.Session()
        self._buffer: list[str] = []
        self._lock = threading.Lock()
        self._last_flush = time.monotonic()

    def write(self, snip: QuerySnip) -> None:
        """Queue a snip for writing, flushing when a batch is due."""
        line = line_protocol(
            self.measurement,
            {"device": snip.device, "type": snip.measurement},
            {"value": float(snip.value)},
            datetime.now(timezone.utc),
        )
        with self._lock:
            self._buffer.append(line)
            due = (
                len(self._buffer) >= self.batch_size
                or time.monotonic() - self._last_flush >= self.flush_interval
            )
        if due:
            self._flush()

    def _flush(self) -> None:
        with self._lock:
            lines, self._buffer = self._buffer, []
            self._last_flush = time.monotonic()
        if not lines:
            return
        headers = {"Content-Type": "text/plain; charset=utf-8"}
        if self.token:
            headers["Authorization"] = f"Token {self.token}"
        try:
            response = self._session.post(
                f"{self.url.rstrip('/')}/api/v2/write",
                params={"org": self.org, "bucket": self.database, "precision": "ns"},
                headers=headers,
                data="\n".join(lines).encode("utf-8"),
                timeout=10,
            )
        except requests.RequestException as err:
            log.error("influxdb error: %s", err)
            return
        if response.status_code >= 300:
            log.error("influxdb error: %s %s", response.status_code, response.text)

    def run(self, snips: Iterable[QuerySnip]) -> None:
        """Write every snip, then flush and close."""
        try:
            for snip in snips:
                self.write(snip)
        finally:
            self.close()

    def close(self) -> None:
        """Flush pending points and release the connection."""
        self._flush()
        if self._owns_session:
            self._session.close()