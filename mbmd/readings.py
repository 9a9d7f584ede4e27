"""Current and historic readings of meters."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .snips import ZERO_TIME, QuerySnip


@dataclass
class Readings:
    """Latest value of every measurement of a device."""

    timestamp: datetime = ZERO_TIME
    values: dict[str, float] = field(default_factory=dict)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def _fmt(self, key: str, digits: int) -> str:
        value = self.values.get(key)
        if value is None:
            return "0.0"
        return f"{value:.{digits}f}"

    def __str__(self) -> str:
        phases = " | ".join(
            f"L{p}: {self._fmt(f'VoltageL{p}', 0)}V {self._fmt(f'CurrentL{p}', 1)}A "
            f"{self._fmt(f'PowerL{p}', 0)}W {self._fmt(f'CosphiL{p}', 2)}cos"
            for p in (1, 2, 3)
        )
        return f"{phases} | {self._fmt('Frequency', 0)}Hz"

    def add(self, snip: QuerySnip) -> None:
        """Store the snip's value and take over its timestamp."""
        with self._lock:
            self.timestamp = snip.timestamp
            self.values[snip.measurement] = snip.value

    def clone(self) -> Readings:
        """Return an independent copy including the values."""
        with self._lock:
            return Readings(timestamp=self.timestamp, values=dict(self.values))


class MeterReadings:
    """Current and recent readings of a single device."""

    def __init__(self, max_age: timedelta) -> None:
        self.max_age = max_age
        self.current = Readings()
        self.historic: list[Readings] = []
        self._lock = threading.Lock()

    def add(self, snip: QuerySnip) -> None:
        with self._lock:
            self.current.add(snip)
            self.historic.append(self.current.clone())

    def average(self, since: datetime) -> Readings:
        """Average the historic readings not older than ``since`` per measurement."""
        totals: dict[str, tuple[int, float]] = {}
        with self._lock:
            for readings in self.historic:
                if readings.timestamp < since:
                    continue
                for key, value in readings.values.items():
                    count, total = totals.get(key, (0, 0.0))
                    totals[key] = (count + 1, total + value)
            return Readings(
                timestamp=self.current.timestamp,
                values={key: total / count for key, (count, total) in totals.items()},
            )

    def trim_before(self, timestamp: datetime) -> None:
        """Drop historic readings up to the first one newer than ``timestamp``."""
        with self._lock:
            for idx, readings in enumerate(self.historic):
                if readings.timestamp > timestamp:
                    self.historic = self.historic[idx:-1]
                    return

    def purge(self) -> None:
        with self._lock:
            self.current = Readings()
            self.historic = []

    def start_housekeeping(self) -> threading.Thread:
        """Start a background thread that trims readings older than ``max_age``."""

        def housekeeping() -> None:
            seconds = self.max_age.total_seconds()
            while True:
                time.sleep(seconds)
                self.trim_before(datetime.now(timezone.utc) - self.max_age)

        thread = threading.Thread(target=housekeeping, name="readings-housekeeping", daemon=True)
        thread.start()
        return thread