"""Cache of current and recent readings per device."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Iterable

from .readings import MeterReadings, Readings
from .snips import QuerySnip
from .status import Status

log = logging.getLogger(__name__)

# Measurements whose arrival is logged in verbose mode.
VERBOSE_LOGGABLE = frozenset(
    {
        "VoltageL1", "CurrentL1", "PowerL1", "CosphiL1",
        "VoltageL2", "CurrentL2", "PowerL2", "CosphiL2",
        "VoltageL3", "CurrentL3", "PowerL3", "CosphiL3",
        "Frequency",
    }
)

AVERAGE_WINDOW = timedelta(minutes=1)


class DeviceNotFoundError(LookupError):
    """The device has never delivered a reading."""


class DeviceUnavailableError(RuntimeError):
    """The device is known but currently offline."""


class Cache:
    """Caches and aggregates meter readings per device."""

    def __init__(
        self,
        max_age: timedelta,
        status: Status,
        verbose: bool = False,
        housekeeping: bool = True,
    ) -> None:
        self.max_age = max_age
        self.status = status
        self.verbose = verbose
        self._housekeeping = housekeeping
        self._readings: dict[str, MeterReadings] = {}
        self._lock = threading.Lock()

    def run(self, snips: Iterable[QuerySnip]) -> None:
        """Consume query snips into the cache until the source is exhausted."""
        for snip in snips:
            with self._lock:
                readings = self._readings.get(snip.device)
                if readings is None:
                    readings = MeterReadings(self.max_age)
                    if self._housekeeping:
                        readings.start_housekeeping()
                    self._readings[snip.device] = readings

            readings.add(snip)
            if self.verbose and snip.measurement in VERBOSE_LOGGABLE:
                log.info("device %s %s", snip.device, readings.current)

    def sorted_ids(self) -> list[str]:
        """Return the ids of all cached devices in sorted order."""
        with self._lock:
            return sorted(self._readings)

    def _online_readings(self, device: str) -> MeterReadings:
        readings = self._readings.get(device)
        if readings is None:
            raise DeviceNotFoundError(f"device {device} does not exist")
        if not self.status.online(device):
            raise DeviceUnavailableError(f"device {device} is not available")
        return readings

    def current(self, device: str) -> Readings:
        """Return a copy of the device's latest readings."""
        with self._lock:
            return self._online_readings(device).current.clone()

    def average(self, device: str) -> Readings:
        """Return the device's readings averaged over the last minute."""
        with self._lock:
            readings = self._online_readings(device)
            return readings.average(datetime.now(timezone.utc) - AVERAGE_WINDOW)

    def purge(self, device: str) -> None:
        """Remove accumulated data of the device."""
        with self._lock:
            readings = self._readings.get(device)
            if readings is None:
                raise DeviceNotFoundError(f"device with id {device} does not exist")
            readings.purge()