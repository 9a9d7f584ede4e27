"""Daemon and device status collected from control snips."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

import psutil

from .apijson import _rfc3339
from .snips import ControlSnip


@dataclass(frozen=True)
class DeviceDescriptor:
    """Static description of a device."""

    type: str = ""
    manufacturer: str = ""
    model: str = ""
    sub_device: int = 0


class DeviceInfo:
    """Device descriptors looked up by device id."""

    def __init__(self, descriptors: Mapping[str, DeviceDescriptor] | None = None) -> None:
        self._descriptors = dict(descriptors or {})

    def device_descriptor_by_id(self, device_id: str) -> DeviceDescriptor:
        """Return the descriptor of the device, or an empty one if unknown."""
        return self._descriptors.get(device_id, DeviceDescriptor())


@dataclass
class MemoryStatus:
    alloc: int = 0
    heap_alloc: int = 0


@dataclass
class ModbusStatus:
    requests: int = 0
    requests_per_minute: float = 0.0
    errors: int = 0
    errors_per_minute: float = 0.0


@dataclass
class DeviceStatus:
    device: str
    type: str
    online: bool
    modbus: ModbusStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "Device": self.device,
            "Type": self.type,
            "Online": self.online,
            "Requests": self.modbus.requests,
            "RequestsPerMinute": self.modbus.requests_per_minute,
            "Errors": self.modbus.errors,
            "ErrorsPerMinute": self.modbus.errors_per_minute,
        }


def _memory_status() -> MemoryStatus:
    info = psutil.Process().memory_info()
    return MemoryStatus(alloc=info.rss, heap_alloc=getattr(info, "data", info.rss))


class Status:
    """Daemon and device status; refreshed whenever it is exported."""

    def __init__(self, device_info: DeviceInfo) -> None:
        self._device_info = device_info
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self.start_time = datetime.now(timezone.utc)
        self.up_time = 1.0
        self.threads = threading.active_count()
        self.memory = _memory_status()
        self.meters: list[DeviceStatus] = []
        self._meter_map: dict[str, DeviceStatus] = {}

    def record(self, snip: ControlSnip) -> None:
        """Update the status of the device the snip refers to."""
        with self._lock:
            minutes = self.up_time / 60
            info = snip.status
            modbus = ModbusStatus(
                requests=info.requests,
                requests_per_minute=info.requests / minutes,
                errors=info.errors,
                errors_per_minute=info.errors / minutes,
            )
            descriptor = self._device_info.device_descriptor_by_id(snip.device)
            self._meter_map[snip.device] = DeviceStatus(
                device=snip.device,
                type=descriptor.manufacturer,
                online=info.online,
                modbus=modbus,
            )

    def consume(self, control: Iterable[ControlSnip]) -> None:
        """Record every control snip until the source is exhausted."""
        for snip in control:
            self.record(snip)

    def online(self, device: str) -> bool:
        """Return the device's online state, False if it is unknown."""
        with self._lock:
            status = self._meter_map.get(device)
            return status.online if status else False

    def _update(self) -> None:
        self.memory = _memory_status()
        self.threads = threading.active_count()
        self.up_time = time.monotonic() - self._started
        self.meters = [self._meter_map[key] for key in sorted(self._meter_map)]

    def to_dict(self) -> dict[str, Any]:
        """Refresh and export the status."""
        with self._lock:
            self._update()
            return {
                "StartTime": _rfc3339(self.start_time),
                "UpTime": self.up_time,
                "Goroutines": self.threads,
                "Memory": {"Alloc": self.memory.alloc, "HeapAlloc": self.memory.heap_alloc},
                "Meters": [meter.to_dict() for meter in self.meters],
            }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())