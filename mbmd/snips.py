"""Messages passed between the query side and the consumers of results."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, TypeVar

# Seconds an offline device is left alone before it is queried again.
RETRY_TIMEOUT = 1.0

# Timestamp of a reading that has never been set.
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_T = TypeVar("_T")


@dataclass
class RuntimeInfo:
    """Request statistics and online state of a single device."""

    online: bool = False
    requests: int = 0
    errors: int = 0
    _last_failure: float = field(default=0.0, init=False, repr=False, compare=False)

    def available(self, online: bool) -> None:
        """Set the online state, remembering when the device went offline."""
        if not online:
            self._last_failure = time.time()
        self.online = online

    def is_queryable(self) -> tuple[bool, bool]:
        """Return whether the device may be queried and whether its offline timeout elapsed."""
        retry = self._last_failure + RETRY_TIMEOUT < time.time()
        return self.online or retry, (not self.online) and retry


@dataclass
class ControlSnip:
    """Status update for one device."""

    device: str
    status: RuntimeInfo


@dataclass(frozen=True)
class QuerySnip:
    """A single measurement result of one device."""

    device: str = ""
    measurement: str = ""
    value: float = 0.0
    timestamp: datetime = ZERO_TIME
    description: str = ""

    def __str__(self) -> str:
        return f"Dev: {self.device}, IEC: {self.measurement}, Value: {self.value:.3f}"

    def to_dict(self) -> dict[str, Any]:
        """Return the wire representation with the timestamp in unix milliseconds."""
        return {
            "Device": self.device,
            "Value": self.value,
            "IEC61850": self.measurement,
            "Description": self.description,
            "Timestamp": (self.timestamp - _EPOCH) // timedelta(milliseconds=1),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def _typed(items: Iterable[Any], kind: type[_T]) -> Iterator[_T]:
    for item in items:
        if not isinstance(item, kind):
            raise TypeError("runner: unexpected type")
        yield item


def snip_runner(run: Callable[[Iterator[QuerySnip]], Any]) -> Callable[[Iterable[Any]], Any]:
    """Adapt a consumer of query snips to a consumer of arbitrary items."""

    def adapter(items: Iterable[Any]) -> Any:
        return run(_typed(items, QuerySnip))

    return adapter


def control_runner(run: Callable[[Iterator[ControlSnip]], Any]) -> Callable[[Iterable[Any]], Any]:
    """Adapt a consumer of control snips to a consumer of arbitrary items."""

    def adapter(items: Iterable[Any]) -> Any:
        return run(_typed(items, ControlSnip))

    return adapter