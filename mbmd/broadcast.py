"""Hub that replicates every item of a source to many recipients."""

from __future__ import annotations

import queue
import threading
from typing import Any, Callable, Iterable, Iterator

_CLOSED = object()


class Broadcaster:
    """Replicates items from one source to every attached recipient."""

    def __init__(self, source: Iterable[Any]) -> None:
        self._source = source
        self._lock = threading.Lock()
        self._recipients: list[queue.Queue] = []
        self._runners: list[threading.Thread] = []
        self._done = threading.Event()

    def run(self) -> None:
        """Distribute the source until exhausted, then close all recipients."""
        for item in self._source:
            with self._lock:
                for recipient in self._recipients:
                    recipient.put(item)
        self._stop()

    def _stop(self) -> None:
        with self._lock:
            for recipient in self._recipients:
                recipient.put(_CLOSED)
            runners = list(self._runners)
        for runner in runners:
            runner.join()
        self._done.set()

    @staticmethod
    def _drain(recipient: queue.Queue) -> Iterator[Any]:
        while (item := recipient.get()) is not _CLOSED:
            yield item

    def attach(self) -> Iterator[Any]:
        """Attach a recipient and return an iterator over what it receives."""
        recipient: queue.Queue = queue.Queue()
        with self._lock:
            self._recipients.append(recipient)
        return self._drain(recipient)

    def attach_runner(self, runner: Callable[[Iterator[Any]], Any]) -> None:
        """Run ``runner`` in a thread on a newly attached recipient."""
        items = self.attach()
        thread = threading.Thread(target=runner, args=(items,), daemon=True)
        with self._lock:
            self._runners.append(thread)
        thread.start()

    def wait(self, timeout: float | None = None) -> bool:
        """Wait until broadcasting and all runners have finished."""
        return self._done.wait(timeout)