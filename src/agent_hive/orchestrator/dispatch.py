"""Fire-and-forget dispatch of units of work, with optional delay."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

Unit = Callable[..., object]


class Dispatcher(Protocol):
    """Runs a unit of work asynchronously after an optional delay.

    Units must be idempotent: they may run more than once.
    """

    def submit(self, fn: Unit, *args: object, delay_seconds: float = 0.0) -> None:
        """Schedule ``fn(*args)``."""

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop accepting work and release resources."""


def _run_unit(fn: Unit, args: tuple[object, ...]) -> None:
    try:
        fn(*args)
    except Exception:
        logger.exception("Dispatched unit %s failed", getattr(fn, "__qualname__", fn))


class ThreadPoolDispatcher:
    """Dispatcher backed by a thread pool; delayed units wait on timers."""

    def __init__(self, max_workers: int = 4, *, thread_name_prefix: str = "agent-hive") -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=thread_name_prefix,
        )
        self._timers: set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, fn: Unit, *args: object, delay_seconds: float = 0.0) -> None:
        with self._lock:
            if self._closed:
                logger.warning("Dispatcher closed, dropping unit %s", fn)
                return
            if delay_seconds > 0:
                timer = threading.Timer(delay_seconds, self._fire, args=(fn, args))
                timer.daemon = True
                self._timers.add(timer)
                timer.start()
                return
            self._executor.submit(_run_unit, fn, args)

    def _fire(self, fn: Unit, args: tuple[object, ...]) -> None:
        with self._lock:
            self._timers = {timer for timer in self._timers if timer.is_alive()}
            if self._closed:
                return
            self._executor.submit(_run_unit, fn, args)

    def shutdown(self, *, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
        self._executor.shutdown(wait=wait)


class InlineDispatcher:
    """Runs immediate units synchronously in the caller's thread.

    Delayed units are kept in ``delayed`` rather than run; the periodic
    loops pick the affected tasks up once they are due.
    """

    def __init__(self) -> None:
        self.delayed: list[tuple[Unit, tuple[object, ...], float]] = []

    def submit(self, fn: Unit, *args: object, delay_seconds: float = 0.0) -> None:
        if delay_seconds > 0:
            self.delayed.append((fn, args, delay_seconds))
            return
        _run_unit(fn, args)

    def shutdown(self, *, wait: bool = True) -> None:
        self.delayed.clear()


@dataclass(slots=True)
class PendingUnit:
    fn: Unit
    args: tuple[object, ...]
    delay_seconds: float


class DeferredDispatcher:
    """Collects units and runs them only when ``drain`` is called."""

    def __init__(self) -> None:
        self._queue: deque[PendingUnit] = deque()
        self.delayed: list[PendingUnit] = []

    @property
    def pending(self) -> int:
        return len(self._queue)

    def submit(self, fn: Unit, *args: object, delay_seconds: float = 0.0) -> None:
        unit = PendingUnit(fn=fn, args=args, delay_seconds=delay_seconds)
        if delay_seconds > 0:
            self.delayed.append(unit)
            return
        self._queue.append(unit)

    def drain(self, *, include_delayed: bool = False, max_units: int | None = None) -> int:
        """Run queued units FIFO, including units they submit. Returns units run."""

        if include_delayed:
            self._queue.extend(self.delayed)
            self.delayed = []
        ran = 0
        while self._queue and (max_units is None or ran < max_units):
            unit = self._queue.popleft()
            _run_unit(unit.fn, unit.args)
            ran += 1
        return ran

    def shutdown(self, *, wait: bool = True) -> None:
        self._queue.clear()
        self.delayed.clear()
