"""Long-lived periodic loops that keep the orchestrator ticking."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from agent_hive.config import SupervisorSettings
from agent_hive.orchestrator.engine import Orchestrator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PeriodicLoop:
    name: str
    interval_seconds: float
    tick: Callable[[], object]


class Supervisor:
    """Owns the heartbeat, queue, optimizer and deadline loops.

    Every loop waits on one shared stop event, so ``stop`` ends them all
    after their current tick.
    """

    def __init__(self, orchestrator: Orchestrator, settings: SupervisorSettings) -> None:
        self.orchestrator = orchestrator
        self.settings = settings
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self.loops = [
            PeriodicLoop(
                "heartbeat-monitor",
                settings.heartbeat_interval_seconds,
                orchestrator.registry.monitor_heartbeats,
            ),
            PeriodicLoop(
                "queue-processor",
                settings.queue_interval_seconds,
                lambda: orchestrator.process_queue(batch_size=settings.batch_size),
            ),
            PeriodicLoop("optimizer", settings.optimizer_interval_seconds, orchestrator.optimize),
            PeriodicLoop(
                "deadline-checker",
                settings.deadline_interval_seconds,
                self.check_deadlines,
            ),
        ]

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def check_deadlines(self) -> None:
        queue = self.orchestrator.queue
        timeouts = queue.check_deadlines()
        dead_lettered = queue.move_failed_to_dead_letter()
        flagged = queue.flag_dead_letter_dependents()
        removed = queue.cleanup_old_tasks()
        handled = sum(1 for result in timeouts if result.handled)
        if handled or dead_lettered or flagged or removed:
            logger.info(
                "Deadline sweep: %d timed out, %d dead-lettered, %d blocked, %d purged",
                handled,
                len(dead_lettered),
                len(flagged),
                removed,
            )

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self.orchestrator.start()
        self._threads = [
            threading.Thread(
                target=self._run_loop,
                args=(loop,),
                name=f"agent-hive-{loop.name}",
                daemon=True,
            )
            for loop in self.loops
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Supervisor started %d loop(s)", len(self._threads))

    def stop(self, *, timeout: float | None = 10.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self.orchestrator.dispatcher.shutdown(wait=True)
        logger.info("Supervisor stopped")

    def run_forever(self) -> None:
        """Run loops until SIGINT/SIGTERM or ``stop`` from another thread."""

        with self._signal_handlers():
            self.start()
            try:
                while not self._stop.wait(timeout=1.0):
                    pass
            finally:
                self.stop()

    def _run_loop(self, loop: PeriodicLoop) -> None:
        while not self._stop.is_set():
            try:
                loop.tick()
            except Exception:
                logger.exception("Loop %s failed", loop.name)
            self._stop.wait(timeout=loop.interval_seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping supervisor", name)
            self._stop.set()

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Handlers can only be installed from the main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
