"""Background thread driving the periodic escalation sweep."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable

from docflow.engine.workflow.escalation import SweepReport

logger = logging.getLogger(__name__)


class EscalationRunner:
    """Call ``sweep`` every ``interval_seconds`` on a daemon thread until stopped.

    A failing sweep is logged and the loop keeps going; the next run picks
    the same overdue tasks up again.
    """

    def __init__(self, sweep: Callable[[], SweepReport], *, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._sweep = sweep
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"escalation-sweep-{uuid.uuid4().hex[:8]}",
            daemon=True,
        )
        self._thread.start()
        logger.info("Escalation runner started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Escalation runner stopped", extra={"runs": self.runs})

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self._sweep()
            except Exception:
                logger.exception("Escalation sweep failed")
            finally:
                self.runs += 1
            self._stop.wait(self._interval)
