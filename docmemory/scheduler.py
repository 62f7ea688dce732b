"""
Cron-driven background runner for automatic pruning.

One daemon thread per scheduler: it sleeps on a stop event until the next
cron fire time, runs the job, and loops. Job errors are logged and never
stop the loop; a run exceeding its time budget is logged as a warning.
The cron expression is validated when the scheduler is created.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from croniter import croniter

from docmemory.errors import ValidationError

logger = logging.getLogger(__name__)


def validate_cron(expression: str) -> str:
    """Return the stripped expression or raise ValidationError."""
    if not isinstance(expression, str) or not expression.strip():
        raise ValidationError(f"Invalid cron expression: {expression!r}")
    expression = expression.strip()
    if not croniter.is_valid(expression):
        raise ValidationError(f"Invalid cron expression: {expression!r}")
    return expression


class PruningScheduler:
    """Runs ``job`` at every fire time of a cron expression."""

    def __init__(
        self,
        cron: str,
        job: Callable[[], Any],
        *,
        budget_seconds: Optional[float] = None,
        name: str = "docmemory-pruning",
    ):
        self.cron = validate_cron(cron)
        self._job = job
        self._budget = budget_seconds
        self._name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.run_count = 0
        self.last_run: Optional[str] = None
        self.last_duration: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        base = after or datetime.now(timezone.utc)
        return croniter(self.cron, base).get_next(datetime)

    def start(self) -> None:
        if self.running:
            raise RuntimeError("Scheduler already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
        self._thread.start()
        logger.info(f"Automatic pruning scheduled ({self.cron}), next run {self.next_run().isoformat()}")

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the loop to exit and wait for the thread."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Scheduler thread did not stop within {timeout}s")
        self._thread = None
        logger.info("Automatic pruning stopped")

    def run_once(self) -> Any:
        """Run the job now, with error isolation and budget accounting."""
        start = time.monotonic()
        result = None
        try:
            result = self._job()
        except Exception as e:
            logger.error(f"Scheduled pruning failed: {e}", exc_info=True)
        finally:
            elapsed = time.monotonic() - start
            self.run_count += 1
            self.last_run = datetime.now(timezone.utc).isoformat()
            self.last_duration = elapsed
            if self._budget is not None and elapsed > self._budget:
                logger.warning(
                    f"Scheduled pruning exceeded its budget: "
                    f"{elapsed:.2f}s > {self._budget:.2f}s"
                )
        return result

    def _next_fire(self, previous: Optional[datetime], now: datetime) -> datetime:
        """Fire time following ``previous``; ticks already missed are skipped."""
        if previous is None:
            return self.next_run(now)
        fire = self.next_run(previous)
        if fire <= now:
            fire = self.next_run(now)
        return fire

    def _loop(self) -> None:
        fire: Optional[datetime] = None
        while not self._stop.is_set():
            now = datetime.now(timezone.utc)
            fire = self._next_fire(fire, now)
            if self._stop.wait(max(0.0, (fire - now).total_seconds())):
                break
            self.run_once()
