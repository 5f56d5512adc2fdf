"""
Delayed job scheduler for automatic workflow advances.

Jobs are keyed by order id so the engine can cancel a pending advance when
the order reaches a terminal state.  Scheduling a new job for a key replaces
the previous one.  Jobs live in process memory only: a restart drops them
and the order stays parked at its last committed status until something
else advances it.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Protocol

logger = logging.getLogger(__name__)


class Scheduler(Protocol):
    def schedule(self, key: str, delay: float, callback: Callable[[], None]) -> None: ...

    def cancel(self, key: str) -> bool: ...

    def pending(self, key: str) -> bool: ...


class TimerScheduler:
    """Runs each job on a `threading.Timer`."""

    def __init__(self) -> None:
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def schedule(self, key: str, delay: float, callback: Callable[[], None]) -> None:
        timer = threading.Timer(delay, self._run, args=(key, callback))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            self._timers[key] = timer
        logger.info("Scheduled job for %s in %.1fs", key, delay)
        timer.start()

    def _run(self, key: str, callback: Callable[[], None]) -> None:
        with self._lock:
            if self._timers.get(key) is not threading.current_thread():
                # Cancelled or replaced after the timer fired.
                logger.info("Dropping stale scheduled job for %s", key)
                return
            # Release the slot first so the callback may schedule a follow-up job.
            del self._timers[key]
        try:
            callback()
        except Exception:
            logger.exception("Scheduled job for %s failed", key)

    def cancel(self, key: str) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        logger.info("Cancelled scheduled job for %s", key)
        return True

    def pending(self, key: str) -> bool:
        with self._lock:
            return key in self._timers
