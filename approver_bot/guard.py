"""
Concurrency / quota / freshness guard.

Owns the only mutable state the pipeline shares across requests: the busy
flag and the daily success counter. Callers never touch either directly, so
swapping the in-process lock for a distributed one only changes this file.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

from approver_bot.config import MAX_PER_DAY, MAX_SIGNAL_AGE_S
from approver_bot.utils import utc_now

logger = logging.getLogger('approver_bot.guard')


class ConcurrencyGuard:
    """
    Single-flight mutex + daily quota + signal freshness gate.

    The busy flag is a non-blocking lock: a second caller is told "busy"
    immediately instead of waiting, because a queued approval would run
    against a stale trade.
    """

    def __init__(self, max_per_day: int = MAX_PER_DAY,
                 max_signal_age_s: float = MAX_SIGNAL_AGE_S,
                 clock: Callable[[], datetime] = utc_now):
        self.max_per_day = max_per_day
        self.max_signal_age_s = max_signal_age_s
        self._clock = clock

        self._busy = threading.Lock()
        self._counter_lock = threading.Lock()
        self._daily_count = 0
        self._last_reset: Optional[datetime] = None
        self.total_successes = 0
        self.total_rejections = 0

    # -------------------------------------------------------------------------
    # Busy flag
    # -------------------------------------------------------------------------
    def try_acquire(self) -> bool:
        """Atomically set the busy flag. Returns False if it was already set."""
        acquired = self._busy.acquire(blocking=False)
        if not acquired:
            self.total_rejections += 1
            logger.info("Guard busy - rejecting")
        return acquired

    def release(self):
        try:
            self._busy.release()
        except RuntimeError:
            logger.warning("Guard released while not held")

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    @contextmanager
    def hold(self) -> Iterator[bool]:
        """
        Context manager form of try_acquire/release.

        Yields whether the flag was acquired; release only happens if it was.
        """
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    # -------------------------------------------------------------------------
    # Freshness
    # -------------------------------------------------------------------------
    def signal_age(self, trigger_ts: datetime) -> float:
        return (self._clock() - trigger_ts).total_seconds()

    def is_fresh(self, trigger_ts: datetime) -> bool:
        """True if the trigger is still within the freshness budget."""
        age = self.signal_age(trigger_ts)
        if age > self.max_signal_age_s:
            logger.warning(f"Signal too old: {age:.1f}s > {self.max_signal_age_s}s")
            return False
        return True

    # -------------------------------------------------------------------------
    # Daily counter
    # -------------------------------------------------------------------------
    @property
    def daily_count(self) -> int:
        return self._daily_count

    def daily_limit_reached(self) -> bool:
        return self._daily_count >= self.max_per_day

    def record_success(self) -> int:
        """Count one successful action. Returns the new daily count."""
        with self._counter_lock:
            self._daily_count += 1
            self.total_successes += 1
            count = self._daily_count
        logger.info(f"Daily approvals: {count}/{self.max_per_day}")
        return count

    def reset_daily(self):
        """Reset the daily counter (scheduled at UTC midnight)."""
        with self._counter_lock:
            previous = self._daily_count
            self._daily_count = 0
            self._last_reset = self._clock()
        logger.info(f"Daily counter reset (was {previous})")

    def status(self) -> dict:
        return {
            'busy': self.busy,
            'daily_count': self._daily_count,
            'daily_limit': self.max_per_day,
            'max_signal_age_s': self.max_signal_age_s,
            'last_reset': self._last_reset.isoformat() if self._last_reset else None,
            'total_successes': self.total_successes,
            'total_rejections': self.total_rejections,
        }
