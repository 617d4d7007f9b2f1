"""
Background scheduling for the approver.

Jobs:
- Daily counter reset at 00:00 UTC
- Heartbeat (self-rearming, see heartbeat.py)

CRITICAL: The schedule library uses LOCAL machine time, not timezone-aware
times. The midnight reset is converted from UTC to local time when it is
registered.
"""

import logging
import threading
from typing import Optional

import schedule

from approver_bot.guard import ConcurrencyGuard
from approver_bot.utils import utc_to_local_time

logger = logging.getLogger('approver_bot.scheduler')


def register_daily_reset(guard: ConcurrencyGuard,
                         scheduler: Optional[schedule.Scheduler] = None) -> schedule.Job:
    """Reset the guard's daily counter at 00:00 UTC."""
    scheduler = scheduler if scheduler is not None else schedule.default_scheduler
    reset_time = utc_to_local_time(0, 0)
    logger.info(f"Daily reset: 00:00 UTC = {reset_time} local")
    return scheduler.every().day.at(reset_time).do(guard.reset_daily)


def log_next_runs(scheduler: Optional[schedule.Scheduler] = None):
    """Log the next scheduled run times"""
    scheduler = scheduler if scheduler is not None else schedule.default_scheduler
    for job in scheduler.get_jobs():
        logger.info(f"  - {job} (next: {job.next_run})")


class SchedulerThread:
    """
    Runs schedule.run_pending() on a daemon thread until stopped.

    Usage:
        runner = SchedulerThread()
        runner.start()
        ...
        runner.stop()
    """

    def __init__(self, scheduler: Optional[schedule.Scheduler] = None, interval_s: float = 1.0):
        self.scheduler = scheduler if scheduler is not None else schedule.default_scheduler
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.alive:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler thread started")

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Scheduler thread stopped")

    def run_once(self):
        try:
            self.scheduler.run_pending()
        except Exception as e:
            logger.error(f"Scheduler error: {e}")

    def _loop(self):
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval_s)
