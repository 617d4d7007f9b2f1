"""
Randomised keep-alive for the dashboard session.

Inside the operating window the next tick is scheduled uniformly between
HEARTBEAT_MIN_MIN and HEARTBEAT_MAX_MIN minutes away, plus up to
HEARTBEAT_JITTER_MAX_S seconds of jitter. Outside the window the next check
is pushed to when the window opens, and nothing is ticked.

Each tick is a one-shot job on a `schedule.Scheduler` that re-arms itself
with a fresh delay, because the library's fixed intervals cannot express a
random cadence.
"""

import logging
import random
from datetime import datetime
from typing import Any, Callable, Optional

import schedule

from approver_bot.config import HEARTBEAT_JITTER_MAX_S, HEARTBEAT_MAX_MIN, HEARTBEAT_MIN_MIN
from approver_bot.utils import OperatingWindow, utc_now

logger = logging.getLogger('approver_bot.heartbeat')


class HeartbeatScheduler:

    def __init__(self, tick: Callable[[], Any], window: OperatingWindow,
                 min_minutes: int = HEARTBEAT_MIN_MIN,
                 max_minutes: int = HEARTBEAT_MAX_MIN,
                 jitter_max_s: int = HEARTBEAT_JITTER_MAX_S,
                 scheduler: Optional[schedule.Scheduler] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = utc_now):
        if min_minutes > max_minutes:
            raise ValueError(f"Heartbeat min ({min_minutes}) exceeds max ({max_minutes})")
        self.tick = tick
        self.window = window
        self.min_minutes = min_minutes
        self.max_minutes = max_minutes
        self.jitter_max_s = jitter_max_s
        self.scheduler = scheduler if scheduler is not None else schedule.default_scheduler
        self.rng = rng if rng is not None else random.Random()
        self._clock = clock

        self._job: Optional[schedule.Job] = None
        self._running = False
        self.ticks = 0
        self.last_tick_at: Optional[datetime] = None

    def describe(self) -> str:
        return f"{self.min_minutes}-{self.max_minutes} min (+0-{self.jitter_max_s}s jitter)"

    @property
    def running(self) -> bool:
        return self._running

    @property
    def next_run(self) -> Optional[datetime]:
        return self._job.next_run if self._job is not None else None

    def next_delay_seconds(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        if not self.window.contains(now):
            return max(1, self.window.seconds_until_open(now))
        base = self.rng.uniform(self.min_minutes * 60, self.max_minutes * 60)
        jitter = self.rng.uniform(0, self.jitter_max_s)
        return max(1, int(base + jitter))

    def start(self):
        if self._running:
            return
        self._running = True
        self._arm()
        logger.info(f"Heartbeat started: {self.describe()}, window {self.window.describe()}")

    def cancel(self):
        self._running = False
        if self._job is not None:
            self.scheduler.cancel_job(self._job)
            self._job = None
        logger.info("Heartbeat cancelled")

    def _arm(self):
        delay = self.next_delay_seconds()
        self._job = self.scheduler.every(delay).seconds.do(self._fire)
        logger.debug(f"Next heartbeat in {delay}s")

    def _fire(self):
        now = self._clock()
        if self.window.contains(now):
            self.ticks += 1
            self.last_tick_at = now
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Heartbeat tick failed: {e}")
        else:
            logger.debug("Outside operating window - heartbeat skipped")

        if self._running:
            self._arm()
        return schedule.CancelJob
