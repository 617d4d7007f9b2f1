"""
Heartbeat scheduling is driven through schedule.Scheduler.run_all(), so no
test ever waits on a real timer.
"""

from unittest.mock import MagicMock

import pytest
import schedule

from approver_bot.heartbeat import HeartbeatScheduler
from approver_bot.scheduler import SchedulerThread, register_daily_reset
from approver_bot.guard import ConcurrencyGuard
from approver_bot.utils import OperatingWindow

from conftest import NOON, WallClock


class FixedRandom:
    """uniform() always returns the low (or high) end of the range."""

    def __init__(self, high=False):
        self.high = high

    def uniform(self, a, b):
        return b if self.high else a


def _heartbeat(tick=None, window=None, rng=None, wall=None):
    return HeartbeatScheduler(
        tick or MagicMock(name="tick"),
        window or OperatingWindow.from_strings("00:00", "23:59"),
        min_minutes=7, max_minutes=12, jitter_max_s=20,
        scheduler=schedule.Scheduler(),
        rng=rng or FixedRandom(),
        clock=wall or WallClock(),
    )


def test_delay_inside_window_spans_cadence_plus_jitter():
    assert _heartbeat(rng=FixedRandom(high=False)).next_delay_seconds(NOON) == 7 * 60
    assert _heartbeat(rng=FixedRandom(high=True)).next_delay_seconds(NOON) == 12 * 60 + 20


def test_delay_outside_window_waits_for_opening():
    heartbeat = _heartbeat(window=OperatingWindow.from_strings("09:00", "17:00"))
    assert heartbeat.next_delay_seconds(NOON.replace(hour=20)) == 13 * 3600


def test_min_above_max_rejected():
    with pytest.raises(ValueError):
        HeartbeatScheduler(MagicMock(), OperatingWindow(0, 100), min_minutes=10, max_minutes=5)


def test_fire_ticks_and_rearms_once():
    tick = MagicMock(name="tick")
    heartbeat = _heartbeat(tick=tick)
    heartbeat.start()
    first_job = heartbeat.scheduler.jobs[0]

    heartbeat.scheduler.run_all()

    tick.assert_called_once()
    assert heartbeat.ticks == 1
    assert len(heartbeat.scheduler.jobs) == 1
    assert heartbeat.scheduler.jobs[0] is not first_job
    assert heartbeat.next_run is not None


def test_outside_window_fire_skips_tick_but_rearms():
    tick = MagicMock(name="tick")
    wall = WallClock(NOON.replace(hour=20))
    heartbeat = _heartbeat(tick=tick, window=OperatingWindow.from_strings("09:00", "17:00"), wall=wall)
    heartbeat.start()

    heartbeat.scheduler.run_all()

    tick.assert_not_called()
    assert len(heartbeat.scheduler.jobs) == 1


def test_tick_error_does_not_break_the_chain():
    heartbeat = _heartbeat(tick=MagicMock(side_effect=RuntimeError("page crashed")))
    heartbeat.start()

    heartbeat.scheduler.run_all()
    heartbeat.scheduler.run_all()

    assert heartbeat.ticks == 2
    assert len(heartbeat.scheduler.jobs) == 1


def test_cancel_stops_future_ticks():
    tick = MagicMock(name="tick")
    heartbeat = _heartbeat(tick=tick)
    heartbeat.start()
    heartbeat.cancel()

    heartbeat.scheduler.run_all()

    tick.assert_not_called()
    assert heartbeat.scheduler.jobs == []
    assert heartbeat.next_run is None


def test_start_is_idempotent():
    heartbeat = _heartbeat()
    heartbeat.start()
    heartbeat.start()
    assert len(heartbeat.scheduler.jobs) == 1


# -----------------------------------------------------------------------------
# Daily reset / scheduler thread
# -----------------------------------------------------------------------------
def test_daily_reset_job_resets_counter():
    scheduler = schedule.Scheduler()
    guard = ConcurrencyGuard(clock=WallClock())
    guard.record_success()

    job = register_daily_reset(guard, scheduler)
    assert scheduler.jobs == [job]

    scheduler.run_all()
    assert guard.daily_count == 0


def test_scheduler_thread_survives_job_errors():
    scheduler = MagicMock()
    scheduler.run_pending.side_effect = RuntimeError("job blew up")

    SchedulerThread(scheduler).run_once()

    scheduler.run_pending.assert_called_once()


def test_scheduler_thread_start_stop():
    runner = SchedulerThread(schedule.Scheduler(), interval_s=0.01)
    runner.start()
    assert runner.alive
    runner.stop()
    assert not runner.alive
