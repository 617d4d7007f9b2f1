import threading
from datetime import timedelta

from approver_bot.guard import ConcurrencyGuard

from conftest import NOON, WallClock


def _guard(**kwargs):
    kwargs.setdefault("clock", WallClock())
    return ConcurrencyGuard(**kwargs)


def test_busy_flag_is_exclusive():
    guard = _guard()

    assert guard.try_acquire()
    assert guard.busy
    assert not guard.try_acquire()
    assert guard.total_rejections == 1

    guard.release()
    assert not guard.busy
    assert guard.try_acquire()
    guard.release()


def test_only_one_of_many_threads_acquires():
    guard = _guard()
    start = threading.Barrier(8)
    results = []

    def contender():
        start.wait()
        results.append(guard.try_acquire())

    threads = [threading.Thread(target=contender) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    guard.release()


def test_hold_releases_only_what_it_acquired():
    guard = _guard()
    with guard.hold() as acquired:
        assert acquired
        with guard.hold() as nested:
            assert not nested
        assert guard.busy
    assert not guard.busy


def test_hold_releases_on_error():
    guard = _guard()
    try:
        with guard.hold():
            raise ValueError("boom")
    except ValueError:
        pass
    assert not guard.busy


def test_freshness_boundary():
    guard = _guard(max_signal_age_s=90)
    assert guard.is_fresh(NOON - timedelta(seconds=90))
    assert not guard.is_fresh(NOON - timedelta(seconds=90, milliseconds=1))
    assert guard.signal_age(NOON - timedelta(seconds=30)) == 30


def test_daily_counter_and_reset():
    guard = _guard(max_per_day=2)

    assert guard.record_success() == 1
    assert not guard.daily_limit_reached()
    assert guard.record_success() == 2
    assert guard.daily_limit_reached()

    guard.reset_daily()
    assert guard.daily_count == 0
    assert not guard.daily_limit_reached()
    assert guard.total_successes == 2

    status = guard.status()
    assert status['daily_count'] == 0
    assert status['last_reset'] == NOON.isoformat()
