import threading
from datetime import timedelta
from unittest.mock import MagicMock

from approver_bot.auth import AuthState, LoginFailedError, LoginRequiredError
from approver_bot.models import ApprovalReason, ExecutionMode, SessionStatus, Signal, VerificationResult
from approver_bot.utils import OperatingWindow

from conftest import LOGIN, NOON

VERIFIED = VerificationResult(success=True, signal=Signal.TOAST, elapsed_ms=120)
NOT_VERIFIED = VerificationResult(success=False, signal=Signal.TIMEOUT, elapsed_ms=6000)


def _clickable(stages, targets=None, verify=VERIFIED):
    target = MagicMock(name="target")
    stages['locator'].find_targets.return_value = targets if targets is not None else [target]
    stages['executor'].click.return_value = "geometry"
    stages['confirmation'].handle.return_value = False
    stages['verifier'].verify.return_value = verify
    return target


# -----------------------------------------------------------------------------
# Scenarios
# -----------------------------------------------------------------------------
def test_fast_mode_approves_present_target(make_pipeline, stages, guard):
    _clickable(stages)
    pipeline = make_pipeline()

    outcome = pipeline.submit_approval(NOON, ExecutionMode.FAST)

    assert outcome.ok
    assert outcome.reason == ApprovalReason.APPROVED_FAST
    assert outcome.signal in {Signal.TOAST, Signal.REMOVED, Signal.DISABLED, Signal.TEXT_CHANGED, Signal.NETWORK}
    assert outcome.method == "geometry"
    assert guard.daily_count == 1
    assert not guard.busy


def test_fast_mode_on_login_route_makes_no_clicks(make_pipeline, stages, session):
    _clickable(stages)
    session.page.url = LOGIN
    pipeline = make_pipeline()

    outcome = pipeline.submit_approval(NOON, "fast")

    assert outcome.to_dict()["ok"] is False
    assert outcome.reason == ApprovalReason.LOGIN_REQUIRED
    assert pipeline.click_attempts == 0
    stages['executor'].click.assert_not_called()


def test_thorough_mode_finds_target_after_four_reloads(make_pipeline, stages, session):
    target = _clickable(stages)
    page = session.page
    stages['locator'].find_targets.side_effect = (
        lambda p: [target] if page.reload.call_count >= 4 else []
    )
    pipeline = make_pipeline()

    outcome = pipeline.submit_approval(NOON, ExecutionMode.THOROUGH)

    assert outcome.ok
    assert outcome.reason == ApprovalReason.APPROVED_AFTER_REFRESH
    assert page.reload.call_count == 4


def test_thorough_mode_first_cycle_is_direct(make_pipeline, stages):
    _clickable(stages)
    outcome = make_pipeline().submit_approval(NOON, ExecutionMode.THOROUGH)
    assert outcome.reason == ApprovalReason.APPROVED_DIRECT


def test_outside_window_rejected_without_browser(make_pipeline, stages, session, wall):
    _clickable(stages)
    wall.now = NOON.replace(hour=20)
    pipeline = make_pipeline(window=OperatingWindow.from_strings("09:00", "17:00"))

    outcome = pipeline.submit_approval(wall.now, ExecutionMode.FAST)

    assert outcome.reason == ApprovalReason.OUTSIDE_WINDOW
    assert session.runs == 0


def test_restored_session_reports_ok_without_login(make_pipeline, session):
    from approver_bot.auth import AuthController

    auth = AuthController(email="me@example.com", password="secret")
    auth.login = MagicMock()
    session.page.inner_text.return_value = "Dashboard\n1-Click Trade\nPortfolio"
    pipeline = make_pipeline(auth=auth)

    assert pipeline.get_session_status() == SessionStatus.OK
    auth.login.assert_not_called()


# -----------------------------------------------------------------------------
# Guard interaction
# -----------------------------------------------------------------------------
def test_stale_trigger_never_touches_session(make_pipeline, stages, session):
    _clickable(stages)
    pipeline = make_pipeline()

    outcome = pipeline.submit_approval(NOON - timedelta(seconds=91), ExecutionMode.THOROUGH)

    assert outcome.reason == ApprovalReason.SIGNAL_TOO_OLD
    assert session.runs == 0
    stages['auth'].require_login.assert_not_called()


def test_trigger_that_expires_during_login_is_rejected(make_pipeline, stages, wall):
    _clickable(stages)

    def slow_login(page):
        wall.advance(120)
        return AuthState.LOGGED_IN

    stages['auth'].require_login.side_effect = slow_login
    pipeline = make_pipeline()

    outcome = pipeline.submit_approval(NOON, ExecutionMode.THOROUGH)

    assert outcome.reason == ApprovalReason.SIGNAL_TOO_OLD
    stages['executor'].click.assert_not_called()


def test_busy_guard_rejects_second_request(make_pipeline, stages, guard, session):
    _clickable(stages)
    pipeline = make_pipeline()
    assert guard.try_acquire()

    outcome = pipeline.submit_approval(NOON, ExecutionMode.FAST)

    assert outcome.reason == ApprovalReason.BUSY
    assert session.runs == 0
    guard.release()


def test_concurrent_second_request_is_busy(make_pipeline, stages, session, guard):
    _clickable(stages)
    pipeline = make_pipeline()
    entered = threading.Event()
    proceed = threading.Event()
    inline_run = session.run

    def blocking_run(fn):
        entered.set()
        proceed.wait(5)
        return inline_run(fn)

    session.run = blocking_run
    results = {}
    first = threading.Thread(target=lambda: results.update(first=pipeline.submit_approval(NOON)))
    first.start()
    assert entered.wait(5)

    second = pipeline.submit_approval(NOON)
    proceed.set()
    first.join(5)

    assert second.reason == ApprovalReason.BUSY
    assert results["first"].ok
    assert session.runs == 1
    assert guard.daily_count == 1
    assert not guard.busy


def test_daily_limit_and_reset(make_pipeline, stages, guard):
    _clickable(stages)
    guard.max_per_day = 1
    pipeline = make_pipeline()

    assert pipeline.submit_approval(NOON).ok
    assert pipeline.submit_approval(NOON).reason == ApprovalReason.DAILY_LIMIT

    guard.reset_daily()
    assert pipeline.submit_approval(NOON).ok


def test_daily_limit_rechecked_once_guard_is_held(make_pipeline, stages, guard):
    _clickable(stages)
    guard.max_per_day = 1
    pipeline = make_pipeline()
    acquire = guard.try_acquire
    rival = []

    def acquire_after_rival_finishes():
        # A rival request runs to completion between the limit check and acquire
        if not rival:
            rival.append(None)
            rival[0] = pipeline.submit_approval(NOON)
        return acquire()

    guard.try_acquire = acquire_after_rival_finishes

    outcome = pipeline.submit_approval(NOON)

    assert rival[0].ok
    assert outcome.reason == ApprovalReason.DAILY_LIMIT
    assert guard.daily_count == 1
    assert not guard.busy


def test_unexpected_error_becomes_transport_error(make_pipeline, stages, session, guard):
    _clickable(stages)
    session.run = MagicMock(side_effect=RuntimeError("browser crashed"))
    pipeline = make_pipeline()

    outcome = pipeline.submit_approval(NOON)

    assert outcome.reason == ApprovalReason.TRANSPORT_ERROR
    assert "browser crashed" in outcome.message
    assert not guard.busy
    assert guard.daily_count == 0


# -----------------------------------------------------------------------------
# Attempt details
# -----------------------------------------------------------------------------
def test_no_target_after_scroll_scan(make_pipeline, stages, session):
    pipeline = make_pipeline()

    outcome = pipeline.submit_approval(NOON, ExecutionMode.FAST)

    assert outcome.reason == ApprovalReason.NO_TARGET_FOUND
    # initial search plus three scroll positions
    assert stages['locator'].find_targets.call_count == 4
    assert session.page.mouse.wheel.call_count == 3


def test_alternate_candidate_used_when_first_does_not_verify(make_pipeline, stages):
    first, second = MagicMock(name="first"), MagicMock(name="second")
    _clickable(stages, targets=[first, second])
    stages['verifier'].verify.side_effect = [NOT_VERIFIED, VERIFIED]
    pipeline = make_pipeline()

    outcome = pipeline.submit_approval(NOON)

    assert outcome.ok
    assert outcome.details['candidate'] == 1
    assert stages['confirmation'].handle.call_args.kwargs['primary'] is second


def test_verify_timeout_reported(make_pipeline, stages, guard):
    _clickable(stages, verify=NOT_VERIFIED)

    outcome = make_pipeline().submit_approval(NOON)

    assert outcome.reason == ApprovalReason.VERIFY_TIMEOUT
    assert guard.daily_count == 0


def test_click_failure_cancels_pending_verification(make_pipeline, stages):
    _clickable(stages)
    stages['executor'].click.return_value = None

    outcome = make_pipeline().submit_approval(NOON)

    assert outcome.reason == ApprovalReason.CLICK_FAILED
    stages['verifier'].cancel.assert_called_once()
    stages['verifier'].verify.assert_not_called()


def test_thorough_login_required_and_failed(make_pipeline, stages):
    pipeline = make_pipeline()

    stages['auth'].require_login.side_effect = LoginRequiredError("no credentials")
    assert pipeline.submit_approval(NOON, ExecutionMode.THOROUGH).reason == ApprovalReason.LOGIN_REQUIRED

    stages['auth'].require_login.side_effect = LoginFailedError("bad password")
    assert pipeline.submit_approval(NOON, ExecutionMode.THOROUGH).reason == ApprovalReason.LOGIN_FAILED


def test_bell_path_success(make_pipeline, stages, session):
    target = _clickable(stages)
    stages['locator'].open_notifications.return_value = True
    # Only the notifications panel reveals the target
    stages['locator'].find_targets.side_effect = (
        lambda p: [target] if stages['locator'].open_notifications.called else []
    )

    outcome = make_pipeline().submit_approval(NOON, ExecutionMode.THOROUGH)

    assert outcome.reason == ApprovalReason.APPROVED_VIA_BELL
    session.page.reload.assert_not_called()


# -----------------------------------------------------------------------------
# Status / health / heartbeat
# -----------------------------------------------------------------------------
def test_session_status_fails_while_busy(make_pipeline, guard, session):
    pipeline = make_pipeline()
    guard.try_acquire()
    try:
        assert pipeline.get_session_status() == SessionStatus.FAIL
    finally:
        guard.release()
    assert session.runs == 0


def test_session_status_login_required(make_pipeline, stages):
    stages['auth'].ensure_logged_in.return_value = AuthState.LOGGED_OUT
    assert make_pipeline().get_session_status() == SessionStatus.LOGIN_REQUIRED


def test_heartbeat_skipped_while_busy(make_pipeline, guard, session):
    pipeline = make_pipeline()
    guard.try_acquire()
    try:
        assert pipeline.heartbeat() is False
    finally:
        guard.release()
    assert session.runs == 0


def test_heartbeat_revisits_dashboard(make_pipeline, stages, session):
    pipeline = make_pipeline()

    assert pipeline.heartbeat() is True

    session.page.goto.assert_called_once()
    stages['auth'].ensure_logged_in.assert_called_once_with(session.page, navigate=False)
    stages['overlays'].suppress.assert_called_once_with(session.page)


def test_health_summary(make_pipeline, stages, guard):
    _clickable(stages)
    pipeline = make_pipeline(window=OperatingWindow.from_strings("00:00", "23:59"))
    pipeline.heartbeat_scheduler.describe.return_value = "7-12 min (+0-20s jitter)"
    pipeline.heartbeat_scheduler.next_run = None
    pipeline.submit_approval(NOON)

    health = pipeline.get_health()

    assert health['operating_window'] == "00:00-23:59 UTC"
    assert health['heartbeat_cadence'] == "7-12 min (+0-20s jitter)"
    assert health['daily_count'] == 1
    assert health['busy'] is False
    assert health['last_reason'] == "APPROVED_FAST"


def test_session_status_failed_login_means_login_required(make_pipeline, stages):
    stages['auth'].ensure_logged_in.return_value = AuthState.AUTH_FAILED
    assert make_pipeline().get_session_status() == SessionStatus.LOGIN_REQUIRED


def test_session_status_error_is_fail(make_pipeline, session, guard):
    session.run = MagicMock(side_effect=RuntimeError("browser crashed"))
    assert make_pipeline().get_session_status() == SessionStatus.FAIL
    assert not guard.busy
