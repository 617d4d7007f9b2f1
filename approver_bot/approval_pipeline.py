"""
Approval pipeline: one trigger in, one verified click (or a reason) out.

Gate order, all before any browser work:
    operating window -> daily limit -> busy flag -> daily limit -> freshness

Then on the browser thread:
    fast:      dashboard (short timeout) -> login URL? -> one attempt
    thorough:  auth -> freshness again -> up to N attempt cycles, each
               followed by the notifications path and a reload

An attempt is: overlays -> scroll to top -> actions ribbon -> locate
(plus a small scroll scan) -> for each candidate: click chain,
confirmation, verification.
"""

import logging
import time
import traceback
from datetime import datetime
from typing import Optional

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from approver_bot.auth import AuthController, AuthState, LoginFailedError, LoginRequiredError
from approver_bot.click_strategies import ActionExecutor
from approver_bot.config import (
    CLICK_WAIT_MS, DEFAULT_SITE, FAST_LOAD_MS, PAGE_LOAD_TIMEOUT, SCREENSHOT_DIR,
    SCREENSHOT_ON_ERROR, THOROUGH_MAX_CYCLES, WINDOW_END, WINDOW_START, SiteProfile
)
from approver_bot.confirmation import ConfirmationHandler
from approver_bot.guard import ConcurrencyGuard
from approver_bot.heartbeat import HeartbeatScheduler
from approver_bot.locator import ActionLocator
from approver_bot.models import (
    ActionOutcome, ActionRequest, ApprovalReason, ExecutionMode, SessionStatus, Signal, TriggerTime
)
from approver_bot.overlays import OverlaySuppressor
from approver_bot.scheduler import SchedulerThread, register_daily_reset
from approver_bot.session_manager import SessionManager
from approver_bot.utils import OperatingWindow, log_approval, take_debug_screenshot, utc_now
from approver_bot.verifier import OutcomeVerifier

logger = logging.getLogger('approver_bot.pipeline')

SCROLL_TOP_JS = "() => window.scrollTo(0, 0)"
SCROLL_SCAN_STEPS = (400, 900, 1600)


class ApprovalPipeline:
    """
    Owns the session and every pipeline stage.

    Usage:
        pipeline = ApprovalPipeline()
        outcome = pipeline.submit_approval(trigger_ts, ExecutionMode.FAST)
        print(outcome.to_dict())
        pipeline.shutdown()
    """

    def __init__(self, session: Optional[SessionManager] = None,
                 guard: Optional[ConcurrencyGuard] = None,
                 window: Optional[OperatingWindow] = None,
                 site: SiteProfile = DEFAULT_SITE,
                 auth: Optional[AuthController] = None,
                 overlays: Optional[OverlaySuppressor] = None,
                 locator: Optional[ActionLocator] = None,
                 executor: Optional[ActionExecutor] = None,
                 confirmation: Optional[ConfirmationHandler] = None,
                 verifier: Optional[OutcomeVerifier] = None,
                 heartbeat: Optional[HeartbeatScheduler] = None,
                 max_cycles: int = THOROUGH_MAX_CYCLES,
                 fast_load_ms: int = FAST_LOAD_MS,
                 reload_wait_ms: int = CLICK_WAIT_MS,
                 screenshot_on_error: bool = SCREENSHOT_ON_ERROR,
                 clock=utc_now):
        self.site = site
        self.session = session if session is not None else SessionManager()
        self.guard = guard if guard is not None else ConcurrencyGuard(clock=clock)
        self.window = window if window is not None else OperatingWindow.from_strings(WINDOW_START, WINDOW_END)
        self.overlays = overlays if overlays is not None else OverlaySuppressor(
            site, on_consent=self.session.persist_state
        )
        self.auth = auth if auth is not None else AuthController(site, on_page_ready=self.overlays.suppress)
        self.locator = locator if locator is not None else ActionLocator(site)
        self.executor = executor if executor is not None else ActionExecutor()
        self.confirmation = confirmation if confirmation is not None else ConfirmationHandler(self.executor, site)
        self.verifier = verifier if verifier is not None else OutcomeVerifier(site)
        self.heartbeat_scheduler = heartbeat if heartbeat is not None else HeartbeatScheduler(
            self.heartbeat, self.window, clock=clock
        )
        self.max_cycles = max_cycles
        self.fast_load_ms = fast_load_ms
        self.reload_wait_ms = reload_wait_ms
        self.screenshot_on_error = screenshot_on_error
        self._clock = clock

        self.click_attempts = 0
        self.last_outcome: Optional[ActionOutcome] = None
        self._scheduler_thread: Optional[SchedulerThread] = None

    # =========================================================================
    # PUBLIC OPERATIONS
    # =========================================================================
    def submit_approval(self, trigger_ts: TriggerTime = None,
                        mode: ExecutionMode = ExecutionMode.FAST) -> ActionOutcome:
        """
        Run one approval.

        Args:
            trigger_ts: when the external signal was produced (datetime, epoch
                        seconds/ms, ISO string, or None for "now")
            mode: ExecutionMode.FAST or ExecutionMode.THOROUGH (or its value)

        Returns:
            ActionOutcome; never raises for browser or site failures

        Raises:
            ValueError: if trigger_ts or mode cannot be parsed
        """
        request = ActionRequest(trigger_ts=trigger_ts, mode=mode)
        started = time.monotonic()
        logger.info(f"[{request.run_id}] Approval requested ({request.mode.value}, "
                    f"age {request.age_seconds(self._clock()):.1f}s)")

        if not self.window.contains(self._clock()):
            return self._finish(request, started, ActionOutcome.rejected(
                ApprovalReason.OUTSIDE_WINDOW, f"Operating window is {self.window.describe()}"))

        if self.guard.daily_limit_reached():
            return self._finish(request, started, ActionOutcome.rejected(
                ApprovalReason.DAILY_LIMIT, f"{self.guard.daily_count}/{self.guard.max_per_day} today"))

        if not self.guard.try_acquire():
            return self._finish(request, started, ActionOutcome.rejected(ApprovalReason.BUSY))

        try:
            # Another request may have used the last slot since the check above
            if self.guard.daily_limit_reached():
                outcome = ActionOutcome.rejected(
                    ApprovalReason.DAILY_LIMIT, f"{self.guard.daily_count}/{self.guard.max_per_day} today")
            elif not self.guard.is_fresh(request.trigger_ts):
                outcome = ActionOutcome.rejected(ApprovalReason.SIGNAL_TOO_OLD)
            else:
                outcome = self.session.run(lambda page: self._execute(page, request))
            if outcome.success:
                self.guard.record_success()
        except Exception as e:
            logger.error(f"[{request.run_id}] Approval failed: {e}")
            logger.error(traceback.format_exc())
            outcome = ActionOutcome(success=False, reason=ApprovalReason.TRANSPORT_ERROR, message=str(e))
        finally:
            self.guard.release()

        return self._finish(request, started, outcome)

    def get_session_status(self) -> SessionStatus:
        """
        Probe authentication without performing the action.

        A probe never queues behind a running action: if the guard is held
        the answer is FAIL.
        """
        if not self.guard.try_acquire():
            return SessionStatus.FAIL
        try:
            state = self.session.run(self._probe_session)
        except Exception as e:
            logger.error(f"Session status probe failed: {e}")
            return SessionStatus.FAIL
        finally:
            self.guard.release()

        if state == AuthState.LOGGED_IN:
            return SessionStatus.OK
        # Logged out with no credentials, or a login attempt that did not stick
        return SessionStatus.LOGIN_REQUIRED

    def get_health(self) -> dict:
        session = self.session.session
        return {
            'ok': True,
            'operating_window': self.window.describe(),
            'heartbeat_cadence': self.heartbeat_scheduler.describe(),
            'next_heartbeat': _iso(self.heartbeat_scheduler.next_run),
            'daily_count': self.guard.daily_count,
            'daily_limit': self.guard.max_per_day,
            'busy': self.guard.busy,
            'session_created_at': _iso(session.created_at) if session else None,
            'last_reason': self.last_outcome.reason.value if self.last_outcome else None,
        }

    def heartbeat(self) -> bool:
        """
        Keep-alive tick. Skipped (returns False) while an action holds the guard.
        """
        with self.guard.hold() as acquired:
            if not acquired:
                logger.info("Heartbeat skipped - approval in progress")
                return False
            state = self.session.run(self._keep_alive)
        logger.info(f"Heartbeat OK ({state.value})")
        return True

    # =========================================================================
    # BACKGROUND JOBS
    # =========================================================================
    def start_background(self, scheduler=None, interval_s: float = 1.0):
        """Register the daily reset and heartbeat, and start the scheduler thread."""
        register_daily_reset(self.guard, scheduler)
        if scheduler is not None:
            self.heartbeat_scheduler.scheduler = scheduler
        self.heartbeat_scheduler.start()
        self._scheduler_thread = SchedulerThread(scheduler, interval_s=interval_s)
        self._scheduler_thread.start()

    def shutdown(self):
        self.heartbeat_scheduler.cancel()
        if self._scheduler_thread is not None:
            self._scheduler_thread.stop()
            self._scheduler_thread = None
        self.session.close()

    # =========================================================================
    # BROWSER-THREAD WORK
    # =========================================================================
    def _open_dashboard_fast(self, page):
        try:
            page.goto(self.site.dashboard_url, wait_until="domcontentloaded", timeout=self.fast_load_ms)
        except PlaywrightTimeoutError:
            logger.info(f"Dashboard not loaded within {self.fast_load_ms}ms - continuing")

    def _probe_session(self, page) -> AuthState:
        self._open_dashboard_fast(page)
        return self.auth.ensure_logged_in(page, navigate=False)

    def _keep_alive(self, page) -> AuthState:
        self._open_dashboard_fast(page)
        state = self.auth.ensure_logged_in(page, navigate=False)
        self.overlays.suppress(page)
        return state

    def _execute(self, page, request: ActionRequest) -> ActionOutcome:
        if request.mode == ExecutionMode.THOROUGH:
            return self._run_thorough(page, request)
        return self._run_fast(page, request)

    def _run_fast(self, page, request: ActionRequest) -> ActionOutcome:
        self._open_dashboard_fast(page)
        if self.auth.is_login_url(page.url):
            logger.warning(f"[{request.run_id}] On login page in fast mode: {page.url}")
            return ActionOutcome.rejected(ApprovalReason.LOGIN_REQUIRED, "Session is logged out")
        return self._attempt(page, ApprovalReason.APPROVED_FAST)

    def _run_thorough(self, page, request: ActionRequest) -> ActionOutcome:
        try:
            self.auth.require_login(page)
        except LoginRequiredError as e:
            return ActionOutcome.rejected(ApprovalReason.LOGIN_REQUIRED, str(e))
        except LoginFailedError as e:
            self._screenshot(page, 'login_failed')
            return ActionOutcome.rejected(ApprovalReason.LOGIN_FAILED, str(e))

        # Login can take long enough to outlive the signal
        if not self.guard.is_fresh(request.trigger_ts):
            return ActionOutcome.rejected(ApprovalReason.SIGNAL_TOO_OLD, "Expired during login")

        outcome = ActionOutcome.rejected(ApprovalReason.NO_TARGET_FOUND)
        for cycle in range(self.max_cycles):
            reason = ApprovalReason.APPROVED_DIRECT if cycle == 0 else ApprovalReason.APPROVED_AFTER_REFRESH
            outcome = self._attempt(page, reason)
            if outcome.success:
                return outcome

            if self.locator.open_notifications(page):
                via_bell = self._attempt(page, ApprovalReason.APPROVED_VIA_BELL, prepare=False)
                if via_bell.success:
                    return via_bell
                outcome = via_bell

            logger.info(f"[{request.run_id}] Cycle {cycle + 1}/{self.max_cycles} failed "
                        f"({outcome.reason.value}) - reloading")
            if cycle < self.max_cycles - 1:
                self._reload(page)

        self._screenshot(page, 'no_approve')
        return outcome

    def _reload(self, page):
        try:
            page.reload(wait_until="networkidle", timeout=PAGE_LOAD_TIMEOUT)
        except PlaywrightTimeoutError:
            logger.warning("Reload did not reach network idle - continuing")
        page.wait_for_timeout(self.reload_wait_ms)

    # =========================================================================
    # ONE ATTEMPT
    # =========================================================================
    def _prepare(self, page):
        self.overlays.suppress(page)
        try:
            page.evaluate(SCROLL_TOP_JS)
        except Exception as e:
            logger.debug(f"Scroll to top failed: {e}")
        page.wait_for_timeout(120)
        self.locator.expand_actions_ribbon(page)

    def _locate(self, page) -> list:
        targets = self.locator.find_targets(page)
        if targets:
            return targets
        for delta in SCROLL_SCAN_STEPS:
            page.mouse.wheel(0, delta)
            page.wait_for_timeout(180)
            targets = self.locator.find_targets(page)
            if targets:
                return targets
        return []

    def _attempt(self, page, success_reason: ApprovalReason, prepare: bool = True) -> ActionOutcome:
        if prepare:
            self._prepare(page)

        targets = self._locate(page)
        if not targets:
            return ActionOutcome.rejected(ApprovalReason.NO_TARGET_FOUND)

        outcome = ActionOutcome.rejected(ApprovalReason.CLICK_FAILED)
        for index, target in enumerate(targets):
            pending = self.verifier.begin(page, target)
            self.click_attempts += 1
            method = self.executor.click(page, target)
            if method is None:
                self.verifier.cancel(pending)
                outcome = ActionOutcome.rejected(ApprovalReason.CLICK_FAILED, f"Candidate {index} refused every click")
                continue

            confirmed = self.confirmation.handle(page, primary=target)
            result = self.verifier.verify(pending)
            if result.success:
                return ActionOutcome(
                    success=True,
                    reason=success_reason,
                    signal=result.signal,
                    method=method,
                    details={
                        'candidate': index,
                        'query': self.locator.last_query,
                        'confirmed': confirmed,
                        'verify_ms': result.elapsed_ms,
                    },
                )
            outcome = ActionOutcome(
                success=False,
                reason=ApprovalReason.VERIFY_TIMEOUT,
                signal=Signal.TIMEOUT,
                method=method,
                message=f"Candidate {index} clicked but no success signal",
            )
        return outcome

    # =========================================================================
    # HELPERS
    # =========================================================================
    def _screenshot(self, page, name: str):
        if self.screenshot_on_error:
            take_debug_screenshot(page, name, SCREENSHOT_DIR)

    def _finish(self, request: ActionRequest, started: float, outcome: ActionOutcome) -> ActionOutcome:
        outcome.elapsed_ms = int((time.monotonic() - started) * 1000)
        self.last_outcome = outcome
        level = logging.INFO if outcome.success else logging.WARNING
        logger.log(level, f"[{request.run_id}] {outcome.reason.value} in {outcome.elapsed_ms}ms")
        log_approval(
            request.run_id,
            request.mode.value,
            outcome.reason.value,
            outcome.signal.value if outcome.signal else None,
            outcome.elapsed_ms,
        )
        return outcome


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
