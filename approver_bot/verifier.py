"""
Outcome verification for a click.

A click that "did not throw" proves nothing. After clicking, several
independent signals are raced until a verification window elapses:

    toast         success/confirmation text shows up in a toast/alert area
    removed       the target element left the document
    disabled      the target became disabled
    text-changed  the target's label changed
    network       a successful response from an approve-like URL was seen

Signals are evaluated in that fixed order every round, so replaying the same
page script always produces the same winner. Strict mode accepts only the
network signal.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from approver_bot.config import (
    DEFAULT_SITE, VERIFY_POLL_MS, VERIFY_STRICT, VERIFY_WINDOW_MS, SiteProfile
)
from approver_bot.models import Signal, VerificationResult
from approver_bot.utils import first_true

logger = logging.getLogger('approver_bot.verifier')

TARGET_STATE_JS = """
(el) => ({
    connected: el.isConnected,
    disabled: !!(el.disabled
        || el.getAttribute('aria-disabled') === 'true'
        || el.classList.contains('disabled')),
    text: ((el.innerText || el.value || '') + '').trim(),
})
"""

TOAST_TEXT_JS = """
() => Array.from(document.querySelectorAll(
    '[role="alert"], [role="status"], [aria-live="polite"], [aria-live="assertive"], '
    + '[class*="toast" i], [class*="snackbar" i], [class*="notification" i], [class*="alert" i]'
))
    .filter(el => el.offsetParent !== null || window.getComputedStyle(el).position === 'fixed')
    .map(el => el.innerText || '')
    .join('\\n')
"""


class PendingVerification:
    """
    Baseline + network capture for one click.

    Created BEFORE the click so that a fast response is not missed.
    """

    def __init__(self, page, target, site: SiteProfile):
        self.page = page
        self.target = target
        self.site = site
        self.baseline: Dict[str, Any] = {}
        self.baseline_toast = ""
        self.approve_responses: List[str] = []
        self._listening = False

    def _on_response(self, response):
        try:
            if self.site.approve_url_pattern.search(response.url) and response.ok:
                self.approve_responses.append(response.url)
                logger.debug(f"Approve-like response: {response.status} {response.url}")
        except Exception as e:
            logger.debug(f"Response inspection failed: {e}")

    def start(self) -> "PendingVerification":
        try:
            self.baseline = self.target.evaluate(TARGET_STATE_JS) or {}
        except Exception as e:
            logger.debug(f"Could not snapshot target: {e}")
        try:
            self.baseline_toast = self.page.evaluate(TOAST_TEXT_JS) or ""
        except Exception as e:
            logger.debug(f"Could not snapshot toasts: {e}")
        self.page.on("response", self._on_response)
        self._listening = True
        return self

    def stop(self):
        if not self._listening:
            return
        self._listening = False
        try:
            self.page.remove_listener("response", self._on_response)
        except Exception as e:
            logger.debug(f"remove_listener failed: {e}")

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------
    def _target_state(self) -> Dict[str, Any]:
        return self.target.evaluate(TARGET_STATE_JS) or {}

    def toast_seen(self) -> bool:
        text = self.page.evaluate(TOAST_TEXT_JS) or ""
        if not text or text == self.baseline_toast:
            return False
        return bool(self.site.success_text_pattern.search(text))

    def target_removed(self) -> bool:
        try:
            return not self._target_state().get("connected", True)
        except Exception as e:
            # A collected/detached handle means the node is gone
            return "not attached" in str(e).lower() or "detached" in str(e).lower()

    def target_disabled(self) -> bool:
        state = self._target_state()
        return bool(state.get("disabled")) and not self.baseline.get("disabled")

    def target_text_changed(self) -> bool:
        if "text" not in self.baseline:
            return False
        state = self._target_state()
        return state.get("connected", True) and state.get("text") != self.baseline.get("text")

    def network_seen(self) -> bool:
        return bool(self.approve_responses)


class OutcomeVerifier:
    """
    Usage:
        pending = verifier.begin(page, target)
        ...click...
        result = verifier.verify(pending)
    """

    def __init__(self, site: SiteProfile = DEFAULT_SITE, window_ms: int = VERIFY_WINDOW_MS,
                 strict: bool = VERIFY_STRICT, poll_ms: int = VERIFY_POLL_MS,
                 clock: Callable[[], float] = time.monotonic):
        self.site = site
        self.window_ms = window_ms
        self.strict = strict
        self.poll_ms = poll_ms
        self._clock = clock

    def begin(self, page, target) -> PendingVerification:
        return PendingVerification(page, target, self.site).start()

    def signals(self, pending: PendingVerification) -> List[Tuple[str, Callable[[], bool]]]:
        if self.strict:
            return [(Signal.NETWORK.value, pending.network_seen)]
        return [
            (Signal.TOAST.value, pending.toast_seen),
            (Signal.REMOVED.value, pending.target_removed),
            (Signal.DISABLED.value, pending.target_disabled),
            (Signal.TEXT_CHANGED.value, pending.target_text_changed),
            (Signal.NETWORK.value, pending.network_seen),
        ]

    def verify(self, pending: PendingVerification) -> VerificationResult:
        started = self._clock()
        try:
            winner = first_true(
                self.signals(pending),
                timeout_s=self.window_ms / 1000,
                poll_interval_s=self.poll_ms / 1000,
                clock=self._clock,
                sleep=lambda s: pending.page.wait_for_timeout(max(1, int(s * 1000))),
            )
        finally:
            pending.stop()

        elapsed_ms = int((self._clock() - started) * 1000)
        if winner is None:
            logger.warning(f"No success signal within {self.window_ms}ms")
            return VerificationResult(success=False, signal=Signal.TIMEOUT, elapsed_ms=elapsed_ms)

        logger.info(f"Verified via '{winner}' after {elapsed_ms}ms")
        return VerificationResult(
            success=True,
            signal=Signal(winner),
            elapsed_ms=elapsed_ms,
            detail=list(pending.approve_responses) if winner == Signal.NETWORK.value else None,
        )

    def cancel(self, pending: Optional[PendingVerification]):
        if pending is not None:
            pending.stop()
