"""
Overlay suppression for the dashboard.

Runs before every locate/click attempt. Each step is independent and
tolerant of its own failure: a step that throws or times out is logged and
the next one still runs. Nothing here ever raises to the caller.

Handles:
- The site's named cookie/policy dialog
- Generic cookie-consent banners
- Visible modal dialogs (close control, else removal)
- Full-viewport fixed/absolute layers with extreme z-index
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from approver_bot.config import DEFAULT_SITE, OVERLAY_MIN_Z_INDEX, OVERLAY_STEP_TIMEOUT_MS, SiteProfile

logger = logging.getLogger('approver_bot.overlays')


# Removes the closest dialog-like ancestor of any element whose text is
# exactly the given string.
REMOVE_NAMED_DIALOG_JS = """
(text) => {
    let removed = 0;
    for (const el of Array.from(document.querySelectorAll('body *'))) {
        if (!el.isConnected) continue;
        if ((el.textContent || '').trim() !== text) continue;
        const box = el.closest('[role="dialog"], [aria-modal="true"], .modal, [class*="modal"], [class*="dialog"]') || el;
        box.remove();
        removed++;
    }
    return removed;
}
"""

REMOVE_ELEMENT_JS = "(el) => { el.remove(); return true; }"

# Full-viewport obstructions: fixed/absolute, z-index >= minZ, and wider or
# taller than half the viewport.
SWEEP_HIGH_Z_LAYERS_JS = """
(minZ) => {
    const vw = window.innerWidth, vh = window.innerHeight;
    let removed = 0;
    for (const el of Array.from(document.querySelectorAll('body *'))) {
        if (!el.isConnected) continue;
        const style = window.getComputedStyle(el);
        if (style.position !== 'fixed' && style.position !== 'absolute') continue;
        const z = parseInt(style.zIndex, 10);
        if (isNaN(z) || z < minZ) continue;
        const rect = el.getBoundingClientRect();
        if (rect.width > vw * 0.5 || rect.height > vh * 0.5) {
            el.remove();
            removed++;
        }
    }
    if (removed > 0) {
        document.body.style.overflow = '';
        document.documentElement.style.overflow = '';
    }
    return removed;
}
"""

MODAL_SELECTOR = "[role='dialog']:visible, [aria-modal='true']:visible, .modal:visible, .modal.show"

CLOSE_CONTROL_SELECTORS = [
    "[aria-label='Close' i]",
    "[aria-label*='close' i]",
    "button.close",
    ".btn-close",
    ".modal-close",
    "[data-dismiss='modal']",
    "[data-bs-dismiss='modal']",
    "button:has-text('Close')",
    "button:has-text('×')",
]


class OverlaySuppressor:
    """
    Clears transient UI obstructions before an interaction.

    Usage:
        suppressor = OverlaySuppressor(on_consent=session.persist_state)
        report = suppressor.suppress(page)
    """

    def __init__(self, site: SiteProfile = DEFAULT_SITE,
                 on_consent: Optional[Callable[[], object]] = None,
                 min_z_index: int = OVERLAY_MIN_Z_INDEX,
                 step_timeout_ms: int = OVERLAY_STEP_TIMEOUT_MS):
        self.site = site
        self.on_consent = on_consent
        self.min_z_index = min_z_index
        self.step_timeout_ms = step_timeout_ms

    def steps(self) -> List[Tuple[str, Callable]]:
        return [
            ("policy_dialog", self._dismiss_policy_dialog),
            ("consent", self._accept_consent),
            ("modals", self._close_modals),
            ("high_z_sweep", self._sweep_high_z_layers),
        ]

    def suppress(self, page) -> Dict[str, int]:
        """
        Run every suppression step once.

        Returns:
            Count of obstructions handled per step (-1 if the step failed)
        """
        report: Dict[str, int] = {}
        for name, step in self.steps():
            try:
                report[name] = int(step(page) or 0)
            except Exception as e:
                report[name] = -1
                logger.debug(f"Overlay step '{name}' failed (ignored): {e}")

        handled = sum(v for v in report.values() if v > 0)
        if handled:
            logger.info(f"Overlays handled: {report}")
        return report

    # =========================================================================
    # STEP 1: named policy dialog
    # =========================================================================
    def _dismiss_policy_dialog(self, page) -> int:
        text = self.site.policy_dialog_text
        if not text:
            return 0
        marker = page.get_by_text(text, exact=True).first
        if marker.count() == 0 or not marker.is_visible():
            return 0

        logger.info(f"Policy dialog '{text}' detected")
        back = page.get_by_role("button", name=self.site.dialog_back_pattern).first
        try:
            if back.count() > 0:
                back.click(timeout=self.step_timeout_ms)
            else:
                page.keyboard.press("Escape")
        except Exception as e:
            logger.debug(f"Policy dialog back/escape failed: {e}")
            page.keyboard.press("Escape")

        page.wait_for_timeout(100)
        if marker.count() > 0 and marker.is_visible():
            removed = page.evaluate(REMOVE_NAMED_DIALOG_JS, text)
            logger.info(f"Policy dialog removed from DOM ({removed} node(s))")
        return 1

    # =========================================================================
    # STEP 2: consent banners
    # =========================================================================
    def _accept_consent(self, page) -> int:
        button = page.get_by_role("button", name=self.site.consent_accept_pattern).first
        if button.count() == 0 or not button.is_visible():
            return 0

        button.click(timeout=self.step_timeout_ms)
        logger.info("Cookie consent accepted")
        page.wait_for_timeout(100)

        # Persist so the banner stays accepted on the next navigation
        if self.on_consent is not None:
            try:
                self.on_consent()
            except Exception as e:
                logger.debug(f"Consent persistence failed: {e}")
        return 1

    # =========================================================================
    # STEP 3: modal dialogs
    # =========================================================================
    def _close_modals(self, page) -> int:
        handled = 0
        label = self.site.target_label.lower()
        for modal in page.locator(MODAL_SELECTOR).element_handles():
            try:
                if not modal.is_visible():
                    continue
                # A dialog offering the target action is a confirmation, not clutter
                if label and label in (modal.inner_text() or "").lower():
                    continue
                if self._click_close_control(modal):
                    handled += 1
                    continue
                modal.evaluate(REMOVE_ELEMENT_JS)
                handled += 1
                logger.info("Modal without close control removed")
            except Exception as e:
                logger.debug(f"Modal handling failed: {e}")
        return handled

    def _click_close_control(self, modal) -> bool:
        for selector in CLOSE_CONTROL_SELECTORS:
            try:
                control = modal.query_selector(selector)
                if control is not None and control.is_visible():
                    control.click(timeout=self.step_timeout_ms)
                    logger.info(f"Modal closed via {selector}")
                    return True
            except Exception:
                continue
        return False

    # =========================================================================
    # STEP 4: high z-index sweep
    # =========================================================================
    def _sweep_high_z_layers(self, page) -> int:
        removed = page.evaluate(SWEEP_HIGH_Z_LAYERS_JS, self.min_z_index)
        if removed:
            logger.info(f"Removed {removed} high z-index overlay(s)")
        return int(removed or 0)
