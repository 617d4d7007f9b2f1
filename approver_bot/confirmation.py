"""
Secondary confirmation step.

Some approve flows open a dialog asking to confirm. After the primary click
we give that dialog a short window to appear; if it does, its confirm
control gets the same geometry click as the primary target.
"""

import logging
import time
from typing import Any, Callable, Optional

from approver_bot.click_strategies import ActionExecutor
from approver_bot.config import CONFIRM_SETTLE_MS, CONFIRM_WINDOW_MS, DEFAULT_SITE, SiteProfile
from approver_bot.utils import first_true

logger = logging.getLogger('approver_bot.confirmation')

DIALOG_SELECTOR = "[role='dialog'], [role='alertdialog'], [aria-modal='true'], .modal.show, .modal"
CONTROL_SELECTOR = "button, [role='button'], a, input[type='submit'], input[type='button']"
SAME_ELEMENT_JS = "(el, other) => el === other"


class ConfirmationHandler:

    def __init__(self, executor: ActionExecutor, site: SiteProfile = DEFAULT_SITE,
                 window_ms: int = CONFIRM_WINDOW_MS, settle_ms: int = CONFIRM_SETTLE_MS,
                 poll_ms: int = 150, clock: Callable[[], float] = time.monotonic):
        self.executor = executor
        self.site = site
        self.window_ms = window_ms
        self.settle_ms = settle_ms
        self.poll_ms = poll_ms
        self._clock = clock

    def _find_control(self, page, primary=None) -> Optional[Any]:
        controls = (
            page.locator(DIALOG_SELECTOR)
            .locator(CONTROL_SELECTOR)
            .filter(has_text=self.site.confirm_label_pattern)
        )
        for handle in controls.element_handles():
            if not (handle.is_visible() and handle.is_enabled()):
                continue
            # The primary button may itself live in a dialog; never re-click it
            if primary is not None and handle.evaluate(SAME_ELEMENT_JS, primary):
                continue
            return handle
        return None

    def handle(self, page, primary=None) -> bool:
        """
        Args:
            page: page the primary click happened on
            primary: handle of the element just clicked, excluded from the search

        Returns:
            True if a confirmation control was found and clicked
        """
        found = {}

        def confirmation_visible() -> bool:
            control = self._find_control(page, primary)
            if control is not None:
                found['control'] = control
                return True
            return False

        winner = first_true(
            [("confirmation", confirmation_visible)],
            timeout_s=self.window_ms / 1000,
            poll_interval_s=self.poll_ms / 1000,
            clock=self._clock,
            sleep=lambda s: page.wait_for_timeout(max(1, int(s * 1000))),
        )
        if winner is None:
            logger.debug("No confirmation dialog appeared")
            return False

        logger.info("Confirmation dialog detected - clicking confirm")
        clicked = self.executor.geometry_click(page, found['control'])
        page.wait_for_timeout(self.settle_ms)
        return clicked
