"""
Click execution for a located target.

Tries a fixed chain of interaction techniques until one is accepted by the
browser (i.e. does not throw). Acceptance is NOT verification; the caller
checks the outcome separately and moves on to the next candidate if needed.

Order:
1. geometry  - real mouse press/release at the element's centre, with
               extreme z-index layers hidden for the duration
2. force     - Playwright click with actionability checks disabled
3. dispatch  - synthetic pointer/mouse events fired from script
4. plain     - normal Playwright click
5. double    - double click, for controls that need it
"""

import logging
from typing import List, Optional, Sequence

from approver_bot.config import CLICK_ATTEMPT_TIMEOUT_MS, OVERLAY_MIN_Z_INDEX

logger = logging.getLogger('approver_bot.click')


# Hide (visibility) every element with z-index >= minZ that is neither the
# target nor one of its ancestors/descendants. Returns how many were hidden.
HIDE_HIGH_Z_JS = """
(target, minZ) => {
    let hidden = 0;
    for (const el of Array.from(document.querySelectorAll('body *'))) {
        if (el === target || el.contains(target) || target.contains(el)) continue;
        if (el.hasAttribute('data-approver-hidden')) continue;
        const z = parseInt(window.getComputedStyle(el).zIndex, 10);
        if (isNaN(z) || z < minZ) continue;
        el.setAttribute('data-approver-hidden', el.style.visibility || '');
        el.style.visibility = 'hidden';
        hidden++;
    }
    return hidden;
}
"""

RESTORE_HIDDEN_JS = """
() => {
    for (const el of Array.from(document.querySelectorAll('[data-approver-hidden]'))) {
        el.style.visibility = el.getAttribute('data-approver-hidden');
        el.removeAttribute('data-approver-hidden');
    }
}
"""

DISPATCH_CLICK_JS = """
(el) => {
    const rect = el.getBoundingClientRect();
    const opts = {
        bubbles: true, cancelable: true, view: window, button: 0,
        clientX: rect.left + rect.width / 2,
        clientY: rect.top + rect.height / 2,
    };
    if (typeof PointerEvent === 'function') {
        el.dispatchEvent(new PointerEvent('pointerdown', opts));
        el.dispatchEvent(new PointerEvent('pointerup', opts));
    }
    el.dispatchEvent(new MouseEvent('mousedown', opts));
    el.dispatchEvent(new MouseEvent('mouseup', opts));
    el.dispatchEvent(new MouseEvent('click', opts));
    return true;
}
"""


class ClickStrategy:
    """One interaction technique. attempt() raises if the browser refuses it."""
    name = "base"

    def attempt(self, page, target, timeout_ms: int):
        raise NotImplementedError


class GeometryClick(ClickStrategy):
    name = "geometry"

    def __init__(self, min_z_index: int = OVERLAY_MIN_Z_INDEX):
        self.min_z_index = min_z_index

    def attempt(self, page, target, timeout_ms: int):
        try:
            target.scroll_into_view_if_needed(timeout=timeout_ms)
        except Exception as e:
            logger.debug(f"scroll_into_view failed (continuing): {e}")

        box = target.bounding_box()
        if not box or box["width"] <= 0 or box["height"] <= 0:
            raise RuntimeError("Target has no visible bounding box")

        x = box["x"] + box["width"] / 2
        y = box["y"] + box["height"] / 2

        try:
            target.evaluate(HIDE_HIGH_Z_JS, self.min_z_index)
        except Exception as e:
            logger.debug(f"Could not hide high z-index layers: {e}")
        try:
            page.mouse.move(x, y)
            page.mouse.down()
            page.mouse.up()
        finally:
            try:
                page.evaluate(RESTORE_HIDDEN_JS)
            except Exception as e:
                logger.debug(f"Could not restore hidden layers: {e}")


class ForceClick(ClickStrategy):
    name = "force"

    def attempt(self, page, target, timeout_ms: int):
        target.click(force=True, timeout=timeout_ms)


class DispatchClick(ClickStrategy):
    name = "dispatch"

    def attempt(self, page, target, timeout_ms: int):
        target.evaluate(DISPATCH_CLICK_JS)


class PlainClick(ClickStrategy):
    name = "plain"

    def attempt(self, page, target, timeout_ms: int):
        target.click(timeout=timeout_ms)


class DoubleClick(ClickStrategy):
    name = "double"

    def attempt(self, page, target, timeout_ms: int):
        target.dblclick(timeout=timeout_ms)


def default_strategies() -> List[ClickStrategy]:
    return [GeometryClick(), ForceClick(), DispatchClick(), PlainClick(), DoubleClick()]


class ActionExecutor:
    """
    Clicks a target through the fallback chain.

    Usage:
        executor = ActionExecutor()
        method = executor.click(page, handle)
        if method is None:
            ...  # try next candidate
    """

    def __init__(self, strategies: Optional[Sequence[ClickStrategy]] = None,
                 attempt_timeout_ms: int = CLICK_ATTEMPT_TIMEOUT_MS):
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.attempt_timeout_ms = attempt_timeout_ms

    def click(self, page, target) -> Optional[str]:
        """
        Returns:
            Name of the first strategy the browser accepted, or None if every
            strategy threw.
        """
        for strategy in self.strategies:
            try:
                strategy.attempt(page, target, self.attempt_timeout_ms)
                logger.info(f"Clicked target via '{strategy.name}'")
                return strategy.name
            except Exception as e:
                logger.debug(f"Click strategy '{strategy.name}' failed: {e}")
        logger.warning("All click strategies failed for this target")
        return None

    def geometry_click(self, page, target) -> bool:
        """Single geometry click, used for secondary confirmation controls."""
        geometry = next((s for s in self.strategies if isinstance(s, GeometryClick)), GeometryClick())
        try:
            geometry.attempt(page, target, self.attempt_timeout_ms)
            return True
        except Exception as e:
            logger.debug(f"Geometry click failed: {e}")
            return False
