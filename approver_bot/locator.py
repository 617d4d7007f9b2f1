"""
Target location for the approve control.

The dashboard's markup changes often, so the approve button is found through
an ordered chain of queries, most specific first. The first query that
yields at least one visible, enabled element wins and ALL of its matches are
returned, so the caller can fall through to an alternate candidate if the
first one does not verify.

The chain also runs inside every child frame, since the one-click widget may
be embedded.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from approver_bot.config import DEFAULT_SITE, MAX_CANDIDATES_PER_ROOT, SiteProfile

logger = logging.getLogger('approver_bot.locator')

CLASS_BUTTON_SELECTOR = '*:is(.btn, .button, [class*="btn"], [class*="Button"])'


@dataclass(frozen=True)
class TargetQuery:
    """
    One strategy in the locate chain.

    build(root, scope, site) returns a Playwright Locator. `root` is the page
    or frame being searched; `scope` is the one-click-trade container inside
    it (or the root itself when no container was found).
    """
    name: str
    build: Callable[[Any, Any, SiteProfile], Any]
    scoped: bool = False

    def locate(self, root, scope, site: SiteProfile):
        return self.build(root, scope if self.scoped else root, site)


def _label_text(site: SiteProfile) -> str:
    return site.target_label


DEFAULT_QUERIES: Sequence[TargetQuery] = (
    # Scoped: container + structural class + exact text
    TargetQuery(
        "scoped_class_exact",
        lambda root, scope, site: scope.locator(CLASS_BUTTON_SELECTOR).filter(has_text=site.target_label_pattern),
        scoped=True,
    ),
    TargetQuery(
        "scoped_role_button",
        lambda root, scope, site: scope.get_by_role("button", name=site.target_label_pattern),
        scoped=True,
    ),
    TargetQuery(
        "scoped_role_link",
        lambda root, scope, site: scope.get_by_role("link", name=site.target_label_pattern),
        scoped=True,
    ),
    TargetQuery(
        "scoped_submit_input",
        lambda root, scope, site: scope.locator(
            f'input[type="submit"][value*="{_label_text(site)}" i], '
            f'input[type="button"][value*="{_label_text(site)}" i]'
        ),
        scoped=True,
    ),
    TargetQuery(
        "scoped_role_attr",
        lambda root, scope, site: scope.locator('[role="button"]').filter(has_text=site.target_label_pattern),
        scoped=True,
    ),
    # Global fallbacks (scope may have been slightly off)
    TargetQuery(
        "global_role_button",
        lambda root, scope, site: scope.get_by_role("button", name=site.target_label_pattern),
    ),
    TargetQuery(
        "global_role_link",
        lambda root, scope, site: scope.get_by_role("link", name=site.target_label_pattern),
    ),
    TargetQuery(
        "global_button_or_anchor",
        lambda root, scope, site: scope.locator("button, a").filter(has_text=site.target_label_pattern),
    ),
    TargetQuery(
        "global_class_exact",
        lambda root, scope, site: scope.locator(CLASS_BUTTON_SELECTOR).filter(has_text=site.target_label_pattern),
    ),
    # Last resort: any visible text node with exactly the label
    TargetQuery(
        "global_text_exact",
        lambda root, scope, site: scope.get_by_text(site.target_label_pattern),
    ),
)


class ActionLocator:
    """Finds the approve control via an ordered, fault-tolerant query chain."""

    def __init__(self, site: SiteProfile = DEFAULT_SITE,
                 queries: Optional[Sequence[TargetQuery]] = None,
                 max_per_root: int = MAX_CANDIDATES_PER_ROOT):
        self.site = site
        self.queries = list(queries) if queries is not None else list(DEFAULT_QUERIES)
        self.max_per_root = max_per_root
        self.last_query: Optional[str] = None

    # =========================================================================
    # SCOPE / ROOTS
    # =========================================================================
    def search_roots(self, page) -> List[Any]:
        """The page itself followed by every child frame."""
        roots = [page]
        try:
            main = page.main_frame
            roots.extend(f for f in page.frames if f is not main)
        except Exception as e:
            logger.debug(f"Could not enumerate frames: {e}")
        return roots

    def resolve_scope(self, root):
        """
        Deepest container mentioning the one-click-trade widget AND holding
        the target label. Falls back to the root.
        """
        try:
            container = (
                root.locator("section, div, article")
                .filter(has_text=self.site.target_scope_pattern)
                .filter(has=root.get_by_text(self.site.target_label_pattern))
                .last
            )
            if container.count() > 0:
                return container
        except Exception as e:
            logger.debug(f"Scope resolution failed: {e}")
        return root

    # =========================================================================
    # LOCATE
    # =========================================================================
    def _visible_handles(self, locator) -> List[Any]:
        handles = []
        for handle in locator.element_handles()[: self.max_per_root]:
            try:
                if handle.is_visible() and handle.is_enabled():
                    handles.append(handle)
            except Exception:
                continue
        return handles

    def find_targets(self, page) -> List[Any]:
        """
        Run the query chain against the page and its frames.

        Returns:
            Element handles from the first query that matched anything,
            in document order; empty list if nothing matched.
        """
        roots = [(root, self.resolve_scope(root)) for root in self.search_roots(page)]

        for query in self.queries:
            found: List[Any] = []
            for root, scope in roots:
                try:
                    found.extend(self._visible_handles(query.locate(root, scope, self.site)))
                except Exception as e:
                    logger.debug(f"Query '{query.name}' failed: {e}")
            if found:
                self.last_query = query.name
                logger.info(f"Found {len(found)} target(s) via '{query.name}'")
                return found

        self.last_query = None
        logger.info("No target found by any query")
        return []

    # =========================================================================
    # AFFORDANCES THAT REVEAL THE TARGET
    # =========================================================================
    def _click_if_present(self, page, locator, settle_ms: int, what: str) -> bool:
        try:
            if locator.count() == 0:
                return False
            locator.click(timeout=2000)
            page.wait_for_timeout(settle_ms)
            logger.info(f"Opened {what}")
            return True
        except Exception as e:
            logger.debug(f"Could not open {what}: {e}")
            return False

    def expand_actions_ribbon(self, page) -> bool:
        """Click the "new actions available" ribbon if it is showing."""
        ribbon = page.locator("div, button, a").filter(has_text=self.site.actions_ribbon_pattern).last
        return self._click_if_present(page, ribbon, 600, "actions ribbon")

    def open_notifications(self, page) -> bool:
        """Open the notifications (bell) panel, which can list the pending action."""
        bell = page.get_by_role("button", name=self.site.notifications_pattern).first
        return self._click_if_present(page, bell, 500, "notifications panel")
