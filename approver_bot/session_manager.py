"""
Persistent browser session for the approver.

One Playwright browser and one authenticated context live for the whole
process. Each request gets a fresh page which is always closed afterwards,
and the context's storage state (cookies + localStorage) is written to disk
after every request so a restart comes back already logged in.

CRITICAL: Playwright's sync API objects are bound to the thread that created
them. All browser work therefore runs on a single dedicated "browser" thread;
callers hand it a function via run().
"""

import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from playwright.sync_api import sync_playwright, Browser, BrowserContext, Page

from approver_bot.config import (
    DESKTOP_UA, HEADLESS_MODE, PAGE_LOAD_TIMEOUT, STORAGE_STATE_PATH, VIEWPORT
)
from approver_bot.utils import utc_now

logger = logging.getLogger('approver_bot.session')


@dataclass
class Session:
    """The single browser identity owned by SessionManager"""
    browser: Browser
    context: BrowserContext
    storage_state_path: str
    created_at: datetime
    restored_from_disk: bool = False


class SessionManager:
    """
    Exclusive owner of the browser process and authenticated context.

    Usage:
        session = SessionManager()
        title = session.run(lambda page: page.title())
        session.close()
    """

    def __init__(self, storage_state_path: str = STORAGE_STATE_PATH,
                 headless: bool = HEADLESS_MODE,
                 playwright_factory: Callable[[], Any] = sync_playwright):
        self.storage_state_path = storage_state_path
        self.headless = headless
        self._playwright_factory = playwright_factory

        self._playwright = None
        self._session: Optional[Session] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="browser")
        self.pages_opened = 0

    @property
    def session(self) -> Optional[Session]:
        return self._session

    # =========================================================================
    # LIFECYCLE
    # =========================================================================
    def _load_storage_state(self) -> Optional[str]:
        """Return the storage state path if a valid snapshot exists on disk."""
        if not os.path.exists(self.storage_state_path):
            logger.info("No saved session state - starting fresh")
            return None
        try:
            with open(self.storage_state_path, 'r') as f:
                json.load(f)
            logger.info(f"Loading session state from {self.storage_state_path}")
            return self.storage_state_path
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Invalid session file, starting fresh: {e}")
            return None

    def _ensure_session(self) -> Session:
        """Lazily launch the browser and context; relaunch if the browser died."""
        if self._session is not None:
            if self._session.browser.is_connected():
                return self._session
            logger.warning("Browser disconnected - recreating session")
            self._teardown()

        if self._playwright is None:
            self._playwright = self._playwright_factory().start()

        logger.info(f"Starting browser (headless={self.headless})...")
        browser = self._playwright.chromium.launch(
            headless=self.headless,
            args=["--no-sandbox"],
        )

        context_options = {
            'user_agent': DESKTOP_UA,
            'viewport': dict(VIEWPORT),
        }
        storage_state = self._load_storage_state()
        if storage_state:
            context_options['storage_state'] = storage_state

        context = browser.new_context(**context_options)
        context.set_default_timeout(PAGE_LOAD_TIMEOUT)
        context.set_default_navigation_timeout(PAGE_LOAD_TIMEOUT)

        self._session = Session(
            browser=browser,
            context=context,
            storage_state_path=self.storage_state_path,
            created_at=utc_now(),
            restored_from_disk=storage_state is not None,
        )
        logger.info("Browser started successfully")
        return self._session

    def persist_state(self) -> bool:
        """
        Write the context's storage state to disk (best effort).

        Written to a temp file first and renamed, so a crash mid-write never
        leaves a truncated snapshot behind. Failures are logged, never raised.
        """
        if self._session is None:
            return False
        try:
            directory = os.path.dirname(self.storage_state_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            temp_path = f"{self.storage_state_path}.tmp"
            self._session.context.storage_state(path=temp_path)
            os.replace(temp_path, self.storage_state_path)
            logger.debug(f"Session state saved to {self.storage_state_path}")
            return True
        except Exception as e:
            logger.warning(f"Could not persist session state (non-fatal): {e}")
            return False

    @contextmanager
    def acquire_page(self) -> Iterator[Page]:
        """
        Open a fresh page on the shared context.

        The page is closed in all cases so element handles can never leak
        from one request into the next.
        """
        session = self._ensure_session()
        page = session.context.new_page()
        self.pages_opened += 1
        try:
            yield page
        finally:
            self.persist_state()
            try:
                page.close()
            except Exception as e:
                logger.debug(f"Page close failed: {e}")

    def _run_with_page(self, fn: Callable[[Page], Any]) -> Any:
        with self.acquire_page() as page:
            return fn(page)

    def run(self, fn: Callable[[Page], Any]) -> Any:
        """Run fn(page) on the browser thread and return its result."""
        return self._executor.submit(self._run_with_page, fn).result()

    def _teardown(self):
        session, self._session = self._session, None
        if session is None:
            return
        try:
            session.context.close()
        except Exception:
            pass
        try:
            session.browser.close()
        except Exception:
            pass

    def _close_on_thread(self):
        self.persist_state()
        self._teardown()
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception as e:
                logger.debug(f"Playwright stop failed: {e}")
            self._playwright = None

    def close(self):
        """Clean up browser resources. Safe to call more than once."""
        logger.info("Closing browser...")
        try:
            self._executor.submit(self._close_on_thread).result()
        except RuntimeError:
            # Executor already shut down
            return
        except Exception as e:
            logger.error(f"Error closing browser: {e}")
        self._executor.shutdown(wait=True)
        logger.info("Browser closed")
