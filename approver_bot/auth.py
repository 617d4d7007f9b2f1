"""
Authentication state machine for the dashboard.

    LOGGED_OUT --ensure_logged_in--> AUTHENTICATING --+--> LOGGED_IN
                                                      |
                                                      +--> AUTH_FAILED

Detection has two paths:
- fast: the URL is a login route or an external identity provider
- content: the body text shows a login marker, or none of the dashboard markers

There is no retry loop here. A failed login is reported once; the heartbeat
or the next request will try again.
"""

import logging
import re
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

from approver_bot.config import (
    DEFAULT_SITE, EMAIL, LOGIN_METHOD, LOGIN_TIMEOUT_MS, PAGE_LOAD_TIMEOUT, PASSWORD, SiteProfile
)

logger = logging.getLogger('approver_bot.auth')

GOOGLE_ACCOUNTS_URL = re.compile(r"accounts\.google\.com", re.I)
SECRET_SELECTOR = 'input[type="password"]'
FIELD_WAIT_MS = 5000


class AuthState(Enum):
    LOGGED_IN = "LOGGED_IN"
    LOGGED_OUT = "LOGGED_OUT"
    AUTHENTICATING = "AUTHENTICATING"
    AUTH_FAILED = "AUTH_FAILED"


class AuthError(Exception):
    """Base class for authentication problems raised on the browser thread"""


class LoginRequiredError(AuthError):
    """Logged out and no credentials configured"""


class LoginFailedError(AuthError):
    """A login attempt ran and did not reach the dashboard"""


LocatorBuilder = Callable[[Any], Any]

# Identifier field strategies, most specific first
IDENTIFIER_FIELDS: List[Tuple[str, LocatorBuilder]] = [
    ("label", lambda page: page.get_by_label(re.compile(r"e-?mail|username", re.I))),
    ("placeholder", lambda page: page.get_by_placeholder(re.compile(r"e-?mail|username", re.I))),
    ("type_email", lambda page: page.locator('input[type="email"]')),
    ("name_attr", lambda page: page.locator('input[name="email"], input[name="username"]')),
]

SECRET_FIELDS: List[Tuple[str, LocatorBuilder]] = [
    ("label", lambda page: page.get_by_label(re.compile(r"password|passwort", re.I))),
    ("placeholder", lambda page: page.get_by_placeholder(re.compile(r"password|passwort", re.I))),
    ("type_password", lambda page: page.locator(SECRET_SELECTOR)),
]


class AuthController:
    """
    Detects and restores the logged-in state of a page.

    Usage:
        auth = AuthController()
        state = auth.ensure_logged_in(page)
        if state != AuthState.LOGGED_IN:
            ...
    """

    def __init__(self, site: SiteProfile = DEFAULT_SITE,
                 email: Optional[str] = None, password: Optional[str] = None,
                 login_method: str = LOGIN_METHOD,
                 login_timeout_ms: int = LOGIN_TIMEOUT_MS,
                 load_timeout_ms: int = PAGE_LOAD_TIMEOUT,
                 on_page_ready: Optional[Callable[[Any], Any]] = None):
        self.site = site
        self.email = EMAIL if email is None else email
        self.password = PASSWORD if password is None else password
        self.login_method = (login_method or "password").lower()
        self.login_timeout_ms = login_timeout_ms
        self.load_timeout_ms = load_timeout_ms
        # Called after every navigation (overlay suppression)
        self.on_page_ready = on_page_ready
        self.state = AuthState.LOGGED_OUT
        self.last_error: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.email and self.password)

    # =========================================================================
    # DETECTION
    # =========================================================================
    def is_login_url(self, url: str) -> bool:
        return any(p.search(url or "") for p in self.site.login_url_patterns)

    def _body_text(self, page) -> str:
        return (page.inner_text("body", timeout=self.load_timeout_ms) or "").lower()

    def detect(self, page) -> AuthState:
        """Classify the current page as LOGGED_IN or LOGGED_OUT."""
        if self.is_login_url(page.url):
            logger.info(f"On login URL - logged out: {page.url}")
            return AuthState.LOGGED_OUT

        try:
            text = self._body_text(page)
        except Exception as e:
            logger.warning(f"Could not read page text, assuming logged out: {e}")
            return AuthState.LOGGED_OUT

        for marker in self.site.login_text_markers:
            if marker in text:
                logger.info(f"Login marker '{marker}' visible - logged out")
                return AuthState.LOGGED_OUT

        if not any(marker in text for marker in self.site.dashboard_text_markers):
            logger.info("No dashboard markers visible - logged out")
            return AuthState.LOGGED_OUT

        return AuthState.LOGGED_IN

    # =========================================================================
    # STATE MACHINE
    # =========================================================================
    def _ready(self, page):
        if self.on_page_ready is not None:
            self.on_page_ready(page)

    def open_dashboard(self, page, timeout_ms: Optional[int] = None):
        page.goto(
            self.site.dashboard_url,
            wait_until="domcontentloaded",
            timeout=timeout_ms or self.load_timeout_ms,
        )
        self._ready(page)

    def ensure_logged_in(self, page, navigate: bool = True) -> AuthState:
        """
        Bring the page to the logged-in dashboard if possible.

        Returns:
            LOGGED_IN, LOGGED_OUT (no credentials) or AUTH_FAILED
        """
        if navigate:
            self.open_dashboard(page)

        self.state = self.detect(page)
        if self.state == AuthState.LOGGED_IN:
            return self.state

        if not self.has_credentials:
            logger.warning("Logged out and no credentials configured")
            return self.state

        self.state = AuthState.AUTHENTICATING
        logger.info(f"Attempting {self.login_method} login...")
        try:
            self.login(page)
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Login exception: {e}")
            self.state = AuthState.AUTH_FAILED
            return self.state

        self._ready(page)
        if self.detect(page) == AuthState.LOGGED_IN:
            logger.info("LOGIN CHECKPOINT PASSED")
            self.last_error = None
            self.state = AuthState.LOGGED_IN
        else:
            self.last_error = f"Still logged out after login (url={page.url})"
            logger.error(self.last_error)
            self.state = AuthState.AUTH_FAILED
        return self.state

    def require_login(self, page) -> AuthState:
        """
        ensure_logged_in, raising instead of returning a failure state.

        Raises:
            LoginRequiredError: logged out, no credentials
            LoginFailedError: login attempted and failed
        """
        state = self.ensure_logged_in(page)
        if state == AuthState.LOGGED_OUT:
            raise LoginRequiredError("Login required but no credentials configured")
        if state == AuthState.AUTH_FAILED:
            raise LoginFailedError(self.last_error or "Login failed")
        return state

    # =========================================================================
    # LOGIN FLOWS
    # =========================================================================
    def login(self, page):
        if self.login_method == "google":
            self._google_login(page)
        else:
            self._password_login(page)

    def _try_fill(self, page, fields: List[Tuple[str, LocatorBuilder]], value: str,
                  timeout: int = FIELD_WAIT_MS) -> Optional[str]:
        """Fill the first strategy whose field becomes visible. Returns its name."""
        for name, build in fields:
            try:
                loc = build(page).first
                loc.wait_for(state="visible", timeout=timeout)
                loc.fill(value)
                logger.debug(f"Filled field via '{name}'")
                return name
            except Exception as e:
                logger.debug(f"Fill failed with '{name}': {e}")
        return None

    def _try_click(self, locators: List[Any], timeout: int = 2000) -> bool:
        for loc in locators:
            try:
                if loc.count() == 0:
                    continue
                loc.click(timeout=timeout)
                return True
            except Exception as e:
                logger.debug(f"Click failed: {e}")
        return False

    def _wait_for_dashboard(self, page):
        try:
            page.wait_for_url(self.site.dashboard_url_pattern, timeout=self.login_timeout_ms)
        except Exception as e:
            logger.warning(f"Dashboard URL not reached ({e}); waiting for network idle")
            page.wait_for_load_state("networkidle", timeout=self.login_timeout_ms)

    def _password_login(self, page):
        if not self.is_login_url(page.url):
            page.goto(self.site.login_url, wait_until="domcontentloaded", timeout=self.login_timeout_ms)
            self._ready(page)

        if self._try_fill(page, IDENTIFIER_FIELDS, self.email) is None:
            raise LoginFailedError("Could not find identifier field")

        # Two-step forms only reveal the secret field after "continue"
        if page.locator(SECRET_SELECTOR).count() == 0:
            self._try_click([page.get_by_role("button", name=self.site.continue_button_pattern).first])

        if self._try_fill(page, SECRET_FIELDS, self.password) is None:
            raise LoginFailedError("Could not find password field")

        submitted = self._try_click([
            page.get_by_role("button", name=self.site.submit_button_pattern).first,
            page.locator('button[type="submit"]').first,
        ])
        if not submitted:
            logger.info("No submit button - pressing Enter")
            page.locator(SECRET_SELECTOR).first.press("Enter")

        logger.info("Waiting for dashboard after login...")
        self._wait_for_dashboard(page)

    def _google_login(self, page):
        if not GOOGLE_ACCOUNTS_URL.search(page.url or ""):
            button = page.get_by_role("button", name=self.site.identity_provider_button_pattern).first
            button.click(timeout=self.login_timeout_ms)
            page.wait_for_url(GOOGLE_ACCOUNTS_URL, timeout=self.login_timeout_ms)

        next_button = re.compile(r"next|weiter", re.I)
        page.get_by_role("textbox", name=re.compile(r"email|phone|e-mail", re.I)).fill(self.email)
        page.get_by_role("button", name=next_button).click()

        page.get_by_role("textbox", name=re.compile(r"password|passwort", re.I)).fill(self.password)
        page.get_by_role("button", name=next_button).click()

        page.wait_for_url(self.site.dashboard_url_pattern, timeout=self.login_timeout_ms)
