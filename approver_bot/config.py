"""
Approver Bot Configuration

SECURITY NOTE: Credentials should be set via environment variables:
    export EMAIL="you@example.com"
    export PASSWORD="your_password"
    export AUTH_TOKEN="shared_secret_for_callers"

Every value below can be overridden from the environment. Times are UTC.
"""

import os
import re
from dataclasses import dataclass
from typing import Tuple


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# TARGET DASHBOARD
# =============================================================================
DASH_URL = os.environ.get("DASH_URL", "https://app.algosone.ai/dashboard")
LOGIN_URL = os.environ.get("LOGIN_URL", "https://app.algosone.ai/login")
LOGIN_METHOD = os.environ.get("LOGIN_METHOD", "password").lower()  # "password" | "google"

# Load credentials from environment variables (no fallback values)
EMAIL = os.environ.get("EMAIL", "")
PASSWORD = os.environ.get("PASSWORD", "")


def has_credentials() -> bool:
    """True when both login credentials are configured."""
    return bool(EMAIL and PASSWORD)


def validate_credentials():
    """Validate that credentials are configured properly."""
    if not has_credentials():
        raise ValueError(
            "Dashboard credentials not configured. Set environment variables:\n"
            "  export EMAIL='you@example.com'\n"
            "  export PASSWORD='your_password'"
        )
    return True


# =============================================================================
# HTTP TRANSPORT
# =============================================================================
PORT = _env_int("PORT", 8080)
AUTH_TOKEN = os.environ.get("AUTH_TOKEN", "")  # empty = no caller auth

# =============================================================================
# OPERATING WINDOW (UTC, HH:MM, start <= end, no overnight wrap)
# =============================================================================
WINDOW_START = os.environ.get("WINDOW_START", "00:00")
WINDOW_END = os.environ.get("WINDOW_END", "23:59")

# =============================================================================
# HEARTBEAT (randomised cadence, minutes)
# =============================================================================
HEARTBEAT_MIN_MIN = _env_int("HEARTBEAT_MIN_MIN", 7)
HEARTBEAT_MAX_MIN = _env_int("HEARTBEAT_MAX_MIN", 12)
HEARTBEAT_JITTER_MAX_S = _env_int("HEARTBEAT_JITTER_MAX_S", 20)

# =============================================================================
# QUOTA / FRESHNESS
# =============================================================================
MAX_PER_DAY = _env_int("MAX_PER_DAY", 999999)
MAX_SIGNAL_AGE_S = _env_int("MAX_SIGNAL_AGE_S", 90)

# =============================================================================
# TIMEOUTS (milliseconds unless noted)
# =============================================================================
FAST_LOAD_MS = _env_int("FAST_LOAD_MS", 3000)          # goto timeout in fast mode
PAGE_LOAD_TIMEOUT = _env_int("PAGE_LOAD_TIMEOUT", 30000)
LOGIN_TIMEOUT_MS = _env_int("LOGIN_TIMEOUT_MS", 90000)
CLICK_WAIT_MS = _env_int("CLICK_WAIT_MS", 1500)        # settle after a reload
CLICK_ATTEMPT_TIMEOUT_MS = _env_int("CLICK_ATTEMPT_TIMEOUT_MS", 1500)
CONFIRM_WINDOW_MS = _env_int("CONFIRM_WINDOW_MS", 1500)
CONFIRM_SETTLE_MS = _env_int("CONFIRM_SETTLE_MS", 800)
VERIFY_WINDOW_MS = _env_int("VERIFY_WINDOW_MS", 6000)
VERIFY_POLL_MS = _env_int("VERIFY_POLL_MS", 150)
VERIFY_STRICT = _env_bool("VERIFY_STRICT", False)      # network signal only
OVERLAY_STEP_TIMEOUT_MS = _env_int("OVERLAY_STEP_TIMEOUT_MS", 1000)

# =============================================================================
# RETRIES
# =============================================================================
THOROUGH_MAX_CYCLES = _env_int("THOROUGH_MAX_CYCLES", 5)
MAX_CANDIDATES_PER_ROOT = 8

# =============================================================================
# BROWSER
# =============================================================================
HEADLESS_MODE = _env_bool("HEADLESS_MODE", True)
STORAGE_STATE_PATH = os.environ.get("STORAGE_STATE_PATH", "state/storageState.json")
DESKTOP_UA = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)
VIEWPORT = {"width": 1366, "height": 820}
OVERLAY_MIN_Z_INDEX = _env_int("OVERLAY_MIN_Z_INDEX", 1000)

# =============================================================================
# LOGGING / DEBUG
# =============================================================================
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FILE = os.environ.get("LOG_FILE", "logs/approver_bot.log")
SCREENSHOT_ON_ERROR = _env_bool("SCREENSHOT_ON_ERROR", True)
SCREENSHOT_DIR = os.environ.get("SCREENSHOT_DIR", "logs")


# =============================================================================
# SITE PROFILE (everything site-specific lives here, not in the core)
# =============================================================================
def _rx(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.I)


@dataclass(frozen=True)
class SiteProfile:
    """
    Site adapter for the dashboard being automated.

    The auth state machine, locator and verifier only consult these values,
    so supporting a markup change means editing a profile, not the core.
    """
    dashboard_url: str = DASH_URL
    login_url: str = LOGIN_URL

    # Fast path: URL says we are logged out
    login_url_patterns: Tuple[re.Pattern, ...] = (
        _rx(r"app\.algosone\.ai/login"),
        _rx(r"accounts\.google\.com"),
    )
    dashboard_url_pattern: re.Pattern = _rx(r"app\.algosone\.ai/(dash|dashboard)")

    # Slow path: page text says we are logged out / logged in
    login_text_markers: Tuple[str, ...] = (
        "forgot password",
        "sign in to your account",
        "log in to your account",
        "continue with google",
    )
    dashboard_text_markers: Tuple[str, ...] = (
        "1-click trade",
        "portfolio",
        "dashboard",
        "log out",
        "logout",
    )

    # Target action
    target_label: str = "Approve"
    target_label_pattern: re.Pattern = _rx(r"^\s*approve\s*$")
    target_scope_pattern: re.Pattern = _rx(r"1\s*-?\s*click\s*trade")
    actions_ribbon_pattern: re.Pattern = _rx(r"new actions available|actions available")
    notifications_pattern: re.Pattern = _rx(r"notifications|bell")
    confirm_label_pattern: re.Pattern = _rx(r"^\s*(approve|confirm|yes|ok|continue)\s*$")

    # Outcome signals
    success_text_pattern: re.Pattern = _rx(r"approved|success|confirmed|trade (placed|executed)")
    approve_url_pattern: re.Pattern = _rx(r"approve|confirm|accept")

    # Overlays
    policy_dialog_text: str = "Cookie Policy"
    consent_accept_pattern: re.Pattern = _rx(
        r"^\s*(accept all|accept|i agree|agree|got it|okay|ok|verstanden|zustimmen)\s*$"
    )
    dialog_back_pattern: re.Pattern = _rx(r"^\s*(back|close|zurück|schließen|dismiss)\s*$")

    # Login form
    identity_provider_button_pattern: re.Pattern = _rx(
        r"google|continue with google|sign in with google|weiter mit google"
    )
    submit_button_pattern: re.Pattern = _rx(r"sign in|log in|anmelden|login")
    continue_button_pattern: re.Pattern = _rx(r"^\s*(continue|next|weiter)\s*$")


DEFAULT_SITE = SiteProfile()
