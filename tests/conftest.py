from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from approver_bot.auth import AuthController, AuthState
from approver_bot.approval_pipeline import ApprovalPipeline
from approver_bot.guard import ConcurrencyGuard
from approver_bot.utils import OperatingWindow

DASHBOARD = "https://app.algosone.ai/dashboard"
LOGIN = "https://app.algosone.ai/login"
NOON = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class WallClock:
    """Settable UTC wall clock."""

    def __init__(self, now: datetime = NOON):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class FakeSession:
    """Runs work inline against a single mock page."""

    def __init__(self, page=None):
        self.page = page if page is not None else MagicMock(name="page")
        self.page.url = DASHBOARD
        self.runs = 0
        self.closed = False
        self.session = None

    def run(self, fn):
        self.runs += 1
        return fn(self.page)

    def persist_state(self):
        return True

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def wall():
    return WallClock()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def guard(wall):
    return ConcurrencyGuard(max_per_day=10, max_signal_age_s=90, clock=wall)


@pytest.fixture
def stages():
    """Mocked pipeline stages. Auth keeps the real login-URL check."""
    auth = MagicMock(spec=AuthController)
    real = AuthController(email="", password="")
    auth.is_login_url.side_effect = real.is_login_url
    auth.require_login.return_value = AuthState.LOGGED_IN
    auth.ensure_logged_in.return_value = AuthState.LOGGED_IN

    locator = MagicMock(name="locator")
    locator.find_targets.return_value = []
    locator.open_notifications.return_value = False
    locator.last_query = "scoped_role_button"

    return {
        'auth': auth,
        'overlays': MagicMock(name="overlays"),
        'locator': locator,
        'executor': MagicMock(name="executor"),
        'confirmation': MagicMock(name="confirmation"),
        'verifier': MagicMock(name="verifier"),
    }


@pytest.fixture
def make_pipeline(session, guard, wall, stages):
    def build(window=None, **overrides):
        options = dict(stages)
        options.update(overrides)
        return ApprovalPipeline(
            session=session,
            guard=guard,
            window=window or OperatingWindow(0, 24 * 60 - 1),
            heartbeat=MagicMock(name="heartbeat"),
            screenshot_on_error=False,
            reload_wait_ms=0,
            clock=wall,
            **options,
        )
    return build
