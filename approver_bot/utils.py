"""
Utility Functions for Approver Bot
"""

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence, Tuple

import pytz

logger = logging.getLogger('approver_bot.utils')

UTC = pytz.utc

MINUTES_PER_DAY = 24 * 60


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def parse_time_string(time_str: str) -> Tuple[int, int]:
    """
    Parse a time string in HH:MM format to (hour, minute) tuple.

    Args:
        time_str: Time string like "09:45" or "15:30"

    Returns:
        Tuple of (hour, minute) as integers

    Raises:
        ValueError: on malformed input or out-of-range values
    """
    parts = time_str.strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"Expected HH:MM, got {time_str!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Time out of range: {time_str!r}")
    return hour, minute


def to_minutes(time_str: str) -> int:
    hour, minute = parse_time_string(time_str)
    return hour * 60 + minute


def utc_to_local_time(utc_hour: int, utc_minute: int) -> str:
    """
    Convert a UTC time of day to local machine time.

    The schedule library uses LOCAL time, not timezone-aware times.
    This function calculates what local time corresponds to a given UTC time.

    Returns:
        String in HH:MM format for local time
    """
    now_utc = datetime.now(UTC)
    target_utc = now_utc.replace(hour=utc_hour, minute=utc_minute, second=0, microsecond=0)
    target_local = target_utc.astimezone().replace(tzinfo=None)
    local_time_str = target_local.strftime("%H:%M")
    logger.debug(f"UTC {utc_hour:02d}:{utc_minute:02d} -> Local {local_time_str}")
    return local_time_str


# =============================================================================
# OPERATING WINDOW
# =============================================================================
@dataclass(frozen=True)
class OperatingWindow:
    """
    UTC time-of-day range during which actions and heartbeats run.

    Both ends are inclusive. Overnight wraparound (start > end) is not
    supported and rejected at construction.
    """
    start_minute: int
    end_minute: int

    def __post_init__(self):
        for value in (self.start_minute, self.end_minute):
            if not 0 <= value < MINUTES_PER_DAY:
                raise ValueError(f"Minute of day out of range: {value}")
        if self.start_minute > self.end_minute:
            raise ValueError(
                f"Operating window start ({self.start_minute}) must not be after "
                f"end ({self.end_minute}); overnight windows are unsupported"
            )

    @classmethod
    def from_strings(cls, start: str, end: str) -> "OperatingWindow":
        return cls(to_minutes(start), to_minutes(end))

    @staticmethod
    def _minute_of_day(now: datetime) -> int:
        now = now.astimezone(timezone.utc) if now.tzinfo else now
        return now.hour * 60 + now.minute

    def contains(self, now: Optional[datetime] = None) -> bool:
        current = self._minute_of_day(now or utc_now())
        return self.start_minute <= current <= self.end_minute

    def seconds_until_open(self, now: Optional[datetime] = None) -> int:
        """Seconds until the window next opens (0 if it is open now)."""
        now = now or utc_now()
        if self.contains(now):
            return 0
        now = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
        opens = now.replace(
            hour=self.start_minute // 60, minute=self.start_minute % 60,
            second=0, microsecond=0,
        )
        if opens <= now:
            opens += timedelta(days=1)
        return int((opens - now).total_seconds())

    def describe(self) -> str:
        return (
            f"{self.start_minute // 60:02d}:{self.start_minute % 60:02d}-"
            f"{self.end_minute // 60:02d}:{self.end_minute % 60:02d} UTC"
        )


# =============================================================================
# SIGNAL RACING
# =============================================================================
Predicate = Callable[[], bool]


def first_true(predicates: Sequence[Tuple[str, Predicate]], timeout_s: float,
               poll_interval_s: float = 0.15,
               clock: Callable[[], float] = time.monotonic,
               sleep: Callable[[float], None] = time.sleep) -> Optional[str]:
    """
    Poll a set of named predicates until one is true or the deadline passes.

    Predicates are evaluated in the given order on every round, so for a fixed
    environment the winner is always the same. A predicate that raises counts
    as False for that round.

    Args:
        predicates: (name, predicate) pairs
        timeout_s: shared deadline for all predicates
        poll_interval_s: pause between rounds
        clock: monotonic clock, injectable for tests
        sleep: pause function; browser callers pass page.wait_for_timeout
               so Playwright keeps pumping events while we wait

    Returns:
        Name of the first predicate that returned True, or None on timeout
    """
    deadline = clock() + timeout_s
    while True:
        for name, predicate in predicates:
            try:
                if predicate():
                    return name
            except Exception as e:
                logger.debug(f"Predicate '{name}' raised: {e}")
        remaining = deadline - clock()
        if remaining <= 0:
            return None
        sleep(min(poll_interval_s, remaining))


# =============================================================================
# LOGGING
# =============================================================================
def setup_logging(log_level='INFO', log_file='logs/approver_bot.log'):
    """Configure logging for the bot"""
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )

    # Approval-specific logger
    approvals_logger = logging.getLogger('approvals')
    approvals_handler = logging.FileHandler(os.path.join(log_dir or '.', 'approvals.log'))
    approvals_handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))
    approvals_logger.addHandler(approvals_handler)

    return logging.getLogger('approver_bot')


def log_approval(run_id: str, mode: str, reason: str, signal: Optional[str], elapsed_ms: int):
    """Log an approval outcome to the approvals log"""
    approvals_logger = logging.getLogger('approvals')
    approvals_logger.info(f"{run_id} | {mode} | {reason} | {signal or '-'} | {elapsed_ms}ms")


def take_debug_screenshot(page, name: str, directory: str = 'logs') -> str:
    """
    Take a screenshot and return the full path.

    Never raises; an empty string means the screenshot could not be taken.
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = os.path.join(directory, f"{name}_{timestamp}.png")
    try:
        os.makedirs(directory, exist_ok=True)
        page.screenshot(path=filepath, full_page=True)
        logger.info(f"Screenshot saved: {filepath}")
        return filepath
    except Exception as e:
        logger.warning(f"Screenshot failed: {e}")
        return ""
