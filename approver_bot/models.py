"""
Shared types for the approval pipeline.

Nothing here touches the browser; these are the values that flow between
the guard, the pipeline stages and the transport layer.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


class ExecutionMode(Enum):
    """How hard the pipeline tries"""
    FAST = "fast"          # skip auth, single attempt, minimal latency
    THOROUGH = "thorough"  # full auth handling + reload/retry cycles


class Signal(Enum):
    """Which evidence decided an outcome"""
    TOAST = "toast"
    REMOVED = "removed"
    DISABLED = "disabled"
    TEXT_CHANGED = "text-changed"
    NETWORK = "network"
    TIMEOUT = "timeout"


class ApprovalReason(Enum):
    """Result codes returned to callers"""
    # Success
    APPROVED_FAST = "APPROVED_FAST"
    APPROVED_DIRECT = "APPROVED_DIRECT"
    APPROVED_AFTER_REFRESH = "APPROVED_AFTER_REFRESH"
    APPROVED_VIA_BELL = "APPROVED_VIA_BELL"

    # Rejected before touching the browser
    OUTSIDE_WINDOW = "OUTSIDE_WINDOW"
    DAILY_LIMIT = "DAILY_LIMIT"
    BUSY = "BUSY"
    SIGNAL_TOO_OLD = "SIGNAL_TOO_OLD"

    # Failed inside the pipeline
    LOGIN_REQUIRED = "LOGIN_REQUIRED"
    LOGIN_FAILED = "LOGIN_FAILED"
    NO_TARGET_FOUND = "NO_TARGET_FOUND"
    CLICK_FAILED = "CLICK_FAILED"
    VERIFY_TIMEOUT = "VERIFY_TIMEOUT"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"


class SessionStatus(Enum):
    OK = "OK"
    LOGIN_REQUIRED = "LOGIN_REQUIRED"
    FAIL = "FAIL"


TriggerTime = Union[datetime, float, int, str, None]


def coerce_trigger_time(value: TriggerTime, now: Optional[datetime] = None) -> datetime:
    """
    Normalise a trigger timestamp to an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC), epoch seconds, epoch
    milliseconds, ISO-8601 strings, or None (meaning "received just now").

    Raises:
        ValueError: if a string cannot be parsed or the epoch is out of range
    """
    if value is None:
        return now or datetime.now(timezone.utc)

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text)
        except ValueError:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            return coerce_trigger_time(parsed)

    # Epoch: anything past year ~33658 in seconds is really milliseconds
    seconds = float(value)
    if seconds > 1e12:
        seconds = seconds / 1000.0
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError) as e:
        raise ValueError(f"Trigger timestamp out of range: {value}") from e


@dataclass
class ActionRequest:
    """One inbound trigger. Ephemeral, never persisted."""
    trigger_ts: datetime
    mode: ExecutionMode = ExecutionMode.FAST
    run_id: str = ""

    def __post_init__(self):
        if not self.run_id:
            self.run_id = str(uuid.uuid4())[:8]
        if isinstance(self.mode, str):
            self.mode = ExecutionMode(self.mode.lower())
        self.trigger_ts = coerce_trigger_time(self.trigger_ts)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.trigger_ts).total_seconds()


@dataclass
class ActionOutcome:
    """Result of an approval request"""
    success: bool
    reason: ApprovalReason
    signal: Optional[Signal] = None
    elapsed_ms: int = 0
    method: Optional[str] = None
    message: str = ""
    details: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.success

    def to_dict(self) -> dict:
        """Transport-friendly representation"""
        data: dict = {
            "ok": self.success,
            "reason": self.reason.value,
            "signal": self.signal.value if self.signal else None,
            "elapsed_ms": self.elapsed_ms,
        }
        if self.method:
            data["method"] = self.method
        if self.message:
            data["message"] = self.message
        return data

    @classmethod
    def rejected(cls, reason: ApprovalReason, message: str = "") -> "ActionOutcome":
        return cls(success=False, reason=reason, message=message)


@dataclass
class VerificationResult:
    """What the verifier concluded about a single click"""
    success: bool
    signal: Signal
    elapsed_ms: int
    detail: Any = None
