"""
Event clock: maps elapsed time since a race to a protest lifecycle phase.

Windows relative to the race's reference timestamp T:
    [T, T+24h)   submission  - drivers may file protests
    [T+24h, T+48h) voting    - admins vote
    [T+48h, ...)   concluded - verdicts are computed

Everything here is pure and total: bad or missing reference timestamps
mean "not yet startable" rather than an exception.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

SUBMISSION_WINDOW = timedelta(hours=24)
VOTING_DEADLINE = timedelta(hours=48)

# "1 hour left" notifications
WARNING_LEAD = timedelta(hours=1)
DEFAULT_WARNING_BUFFER_MINUTES = 15

# Epoch values above this are milliseconds
_EPOCH_MS_THRESHOLD = 10**11


class Phase(Enum):
    """Lifecycle phase of an event, in chronological order."""
    SUBMISSION = "submission"
    VOTING = "voting"
    CONCLUDED = "concluded"

    @property
    def order(self) -> int:
        return _PHASE_ORDER[self]

    def at_least(self, other: "Phase") -> bool:
        """True if this phase is ``other`` or later."""
        return self.order >= other.order


_PHASE_ORDER = {Phase.SUBMISSION: 0, Phase.VOTING: 1, Phase.CONCLUDED: 2}


@dataclass(frozen=True)
class PhaseInfo:
    """Phase at a given instant plus the distance to the next boundary."""
    phase: Phase
    time_remaining: timedelta
    next_boundary: datetime | None = None

    @property
    def startable(self) -> bool:
        return self.time_remaining != timedelta.max

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "time_remaining_seconds": (
                None if self.time_remaining == timedelta.max
                else int(self.time_remaining.total_seconds())
            ),
            "time_remaining": format_time_remaining(self.time_remaining),
            "next_boundary": self.next_boundary.isoformat() if self.next_boundary else None,
        }


NOT_STARTABLE = PhaseInfo(phase=Phase.SUBMISSION, time_remaining=timedelta.max)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_reference_timestamp(value: Any) -> datetime | None:
    """
    Normalize a stored timestamp to an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (a trailing ``Z`` included) and
    epoch numbers in seconds or milliseconds. Anything else is None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _as_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def submission_deadline(reference_timestamp: Any) -> datetime | None:
    reference = parse_reference_timestamp(reference_timestamp)
    return reference + SUBMISSION_WINDOW if reference else None


def voting_deadline(reference_timestamp: Any) -> datetime | None:
    reference = parse_reference_timestamp(reference_timestamp)
    return reference + VOTING_DEADLINE if reference else None


def phase_of(now: datetime, reference_timestamp: Any) -> PhaseInfo:
    """
    Compute the lifecycle phase at ``now``.

    Args:
        now: Current instant (naive values are taken as UTC)
        reference_timestamp: When the race happened, in any form accepted
            by ``parse_reference_timestamp``

    Returns:
        PhaseInfo with the time left until the next boundary, clamped to
        zero once the voting deadline has passed.
    """
    reference = parse_reference_timestamp(reference_timestamp)
    if reference is None:
        return NOT_STARTABLE

    now = _as_utc(now)
    opens = reference + SUBMISSION_WINDOW
    closes = reference + VOTING_DEADLINE

    if now < opens:
        return PhaseInfo(Phase.SUBMISSION, opens - now, opens)
    if now < closes:
        return PhaseInfo(Phase.VOTING, closes - now, closes)
    return PhaseInfo(Phase.CONCLUDED, timedelta(0), None)


def is_warning_window(
    now: datetime,
    boundary: datetime | None,
    buffer_minutes: int = DEFAULT_WARNING_BUFFER_MINUTES,
) -> bool:
    """
    True while ``now`` is in the "one hour left" window before ``boundary``.

    The window is [boundary - 1h - buffer, boundary). The buffer must be at
    least half the sweep interval so that one sweep always lands inside it.
    """
    if boundary is None:
        return False
    now = _as_utc(now)
    boundary = _as_utc(boundary)
    opens = boundary - WARNING_LEAD - timedelta(minutes=buffer_minutes)
    return opens <= now < boundary


def format_time_remaining(remaining: timedelta) -> str:
    """Render a remaining duration as ``"5h 12m"``."""
    if remaining == timedelta.max:
        return "not scheduled"
    total_minutes = max(0, int(remaining.total_seconds() // 60))
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m"
