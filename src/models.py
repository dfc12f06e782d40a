"""
Typed records for RaceSteward.

Events (races), protests, votes, users and in-app notifications are
plain dataclasses. ``from_dict`` is the ingestion edge: it normalizes
legacy camelCase documents to snake_case and rejects unknown
statuses, verdicts and roles instead of passing loose dicts around.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from event_clock import parse_reference_timestamp


class ValidationError(ValueError):
    """Raised when input or a stored document fails validation."""
    pass


class NotFoundError(LookupError):
    """Raised when a referenced record does not exist."""
    pass


class PermissionDeniedError(Exception):
    """Raised when the caller lacks the role required for an action."""
    pass


class ProtestStatus(Enum):
    """Protest lifecycle states."""
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    CONCLUDED = "concluded"
    INCONCLUSIVE = "inconclusive"

    @property
    def is_terminal(self) -> bool:
        return self in (ProtestStatus.CONCLUDED, ProtestStatus.INCONCLUSIVE)


NON_TERMINAL_STATUSES = (ProtestStatus.PENDING, ProtestStatus.UNDER_REVIEW)


class VoteChoice(Enum):
    """A single admin's verdict."""
    PUNISH = "punish"
    ACQUIT = "acquit"


class Role(Enum):
    """User roles."""
    DRIVER = "driver"
    ADMIN = "admin"
    SUPER_ADMIN = "super-admin"


class NotificationType(Enum):
    """Deadline-driven notification kinds."""
    PROTEST_DEADLINE_WARNING = "protest_deadline_warning"
    VOTING_OPENED = "voting_opened"
    VOTING_DEADLINE_WARNING = "voting_deadline_warning"
    VERDICT_READY = "verdict_ready"


class IncidentType(Enum):
    """Incident categories a driver can protest."""
    COLLISION = "collision"
    BLOCKING = "blocking"
    UNSAFE_REJOIN = "unsafe_rejoin"
    OTHER = "other"


# Event-level idempotency flags, in lifecycle order
EVENT_FLAGS = (
    "notified_protest_warning",
    "notified_voting_open",
    "notified_voting_warning",
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    """Generate a document id."""
    return uuid.uuid4().hex


def _pick(data: dict[str, Any], key: str, legacy_key: str | None = None, default: Any = None) -> Any:
    """Read ``key`` from a document, falling back to its legacy camelCase name."""
    if key in data:
        return data[key]
    if legacy_key and legacy_key in data:
        return data[legacy_key]
    return default


def parse_enum(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field_name} '{value}' (expected one of: {allowed})"
        ) from None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _require_str(data: dict[str, Any], key: str, legacy_key: str | None = None) -> str:
    value = _pick(data, key, legacy_key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Missing required field: {key}")
    return value


@dataclass
class Driver:
    """A driver who took part in an event."""
    name: str
    steam_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "steam_id": self.steam_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Driver":
        return cls(
            name=str(data.get("name", "")),
            steam_id=str(_pick(data, "steam_id", "steamId", "")),
        )


@dataclass
class Event:
    """
    A race. Its reference timestamp anchors every protest lifecycle.

    The three ``notified_*`` flags only ever go from False to True and
    are written exclusively by the notification dispatcher.
    """
    id: str
    reference_timestamp: datetime | None
    track_name: str = ""
    event_name: str = ""
    server_name: str = ""
    session_type: str = "RACE"
    drivers: list[Driver] = field(default_factory=list)
    notified_protest_warning: bool = False
    notified_voting_open: bool = False
    notified_voting_warning: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def driver_name(self, steam_id: str) -> str | None:
        for driver in self.drivers:
            if driver.steam_id == steam_id:
                return driver.name
        return None

    def has_driver(self, steam_id: str) -> bool:
        return any(driver.steam_id == steam_id for driver in self.drivers)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "reference_timestamp": _iso(self.reference_timestamp),
            "track_name": self.track_name,
            "event_name": self.event_name,
            "server_name": self.server_name,
            "session_type": self.session_type,
            "drivers": [driver.to_dict() for driver in self.drivers],
            "notified_protest_warning": self.notified_protest_warning,
            "notified_voting_open": self.notified_voting_open,
            "notified_voting_warning": self.notified_voting_warning,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        # Legacy race documents keep the race time under "date"
        reference = _pick(data, "reference_timestamp", "referenceTimestamp")
        if reference is None:
            reference = data.get("date")
        return cls(
            id=_require_str(data, "id"),
            reference_timestamp=parse_reference_timestamp(reference),
            track_name=str(_pick(data, "track_name", "trackName", "")),
            event_name=str(_pick(data, "event_name", "eventName", "")),
            server_name=str(_pick(data, "server_name", "serverName", "")),
            session_type=str(_pick(data, "session_type", "type", "RACE")),
            drivers=[Driver.from_dict(d) for d in data.get("drivers") or []],
            notified_protest_warning=bool(
                _pick(data, "notified_protest_warning", "notifiedProtestWarning", False)
            ),
            notified_voting_open=bool(
                _pick(data, "notified_voting_open", "notifiedVotingOpen", False)
            ),
            notified_voting_warning=bool(
                _pick(data, "notified_voting_warning", "notifiedVotingWarning", False)
            ),
            created_at=parse_reference_timestamp(_pick(data, "created_at", "createdAt"))
            or utcnow(),
        )


@dataclass
class Protest:
    """A formal accusation tied to an event."""
    id: str
    event_id: str
    accuser_id: str
    accused_id: str
    status: ProtestStatus = ProtestStatus.PENDING
    verdict: str | None = None
    vote_count: dict[str, int] = field(default_factory=lambda: {"punish": 0, "acquit": 0})
    lap: int | None = None
    description: str = ""
    video_url: str = ""
    incident_type: IncidentType = IncidentType.OTHER
    video_minute: str = ""
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "accuser_id": self.accuser_id,
            "accused_id": self.accused_id,
            "status": self.status.value,
            "verdict": self.verdict,
            "vote_count": dict(self.vote_count),
            "lap": self.lap,
            "description": self.description,
            "video_url": self.video_url,
            "incident_type": self.incident_type.value,
            "video_minute": self.video_minute,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Protest":
        vote_count = _pick(data, "vote_count", "voteCount") or {}
        lap = data.get("lap")
        return cls(
            id=_require_str(data, "id"),
            event_id=_require_str(data, "event_id", "raceId"),
            accuser_id=_require_str(data, "accuser_id", "accuserId"),
            accused_id=_require_str(data, "accused_id", "accusedId"),
            status=parse_enum(ProtestStatus, data.get("status", "pending"), "status"),
            verdict=data.get("verdict"),
            vote_count={
                "punish": int(vote_count.get("punish", 0)),
                "acquit": int(vote_count.get("acquit", 0)),
            },
            lap=int(lap) if lap is not None else None,
            description=str(data.get("description", "")),
            video_url=str(_pick(data, "video_url", "videoUrl", "")),
            incident_type=parse_enum(
                IncidentType, _pick(data, "incident_type", "incidentType", "other"), "incident_type"
            ),
            video_minute=str(_pick(data, "video_minute", "videoMinute", "")),
            created_at=parse_reference_timestamp(_pick(data, "created_at", "createdAt"))
            or utcnow(),
        )


@dataclass
class Vote:
    """An admin's vote on a protest. Immutable once stored."""
    protest_id: str
    admin_id: str
    verdict: VoteChoice
    reason: str
    created_at: datetime = field(default_factory=utcnow)
    admin_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "protest_id": self.protest_id,
            "admin_id": self.admin_id,
            "admin_name": self.admin_name,
            "verdict": self.verdict.value,
            "reason": self.reason,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Vote":
        return cls(
            protest_id=_require_str(data, "protest_id", "protestId"),
            admin_id=_require_str(data, "admin_id", "adminId"),
            verdict=parse_enum(VoteChoice, data.get("verdict"), "verdict"),
            reason=str(data.get("reason", "")),
            created_at=parse_reference_timestamp(_pick(data, "created_at", "createdAt"))
            or utcnow(),
            admin_name=str(_pick(data, "admin_name", "adminName", "")),
        )


@dataclass
class User:
    """A league member with an optional push device token."""
    id: str
    display_name: str = ""
    role: Role = Role.DRIVER
    fcm_token: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in (Role.ADMIN, Role.SUPER_ADMIN)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "role": self.role.value,
            "fcm_token": self.fcm_token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        return cls(
            id=_require_str(data, "id", "uid"),
            display_name=str(_pick(data, "display_name", "displayName") or ""),
            role=parse_enum(Role, data.get("role") or "driver", "role"),
            fcm_token=_pick(data, "fcm_token", "fcmToken"),
        )


@dataclass
class Notification:
    """An in-app notification shown in a user's notification bell."""
    user_id: str
    type: NotificationType
    title: str
    message: str
    link: str = ""
    read: bool = False
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "link": self.link,
            "read": self.read,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Notification":
        return cls(
            id=_require_str(data, "id"),
            user_id=_require_str(data, "user_id", "userId"),
            type=parse_enum(NotificationType, data.get("type"), "type"),
            title=str(data.get("title", "")),
            message=str(data.get("message", "")),
            link=str(data.get("link") or ""),
            read=bool(data.get("read", False)),
            created_at=parse_reference_timestamp(_pick(data, "created_at", "createdAt"))
            or utcnow(),
        )
