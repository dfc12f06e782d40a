"""
Protest filing, voting and administrative overrides.

Filing and voting are only accepted inside their windows:
drivers file during submission (first 24h after the race), admins vote
during voting (24h to 48h). Each admin votes at most once per protest;
a second vote is rejected, never overwritten.
"""

import logging
from datetime import datetime
from typing import Any

from event_clock import Phase, phase_of
from lifecycle import ProtestNotFoundError
from models import (
    IncidentType,
    NotFoundError,
    Protest,
    ProtestStatus,
    Role,
    User,
    ValidationError,
    Vote,
    VoteChoice,
    new_id,
    parse_enum,
    utcnow,
)
from permissions import (
    clean_steam_id,
    is_admin,
    is_super_admin,
    require_admin,
    same_driver,
)
from storage.base import DocumentStore

logger = logging.getLogger(__name__)


class DuplicateVoteError(ValidationError):
    """Raised when an admin votes twice on the same protest."""
    pass


class WindowClosedError(ValidationError):
    """Raised when filing or voting outside its window."""
    pass


class ProtestService:
    """Driver- and admin-facing protest operations."""

    def __init__(self, store: DocumentStore, super_admin_id: str | None = None):
        self.store = store
        self.super_admin_id = super_admin_id

    def resolve_user(self, user_id: str) -> User | None:
        user = self.store.get_user(user_id) or self.store.get_user(clean_steam_id(user_id))
        if user is None and is_super_admin(user_id, self.super_admin_id):
            # The configured super admin need not have a profile
            user = User(id=clean_steam_id(user_id), role=Role.SUPER_ADMIN)
        return user

    def _protest(self, protest_id: str) -> Protest:
        protest = self.store.get_protest(protest_id)
        if protest is None:
            raise ProtestNotFoundError(f"Protest not found: {protest_id}")
        return protest

    def file_protest(
        self,
        accuser_id: str,
        event_id: str,
        accused_id: str,
        video_url: str,
        lap: int | None = None,
        description: str = "",
        incident_type: str | IncidentType = IncidentType.OTHER,
        video_minute: str = "",
        now: datetime | None = None,
    ) -> Protest:
        """
        File a new protest; it starts pending.

        Raises:
            NotFoundError: If the event does not exist
            ValidationError: On self-protest, missing video, unknown accused
            WindowClosedError: Outside the submission window
        """
        now = now or utcnow()
        if not accuser_id or not accused_id:
            raise ValidationError("Accuser and accused are required")
        if same_driver(accuser_id, accused_id):
            raise ValidationError("You cannot protest against yourself")
        if not video_url or not video_url.strip():
            raise ValidationError("A video link is required")
        if lap is not None and lap < 0:
            raise ValidationError("Lap must not be negative")

        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event not found: {event_id}")

        info = phase_of(now, event.reference_timestamp)
        if not info.startable:
            raise WindowClosedError("This race has no start time yet")
        if info.phase is not Phase.SUBMISSION:
            raise WindowClosedError("The protest window for this race has closed")

        accused_key = clean_steam_id(accused_id)
        if event.drivers and not any(
            clean_steam_id(d.steam_id) == accused_key for d in event.drivers
        ):
            raise ValidationError(f"Driver {accused_id} did not take part in this race")

        protest = Protest(
            id=new_id(),
            event_id=event.id,
            accuser_id=clean_steam_id(accuser_id),
            accused_id=accused_key,
            lap=lap,
            description=description.strip(),
            video_url=video_url.strip(),
            incident_type=parse_enum(IncidentType, incident_type, "incident_type"),
            video_minute=video_minute,
            created_at=now,
        )
        self.store.save_protest(protest)
        logger.info(f"Protest {protest.id} filed for event {event.id}")
        return protest

    def cast_vote(
        self,
        protest_id: str,
        admin_id: str,
        verdict: str | VoteChoice,
        reason: str,
        now: datetime | None = None,
    ) -> Vote:
        """
        Record an admin's vote.

        Raises:
            PermissionDeniedError: If the voter is not an admin
            DuplicateVoteError: If this admin already voted
            WindowClosedError: Outside the voting window or after conclusion
        """
        now = now or utcnow()
        admin = require_admin(self.resolve_user(admin_id), self.super_admin_id)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required")
        choice = parse_enum(VoteChoice, verdict, "verdict")

        protest = self._protest(protest_id)
        if protest.status.is_terminal:
            raise WindowClosedError("This protest has already been decided")
        event = self.store.get_event(protest.event_id)
        info = phase_of(now, event.reference_timestamp if event else None)
        if info.phase is not Phase.VOTING:
            raise WindowClosedError("Voting is not open for this protest")

        vote = Vote(
            protest_id=protest.id,
            admin_id=clean_steam_id(admin.id),
            admin_name=admin.display_name or "Admin",
            verdict=choice,
            reason=reason.strip(),
            created_at=now,
        )
        if not self.store.add_vote(vote):
            raise DuplicateVoteError("You have already voted on this protest")
        return vote

    def override_status(
        self,
        protest_id: str,
        admin_id: str,
        status: str | ProtestStatus,
        verdict: str | None = None,
    ) -> Protest:
        """
        Force a protest's status (administrative override).

        The lifecycle engine treats this as an out-of-band write: it never
        undoes an override, it only advances from whatever it finds.
        """
        require_admin(self.resolve_user(admin_id), self.super_admin_id)
        new_status = parse_enum(ProtestStatus, status, "status")
        self._protest(protest_id)

        changes: dict[str, Any] = {"status": new_status}
        if verdict is not None:
            changes["verdict"] = verdict
        self.store.update_protest(protest_id, changes)
        logger.warning(
            f"Protest {protest_id} overridden to {new_status.value}",
            extra={"admin_id": admin_id},
        )
        return self._protest(protest_id)

    def list_votes(self, protest_id: str, viewer_id: str) -> list[Vote]:
        """Votes are visible to admins only."""
        require_admin(self.resolve_user(viewer_id), self.super_admin_id)
        self._protest(protest_id)
        return self.store.list_votes(protest_id)

    def get_detail(
        self, protest_id: str, viewer_id: str | None = None, now: datetime | None = None
    ) -> dict[str, Any]:
        """Protest with its event phase, and votes when the viewer is an admin."""
        now = now or utcnow()
        protest = self._protest(protest_id)
        event = self.store.get_event(protest.event_id)
        info = phase_of(now, event.reference_timestamp if event else None)

        detail = protest.to_dict()
        detail["phase"] = info.to_dict()
        detail["event"] = (
            {"id": event.id, "track_name": event.track_name, "event_name": event.event_name}
            if event else None
        )
        viewer = self.resolve_user(viewer_id) if viewer_id else None
        if is_admin(viewer, self.super_admin_id):
            votes = self.store.list_votes(protest.id)
            detail["votes"] = [vote.to_dict() for vote in votes]
            detail["has_voted"] = any(same_driver(v.admin_id, viewer.id) for v in votes)
        return detail
