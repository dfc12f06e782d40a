"""
Abstract base class for document store backends.

This module defines the interface that all storage backends must implement.
State-advancing writes are conditional: the caller states the value it
expects to replace, and the write is rejected (returning False, not
raising) when another caller already changed it.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from event_clock import VOTING_DEADLINE
from models import (
    EVENT_FLAGS,
    NON_TERMINAL_STATUSES,
    Event,
    Notification,
    Protest,
    ProtestStatus,
    Role,
    User,
    Vote,
)


class StorageError(Exception):
    """Base exception for storage-related errors."""
    pass


class StorageConnectionError(StorageError):
    """Raised when connection to storage backend fails."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


# Protest fields the lifecycle engine or an admin override may change
PROTEST_MUTABLE_FIELDS = {"status", "verdict", "vote_count"}


def check_event_flag(flag: str) -> str:
    """Reject anything that is not one of the three event flags."""
    if flag not in EVENT_FLAGS:
        raise ValueError(f"Unknown event flag: {flag}")
    return flag


def check_protest_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Validate and serialize a protest change set."""
    unknown = set(changes) - PROTEST_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Protest fields cannot be changed: {sorted(unknown)}")
    serialized = dict(changes)
    if isinstance(serialized.get("status"), ProtestStatus):
        serialized["status"] = serialized["status"].value
    if "vote_count" in serialized:
        serialized["vote_count"] = dict(serialized["vote_count"])
    return serialized


class DocumentStore(ABC):
    """
    Abstract base class for RaceSteward storage backends.

    Every read returns a fresh copy; callers never share record instances
    with the store.
    """

    # Events

    @abstractmethod
    def save_event(self, event: Event) -> None:
        """
        Create or replace an event.

        Raises:
            StorageWriteError: If writing fails
        """
        pass

    @abstractmethod
    def get_event(self, event_id: str) -> Event | None:
        """
        Load an event by id.

        Returns:
            Event, or None if it does not exist

        Raises:
            StorageReadError: If reading fails
        """
        pass

    @abstractmethod
    def list_events(self) -> list[Event]:
        """List all events, oldest reference timestamp first."""
        pass

    @abstractmethod
    def set_event_flag(self, event_id: str, flag: str) -> bool:
        """
        Conditionally set a notified flag from False to True.

        Args:
            event_id: Event identifier
            flag: One of ``models.EVENT_FLAGS``

        Returns:
            True if this call flipped the flag, False if it was already set
            or the event does not exist
        """
        pass

    @abstractmethod
    def claim_event_dispatch(
        self, event_id: str, flag: str, claimed_at: datetime, lease: timedelta
    ) -> bool:
        """
        Claim the right to send the notification guarded by ``flag``.

        The claim lands only while the flag is still False and no other
        caller holds a claim younger than ``lease``. An expired claim (its
        holder died before setting the flag) can be taken over.

        Args:
            event_id: Event identifier
            flag: One of ``models.EVENT_FLAGS``
            claimed_at: Time of this claim
            lease: How long a claim blocks other callers

        Returns:
            True if this caller now holds the claim
        """
        pass

    # Protests

    @abstractmethod
    def save_protest(self, protest: Protest) -> None:
        """Create or replace a protest."""
        pass

    @abstractmethod
    def get_protest(self, protest_id: str) -> Protest | None:
        """Load a protest by id, or None."""
        pass

    @abstractmethod
    def list_protests(
        self,
        event_id: str | None = None,
        statuses: tuple[ProtestStatus, ...] | None = None,
    ) -> list[Protest]:
        """
        List protests, optionally filtered by event and status.

        Returns:
            Protests ordered by creation time
        """
        pass

    @abstractmethod
    def update_protest_if(
        self,
        protest_id: str,
        expected_status: ProtestStatus,
        changes: dict[str, Any],
    ) -> bool:
        """
        Apply ``changes`` only if the stored status equals ``expected_status``.

        Returns:
            True if the write was applied, False if the precondition failed
            or the protest does not exist
        """
        pass

    @abstractmethod
    def update_protest(self, protest_id: str, changes: dict[str, Any]) -> bool:
        """
        Unconditionally apply ``changes`` (administrative override).

        Returns:
            True if the protest exists and was updated
        """
        pass

    # Votes

    @abstractmethod
    def add_vote(self, vote: Vote) -> bool:
        """
        Insert a vote unless this admin already voted on this protest.

        Returns:
            True if inserted, False if a vote with the same
            (protest_id, admin_id) already exists
        """
        pass

    @abstractmethod
    def list_votes(self, protest_id: str) -> list[Vote]:
        """List all votes for a protest."""
        pass

    # Users

    @abstractmethod
    def save_user(self, user: User) -> None:
        """Create or replace a user."""
        pass

    @abstractmethod
    def get_user(self, user_id: str) -> User | None:
        """Load a user by id, or None."""
        pass

    @abstractmethod
    def list_users(self, roles: tuple[Role, ...] | None = None) -> list[User]:
        """List users, optionally restricted to the given roles."""
        pass

    # In-app notifications

    @abstractmethod
    def add_notification(self, notification: Notification) -> None:
        """Store an in-app notification."""
        pass

    @abstractmethod
    def list_notifications(
        self, user_id: str, limit: int = 10, unread_only: bool = False
    ) -> list[Notification]:
        """List a user's notifications, newest first."""
        pass

    @abstractmethod
    def mark_notification_read(self, user_id: str, notification_id: str) -> bool:
        """Mark one notification as read. Returns False if not found."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """
        Check if the storage backend is available and ready.

        Returns:
            True if storage is accessible, False otherwise
        """
        pass

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the storage backend.

        Returns:
            Dictionary with backend type, status, and configuration
        """
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    # Optional methods with default implementations

    def list_active_events(self, now: datetime, grace: timedelta) -> list[Event]:
        """
        Events the sweeper must look at.

        An event is active while ``now`` is at most ``grace`` past its
        voting deadline, or while any of its protests is still open.
        Events without a reference timestamp are not yet startable.

        Default implementation scans every event - backends should
        override for efficiency.
        """
        open_event_ids = {
            protest.event_id
            for protest in self.list_protests(statuses=NON_TERMINAL_STATUSES)
        }
        active = []
        for event in self.list_events():
            if event.reference_timestamp is None:
                continue
            horizon = event.reference_timestamp + VOTING_DEADLINE + grace
            if now <= horizon or event.id in open_event_ids:
                active.append(event)
        return active

    def find_event(self, track_name: str, reference_timestamp: datetime) -> Event | None:
        """
        Find an event by track and race time (duplicate import check).

        Default implementation scans every event.
        """
        for event in self.list_events():
            if (
                event.track_name == track_name
                and event.reference_timestamp == reference_timestamp
            ):
                return event
        return None

    def close(self) -> None:
        """
        Close the storage connection and release resources.

        Default implementation does nothing - backends with connections
        should override this.
        """
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - closes connection."""
        self.close()
        return False
