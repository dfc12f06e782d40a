"""
In-memory storage backend.

This backend keeps documents in process memory only, useful for:
- Unit testing
- Development
- Single-process deployments where losing state on restart is fine
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from models import (
    Event,
    Notification,
    Protest,
    ProtestStatus,
    Role,
    User,
    Vote,
)
from storage.base import (
    DocumentStore,
    check_event_flag,
    check_protest_changes,
)


class MemoryStorage(DocumentStore):
    """
    In-memory document store.

    Documents are held in their serialized dict form, so every read
    builds a fresh record. All conditional writes happen under one lock.
    """

    def __init__(self):
        """Initialize empty memory storage."""
        self._events: dict[str, dict[str, Any]] = {}
        self._protests: dict[str, dict[str, Any]] = {}
        self._votes: dict[str, dict[str, dict[str, Any]]] = {}
        self._users: dict[str, dict[str, Any]] = {}
        self._notifications: dict[str, list[dict[str, Any]]] = {}
        # "<event id>/<flag>" -> ISO time of the live dispatch claim
        self._claims: dict[str, str] = {}
        # RLock so file-backed subclasses can nest state access
        self._lock = threading.RLock()

    @contextmanager
    def _reading(self):
        """Hold the state for a read. File-backed subclasses load here."""
        with self._lock:
            yield

    @contextmanager
    def _writing(self):
        """Hold the state for a read-modify-write. Subclasses persist on exit."""
        with self._lock:
            yield

    # Events

    def save_event(self, event: Event) -> None:
        with self._writing():
            self._events[event.id] = event.to_dict()

    def get_event(self, event_id: str) -> Event | None:
        with self._reading():
            data = self._events.get(event_id)
            return Event.from_dict(data) if data else None

    def list_events(self) -> list[Event]:
        with self._reading():
            events = [Event.from_dict(data) for data in self._events.values()]
        return sorted(events, key=_event_sort_key)

    def set_event_flag(self, event_id: str, flag: str) -> bool:
        check_event_flag(flag)
        with self._writing():
            data = self._events.get(event_id)
            if data is None or data.get(flag):
                return False
            data[flag] = True
            return True

    def claim_event_dispatch(
        self, event_id: str, flag: str, claimed_at: datetime, lease: timedelta
    ) -> bool:
        check_event_flag(flag)
        key = f"{event_id}/{flag}"
        with self._writing():
            data = self._events.get(event_id)
            if data is None or data.get(flag):
                return False
            held = self._claims.get(key)
            if held and datetime.fromisoformat(held) > claimed_at - lease:
                return False
            self._claims[key] = claimed_at.isoformat()
            return True

    # Protests

    def save_protest(self, protest: Protest) -> None:
        with self._writing():
            self._protests[protest.id] = protest.to_dict()

    def get_protest(self, protest_id: str) -> Protest | None:
        with self._reading():
            data = self._protests.get(protest_id)
            return Protest.from_dict(data) if data else None

    def list_protests(
        self,
        event_id: str | None = None,
        statuses: tuple[ProtestStatus, ...] | None = None,
    ) -> list[Protest]:
        wanted = {status.value for status in statuses} if statuses else None
        with self._reading():
            protests = [
                Protest.from_dict(data)
                for data in self._protests.values()
                if (event_id is None or data["event_id"] == event_id)
                and (wanted is None or data["status"] in wanted)
            ]
        return sorted(protests, key=lambda p: p.created_at)

    def update_protest_if(
        self,
        protest_id: str,
        expected_status: ProtestStatus,
        changes: dict[str, Any],
    ) -> bool:
        serialized = check_protest_changes(changes)
        with self._writing():
            data = self._protests.get(protest_id)
            if data is None or data["status"] != expected_status.value:
                return False
            data.update(serialized)
            return True

    def update_protest(self, protest_id: str, changes: dict[str, Any]) -> bool:
        serialized = check_protest_changes(changes)
        with self._writing():
            data = self._protests.get(protest_id)
            if data is None:
                return False
            data.update(serialized)
            return True

    # Votes

    def add_vote(self, vote: Vote) -> bool:
        with self._writing():
            votes = self._votes.setdefault(vote.protest_id, {})
            if vote.admin_id in votes:
                return False
            votes[vote.admin_id] = vote.to_dict()
            return True

    def list_votes(self, protest_id: str) -> list[Vote]:
        with self._reading():
            votes = [Vote.from_dict(data) for data in self._votes.get(protest_id, {}).values()]
        return sorted(votes, key=lambda v: v.created_at)

    # Users

    def save_user(self, user: User) -> None:
        with self._writing():
            self._users[user.id] = user.to_dict()

    def get_user(self, user_id: str) -> User | None:
        with self._reading():
            data = self._users.get(user_id)
            return User.from_dict(data) if data else None

    def list_users(self, roles: tuple[Role, ...] | None = None) -> list[User]:
        wanted = {role.value for role in roles} if roles else None
        with self._reading():
            return [
                User.from_dict(data)
                for data in self._users.values()
                if wanted is None or data["role"] in wanted
            ]

    # In-app notifications

    def add_notification(self, notification: Notification) -> None:
        with self._writing():
            self._notifications.setdefault(notification.user_id, []).append(
                notification.to_dict()
            )

    def list_notifications(
        self, user_id: str, limit: int = 10, unread_only: bool = False
    ) -> list[Notification]:
        with self._reading():
            items = [
                Notification.from_dict(data)
                for data in self._notifications.get(user_id, [])
                if not (unread_only and data["read"])
            ]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items[:limit]

    def mark_notification_read(self, user_id: str, notification_id: str) -> bool:
        with self._writing():
            for data in self._notifications.get(user_id, []):
                if data["id"] == notification_id:
                    data["read"] = True
                    return True
            return False

    def is_available(self) -> bool:
        """Memory storage is always available."""
        return True

    def get_info(self) -> dict[str, Any]:
        """Get storage backend information."""
        info = super().get_info()
        with self._reading():
            info.update(
                {
                    "event_count": len(self._events),
                    "protest_count": len(self._protests),
                    "user_count": len(self._users),
                }
            )
        return info

    def clear(self) -> None:
        """Clear all stored data."""
        with self._writing():
            self._events.clear()
            self._protests.clear()
            self._votes.clear()
            self._users.clear()
            self._notifications.clear()
            self._claims.clear()


def _event_sort_key(event: Event):
    # Unscheduled events sort last
    reference = event.reference_timestamp
    return (reference is None, reference.timestamp() if reference else 0.0)
