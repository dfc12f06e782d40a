"""
Pytest configuration and shared fixtures for RaceSteward tests.

This module provides shared fixtures and test configuration including:
- A fixed race time ``T`` and an in-memory store seeded with one race
- Drivers and admins with device tokens
- A recording push gateway that can be told to fail
- Lifecycle engine, dispatcher and sweeper wired to the store
- Flask app setup with test configuration
"""

import os
import sys
import threading
from datetime import UTC, datetime, timedelta

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from config import Settings
from display_names import DisplayNameCache
from lifecycle import LifecycleEngine
from models import Driver, Event, Protest, ProtestStatus, Role, User, new_id
from monitoring import metrics
from notifications import NotificationDispatcher
from push_gateway import MulticastResult, PushGateway, PushGatewayError
from storage.memory import MemoryStorage
from sweeper import Sweeper

# Race time every scenario is relative to
T = datetime(2026, 3, 1, 20, 0, tzinfo=UTC)

ALICE = "76561198000000001"
BOB = "76561198000000002"
CAROL = "76561198000000003"
ADMIN_1 = "76561198000000101"
ADMIN_2 = "76561198000000102"
SUPER_ADMIN = "76561198000000999"


def at(hours: float = 0, minutes: float = 0) -> datetime:
    """Instant relative to the race time ``T``."""
    return T + timedelta(hours=hours, minutes=minutes)


class RecordingGateway(PushGateway):
    """Push gateway that records every batch; selected batches can fail."""

    def __init__(self, fail_batches=(), stale_tokens=()):
        self.fail_batches = set(fail_batches)
        self.stale_tokens = set(stale_tokens)
        self.batches = []
        self._lock = threading.Lock()

    def send_multicast(self, tokens, message):
        with self._lock:
            index = len(self.batches)
            self.batches.append((list(tokens), message))
        if index in self.fail_batches:
            raise PushGatewayError(f"batch {index} rejected")
        errors = {t: "UNREGISTERED" for t in tokens if t in self.stale_tokens}
        return MulticastResult(
            success_count=len(tokens) - len(errors),
            failure_count=len(errors),
            errors=errors,
        )

    def messages(self, title_prefix=""):
        return [m for _, m in self.batches if m.title.startswith(title_prefix)]

    @property
    def tokens_sent(self):
        return [t for tokens, _ in self.batches for t in tokens]


@pytest.fixture(autouse=True)
def reset_metrics():
    """Each test starts with empty metrics."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store():
    return MemoryStorage()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def race(store):
    """A race at ``T`` with three drivers."""
    event = Event(
        id="race-spa",
        reference_timestamp=T,
        track_name="Spa-Francorchamps",
        event_name="Round 3",
        drivers=[
            Driver(name="Alice", steam_id=ALICE),
            Driver(name="Bob", steam_id=BOB),
            Driver(name="Carol", steam_id=CAROL),
        ],
    )
    store.save_event(event)
    return event


@pytest.fixture
def users(store):
    """Two drivers and two admins with tokens, one driver without."""
    people = [
        User(id=ALICE, display_name="Alice A.", fcm_token="tok-alice"),
        User(id=BOB, display_name="Bob B.", fcm_token="tok-bob"),
        User(id=CAROL, display_name="Carol C."),
        User(id=ADMIN_1, display_name="Steward One", role=Role.ADMIN, fcm_token="tok-admin-1"),
        User(id=ADMIN_2, display_name="Steward Two", role=Role.ADMIN, fcm_token="tok-admin-2"),
    ]
    for user in people:
        store.save_user(user)
    return {user.id: user for user in people}


@pytest.fixture
def make_protest(store, race):
    """Factory saving a protest on the race (Alice vs Bob by default)."""

    def _make(status=ProtestStatus.PENDING, accuser=ALICE, accused=BOB, event_id=None):
        protest = Protest(
            id=new_id(),
            event_id=event_id or race.id,
            accuser_id=accuser,
            accused_id=accused,
            status=status,
            video_url="https://youtu.be/incident",
            lap=4,
            created_at=at(hours=1),
        )
        store.save_protest(protest)
        return protest

    return _make


@pytest.fixture
def engine(store):
    return LifecycleEngine(store)


@pytest.fixture
def dispatcher(store, gateway):
    return NotificationDispatcher(
        store,
        gateway,
        names=DisplayNameCache(store),
        base_url="https://league.example",
        super_admin_id=SUPER_ADMIN,
    )


@pytest.fixture
def sweeper(store, engine, dispatcher):
    return Sweeper(store, engine, dispatcher, interval_seconds=900)


@pytest.fixture
def settings():
    return Settings(storage_backend="memory", push_backend="log", super_admin_id=SUPER_ADMIN)


@pytest.fixture
def flask_app(settings, store, gateway):
    """Create Flask test app backed by the test store and gateway."""
    from api import create_app

    app = create_app(settings, store=store, gateway=gateway)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def flask_client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()


@pytest.fixture
def admin_headers():
    return {"Content-Type": "application/json", "X-User-Id": ADMIN_1}


@pytest.fixture
def driver_headers():
    return {"Content-Type": "application/json", "X-User-Id": ALICE}
