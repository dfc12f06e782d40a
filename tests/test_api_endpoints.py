"""
Tests for RaceSteward API endpoints.

Races here are placed relative to the current time, since the API
always evaluates phases against the wall clock.
"""

from datetime import timedelta

import pytest

from config import Settings
from conftest import ADMIN_1, ALICE, BOB, SUPER_ADMIN
from models import (
    Driver,
    Event,
    Notification,
    NotificationType,
    Protest,
    ProtestStatus,
    new_id,
    utcnow,
)
from storage.memory import MemoryStorage

RACE_FILE = {
    "TrackName": "imola",
    "EventName": "Round 4",
    "Type": "RACE",
    "Date": "2026-04-12T19:00:00Z",
    "Result": [
        {"DriverGuid": ALICE, "DriverName": "Alice"},
        {"DriverGuid": BOB, "DriverName": "Bob"},
    ],
}


def save_race(store, event_id, hours_ago):
    event = Event(
        id=event_id,
        reference_timestamp=utcnow() - timedelta(hours=hours_ago),
        track_name="Spa-Francorchamps",
        event_name=f"Race {event_id}",
        drivers=[Driver(name="Alice", steam_id=ALICE), Driver(name="Bob", steam_id=BOB)],
    )
    store.save_event(event)
    return event


@pytest.fixture
def live_race(store):
    """A race two hours ago: protests may be filed."""
    return save_race(store, "race-live", hours_ago=2)


@pytest.fixture
def voting_race(store):
    """A race thirty hours ago: admins may vote."""
    return save_race(store, "race-voting", hours_ago=30)


@pytest.fixture
def open_protest(store, voting_race):
    protest = Protest(
        id=new_id(),
        event_id=voting_race.id,
        accuser_id=ALICE,
        accused_id=BOB,
        status=ProtestStatus.UNDER_REVIEW,
        video_url="https://youtu.be/incident",
        created_at=utcnow() - timedelta(hours=29),
    )
    store.save_protest(protest)
    return protest


class TestHealthEndpoints:
    """Tests for health and metrics endpoints."""

    def test_health(self, flask_client):
        """Test the health summary."""
        response = flask_client.get("/health")
        assert response.status_code == 200

        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["service"] == "RaceSteward API"
        assert data["checks"]["storage"]["available"] is True
        assert data["checks"]["push"]["backend"] == "RecordingGateway"
        assert data["checks"]["sweeper"]["last_sweep"] is None

    def test_liveness_and_readiness(self, flask_client):
        """Test the probes."""
        assert flask_client.get("/health/live").get_json() == {"status": "alive"}
        assert flask_client.get("/health/ready").status_code == 200

    def test_not_ready_when_storage_down(self, settings, gateway):
        """Test readiness fails when storage is unavailable."""
        from api import create_app

        class DownStorage(MemoryStorage):
            def is_available(self):
                return False

        client = create_app(settings, store=DownStorage(), gateway=gateway).test_client()
        response = client.get("/health/ready")
        assert response.status_code == 503
        assert response.get_json()["status"] == "not_ready"

    def test_prometheus_metrics(self, flask_client, make_protest):
        """Test Prometheus output includes open protest gauges."""
        make_protest()
        response = flask_client.get("/metrics")
        assert response.status_code == 200
        assert response.mimetype == "text/plain"
        text = response.get_data(as_text=True)
        assert "racesteward_uptime_seconds" in text
        assert 'racesteward_protests_open{status="pending"} 1' in text

    def test_json_metrics(self, flask_client):
        """Test the JSON metrics view counts requests."""
        flask_client.get("/health/live")
        data = flask_client.get("/metrics/json").get_json()
        assert data["gauges"]["storage_available"]["_total"] == 1
        assert "http_requests_total" in data["counters"]

    def test_request_id_echoed(self, flask_client):
        """Test X-Request-ID is passed through or generated."""
        response = flask_client.get("/health/live", headers={"X-Request-ID": "trace-42"})
        assert response.headers["X-Request-ID"] == "trace-42"
        assert len(flask_client.get("/health/live").headers["X-Request-ID"]) == 8

    def test_unknown_endpoint(self, flask_client):
        """Test 404 and 405 are JSON."""
        assert flask_client.get("/nope").get_json() == {"error": "Endpoint not found"}
        response = flask_client.delete("/events")
        assert response.status_code == 405
        assert response.get_json() == {"error": "Method not allowed"}


class TestEventEndpoints:
    """Tests for race import and event listing."""

    def test_import_as_admin(self, flask_client, admin_headers, users, store):
        """Test an admin imports a race file."""
        response = flask_client.post("/events/import", json=RACE_FILE, headers=admin_headers)
        assert response.status_code == 201
        data = response.get_json()
        assert data["track_name"] == "imola"
        assert store.get_event(data["id"]) is not None

    def test_import_duplicate(self, flask_client, admin_headers, users):
        """Test the same race twice is a conflict."""
        flask_client.post("/events/import", json=RACE_FILE, headers=admin_headers)
        response = flask_client.post("/events/import", json=RACE_FILE, headers=admin_headers)
        assert response.status_code == 409
        assert "already imported" in response.get_json()["error"]

    def test_import_by_super_admin_without_profile(self, flask_client):
        """Test the configured super admin may import without a user record."""
        headers = {"X-User-Id": f"steam:{SUPER_ADMIN}"}
        assert flask_client.post("/events/import", json=RACE_FILE, headers=headers).status_code == 201

    def test_import_requires_admin(self, flask_client, driver_headers, users):
        """Test drivers and anonymous callers cannot import."""
        assert flask_client.post("/events/import", json=RACE_FILE, headers=driver_headers).status_code == 403
        assert flask_client.post("/events/import", json=RACE_FILE).status_code == 403

    def test_import_needs_json_object(self, flask_client, admin_headers, users):
        """Test a non-object body is rejected."""
        response = flask_client.post("/events/import", data="not json", headers=admin_headers)
        assert response.status_code == 400

    def test_import_invalid_date(self, flask_client, admin_headers, users):
        """Test validation errors map to 400."""
        body = {**RACE_FILE, "Date": "someday"}
        response = flask_client.post("/events/import", json=body, headers=admin_headers)
        assert response.status_code == 400

    def test_list_events_with_phase(self, flask_client, live_race, voting_race):
        """Test newest race first, each with its phase."""
        data = flask_client.get("/events").get_json()
        assert data["count"] == 2
        assert [e["id"] for e in data["events"]] == ["race-live", "race-voting"]
        assert data["events"][0]["phase"]["phase"] == "submission"
        assert data["events"][1]["phase"]["phase"] == "voting"

        assert len(flask_client.get("/events?limit=1").get_json()["events"]) == 1

    def test_get_event(self, flask_client, live_race):
        """Test a single event and its time remaining."""
        data = flask_client.get(f"/events/{live_race.id}").get_json()
        assert data["phase"]["phase"] == "submission"
        assert 21 * 3600 < data["phase"]["time_remaining_seconds"] <= 22 * 3600

    def test_get_missing_event(self, flask_client):
        """Test unknown events are 404."""
        response = flask_client.get("/events/missing")
        assert response.status_code == 404
        assert "missing" in response.get_json()["error"]

    def test_event_protests_filter(self, flask_client, open_protest, voting_race):
        """Test listing an event's protests by status."""
        url = f"/events/{voting_race.id}/protests"
        assert flask_client.get(url).get_json()["count"] == 1
        assert flask_client.get(f"{url}?status=pending").get_json()["count"] == 0
        assert flask_client.get(f"{url}?status=bogus").status_code == 400


class TestProtestEndpoints:
    """Tests for filing and viewing protests."""

    def test_file_protest(self, flask_client, driver_headers, live_race):
        """Test a driver files a protest during submission."""
        response = flask_client.post(
            "/protests",
            json={
                "event_id": live_race.id,
                "accused_id": BOB,
                "video_url": "https://youtu.be/t1",
                "lap": 2,
                "incident_type": "collision",
            },
            headers=driver_headers,
        )
        assert response.status_code == 201
        data = response.get_json()
        assert data["status"] == "pending"
        assert data["accuser_id"] == ALICE
        assert data["incident_type"] == "collision"

    def test_file_requires_identity(self, flask_client, live_race):
        """Test filing without X-User-Id."""
        response = flask_client.post(
            "/protests",
            json={"event_id": live_race.id, "accused_id": BOB, "video_url": "https://v"},
        )
        assert response.status_code == 401

    @pytest.mark.parametrize(
        "body,message",
        [
            ({"accused_id": BOB, "video_url": "https://v"}, "Missing required field: event_id"),
            ({"event_id": "race-live", "accused_id": BOB, "video_url": "https://v", "lap": "two"},
             "Field 'lap' must be of type int"),
            ({"event_id": "race-live", "accused_id": BOB, "video_url": "x" * 501},
             "exceeds maximum length"),
        ],
    )
    def test_file_payload_validation(self, flask_client, driver_headers, live_race, body, message):
        """Test payload validation errors."""
        response = flask_client.post("/protests", json=body, headers=driver_headers)
        assert response.status_code == 400
        assert message in response.get_json()["error"]

    def test_self_protest(self, flask_client, driver_headers, live_race):
        """Test protesting yourself is a bad request."""
        response = flask_client.post(
            "/protests",
            json={"event_id": live_race.id, "accused_id": f"steam:{ALICE}", "video_url": "https://v"},
            headers=driver_headers,
        )
        assert response.status_code == 400

    def test_window_closed(self, flask_client, driver_headers, voting_race):
        """Test filing after 24h is a conflict."""
        response = flask_client.post(
            "/protests",
            json={"event_id": voting_race.id, "accused_id": BOB, "video_url": "https://v"},
            headers=driver_headers,
        )
        assert response.status_code == 409

    def test_unknown_event(self, flask_client, driver_headers):
        """Test filing on a missing event."""
        response = flask_client.post(
            "/protests",
            json={"event_id": "missing", "accused_id": BOB, "video_url": "https://v"},
            headers=driver_headers,
        )
        assert response.status_code == 404

    def test_view_advances_stale_protest(self, flask_client, store, gateway, users, voting_race):
        """Test viewing a pending protest past 24h opens voting."""
        protest = Protest(
            id=new_id(), event_id=voting_race.id, accuser_id=ALICE, accused_id=BOB,
            video_url="https://v",
        )
        store.save_protest(protest)

        data = flask_client.get(f"/protests/{protest.id}").get_json()
        assert data["status"] == "under_review"
        assert data["phase"]["phase"] == "voting"
        assert len(gateway.messages("Voting is open")) == 1

    def test_view_missing_protest(self, flask_client):
        """Test unknown protests are 404."""
        assert flask_client.get("/protests/missing").status_code == 404

    def test_list_protests_filters(self, flask_client, open_protest):
        """Test filtering by driver, with or without prefix."""
        assert flask_client.get(f"/protests?accused_id=steam:{BOB}").get_json()["count"] == 1
        assert flask_client.get(f"/protests?accuser_id={BOB}").get_json()["count"] == 0


class TestVotingEndpoints:
    """Tests for votes and overrides."""

    def test_vote_and_duplicate(self, flask_client, admin_headers, users, open_protest):
        """Test an admin votes once; a second vote conflicts."""
        url = f"/protests/{open_protest.id}/votes"
        response = flask_client.post(url, json={"verdict": "punish", "reason": "late dive"}, headers=admin_headers)
        assert response.status_code == 201
        assert response.get_json()["admin_name"] == "Steward One"

        again = flask_client.post(url, json={"verdict": "acquit", "reason": "hmm"}, headers=admin_headers)
        assert again.status_code == 409

    def test_vote_by_driver(self, flask_client, driver_headers, users, open_protest):
        """Test drivers cannot vote."""
        response = flask_client.post(
            f"/protests/{open_protest.id}/votes",
            json={"verdict": "punish", "reason": "revenge"},
            headers=driver_headers,
        )
        assert response.status_code == 403

    def test_vote_bad_verdict(self, flask_client, admin_headers, users, open_protest):
        """Test unknown verdicts are rejected."""
        response = flask_client.post(
            f"/protests/{open_protest.id}/votes",
            json={"verdict": "warning", "reason": "x"},
            headers=admin_headers,
        )
        assert response.status_code == 400

    def test_vote_during_submission(self, flask_client, admin_headers, users, store, live_race):
        """Test voting before 24h is a conflict."""
        protest = Protest(id=new_id(), event_id=live_race.id, accuser_id=ALICE, accused_id=BOB)
        store.save_protest(protest)
        response = flask_client.post(
            f"/protests/{protest.id}/votes",
            json={"verdict": "punish", "reason": "x"},
            headers=admin_headers,
        )
        assert response.status_code == 409

    def test_votes_visible_to_admins(self, flask_client, admin_headers, driver_headers, users, open_protest):
        """Test vote listing and the admin view of a protest."""
        flask_client.post(
            f"/protests/{open_protest.id}/votes",
            json={"verdict": "acquit", "reason": "racing incident"},
            headers=admin_headers,
        )
        listing = flask_client.get(f"/protests/{open_protest.id}/votes", headers=admin_headers)
        assert listing.get_json()["count"] == 1
        assert flask_client.get(f"/protests/{open_protest.id}/votes", headers=driver_headers).status_code == 403

        detail = flask_client.get(f"/protests/{open_protest.id}", headers=admin_headers).get_json()
        assert detail["has_voted"] is True
        public = flask_client.get(f"/protests/{open_protest.id}", headers=driver_headers).get_json()
        assert "votes" not in public

    def test_override(self, flask_client, admin_headers, users, open_protest):
        """Test an admin override."""
        response = flask_client.post(
            f"/protests/{open_protest.id}/override",
            json={"status": "concluded", "verdict": "Punished"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.get_json()["verdict"] == "Punished"

        bad = flask_client.post(
            f"/protests/{open_protest.id}/override", json={"status": "closed"}, headers=admin_headers
        )
        assert bad.status_code == 400


class TestSweepEndpoints:
    """Tests for on-demand sweeps."""

    def test_last_sweep_before_any(self, flask_client):
        """Test no report before the first sweep."""
        assert flask_client.get("/sweep/last").status_code == 404

    def test_sweep(self, flask_client, admin_headers, users, store, voting_race):
        """Test an admin sweep advances stale protests."""
        protest = Protest(id=new_id(), event_id=voting_race.id, accuser_id=ALICE, accused_id=BOB)
        store.save_protest(protest)

        response = flask_client.post("/sweep", headers=admin_headers)
        assert response.status_code == 200
        report = response.get_json()
        assert report["transitions"] == [
            {"protest_id": protest.id, "from": "pending", "to": "under_review"}
        ]
        assert report["errors"] == []

        last = flask_client.get("/sweep/last").get_json()
        assert last["sweep_id"] == report["sweep_id"]

    def test_sweep_requires_admin(self, flask_client, driver_headers, users):
        """Test drivers cannot trigger sweeps."""
        assert flask_client.post("/sweep", headers=driver_headers).status_code == 403


class TestNotificationEndpoints:
    """Tests for the notification bell."""

    @pytest.fixture
    def inbox(self, store):
        items = [
            Notification(user_id=ALICE, type=NotificationType.VERDICT_READY, title="Verdict: Punished", message="m"),
            Notification(user_id=ALICE, type=NotificationType.PROTEST_DEADLINE_WARNING, title="Closing", message="m"),
        ]
        for item in items:
            store.add_notification(item)
        return items

    def test_list(self, flask_client, driver_headers, inbox):
        """Test listing the caller's notifications."""
        data = flask_client.get("/notifications", headers=driver_headers).get_json()
        assert data["count"] == 2
        assert data["unread"] == 2

    def test_mark_read(self, flask_client, driver_headers, inbox):
        """Test marking read and filtering unread."""
        response = flask_client.post(f"/notifications/{inbox[0].id}/read", headers=driver_headers)
        assert response.get_json() == {"id": inbox[0].id, "read": True}

        data = flask_client.get("/notifications?unread=true", headers=driver_headers).get_json()
        assert [n["id"] for n in data["notifications"]] == [inbox[1].id]

    def test_mark_other_users_notification(self, flask_client, inbox):
        """Test a caller cannot touch another user's notification."""
        response = flask_client.post(f"/notifications/{inbox[0].id}/read", headers={"X-User-Id": BOB})
        assert response.status_code == 404

    def test_requires_identity(self, flask_client):
        """Test the bell needs a caller."""
        assert flask_client.get("/notifications").status_code == 401


class TestUserEndpoints:
    """Tests for member profiles and roles."""

    def test_register_device(self, flask_client, store):
        """Test a new member registers a name and device token."""
        headers = {"X-User-Id": "76561198000000555"}
        response = flask_client.put(
            "/users/me", json={"display_name": "Dana", "fcm_token": "tok-dana"}, headers=headers
        )
        assert response.status_code == 200
        assert response.get_json() == {
            "id": "76561198000000555",
            "display_name": "Dana",
            "role": "driver",
            "push_enabled": True,
        }
        assert store.get_user("76561198000000555").fcm_token == "tok-dana"

        assert flask_client.get("/users/me", headers=headers).get_json()["display_name"] == "Dana"

    def test_no_profile_yet(self, flask_client):
        """Test an unregistered caller."""
        response = flask_client.get("/users/me", headers={"X-User-Id": "76561198000000555"})
        assert response.status_code == 404

    def test_invalid_profile(self, flask_client, driver_headers, users):
        """Test type and content validation."""
        assert flask_client.put("/users/me", json={"fcm_token": 5}, headers=driver_headers).status_code == 400
        assert flask_client.put("/users/me", json={"display_name": " "}, headers=driver_headers).status_code == 400

    def test_list_hides_tokens(self, flask_client, admin_headers, users):
        """Test admins list members without device tokens."""
        data = flask_client.get("/users?role=admin", headers=admin_headers).get_json()
        assert data["count"] == 2
        assert all("fcm_token" not in u for u in data["users"])
        assert all(u["push_enabled"] for u in data["users"])

    def test_list_requires_admin(self, flask_client, driver_headers, users):
        """Test drivers cannot list members."""
        assert flask_client.get("/users", headers=driver_headers).status_code == 403

    def test_promote_and_demote(self, flask_client, admin_headers, users):
        """Test admins promote; only the super admin demotes."""
        response = flask_client.post(f"/users/{BOB}/role", json={"role": "admin"}, headers=admin_headers)
        assert response.get_json()["role"] == "admin"

        response = flask_client.post(f"/users/{BOB}/role", json={"role": "driver"}, headers=admin_headers)
        assert response.status_code == 403

        response = flask_client.post(
            f"/users/{BOB}/role", json={"role": "driver"}, headers={"X-User-Id": SUPER_ADMIN}
        )
        assert response.get_json()["role"] == "driver"

    def test_role_unknown_user(self, flask_client, admin_headers, users):
        """Test changing the role of a member without a profile."""
        response = flask_client.post("/users/76561198000000777/role", json={"role": "admin"}, headers=admin_headers)
        assert response.status_code == 404


class TestApiKeyAuth:
    """Tests for API key enforcement on write endpoints."""

    @pytest.fixture
    def secured_client(self, store, gateway):
        from api import create_app

        settings = Settings(
            storage_backend="memory",
            push_backend="log",
            api_key="s3cret-key",
            require_auth=True,
        )
        return create_app(settings, store=store, gateway=gateway).test_client()

    def test_missing_key(self, secured_client, live_race):
        """Test write endpoints need a key."""
        response = secured_client.post(
            "/protests",
            json={"event_id": live_race.id, "accused_id": BOB, "video_url": "https://v"},
            headers={"X-User-Id": ALICE},
        )
        assert response.status_code == 401

    def test_wrong_key(self, secured_client, live_race):
        """Test a wrong key is forbidden."""
        response = secured_client.post(
            "/protests",
            json={"event_id": live_race.id, "accused_id": BOB, "video_url": "https://v"},
            headers={"X-User-Id": ALICE, "X-API-Key": "guess"},
        )
        assert response.status_code == 403

    def test_correct_key(self, secured_client, live_race):
        """Test the configured key is accepted."""
        response = secured_client.post(
            "/protests",
            json={"event_id": live_race.id, "accused_id": BOB, "video_url": "https://v"},
            headers={"X-User-Id": ALICE, "X-API-Key": "s3cret-key"},
        )
        assert response.status_code == 201

    def test_reads_stay_open(self, secured_client, live_race):
        """Test read endpoints need no key."""
        assert secured_client.get(f"/events/{live_race.id}").status_code == 200

    def test_key_not_configured(self, store, gateway):
        """Test auth required without a server key is unavailable."""
        from api import create_app

        settings = Settings(storage_backend="memory", require_auth=True)
        client = create_app(settings, store=store, gateway=gateway).test_client()
        response = client.post("/sweep", headers={"X-API-Key": "anything", "X-User-Id": ADMIN_1})
        assert response.status_code == 503
