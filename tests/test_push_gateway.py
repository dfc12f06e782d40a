"""
Tests for push delivery gateways.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from config import Settings
from push_gateway import (
    FCMPushGateway,
    LoggingPushGateway,
    MulticastResult,
    PushGatewayError,
    PushMessage,
    get_push_gateway,
)

MESSAGE = PushMessage(
    title="Voting is open",
    body="Protests from Round 3 are ready for your vote.",
    link="https://league.example/events/race-spa",
    data={"eventId": "race-spa", "type": "voting_opened"},
)


def fcm_response(status_code, body=None):
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    if body is None:
        response.json.side_effect = ValueError("no body")
    else:
        response.json.return_value = body
    return response


def unregistered():
    return fcm_response(404, {
        "error": {
            "status": "NOT_FOUND",
            "details": [
                {"@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError",
                 "errorCode": "UNREGISTERED"},
            ],
        }
    })


@pytest.fixture
def fcm():
    gateway = FCMPushGateway("league-app", "ya29.token", timeout=3)
    yield gateway
    gateway.close()


class TestFCMPushGateway:
    """Tests for FCMPushGateway."""

    def test_requires_credentials(self):
        """Test construction without credentials fails."""
        with pytest.raises(PushGatewayError):
            FCMPushGateway("", "token")

    def test_session_headers(self, fcm):
        """Test auth headers are set once on the session."""
        assert fcm._session.headers["Authorization"] == "Bearer ya29.token"
        assert fcm.url == "https://fcm.googleapis.com/v1/projects/league-app/messages:send"

    def test_all_delivered(self, fcm):
        """Test every token accepted."""
        with patch.object(fcm._session, "post", return_value=fcm_response(200, {})) as post:
            result = fcm.send_multicast(["a", "b"], MESSAGE)

        assert result == MulticastResult(success_count=2, failure_count=0, errors={})
        assert post.call_count == 2
        payload = post.call_args.kwargs["json"]["message"]
        assert payload["token"] == "b"
        assert payload["notification"]["title"] == "Voting is open"
        assert payload["data"]["link"] == MESSAGE.link
        assert payload["webpush"]["fcm_options"]["link"] == MESSAGE.link
        assert post.call_args.kwargs["timeout"] == 3

    def test_stale_token_reported(self, fcm):
        """Test per-token failures do not fail the batch."""
        responses = [fcm_response(200, {}), unregistered(), fcm_response(500)]
        with patch.object(fcm._session, "post", side_effect=responses):
            result = fcm.send_multicast(["good", "stale", "flaky"], MESSAGE)

        assert result.success_count == 1
        assert result.failure_count == 2
        assert result.errors == {"stale": "UNREGISTERED", "flaky": "HTTP_500"}
        assert result.stale_tokens == ["stale"]

    def test_error_status_without_details(self, fcm):
        """Test the error status is used when no FCM code is given."""
        response = fcm_response(400, {"error": {"status": "INVALID_ARGUMENT"}})
        with patch.object(fcm._session, "post", return_value=response):
            result = fcm.send_multicast(["bad"], MESSAGE)
        assert result.stale_tokens == ["bad"]

    @pytest.mark.parametrize("status", [401, 403])
    def test_bad_credentials_fail_batch(self, fcm, status):
        """Test rejected credentials abort the whole batch."""
        with patch.object(fcm._session, "post", return_value=fcm_response(status, {})):
            with pytest.raises(PushGatewayError, match=str(status)):
                fcm.send_multicast(["a"], MESSAGE)

    def test_network_error_fails_batch(self, fcm):
        """Test an unreachable provider aborts the batch."""
        with patch.object(fcm._session, "post", side_effect=requests.ConnectionError("down")):
            with pytest.raises(PushGatewayError, match="FCM request failed"):
                fcm.send_multicast(["a"], MESSAGE)

    def test_oversized_batch(self, fcm):
        """Test batches above the provider limit are refused."""
        with pytest.raises(ValueError):
            fcm.send_multicast(["t"] * 501, MESSAGE)


class TestLoggingPushGateway:
    """Tests for LoggingPushGateway."""

    def test_logs_and_succeeds(self, caplog):
        """Test messages are logged and counted as delivered."""
        gateway = LoggingPushGateway()
        with caplog.at_level("INFO", logger="push_gateway"):
            result = gateway.send_multicast(["a", "b", "c"], MESSAGE)

        assert result.success_count == 3
        assert gateway.sent_batches == 1
        assert "Push 'Voting is open' to 3 device(s)" in caplog.text


class TestGetPushGateway:
    """Tests for gateway selection."""

    def test_log_backend(self):
        """Test the default development backend."""
        assert isinstance(get_push_gateway(Settings(push_backend="log")), LoggingPushGateway)

    def test_fcm_backend(self):
        """Test FCM settings are passed through."""
        gateway = get_push_gateway(Settings(
            push_backend="fcm", fcm_project_id="league-app",
            fcm_access_token="tok", fcm_timeout_seconds=2.5,
        ))
        assert isinstance(gateway, FCMPushGateway)
        assert gateway.timeout == 2.5
        gateway.close()

    def test_fcm_without_credentials(self):
        """Test FCM without credentials fails at construction."""
        with pytest.raises(PushGatewayError):
            get_push_gateway(Settings(push_backend="fcm"))

    def test_unknown_backend(self):
        """Test unknown backends are rejected."""
        with pytest.raises(PushGatewayError, match="Unknown push backend"):
            get_push_gateway(Settings(push_backend="apns"))
