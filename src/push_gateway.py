"""
Push delivery gateways.

The dispatcher hands a batch of device tokens and one message to a
``PushGateway``. A gateway reports per-token outcomes; it raises
``PushGatewayError`` only when the whole batch could not be attempted
(bad credentials, provider unreachable).

Backends:
- FCMPushGateway: Firebase Cloud Messaging HTTP v1 API
- LoggingPushGateway: logs messages instead of sending (development)
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import requests

from config import MAX_PUSH_BATCH_SIZE, Settings

logger = logging.getLogger(__name__)

FCM_ENDPOINT = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

# FCM error codes meaning the token will never work again
FCM_STALE_TOKEN_ERRORS = {"UNREGISTERED", "INVALID_ARGUMENT"}


class PushGatewayError(Exception):
    """Raised when a whole batch could not be delivered to the provider."""
    pass


@dataclass(frozen=True)
class PushMessage:
    """Title, body and deep link shown on the device."""
    title: str
    body: str
    link: str = ""
    data: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "body": self.body, "link": self.link, "data": dict(self.data)}


@dataclass
class MulticastResult:
    """Per-batch delivery outcome."""
    success_count: int = 0
    failure_count: int = 0
    # token -> provider error code
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def stale_tokens(self) -> list[str]:
        return [token for token, code in self.errors.items() if code in FCM_STALE_TOKEN_ERRORS]


class PushGateway(ABC):
    """Abstract base class for push providers."""

    max_batch_size = MAX_PUSH_BATCH_SIZE

    @abstractmethod
    def send_multicast(self, tokens: list[str], message: PushMessage) -> MulticastResult:
        """
        Send one message to a batch of device tokens.

        Args:
            tokens: At most ``max_batch_size`` device tokens
            message: Message to deliver

        Returns:
            MulticastResult with per-token failures

        Raises:
            PushGatewayError: If the batch could not be attempted at all
        """
        pass

    def close(self) -> None:
        pass


class LoggingPushGateway(PushGateway):
    """Logs every message instead of sending it."""

    def __init__(self):
        self._lock = threading.Lock()
        self.sent_batches = 0

    def send_multicast(self, tokens: list[str], message: PushMessage) -> MulticastResult:
        with self._lock:
            self.sent_batches += 1
        logger.info(
            f"Push '{message.title}' to {len(tokens)} device(s)",
            extra={"body": message.body, "link": message.link},
        )
        return MulticastResult(success_count=len(tokens))


class FCMPushGateway(PushGateway):
    """
    Firebase Cloud Messaging HTTP v1 gateway.

    The v1 API takes one token per request, so a batch is a loop over
    its tokens on a pooled ``requests.Session``.
    """

    def __init__(self, project_id: str, access_token: str, timeout: float = 10.0):
        """
        Initialize the FCM gateway.

        Args:
            project_id: Firebase project id
            access_token: OAuth2 access token for the messaging scope
            timeout: Per-request timeout in seconds
        """
        if not project_id or not access_token:
            raise PushGatewayError("FCM project id and access token are required")
        self.url = FCM_ENDPOINT.format(project_id=project_id)
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers["Authorization"] = f"Bearer {access_token}"
        self._session.headers["Content-Type"] = "application/json"
        self._session.headers["User-Agent"] = "RaceSteward-Push/1.0"

    def _payload(self, token: str, message: PushMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "token": token,
            "notification": {"title": message.title, "body": message.body},
            "data": dict(message.data),
        }
        if message.link:
            payload["data"]["link"] = message.link
            payload["webpush"] = {"fcm_options": {"link": message.link}}
        return {"message": payload}

    def send_multicast(self, tokens: list[str], message: PushMessage) -> MulticastResult:
        if len(tokens) > self.max_batch_size:
            raise ValueError(f"Batch of {len(tokens)} exceeds {self.max_batch_size} tokens")

        result = MulticastResult()
        for token in tokens:
            try:
                response = self._session.post(
                    self.url, json=self._payload(token, message), timeout=self.timeout
                )
            except requests.RequestException as e:
                raise PushGatewayError(f"FCM request failed: {e}") from e

            if response.status_code == 200:
                result.success_count += 1
                continue

            if response.status_code in (401, 403):
                raise PushGatewayError(f"FCM rejected credentials (HTTP {response.status_code})")

            result.failure_count += 1
            result.errors[token] = _fcm_error_code(response)

        return result

    def close(self) -> None:
        self._session.close()


def _fcm_error_code(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP_{response.status_code}"
    error = body.get("error", {}) if isinstance(body, dict) else {}
    for detail in error.get("details", []):
        if isinstance(detail, dict) and detail.get("errorCode"):
            return detail["errorCode"]
    return error.get("status") or f"HTTP_{response.status_code}"


def get_push_gateway(settings: Settings | None = None) -> PushGateway:
    """Build the configured push gateway (``PUSH_BACKEND``: log or fcm)."""
    settings = settings or Settings.from_env()
    if settings.push_backend == "fcm":
        return FCMPushGateway(
            settings.fcm_project_id or "",
            settings.fcm_access_token or "",
            timeout=settings.fcm_timeout_seconds,
        )
    if settings.push_backend == "log":
        return LoggingPushGateway()
    raise PushGatewayError(f"Unknown push backend: {settings.push_backend}")
