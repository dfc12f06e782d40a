"""
Deadline-driven notification dispatch.

Four notification types, each delivered at most once:

- protest_deadline_warning: one hour before submissions close, to every
  member; guarded by ``Event.notified_protest_warning``
- voting_opened: when a protest first moves to under review, to admins;
  guarded by ``Event.notified_voting_open`` and sent only by the caller
  that won the transition
- voting_deadline_warning: one hour before voting closes, to admins,
  while a protest is under review; guarded by
  ``Event.notified_voting_warning``
- verdict_ready: to accuser and accused, sent only by the caller that
  concluded the protest

Before an event-level notification goes out, the sender claims it in the
store; concurrent callers that lose the claim send nothing. The winner
pushes to device tokens in batches, writes one in-app notification per
recipient, and then sets the guarding flag. A claim expires after
``claim_lease``, so a crash between sending and setting the flag can
repeat the notification on a later sweep.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from config import MAX_PUSH_BATCH_SIZE
from display_names import DisplayNameCache
from event_clock import (
    DEFAULT_WARNING_BUFFER_MINUTES,
    is_warning_window,
    submission_deadline,
    voting_deadline,
)
from models import (
    Event,
    NotFoundError,
    Notification,
    NotificationType,
    Protest,
    ProtestStatus,
    Role,
    User,
    utcnow,
)
from monitoring import metrics
from permissions import clean_steam_id, is_admin, is_super_admin
from push_gateway import PushGateway, PushMessage
from storage.base import DocumentStore, StorageError

logger = logging.getLogger(__name__)

EVENT_FLAG_FOR = {
    NotificationType.PROTEST_DEADLINE_WARNING: "notified_protest_warning",
    NotificationType.VOTING_OPENED: "notified_voting_open",
    NotificationType.VOTING_DEADLINE_WARNING: "notified_voting_warning",
}

# Longer than any dispatch, shorter than the sweep interval
DEFAULT_CLAIM_LEASE = timedelta(minutes=10)


@dataclass
class DispatchReport:
    """What one dispatch attempted and how it went."""
    type: NotificationType
    subject_id: str
    recipients: int = 0
    tokens: int = 0
    batches: int = 0
    failed_batches: int = 0
    success_count: int = 0
    failure_count: int = 0
    token_errors: dict[str, str] = field(default_factory=dict)
    in_app_written: int = 0
    skipped: bool = False
    flag_set: bool | None = None

    @property
    def outcome(self) -> str:
        if self.skipped:
            return "skipped"
        if self.failure_count == 0:
            return "sent"
        if self.success_count == 0 and self.tokens:
            return "failed"
        return "partial"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "subject_id": self.subject_id,
            "recipients": self.recipients,
            "tokens": self.tokens,
            "batches": self.batches,
            "failed_batches": self.failed_batches,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "in_app_written": self.in_app_written,
            "outcome": self.outcome,
            "flag_set": self.flag_set,
        }


def _batches(items: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _event_label(event: Event) -> str:
    return event.event_name or event.track_name or event.id


class NotificationDispatcher:
    """Computes due notifications and fans them out (push + in-app)."""

    def __init__(
        self,
        store: DocumentStore,
        gateway: PushGateway,
        names: DisplayNameCache | None = None,
        batch_size: int = MAX_PUSH_BATCH_SIZE,
        warning_buffer_minutes: int = DEFAULT_WARNING_BUFFER_MINUTES,
        base_url: str = "",
        super_admin_id: str | None = None,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
    ):
        if not 1 <= batch_size <= MAX_PUSH_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_PUSH_BATCH_SIZE}")
        self.store = store
        self.gateway = gateway
        self.names = names or DisplayNameCache(store)
        self.batch_size = min(batch_size, gateway.max_batch_size)
        self.warning_buffer_minutes = warning_buffer_minutes
        self.base_url = base_url.rstrip("/")
        self.super_admin_id = super_admin_id
        self.claim_lease = claim_lease

    def _claim(self, event_id: str, kind: NotificationType) -> bool:
        claimed = self.store.claim_event_dispatch(
            event_id, EVENT_FLAG_FOR[kind], utcnow(), self.claim_lease
        )
        if not claimed:
            logger.debug(f"{kind.value} for {event_id} already claimed; not sending")
        return claimed

    # Audiences

    def _members(self) -> list[User]:
        return self.store.list_users()

    def _admins(self) -> list[User]:
        admins = [user for user in self.store.list_users() if is_admin(user, self.super_admin_id)]
        if self.super_admin_id and not any(
            is_super_admin(user.id, self.super_admin_id) for user in admins
        ):
            # The configured super admin need not have a profile; in-app only
            admins.append(User(id=clean_steam_id(self.super_admin_id), role=Role.SUPER_ADMIN))
        return admins

    def _parties(self, protest: Protest) -> list[User]:
        parties = []
        seen = set()
        for user_id in (protest.accuser_id, protest.accused_id):
            key = clean_steam_id(user_id)
            if key in seen:
                continue
            seen.add(key)
            user = self.store.get_user(user_id) or self.store.get_user(key)
            # Unregistered parties still get an in-app record under their id
            parties.append(user or User(id=user_id))
        return parties

    # Due computation

    def due_event_notifications(
        self, event: Event, protests: list[Protest], now: datetime
    ) -> list[NotificationType]:
        """
        Event-level warnings due at ``now`` whose flag is still unset.

        Pure: reads nothing from the store.
        """
        if event.reference_timestamp is None:
            return []

        due = []
        buffer = self.warning_buffer_minutes
        if not event.notified_protest_warning and is_warning_window(
            now, submission_deadline(event.reference_timestamp), buffer
        ):
            due.append(NotificationType.PROTEST_DEADLINE_WARNING)

        if (
            not event.notified_voting_warning
            and is_warning_window(now, voting_deadline(event.reference_timestamp), buffer)
            and any(p.status is ProtestStatus.UNDER_REVIEW for p in protests)
        ):
            due.append(NotificationType.VOTING_DEADLINE_WARNING)

        return due

    # Entry points

    def dispatch_event_notifications(
        self, event_id: str, now: datetime | None = None
    ) -> list[DispatchReport]:
        """
        Send every due event-level warning for one event.

        The event and its protests are re-read here, right before the
        decision, so a flag set by a concurrent sweep is honored.

        Raises:
            NotFoundError: If the event does not exist
        """
        now = now or utcnow()
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event not found: {event_id}")
        protests = self.store.list_protests(event_id=event_id)

        reports = []
        for kind in self.due_event_notifications(event, protests, now):
            if not self._claim(event.id, kind):
                continue
            if kind is NotificationType.PROTEST_DEADLINE_WARNING:
                report = self._dispatch(
                    kind,
                    event.id,
                    self._members(),
                    PushMessage(
                        title="Protest window closing",
                        body=f"1 hour left to file protests for {_event_label(event)}.",
                        link=self._link("events", event.id),
                        data={"eventId": event.id, "type": kind.value},
                    ),
                )
            else:
                report = self._dispatch(
                    kind,
                    event.id,
                    self._admins(),
                    PushMessage(
                        title="Voting closes soon",
                        body=f"1 hour left to vote on protests from {_event_label(event)}.",
                        link=self._link("events", event.id),
                        data={"eventId": event.id, "type": kind.value},
                    ),
                )
            report.flag_set = self.store.set_event_flag(event.id, EVENT_FLAG_FOR[kind])
            reports.append(report)
        return reports

    def notify_voting_opened(
        self, event_id: str, protests: list[Protest] | None = None
    ) -> DispatchReport | None:
        """
        Tell admins that voting opened for an event.

        Call only after winning a pending -> under_review transition.
        Returns None when the event's flag is already set or another
        caller holds the dispatch claim.
        """
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event not found: {event_id}")
        kind = NotificationType.VOTING_OPENED
        if event.notified_voting_open or not self._claim(event.id, kind):
            return None

        if protests and len(protests) == 1:
            protest = protests[0]
            body = (
                f"{self.names.resolve(protest.accuser_id, event)} vs "
                f"{self.names.resolve(protest.accused_id, event)} at "
                f"{_event_label(event)} is ready for your vote."
            )
            link = self._link("protests", protest.id)
        else:
            body = f"Protests from {_event_label(event)} are ready for your vote."
            link = self._link("events", event.id)

        report = self._dispatch(
            kind,
            event.id,
            self._admins(),
            PushMessage(
                title="Voting is open",
                body=body,
                link=link,
                data={"eventId": event.id, "type": kind.value},
            ),
        )
        report.flag_set = self.store.set_event_flag(event.id, EVENT_FLAG_FOR[kind])
        return report

    def notify_verdict_ready(self, protest_id: str) -> DispatchReport | None:
        """
        Tell accuser and accused the verdict.

        Call only after winning the transition into a terminal status.
        Returns None if the protest is no longer terminal (overridden).
        """
        protest = self.store.get_protest(protest_id)
        if protest is None:
            raise NotFoundError(f"Protest not found: {protest_id}")
        if not protest.status.is_terminal:
            logger.warning(f"Protest {protest_id} is {protest.status.value}; verdict not sent")
            return None

        event = self.store.get_event(protest.event_id)
        race = _event_label(event) if event else protest.event_id
        kind = NotificationType.VERDICT_READY
        return self._dispatch(
            kind,
            protest.id,
            self._parties(protest),
            PushMessage(
                title=f"Verdict: {protest.verdict}",
                body=(
                    f"{self.names.resolve(protest.accuser_id, event)} vs "
                    f"{self.names.resolve(protest.accused_id, event)} at {race}: "
                    f"{protest.verdict}."
                ),
                link=self._link("protests", protest.id),
                data={"protestId": protest.id, "type": kind.value},
            ),
        )

    # Delivery

    def _link(self, collection: str, doc_id: str) -> str:
        return f"{self.base_url}/{collection}/{doc_id}"

    def _dispatch(
        self,
        kind: NotificationType,
        subject_id: str,
        recipients: list[User],
        message: PushMessage,
    ) -> DispatchReport:
        report = DispatchReport(type=kind, subject_id=subject_id, recipients=len(recipients))
        if not recipients:
            report.skipped = True
            logger.info(f"No recipients for {kind.value} ({subject_id}); skipped")
            metrics.increment(
                "notifications_dispatched_total",
                labels={"type": kind.value, "outcome": report.outcome},
            )
            return report

        tokens = list(dict.fromkeys(user.fcm_token for user in recipients if user.fcm_token))
        report.tokens = len(tokens)
        for batch in _batches(tokens, self.batch_size):
            self._send_batch(batch, message, report)

        for user in recipients:
            try:
                self.store.add_notification(
                    Notification(
                        user_id=user.id,
                        type=kind,
                        title=message.title,
                        message=message.body,
                        link=message.link,
                    )
                )
                report.in_app_written += 1
            except StorageError:
                logger.exception(f"Failed to store {kind.value} notification for {user.id}")

        metrics.increment(
            "notifications_dispatched_total",
            labels={"type": kind.value, "outcome": report.outcome},
        )
        logger.info(
            f"Dispatched {kind.value} for {subject_id}",
            extra={
                "recipients": report.recipients,
                "batches": report.batches,
                "success_count": report.success_count,
                "failure_count": report.failure_count,
            },
        )
        return report

    def _send_batch(self, batch: list[str], message: PushMessage, report: DispatchReport) -> None:
        report.batches += 1
        try:
            result = self.gateway.send_multicast(batch, message)
        except Exception:
            # One failed batch never stops the others
            report.failed_batches += 1
            report.failure_count += len(batch)
            metrics.increment("push_tokens_total", len(batch), labels={"outcome": "failure"})
            logger.exception(
                f"Push batch {report.batches} of {report.type.value} failed ({len(batch)} tokens)"
            )
            return

        report.success_count += result.success_count
        report.failure_count += result.failure_count
        report.token_errors.update(result.errors)
        metrics.increment("push_tokens_total", result.success_count, labels={"outcome": "success"})
        metrics.increment("push_tokens_total", result.failure_count, labels={"outcome": "failure"})
        for token, code in result.errors.items():
            logger.warning(f"Push to token failed: {code}", extra={"token": token})
