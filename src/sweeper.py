"""
Periodic sweep over active events.

One pass, for each active event:
1. evaluate every protest of the event with the lifecycle engine
2. notify admins once if this pass opened voting on any protest
3. send verdicts for protests this pass concluded
4. send due event-level warnings (once per event, not per protest)

A failure on one event or protest is logged and recorded in the report;
the pass carries on with the rest. ``check_protest`` is the same
discipline applied to a single protest, for opportunistic checks when a
protest is viewed.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from lifecycle import EvaluationResult, LifecycleEngine
from models import Event, utcnow
from monitoring import LoggingContext, metrics
from notifications import DispatchReport, NotificationDispatcher
from storage.base import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 900
DEFAULT_ACTIVE_GRACE = timedelta(hours=24)


@dataclass
class SweepReport:
    """Summary of one sweep pass."""
    sweep_id: str
    now: datetime
    events_checked: int = 0
    protests_evaluated: int = 0
    evaluations: list[EvaluationResult] = field(default_factory=list)
    notifications: list[DispatchReport] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def transitions(self) -> int:
        return sum(len(result.transitions) for result in self.evaluations)

    def record_error(self, kind: str, subject_id: str, error: Exception) -> None:
        self.errors.append({"kind": kind, "id": subject_id, "error": str(error)})
        metrics.increment("sweep_errors_total", labels={"kind": kind})

    def to_dict(self) -> dict[str, Any]:
        return {
            "sweep_id": self.sweep_id,
            "now": self.now.isoformat(),
            "events_checked": self.events_checked,
            "protests_evaluated": self.protests_evaluated,
            "transitions": [
                {"protest_id": r.protest_id, **t.to_dict()}
                for r in self.evaluations
                for t in r.transitions
            ],
            "notifications": [n.to_dict() for n in self.notifications],
            "errors": list(self.errors),
            "duration_ms": round(self.duration_ms, 2),
        }


class Sweeper:
    """Drives the lifecycle engine and dispatcher over active events."""

    def __init__(
        self,
        store: DocumentStore,
        engine: LifecycleEngine,
        dispatcher: NotificationDispatcher,
        interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        grace: timedelta = DEFAULT_ACTIVE_GRACE,
    ):
        self.store = store
        self.engine = engine
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self.grace = grace

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_report: SweepReport | None = None

    def run_once(self, now: datetime | None = None) -> SweepReport:
        """
        Run one sweep pass.

        Args:
            now: Sweep instant (defaults to the current UTC time)

        Returns:
            SweepReport; per-item failures are listed in ``errors``
        """
        now = now or utcnow()
        report = SweepReport(sweep_id=uuid.uuid4().hex[:8], now=now)
        started = time.perf_counter()

        with LoggingContext(sweep_id=report.sweep_id):
            try:
                events = self.store.list_active_events(now, self.grace)
            except Exception as e:
                logger.exception("Could not list active events")
                report.record_error("list_events", "*", e)
                events = []

            for event in events:
                try:
                    self._sweep_event(event, now, report)
                except Exception as e:
                    logger.exception(f"Sweep of event {event.id} failed")
                    report.record_error("event", event.id, e)
                report.events_checked += 1

            report.duration_ms = (time.perf_counter() - started) * 1000
            metrics.increment("sweep_runs_total")
            metrics.timing("sweep_duration_ms", report.duration_ms)
            metrics.set_gauge("active_events", len(events))
            logger.info(
                "Sweep finished",
                extra={
                    "events_checked": report.events_checked,
                    "protests_evaluated": report.protests_evaluated,
                    "transitions": report.transitions,
                    "notifications": len(report.notifications),
                    "errors": len(report.errors),
                },
            )

        self.last_report = report
        return report

    def _sweep_event(self, event: Event, now: datetime, report: SweepReport) -> None:
        opened = []
        concluded = []
        for protest in self.store.list_protests(event_id=event.id):
            if protest.status.is_terminal:
                continue
            try:
                result = self.engine.evaluate(protest.id, now)
            except Exception as e:
                logger.exception(f"Evaluation of protest {protest.id} failed")
                report.record_error("protest", protest.id, e)
                continue
            report.protests_evaluated += 1
            report.evaluations.append(result)
            if result.opened_voting:
                opened.append(protest)
            if result.concluded:
                concluded.append(protest.id)

        if opened:
            self._notify(report, "voting_opened", event.id,
                         self.dispatcher.notify_voting_opened, event.id, opened)
        for protest_id in concluded:
            self._notify(report, "verdict_ready", protest_id,
                         self.dispatcher.notify_verdict_ready, protest_id)

        self._notify_event(event.id, now, report)

    def _notify(self, report: SweepReport, kind: str, subject_id: str, send, *args) -> None:
        try:
            dispatched = send(*args)
        except Exception as e:
            logger.exception(f"{kind} notification for {subject_id} failed")
            report.record_error(kind, subject_id, e)
            return
        if dispatched is not None:
            report.notifications.append(dispatched)

    def check_protest(self, protest_id: str, now: datetime | None = None) -> SweepReport:
        """
        Opportunistic check of one protest (e.g. when its page is opened).

        Evaluation errors propagate to the caller; notification failures
        are logged and recorded in the report.

        Raises:
            ProtestNotFoundError: If the protest does not exist
        """
        now = now or utcnow()
        report = SweepReport(sweep_id=uuid.uuid4().hex[:8], now=now, events_checked=1)

        with LoggingContext(sweep_id=report.sweep_id, protest_id=protest_id):
            result = self.engine.evaluate(protest_id, now)
            report.protests_evaluated = 1
            report.evaluations.append(result)

            if result.opened_voting:
                protest = self.store.get_protest(protest_id)
                self._notify(report, "voting_opened", result.event_id,
                             self.dispatcher.notify_voting_opened,
                             result.event_id, [protest] if protest else None)
            if result.concluded:
                self._notify(report, "verdict_ready", protest_id,
                             self.dispatcher.notify_verdict_ready, protest_id)
            if result.phase.startable:
                self._notify_event(result.event_id, now, report)

        return report

    def _notify_event(self, event_id: str, now: datetime, report: SweepReport) -> None:
        try:
            report.notifications.extend(self.dispatcher.dispatch_event_notifications(event_id, now))
        except Exception as e:
            logger.exception(f"Event notifications for {event_id} failed")
            report.record_error("event_notifications", event_id, e)

    # Background scheduling

    def _scheduler_loop(self) -> None:
        logger.info(f"Sweep scheduler started (interval: {self.interval_seconds}s)")

        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Scheduled sweep failed")

            # Wakes early when stopped
            self._stop_event.wait(self.interval_seconds)

        logger.info("Sweep scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start sweeping on a background thread."""
        if self.is_running:
            logger.warning("Sweep scheduler already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._scheduler_loop, name="SweepScheduler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background scheduler."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def wait(self) -> None:
        """Block until the scheduler stops (used by the ``scheduler`` command)."""
        while self.is_running:
            self._stop_event.wait(1.0)
