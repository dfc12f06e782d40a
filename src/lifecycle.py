"""
Protest lifecycle engine.

State machine, terminal states concluded/inconclusive:

    pending --(phase >= voting)--> under_review
    under_review --(phase >= concluded)--> concluded | inconclusive   (tally)

Many callers may evaluate the same protest at once (the periodic sweep
in one process, opportunistic checks from the API in another). Nothing
is locked: every state advance is a conditional write that names the
status it expects to replace. The caller whose write lands owns the
transition and its side effects; everyone else sees a no-op.
"""

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from event_clock import NOT_STARTABLE, Phase, PhaseInfo, phase_of
from models import NotFoundError, Protest, ProtestStatus, utcnow
from monitoring import metrics
from storage.base import DocumentStore
from vote_tally import TallyResult, tally

logger = logging.getLogger(__name__)

# Called once per protest, by the caller that concluded it
ConclusionObserver = Callable[[Protest, TallyResult], None]


class ProtestNotFoundError(NotFoundError):
    """Raised when evaluating a protest id that does not exist."""
    pass


@dataclass(frozen=True)
class Transition:
    from_status: ProtestStatus
    to_status: ProtestStatus

    def to_dict(self) -> dict[str, str]:
        return {"from": self.from_status.value, "to": self.to_status.value}


@dataclass
class EvaluationResult:
    """Outcome of one ``evaluate`` call."""
    protest_id: str
    event_id: str
    previous_status: ProtestStatus
    status: ProtestStatus
    phase: PhaseInfo
    transitions: list[Transition] = field(default_factory=list)
    tally: TallyResult | None = None

    @property
    def opened_voting(self) -> bool:
        """True if this call moved the protest from pending to under review."""
        return any(t.to_status is ProtestStatus.UNDER_REVIEW for t in self.transitions)

    @property
    def concluded(self) -> bool:
        """True if this call moved the protest into a terminal status."""
        return any(t.to_status.is_terminal for t in self.transitions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "protest_id": self.protest_id,
            "event_id": self.event_id,
            "previous_status": self.previous_status.value,
            "status": self.status.value,
            "phase": self.phase.to_dict(),
            "transitions": [t.to_dict() for t in self.transitions],
            "tally": self.tally.to_dict() if self.tally else None,
        }


class LifecycleEngine:
    """Advances protests through their lifecycle using conditional writes."""

    def __init__(
        self,
        store: DocumentStore,
        observers: list[ConclusionObserver] | None = None,
    ):
        self.store = store
        self._observers: list[ConclusionObserver] = list(observers or [])

    def add_observer(self, observer: ConclusionObserver) -> None:
        """Register a callback for protests this engine concludes (e.g. video cleanup)."""
        self._observers.append(observer)

    def phase_for(self, protest: Protest, now: datetime) -> PhaseInfo:
        event = self.store.get_event(protest.event_id)
        if event is None:
            logger.warning(f"Protest {protest.id} references missing event {protest.event_id}")
            return NOT_STARTABLE
        return phase_of(now, event.reference_timestamp)

    def evaluate(self, protest_id: str, now: datetime | None = None) -> EvaluationResult:
        """
        Advance one protest as far as the clock allows.

        State is read fresh from the store on every call. Losing a
        conditional write to another caller is a normal outcome: the
        fresh status is re-read and evaluation continues from there.

        Args:
            protest_id: Protest to evaluate
            now: Evaluation instant (defaults to the current UTC time)

        Returns:
            EvaluationResult with the transitions this call won

        Raises:
            ProtestNotFoundError: If the protest does not exist
            StorageError: If the store fails
        """
        now = now or utcnow()
        protest = self.store.get_protest(protest_id)
        if protest is None:
            raise ProtestNotFoundError(f"Protest not found: {protest_id}")

        info = self.phase_for(protest, now)
        result = EvaluationResult(
            protest_id=protest.id,
            event_id=protest.event_id,
            previous_status=protest.status,
            status=protest.status,
            phase=info,
        )
        if protest.status.is_terminal:
            return result

        if result.status is ProtestStatus.PENDING and info.phase.at_least(Phase.VOTING):
            self._open_voting(protest, result)

        if result.status is ProtestStatus.UNDER_REVIEW and info.phase.at_least(Phase.CONCLUDED):
            self._conclude(protest, result)

        return result

    def _open_voting(self, protest: Protest, result: EvaluationResult) -> None:
        won = self.store.update_protest_if(
            protest.id,
            ProtestStatus.PENDING,
            {"status": ProtestStatus.UNDER_REVIEW},
        )
        if won:
            self._record(result, ProtestStatus.PENDING, ProtestStatus.UNDER_REVIEW)
        else:
            result.status = self._fresh_status(protest.id, result.status)

    def _conclude(self, protest: Protest, result: EvaluationResult) -> None:
        # Votes are read immediately before the write they feed
        outcome = tally(self.store.list_votes(protest.id))
        result.tally = outcome
        won = self.store.update_protest_if(
            protest.id,
            ProtestStatus.UNDER_REVIEW,
            {
                "status": outcome.status,
                "verdict": outcome.verdict,
                "vote_count": outcome.vote_count,
            },
        )
        if not won:
            result.status = self._fresh_status(protest.id, result.status)
            return

        self._record(result, ProtestStatus.UNDER_REVIEW, outcome.status)
        logger.info(
            f"Protest {protest.id} concluded: {outcome.verdict}",
            extra={"punish": outcome.punish, "acquit": outcome.acquit},
        )
        concluded = dataclasses.replace(
            protest,
            status=outcome.status,
            verdict=outcome.verdict,
            vote_count=outcome.vote_count,
        )
        self._notify_observers(concluded, outcome)

    def _record(
        self, result: EvaluationResult, from_status: ProtestStatus, to_status: ProtestStatus
    ) -> None:
        result.transitions.append(Transition(from_status, to_status))
        result.status = to_status
        metrics.increment(
            "lifecycle_transitions_total",
            labels={"from": from_status.value, "to": to_status.value},
        )
        logger.debug(f"Protest {result.protest_id}: {from_status.value} -> {to_status.value}")

    def _fresh_status(self, protest_id: str, fallback: ProtestStatus) -> ProtestStatus:
        protest = self.store.get_protest(protest_id)
        return protest.status if protest else fallback

    def _notify_observers(self, protest: Protest, outcome: TallyResult) -> None:
        for observer in self._observers:
            try:
                observer(protest, outcome)
            except Exception:
                logger.exception(f"Conclusion observer failed for protest {protest.id}")
