"""
Vote tallying for protest verdicts.

Simple majority, single round. The result depends only on how many
punish and acquit votes there are, never on their order.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from models import ProtestStatus, Vote, VoteChoice

VERDICT_PUNISHED = "Punished"
VERDICT_ABSOLVED = "Absolved"
VERDICT_NO_VOTES = "Inconclusive — no votes"
VERDICT_TIE = "Inconclusive — tie"


@dataclass(frozen=True)
class TallyResult:
    """Final status and verdict computed from a set of votes."""
    status: ProtestStatus
    verdict: str
    punish: int = 0
    acquit: int = 0

    @property
    def vote_count(self) -> dict[str, int]:
        return {"punish": self.punish, "acquit": self.acquit}

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "verdict": self.verdict,
            "vote_count": self.vote_count,
        }


def _choice(vote: Vote | VoteChoice | str) -> VoteChoice:
    if isinstance(vote, Vote):
        return vote.verdict
    if isinstance(vote, VoteChoice):
        return vote
    return VoteChoice(vote)


def count_votes(votes: Iterable[Vote | VoteChoice | str]) -> tuple[int, int]:
    """Return ``(punish, acquit)`` counts."""
    punish = acquit = 0
    for vote in votes:
        if _choice(vote) is VoteChoice.PUNISH:
            punish += 1
        else:
            acquit += 1
    return punish, acquit


def tally(votes: Iterable[Vote | VoteChoice | str]) -> TallyResult:
    """
    Compute a protest's final status and verdict.

    Args:
        votes: Votes, vote choices, or their string values

    Returns:
        TallyResult: concluded with "Punished"/"Absolved" on a strict
        majority, inconclusive on a tie or when nobody voted.
    """
    punish, acquit = count_votes(votes)

    if punish == 0 and acquit == 0:
        return TallyResult(ProtestStatus.INCONCLUSIVE, VERDICT_NO_VOTES, 0, 0)
    if punish > acquit:
        return TallyResult(ProtestStatus.CONCLUDED, VERDICT_PUNISHED, punish, acquit)
    if acquit > punish:
        return TallyResult(ProtestStatus.CONCLUDED, VERDICT_ABSOLVED, punish, acquit)
    return TallyResult(ProtestStatus.INCONCLUSIVE, VERDICT_TIE, punish, acquit)
