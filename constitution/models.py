"""
Proposal and evaluation data types.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict


def _new_proposal_id() -> str:
    return f"prop_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Proposal:
    """A user-submitted proposal. Text is never empty."""

    text: str
    id: str = field(default_factory=_new_proposal_id)
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not isinstance(self.text, str) or not self.text.strip():
            raise ValueError("Proposal text is required")

    @classmethod
    def create(cls, text: str) -> "Proposal":
        """Build a proposal from raw input, trimming surrounding whitespace."""
        if not isinstance(text, str):
            raise ValueError("Proposal text is required")
        return cls(text=text.strip())


@dataclass(frozen=True)
class Scores:
    value: float
    fairness: float
    protection: float
    total: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "value": self.value,
            "fairness": self.fairness,
            "protection": self.protection,
            "total": self.total,
        }


@dataclass(frozen=True)
class Evaluation:
    """Result of scoring one proposal. Created once, never mutated."""

    scores: Scores
    consensus_index: float
    approved: bool
    high_consensus: bool
    response_text: str
    proposal_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_api_dict(self) -> Dict[str, Any]:
        """Wire shape of the proposal evaluation endpoint's `result` field."""
        return {
            "scores": self.scores.as_dict(),
            "consensusIndex": self.consensus_index,
            "approved": self.approved,
            "highConsensus": self.high_consensus,
            "response": self.response_text,
            "timestamp": self.created_at.isoformat().replace("+00:00", "Z"),
        }

    @classmethod
    def from_api_dict(cls, data: Dict[str, Any], proposal_id: str) -> "Evaluation":
        """Rebuild an evaluation from the endpoint's `result` field."""
        scores = data["scores"]
        created_at = datetime.now(timezone.utc)
        ts = data.get("timestamp")
        if isinstance(ts, str):
            created_at = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        return cls(
            scores=Scores(
                value=float(scores["value"]),
                fairness=float(scores["fairness"]),
                protection=float(scores["protection"]),
                total=float(scores["total"]),
            ),
            consensus_index=float(data["consensusIndex"]),
            approved=bool(data["approved"]),
            high_consensus=bool(data["highConsensus"]),
            response_text=str(data.get("response", "")),
            proposal_id=proposal_id,
            created_at=created_at,
        )
