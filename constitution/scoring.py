"""
Constitutional scoring engine.

Scores a proposal on three weighted criteria:
- value (0.35)
- fairness (0.35)
- protection (0.30)

Base scores come from a pluggable ScoringStrategy. The default strategy is a
bounded keyword heuristic with randomised base scores; the deterministic
strategy uses range midpoints and is what tests and demos pin to.
"""
from __future__ import annotations

import random
import statistics
from typing import Dict, Optional, Protocol, Tuple, Union

from logging_setup import Component, get_logger
from voice_pipeline.errors import ScoringInvariantViolation

from .models import Evaluation, Proposal, Scores
from .responses import build_response


logger = get_logger(Component.SCORING)

WEIGHTS: Dict[str, float] = {"value": 0.35, "fairness": 0.35, "protection": 0.30}

APPROVAL_THRESHOLD = 0.70
HIGH_CONSENSUS_THRESHOLD = 0.90

# Base score ranges (low, high) per category
BASE_RANGES: Dict[str, Tuple[float, float]] = {
    "value": (0.70, 0.90),
    "fairness": (0.60, 0.90),
    "protection": (0.70, 0.95),
}

# Keyword boosts: a category is boosted at most once, whatever the match count
KEYWORD_BOOSTS: Dict[str, Tuple[float, Tuple[str, ...]]] = {
    "value": (0.10, ("value", "benefit", "utility", "growth")),
    "fairness": (0.15, ("fair", "equal", "justice", "equitable")),
    "protection": (0.12, ("protect", "secure", "safe", "prevent")),
}


def apply_keyword_boosts(text: str, base: Dict[str, float]) -> Dict[str, float]:
    """Add each category's boost when any of its keywords occurs, capped at 1.0."""
    lowered = text.lower()
    boosted = {}
    for name, score in base.items():
        boost, keywords = KEYWORD_BOOSTS[name]
        if any(keyword in lowered for keyword in keywords):
            score += boost
        boosted[name] = min(score, 1.0)
    return boosted


class ScoringStrategy(Protocol):
    name: str

    def score(self, text: str) -> Dict[str, float]:
        """Return {value, fairness, protection} for the text."""
        ...


class KeywordHeuristicStrategy:
    """Random base score per category within its range, plus keyword boosts."""

    name = "heuristic"

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def score(self, text: str) -> Dict[str, float]:
        base = {
            name: low + self._rng.random() * (high - low)
            for name, (low, high) in BASE_RANGES.items()
        }
        return apply_keyword_boosts(text, base)


class DeterministicStrategy:
    """Midpoint of each range plus keyword boosts. Same text, same scores."""

    name = "deterministic"

    def score(self, text: str) -> Dict[str, float]:
        base = {name: (low + high) / 2 for name, (low, high) in BASE_RANGES.items()}
        return apply_keyword_boosts(text, base)


def create_strategy(name: str, rng: Optional[random.Random] = None) -> ScoringStrategy:
    """Strategy by configuration name ("heuristic" or "deterministic")."""
    if name == DeterministicStrategy.name:
        return DeterministicStrategy()
    if name == KeywordHeuristicStrategy.name:
        return KeywordHeuristicStrategy(rng)
    raise ValueError(f"Unknown scoring strategy: {name}")


def consensus_index(value: float, fairness: float, protection: float) -> float:
    """1 - 4 * population variance, clamped to [0, 1]."""
    raw = 1.0 - 4.0 * statistics.pvariance([value, fairness, protection])
    return min(max(raw, 0.0), 1.0)


class ScoringEngine:
    """
    Maps proposal text to an Evaluation.

    Out-of-range strategy output is clamped to [0, 1] and logged; with
    strict=True a ScoringInvariantViolation is raised instead.
    """

    def __init__(self, strategy: Optional[ScoringStrategy] = None, strict: bool = False):
        self.strategy = strategy or KeywordHeuristicStrategy()
        self.strict = strict

    def _checked(self, name: str, score: float) -> float:
        if 0.0 <= score <= 1.0:
            return score
        violation = ScoringInvariantViolation(name, score)
        if self.strict:
            raise violation
        logger.warning(
            "Score out of range, clamped",
            category=name,
            score=score,
            strategy=self.strategy.name,
        )
        return min(max(score, 0.0), 1.0)

    def evaluate(self, proposal: Union[Proposal, str]) -> Evaluation:
        if not isinstance(proposal, Proposal):
            proposal = Proposal.create(proposal)

        raw = self.strategy.score(proposal.text)
        value = self._checked("value", raw["value"])
        fairness = self._checked("fairness", raw["fairness"])
        protection = self._checked("protection", raw["protection"])

        total = (
            value * WEIGHTS["value"]
            + fairness * WEIGHTS["fairness"]
            + protection * WEIGHTS["protection"]
        )
        consensus = consensus_index(value, fairness, protection)
        approved = total >= APPROVAL_THRESHOLD
        high_consensus = consensus >= HIGH_CONSENSUS_THRESHOLD

        scores = Scores(value=value, fairness=fairness, protection=protection, total=total)
        evaluation = Evaluation(
            scores=scores,
            consensus_index=consensus,
            approved=approved,
            high_consensus=high_consensus,
            response_text=build_response(scores, approved, high_consensus),
            proposal_id=proposal.id,
        )

        logger.info(
            "Proposal evaluated",
            proposal_id=proposal.id,
            strategy=self.strategy.name,
            total=round(total, 4),
            consensus_index=round(consensus, 4),
            approved=approved,
            high_consensus=high_consensus,
        )
        logger.debug_pii("Evaluated proposal text", text=proposal.text)
        return evaluation
