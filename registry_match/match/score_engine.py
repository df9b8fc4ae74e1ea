"""
Multi-signal confidence scoring for RegistryMatch.

Scores a normalized candidate against a normalized registry entry with four
independent signals, combines them with fixed weights and classifies the
result into a recommendation tier.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .similarity import edit_similarity, round_half_up

logger = logging.getLogger(__name__)


class Recommendation:
    AUTO_MATCH = "auto_match"
    MANUAL_REVIEW = "manual_review"
    REJECT = "reject"

    ALL = (AUTO_MATCH, MANUAL_REVIEW, REJECT)


SIGNAL_ORDER = ("text_match", "name_similarity", "address_match", "region_code_match")

DEFAULT_WEIGHTS = {
    "text_match": 0.40,
    "name_similarity": 0.25,
    "address_match": 0.20,
    "region_code_match": 0.15,
}


@dataclass(frozen=True)
class ScoringThresholds:
    auto_match_score: float = 95
    auto_match_min_signals: int = 3
    signal_match_value: float = 80
    manual_review_score: float = 70

    @classmethod
    def from_config(cls, thresholds: Dict[str, Any]) -> "ScoringThresholds":
        defaults = cls()
        return cls(
            auto_match_score=thresholds.get("auto_match_score", defaults.auto_match_score),
            auto_match_min_signals=thresholds.get("auto_match_min_signals", defaults.auto_match_min_signals),
            signal_match_value=thresholds.get("signal_match_value", defaults.signal_match_value),
            manual_review_score=thresholds.get("manual_review_score", defaults.manual_review_score)
        )


@dataclass(frozen=True)
class MatchSignal:
    """One independently computed 0-100 indicator of match quality."""

    name: str
    value: int
    weight: float
    details: Dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def contribution(self) -> float:
        return self.value * self.weight

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_name": self.name,
            "signal_value": self.value,
            "weight": self.weight,
            "contribution": self.contribution,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class ScoreResult:
    score: int
    signals: Tuple[MatchSignal, ...]
    recommendation: str
    matched_signals: int

    def signal(self, name: str) -> Optional[MatchSignal]:
        for signal in self.signals:
            if signal.name == name:
                return signal
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "recommendation": self.recommendation,
            "matched_signals": self.matched_signals,
            "total_signals": len(self.signals),
            "signals": [s.to_dict() for s in self.signals],
        }


def evaluate_text_match(str1: str, str2: str) -> int:
    """100 for case-insensitive equality, 80 for containment, else 0."""
    normalized1 = (str1 or "").lower().strip()
    normalized2 = (str2 or "").lower().strip()

    if normalized1 == normalized2:
        return 100 if normalized1 else 0

    if normalized1 and normalized2 and (normalized1 in normalized2 or normalized2 in normalized1):
        return 80

    return 0


def _exact_value(left: Optional[str], right: Optional[str]) -> int:
    if left and right:
        return 100 if left == right else 0
    return 0


class ScoreEngine:
    """
    Computes weighted confidence scores and recommendation tiers.

    Final score = round(sum(value * weight) / sum(weight)), which equals the
    weighted sum on the 0-100 scale while the weights sum to 1.0.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize score engine with configuration.

        Args:
            config: Scoring configuration with weights and thresholds
        """
        config = config or {}
        self.weights = dict(DEFAULT_WEIGHTS)
        self.weights.update(config.get("weights", {}))
        self.thresholds = ScoringThresholds.from_config(config.get("thresholds", {}))

        logger.info("Initialized ScoreEngine")

    def score(self, candidate_name: str, registry_name: str,
              candidate_address_hash: Optional[str] = None,
              registry_address_hash: Optional[str] = None,
              candidate_region: Optional[str] = None,
              registry_region: Optional[str] = None) -> ScoreResult:
        """
        Score a normalized candidate against a normalized registry entry.

        Args:
            candidate_name: Normalized candidate name
            registry_name: Normalized registry canonical name
            candidate_address_hash: Candidate address hash
            registry_address_hash: Registry address hash
            candidate_region: Candidate region code
            registry_region: Registry region code

        Returns:
            Score, ordered signals and recommendation
        """
        text_value = evaluate_text_match(candidate_name, registry_name)
        similarity_value = edit_similarity(candidate_name, registry_name)
        address_value = _exact_value(candidate_address_hash, registry_address_hash)
        region_value = _exact_value(candidate_region, registry_region)

        signals = (
            MatchSignal("text_match", text_value, self.weights["text_match"], {
                "candidate": candidate_name,
                "registry": registry_name,
                "exact_match": text_value == 100,
            }),
            MatchSignal("name_similarity", similarity_value, self.weights["name_similarity"], {
                "method": "levenshtein_distance",
            }),
            MatchSignal("address_match", address_value, self.weights["address_match"], {
                "candidate_hash": candidate_address_hash or "none",
                "registry_hash": registry_address_hash or "none",
                "exact_match": address_value == 100,
            }),
            MatchSignal("region_code_match", region_value, self.weights["region_code_match"], {
                "candidate": candidate_region or "none",
                "registry": registry_region or "none",
                "exact_match": region_value == 100,
            }),
        )

        final_score = self.combine(signals)
        matched_signals = len([s for s in signals if s.value >= self.thresholds.signal_match_value])
        recommendation = self.classify(final_score, matched_signals)

        return ScoreResult(
            score=final_score,
            signals=signals,
            recommendation=recommendation,
            matched_signals=matched_signals
        )

    @staticmethod
    def combine(signals: Tuple[MatchSignal, ...]) -> int:
        total_weight = sum(s.weight for s in signals)
        if total_weight <= 0:
            return 0
        total_contribution = sum(s.contribution for s in signals)
        return max(0, min(100, round_half_up(total_contribution / total_weight)))

    def classify(self, score: int, matched_signals: int) -> str:
        """
        Determine recommendation tier; the first matching tier wins.

        Args:
            score: Final score (0-100)
            matched_signals: Number of signals at or above signal_match_value

        Returns:
            auto_match, manual_review or reject
        """
        thresholds = self.thresholds

        if score >= thresholds.auto_match_score and matched_signals >= thresholds.auto_match_min_signals:
            return Recommendation.AUTO_MATCH
        elif score >= thresholds.manual_review_score:
            return Recommendation.MANUAL_REVIEW
        else:
            return Recommendation.REJECT


def get_scoring_statistics(results: List[ScoreResult]) -> Dict[str, Any]:
    """
    Summarize a list of score results.

    Args:
        results: Score results

    Returns:
        Dictionary with tier counts and score distribution
    """
    if not results:
        return {"total": 0, "decision_distribution": {}, "score_statistics": {}}

    scores = [r.score for r in results]
    distribution = {tier: 0 for tier in Recommendation.ALL}
    for result in results:
        distribution[result.recommendation] += 1

    return {
        "total": len(results),
        "decision_distribution": distribution,
        "score_statistics": {
            "mean_score": sum(scores) / len(scores),
            "min_score": min(scores),
            "max_score": max(scores),
        }
    }
