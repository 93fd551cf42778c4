"""
Scoring Engine

Quality gate evaluation for closed rounds, recency-weighted session scores,
and the feedback heuristics that feed reviewer metrics.
"""

import math
from typing import Any, Optional

from .errors import InvalidScoreError
from .schema import (
    FeedbackSeverity,
    ReviewFeedback,
    ReviewRound,
    ReviewSession,
    SessionScore,
    Stage,
)

SEVERITY_WEIGHTS = {
    FeedbackSeverity.CRITICAL: 3,
    FeedbackSeverity.MAJOR: 2,
    FeedbackSeverity.MINOR: 1,
    FeedbackSeverity.INFO: 1,
}


def validate_score(field: str, value: Any) -> float:
    """
    Return `value` as a float in 0..100.

    Raises:
        InvalidScoreError: If value is missing, not a number, NaN or out of range
    """
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidScoreError(field, value)
    if math.isnan(value) or value < 0 or value > 100:
        raise InvalidScoreError(field, value)
    return float(value)


def evaluate_round(round_: ReviewRound, stage: Stage) -> bool:
    """Whether both of the round's scores meet the stage's passing score."""
    quality = validate_score("quality_score", round_.quality_score)
    compliance = validate_score("compliance_score", round_.compliance_score)
    return quality >= stage.passing_score and compliance >= stage.passing_score


def aggregate_session_score(session: ReviewSession) -> Optional[SessionScore]:
    """
    Mean of all scored closed rounds with the latest round counted twice.

    Returns None when no closed round carries scores.
    """
    scored = [
        r for r in session.closed_rounds()
        if r.quality_score is not None and r.compliance_score is not None
    ]
    if not scored:
        return None

    *older, latest = scored
    n = len(scored)

    def weighted(attr: str) -> float:
        total = sum(getattr(r, attr) for r in older) + 2 * getattr(latest, attr)
        return total / (n + 1)

    return SessionScore(
        quality=weighted("quality_score"),
        compliance=weighted("compliance_score"),
        rounds=n,
    )


# ============================================================================
# Feedback Heuristics
# ============================================================================

def assess_feedback_quality(feedback: list[ReviewFeedback]) -> float:
    """
    Rate how actionable a round's feedback is, 0..100.

    Each item starts at 60 and gains points for a detailed description, a
    suggestion and a concrete location; items are weighted by severity.
    """
    if not feedback:
        return 50.0

    score = 0.0
    total_weight = 0
    for item in feedback:
        item_score = 60
        if len(item.description) > 50:
            item_score += 10
        if len(item.description) > 100:
            item_score += 10
        if item.suggestion:
            item_score += 15
        if item.section or item.line_number is not None:
            item_score += 10

        weight = SEVERITY_WEIGHTS[item.severity]
        score += item_score * weight
        total_weight += weight

    return min(score / total_weight, 100.0)


def assess_thoroughness(feedback: list[ReviewFeedback]) -> float:
    """Breadth of a review: distinct types and severities covered, plus volume."""
    score = 50.0
    score += 5 * len({item.type for item in feedback})
    score += 5 * len({item.severity for item in feedback})
    score += min(2 * len(feedback), 20)
    return min(score, 100.0)
