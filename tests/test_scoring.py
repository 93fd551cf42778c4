"""
Tests for quality gates, session scores and feedback heuristics
"""

import math

import pytest

from docreview.errors import InvalidScoreError
from docreview.schema import (
    FeedbackSeverity,
    FeedbackType,
    ReviewDecision,
    ReviewFeedback,
    ReviewRound,
    ReviewSession,
    Stage,
)
from docreview.scoring import (
    aggregate_session_score,
    assess_feedback_quality,
    assess_thoroughness,
    evaluate_round,
    validate_score,
)

from conftest import MONDAY_10AM


STAGE = Stage(stage_number=1, required_role="project_manager", passing_score=70)


def _round(number, quality, compliance, decision=ReviewDecision.APPROVE, **kwargs):
    return ReviewRound(
        round_number=number,
        stage_number=1,
        reviewer_id="alice",
        started_at=MONDAY_10AM,
        completed_at=MONDAY_10AM,
        decision=decision,
        quality_score=quality,
        compliance_score=compliance,
        **kwargs,
    )


def _session(rounds):
    return ReviewSession(
        document_id="doc",
        document_type="project_charter",
        workflow_id="project-charter",
        created_by="author",
        rounds=rounds,
    )


class TestValidateScore:
    """Tests for score validation"""

    @pytest.mark.parametrize("value", [0, 55.5, 100])
    def test_accepts_range(self, value):
        """Should accept numbers in 0..100"""
        assert validate_score("quality_score", value) == float(value)

    @pytest.mark.parametrize("value", [None, -1, 100.1, math.nan, "80", True])
    def test_rejects_invalid(self, value):
        """Should reject missing, out-of-range, NaN and non-numeric scores"""
        with pytest.raises(InvalidScoreError) as exc_info:
            validate_score("quality_score", value)
        assert exc_info.value.field == "quality_score"


class TestQualityGate:
    """Tests for the per-stage passing score"""

    def test_both_scores_must_pass(self):
        """Should pass only when quality and compliance both meet the passing score"""
        assert evaluate_round(_round(1, 70, 70), STAGE)
        assert not evaluate_round(_round(1, 65, 90), STAGE)
        assert not evaluate_round(_round(1, 90, 69.9), STAGE)


class TestAggregateScore:
    """Tests for recency-weighted session scores"""

    def test_no_scored_rounds(self):
        """Should return None without scored closed rounds"""
        assert aggregate_session_score(_session([])) is None
        unscored = _round(1, None, None, decision=ReviewDecision.REQUEST_REVISION)
        assert aggregate_session_score(_session([unscored])) is None

    def test_single_round(self):
        """Should equal the round's scores when there is one round"""
        score = aggregate_session_score(_session([_round(1, 80, 60)]))
        assert score.quality == pytest.approx(80)
        assert score.compliance == pytest.approx(60)
        assert score.rounds == 1

    def test_latest_counts_twice(self):
        """Should weight the latest round double"""
        rounds = [_round(1, 60, 50), _round(2, 90, 80)]
        score = aggregate_session_score(_session(rounds))

        assert score.quality == pytest.approx((60 + 2 * 90) / 3)
        assert score.compliance == pytest.approx((50 + 2 * 80) / 3)
        assert score.rounds == 2

    def test_ignores_open_rounds(self):
        """Should skip rounds that are still open"""
        open_round = ReviewRound(round_number=2, stage_number=1, reviewer_id="alice", started_at=MONDAY_10AM)
        score = aggregate_session_score(_session([_round(1, 80, 80), open_round]))
        assert score.rounds == 1

    def test_includes_system_rounds(self):
        """Should count an auto-approved system round like any other closed round"""
        rounds = [_round(1, 60, 60), _round(2, 70, 70, system_generated=True)]
        score = aggregate_session_score(_session(rounds))

        assert score.quality == pytest.approx((60 + 2 * 70) / 3)
        assert score.rounds == 2


class TestFeedbackHeuristics:
    """Tests for feedback quality and thoroughness heuristics"""

    def test_empty_feedback(self):
        """Should give neutral scores to a round without feedback"""
        assert assess_feedback_quality([]) == 50.0
        assert assess_thoroughness([]) == 50.0

    def test_detailed_item_scores_higher(self):
        """Should reward detail, suggestions and locations"""
        terse = ReviewFeedback(type=FeedbackType.CLARITY, description="Unclear")
        detailed = ReviewFeedback(
            type=FeedbackType.CLARITY,
            description="The scope statement mixes deliverables and objectives. " * 2,
            suggestion="Split the section into deliverables and objectives",
            section="1.2 Scope",
        )
        assert assess_feedback_quality([terse]) == 60.0
        assert assess_feedback_quality([detailed]) == 100.0

    def test_severity_weighting(self):
        """Should weight critical items three times a minor item"""
        minor = ReviewFeedback(type=FeedbackType.FORMATTING, severity=FeedbackSeverity.MINOR)
        critical = ReviewFeedback(
            type=FeedbackType.CONTENT_ACCURACY, severity=FeedbackSeverity.CRITICAL,
            suggestion="Fix the budget total",
        )
        # (60 * 1 + 75 * 3) / 4
        assert assess_feedback_quality([minor, critical]) == pytest.approx(71.25)

    def test_thoroughness_breadth(self):
        """Should add points per distinct type and severity plus volume"""
        items = [
            ReviewFeedback(type=FeedbackType.CLARITY, severity=FeedbackSeverity.MINOR),
            ReviewFeedback(type=FeedbackType.COMPLETENESS, severity=FeedbackSeverity.MAJOR),
            ReviewFeedback(type=FeedbackType.CLARITY, severity=FeedbackSeverity.MINOR),
        ]
        # 50 + 2 types * 5 + 2 severities * 5 + 3 items * 2
        assert assess_thoroughness(items) == pytest.approx(76)

    def test_thoroughness_capped(self):
        """Should never exceed 100"""
        items = [
            ReviewFeedback(type=t, severity=s)
            for t in FeedbackType for s in FeedbackSeverity
        ]
        assert assess_thoroughness(items) == 100.0
