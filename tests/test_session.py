"""
Tests for the review session state machine
"""

import pytest
from datetime import datetime, timedelta, timezone

from docreview import session as machine
from docreview.errors import InvalidScoreError, InvalidStateTransitionError
from docreview.schema import (
    AssignmentStatus,
    FeedbackStatus,
    FeedbackType,
    ReviewDecision,
    ReviewerAssignment,
    ReviewFeedback,
    SessionStatus,
    WorkflowConfig,
)

from conftest import MONDAY_10AM


@pytest.fixture
def config(two_stage_workflow):
    return WorkflowConfig.model_validate(two_stage_workflow)


@pytest.fixture
def parallel_config(parallel_workflow):
    return WorkflowConfig.model_validate(parallel_workflow)


def _assign(session, reviewer_id, stage_number, role="project_manager", now=MONDAY_10AM):
    assignment = ReviewerAssignment(reviewer_id=reviewer_id, role=role, stage_number=stage_number, assigned_at=now)
    return machine.apply_assignments(session, [assignment], "coordinator", now)


@pytest.fixture
def assigned(config):
    session, _ = machine.new_session("doc-1", "project_charter", config, "author", MONDAY_10AM)
    _assign(session, "alice", 1)
    return session


def _statuses(events):
    return [e.to_status for e in events]


class TestDueDate:
    """Tests for business-day due dates"""

    def test_skips_weekend(self):
        """Should land on Monday when adding 5 business days to Monday"""
        assert machine.calculate_due_date(MONDAY_10AM, 5) == MONDAY_10AM + timedelta(days=7)

    def test_from_friday(self):
        """Should skip Saturday and Sunday starting on Friday"""
        friday = datetime(2026, 10, 23, 12, 0, tzinfo=timezone.utc)
        assert machine.calculate_due_date(friday, 1) == datetime(2026, 10, 26, 12, 0, tzinfo=timezone.utc)


class TestCreation:
    """Tests for creating sessions and assigning reviewers"""

    def test_new_session(self, config):
        """Should start pending assignment on stage 1 with a creation event"""
        session, events = machine.new_session("doc-1", "project_charter", config, "author", MONDAY_10AM)

        assert session.status == SessionStatus.PENDING_ASSIGNMENT
        assert session.current_stage == 1
        assert session.active_stages == [1]
        assert session.current_round == 0
        assert session.due_date == MONDAY_10AM + timedelta(days=7)
        assert len(events) == 1
        assert events[0].from_status is None
        assert events[0].to_status == SessionStatus.PENDING_ASSIGNMENT

    def test_unknown_document_type(self, config):
        """Should refuse a document type the workflow does not cover"""
        with pytest.raises(ValueError):
            machine.new_session("doc-1", "memo", config, "author", MONDAY_10AM)

    def test_assignment_moves_to_assigned(self, config):
        """Should become assigned once every active stage has a reviewer"""
        session, _ = machine.new_session("doc-1", "project_charter", config, "author", MONDAY_10AM)
        events = _assign(session, "alice", 1)

        assert session.status == SessionStatus.ASSIGNED
        assert _statuses(events) == [SessionStatus.ASSIGNED]
        assert session.assignments[0].notified_at == MONDAY_10AM

    def test_cannot_assign_inactive_stage(self, assigned):
        """Should refuse an assignment for a stage that is not active"""
        with pytest.raises(InvalidStateTransitionError):
            _assign(assigned, "bob", 2, role="quality_reviewer")

    def test_cannot_assign_twice(self, assigned):
        """Should refuse a duplicate open assignment"""
        with pytest.raises(InvalidStateTransitionError):
            _assign(assigned, "alice", 1)


class TestRounds:
    """Tests for opening and closing rounds"""

    def test_begin_round(self, assigned, config):
        """Should open round 1 and move to in_review"""
        round_, events = machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)

        assert round_.round_number == 1
        assert assigned.status == SessionStatus.IN_REVIEW
        assert _statuses(events) == [SessionStatus.IN_REVIEW]
        assert assigned.assignments[0].status == AssignmentStatus.ACCEPTED

    def test_begin_round_requires_assignment(self, assigned, config):
        """Should refuse a reviewer who is not assigned"""
        with pytest.raises(InvalidStateTransitionError):
            machine.begin_round(assigned, config, "bob", "bob", MONDAY_10AM)

    def test_begin_round_twice(self, assigned, config):
        """Should refuse a second round while one is open"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        with pytest.raises(InvalidStateTransitionError):
            machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)

    def test_feedback_moves_to_feedback_provided(self, assigned, config):
        """Should move to feedback_provided when feedback arrives"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        items = [ReviewFeedback(type=FeedbackType.CLARITY, description="Objectives are vague")]
        events = machine.submit_feedback(assigned, 1, items, "alice", MONDAY_10AM)

        assert assigned.status == SessionStatus.FEEDBACK_PROVIDED
        assert _statuses(events) == [SessionStatus.FEEDBACK_PROVIDED]
        assert assigned.get_round(1).is_open

    def test_feedback_on_closed_round(self, assigned, config):
        """Should refuse feedback on a round that is not open"""
        with pytest.raises(InvalidStateTransitionError):
            machine.submit_feedback(assigned, 1, [], "alice", MONDAY_10AM)

    def test_score_below_gate_requests_revision(self, assigned, config):
        """Should move an approval scoring 65 against a passing score of 70 to revision_requested"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        outcome = machine.close_round(assigned, config, 1, ReviewDecision.APPROVE, 65, 90, "alice", MONDAY_10AM)

        assert not outcome.passed
        assert assigned.status == SessionStatus.REVISION_REQUESTED
        assert assigned.current_stage == 1
        assert assigned.passed_stages == []
        assert assigned.assignment_for("alice", 1) is not None

    def test_revision_starts_next_round(self, assigned, config):
        """Should number the next round one higher than the last"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        machine.close_round(assigned, config, 1, ReviewDecision.REQUEST_REVISION, None, None, "alice", MONDAY_10AM)
        round_, events = machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)

        assert round_.round_number == 2
        assert _statuses(events) == [SessionStatus.IN_REVIEW]

    def test_pass_advances_to_next_stage(self, assigned, config):
        """Should pass stage 1, enter stage 2 and wait for assignment"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        later = MONDAY_10AM + timedelta(hours=3)
        outcome = machine.close_round(assigned, config, 1, ReviewDecision.APPROVE, 85, 80, "alice", later)

        assert outcome.passed
        assert outcome.entered_stages == [2]
        assert assigned.current_stage == 2
        assert assigned.passed_stages == [1]
        assert assigned.stage_entered_at == later
        assert assigned.status == SessionStatus.ASSIGNED
        assert assigned.assignments[0].status == AssignmentStatus.COMPLETED
        assert machine.stages_needing_assignment(assigned) == [2]

    def test_last_stage_completes(self, assigned, config):
        """Should approve and complete after the last stage passes"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        machine.close_round(assigned, config, 1, ReviewDecision.APPROVE, 85, 80, "alice", MONDAY_10AM)
        _assign(assigned, "bob", 2, role="quality_reviewer")
        machine.begin_round(assigned, config, "bob", "bob", MONDAY_10AM)
        outcome = machine.close_round(assigned, config, 2, ReviewDecision.APPROVE, 90, 90, "bob", MONDAY_10AM)

        assert outcome.completed
        assert _statuses(outcome.events) == [SessionStatus.APPROVED, SessionStatus.COMPLETED]
        assert assigned.status == SessionStatus.COMPLETED
        assert assigned.completed_at == MONDAY_10AM

    def test_reject_is_terminal(self, assigned, config):
        """Should reject the session outright"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        outcome = machine.close_round(assigned, config, 1, ReviewDecision.REJECT, 20, 30, "alice", MONDAY_10AM)

        assert _statuses(outcome.events) == [SessionStatus.REJECTED]
        assert assigned.is_terminal
        assert assigned.completed_at == MONDAY_10AM

    def test_approve_requires_scores(self, assigned, config):
        """Should refuse an approval without scores and leave the round open"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        with pytest.raises(InvalidScoreError):
            machine.close_round(assigned, config, 1, ReviewDecision.APPROVE, None, 80, "alice", MONDAY_10AM)
        assert assigned.get_round(1).is_open

    def test_close_same_decision_is_noop(self, assigned, config):
        """Should treat a repeated close with identical values as a no-op"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        machine.close_round(assigned, config, 1, ReviewDecision.REQUEST_REVISION, 50, 50, "alice", MONDAY_10AM)
        outcome = machine.close_round(assigned, config, 1, ReviewDecision.REQUEST_REVISION, 50, 50, "alice", MONDAY_10AM)

        assert outcome.noop
        assert outcome.events == []

    def test_close_different_decision_fails(self, assigned, config):
        """Should refuse to re-close a round with a different decision"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        machine.close_round(assigned, config, 1, ReviewDecision.REQUEST_REVISION, 50, 50, "alice", MONDAY_10AM)
        with pytest.raises(InvalidStateTransitionError):
            machine.close_round(assigned, config, 1, ReviewDecision.APPROVE, 90, 90, "alice", MONDAY_10AM)

    def test_close_unknown_round(self, assigned, config):
        """Should refuse to close a round that does not exist"""
        with pytest.raises(InvalidStateTransitionError):
            machine.close_round(assigned, config, 7, ReviewDecision.REJECT, None, None, "alice", MONDAY_10AM)


class TestParallelStages:
    """Tests for parallel stage groups"""

    @pytest.fixture
    def in_parallel(self, parallel_config):
        session, _ = machine.new_session("spec-1", "technical_spec", parallel_config, "author", MONDAY_10AM)
        _assign(session, "tina", 1, role="technical_lead")
        machine.begin_round(session, parallel_config, "tina", "tina", MONDAY_10AM)
        machine.close_round(session, parallel_config, 1, ReviewDecision.APPROVE, 90, 90, "tina", MONDAY_10AM)
        _assign(session, "sam", 2, role="security_reviewer")
        _assign(session, "ada", 3, role="architect")
        return session

    def test_enters_whole_group(self, in_parallel):
        """Should activate both parallel stages together"""
        assert in_parallel.active_stages == [2, 3]
        assert in_parallel.current_stage == 2

    def test_rounds_run_concurrently(self, in_parallel, parallel_config):
        """Should allow a round per parallel stage while the other is open"""
        machine.begin_round(in_parallel, parallel_config, "sam", "sam", MONDAY_10AM)
        round_, _ = machine.begin_round(in_parallel, parallel_config, "ada", "ada", MONDAY_10AM)

        assert round_.round_number == 3
        assert len(in_parallel.open_rounds()) == 2

    def test_group_completes_after_all_pass(self, in_parallel, parallel_config):
        """Should complete only after every stage of the group passes"""
        machine.begin_round(in_parallel, parallel_config, "sam", "sam", MONDAY_10AM)
        machine.begin_round(in_parallel, parallel_config, "ada", "ada", MONDAY_10AM)

        first = machine.close_round(in_parallel, parallel_config, 3, ReviewDecision.APPROVE, 80, 80, "ada", MONDAY_10AM)
        assert not first.completed
        assert in_parallel.status == SessionStatus.IN_REVIEW

        second = machine.close_round(in_parallel, parallel_config, 2, ReviewDecision.APPROVE, 80, 80, "sam", MONDAY_10AM)
        assert second.completed
        assert in_parallel.status == SessionStatus.COMPLETED

    def test_reject_closes_sibling_rounds(self, in_parallel, parallel_config):
        """Should interrupt the other open rounds of the group when one stage rejects"""
        later = MONDAY_10AM + timedelta(hours=2)
        machine.begin_round(in_parallel, parallel_config, "sam", "sam", MONDAY_10AM)
        machine.begin_round(in_parallel, parallel_config, "ada", "ada", MONDAY_10AM)

        machine.close_round(in_parallel, parallel_config, 2, ReviewDecision.REJECT, 30, 30, "sam", later)

        assert in_parallel.status == SessionStatus.REJECTED
        assert in_parallel.open_rounds() == []
        sibling = in_parallel.get_round(3)
        assert sibling.interrupted
        assert sibling.completed_at == later
        assert sibling.decision is None
        assert not in_parallel.get_round(2).interrupted


class TestTerminalAndCancel:
    """Tests for cancellation and terminal immutability"""

    def test_cancel_interrupts_open_round(self, assigned, config):
        """Should close open rounds as interrupted and keep their feedback"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        items = [ReviewFeedback(type=FeedbackType.FORMATTING)]
        machine.submit_feedback(assigned, 1, items, "alice", MONDAY_10AM)
        events = machine.cancel(assigned, "author", MONDAY_10AM, "superseded")

        assert _statuses(events) == [SessionStatus.CANCELLED]
        assert events[0].reason == "superseded"
        round_ = assigned.get_round(1)
        assert round_.interrupted
        assert not round_.is_open
        assert len(round_.feedback) == 1

    def test_terminal_session_rejects_operations(self, assigned, config):
        """Should refuse every mutating operation once terminal"""
        machine.cancel(assigned, "author", MONDAY_10AM)

        with pytest.raises(InvalidStateTransitionError):
            machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        with pytest.raises(InvalidStateTransitionError):
            machine.cancel(assigned, "author", MONDAY_10AM)
        with pytest.raises(InvalidStateTransitionError):
            _assign(assigned, "carol", 1)
        with pytest.raises(InvalidStateTransitionError):
            machine.close_round(assigned, config, 1, ReviewDecision.REJECT, None, None, "alice", MONDAY_10AM)

    def test_completed_close_round_not_noop(self, assigned, config):
        """Should refuse even an identical close once the session is terminal"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        machine.close_round(assigned, config, 1, ReviewDecision.REJECT, 10, 10, "alice", MONDAY_10AM)
        with pytest.raises(InvalidStateTransitionError):
            machine.close_round(assigned, config, 1, ReviewDecision.REJECT, 10, 10, "alice", MONDAY_10AM)


class TestReplaceSkipForce:
    """Tests for reassignment, skipping and system approvals"""

    def test_replace_interrupts_old_round(self, assigned, config):
        """Should mark the old assignment reassigned and return to assigned"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        replacement = ReviewerAssignment(reviewer_id="carol", role="project_manager", stage_number=1)
        events = machine.replace_reviewer(assigned, "alice", 1, replacement, "system", MONDAY_10AM)

        assert _statuses(events) == [SessionStatus.ASSIGNED]
        assert assigned.assignments[0].status == AssignmentStatus.REASSIGNED
        assert assigned.get_round(1).interrupted
        assert assigned.assignment_for("carol", 1) is not None

    def test_decline_after_starting(self, assigned, config):
        """Should refuse to decline once the reviewer opened a round"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        with pytest.raises(InvalidStateTransitionError):
            machine.decline_assignment(assigned, "alice", 1, MONDAY_10AM)

    def test_skip_requires_flag(self, assigned, config):
        """Should refuse to skip a mandatory stage"""
        with pytest.raises(InvalidStateTransitionError):
            machine.skip_stage(assigned, config, 1, "coordinator", MONDAY_10AM)

    def test_skip_optional_stage(self, assigned, two_stage_workflow):
        """Should pass a skippable stage without a round"""
        two_stage_workflow["stages"][0]["can_skip"] = True
        config = WorkflowConfig.model_validate(two_stage_workflow)
        outcome = machine.skip_stage(assigned, config, 1, "coordinator", MONDAY_10AM, "not applicable")

        assert outcome.passed
        assert assigned.current_stage == 2
        assert assigned.rounds == []

    def test_force_approve_without_round(self, assigned, config):
        """Should add a system round at the passing score"""
        outcome = machine.force_approve(assigned, config, 1, MONDAY_10AM, "auto-approved")

        round_ = outcome.round
        assert round_.system_generated
        assert round_.reviewer_id == machine.SYSTEM_ACTOR
        assert round_.quality_score == 70
        assert assigned.current_stage == 2
        assert all(e.actor_id == machine.SYSTEM_ACTOR for e in outcome.events)


class TestFeedbackStatus:
    """Tests for feedback item lifecycle"""

    def test_address_and_reopen(self, assigned, config):
        """Should record who addressed an item and clear it on reopen"""
        machine.begin_round(assigned, config, "alice", "alice", MONDAY_10AM)
        item = ReviewFeedback(type=FeedbackType.COMPLETENESS, description="Missing risks")
        machine.submit_feedback(assigned, 1, [item], "alice", MONDAY_10AM)

        updated = machine.update_feedback_status(assigned, item.id, FeedbackStatus.ADDRESSED, "author", MONDAY_10AM)
        assert updated.addressed_by == "author"
        assert updated.addressed_at == MONDAY_10AM

        reopened = machine.update_feedback_status(assigned, item.id, FeedbackStatus.OPEN, "alice", MONDAY_10AM)
        assert reopened.addressed_by is None

    def test_unknown_feedback(self, assigned):
        """Should raise KeyError for an unknown feedback id"""
        with pytest.raises(KeyError):
            machine.update_feedback_status(assigned, "fb-missing", FeedbackStatus.ADDRESSED, "author", MONDAY_10AM)
