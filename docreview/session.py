"""
Review Session State Machine

Operations that move a ReviewSession through its lifecycle:

    pending_assignment -> assigned -> in_review -> feedback_provided
        -> approved + completed | rejected | revision_requested

revision_requested loops back to in_review with a new round. cancelled is
reachable from any non-terminal status.

Each operation mutates the session it is given and returns the transition
events it caused. Callers pass a private copy and persist it only when the
operation succeeds.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from .errors import InvalidStateTransitionError
from .events import TransitionEvent
from .schema import (
    AssignmentStatus,
    FeedbackStatus,
    ReviewDecision,
    ReviewerAssignment,
    ReviewFeedback,
    ReviewPriority,
    ReviewRound,
    ReviewSession,
    SessionStatus,
    Stage,
    WorkflowConfig,
)
from .scoring import evaluate_round, validate_score

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

BEGIN_ROUND_STATUSES = {SessionStatus.ASSIGNED, SessionStatus.REVISION_REQUESTED}
REVIEWING_STATUSES = {SessionStatus.IN_REVIEW, SessionStatus.FEEDBACK_PROVIDED}


@dataclass
class StageOutcome:
    """Result of an operation that may finish a stage."""
    events: list[TransitionEvent] = field(default_factory=list)
    round: Optional[ReviewRound] = None
    passed: bool = False
    entered_stages: list[int] = field(default_factory=list)
    completed: bool = False
    noop: bool = False


def calculate_due_date(start: datetime, business_days: int) -> datetime:
    """Add business days to `start`, skipping Saturdays and Sundays."""
    due = start
    added = 0
    while added < business_days:
        due += timedelta(days=1)
        if due.weekday() < 5:
            added += 1
    return due


# ============================================================================
# Helpers
# ============================================================================

def _transition(
    session: ReviewSession,
    to_status: SessionStatus,
    actor_id: str,
    now: datetime,
    reason: str = "",
    **details: Any,
) -> TransitionEvent:
    from_status = session.status
    session.status = to_status
    session.touch(now)
    return TransitionEvent(
        session_id=session.id,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        timestamp=now,
        reason=reason,
        stage_number=details.pop("stage_number", session.current_stage),
        round_number=details.pop("round_number", None),
        details=details,
    )


def require_active(session: ReviewSession, operation: str) -> None:
    if session.is_terminal:
        raise InvalidStateTransitionError(
            session.id, session.status.value, operation, "session is closed"
        )


def _require_stage(config: WorkflowConfig, stage_number: int) -> Stage:
    stage = config.get_stage(stage_number)
    if stage is None:
        raise ValueError(f"Workflow {config.id} has no stage {stage_number}")
    return stage


def _enter_stage_group(session: ReviewSession, config: WorkflowConfig, stage: Stage, now: datetime) -> list[int]:
    group = [s.stage_number for s in config.stage_group(stage.stage_number)]
    session.current_stage = group[0]
    session.active_stages = group
    session.stage_entered_at = now
    session.escalation_state = {}
    return group


def stages_needing_assignment(session: ReviewSession) -> list[int]:
    """Active stages that have not passed and have nobody assigned."""
    return [
        n for n in session.active_stages
        if n not in session.passed_stages and not session.open_assignments([n])
    ]


# ============================================================================
# Creation and Assignment
# ============================================================================

def new_session(
    document_id: str,
    document_type: str,
    config: WorkflowConfig,
    actor_id: str,
    now: datetime,
    priority: ReviewPriority = ReviewPriority.MEDIUM,
    due_date: Optional[datetime] = None,
    document_name: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> tuple[ReviewSession, list[TransitionEvent]]:
    """Create a session waiting for its first assignment."""
    stages = config.get_applicable_stages(document_type)
    if not stages:
        raise ValueError(
            f"Workflow {config.id} does not cover document type '{document_type}'"
        )

    session = ReviewSession(
        document_id=document_id,
        document_type=document_type,
        document_name=document_name,
        workflow_id=config.id,
        workflow_version=config.version,
        priority=priority,
        due_date=due_date or calculate_due_date(now, config.default_due_days),
        created_by=actor_id,
        submitted_at=now,
        updated_at=now,
        stage_entered_at=now,
        metadata=metadata or {},
    )
    _enter_stage_group(session, config, stages[0], now)

    event = TransitionEvent(
        session_id=session.id,
        from_status=None,
        to_status=session.status,
        actor_id=actor_id,
        timestamp=now,
        reason="created",
        stage_number=session.current_stage,
    )
    return session, [event]


def apply_assignments(
    session: ReviewSession,
    assignments: list[ReviewerAssignment],
    actor_id: str,
    now: datetime,
) -> list[TransitionEvent]:
    """Attach assignments; a session waiting for reviewers becomes assigned."""
    require_active(session, "assign reviewers")
    for assignment in assignments:
        if assignment.stage_number not in session.active_stages:
            raise InvalidStateTransitionError(
                session.id, session.status.value, "assign reviewers",
                f"stage {assignment.stage_number} is not active",
            )
        if session.assignment_for(assignment.reviewer_id, assignment.stage_number):
            raise InvalidStateTransitionError(
                session.id, session.status.value, "assign reviewers",
                f"{assignment.reviewer_id} is already assigned to stage {assignment.stage_number}",
            )
        if assignment.notified_at is None:
            assignment.notified_at = now

    session.assignments.extend(assignments)
    session.touch(now)

    if session.status == SessionStatus.PENDING_ASSIGNMENT and not stages_needing_assignment(session):
        reviewers = ", ".join(a.reviewer_id for a in assignments)
        return [_transition(session, SessionStatus.ASSIGNED, actor_id, now, f"assigned {reviewers}")]
    return []


def mark_pending_assignment(session: ReviewSession, actor_id: str, now: datetime, reason: str) -> list[TransitionEvent]:
    """Fall back to pending_assignment when an active stage has no reviewer."""
    if session.status == SessionStatus.ASSIGNED and stages_needing_assignment(session):
        return [_transition(session, SessionStatus.PENDING_ASSIGNMENT, actor_id, now, reason)]
    return []


def accept_assignment(session: ReviewSession, reviewer_id: str, stage_number: int, now: datetime) -> ReviewerAssignment:
    require_active(session, "accept assignment")
    assignment = session.assignment_for(reviewer_id, stage_number)
    if assignment is None:
        raise InvalidStateTransitionError(
            session.id, session.status.value, "accept assignment",
            f"{reviewer_id} has no open assignment on stage {stage_number}",
        )
    if assignment.status == AssignmentStatus.ASSIGNED:
        assignment.status = AssignmentStatus.ACCEPTED
        assignment.accepted_at = now
        session.touch(now)
    return assignment


def decline_assignment(session: ReviewSession, reviewer_id: str, stage_number: int, now: datetime) -> ReviewerAssignment:
    require_active(session, "decline assignment")
    assignment = session.assignment_for(reviewer_id, stage_number)
    if assignment is None:
        raise InvalidStateTransitionError(
            session.id, session.status.value, "decline assignment",
            f"{reviewer_id} has no open assignment on stage {stage_number}",
        )
    open_round = session.open_round_for_stage(stage_number)
    if open_round is not None and open_round.reviewer_id == reviewer_id:
        raise InvalidStateTransitionError(
            session.id, session.status.value, "decline assignment",
            f"{reviewer_id} already started reviewing stage {stage_number}",
        )
    assignment.status = AssignmentStatus.DECLINED
    session.touch(now)
    return assignment


def replace_reviewer(
    session: ReviewSession,
    old_reviewer_id: str,
    stage_number: int,
    replacement: ReviewerAssignment,
    actor_id: str,
    now: datetime,
) -> list[TransitionEvent]:
    """
    Hand a stage over to another reviewer.

    The old assignment becomes `reassigned` and any round the old reviewer
    had open on the stage is closed as interrupted.
    """
    require_active(session, "reassign reviewer")
    events: list[TransitionEvent] = []

    old = session.assignment_for(old_reviewer_id, stage_number)
    if old is not None:
        old.status = AssignmentStatus.REASSIGNED
        old.completed_at = now

    open_round = session.open_round_for_stage(stage_number)
    if open_round is not None and open_round.reviewer_id == old_reviewer_id:
        open_round.completed_at = now
        open_round.interrupted = True
        if session.status in REVIEWING_STATUSES and not session.open_rounds():
            events.append(_transition(
                session, SessionStatus.ASSIGNED, actor_id, now,
                f"round {open_round.round_number} interrupted by reassignment",
                round_number=open_round.round_number, stage_number=stage_number,
            ))

    events.extend(apply_assignments(session, [replacement], actor_id, now))
    return events


# ============================================================================
# Rounds
# ============================================================================

def begin_round(
    session: ReviewSession,
    config: WorkflowConfig,
    reviewer_id: str,
    actor_id: str,
    now: datetime,
    stage_number: Optional[int] = None,
) -> tuple[ReviewRound, list[TransitionEvent]]:
    """
    Open a new round for the reviewer's active stage.

    Allowed from assigned or revision_requested; within a parallel stage
    group also while sibling stages are under review.
    """
    require_active(session, "begin round")
    parallel = len(session.active_stages) > 1
    allowed = BEGIN_ROUND_STATUSES | (REVIEWING_STATUSES if parallel else set())
    if session.status not in allowed:
        raise InvalidStateTransitionError(session.id, session.status.value, "begin round")

    candidates = [stage_number] if stage_number is not None else session.active_stages
    assignment = next(
        (
            session.assignment_for(reviewer_id, n) for n in candidates
            if n in session.active_stages
            and n not in session.passed_stages
            and session.assignment_for(reviewer_id, n)
        ),
        None,
    )
    if assignment is None:
        raise InvalidStateTransitionError(
            session.id, session.status.value, "begin round",
            f"{reviewer_id} is not assigned to an open active stage",
        )

    stage = _require_stage(config, assignment.stage_number)
    if session.open_round_for_stage(stage.stage_number) is not None:
        raise InvalidStateTransitionError(
            session.id, session.status.value, "begin round",
            f"stage {stage.stage_number} already has an open round",
        )

    if assignment.status == AssignmentStatus.ASSIGNED:
        assignment.status = AssignmentStatus.ACCEPTED
        assignment.accepted_at = now

    round_ = ReviewRound(
        round_number=session.current_round + 1,
        stage_number=stage.stage_number,
        reviewer_id=reviewer_id,
        started_at=now,
    )
    session.rounds.append(round_)
    session.touch(now)

    events = []
    if session.status != SessionStatus.IN_REVIEW:
        events.append(_transition(
            session, SessionStatus.IN_REVIEW, actor_id, now,
            f"round {round_.round_number} started by {reviewer_id}",
            round_number=round_.round_number, stage_number=stage.stage_number,
        ))
    return round_, events


def submit_feedback(
    session: ReviewSession,
    round_number: int,
    items: list[ReviewFeedback],
    actor_id: str,
    now: datetime,
) -> list[TransitionEvent]:
    """Append feedback to an open round without closing it."""
    require_active(session, "submit feedback")
    round_ = session.get_round(round_number)
    if round_ is None or not round_.is_open:
        raise InvalidStateTransitionError(
            session.id, session.status.value, "submit feedback",
            f"round {round_number} is not open",
        )

    round_.feedback.extend(items)
    session.touch(now)

    if round_.feedback and session.status == SessionStatus.IN_REVIEW:
        return [_transition(
            session, SessionStatus.FEEDBACK_PROVIDED, actor_id, now,
            f"{len(items)} feedback items on round {round_number}",
            round_number=round_number, stage_number=round_.stage_number,
        )]
    return []


def close_round(
    session: ReviewSession,
    config: WorkflowConfig,
    round_number: int,
    decision: ReviewDecision,
    quality_score: Optional[float],
    compliance_score: Optional[float],
    actor_id: str,
    now: datetime,
    comments: Optional[str] = None,
) -> StageOutcome:
    """
    Record a decision on an open round and apply the quality gate.

    Closing an already-closed round again with the same decision and
    scores is a no-op, so retries are safe.
    """
    require_active(session, "close round")
    decision = ReviewDecision(decision)

    round_ = session.get_round(round_number)
    if round_ is None:
        raise InvalidStateTransitionError(
            session.id, session.status.value, "close round", f"round {round_number} does not exist"
        )
    if not round_.is_open:
        if (
            round_.decision == decision
            and round_.quality_score == quality_score
            and round_.compliance_score == compliance_score
        ):
            return StageOutcome(round=round_, noop=True)
        raise InvalidStateTransitionError(
            session.id, session.status.value, "close round", f"round {round_number} is already closed"
        )

    if len(session.active_stages) == 1 and round_number != session.current_round:
        raise InvalidStateTransitionError(
            session.id, session.status.value, "close round",
            f"round {round_number} is not the current round {session.current_round}",
        )

    if decision == ReviewDecision.APPROVE or quality_score is not None:
        quality_score = validate_score("quality_score", quality_score)
    if decision == ReviewDecision.APPROVE or compliance_score is not None:
        compliance_score = validate_score("compliance_score", compliance_score)

    stage = _require_stage(config, round_.stage_number)

    round_.completed_at = now
    round_.decision = decision
    round_.quality_score = quality_score
    round_.compliance_score = compliance_score
    round_.comments = comments
    session.touch(now)

    outcome = StageOutcome(round=round_)
    ref = {"round_number": round_number, "stage_number": stage.stage_number}

    if decision == ReviewDecision.REJECT:
        _complete_assignment(session, round_.reviewer_id, stage.stage_number, now)
        _interrupt_open_rounds(session, now)
        session.completed_at = now
        outcome.events.append(_transition(
            session, SessionStatus.REJECTED, actor_id, now, f"rejected in round {round_number}", **ref
        ))
        logger.info(f"Session {session.id} rejected in round {round_number}")
        return outcome

    if decision == ReviewDecision.REQUEST_REVISION:
        outcome.events.append(_transition(
            session, SessionStatus.REVISION_REQUESTED, actor_id, now,
            f"revision requested in round {round_number}", **ref
        ))
        return outcome

    if not evaluate_round(round_, stage):
        outcome.events.append(_transition(
            session, SessionStatus.REVISION_REQUESTED, actor_id, now,
            f"approval below passing score {stage.passing_score:g} "
            f"(quality {quality_score:g}, compliance {compliance_score:g})",
            **ref,
        ))
        return outcome

    outcome.passed = True
    _complete_assignment(session, round_.reviewer_id, stage.stage_number, now)
    _finish_stage(session, config, stage, actor_id, now, f"stage {stage.stage_number} passed in round {round_number}", outcome)
    return outcome


def _interrupt_open_rounds(session: ReviewSession, now: datetime) -> None:
    for open_round in session.open_rounds():
        open_round.completed_at = now
        open_round.interrupted = True


def _complete_assignment(session: ReviewSession, reviewer_id: str, stage_number: int, now: datetime) -> None:
    assignment = session.assignment_for(reviewer_id, stage_number)
    if assignment is not None:
        assignment.status = AssignmentStatus.COMPLETED
        assignment.completed_at = now


def _finish_stage(
    session: ReviewSession,
    config: WorkflowConfig,
    stage: Stage,
    actor_id: str,
    now: datetime,
    reason: str,
    outcome: StageOutcome,
) -> None:
    if stage.stage_number not in session.passed_stages:
        session.passed_stages.append(stage.stage_number)

    remaining = [n for n in session.active_stages if n not in session.passed_stages]
    if remaining:
        # Parallel siblings still running
        status = SessionStatus.IN_REVIEW if session.open_rounds() else SessionStatus.ASSIGNED
        if session.status != status:
            outcome.events.append(_transition(
                session, status, actor_id, now, reason, stage_number=stage.stage_number
            ))
        return

    next_stage = config.get_next_stage(max(session.active_stages))
    if next_stage is None:
        session.completed_at = now
        outcome.events.append(_transition(
            session, SessionStatus.APPROVED, actor_id, now, reason, stage_number=stage.stage_number
        ))
        outcome.events.append(_transition(
            session, SessionStatus.COMPLETED, actor_id, now, "all stages passed",
            stage_number=stage.stage_number,
        ))
        outcome.completed = True
        logger.info(f"Session {session.id} approved and completed")
        return

    outcome.entered_stages = _enter_stage_group(session, config, next_stage, now)
    outcome.events.append(_transition(
        session, SessionStatus.ASSIGNED, actor_id, now,
        f"{reason}; advanced to stage {session.current_stage}",
    ))
    logger.info(f"Session {session.id} advanced to stages {outcome.entered_stages}")


def skip_stage(
    session: ReviewSession,
    config: WorkflowConfig,
    stage_number: int,
    actor_id: str,
    now: datetime,
    reason: str = "",
) -> StageOutcome:
    """Pass an optional or skippable active stage without a review."""
    require_active(session, "skip stage")
    stage = _require_stage(config, stage_number)
    if stage_number not in session.active_stages or stage_number in session.passed_stages:
        raise InvalidStateTransitionError(
            session.id, session.status.value, "skip stage", f"stage {stage_number} is not pending"
        )
    if not (stage.can_skip or stage.is_optional):
        raise InvalidStateTransitionError(
            session.id, session.status.value, "skip stage", f"stage {stage_number} cannot be skipped"
        )
    if session.open_round_for_stage(stage_number) is not None:
        raise InvalidStateTransitionError(
            session.id, session.status.value, "skip stage", f"stage {stage_number} has an open round"
        )

    for assignment in session.open_assignments([stage_number]):
        assignment.status = AssignmentStatus.COMPLETED
        assignment.completed_at = now

    outcome = StageOutcome(passed=True)
    _finish_stage(
        session, config, stage, actor_id, now,
        f"stage {stage_number} skipped" + (f": {reason}" if reason else ""), outcome,
    )
    return outcome


def force_approve(
    session: ReviewSession,
    config: WorkflowConfig,
    stage_number: int,
    now: datetime,
    reason: str,
) -> StageOutcome:
    """
    Close a stage with a system-generated approval at the passing score.

    An open round is force-closed; otherwise a closed system round is added.
    System rounds never count toward reviewer metrics.
    """
    require_active(session, "auto-approve")
    stage = _require_stage(config, stage_number)

    round_ = session.open_round_for_stage(stage_number)
    if round_ is None:
        round_ = ReviewRound(
            round_number=session.current_round + 1,
            stage_number=stage_number,
            reviewer_id=SYSTEM_ACTOR,
            started_at=now,
        )
        session.rounds.append(round_)

    round_.completed_at = now
    round_.decision = ReviewDecision.APPROVE
    round_.quality_score = stage.passing_score
    round_.compliance_score = stage.passing_score
    round_.system_generated = True
    round_.comments = reason

    for assignment in session.open_assignments([stage_number]):
        assignment.status = AssignmentStatus.COMPLETED
        assignment.completed_at = now
    session.touch(now)

    outcome = StageOutcome(round=round_, passed=True)
    _finish_stage(session, config, stage, SYSTEM_ACTOR, now, reason, outcome)
    return outcome


# ============================================================================
# Feedback and Cancellation
# ============================================================================

def update_feedback_status(
    session: ReviewSession,
    feedback_id: str,
    status: FeedbackStatus,
    actor_id: str,
    now: datetime,
) -> ReviewFeedback:
    """Move a feedback item through its lifecycle, independent of its round."""
    if session.status == SessionStatus.CANCELLED:
        raise InvalidStateTransitionError(session.id, session.status.value, "update feedback")
    item = session.find_feedback(feedback_id)
    if item is None:
        raise KeyError(f"Feedback {feedback_id} not found in session {session.id}")

    item.status = FeedbackStatus(status)
    if item.status == FeedbackStatus.OPEN:
        item.addressed_by = None
        item.addressed_at = None
    else:
        item.addressed_by = actor_id
        item.addressed_at = now
    session.touch(now)
    return item


def cancel(session: ReviewSession, actor_id: str, now: datetime, reason: str = "") -> list[TransitionEvent]:
    """Cancel outright; open rounds are closed as interrupted so reviewer work is kept."""
    require_active(session, "cancel")
    _interrupt_open_rounds(session, now)
    session.completed_at = now
    return [_transition(session, SessionStatus.CANCELLED, actor_id, now, reason or "cancelled")]
