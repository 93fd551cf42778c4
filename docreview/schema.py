"""
Review Workflow Schema Definitions using Pydantic

This module defines the structure of workflow definition files, reviewer
profiles, and the runtime state of a document review session.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Annotated, Any, Literal, Optional, Union
from datetime import date, datetime, time, timezone
from enum import Enum
import uuid


def _utc_now():
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC. Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SessionStatus(str, Enum):
    """Status of a review session."""
    PENDING_ASSIGNMENT = "pending_assignment"
    ASSIGNED = "assigned"
    IN_REVIEW = "in_review"
    FEEDBACK_PROVIDED = "feedback_provided"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {
    SessionStatus.APPROVED,
    SessionStatus.COMPLETED,
    SessionStatus.REJECTED,
    SessionStatus.CANCELLED,
}


class ReviewPriority(str, Enum):
    """Priority of a review session."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReviewDecision(str, Enum):
    """Decision recorded when a round is closed."""
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_REVISION = "request_revision"


class AssignmentStatus(str, Enum):
    """Status of a reviewer assignment."""
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    REASSIGNED = "reassigned"


OPEN_ASSIGNMENT_STATUSES = {AssignmentStatus.ASSIGNED, AssignmentStatus.ACCEPTED}


class FeedbackType(str, Enum):
    """Category of a feedback item."""
    CONTENT_ACCURACY = "content_accuracy"
    TECHNICAL_COMPLIANCE = "technical_compliance"
    FORMATTING = "formatting"
    COMPLETENESS = "completeness"
    CLARITY = "clarity"
    STAKEHOLDER_ALIGNMENT = "stakeholder_alignment"
    REGULATORY_COMPLIANCE = "regulatory_compliance"


class FeedbackSeverity(str, Enum):
    """Severity of a feedback item."""
    INFO = "info"
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


class FeedbackStatus(str, Enum):
    """Resolution status of a feedback item."""
    OPEN = "open"
    ADDRESSED = "addressed"
    DISMISSED = "dismissed"
    DEFERRED = "deferred"


class AvailabilityStatus(str, Enum):
    """Availability of a reviewer at a given instant."""
    AVAILABLE = "available"
    OUTSIDE_HOURS = "outside_hours"
    UNAVAILABLE = "unavailable"


class PerformanceRating(str, Enum):
    """Bucketed composite performance of a reviewer."""
    EXCELLENT = "excellent"
    GOOD = "good"
    SATISFACTORY = "satisfactory"
    NEEDS_IMPROVEMENT = "needs_improvement"
    POOR = "poor"


class NotificationSeverity(str, Enum):
    """How loudly a notification should be delivered."""
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================================
# Workflow Definition (YAML)
# ============================================================================

class Stage(BaseModel):
    """One checkpoint of a review workflow."""
    stage_number: int
    name: str = ""
    description: Optional[str] = None
    required_role: str
    required_expertise: list[str] = Field(default_factory=list)
    is_parallel: bool = False
    is_optional: bool = False
    can_skip: bool = False
    estimated_hours: float = 8.0
    max_days: float = 5.0  # Stage SLA
    passing_score: float = 70.0


class OverdueCondition(BaseModel):
    """Stage has been active longer than the rule allows."""
    kind: Literal["overdue"] = "overdue"
    use_stage_sla: bool = False  # Measure against stage.max_days instead of trigger_after_hours


class NoResponseCondition(BaseModel):
    """An assigned reviewer has not accepted the assignment."""
    kind: Literal["no_response"] = "no_response"


class QualityThresholdCondition(BaseModel):
    """Latest closed round scored below a threshold."""
    kind: Literal["quality_threshold"] = "quality_threshold"
    threshold: float
    metric: Literal["quality", "compliance", "either"] = "either"


class CustomCondition(BaseModel):
    """Condition evaluated by an injected predicate registered under `predicate`."""
    kind: Literal["custom"] = "custom"
    predicate: str
    parameters: dict[str, Any] = Field(default_factory=dict)


EscalationCondition = Annotated[
    Union[OverdueCondition, NoResponseCondition, QualityThresholdCondition, CustomCondition],
    Field(discriminator="kind"),
]


class NotifyAction(BaseModel):
    """Send a notification to the rule's escalation recipients."""
    kind: Literal["notify"] = "notify"
    template: str = "review_escalation_notice"


class ReassignAction(BaseModel):
    """Replace the stalled reviewer with another eligible reviewer."""
    kind: Literal["reassign"] = "reassign"


class AutoApproveAction(BaseModel):
    """Force-close the stage with a system-generated approval."""
    kind: Literal["auto_approve"] = "auto_approve"


class EscalateManagerAction(BaseModel):
    """Send a critical notification to the rule's escalation recipients."""
    kind: Literal["escalate_manager"] = "escalate_manager"
    template: str = "review_manager_escalation"


class CustomAction(BaseModel):
    """Action performed by an injected handler registered under `handler`."""
    kind: Literal["custom"] = "custom"
    handler: str
    parameters: dict[str, Any] = Field(default_factory=dict)


EscalationAction = Annotated[
    Union[NotifyAction, ReassignAction, AutoApproveAction, EscalateManagerAction, CustomAction],
    Field(discriminator="kind"),
]


class EscalationRule(BaseModel):
    """Time- or condition-triggered remedial policy."""
    id: str
    name: str = ""
    condition: EscalationCondition
    action: EscalationAction
    trigger_after_hours: float
    reminder_interval_hours: float = 24.0
    max_reminders: int = 3
    escalate_to: list[str] = Field(default_factory=list)
    reminder_template: str = "review_reminder"
    is_active: bool = True


class WorkflowConfig(BaseModel):
    """Complete review workflow definition loaded from YAML."""
    id: str
    name: str
    version: str = "1.0"
    description: Optional[str] = None
    document_types: list[str] = Field(default_factory=list)
    required_roles: list[str] = Field(default_factory=list)
    stages: list[Stage] = Field(default_factory=list)
    default_due_days: int = 5
    escalation_rules: list[EscalationRule] = Field(default_factory=list)
    minimum_reviewers: int = 1
    required_approvals: int = 1
    quality_threshold: float = 70.0
    auto_assignment: bool = True
    auto_escalation: bool = True
    auto_notification: bool = True
    is_active: bool = True
    created_by: Optional[str] = None

    def ordered_stages(self) -> list[Stage]:
        """Stages sorted by stage number."""
        return sorted(self.stages, key=lambda s: s.stage_number)

    def get_stage(self, stage_number: int) -> Optional[Stage]:
        """Get a stage by number."""
        for stage in self.stages:
            if stage.stage_number == stage_number:
                return stage
        return None

    def get_applicable_stages(self, document_type: str) -> list[Stage]:
        """Ordered stages for a document type, empty if the type is not declared."""
        if document_type not in self.document_types:
            return []
        return self.ordered_stages()

    def get_next_stage(self, current_stage_number: int) -> Optional[Stage]:
        """Get the first stage after the current one."""
        for stage in self.ordered_stages():
            if stage.stage_number > current_stage_number:
                return stage
        return None

    def stage_group(self, stage_number: int) -> list[Stage]:
        """
        Stages that run together with `stage_number`.

        A parallel stage runs with every contiguous parallel neighbour; a
        sequential stage runs alone.
        """
        ordered = self.ordered_stages()
        index = next(
            (i for i, s in enumerate(ordered) if s.stage_number == stage_number), -1
        )
        if index < 0:
            return []
        if not ordered[index].is_parallel:
            return [ordered[index]]

        start = index
        while start > 0 and ordered[start - 1].is_parallel:
            start -= 1
        end = index
        while end < len(ordered) - 1 and ordered[end + 1].is_parallel:
            end += 1
        return ordered[start:end + 1]

    @property
    def last_stage_number(self) -> int:
        return max((s.stage_number for s in self.stages), default=0)


# ============================================================================
# Reviewer Profiles
# ============================================================================

class WorkingHours(BaseModel):
    """Daily working window in the reviewer's own timezone."""
    start: time = time(9, 0)
    end: time = time(17, 0)

    @field_validator('start', 'end', mode='before')
    @classmethod
    def parse_sexagesimal(cls, v):
        # PyYAML reads unquoted 09:00 as the base-60 integer 540
        if isinstance(v, int) and not isinstance(v, bool):
            return time(v // 60, v % 60)
        return v


class ReviewerAvailability(BaseModel):
    """When and how much a reviewer can review."""
    time_zone: str = "UTC"
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    working_days: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])  # 0 = Sunday
    blackout_dates: list[date] = Field(default_factory=list)
    max_concurrent_reviews: int = 3
    hours_per_week: float = 40.0

    @field_validator('working_days')
    @classmethod
    def days_must_be_weekdays(cls, v):
        for day in v:
            if day < 0 or day > 6:
                raise ValueError('working_days must be in 0..6 (0 = Sunday)')
        return v


class ReviewerMetrics(BaseModel):
    """Rolling performance metrics, updated on review completion."""
    completed_reviews: int = 0
    average_review_time: float = 0.0  # Hours
    average_quality_score: float = 0.0
    on_time_count: int = 0
    on_time_rate: float = 0.0  # Fraction 0..1
    feedback_quality_score: float = 0.0
    thoroughness_score: float = 0.0
    last_updated: Optional[datetime] = None


class ReviewerProfile(BaseModel):
    """A reviewer known to the directory."""
    id: str
    name: str = ""
    email: Optional[str] = None
    roles: list[str] = Field(default_factory=list)
    expertise: list[str] = Field(default_factory=list)
    availability: ReviewerAvailability = Field(default_factory=ReviewerAvailability)
    metrics: ReviewerMetrics = Field(default_factory=ReviewerMetrics)
    is_active: bool = True
    last_assigned_at: Optional[datetime] = None


class CompletionRecord(BaseModel):
    """Inputs for a reviewer metrics update."""
    review_time_hours: float
    quality_score: float
    on_time: bool
    feedback_quality: float
    thoroughness: float


# ============================================================================
# Runtime State
# ============================================================================

class ReviewerAssignment(BaseModel):
    """A reviewer assigned to one stage of a session."""
    reviewer_id: str
    role: str
    stage_number: int
    status: AssignmentStatus = AssignmentStatus.ASSIGNED
    assigned_at: datetime = Field(default_factory=_utc_now)
    notified_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_hours: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ASSIGNMENT_STATUSES


class ReviewFeedback(BaseModel):
    """A single finding raised during a round."""
    id: str = Field(default_factory=lambda: f"fb-{uuid.uuid4().hex[:8]}")
    type: FeedbackType
    severity: FeedbackSeverity = FeedbackSeverity.MINOR
    title: str = ""
    description: str = ""
    section: Optional[str] = None
    line_number: Optional[int] = None
    suggestion: Optional[str] = None
    original_text: Optional[str] = None
    suggested_text: Optional[str] = None
    status: FeedbackStatus = FeedbackStatus.OPEN
    addressed_by: Optional[str] = None
    addressed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utc_now)


class ReviewRound(BaseModel):
    """One reviewer's pass through a stage, ending in a decision."""
    round_number: int
    stage_number: int
    reviewer_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    feedback: list[ReviewFeedback] = Field(default_factory=list)
    decision: Optional[ReviewDecision] = None
    quality_score: Optional[float] = None
    compliance_score: Optional[float] = None
    comments: Optional[str] = None
    system_generated: bool = False  # Never counted toward reviewer metrics
    interrupted: bool = False  # Flushed by cancellation or reassignment

    @property
    def is_open(self) -> bool:
        return self.completed_at is None


class RuleState(BaseModel):
    """Reminder bookkeeping for one escalation rule on one session stage."""
    rule_id: str
    stage_number: int
    notices_sent: int = 0
    first_fired_at: Optional[datetime] = None
    last_fired_at: Optional[datetime] = None
    exhausted: bool = False


class ReviewSession(BaseModel):
    """Complete runtime state of one document's review."""
    id: str = Field(default_factory=lambda: f"rev-{uuid.uuid4().hex[:12]}")
    document_id: str
    document_type: str
    document_name: Optional[str] = None
    workflow_id: str
    workflow_version: str = "1.0"
    status: SessionStatus = SessionStatus.PENDING_ASSIGNMENT
    priority: ReviewPriority = ReviewPriority.MEDIUM
    due_date: Optional[datetime] = None
    current_stage: int = 1
    active_stages: list[int] = Field(default_factory=lambda: [1])
    passed_stages: list[int] = Field(default_factory=list)
    stage_entered_at: datetime = Field(default_factory=_utc_now)
    assignments: list[ReviewerAssignment] = Field(default_factory=list)
    rounds: list[ReviewRound] = Field(default_factory=list)
    escalation_state: dict[str, RuleState] = Field(default_factory=dict)
    created_by: str
    submitted_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None
    version: int = 0  # Optimistic concurrency sequence, bumped by the store
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def current_round(self) -> int:
        """Highest round number present, 0 before the first round."""
        return max((r.round_number for r in self.rounds), default=0)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def get_round(self, round_number: int) -> Optional[ReviewRound]:
        for round_ in self.rounds:
            if round_.round_number == round_number:
                return round_
        return None

    def open_rounds(self) -> list[ReviewRound]:
        return [r for r in self.rounds if r.is_open]

    def open_round_for_stage(self, stage_number: int) -> Optional[ReviewRound]:
        for round_ in self.rounds:
            if round_.is_open and round_.stage_number == stage_number:
                return round_
        return None

    def closed_rounds(self) -> list[ReviewRound]:
        return sorted(
            (r for r in self.rounds if not r.is_open and r.decision is not None),
            key=lambda r: r.round_number,
        )

    def latest_closed_round(self) -> Optional[ReviewRound]:
        closed = self.closed_rounds()
        return closed[-1] if closed else None

    def open_assignments(self, stage_numbers: Optional[list[int]] = None) -> list[ReviewerAssignment]:
        """Open assignments, optionally limited to some stages."""
        return [
            a for a in self.assignments
            if a.is_open and (stage_numbers is None or a.stage_number in stage_numbers)
        ]

    def assignment_for(self, reviewer_id: str, stage_number: int) -> Optional[ReviewerAssignment]:
        """Open assignment of a reviewer on a stage."""
        for assignment in self.assignments:
            if (
                assignment.reviewer_id == reviewer_id
                and assignment.stage_number == stage_number
                and assignment.is_open
            ):
                return assignment
        return None

    def find_feedback(self, feedback_id: str) -> Optional[ReviewFeedback]:
        for round_ in self.rounds:
            for item in round_.feedback:
                if item.id == feedback_id:
                    return item
        return None

    def touch(self, now: Optional[datetime] = None):
        """Update the updated_at timestamp."""
        self.updated_at = now or _utc_now()


# ============================================================================
# Result Records
# ============================================================================

class ValidationResult(BaseModel):
    """Outcome of validating a workflow definition."""
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


class SessionScore(BaseModel):
    """Recency-weighted aggregate of a session's closed rounds."""
    quality: float
    compliance: float
    rounds: int


class Notification(BaseModel):
    """A message the engine decided must be sent."""
    recipients: list[str]
    template: str
    payload: dict[str, Any] = Field(default_factory=dict)
    severity: NotificationSeverity = NotificationSeverity.NORMAL
