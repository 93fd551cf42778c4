"""
Document Review Workflow Engine

Multi-stage, multi-reviewer approval of generated documents.

Components:
- WorkflowConfigRegistry: Validated workflow definitions
- ReviewerDirectory: Reviewer profiles, availability, workload and metrics
- AssignmentPlanner: Picks reviewers for the stages a session enters
- session: Review session state machine
- scoring: Quality gates and session scores
- escalation: Rule evaluation and the escalation scheduler
- ReviewEngine: Facade tying it together
"""

__version__ = "0.1.0"

from .schema import (
    # Enums
    SessionStatus,
    ReviewPriority,
    ReviewDecision,
    AssignmentStatus,
    FeedbackType,
    FeedbackSeverity,
    FeedbackStatus,
    AvailabilityStatus,
    PerformanceRating,
    NotificationSeverity,
    # Workflow definitions
    Stage,
    EscalationRule,
    WorkflowConfig,
    OverdueCondition,
    NoResponseCondition,
    QualityThresholdCondition,
    CustomCondition,
    NotifyAction,
    ReassignAction,
    AutoApproveAction,
    EscalateManagerAction,
    CustomAction,
    # Reviewers
    ReviewerProfile,
    ReviewerAvailability,
    ReviewerMetrics,
    WorkingHours,
    CompletionRecord,
    # Runtime state
    ReviewSession,
    ReviewerAssignment,
    ReviewRound,
    ReviewFeedback,
    RuleState,
    SessionScore,
    ValidationResult,
    Notification,
)
from .errors import (
    ReviewEngineError,
    ConfigValidationError,
    NoEligibleReviewerError,
    InvalidStateTransitionError,
    InvalidScoreError,
    ConflictError,
    SessionNotFoundError,
    WorkflowNotFoundError,
    ReviewerNotFoundError,
    RetryableError,
    RetryPolicy,
    RetryHandler,
)
from .config import ConfigManager, EngineConfig, setup_logging
from .registry import WorkflowConfigRegistry
from .directory import ReviewerDirectory
from .assignment import AssignmentPlanner
from .events import AuditSink, EventBus, TransitionEvent
from .audit import JsonlAuditSink
from .storage import SessionQuery, SessionStore, InMemorySessionStore, SQLiteSessionStore
from .notifications import NotificationTransport, LoggingTransport, WebhookTransport, Notifier
from .escalation import EscalationScheduler, TickReport
from .engine import ReviewEngine

__all__ = [
    # Enums
    "SessionStatus",
    "ReviewPriority",
    "ReviewDecision",
    "AssignmentStatus",
    "FeedbackType",
    "FeedbackSeverity",
    "FeedbackStatus",
    "AvailabilityStatus",
    "PerformanceRating",
    "NotificationSeverity",
    # Models
    "Stage",
    "EscalationRule",
    "WorkflowConfig",
    "OverdueCondition",
    "NoResponseCondition",
    "QualityThresholdCondition",
    "CustomCondition",
    "NotifyAction",
    "ReassignAction",
    "AutoApproveAction",
    "EscalateManagerAction",
    "CustomAction",
    "ReviewerProfile",
    "ReviewerAvailability",
    "ReviewerMetrics",
    "WorkingHours",
    "CompletionRecord",
    "ReviewSession",
    "ReviewerAssignment",
    "ReviewRound",
    "ReviewFeedback",
    "RuleState",
    "SessionScore",
    "ValidationResult",
    "Notification",
    # Errors
    "ReviewEngineError",
    "ConfigValidationError",
    "NoEligibleReviewerError",
    "InvalidStateTransitionError",
    "InvalidScoreError",
    "ConflictError",
    "SessionNotFoundError",
    "WorkflowNotFoundError",
    "ReviewerNotFoundError",
    "RetryableError",
    "RetryPolicy",
    "RetryHandler",
    # Components
    "ConfigManager",
    "EngineConfig",
    "setup_logging",
    "WorkflowConfigRegistry",
    "ReviewerDirectory",
    "AssignmentPlanner",
    "AuditSink",
    "EventBus",
    "TransitionEvent",
    "JsonlAuditSink",
    "SessionQuery",
    "SessionStore",
    "InMemorySessionStore",
    "SQLiteSessionStore",
    "NotificationTransport",
    "LoggingTransport",
    "WebhookTransport",
    "Notifier",
    "EscalationScheduler",
    "TickReport",
    "ReviewEngine",
]
