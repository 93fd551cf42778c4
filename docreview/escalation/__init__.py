"""
Escalation

Rule evaluation for stalled review sessions and the scheduler that applies
it across all active sessions.
"""

from .policy import (
    DecisionKind,
    EscalationDecision,
    condition_holds,
    evaluate_rules,
    record_firing,
)
from .scheduler import EscalationScheduler, ExecutedAction, TickReport

__all__ = [
    "DecisionKind",
    "EscalationDecision",
    "condition_holds",
    "evaluate_rules",
    "record_firing",
    "EscalationScheduler",
    "ExecutedAction",
    "TickReport",
]
