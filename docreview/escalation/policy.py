"""
Escalation Policy

Pure evaluation of a workflow's escalation rules against one session at one
instant. Nothing here reads a clock or performs side effects: the caller
applies the returned decisions and records them with `record_firing`.

Cadence for a rule whose condition keeps holding on one stage:
the first tick sends a notice, then a reminder every
reminder_interval_hours until max_reminders reminders have followed the
notice, then the rule's action fires once and the rule is exhausted until
the session moves to another stage.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ..schema import (
    AssignmentStatus,
    CustomCondition,
    EscalationRule,
    NoResponseCondition,
    OverdueCondition,
    QualityThresholdCondition,
    ReviewSession,
    RuleState,
    WorkflowConfig,
    as_utc,
)

logger = logging.getLogger(__name__)

# predicate(session, config, parameters, now) -> bool
ConditionPredicate = Callable[[ReviewSession, WorkflowConfig, dict, datetime], bool]


class DecisionKind(str, Enum):
    """What a firing rule does on this tick."""
    REMINDER = "reminder"
    ACTION = "action"


@dataclass
class EscalationDecision:
    """One rule firing on one session."""
    rule: EscalationRule
    kind: DecisionKind
    stage_number: int
    reminder_number: int = 0  # 0 is the first notice
    stalled_reviewer_ids: list[str] = field(default_factory=list)

    @property
    def rule_id(self) -> str:
        return self.rule.id


def _hours_between(start: datetime, end: datetime) -> float:
    return (as_utc(end) - as_utc(start)).total_seconds() / 3600


def _pending_stages(session: ReviewSession) -> list[int]:
    return [n for n in session.active_stages if n not in session.passed_stages]


def _check_overdue(session: ReviewSession, config: WorkflowConfig, rule: EscalationRule,
                   condition: OverdueCondition, now: datetime) -> tuple[bool, list[str]]:
    elapsed = _hours_between(session.stage_entered_at, now)
    overdue_stages = []
    for number in _pending_stages(session):
        stage = config.get_stage(number)
        limit = stage.max_days * 24 if (condition.use_stage_sla and stage) else rule.trigger_after_hours
        if elapsed > limit:
            overdue_stages.append(number)
    stalled = [a.reviewer_id for a in session.open_assignments(overdue_stages)]
    return bool(overdue_stages), stalled


def _check_no_response(session: ReviewSession, rule: EscalationRule, now: datetime) -> tuple[bool, list[str]]:
    stalled = [
        a.reviewer_id for a in session.open_assignments(_pending_stages(session))
        if a.status == AssignmentStatus.ASSIGNED
        and a.accepted_at is None
        and _hours_between(a.assigned_at, now) > rule.trigger_after_hours
    ]
    return bool(stalled), stalled


def _check_quality(session: ReviewSession, condition: QualityThresholdCondition) -> tuple[bool, list[str]]:
    rounds = [
        r for r in session.closed_rounds()
        if r.stage_number in session.active_stages
        and not r.system_generated
        and r.quality_score is not None
        and r.compliance_score is not None
    ]
    if not rounds:
        return False, []
    latest = rounds[-1]
    below_quality = latest.quality_score < condition.threshold
    below_compliance = latest.compliance_score < condition.threshold
    if condition.metric == "quality":
        fired = below_quality
    elif condition.metric == "compliance":
        fired = below_compliance
    else:
        fired = below_quality or below_compliance
    return fired, []


def condition_holds(
    session: ReviewSession,
    config: WorkflowConfig,
    rule: EscalationRule,
    now: datetime,
    predicates: Optional[dict[str, ConditionPredicate]] = None,
) -> tuple[bool, list[str]]:
    """
    Evaluate a rule's condition.

    Returns:
        Tuple of (holds, stalled reviewer ids)
    """
    condition = rule.condition
    if isinstance(condition, OverdueCondition):
        return _check_overdue(session, config, rule, condition, now)
    if isinstance(condition, NoResponseCondition):
        return _check_no_response(session, rule, now)
    if isinstance(condition, QualityThresholdCondition):
        return _check_quality(session, condition)
    if isinstance(condition, CustomCondition):
        predicate = (predicates or {}).get(condition.predicate)
        if predicate is None:
            logger.warning(f"Rule {rule.id}: no predicate registered as '{condition.predicate}'")
            return False, []
        try:
            held = bool(predicate(session, config, condition.parameters, now))
        except Exception as e:
            logger.warning(f"Rule {rule.id}: predicate '{condition.predicate}' failed: {e}")
            return False, []
        stalled = [a.reviewer_id for a in session.open_assignments(_pending_stages(session))]
        return held, stalled
    return False, []


def current_rule_state(session: ReviewSession, rule_id: str) -> Optional[RuleState]:
    """Bookkeeping for a rule on the session's current stage, if any."""
    state = session.escalation_state.get(rule_id)
    if state is None or state.stage_number != session.current_stage:
        return None
    return state


def evaluate_rules(
    session: ReviewSession,
    config: WorkflowConfig,
    now: datetime,
    predicates: Optional[dict[str, ConditionPredicate]] = None,
) -> list[EscalationDecision]:
    """
    Decide which rules fire for a session at `now`, in rule definition order.

    Returns an empty list for closed sessions and workflows with automatic
    escalation switched off.
    """
    if session.is_terminal or not config.auto_escalation:
        return []

    decisions = []
    for rule in config.escalation_rules:
        if not rule.is_active:
            continue

        state = current_rule_state(session, rule.id)
        if state is not None and state.exhausted:
            continue

        holds, stalled = condition_holds(session, config, rule, now, predicates)
        if not holds:
            continue

        if state is None or state.notices_sent == 0:
            decisions.append(EscalationDecision(
                rule=rule, kind=DecisionKind.REMINDER, stage_number=session.current_stage,
                reminder_number=0, stalled_reviewer_ids=stalled,
            ))
            continue

        since_last = _hours_between(state.last_fired_at, now) if state.last_fired_at else None
        if since_last is not None and since_last < rule.reminder_interval_hours:
            logger.debug(
                f"Rule {rule.id} suppressed for {session.id}: "
                f"{since_last:.1f}h since last notice"
            )
            continue

        if state.notices_sent <= rule.max_reminders:
            decisions.append(EscalationDecision(
                rule=rule, kind=DecisionKind.REMINDER, stage_number=session.current_stage,
                reminder_number=state.notices_sent, stalled_reviewer_ids=stalled,
            ))
        else:
            decisions.append(EscalationDecision(
                rule=rule, kind=DecisionKind.ACTION, stage_number=session.current_stage,
                reminder_number=state.notices_sent, stalled_reviewer_ids=stalled,
            ))

    return decisions


def record_firing(session: ReviewSession, decision: EscalationDecision, now: datetime) -> RuleState:
    """Update the session's bookkeeping for a decision that was carried out."""
    state = current_rule_state(session, decision.rule_id)
    if state is None:
        state = RuleState(rule_id=decision.rule_id, stage_number=decision.stage_number)
        session.escalation_state[decision.rule_id] = state

    if state.first_fired_at is None:
        state.first_fired_at = now
    state.last_fired_at = now
    if decision.kind == DecisionKind.REMINDER:
        state.notices_sent += 1
    else:
        state.exhausted = True
    return state
