"""
Review Engine

Facade over the review subsystem. Every mutating operation:

1. takes the per-session lock,
2. loads a private copy of the session,
3. applies a state-machine operation to the copy,
4. saves it with an optimistic version check (retrying transient failures),
5. forwards transition events to the audit sinks and sends notifications.

A failing step leaves the stored session untouched.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional, Union

from . import session as machine
from .analytics import review_analytics, reviewer_leaderboard, reviewer_workload
from .assignment import AssignmentPlanner
from .audit import JsonlAuditSink
from .config import EngineConfig
from .directory import ReviewerDirectory
from .errors import (
    InvalidStateTransitionError,
    NoEligibleReviewerError,
    RetryHandler,
    RetryPolicy,
    SessionNotFoundError,
    WorkflowNotFoundError,
)
from .escalation.policy import ConditionPredicate, DecisionKind, EscalationDecision, evaluate_rules, record_firing
from .escalation.scheduler import ACTIVE_STATUSES, EscalationScheduler, ExecutedAction, TickReport
from .events import AuditSink, TransitionEvent
from .notifications import LoggingTransport, Notifier, WebhookTransport
from .registry import WorkflowConfigRegistry
from .schema import (
    AutoApproveAction,
    CompletionRecord,
    CustomAction,
    EscalateManagerAction,
    FeedbackStatus,
    Notification,
    NotificationSeverity,
    NotifyAction,
    ReassignAction,
    ReviewDecision,
    ReviewerAssignment,
    ReviewFeedback,
    ReviewPriority,
    ReviewRound,
    ReviewSession,
    SessionScore,
    SessionStatus,
    Stage,
    WorkflowConfig,
    _utc_now,
    as_utc,
)
from .scoring import aggregate_session_score, assess_feedback_quality, assess_thoroughness
from .storage import InMemorySessionStore, SessionQuery, SessionStore, SQLiteSessionStore

logger = logging.getLogger(__name__)

# Quality credited to a reviewer for a round closed without a score
UNSCORED_QUALITY = 75.0

# handler(session, config, rule, now) -> optional notifications to send
CustomActionHandler = Callable[..., Optional[Iterable[Notification]]]


class ReviewEngine:
    """Document review workflow engine."""

    def __init__(
        self,
        registry: WorkflowConfigRegistry,
        directory: ReviewerDirectory,
        store: Optional[SessionStore] = None,
        audit_sinks: Optional[list[AuditSink]] = None,
        notifier: Optional[Notifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        predicates: Optional[dict[str, ConditionPredicate]] = None,
        action_handlers: Optional[dict[str, CustomActionHandler]] = None,
        max_workers: int = 4,
        scheduler_enabled: bool = True,
    ):
        self.registry = registry
        self.directory = directory
        self.store = store or InMemorySessionStore()
        self.audit_sinks = list(audit_sinks or [])
        self.notifier = notifier or Notifier()
        self.planner = AssignmentPlanner(directory)
        self.retry = RetryHandler(retry_policy)
        self.predicates: dict[str, ConditionPredicate] = dict(predicates or {})
        self.action_handlers: dict[str, CustomActionHandler] = dict(action_handlers or {})

        self._locks: dict[str, threading.RLock] = {}
        self._lock_users: dict[str, int] = {}
        self._locks_guard = threading.Lock()

        self.scheduler = EscalationScheduler(
            self.store, self.escalate_session, max_workers=max_workers, enabled=scheduler_enabled
        )
        self.directory.rebuild_workload(self.store.query(SessionQuery(statuses=ACTIVE_STATUSES)))

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        registry: WorkflowConfigRegistry,
        directory: ReviewerDirectory,
        **kwargs: Any,
    ) -> "ReviewEngine":
        """Build an engine with store, audit, notification and retry set up from configuration."""
        if config.store.backend == "sqlite":
            store: SessionStore = SQLiteSessionStore(config.store.path)
        else:
            store = InMemorySessionStore()

        sinks: list[AuditSink] = []
        if config.audit.enabled:
            sinks.append(JsonlAuditSink(config.audit.audit_file))

        if config.notification.webhook_url:
            transport = WebhookTransport(
                config.notification.webhook_url, timeout_seconds=config.notification.timeout_seconds
            )
        else:
            transport = LoggingTransport()

        return cls(
            registry,
            directory,
            store=store,
            audit_sinks=sinks + list(kwargs.pop("audit_sinks", [])),
            notifier=Notifier(transport, enabled=config.notification.enabled),
            retry_policy=RetryPolicy(**asdict(config.retry)),
            max_workers=config.scheduler.max_workers,
            scheduler_enabled=config.scheduler.enabled,
            **kwargs,
        )

    def register_predicate(self, name: str, predicate: ConditionPredicate) -> None:
        self.predicates[name] = predicate

    def register_action_handler(self, name: str, handler: CustomActionHandler) -> None:
        self.action_handlers[name] = handler

    def close(self) -> None:
        self.store.close()
        self.notifier.close()

    # ========================================================================
    # Plumbing
    # ========================================================================

    @contextmanager
    def _session_lock(self, session_id: str):
        """Serialize mutations of one session. The lock is dropped once nobody holds or awaits it."""
        with self._locks_guard:
            lock = self._locks.setdefault(session_id, threading.RLock())
            self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                self._lock_users[session_id] -= 1
                if not self._lock_users[session_id]:
                    del self._lock_users[session_id]
                    del self._locks[session_id]

    def _load(self, session_id: str) -> ReviewSession:
        session = self.store.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _config_for(self, session: ReviewSession) -> WorkflowConfig:
        return self.registry.get(session.workflow_id)

    def _emit(self, event: TransitionEvent) -> None:
        for sink in self.audit_sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.warning(f"Audit sink {type(sink).__name__} failed for {event.session_id}: {e}")

    def _commit(
        self,
        session: ReviewSession,
        events: list[TransitionEvent],
        notifications: Iterable[Notification] = (),
        assigned: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> ReviewSession:
        try:
            saved = self.retry.execute(self.store.save, session)
        except Exception:
            self._restore_workload(session.id)
            raise
        self.directory.sync_session(saved)
        for reviewer_id in assigned:
            self.directory.mark_assigned(reviewer_id, now or saved.updated_at)
        for event in events:
            self._emit(event)
        for notification in notifications:
            self.notifier.notify(notification)
        return saved

    def _plan(
        self,
        session: ReviewSession,
        stages: list[Stage],
        now: datetime,
        exclude: Iterable[str] = (),
    ) -> list[ReviewerAssignment]:
        # Assignments this session completed or released must not count as load
        self.directory.sync_session(session)
        return self.planner.plan(stages, now, exclude=exclude, session_id=session.id)

    def _restore_workload(self, session_id: str) -> None:
        """Put the ledger back to the stored session after a failed save."""
        try:
            stored = self.store.load(session_id)
        except Exception as e:
            logger.error(f"Could not reload session {session_id} to restore workload: {e}")
            return
        if stored is None:
            self.directory.drop_session(session_id)
        else:
            self.directory.sync_session(stored)

    @staticmethod
    def _now(now: Optional[datetime]) -> datetime:
        return as_utc(now) if now is not None else _utc_now()

    @staticmethod
    def _payload(session: ReviewSession, **extra: Any) -> dict[str, Any]:
        payload = {
            "session_id": session.id,
            "document_id": session.document_id,
            "document_name": session.document_name,
            "document_type": session.document_type,
            "status": session.status.value,
            "stage_number": session.current_stage,
        }
        payload.update(extra)
        return payload

    def _assign(
        self,
        session: ReviewSession,
        config: WorkflowConfig,
        stage_numbers: list[int],
        actor_id: str,
        now: datetime,
        notifications: list[Notification],
        assigned: list[str],
        exclude: Iterable[str] = (),
    ) -> list[TransitionEvent]:
        """
        Run the planner for some stages and attach the result.

        Raises:
            NoEligibleReviewerError: If any stage cannot be staffed
        """
        stages = [config.get_stage(n) for n in stage_numbers]
        assignments = self._plan(session, stages, now, exclude)
        events = machine.apply_assignments(session, assignments, actor_id, now)
        for assignment in assignments:
            assigned.append(assignment.reviewer_id)
            if config.auto_notification:
                notifications.append(Notification(
                    recipients=[assignment.reviewer_id],
                    template="review_assignment",
                    payload=self._payload(session, stage_number=assignment.stage_number,
                                          estimated_hours=assignment.estimated_hours),
                ))
        return events

    def _staff_open_stages(
        self,
        session: ReviewSession,
        config: WorkflowConfig,
        actor_id: str,
        now: datetime,
        notifications: list[Notification],
        assigned: list[str],
    ) -> tuple[list[TransitionEvent], Optional[NoEligibleReviewerError]]:
        """Assign reviewers to active stages that have none, falling back to pending_assignment."""
        needed = machine.stages_needing_assignment(session)
        if not needed:
            return [], None
        if not config.auto_assignment:
            return machine.mark_pending_assignment(session, actor_id, now, "awaiting manual assignment"), None
        try:
            return self._assign(session, config, needed, actor_id, now, notifications, assigned), None
        except NoEligibleReviewerError as e:
            logger.warning(f"Session {session.id}: {e}")
            return machine.mark_pending_assignment(session, actor_id, now, str(e)), e

    def _completion_record(self, round_: ReviewRound, stage_deadline: datetime) -> CompletionRecord:
        return CompletionRecord(
            review_time_hours=(as_utc(round_.completed_at) - as_utc(round_.started_at)).total_seconds() / 3600,
            quality_score=round_.quality_score if round_.quality_score is not None else UNSCORED_QUALITY,
            on_time=as_utc(round_.completed_at) <= as_utc(stage_deadline),
            feedback_quality=assess_feedback_quality(round_.feedback),
            thoroughness=assess_thoroughness(round_.feedback),
        )

    def _outcome_notifications(self, session: ReviewSession, config: WorkflowConfig) -> list[Notification]:
        if not config.auto_notification:
            return []
        if session.status == SessionStatus.COMPLETED:
            template = "review_completed"
        elif session.status == SessionStatus.REJECTED:
            template = "review_rejected"
        elif session.status == SessionStatus.REVISION_REQUESTED:
            template = "revision_requested"
        else:
            return []
        return [Notification(recipients=[session.created_by], template=template, payload=self._payload(session))]

    # ========================================================================
    # Session Lifecycle
    # ========================================================================

    def create_session(
        self,
        document_id: str,
        document_type: str,
        actor_id: str,
        workflow_id: Optional[str] = None,
        priority: ReviewPriority = ReviewPriority.MEDIUM,
        due_date: Optional[datetime] = None,
        document_name: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ReviewSession:
        """
        Start reviewing a document.

        The session is persisted even when nobody can be assigned; in that
        case it stays pending_assignment and NoEligibleReviewerError is raised
        with its session_id.
        """
        now = self._now(now)
        if workflow_id:
            config = self.registry.get(workflow_id)
        else:
            config = self.registry.find_for_document_type(document_type)
            if config is None:
                raise WorkflowNotFoundError(f"No active workflow for document type '{document_type}'")
        if not config.is_active:
            raise WorkflowNotFoundError(f"Workflow {config.id} is inactive")
        if document_type not in config.document_types:
            raise WorkflowNotFoundError(
                f"Workflow {config.id} does not cover document type '{document_type}'"
            )

        session, events = machine.new_session(
            document_id, document_type, config, actor_id, now,
            priority=priority, due_date=due_date, document_name=document_name, metadata=metadata,
        )
        notifications: list[Notification] = []
        assigned: list[str] = []
        failure = None
        if config.auto_assignment:
            try:
                events += self._assign(session, config, session.active_stages, actor_id, now, notifications, assigned)
            except NoEligibleReviewerError as e:
                failure = NoEligibleReviewerError(e.stage_number, e.role, session.id)

        with self._session_lock(session.id):
            saved = self._commit(session, events, notifications, assigned, now)
        logger.info(f"Created review session {saved.id} for {document_id} using workflow {config.id}")

        if failure is not None:
            logger.warning(f"Session {saved.id} left pending assignment: {failure}")
            raise failure
        return saved

    def get_session(self, session_id: str) -> ReviewSession:
        """Read-only projection of a session (a private copy)."""
        return self._load(session_id)

    def list_sessions(self, query: Optional[SessionQuery] = None) -> list[ReviewSession]:
        return self.store.query(query)

    def session_score(self, session_id: str) -> Optional[SessionScore]:
        return aggregate_session_score(self._load(session_id))

    def cancel_session(self, session_id: str, actor_id: str, reason: str = "", now: Optional[datetime] = None) -> ReviewSession:
        """Cancel a session, keeping the work of any open round."""
        now = self._now(now)
        with self._session_lock(session_id):
            session = self._load(session_id)
            events = machine.cancel(session, actor_id, now, reason)
            saved = self._commit(session, events)
        logger.info(f"Session {session_id} cancelled by {actor_id}")
        return saved

    # ========================================================================
    # Assignment
    # ========================================================================

    def assign_reviewer(
        self,
        session_id: str,
        reviewer_id: str,
        stage_number: int,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> ReviewSession:
        """Manually assign a reviewer to an active stage."""
        now = self._now(now)
        with self._session_lock(session_id):
            session = self._load(session_id)
            config = self._config_for(session)
            stage = config.get_stage(stage_number)
            if stage is None:
                raise InvalidStateTransitionError(
                    session_id, session.status.value, "assign reviewer", f"unknown stage {stage_number}"
                )
            profile = self.directory.get(reviewer_id)
            if stage.required_role not in profile.roles or not self.directory.can_take_review(
                profile, stage.estimated_hours, now
            ):
                raise NoEligibleReviewerError(stage_number, stage.required_role, session_id)

            assignment = ReviewerAssignment(
                reviewer_id=reviewer_id,
                role=stage.required_role,
                stage_number=stage_number,
                assigned_at=now,
                estimated_hours=stage.estimated_hours,
            )
            events = machine.apply_assignments(session, [assignment], actor_id, now)
            notifications = []
            if config.auto_notification:
                notifications.append(Notification(
                    recipients=[reviewer_id], template="review_assignment",
                    payload=self._payload(session, stage_number=stage_number),
                ))
            return self._commit(session, events, notifications, [reviewer_id], now)

    def retry_assignment(self, session_id: str, actor_id: str, now: Optional[datetime] = None) -> ReviewSession:
        """
        Run the planner again for active stages without a reviewer.

        Raises:
            NoEligibleReviewerError: If a stage still cannot be staffed
        """
        now = self._now(now)
        with self._session_lock(session_id):
            session = self._load(session_id)
            machine.require_active(session, "retry assignment")
            config = self._config_for(session)
            notifications: list[Notification] = []
            assigned: list[str] = []
            needed = machine.stages_needing_assignment(session)
            events = self._assign(session, config, needed, actor_id, now, notifications, assigned) if needed else []
            return self._commit(session, events, notifications, assigned, now)

    def accept_assignment(
        self,
        session_id: str,
        reviewer_id: str,
        actor_id: str,
        stage_number: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ReviewSession:
        now = self._now(now)
        with self._session_lock(session_id):
            session = self._load(session_id)
            machine.accept_assignment(session, reviewer_id, stage_number or session.current_stage, now)
            logger.debug(f"{reviewer_id} accepted session {session_id} (recorded by {actor_id})")
            return self._commit(session, [])

    def decline_assignment(
        self,
        session_id: str,
        reviewer_id: str,
        actor_id: str,
        stage_number: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ReviewSession:
        """Decline an assignment and hand the stage to someone who has not declined it."""
        now = self._now(now)
        with self._session_lock(session_id):
            session = self._load(session_id)
            config = self._config_for(session)
            stage_number = stage_number or session.current_stage
            machine.decline_assignment(session, reviewer_id, stage_number, now)

            notifications: list[Notification] = []
            assigned: list[str] = []
            events: list[TransitionEvent] = []
            if config.auto_assignment:
                exclude = {a.reviewer_id for a in session.assignments if a.stage_number == stage_number}
                try:
                    events = self._assign(session, config, [stage_number], actor_id, now,
                                          notifications, assigned, exclude=exclude)
                except NoEligibleReviewerError as e:
                    logger.warning(f"Session {session_id}: no replacement after decline by {reviewer_id}: {e}")
                    events = machine.mark_pending_assignment(session, actor_id, now, str(e))
            else:
                events = machine.mark_pending_assignment(session, actor_id, now, f"{reviewer_id} declined")
            return self._commit(session, events, notifications, assigned, now)

    def reassign_reviewer(
        self,
        session_id: str,
        reviewer_id: str,
        stage_number: int,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> ReviewSession:
        """Replace a reviewer on a stage with the best other eligible reviewer."""
        now = self._now(now)
        with self._session_lock(session_id):
            session = self._load(session_id)
            config = self._config_for(session)
            notifications: list[Notification] = []
            assigned: list[str] = []
            events = self._replace(session, config, reviewer_id, stage_number, actor_id, now, notifications, assigned)
            return self._commit(session, events, notifications, assigned, now)

    def _replace(
        self,
        session: ReviewSession,
        config: WorkflowConfig,
        reviewer_id: str,
        stage_number: int,
        actor_id: str,
        now: datetime,
        notifications: list[Notification],
        assigned: list[str],
    ) -> list[TransitionEvent]:
        stage = config.get_stage(stage_number)
        exclude = {reviewer_id} | {a.reviewer_id for a in session.open_assignments([stage_number])}
        replacement = self._plan(session, [stage], now, exclude)[0]
        events = machine.replace_reviewer(session, reviewer_id, stage_number, replacement, actor_id, now)
        assigned.append(replacement.reviewer_id)
        notifications.append(Notification(
            recipients=[replacement.reviewer_id], template="review_assignment",
            payload=self._payload(session, stage_number=stage_number, replaces=reviewer_id),
        ))
        logger.info(f"Session {session.id}: stage {stage_number} reassigned from {reviewer_id} to {replacement.reviewer_id}")
        return events

    # ========================================================================
    # Rounds and Feedback
    # ========================================================================

    def begin_round(
        self,
        session_id: str,
        reviewer_id: str,
        actor_id: str,
        stage_number: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ReviewSession:
        now = self._now(now)
        with self._session_lock(session_id):
            session = self._load(session_id)
            config = self._config_for(session)
            round_, events = machine.begin_round(session, config, reviewer_id, actor_id, now, stage_number)
            saved = self._commit(session, events)
        logger.info(f"Session {session_id}: round {round_.round_number} started by {reviewer_id}")
        return saved

    def submit_feedback(
        self,
        session_id: str,
        round_number: int,
        items: list[Union[ReviewFeedback, dict[str, Any]]],
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> ReviewSession:
        now = self._now(now)
        feedback = [
            item if isinstance(item, ReviewFeedback) else ReviewFeedback.model_validate({"created_at": now, **item})
            for item in items
        ]
        with self._session_lock(session_id):
            session = self._load(session_id)
            events = machine.submit_feedback(session, round_number, feedback, actor_id, now)
            return self._commit(session, events)

    def close_round(
        self,
        session_id: str,
        round_number: int,
        decision: Union[ReviewDecision, str],
        quality_score: Optional[float],
        compliance_score: Optional[float],
        actor_id: str,
        comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReviewSession:
        """
        Record a round decision, apply the quality gate and advance the session.

        Reviewer metrics are updated once the closed round is saved.
        """
        now = self._now(now)
        with self._session_lock(session_id):
            session = self._load(session_id)
            config = self._config_for(session)
            stage_entered_at = session.stage_entered_at

            outcome = machine.close_round(
                session, config, round_number, ReviewDecision(decision),
                quality_score, compliance_score, actor_id, now, comments,
            )
            if outcome.noop:
                logger.debug(f"Session {session_id}: round {round_number} already closed with same decision")
                return session

            events = list(outcome.events)
            notifications: list[Notification] = []
            assigned: list[str] = []
            if outcome.entered_stages:
                staff_events, _ = self._staff_open_stages(session, config, actor_id, now, notifications, assigned)
                events += staff_events
            notifications += self._outcome_notifications(session, config)

            saved = self._commit(session, events, notifications, assigned, now)

            round_ = outcome.round
            if round_ is not None and not round_.system_generated:
                stage = config.get_stage(round_.stage_number)
                deadline = stage_entered_at + timedelta(days=stage.max_days)
                try:
                    self.directory.record_completion(round_.reviewer_id, self._completion_record(round_, deadline), now)
                except Exception as e:
                    logger.warning(f"Could not update metrics for {round_.reviewer_id}: {e}")

        logger.info(
            f"Session {session_id}: round {round_number} closed with {ReviewDecision(decision).value}, "
            f"status {saved.status.value}"
        )
        return saved

    def update_feedback_status(
        self,
        session_id: str,
        feedback_id: str,
        status: Union[FeedbackStatus, str],
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> ReviewSession:
        now = self._now(now)
        with self._session_lock(session_id):
            session = self._load(session_id)
            machine.update_feedback_status(session, feedback_id, FeedbackStatus(status), actor_id, now)
            return self._commit(session, [])

    def skip_stage(
        self,
        session_id: str,
        stage_number: int,
        actor_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ReviewSession:
        now = self._now(now)
        with self._session_lock(session_id):
            session = self._load(session_id)
            config = self._config_for(session)
            outcome = machine.skip_stage(session, config, stage_number, actor_id, now, reason)
            events = list(outcome.events)
            notifications: list[Notification] = []
            assigned: list[str] = []
            if outcome.entered_stages:
                staff_events, _ = self._staff_open_stages(session, config, actor_id, now, notifications, assigned)
                events += staff_events
            notifications += self._outcome_notifications(session, config)
            return self._commit(session, events, notifications, assigned, now)

    # ========================================================================
    # Escalation
    # ========================================================================

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Evaluate escalation rules for every active session."""
        return self.scheduler.tick(self._now(now))

    def escalate_session(self, session_id: str, now: datetime) -> list[ExecutedAction]:
        """Evaluate and carry out escalation rules for one session."""
        now = self._now(now)
        with self._session_lock(session_id):
            session = self._load(session_id)
            if session.is_terminal:
                return []
            config = self._config_for(session)
            decisions = evaluate_rules(session, config, now, self.predicates)
            if not decisions:
                return []

            executed: list[ExecutedAction] = []
            events: list[TransitionEvent] = []
            notifications: list[Notification] = []
            assigned: list[str] = []
            stage_before = session.current_stage

            for decision in decisions:
                if session.is_terminal or session.current_stage != stage_before:
                    break
                record_firing(session, decision, now)
                if decision.kind == DecisionKind.REMINDER:
                    notifications.append(self._reminder(session, decision))
                    executed.append(ExecutedAction(
                        session_id, decision.rule_id, decision.kind.value, decision.rule.reminder_template,
                        decision.stage_number, detail=f"notice #{decision.reminder_number}",
                    ))
                    logger.info(f"Session {session_id}: rule {decision.rule_id} notice #{decision.reminder_number}")
                else:
                    executed.append(self._run_action(
                        session, config, decision, now, events, notifications, assigned
                    ))

            self._commit(session, events, notifications, assigned, now)
            return executed

    def _reminder(self, session: ReviewSession, decision: EscalationDecision) -> Notification:
        recipients = decision.stalled_reviewer_ids or [
            a.reviewer_id for a in session.open_assignments(session.active_stages)
        ] or list(decision.rule.escalate_to)
        return Notification(
            recipients=recipients,
            template=decision.rule.reminder_template,
            payload=self._payload(session, rule_id=decision.rule_id, reminder_number=decision.reminder_number),
        )

    def _run_action(
        self,
        session: ReviewSession,
        config: WorkflowConfig,
        decision: EscalationDecision,
        now: datetime,
        events: list[TransitionEvent],
        notifications: list[Notification],
        assigned: list[str],
    ) -> ExecutedAction:
        rule = decision.rule
        action = rule.action
        result = ExecutedAction(session.id, rule.id, decision.kind.value, action.kind, decision.stage_number)
        payload = self._payload(session, rule_id=rule.id, rule_name=rule.name)
        logger.info(f"Session {session.id}: rule {rule.id} fires {action.kind}")

        if isinstance(action, NotifyAction):
            notifications.append(Notification(
                recipients=list(rule.escalate_to), template=action.template,
                payload=payload, severity=NotificationSeverity.HIGH,
            ))

        elif isinstance(action, EscalateManagerAction):
            notifications.append(Notification(
                recipients=list(rule.escalate_to), template=action.template,
                payload=payload, severity=NotificationSeverity.CRITICAL,
            ))

        elif isinstance(action, ReassignAction):
            pending = [n for n in session.active_stages if n not in session.passed_stages]
            targets = [
                a for a in session.open_assignments(pending)
                if not decision.stalled_reviewer_ids or a.reviewer_id in decision.stalled_reviewer_ids
            ]
            try:
                if targets:
                    for assignment in targets:
                        events += self._replace(
                            session, config, assignment.reviewer_id, assignment.stage_number,
                            machine.SYSTEM_ACTOR, now, notifications, assigned,
                        )
                    result.detail = "replaced " + ", ".join(a.reviewer_id for a in targets)
                else:
                    needed = machine.stages_needing_assignment(session)
                    if needed:
                        events += self._assign(session, config, needed, machine.SYSTEM_ACTOR, now,
                                               notifications, assigned)
                    result.detail = "assigned unstaffed stages"
            except NoEligibleReviewerError as e:
                logger.warning(f"Session {session.id}: reassignment by rule {rule.id} failed: {e}")
                result.succeeded = False
                result.detail = str(e)
                notifications.append(Notification(
                    recipients=list(rule.escalate_to), template="review_reassignment_failed",
                    payload=payload, severity=NotificationSeverity.CRITICAL,
                ))

        elif isinstance(action, AutoApproveAction):
            reason = f"auto-approved by escalation rule {rule.id}"
            for stage_number in [n for n in session.active_stages if n not in session.passed_stages]:
                outcome = machine.force_approve(session, config, stage_number, now, reason)
                events += outcome.events
                if outcome.entered_stages:
                    staff_events, _ = self._staff_open_stages(
                        session, config, machine.SYSTEM_ACTOR, now, notifications, assigned
                    )
                    events += staff_events
                    break
                if outcome.completed:
                    break
            notifications += self._outcome_notifications(session, config)

        elif isinstance(action, CustomAction):
            handler = self.action_handlers.get(action.handler)
            if handler is None:
                logger.warning(f"Rule {rule.id}: no action handler registered as '{action.handler}'")
                result.succeeded = False
                result.detail = f"unknown handler {action.handler}"
            else:
                try:
                    extra = handler(session.model_copy(deep=True), config, rule, now)
                    if extra:
                        notifications.extend(extra)
                except Exception as e:
                    logger.warning(f"Rule {rule.id}: action handler '{action.handler}' failed: {e}")
                    result.succeeded = False
                    result.detail = str(e)

        return result

    # ========================================================================
    # Reporting
    # ========================================================================

    def analytics(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                  now: Optional[datetime] = None) -> dict[str, Any]:
        """Review analytics over sessions submitted in [start, end]."""
        return review_analytics(self.store.query(), start=start, end=end, now=self._now(now))

    def reviewer_workload(self, reviewer_id: str, now: Optional[datetime] = None) -> dict[str, Any]:
        sessions = self.store.query(SessionQuery(statuses=ACTIVE_STATUSES, reviewer_id=reviewer_id))
        return reviewer_workload(self.directory, reviewer_id, sessions, self._now(now))

    def reviewer_leaderboard(self, metric: str = "average_quality_score", limit: int = 10) -> list[dict[str, Any]]:
        return reviewer_leaderboard(self.directory, metric, limit)
