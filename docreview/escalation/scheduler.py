"""
Escalation Scheduler

Single `tick(now)` entry point that fans out over active sessions. The
scheduler owns no timers; an external driver (cron, loop, test) calls tick.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from ..schema import SessionStatus, TERMINAL_STATUSES
from ..storage import SessionQuery, SessionStore

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [s for s in SessionStatus if s not in TERMINAL_STATUSES]


@dataclass
class ExecutedAction:
    """Something an escalation rule did to a session."""
    session_id: str
    rule_id: str
    kind: str  # reminder | action
    action: str  # notify, reassign, ... or the reminder template
    stage_number: int
    succeeded: bool = True
    detail: str = ""


@dataclass
class TickReport:
    """Outcome of one scheduler tick."""
    now: datetime
    sessions_evaluated: int = 0
    actions: list[ExecutedAction] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def failed_actions(self) -> list[ExecutedAction]:
        return [a for a in self.actions if not a.succeeded]


class EscalationScheduler:
    """
    Evaluates escalation rules for every active session.

    Sessions are independent, so they run in parallel; each one is handled
    by `escalate`, which serialises with other writers of that session.
    A failure on one session is logged and does not stop the others.
    """

    def __init__(
        self,
        store: SessionStore,
        escalate: Callable[[str, datetime], list[ExecutedAction]],
        max_workers: int = 4,
        enabled: bool = True,
    ):
        self.store = store
        self._escalate = escalate
        self.max_workers = max(1, max_workers)
        self.enabled = enabled

    def active_session_ids(self) -> list[str]:
        return [s.id for s in self.store.query(SessionQuery(statuses=ACTIVE_STATUSES))]

    def _run_one(self, session_id: str, now: datetime) -> tuple[str, Optional[list[ExecutedAction]], Optional[str]]:
        try:
            return session_id, self._escalate(session_id, now), None
        except Exception as e:
            logger.error(f"Escalation failed for session {session_id}: {e}", exc_info=True)
            return session_id, None, str(e)

    def tick(self, now: datetime) -> TickReport:
        """
        Run one escalation pass.

        Args:
            now: Instant to evaluate rules at
        """
        report = TickReport(now=now)
        if not self.enabled:
            logger.debug("Escalation scheduler disabled, skipping tick")
            return report

        session_ids = self.active_session_ids()
        report.sessions_evaluated = len(session_ids)

        if self.max_workers == 1 or len(session_ids) <= 1:
            results = [self._run_one(sid, now) for sid in session_ids]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(lambda sid: self._run_one(sid, now), session_ids))

        # Report in query order regardless of completion order
        for session_id, actions, error in results:
            if error is not None:
                report.errors[session_id] = error
            elif actions:
                report.actions.extend(actions)

        if report.actions or report.errors:
            logger.info(
                f"Escalation tick at {now.isoformat()}: {len(session_ids)} sessions, "
                f"{len(report.actions)} actions, {len(report.errors)} errors"
            )
        return report
