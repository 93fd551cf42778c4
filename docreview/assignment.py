"""
Assignment Planner

Selects qualified, available reviewers for the stages a session is entering.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from .directory import RATING_WEIGHTS, ReviewerDirectory, performance_rating
from .errors import NoEligibleReviewerError
from .schema import ReviewerAssignment, ReviewerProfile, Stage, as_utc

logger = logging.getLogger(__name__)


class AssignmentPlanner:
    """
    Ranks reviewers for a stage and produces assignments.

    Score is twice the reviewer's free capacity plus the weight of their
    performance rating; ties go to whoever has waited longest for work.
    """

    def __init__(self, directory: ReviewerDirectory):
        self.directory = directory

    def score(self, profile: ReviewerProfile, pending: int = 0) -> float:
        headroom = (
            profile.availability.max_concurrent_reviews
            - self.directory.current_workload(profile.id)
            - pending
        )
        return 2 * headroom + RATING_WEIGHTS[performance_rating(profile)]

    def rank_candidates(
        self,
        stage: Stage,
        at: datetime,
        exclude: Iterable[str] = (),
        pending: Optional[dict[str, int]] = None,
    ) -> list[ReviewerProfile]:
        """
        Eligible reviewers for a stage, best first.

        Args:
            stage: Stage to staff
            at: Instant availability is evaluated at
            exclude: Reviewer ids that must not be selected
            pending: Assignments handed out earlier in the same planning pass
        """
        pending = pending or {}
        candidates = [
            p for p in self.directory.eligible_reviewers(
                stage.required_role, stage.required_expertise, stage.estimated_hours, at, exclude
            )
            if self.directory.current_workload(p.id) + pending.get(p.id, 0)
            < p.availability.max_concurrent_reviews
        ]

        def sort_key(profile: ReviewerProfile):
            last = profile.last_assigned_at
            return (
                -self.score(profile, pending.get(profile.id, 0)),
                last is not None,
                as_utc(last).timestamp() if last else 0.0,
                profile.id,
            )

        return sorted(candidates, key=sort_key)

    def select_reviewer(
        self,
        stage: Stage,
        at: datetime,
        exclude: Iterable[str] = (),
        session_id: Optional[str] = None,
        pending: Optional[dict[str, int]] = None,
    ) -> ReviewerProfile:
        ranked = self.rank_candidates(stage, at, exclude, pending)
        if not ranked:
            raise NoEligibleReviewerError(stage.stage_number, stage.required_role, session_id)
        return ranked[0]

    def plan(
        self,
        stages: list[Stage],
        at: datetime,
        exclude: Iterable[str] = (),
        session_id: Optional[str] = None,
    ) -> list[ReviewerAssignment]:
        """
        One assignment per stage, all or nothing.

        Raises:
            NoEligibleReviewerError: For the first stage nobody can take
        """
        exclude = set(exclude)
        pending: dict[str, int] = {}
        assignments = []
        for stage in stages:
            reviewer = self.select_reviewer(stage, at, exclude, session_id, pending)
            pending[reviewer.id] = pending.get(reviewer.id, 0) + 1
            assignments.append(ReviewerAssignment(
                reviewer_id=reviewer.id,
                role=stage.required_role,
                stage_number=stage.stage_number,
                assigned_at=at,
                estimated_hours=stage.estimated_hours,
            ))
            logger.debug(f"Selected {reviewer.id} for stage {stage.stage_number} of {session_id}")
        return assignments
