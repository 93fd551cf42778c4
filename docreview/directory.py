"""
Reviewer Directory

Reviewer profiles, derived availability, the open-assignment workload ledger
and rolling performance metrics.
"""

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import ValidationError

from .errors import ConfigValidationError, ReviewerNotFoundError
from .schema import (
    AvailabilityStatus,
    CompletionRecord,
    PerformanceRating,
    ReviewerAvailability,
    ReviewerProfile,
    ReviewSession,
    as_utc,
)

logger = logging.getLogger(__name__)


RATING_WEIGHTS = {
    PerformanceRating.EXCELLENT: 4,
    PerformanceRating.GOOD: 3,
    PerformanceRating.SATISFACTORY: 2,
    PerformanceRating.NEEDS_IMPROVEMENT: 1,
    PerformanceRating.POOR: 0,
}


def composite_score(profile: ReviewerProfile) -> float:
    """Weighted blend of quality, on-time rate and thoroughness on a 0..100 scale."""
    metrics = profile.metrics
    return (
        0.4 * metrics.average_quality_score
        + 0.3 * (metrics.on_time_rate * 100)
        + 0.3 * metrics.thoroughness_score
    )


def performance_rating(profile: ReviewerProfile) -> PerformanceRating:
    score = composite_score(profile)
    if score >= 90:
        return PerformanceRating.EXCELLENT
    if score >= 80:
        return PerformanceRating.GOOD
    if score >= 70:
        return PerformanceRating.SATISFACTORY
    if score >= 60:
        return PerformanceRating.NEEDS_IMPROVEMENT
    return PerformanceRating.POOR


def availability_status(profile: ReviewerProfile, instant: datetime) -> AvailabilityStatus:
    """
    Availability of a reviewer at an instant, evaluated in the reviewer's timezone.

    Unavailable on non-working days and blackout dates; outside_hours when the
    local time of day is outside the working window.
    """
    availability = profile.availability
    try:
        zone = ZoneInfo(availability.time_zone)
    except ZoneInfoNotFoundError:
        logger.warning(f"Unknown timezone '{availability.time_zone}' for reviewer {profile.id}, using UTC")
        zone = ZoneInfo("UTC")

    local = as_utc(instant).astimezone(zone)
    weekday = (local.weekday() + 1) % 7  # Sunday = 0

    if weekday not in availability.working_days or local.date() in availability.blackout_dates:
        return AvailabilityStatus.UNAVAILABLE

    hours = availability.working_hours
    if not (hours.start <= local.time().replace(tzinfo=None) < hours.end):
        return AvailabilityStatus.OUTSIDE_HOURS

    return AvailabilityStatus.AVAILABLE


def _running_mean(old: float, value: float, n: int) -> float:
    return (old * (n - 1) + value) / n


class ReviewerDirectory:
    """
    Reviewer profiles and workload.

    Workload is kept as a ledger of open assignments keyed by
    (session_id, stage_number) per reviewer, synchronised from sessions
    after every save and rebuilt from the store on engine start.
    """

    def __init__(self, profiles: Optional[Iterable[Union[ReviewerProfile, dict]]] = None):
        self._lock = threading.Lock()
        self._profiles: dict[str, ReviewerProfile] = {}
        self._open: dict[str, set[tuple[str, int]]] = {}
        for profile in profiles or []:
            self.upsert(profile)

    # ========================================================================
    # Profiles
    # ========================================================================

    def upsert(self, profile: Union[ReviewerProfile, dict[str, Any]]) -> ReviewerProfile:
        if not isinstance(profile, ReviewerProfile):
            try:
                profile = ReviewerProfile.model_validate(profile)
            except ValidationError as e:
                raise ConfigValidationError(
                    [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
                    subject="reviewer profile",
                ) from e
        with self._lock:
            self._profiles[profile.id] = profile
        return profile

    def load_file(self, path: Union[str, Path]) -> list[ReviewerProfile]:
        """Load reviewer profiles from a YAML file holding a list under `reviewers:`."""
        path = Path(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigValidationError([f"Reviewer file not found: {path}"])
        except yaml.YAMLError as e:
            raise ConfigValidationError([f"Invalid YAML syntax in {path}: {e}"])

        if not isinstance(data, dict) or not isinstance(data.get("reviewers"), list):
            raise ConfigValidationError([f"{path} must contain a 'reviewers' list"])

        loaded = [self.upsert(entry) for entry in data["reviewers"]]
        logger.info(f"Loaded {len(loaded)} reviewer profiles from {path}")
        return loaded

    def find(self, reviewer_id: str) -> Optional[ReviewerProfile]:
        return self._profiles.get(reviewer_id)

    def get(self, reviewer_id: str) -> ReviewerProfile:
        profile = self._profiles.get(reviewer_id)
        if profile is None:
            raise ReviewerNotFoundError(reviewer_id)
        return profile

    def list_reviewers(self, active_only: bool = False) -> list[ReviewerProfile]:
        profiles = list(self._profiles.values())
        if active_only:
            profiles = [p for p in profiles if p.is_active]
        return profiles

    def update_availability(self, reviewer_id: str, availability: ReviewerAvailability) -> ReviewerProfile:
        with self._lock:
            profile = self.get(reviewer_id).model_copy(update={"availability": availability})
            self._profiles[reviewer_id] = profile
        return profile

    def set_active(self, reviewer_id: str, is_active: bool) -> ReviewerProfile:
        with self._lock:
            profile = self.get(reviewer_id).model_copy(update={"is_active": is_active})
            self._profiles[reviewer_id] = profile
        return profile

    def mark_assigned(self, reviewer_id: str, at: datetime) -> None:
        """Remember when the reviewer last received work, for load spreading."""
        with self._lock:
            profile = self._profiles.get(reviewer_id)
            if profile is not None:
                self._profiles[reviewer_id] = profile.model_copy(update={"last_assigned_at": at})

    # ========================================================================
    # Availability and Workload
    # ========================================================================

    def availability_status(self, reviewer: Union[str, ReviewerProfile], instant: datetime) -> AvailabilityStatus:
        profile = self.get(reviewer) if isinstance(reviewer, str) else reviewer
        return availability_status(profile, instant)

    def current_workload(self, reviewer_id: str) -> int:
        """Number of open assignments the reviewer holds in active sessions."""
        return len(self._open.get(reviewer_id, ()))

    def can_take_review(
        self,
        reviewer: Union[str, ReviewerProfile],
        estimated_hours: float,
        at: datetime,
    ) -> bool:
        profile = self.get(reviewer) if isinstance(reviewer, str) else reviewer
        if not profile.is_active:
            return False
        if availability_status(profile, at) != AvailabilityStatus.AVAILABLE:
            return False
        if self.current_workload(profile.id) >= profile.availability.max_concurrent_reviews:
            return False
        if estimated_hours > profile.availability.hours_per_week:
            return False
        return True

    def sync_session(self, session: ReviewSession) -> None:
        """Bring the workload ledger in line with one session's open assignments."""
        keep: dict[str, set[tuple[str, int]]] = {}
        if not session.is_terminal:
            for assignment in session.open_assignments():
                keep.setdefault(assignment.reviewer_id, set()).add((session.id, assignment.stage_number))

        with self._lock:
            self._drop(session.id)
            for reviewer_id, keys in keep.items():
                self._open.setdefault(reviewer_id, set()).update(keys)

    def drop_session(self, session_id: str) -> None:
        """Remove every ledger entry of a session."""
        with self._lock:
            self._drop(session_id)

    def _drop(self, session_id: str) -> None:
        for reviewer_id in list(self._open):
            self._open[reviewer_id] = {key for key in self._open[reviewer_id] if key[0] != session_id}

    def rebuild_workload(self, sessions: Iterable[ReviewSession]) -> None:
        """Recompute the ledger from scratch."""
        with self._lock:
            self._open = {}
        count = 0
        for session in sessions:
            self.sync_session(session)
            count += 1
        logger.debug(f"Rebuilt reviewer workload from {count} sessions")

    # ========================================================================
    # Metrics
    # ========================================================================

    def record_completion(self, reviewer_id: str, record: CompletionRecord, at: datetime) -> ReviewerProfile:
        """
        Fold one completed review into the reviewer's running averages.

        Uses incremental means where n is the completed count after this review.
        """
        with self._lock:
            profile = self.get(reviewer_id)
            old = profile.metrics
            n = old.completed_reviews + 1
            on_time_count = old.on_time_count + (1 if record.on_time else 0)
            metrics = old.model_copy(update={
                "completed_reviews": n,
                "average_review_time": _running_mean(old.average_review_time, record.review_time_hours, n),
                "average_quality_score": _running_mean(old.average_quality_score, record.quality_score, n),
                "on_time_count": on_time_count,
                "on_time_rate": on_time_count / n,
                "feedback_quality_score": _running_mean(old.feedback_quality_score, record.feedback_quality, n),
                "thoroughness_score": _running_mean(old.thoroughness_score, record.thoroughness, n),
                "last_updated": at,
            })
            profile = profile.model_copy(update={"metrics": metrics})
            self._profiles[reviewer_id] = profile

        logger.info(
            f"Recorded review completion for {reviewer_id}: "
            f"{n} completed, avg quality {metrics.average_quality_score:.1f}"
        )
        return profile

    def performance_rating(self, reviewer: Union[str, ReviewerProfile]) -> PerformanceRating:
        profile = self.get(reviewer) if isinstance(reviewer, str) else reviewer
        return performance_rating(profile)

    # ========================================================================
    # Search
    # ========================================================================

    def search(
        self,
        roles: Optional[list[str]] = None,
        expertise: Optional[list[str]] = None,
        min_quality_score: Optional[float] = None,
        active_only: bool = True,
    ) -> list[ReviewerProfile]:
        """Reviewers holding any of `roles` and any of `expertise`, best quality first."""
        results = []
        for profile in self.list_reviewers(active_only=active_only):
            if roles and not set(roles) & set(profile.roles):
                continue
            if expertise and not set(expertise) & set(profile.expertise):
                continue
            if min_quality_score is not None and profile.metrics.average_quality_score < min_quality_score:
                continue
            results.append(profile)
        return sorted(results, key=lambda p: p.metrics.average_quality_score, reverse=True)

    def eligible_reviewers(
        self,
        role: str,
        expertise: Optional[list[str]],
        estimated_hours: float,
        at: datetime,
        exclude: Iterable[str] = (),
    ) -> list[ReviewerProfile]:
        """Reviewers who hold the role, match the expertise and can take the review now."""
        excluded = set(exclude)
        eligible = []
        for profile in self.list_reviewers(active_only=True):
            if profile.id in excluded or role not in profile.roles:
                continue
            if expertise and not set(expertise) & set(profile.expertise):
                continue
            if not self.can_take_review(profile, estimated_hours, at):
                continue
            eligible.append(profile)
        return eligible
