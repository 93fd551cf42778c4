"""
Review Analytics

Reporting over sessions and reviewer profiles. Read-only: nothing here
mutates a session or a profile.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Iterable, Optional

from .directory import ReviewerDirectory, availability_status, performance_rating
from .schema import ReviewSession, SessionStatus, TERMINAL_STATUSES, as_utc

FINISHED_STATUSES = {SessionStatus.APPROVED, SessionStatus.REJECTED, SessionStatus.COMPLETED}

LEADERBOARD_METRICS = {
    "average_quality_score": lambda m: m.average_quality_score,
    "on_time_completion_rate": lambda m: m.on_time_rate * 100,
    "completed_reviews": lambda m: m.completed_reviews,
    "feedback_quality_score": lambda m: m.feedback_quality_score,
    "thoroughness_score": lambda m: m.thoroughness_score,
}


def _hours(start: datetime, end: datetime) -> float:
    return (as_utc(end) - as_utc(start)).total_seconds() / 3600


def _in_period(session: ReviewSession, start: Optional[datetime], end: Optional[datetime]) -> bool:
    submitted = as_utc(session.submitted_at)
    if start is not None and submitted < as_utc(start):
        return False
    if end is not None and submitted > as_utc(end):
        return False
    return True


def review_analytics(
    sessions: Iterable[ReviewSession],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
    top_feedback_types: int = 5,
) -> dict[str, Any]:
    """
    Summary statistics for sessions submitted within [start, end].

    Review time is measured from submission to completion; on-time means
    completed no later than the due date (sessions without one count as on
    time). Quality averages ignore system-generated rounds.
    """
    selected = [s for s in sessions if _in_period(s, start, end)]
    finished = [s for s in selected if s.status in FINISHED_STATUSES]
    cancelled = [s for s in selected if s.status == SessionStatus.CANCELLED]
    overdue = [
        s for s in selected
        if now is not None and s.due_date is not None
        and as_utc(now) > as_utc(s.due_date)
        and s.status not in TERMINAL_STATUSES
    ]

    review_times = [_hours(s.submitted_at, s.completed_at) for s in finished if s.completed_at]
    on_time = [
        s for s in finished
        if s.due_date is None or (s.completed_at and as_utc(s.completed_at) <= as_utc(s.due_date))
    ]
    quality_scores = [
        r.quality_score
        for s in finished for r in s.rounds
        if r.quality_score is not None and not r.system_generated
    ]

    feedback_types = Counter(
        item.type.value for s in selected for r in s.rounds for item in r.feedback
    )
    active_reviewers = {
        a.reviewer_id for s in selected if not s.is_terminal for a in s.open_assignments()
    }

    return {
        "period": {
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
        },
        "total_reviews": len(selected),
        "completed_reviews": len(finished),
        "cancelled_reviews": len(cancelled),
        "pending_reviews": len(selected) - len(finished) - len(cancelled),
        "overdue_reviews": len(overdue),
        "average_review_time": sum(review_times) / len(review_times) if review_times else 0.0,
        "on_time_completion_rate": len(on_time) / len(finished) * 100 if finished else 0.0,
        "average_quality_score": sum(quality_scores) / len(quality_scores) if quality_scores else 0.0,
        "active_reviewers": len(active_reviewers),
        "document_type_breakdown": dict(Counter(s.document_type for s in selected)),
        "common_feedback_types": [
            {"type": t, "count": c} for t, c in feedback_types.most_common(top_feedback_types)
        ],
    }


def reviewer_workload(
    directory: ReviewerDirectory,
    reviewer_id: str,
    sessions: Iterable[ReviewSession],
    now: datetime,
) -> dict[str, Any]:
    """Current load and upcoming deadlines for one reviewer."""
    profile = directory.get(reviewer_id)
    current = directory.current_workload(reviewer_id)
    max_concurrent = profile.availability.max_concurrent_reviews

    open_work = []
    for session in sessions:
        if session.is_terminal:
            continue
        for assignment in session.open_assignments():
            if assignment.reviewer_id == reviewer_id:
                open_work.append((session, assignment))

    deadlines = sorted(
        (
            {"session_id": s.id, "document_name": s.document_name, "stage_number": a.stage_number,
             "due_date": s.due_date.isoformat()}
            for s, a in open_work if s.due_date is not None
        ),
        key=lambda d: d["due_date"],
    )

    return {
        "reviewer_id": reviewer_id,
        "current_reviews": current,
        "max_concurrent_reviews": max_concurrent,
        "hours_per_week": profile.availability.hours_per_week,
        "utilization_rate": current / max_concurrent * 100 if max_concurrent else 0.0,
        "availability_status": availability_status(profile, now).value,
        "upcoming_deadlines": deadlines,
        "estimated_hours": sum(a.estimated_hours or 0.0 for _, a in open_work),
    }


def reviewer_leaderboard(
    directory: ReviewerDirectory,
    metric: str = "average_quality_score",
    limit: int = 10,
) -> list[dict[str, Any]]:
    """
    Active reviewers ranked by one metric, best first.

    Raises:
        ValueError: If the metric is unknown
    """
    if metric not in LEADERBOARD_METRICS:
        raise ValueError(
            f"Invalid metric '{metric}'. Valid options: {', '.join(LEADERBOARD_METRICS)}"
        )
    value = LEADERBOARD_METRICS[metric]
    ranked = sorted(
        directory.list_reviewers(active_only=True),
        key=lambda p: (-value(p.metrics), p.id),
    )[:limit]

    return [
        {
            "rank": index + 1,
            "reviewer_id": profile.id,
            "name": profile.name,
            "score": value(profile.metrics),
            "performance_rating": performance_rating(profile).value,
        }
        for index, profile in enumerate(ranked)
    ]
