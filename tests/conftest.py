"""
Pytest fixtures for review engine tests

All tests run against explicit instants. 2026-10-19 is a Monday; reviewers
work 09:00-17:00 UTC Monday to Friday unless a test says otherwise.
"""

import pytest
from datetime import datetime, timezone
import yaml

from docreview.directory import ReviewerDirectory
from docreview.engine import ReviewEngine
from docreview.errors import RetryPolicy
from docreview.events import EventBus
from docreview.notifications import NotificationTransport, Notifier
from docreview.registry import WorkflowConfigRegistry
from docreview.storage import InMemorySessionStore


MONDAY_10AM = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


class RecordingTransport(NotificationTransport):
    """Keeps every notification instead of delivering it."""

    def __init__(self):
        self.sent = []

    def send(self, recipients, template, payload, severity=None):
        self.sent.append({
            "recipients": list(recipients),
            "template": template,
            "payload": payload,
            "severity": severity,
        })

    def templates(self):
        return [n["template"] for n in self.sent]


def make_profile(reviewer_id, roles, expertise=None, **availability):
    """Reviewer profile dict with a standard working week."""
    avail = {
        "time_zone": "UTC",
        "working_hours": {"start": "09:00", "end": "17:00"},
        "working_days": [1, 2, 3, 4, 5],
        "max_concurrent_reviews": 3,
    }
    avail.update(availability)
    return {
        "id": reviewer_id,
        "name": reviewer_id.title(),
        "email": f"{reviewer_id}@example.com",
        "roles": roles,
        "expertise": expertise or [],
        "availability": avail,
    }


@pytest.fixture
def now():
    return MONDAY_10AM


@pytest.fixture
def two_stage_workflow():
    """
    Two sequential stages, passing score 70 each

    Returns:
        Dict accepted by WorkflowConfigRegistry.register
    """
    return {
        "id": "project-charter",
        "name": "Project Charter Review",
        "version": "1.0",
        "document_types": ["project_charter"],
        "required_roles": ["project_manager", "quality_reviewer"],
        "default_due_days": 5,
        "stages": [
            {
                "stage_number": 1,
                "name": "PM Review",
                "required_role": "project_manager",
                "estimated_hours": 4,
                "max_days": 2,
                "passing_score": 70,
            },
            {
                "stage_number": 2,
                "name": "Quality Review",
                "required_role": "quality_reviewer",
                "estimated_hours": 2,
                "max_days": 2,
                "passing_score": 70,
            },
        ],
        "escalation_rules": [],
    }


@pytest.fixture
def parallel_workflow():
    """Sequential stage 1 followed by parallel stages 2 and 3"""
    return {
        "id": "technical-spec",
        "name": "Technical Specification Review",
        "document_types": ["technical_spec"],
        "required_roles": ["technical_lead", "security_reviewer", "architect"],
        "stages": [
            {"stage_number": 1, "name": "Technical", "required_role": "technical_lead"},
            {"stage_number": 2, "name": "Security", "required_role": "security_reviewer", "is_parallel": True},
            {"stage_number": 3, "name": "Architecture", "required_role": "architect", "is_parallel": True},
        ],
    }


@pytest.fixture
def reviewer_profiles():
    return [
        make_profile("alice", ["project_manager"]),
        make_profile("bob", ["quality_reviewer"]),
    ]


@pytest.fixture
def registry(two_stage_workflow, parallel_workflow):
    return WorkflowConfigRegistry([two_stage_workflow, parallel_workflow])


@pytest.fixture
def directory(reviewer_profiles):
    return ReviewerDirectory(reviewer_profiles)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def engine(registry, directory, store, transport, event_bus):
    """Engine wired to in-memory collaborators, escalation in a single worker"""
    return ReviewEngine(
        registry,
        directory,
        store=store,
        audit_sinks=[event_bus],
        notifier=Notifier(transport),
        retry_policy=RetryPolicy(max_attempts=3, initial_delay_ms=0, jitter=False),
        max_workers=1,
    )


@pytest.fixture
def workflows_file(tmp_path, two_stage_workflow, parallel_workflow):
    path = tmp_path / "workflows.yaml"
    with open(path, 'w') as f:
        yaml.dump({"workflows": [two_stage_workflow, parallel_workflow]}, f)
    return path


@pytest.fixture
def reviewers_file(tmp_path, reviewer_profiles):
    path = tmp_path / "reviewers.yaml"
    with open(path, 'w') as f:
        yaml.dump({"reviewers": reviewer_profiles}, f)
    return path
