"""
Workflow Configuration Registry

Holds named workflow definitions and validates their structural
consistency. The registry is a read-mostly snapshot: registration builds a
new mapping and swaps it in, so readers never see a half-updated set.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import ValidationError

from .errors import ConfigValidationError, WorkflowNotFoundError
from .schema import CustomCondition, Stage, ValidationResult, WorkflowConfig

logger = logging.getLogger(__name__)


def _pydantic_errors(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


def _coerce(config: Union[WorkflowConfig, dict[str, Any]]) -> WorkflowConfig:
    if isinstance(config, WorkflowConfig):
        return config
    try:
        return WorkflowConfig.model_validate(config)
    except ValidationError as e:
        workflow_id = config.get("id", "<unnamed>") if isinstance(config, dict) else "<unnamed>"
        raise ConfigValidationError(_pydantic_errors(e), subject=f"workflow '{workflow_id}'") from e


class WorkflowConfigRegistry:
    """Named, versioned workflow definitions."""

    def __init__(self, configs: Optional[list[Union[WorkflowConfig, dict]]] = None):
        self._lock = threading.Lock()
        self._configs: dict[str, WorkflowConfig] = {}
        if configs:
            self.register_many(configs)

    # ========================================================================
    # Validation
    # ========================================================================

    def validate(self, config: WorkflowConfig) -> ValidationResult:
        """
        Check a workflow definition for structural consistency.

        Every violation is reported, not just the first.
        """
        errors: list[str] = []

        if not config.stages:
            errors.append("Workflow must define at least one stage")
        else:
            numbers = sorted(s.stage_number for s in config.stages)
            if len(set(numbers)) != len(numbers):
                errors.append(f"Duplicate stage numbers: {numbers}")
            elif numbers != list(range(1, len(numbers) + 1)):
                errors.append(
                    f"Stage numbers must be contiguous from 1, got {numbers}"
                )

        if not config.document_types:
            errors.append("Workflow must declare at least one document type")
        if not config.required_roles:
            errors.append("Workflow must declare at least one required role")

        if config.minimum_reviewers < 1:
            errors.append("minimum_reviewers must be at least 1")
        if config.required_approvals < 1:
            errors.append("required_approvals must be at least 1")
        if config.required_approvals > config.minimum_reviewers:
            errors.append(
                f"required_approvals ({config.required_approvals}) must not exceed "
                f"minimum_reviewers ({config.minimum_reviewers})"
            )

        if not 0 <= config.quality_threshold <= 100:
            errors.append("quality_threshold must be between 0 and 100")
        if config.default_due_days < 1:
            errors.append("default_due_days must be at least 1")

        for stage in config.stages:
            errors.extend(self._validate_stage(stage, config))

        seen_rule_ids: set[str] = set()
        for rule in config.escalation_rules:
            prefix = f"Escalation rule '{rule.id}'"
            if rule.id in seen_rule_ids:
                errors.append(f"{prefix} is defined more than once")
            seen_rule_ids.add(rule.id)
            if rule.trigger_after_hours <= 0:
                errors.append(f"{prefix}: trigger_after_hours must be > 0")
            if not rule.escalate_to:
                errors.append(f"{prefix}: escalate_to must not be empty")
            if rule.reminder_interval_hours <= 0:
                errors.append(f"{prefix}: reminder_interval_hours must be > 0")
            if rule.max_reminders < 0:
                errors.append(f"{prefix}: max_reminders must be >= 0")
            if isinstance(rule.condition, CustomCondition) and not rule.condition.predicate:
                errors.append(f"{prefix}: custom condition needs a predicate name")

        return ValidationResult(is_valid=not errors, errors=errors)

    def _validate_stage(self, stage: Stage, config: WorkflowConfig) -> list[str]:
        errors = []
        prefix = f"Stage {stage.stage_number}"
        if not stage.required_role:
            errors.append(f"{prefix}: required_role must not be empty")
        elif config.required_roles and stage.required_role not in config.required_roles:
            errors.append(
                f"{prefix}: role '{stage.required_role}' is not in required_roles"
            )
        if not 0 <= stage.passing_score <= 100:
            errors.append(f"{prefix}: passing_score must be between 0 and 100")
        if stage.max_days <= 0:
            errors.append(f"{prefix}: max_days must be > 0")
        if stage.estimated_hours < 0:
            errors.append(f"{prefix}: estimated_hours must be >= 0")
        return errors

    # ========================================================================
    # Registration
    # ========================================================================

    def register(self, config: Union[WorkflowConfig, dict[str, Any]]) -> WorkflowConfig:
        """Validate and register one workflow, replacing any with the same id."""
        return self.register_many([config])[0]

    def register_many(self, configs: list[Union[WorkflowConfig, dict[str, Any]]]) -> list[WorkflowConfig]:
        """
        Validate and register several workflows at once.

        Nothing is registered unless every workflow is valid.

        Raises:
            ConfigValidationError: With the violations of every invalid workflow
        """
        parsed: list[WorkflowConfig] = []
        errors: list[str] = []
        for raw in configs:
            try:
                config = _coerce(raw)
            except ConfigValidationError as e:
                errors.extend(f"{e.subject}: {msg}" for msg in e.errors)
                continue
            result = self.validate(config)
            if not result.is_valid:
                errors.extend(f"workflow '{config.id}': {msg}" for msg in result.errors)
            parsed.append(config)

        if errors:
            raise ConfigValidationError(errors, subject="workflow configuration")

        with self._lock:
            snapshot = dict(self._configs)
            for config in parsed:
                snapshot[config.id] = config
            self._configs = snapshot

        for config in parsed:
            logger.info(f"Registered workflow {config.id} v{config.version} ({len(config.stages)} stages)")
        return parsed

    def unregister(self, workflow_id: str) -> bool:
        with self._lock:
            if workflow_id not in self._configs:
                return False
            snapshot = dict(self._configs)
            del snapshot[workflow_id]
            self._configs = snapshot
        return True

    def load_file(self, path: Union[str, Path]) -> list[WorkflowConfig]:
        """
        Load workflows from a YAML file holding a list under `workflows:`.

        Raises:
            ConfigValidationError: If the file is unreadable or any workflow is invalid
        """
        path = Path(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigValidationError([f"Workflow file not found: {path}"])
        except yaml.YAMLError as e:
            raise ConfigValidationError([f"Invalid YAML syntax in {path}: {e}"])

        if not isinstance(data, dict) or not isinstance(data.get("workflows"), list):
            raise ConfigValidationError([f"{path} must contain a 'workflows' list"])

        return self.register_many(data["workflows"])

    # ========================================================================
    # Lookup
    # ========================================================================

    def find(self, workflow_id: str) -> Optional[WorkflowConfig]:
        return self._configs.get(workflow_id)

    def get(self, workflow_id: str) -> WorkflowConfig:
        config = self._configs.get(workflow_id)
        if config is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return config

    def list_workflows(self, active_only: bool = False) -> list[WorkflowConfig]:
        configs = list(self._configs.values())
        if active_only:
            configs = [c for c in configs if c.is_active]
        return configs

    def find_for_document_type(self, document_type: str) -> Optional[WorkflowConfig]:
        """First active workflow (in registration order) that declares the document type."""
        for config in self._configs.values():
            if config.is_active and document_type in config.document_types:
                return config
        return None

    def get_applicable_stages(self, workflow_id: str, document_type: str) -> list[Stage]:
        return self.get(workflow_id).get_applicable_stages(document_type)

    def get_next_stage(self, workflow_id: str, current_stage_number: int) -> Optional[Stage]:
        return self.get(workflow_id).get_next_stage(current_stage_number)
