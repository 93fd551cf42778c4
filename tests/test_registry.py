"""
Tests for workflow configuration registry
"""

import pytest

from docreview.errors import ConfigValidationError, WorkflowNotFoundError
from docreview.registry import WorkflowConfigRegistry
from docreview.schema import WorkflowConfig


class TestValidation:
    """Tests for structural validation of workflow definitions"""

    def test_valid_workflow(self, two_stage_workflow):
        """Should accept a well-formed workflow"""
        result = WorkflowConfigRegistry().validate(WorkflowConfig.model_validate(two_stage_workflow))
        assert result.is_valid
        assert result.errors == []

    def test_gap_in_stage_numbers(self, two_stage_workflow):
        """Should reject stages that are not contiguous from 1"""
        two_stage_workflow["stages"][1]["stage_number"] = 3
        result = WorkflowConfigRegistry().validate(WorkflowConfig.model_validate(two_stage_workflow))
        assert not result.is_valid
        assert any("contiguous" in e for e in result.errors)

    def test_stage_numbers_not_starting_at_one(self, two_stage_workflow):
        """Should reject stages starting at 2"""
        two_stage_workflow["stages"][0]["stage_number"] = 2
        two_stage_workflow["stages"][1]["stage_number"] = 3
        result = WorkflowConfigRegistry().validate(WorkflowConfig.model_validate(two_stage_workflow))
        assert not result.is_valid

    def test_duplicate_stage_numbers(self, two_stage_workflow):
        """Should reject two stages with the same number"""
        two_stage_workflow["stages"][1]["stage_number"] = 1
        result = WorkflowConfigRegistry().validate(WorkflowConfig.model_validate(two_stage_workflow))
        assert any("Duplicate" in e for e in result.errors)

    def test_no_stages(self, two_stage_workflow):
        """Should reject a workflow without stages"""
        two_stage_workflow["stages"] = []
        result = WorkflowConfigRegistry().validate(WorkflowConfig.model_validate(two_stage_workflow))
        assert not result.is_valid

    def test_reports_every_violation(self, two_stage_workflow):
        """Should collect all violations rather than stopping at the first"""
        two_stage_workflow["stages"][0]["passing_score"] = 120
        two_stage_workflow["stages"][1]["required_role"] = "legal"
        two_stage_workflow["document_types"] = []
        result = WorkflowConfigRegistry().validate(WorkflowConfig.model_validate(two_stage_workflow))

        assert len(result.errors) == 3
        assert any("passing_score" in e for e in result.errors)
        assert any("'legal' is not in required_roles" in e for e in result.errors)
        assert any("document type" in e for e in result.errors)

    def test_approvals_exceed_reviewers(self, two_stage_workflow):
        """Should reject required_approvals above minimum_reviewers"""
        two_stage_workflow["minimum_reviewers"] = 1
        two_stage_workflow["required_approvals"] = 2
        result = WorkflowConfigRegistry().validate(WorkflowConfig.model_validate(two_stage_workflow))
        assert any("required_approvals" in e for e in result.errors)

    def test_bad_escalation_rule(self, two_stage_workflow):
        """Should reject rules with non-positive timing or no recipients"""
        two_stage_workflow["escalation_rules"] = [{
            "id": "stale",
            "condition": {"kind": "overdue"},
            "action": {"kind": "notify"},
            "trigger_after_hours": 0,
            "reminder_interval_hours": -1,
            "escalate_to": [],
        }]
        result = WorkflowConfigRegistry().validate(WorkflowConfig.model_validate(two_stage_workflow))

        assert any("trigger_after_hours" in e for e in result.errors)
        assert any("reminder_interval_hours" in e for e in result.errors)
        assert any("escalate_to" in e for e in result.errors)

    def test_duplicate_rule_ids(self, two_stage_workflow):
        """Should reject two rules sharing an id"""
        rule = {
            "id": "stale",
            "condition": {"kind": "overdue"},
            "action": {"kind": "notify"},
            "trigger_after_hours": 24,
            "escalate_to": ["pmo"],
        }
        two_stage_workflow["escalation_rules"] = [rule, dict(rule)]
        result = WorkflowConfigRegistry().validate(WorkflowConfig.model_validate(two_stage_workflow))
        assert any("more than once" in e for e in result.errors)


class TestRegistration:
    """Tests for registering and loading workflows"""

    def test_register_dict(self, two_stage_workflow):
        """Should parse and register a workflow given as a dict"""
        registry = WorkflowConfigRegistry()
        config = registry.register(two_stage_workflow)

        assert config.id == "project-charter"
        assert registry.get("project-charter") is config

    def test_register_invalid_raises(self, two_stage_workflow):
        """Should raise ConfigValidationError listing the violations"""
        two_stage_workflow["stages"][1]["stage_number"] = 5
        registry = WorkflowConfigRegistry()

        with pytest.raises(ConfigValidationError) as exc_info:
            registry.register(two_stage_workflow)

        assert exc_info.value.errors
        assert all(e.startswith("workflow 'project-charter'") for e in exc_info.value.errors)
        assert registry.find("project-charter") is None

    def test_register_many_is_all_or_nothing(self, two_stage_workflow, parallel_workflow):
        """Should register nothing when one workflow of a batch is invalid"""
        parallel_workflow["stages"] = []
        registry = WorkflowConfigRegistry()

        with pytest.raises(ConfigValidationError):
            registry.register_many([two_stage_workflow, parallel_workflow])

        assert registry.list_workflows() == []

    def test_schema_error_is_config_error(self):
        """Should turn pydantic errors into ConfigValidationError"""
        registry = WorkflowConfigRegistry()
        with pytest.raises(ConfigValidationError) as exc_info:
            registry.register({"id": "broken", "stages": [{"stage_number": "one"}]})
        assert "workflow 'broken'" in str(exc_info.value)

    def test_register_replaces_same_id(self, two_stage_workflow):
        """Should replace a workflow registered under the same id"""
        registry = WorkflowConfigRegistry([two_stage_workflow])
        two_stage_workflow["version"] = "2.0"
        registry.register(two_stage_workflow)

        assert registry.get("project-charter").version == "2.0"
        assert len(registry.list_workflows()) == 1

    def test_unregister(self, registry):
        """Should remove a workflow and report whether it existed"""
        assert registry.unregister("project-charter") is True
        assert registry.unregister("project-charter") is False
        assert registry.find("project-charter") is None

    def test_load_file(self, workflows_file):
        """Should load every workflow from a YAML file"""
        registry = WorkflowConfigRegistry()
        loaded = registry.load_file(workflows_file)

        assert [c.id for c in loaded] == ["project-charter", "technical-spec"]

    def test_load_missing_file(self, tmp_path):
        """Should raise ConfigValidationError for a missing file"""
        with pytest.raises(ConfigValidationError, match="not found"):
            WorkflowConfigRegistry().load_file(tmp_path / "missing.yaml")

    def test_load_file_without_workflows_list(self, tmp_path):
        """Should reject a file without a workflows list"""
        path = tmp_path / "workflows.yaml"
        path.write_text("name: nothing here\n")
        with pytest.raises(ConfigValidationError, match="'workflows' list"):
            WorkflowConfigRegistry().load_file(path)

    def test_load_invalid_yaml(self, tmp_path):
        """Should reject a file with broken YAML"""
        path = tmp_path / "workflows.yaml"
        path.write_text("workflows: [unclosed\n")
        with pytest.raises(ConfigValidationError, match="Invalid YAML"):
            WorkflowConfigRegistry().load_file(path)


class TestLookup:
    """Tests for workflow and stage lookup"""

    def test_get_unknown_raises(self, registry):
        """Should raise WorkflowNotFoundError for an unknown id"""
        with pytest.raises(WorkflowNotFoundError):
            registry.get("nope")

    def test_find_for_document_type(self, registry):
        """Should return the workflow declaring the document type"""
        assert registry.find_for_document_type("technical_spec").id == "technical-spec"
        assert registry.find_for_document_type("memo") is None

    def test_find_skips_inactive(self, two_stage_workflow):
        """Should not match inactive workflows"""
        two_stage_workflow["is_active"] = False
        registry = WorkflowConfigRegistry([two_stage_workflow])

        assert registry.find_for_document_type("project_charter") is None
        assert registry.list_workflows(active_only=True) == []

    def test_applicable_stages_ordered(self, two_stage_workflow):
        """Should return stages in stage-number order regardless of declaration order"""
        two_stage_workflow["stages"].reverse()
        registry = WorkflowConfigRegistry([two_stage_workflow])

        stages = registry.get_applicable_stages("project-charter", "project_charter")
        assert [s.stage_number for s in stages] == [1, 2]

    def test_applicable_stages_unknown_type(self, registry):
        """Should return no stages for an undeclared document type"""
        assert registry.get_applicable_stages("project-charter", "memo") == []

    def test_next_stage(self, registry):
        """Should return the following stage, or None after the last"""
        assert registry.get_next_stage("project-charter", 1).stage_number == 2
        assert registry.get_next_stage("project-charter", 2) is None

    def test_stage_group(self, registry):
        """Should group contiguous parallel stages and keep sequential ones alone"""
        config = registry.get("technical-spec")

        assert [s.stage_number for s in config.stage_group(1)] == [1]
        assert [s.stage_number for s in config.stage_group(2)] == [2, 3]
        assert [s.stage_number for s in config.stage_group(3)] == [2, 3]
