"""Tests for core framework components."""

import asyncio
import json
import os
import sys
import tempfile

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from replay_agent.core.config import ConfigLoader, RunnerConfig
from replay_agent.core.errors import (
    ConfigError,
    ErrorCategory,
    ErrorSeverity,
    PersistenceError,
    ScopeViolationError,
    StepExecutionError,
    WorkflowNotFoundError,
)
from replay_agent.core.models import (
    ActionType,
    RunStatus,
    RunSummary,
    StepResult,
    StepStatus,
    Workflow,
    WorkflowAction,
)
from replay_agent.core.state import StateManager


class TestRunnerConfig:
    """Test configuration defaults."""

    def test_default_config(self):
        config = RunnerConfig()

        assert config.retry.max_attempts == 3
        assert config.retry.base_delay_seconds == 1.0
        assert config.retry.max_delay_seconds == 10.0
        assert config.login_timeout_ms == 30000
        assert config.screenshot_on_error

    def test_config_hash(self):
        assert RunnerConfig().config_hash() == RunnerConfig().config_hash()
        assert RunnerConfig().config_hash() != RunnerConfig(login_timeout_ms=5000).config_hash()


class TestConfigLoader:
    """Test YAML/JSON loading."""

    def test_missing_runner_config_uses_defaults(self, tmp_path):
        loader = ConfigLoader(str(tmp_path))
        assert loader.load_runner_config() == RunnerConfig()

    def test_runner_config_from_yaml(self, tmp_path):
        (tmp_path / "runner.yaml").write_text("retry:\n  max_attempts: 5\nscreenshot_on_error: false\n")

        config = ConfigLoader(str(tmp_path)).load_runner_config()

        assert config.retry.max_attempts == 5
        assert not config.screenshot_on_error

    def test_invalid_runner_config(self, tmp_path):
        path = tmp_path / "runner.yaml"
        path.write_text("retry:\n  max_attempts: 0\n")

        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader(str(tmp_path)).load_runner_config()
        assert exc_info.value.context["config_path"] == str(path)

    def test_load_workflow_yaml(self, tmp_path):
        path = tmp_path / "export.yaml"
        path.write_text(
            "workflow:\n"
            "  id: export\n"
            "  name: Export report\n"
            "  actions:\n"
            "    - id: open\n"
            "      type: goto\n"
            "      url: https://app.getvergo.com\n"
            "    - id: go\n"
            "      order: 1\n"
            "      type: click\n"
            "      selector: '#export'\n"
            "      retryCount: 1\n"
            "  logicSpec:\n"
            "    settings:\n"
            "      retryAttempts: 2\n"
        )

        workflow = ConfigLoader(str(tmp_path)).load_workflow(str(path))

        assert workflow.id == "export"
        assert workflow.actions[1].retry_count == 1
        assert workflow.logic_spec.settings.retry_attempts == 2

    def test_load_workflow_json(self, tmp_path):
        path = tmp_path / "wf.json"
        path.write_text(json.dumps({"id": "wf", "actions": [{"id": "a", "type": "navigate", "url": "https://x.io"}]}))

        workflow = ConfigLoader(str(tmp_path)).load_workflow(str(path))
        assert workflow.actions[0].type == ActionType.GOTO

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("workflow: [unclosed\n")

        with pytest.raises(ConfigError):
            ConfigLoader(str(tmp_path)).load_workflow(str(path))

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError):
            ConfigLoader(str(tmp_path)).load_workflow(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            ConfigLoader(str(tmp_path)).load_workflow(str(tmp_path / "nope.yaml"))

    def test_load_workflows_directory(self, tmp_path):
        workflows = tmp_path / "workflows"
        workflows.mkdir()
        (workflows / "a.yaml").write_text("id: a\nactions: []\n")
        (workflows / "b.json").write_text('{"id": "b", "actions": []}')

        loaded = ConfigLoader(str(tmp_path)).load_workflows()
        assert sorted(w.id for w in loaded) == ["a", "b"]

    def test_load_domain_scope(self, tmp_path):
        path = tmp_path / "scope.yaml"
        path.write_text("domainScope:\n  baseDomain: getvergo.com\n  ssoProviders: ['*.okta.com']\n")

        raw = ConfigLoader(str(tmp_path)).load_domain_scope(str(path))
        assert raw["baseDomain"] == "getvergo.com"

    def test_config_change_detection(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text("id: wf\n")
        loader = ConfigLoader(str(tmp_path))
        loader.load_workflow(str(path))

        assert not loader.has_config_changed(str(path))
        path.write_text("id: wf\nname: changed\n")
        assert loader.has_config_changed(str(path))


class TestModels:
    """Test workflow and run models."""

    def test_stored_action_shape_is_unwrapped(self):
        action = WorkflowAction.model_validate({
            "id": "a1",
            "order": 4,
            "action": {"type": "click", "selector": "#go"},
        })
        assert action.type == ActionType.CLICK
        assert action.order == 4
        assert action.selector == "#go"

    def test_action_value_is_stringified(self):
        action = WorkflowAction(id="a1", type="type", selector="#n", value=42)
        assert action.value == "42"

    def test_unknown_action_type_rejected(self):
        with pytest.raises(ValueError):
            WorkflowAction(id="a1", type="teleport")

    def test_ordered_actions_is_stable(self):
        workflow = Workflow(id="wf", actions=[
            WorkflowAction(id="b", order=1, type="click", selector="#b"),
            WorkflowAction(id="a", order=0, type="click", selector="#a"),
            WorkflowAction(id="c", order=1, type="click", selector="#c"),
        ])
        assert [a.id for a in workflow.ordered_actions()] == ["a", "b", "c"]

    @pytest.mark.parametrize("statuses, expected", [
        ([], RunStatus.SUCCESS),
        ([StepStatus.SUCCESS, StepStatus.SKIPPED], RunStatus.SUCCESS),
        ([StepStatus.SUCCESS, StepStatus.FAILED], RunStatus.PARTIAL),
        ([StepStatus.FAILED, StepStatus.SKIPPED], RunStatus.FAILED),
    ])
    def test_aggregate_status(self, statuses, expected):
        steps = [StepResult(action_id=f"a{i}", status=s) for i, s in enumerate(statuses)]
        assert RunSummary.from_steps(steps).aggregate_status() == expected


class TestErrors:
    """Test error classification and fingerprinting."""

    def test_same_context_same_fingerprint(self):
        error1 = StepExecutionError("Element not found", action_id="a1", selector="#btn")
        error2 = StepExecutionError("Element not found", action_id="a1", selector="#btn")
        assert error1.fingerprint() == error2.fingerprint()

    def test_different_context_different_fingerprint(self):
        error1 = StepExecutionError("Element not found", action_id="a1")
        error2 = StepExecutionError("Element not found", action_id="a2")
        assert error1.fingerprint() != error2.fingerprint()

    def test_scope_violation_is_not_retryable(self):
        error = ScopeViolationError("outside scope", domain="gmail.com")
        assert not error.retryable
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.category == ErrorCategory.SAFETY
        assert isinstance(error, StepExecutionError)

    def test_workflow_not_found_message(self):
        assert WorkflowNotFoundError("workflow-123").message == "Workflow workflow-123 not found"

    def test_error_serialization(self):
        data = PersistenceError("Database error", operation="create_run").to_dict()
        assert data["type"] == "PersistenceError"
        assert data["severity"] == "high"
        assert data["category"] == "external"
        assert data["context"]["operation"] == "create_run"
        assert "fingerprint" in data


class TestStateManager:
    """Test persistent workflow and run storage."""

    @pytest.fixture
    async def state_manager(self):
        """Create a temporary state manager."""
        with tempfile.TemporaryDirectory() as tmpdir:
            manager = StateManager(os.path.join(tmpdir, "test_state.db"))
            await manager.initialize()
            yield manager
            await manager.close()

    @pytest.fixture
    def workflow(self):
        return Workflow(id="wf-1", name="Export", actions=[
            WorkflowAction(id="a1", type="goto", url="https://app.getvergo.com"),
            WorkflowAction(id="a2", order=1, type="click", selector="#export", retry_count=1),
        ])

    @pytest.mark.asyncio
    async def test_workflow_round_trip(self, state_manager, workflow):
        await state_manager.save_workflow(workflow)

        loaded = await state_manager.find_workflow("wf-1")
        assert loaded.model_dump() == workflow.model_dump()
        assert await state_manager.find_workflow("missing") is None

    @pytest.mark.asyncio
    async def test_run_lifecycle(self, state_manager):
        handle = await state_manager.create_run("wf-1")

        record = await state_manager.get_run(handle.id)
        assert record.status == RunStatus.RUNNING.value
        assert record.completed_at is None

        await state_manager.create_step_record(
            handle, StepResult(action_id="a1", status=StepStatus.SUCCESS, attempts=2)
        )
        await state_manager.create_step_record(
            handle, StepResult(action_id="a2", status=StepStatus.FAILED, metadata={"error": "boom"})
        )
        await state_manager.update_run(handle, {
            "status": RunStatus.PARTIAL,
            "summary": {"totalSteps": 2},
            "metadata": {"loginSuccess": True},
            "error": None,
            "session_data": "enc:abc",
        })

        record = await state_manager.get_run(handle.id)
        assert record.status == "partial"
        assert record.completed_at is not None
        assert record.summary == {"totalSteps": 2}
        assert record.metadata == {"loginSuccess": True}
        assert record.session_data == "enc:abc"

        steps = await state_manager.list_steps(handle.id)
        assert [s.action_id for s in steps] == ["a1", "a2"]
        assert steps[0].attempts == 2
        assert steps[1].metadata == {"error": "boom"}

    @pytest.mark.asyncio
    async def test_run_lock_released_when_finished(self, state_manager):
        handle = await state_manager.create_run("wf-1")

        await state_manager.update_run(handle, {"metadata": {"progress": 1}})
        assert handle.id in state_manager._run_locks

        await state_manager.update_run(handle, {"status": RunStatus.SUCCESS})
        assert handle.id not in state_manager._run_locks

    @pytest.mark.asyncio
    async def test_update_unknown_run(self, state_manager):
        handle = await state_manager.create_run("wf-1")
        other = type(handle)(id="does-not-exist", workflow_id="wf-1")

        with pytest.raises(PersistenceError):
            await state_manager.update_run(other, {"status": RunStatus.FAILED})

    @pytest.mark.asyncio
    async def test_concurrent_step_writes(self, state_manager):
        handle = await state_manager.create_run("wf-1")

        await asyncio.gather(*[
            state_manager.create_step_record(
                handle, StepResult(action_id=f"a{i}", status=StepStatus.SUCCESS)
            )
            for i in range(10)
        ])

        assert len(await state_manager.list_steps(handle.id)) == 10

    @pytest.mark.asyncio
    async def test_not_initialized(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            manager = StateManager(os.path.join(tmpdir, "state.db"))
            with pytest.raises(PersistenceError):
                await manager.create_run("wf-1")
