"""
Tests for StepExecutor
"""
import asyncio

import pytest

from implementation.core.executor import StepExecutor, unwrap_code_fence
from implementation.core.rollback import RollbackManager
from implementation.schemas import (
    ChangeType,
    ImplementationStep,
    StepStatus,
    StepType,
    ValidationRule,
    ValidationType,
)

from conftest import FakeCodeOracle, make_context


def make_step(step_type, target=None, content=None, validation=None, step_id="step-1"):
    return ImplementationStep(
        id=step_id,
        title=f"{step_type.value} {target}",
        description="Do the thing",
        type=step_type,
        target=target,
        content=content,
        order=1,
        validation=validation or [],
    )


class TestStepExecutor:
    """Test step dispatch against a real temporary project"""

    @pytest.fixture
    def oracle(self):
        return FakeCodeOracle(content_response="```python\nprint('hi')\n```")

    @pytest.fixture
    def rollback(self, temp_project):
        return RollbackManager(temp_project, "task-1")

    @pytest.fixture
    def executor(self, temp_project, rollback, oracle):
        return StepExecutor(temp_project, rollback, oracle)

    def run(self, executor, step, temp_project):
        return asyncio.run(executor.execute_step(step, make_context(temp_project)))

    def test_create_file_with_literal_content(self, executor, rollback, temp_project):
        result = self.run(executor, make_step(StepType.CREATE_FILE, "docs/notes.md", "draft"), temp_project)

        assert result.status == StepStatus.COMPLETED
        assert (temp_project / "docs" / "notes.md").read_text() == "draft"
        assert result.changes[0].change_type == ChangeType.CREATE
        assert rollback.get_changes()[0].path == "docs/notes.md"
        assert result.duration >= 0

    def test_create_existing_file_fails(self, executor, rollback, temp_project):
        (temp_project / "notes.md").write_text("keep me")

        result = self.run(executor, make_step(StepType.CREATE_FILE, "notes.md", "draft"), temp_project)

        assert result.status == StepStatus.FAILED
        assert "already exists" in result.error
        assert (temp_project / "notes.md").read_text() == "keep me"
        assert not rollback.has_changes()

    def test_create_synthesizes_content(self, executor, oracle, temp_project):
        result = self.run(executor, make_step(StepType.CREATE_FILE, "hello.py"), temp_project)

        assert result.status == StepStatus.COMPLETED
        assert (temp_project / "hello.py").read_text() == "print('hi')"
        assert "hello.py" in oracle.content_prompts[0]
        assert "Add notes" in oracle.content_prompts[0]

    def test_synthesis_failure(self, temp_project, rollback):
        executor = StepExecutor(temp_project, rollback, FakeCodeOracle(error=RuntimeError("rate limited")))

        result = self.run(executor, make_step(StepType.CREATE_FILE, "hello.py"), temp_project)

        assert result.status == StepStatus.FAILED
        assert "Failed to generate file content" in result.error
        assert not (temp_project / "hello.py").exists()

    def test_modify_records_original(self, executor, rollback, temp_project):
        (temp_project / "app.txt").write_text("old")

        result = self.run(executor, make_step(StepType.MODIFY_FILE, "app.txt", "new"), temp_project)

        assert result.status == StepStatus.COMPLETED
        assert (temp_project / "app.txt").read_text() == "new"
        change = rollback.get_changes()[0]
        assert change.change_type == ChangeType.MODIFY
        assert change.original_content == "old"
        assert change.new_content == "new"

    def test_modify_synthesis_sees_original(self, executor, oracle, temp_project):
        (temp_project / "app.py").write_text("print('old')")

        self.run(executor, make_step(StepType.MODIFY_FILE, "app.py"), temp_project)

        assert "print('old')" in oracle.content_prompts[0]

    def test_modify_missing_file_fails(self, executor, temp_project):
        result = self.run(executor, make_step(StepType.MODIFY_FILE, "missing.txt", "x"), temp_project)

        assert result.status == StepStatus.FAILED
        assert "does not exist" in result.error

    def test_delete_records_content(self, executor, rollback, temp_project):
        (temp_project / "old.txt").write_text("bye")

        result = self.run(executor, make_step(StepType.DELETE_FILE, "old.txt"), temp_project)

        assert result.status == StepStatus.COMPLETED
        assert not (temp_project / "old.txt").exists()
        assert rollback.get_changes()[0].original_content == "bye"

    def test_delete_absent_file_is_idempotent(self, executor, rollback, temp_project):
        result = self.run(executor, make_step(StepType.DELETE_FILE, "ghost.txt"), temp_project)

        assert result.status == StepStatus.COMPLETED
        assert not result.changes
        assert not rollback.has_changes()

    def test_missing_target_fails(self, executor, temp_project):
        result = self.run(executor, make_step(StepType.CREATE_FILE, None, "x"), temp_project)

        assert result.status == StepStatus.FAILED
        assert "No target file specified" in result.error

    def test_untyped_step_fails(self, executor, temp_project):
        step = ImplementationStep(id="s", title="t", order=1)

        result = self.run(executor, step, temp_project)

        assert result.status == StepStatus.FAILED
        assert "Unknown step type" in result.error

    def test_run_command(self, executor, temp_project):
        result = self.run(executor, make_step(StepType.RUN_COMMAND, "echo hello && pwd"), temp_project)

        assert result.status == StepStatus.COMPLETED
        assert "hello" in result.output
        assert str(temp_project.resolve()) in result.output or str(temp_project) in result.output

    def test_failing_command(self, executor, temp_project):
        result = self.run(executor, make_step(StepType.RUN_COMMAND, "echo oops >&2; exit 1"), temp_project)

        assert result.status == StepStatus.FAILED
        assert "exit code 1" in result.error
        assert "oops" in result.output

    def test_test_step_uses_output_heuristic(self, executor, temp_project):
        failed = self.run(executor, make_step(StepType.TEST, "echo 'Tests: 2 failed'"), temp_project)
        passed = self.run(executor, make_step(StepType.TEST, "echo 'Tests: 4 passed'"), temp_project)

        assert failed.status == StepStatus.FAILED
        assert passed.status == StepStatus.COMPLETED

    def test_validation_failure_is_step_failure(self, executor, rollback, temp_project):
        step = make_step(
            StepType.CREATE_FILE,
            "broken.js",
            "function f() {",
            validation=[ValidationRule(type=ValidationType.SYNTAX)],
        )

        result = self.run(executor, step, temp_project)

        assert result.status == StepStatus.FAILED
        assert result.validation_results[0].passed is False
        # The write happened and is recorded for the engine's rollback
        assert rollback.has_changes()
        assert [c.path for c in result.changes] == ["broken.js"]
        assert result.changes[0].change_type == ChangeType.CREATE

    def test_validation_results_attached_on_success(self, executor, temp_project):
        step = make_step(
            StepType.CREATE_FILE,
            "ok.json",
            '{"ok": true}',
            validation=[ValidationRule(type=ValidationType.SYNTAX)],
        )

        result = self.run(executor, step, temp_project)

        assert result.status == StepStatus.COMPLETED
        assert result.validation_results[0].passed

    def test_syntax_rules_skipped_when_disabled(self, temp_project, rollback, oracle):
        executor = StepExecutor(temp_project, rollback, oracle, validate_syntax=False)
        step = make_step(
            StepType.CREATE_FILE,
            "broken.js",
            "function f() {",
            validation=[ValidationRule(type=ValidationType.SYNTAX)],
        )

        result = self.run(executor, step, temp_project)

        assert result.status == StepStatus.COMPLETED


class TestDryRun:
    """Dry run never touches the project"""

    @pytest.mark.parametrize("step_type,target", [
        (StepType.CREATE_FILE, "new.txt"),
        (StepType.MODIFY_FILE, "existing.txt"),
        (StepType.DELETE_FILE, "existing.txt"),
        (StepType.RUN_COMMAND, "touch created-by-command.txt"),
        (StepType.TEST, "touch created-by-test.txt"),
    ])
    def test_no_mutation(self, temp_project, step_type, target):
        (temp_project / "existing.txt").write_text("original")
        oracle = FakeCodeOracle()
        rollback = RollbackManager(temp_project, "task-1")
        executor = StepExecutor(temp_project, rollback, oracle, dry_run=True)

        result = asyncio.run(executor.execute_step(make_step(step_type, target), make_context(temp_project)))

        assert result.status == StepStatus.COMPLETED
        assert result.output.startswith("[DRY RUN]")
        assert sorted(p.name for p in temp_project.iterdir()) == ["existing.txt"]
        assert (temp_project / "existing.txt").read_text() == "original"
        assert not rollback.has_changes()
        assert oracle.content_prompts == []


class TestUnwrapCodeFence:
    def test_fenced_with_language(self):
        assert unwrap_code_fence("```ts\nexport const a = 1;\n```") == "export const a = 1;"

    def test_fenced_without_language(self):
        assert unwrap_code_fence("```\nplain\n```") == "plain"

    def test_unfenced(self):
        assert unwrap_code_fence("  plain text \n") == "plain text"
