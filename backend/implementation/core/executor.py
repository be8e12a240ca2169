"""
Step Executor - Runs one plan step

Dispatches on step type:
- create_file / modify_file / delete_file: FileSystem mutations, recorded
  with the RollbackManager
- run_command / test: ProcessRunner in the project directory

Content is synthesized through the CodeOracle when a step has no literal
content. Attached validation rules run after a successful mutation.
Every outcome, including errors, comes back as an ExecutionResult.
"""
import logging
import time
from pathlib import Path
from typing import List, Optional, Union

import config
from implementation.core.rollback import RollbackManager
from implementation.core.validator import Validator, output_reports_failure
from implementation.errors import ImplementationError, ValidationError
from implementation.schemas import (
    ChangeType,
    ExecutionResult,
    FileChange,
    ImplementationStep,
    StepStatus,
    StepType,
    TaskContext,
    ValidationRule,
    ValidationType,
)
from implementation.tools.code_oracle import CodeOracle
from implementation.tools.file_system import FileSystem
from implementation.tools.process_runner import ProcessRunner

logger = logging.getLogger(__name__)

FILE_STEP_TYPES = {StepType.CREATE_FILE, StepType.MODIFY_FILE, StepType.DELETE_FILE}


def unwrap_code_fence(text: str) -> str:
    """Strip a single markdown fence wrapping the whole text"""
    stripped = text.strip()
    if stripped.startswith("```") and stripped.endswith("```") and len(stripped) > 6:
        body = stripped[3:-3]
        first_newline = body.find("\n")
        # Drop the language tag line
        if first_newline != -1 and " " not in body[:first_newline].strip():
            body = body[first_newline + 1:]
        return body.strip("\n")
    return stripped


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 3)


class StepExecutor:
    """
    Executes individual ImplementationSteps for one run

    dry_run reports what would happen without touching the project or
    calling the oracle.
    """

    def __init__(
        self,
        project_path: Union[str, Path],
        rollback_manager: RollbackManager,
        oracle: CodeOracle,
        validator: Optional[Validator] = None,
        runner: Optional[ProcessRunner] = None,
        file_system: Optional[FileSystem] = None,
        dry_run: bool = False,
        validate_syntax: bool = True,
    ):
        self.project_path = Path(project_path)
        self.rollback_manager = rollback_manager
        self.oracle = oracle
        self.runner = runner or ProcessRunner()
        self.file_system = file_system or FileSystem(self.project_path)
        self.validator = validator or Validator(self.project_path, self.runner, self.file_system)
        self.dry_run = dry_run
        self.validate_syntax = validate_syntax

    async def execute_step(self, step: ImplementationStep, context: TaskContext) -> ExecutionResult:
        """Execute a single step; never raises"""
        start = time.monotonic()
        logger.info(f"[Executor] Executing {step.id} ({step.type.value if step.type else 'untyped'}): {step.title}")
        result: Optional[ExecutionResult] = None

        try:
            result = await self._dispatch(step, context)

            if result.status == StepStatus.COMPLETED and not self.dry_run:
                rules = self._active_rules(step.validation)
                if rules:
                    file_path = step.target if step.type in FILE_STEP_TYPES else None
                    result.validation_results = await self.validator.validate(step.id, rules, file_path)

        except ValidationError as e:
            logger.warning(f"[Executor] Step {step.id} failed validation: {e}")
            return ExecutionResult(
                step_id=step.id,
                status=StepStatus.FAILED,
                error=str(e),
                validation_results=e.validation_results,
                # The mutation itself went through
                changes=result.changes if result else None,
                duration=_elapsed_ms(start),
            )
        except ImplementationError as e:
            logger.warning(f"[Executor] Step {step.id} failed ({e.code}): {e}")
            return ExecutionResult(
                step_id=step.id,
                status=StepStatus.FAILED,
                error=str(e),
                output=e.details if isinstance(e.details, str) else None,
                duration=_elapsed_ms(start),
            )
        except Exception as e:
            logger.error(f"[Executor] Unexpected error in step {step.id}: {e}", exc_info=True)
            return ExecutionResult(
                step_id=step.id,
                status=StepStatus.FAILED,
                error=str(e),
                duration=_elapsed_ms(start),
            )

        result.duration = _elapsed_ms(start)
        return result

    async def _dispatch(self, step: ImplementationStep, context: TaskContext) -> ExecutionResult:
        if step.type == StepType.CREATE_FILE:
            return await self._create_file(step, context)
        if step.type == StepType.MODIFY_FILE:
            return await self._modify_file(step, context)
        if step.type == StepType.DELETE_FILE:
            return self._delete_file(step)
        if step.type == StepType.RUN_COMMAND:
            return await self._run_command(step)
        if step.type == StepType.TEST:
            return await self._run_tests(step)
        raise ImplementationError(
            f"Unknown step type: {step.type}",
            "UNKNOWN_STEP_TYPE",
            step.id,
            recoverable=False,
        )

    def _active_rules(self, rules: List[ValidationRule]) -> List[ValidationRule]:
        if self.validate_syntax:
            return list(rules)
        return [rule for rule in rules if rule.type != ValidationType.SYNTAX]

    @staticmethod
    def _require_target(step: ImplementationStep, what: str) -> str:
        if not step.target:
            raise ImplementationError(
                f"No {what} specified for {step.type.value} step",
                "MISSING_TARGET",
                step.id,
            )
        return step.target

    def _dry_run_result(self, step: ImplementationStep, action: str) -> ExecutionResult:
        return ExecutionResult(step_id=step.id, status=StepStatus.COMPLETED, output=f"[DRY RUN] Would {action}")

    async def _create_file(self, step: ImplementationStep, context: TaskContext) -> ExecutionResult:
        target = self._require_target(step, "target file")
        if self.dry_run:
            return self._dry_run_result(step, f"create file: {target}")

        if self.file_system.exists(target):
            raise ImplementationError(f"File {target} already exists", "FILE_EXISTS", step.id)

        content = step.content if step.content else await self._generate_file_content(step, context)
        self.file_system.write(target, content)

        change = FileChange(path=target, change_type=ChangeType.CREATE, new_content=content)
        self.rollback_manager.record_change(change)

        return ExecutionResult(
            step_id=step.id,
            status=StepStatus.COMPLETED,
            output=f"Created file: {target}",
            changes=[change],
        )

    async def _modify_file(self, step: ImplementationStep, context: TaskContext) -> ExecutionResult:
        target = self._require_target(step, "target file")
        if self.dry_run:
            return self._dry_run_result(step, f"modify file: {target}")

        original_content = self.file_system.read(target)

        if step.content:
            new_content = step.content
        else:
            new_content = await self._generate_modified_content(step, context, original_content)

        self.file_system.write(target, new_content)

        change = FileChange(
            path=target,
            change_type=ChangeType.MODIFY,
            original_content=original_content,
            new_content=new_content,
        )
        self.rollback_manager.record_change(change)

        return ExecutionResult(
            step_id=step.id,
            status=StepStatus.COMPLETED,
            output=f"Modified file: {target}",
            changes=[change],
        )

    def _delete_file(self, step: ImplementationStep) -> ExecutionResult:
        target = self._require_target(step, "target file")
        if self.dry_run:
            return self._dry_run_result(step, f"delete file: {target}")

        if not self.file_system.exists(target):
            return ExecutionResult(
                step_id=step.id,
                status=StepStatus.COMPLETED,
                output=f"File {target} already deleted",
            )

        original_content = self.file_system.read(target)
        self.file_system.delete(target)

        change = FileChange(path=target, change_type=ChangeType.DELETE, original_content=original_content)
        self.rollback_manager.record_change(change)

        return ExecutionResult(
            step_id=step.id,
            status=StepStatus.COMPLETED,
            output=f"Deleted file: {target}",
            changes=[change],
        )

    async def _run_command(self, step: ImplementationStep) -> ExecutionResult:
        command = self._require_target(step, "command")
        if self.dry_run:
            return self._dry_run_result(step, f"execute: {command}")

        result = await self.runner.run(command, cwd=self.project_path, timeout_ms=config.COMMAND_TIMEOUT_MS)
        if not result.succeeded:
            return ExecutionResult(
                step_id=step.id,
                status=StepStatus.FAILED,
                output=result.combined_output,
                error=f"Command failed with exit code {result.exit_code}: {command}",
            )

        return ExecutionResult(step_id=step.id, status=StepStatus.COMPLETED, output=result.combined_output)

    async def _run_tests(self, step: ImplementationStep) -> ExecutionResult:
        command = step.target or config.TEST_COMMAND
        if self.dry_run:
            return self._dry_run_result(step, f"run tests: {command}")

        result = await self.runner.run(command, cwd=self.project_path, timeout_ms=config.TEST_TIMEOUT_MS)
        has_failed = not result.succeeded or output_reports_failure(result)

        return ExecutionResult(
            step_id=step.id,
            status=StepStatus.FAILED if has_failed else StepStatus.COMPLETED,
            output=result.combined_output,
            error=f"Tests failed (exit code {result.exit_code})" if has_failed else None,
        )

    async def _generate_file_content(self, step: ImplementationStep, context: TaskContext) -> str:
        prompt = f"""Generate the complete content for a new file.

## File Information
**Path:** {step.target}
**Purpose:** {step.description}

## Task Context
**Task:** {context.title}
**Description:** {context.description}
**Tech Stack:** {", ".join(context.tech_stack)}

## Instructions
Generate the complete, production-ready content for this file. Include:
- Proper imports and dependencies
- Clear documentation/comments
- Error handling where appropriate
- Follow best practices for the tech stack

Provide ONLY the file content, no additional explanation or markdown code blocks."""
        return await self._generate(step, prompt, "file content")

    async def _generate_modified_content(
        self,
        step: ImplementationStep,
        context: TaskContext,
        original_content: str,
    ) -> str:
        prompt = f"""Modify an existing file according to the requirements.

## File Information
**Path:** {step.target}
**Modification Required:** {step.description}

## Current Content
```
{original_content}
```

## Task Context
**Task:** {context.title}
**Description:** {context.description}

## Instructions
Provide the complete modified content for this file. Make sure to:
- Preserve existing functionality unless explicitly changing it
- Maintain code style and patterns
- Include necessary imports

Provide ONLY the complete modified file content, no additional explanation or markdown code blocks."""
        return await self._generate(step, prompt, "modified content")

    async def _generate(self, step: ImplementationStep, prompt: str, what: str) -> str:
        try:
            response = await self.oracle.generate_content(prompt)
        except Exception as e:
            raise ImplementationError(
                f"Failed to generate {what}: {e}",
                "GENERATION_FAILED",
                step.id,
            ) from e
        return unwrap_code_fence(response)


__all__ = ["StepExecutor", "unwrap_code_fence"]
