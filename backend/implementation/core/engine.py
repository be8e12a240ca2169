"""
Engine - Implementation State Machine

Orchestrates one task from description to verified changes:

pending → planning → reviewing → executing → validating → completed
                                     ↓
                    failed / failed_unrecoverable / cancelled

Key Features:
- Plans through the Planner, optionally pauses for human approval
- Executes steps in dependency order, retrying failures
- Rolls back recorded changes on terminal failure or cancellation
- Publishes a progress snapshot after every mutation, followed by its event
"""
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import config
from implementation.core.events import CancellationToken, ImplementationObserver, ObserverList
from implementation.core.executor import StepExecutor
from implementation.core.planner import Planner
from implementation.core.rollback import RollbackManager
from implementation.core.validator import is_missing_tooling, output_reports_failure
from implementation.errors import ImplementationError, RollbackError
from implementation.schemas import (
    EventType,
    ExecutionResult,
    ImplementationConfig,
    ImplementationEvent,
    ImplementationPlan,
    ImplementationProgress,
    ImplementationStatus,
    ImplementationStep,
    StepStatus,
    TaskContext,
    TERMINAL_STATUSES,
)
from implementation.tools.code_oracle import CodeOracle, TimedCodeOracle
from implementation.tools.file_system import FileSystem
from implementation.tools.process_runner import ProcessRunner
from implementation.tools.version_control import VersionControl

logger = logging.getLogger(__name__)


def commit_message(context: TaskContext) -> str:
    return f"feat: {context.title}\n\n{context.description}\n\n[AI-Buddy Implementation]"


def snapshot_label(task_id: str) -> str:
    return f"ai-buddy-backup-{task_id}"


class Engine:
    """
    Drives one implementation run for one task

    Usage:
        engine = Engine(project_path, oracle, ImplementationConfig(auto_approve=True), observers=[...])
        progress = await engine.implement(context)
    """

    def __init__(
        self,
        project_path: Union[str, Path],
        oracle: CodeOracle,
        implementation_config: Optional[ImplementationConfig] = None,
        planner: Optional[Planner] = None,
        runner: Optional[ProcessRunner] = None,
        file_system: Optional[FileSystem] = None,
        version_control: Optional[VersionControl] = None,
        observers: Optional[Iterable[ImplementationObserver]] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ):
        self.project_path = Path(project_path)
        self.oracle = oracle
        self.config = implementation_config or ImplementationConfig()
        # Planner and executor see the oracle bounded by the per-run timeout
        self.timed_oracle = TimedCodeOracle(oracle, self.config.timeout_ms)
        self.planner = planner or Planner(self.timed_oracle, self.project_path)
        self.runner = runner or ProcessRunner()
        self.file_system = file_system or FileSystem(self.project_path)
        self.version_control = version_control
        self.observers = ObserverList(observers)
        self.token = cancellation_token or CancellationToken()

        self.context: Optional[TaskContext] = None
        self.plan: Optional[ImplementationPlan] = None
        self.rollback_manager: Optional[RollbackManager] = None
        self.executor: Optional[StepExecutor] = None
        self.results: List[ExecutionResult] = []
        self.progress = ImplementationProgress()

        self._ordered_steps: List[ImplementationStep] = []
        self._running = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def implement(self, context: TaskContext) -> ImplementationProgress:
        """
        Plan the task and, when auto-approved, execute it

        Returns after planning with status `reviewing` unless auto_approve
        is set. Errors are reported through the returned progress.

        Raises:
            ImplementationError: If this engine has already been started
        """
        if self.progress.status != ImplementationStatus.PENDING or self.context is not None:
            raise ImplementationError(
                "Implementation already started for this engine",
                "INVALID_STATE",
                recoverable=False,
            )
        self.context = context

        try:
            self._set_status(ImplementationStatus.PLANNING, "Starting implementation planning...")
            await self._generate_plan(context)

            if self.token.cancelled:
                return self._finish_cancelled()

            if not self.config.auto_approve:
                self._set_status(ImplementationStatus.REVIEWING, "Plan ready for review")
                return self.get_progress()

            return await self._execute_plan()

        except ImplementationError as e:
            logger.error(f"[Engine] Planning failed for {context.task_id} ({e.code}): {e}")
            return self._handle_error(e)
        except Exception as e:
            logger.error(f"[Engine] Unexpected planning error for {context.task_id}: {e}", exc_info=True)
            return self._handle_error(e)

    async def approve_plan(self) -> ImplementationProgress:
        """
        Resume a run paused in `reviewing`

        Raises:
            ImplementationError: INVALID_STATE if there is no plan awaiting review
        """
        if self.plan is None or self.progress.status != ImplementationStatus.REVIEWING:
            raise ImplementationError(
                f"Cannot approve plan in state {self.progress.status.value}",
                "INVALID_STATE",
                recoverable=False,
            )
        self._emit(EventType.LOG, "Plan approved")
        return await self._execute_plan()

    async def refine_plan(self, feedback: str) -> ImplementationProgress:
        """
        Ask the Planner to rework the plan under review

        An invalid refinement keeps the current plan.

        Raises:
            ImplementationError: INVALID_STATE outside `reviewing`
        """
        if self.plan is None or self.progress.status != ImplementationStatus.REVIEWING:
            raise ImplementationError(
                f"Cannot refine plan in state {self.progress.status.value}",
                "INVALID_STATE",
                recoverable=False,
            )

        self._emit(EventType.LOG, "Refining plan from feedback...", feedback=feedback)
        refined = await self.planner.refine_plan(self.plan, feedback, self.context)

        # The run may have been cancelled or approved while we waited
        if self.progress.status != ImplementationStatus.REVIEWING:
            return self.get_progress()

        if refined is self.plan:
            self._emit(EventType.LOG, "Plan unchanged after refinement")
            return self.get_progress()

        validation = self.planner.validate_plan(refined)
        if not validation.valid:
            logger.warning(f"[Engine] Refined plan rejected: {validation.issues}")
            self._emit(
                EventType.LOG,
                f"Refined plan rejected: {'; '.join(validation.issues)}",
                issues=validation.issues,
            )
            return self.get_progress()

        self._accept_plan(refined)
        self._emit(
            EventType.PLAN_GENERATED,
            f"Refined plan with {len(refined.steps)} steps",
            plan=refined.model_dump(mode="json"),
        )
        return self.get_progress()

    def cancel(self, reason: Optional[str] = None) -> ImplementationProgress:
        """
        Request cancellation

        An idle run (pending or reviewing) is cancelled immediately. A running
        step loop notices the token before its next step.
        """
        if self.progress.status in TERMINAL_STATUSES:
            return self.get_progress()

        self.token.cancel(reason)
        self._emit(EventType.LOG, "Cancellation requested", reason=reason)

        if not self._running and self.progress.status in (ImplementationStatus.PENDING, ImplementationStatus.REVIEWING):
            return self._finish_cancelled()
        return self.get_progress()

    def rollback(self) -> ImplementationProgress:
        """
        Manually reverse the changes a finished run still holds

        Raises:
            ImplementationError: INVALID_STATE while the run is still in flight
        """
        if self._running or self.progress.status not in TERMINAL_STATUSES:
            raise ImplementationError(
                f"Cannot roll back in state {self.progress.status.value}",
                "INVALID_STATE",
                recoverable=False,
            )

        if not self.rollback_manager or not self.rollback_manager.has_changes():
            self._emit(EventType.LOG, "Nothing to roll back")
            return self.get_progress()

        if self._rollback_changes():
            self._update_progress(message="Changes rolled back")
        else:
            self._update_progress(
                status=ImplementationStatus.FAILED_UNRECOVERABLE,
                error="Rollback could not reverse every change",
            )
        return self.get_progress()

    def get_progress(self) -> ImplementationProgress:
        return self.progress.model_copy(deep=True)

    def get_results(self) -> List[ExecutionResult]:
        return [result.model_copy(deep=True) for result in self.results]

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _generate_plan(self, context: TaskContext) -> ImplementationPlan:
        self._emit(EventType.LOG, "Analyzing task and generating implementation plan...")

        plan = await self.planner.generate_plan(context)

        validation = self.planner.validate_plan(plan)
        if not validation.valid:
            raise ImplementationError(
                f"Invalid plan: {'; '.join(validation.issues)}",
                "INVALID_PLAN",
                recoverable=False,
                details=validation.issues,
            )

        self._accept_plan(plan)
        self._emit(
            EventType.PLAN_GENERATED,
            f"Generated plan with {len(plan.steps)} steps",
            plan=plan.model_dump(mode="json"),
        )
        return plan

    def _accept_plan(self, plan: ImplementationPlan) -> None:
        self._ordered_steps = self.planner.order_steps(plan)
        self.plan = plan
        self._update_progress(total_steps=len(plan.steps))
        logger.info(
            f"[Engine] Plan accepted, execution order: {[step.id for step in self._ordered_steps]}"
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute_plan(self) -> ImplementationProgress:
        self._running = True
        try:
            self._set_status(ImplementationStatus.EXECUTING, "Executing plan")
            self._prepare_execution()

            if self.config.enable_backups and not self.config.dry_run and self.version_control:
                label = snapshot_label(self.context.task_id)
                if await self.version_control.snapshot(label):
                    self._emit(EventType.LOG, f"Created safety snapshot '{label}'")
                else:
                    self._emit(EventType.LOG, "Could not create safety snapshot, continuing without it")

            for step in self._ordered_steps:
                if self.token.cancelled:
                    return self._finish_cancelled()

                unmet = [dep for dep in step.dependencies if self._latest_status(dep) != StepStatus.COMPLETED]
                if unmet:
                    self._skip_step(step, unmet)
                    continue

                result = await self._run_step_with_retries(step)
                if result.status == StepStatus.FAILED:
                    if self.token.cancelled:
                        return self._finish_cancelled()
                    return self._handle_step_failure(step, result)

            if self.token.cancelled:
                return self._finish_cancelled()

            self._set_status(ImplementationStatus.VALIDATING, "Running final validation")
            await self._run_final_validation()

            # Backups hold pre-change content and must not reach the commit
            self.rollback_manager.cleanup()

            if self.config.create_commit and not self.config.dry_run:
                await self._create_commit()

            self._update_progress(current_step=None)
            self._set_status(ImplementationStatus.COMPLETED, "Implementation completed successfully!")
            return self.get_progress()

        except Exception as e:
            logger.error(f"[Engine] Execution aborted: {e}", exc_info=True)
            self._mark_unrun_steps_skipped()
            clean = self._rollback_changes()
            return self._handle_error(e, clean)
        finally:
            self._running = False

    def _prepare_execution(self) -> None:
        self.rollback_manager = RollbackManager(self.project_path, self.context.task_id, self.file_system)
        if not self.config.dry_run:
            self.rollback_manager.initialize()

        self.executor = StepExecutor(
            self.project_path,
            self.rollback_manager,
            self.timed_oracle,
            runner=self.runner,
            file_system=self.file_system,
            dry_run=self.config.dry_run,
            validate_syntax=self.config.validate_syntax,
        )

    async def _run_step_with_retries(self, step: ImplementationStep) -> ExecutionResult:
        result = await self._execute_step(step)

        retry = 0
        while result.status == StepStatus.FAILED and retry < self.config.max_retries:
            if self.token.cancelled:
                break
            retry += 1
            self._emit(
                EventType.LOG,
                f"Retrying step {step.id} (attempt {retry}/{self.config.max_retries})...",
                step_id=step.id,
                retry=retry,
            )
            result = await self._execute_step(step)

        return result

    async def _execute_step(self, step: ImplementationStep) -> ExecutionResult:
        step.status = StepStatus.IN_PROGRESS
        self._update_progress(current_step=step.order)
        self._emit(EventType.STEP_STARTED, f"Executing: {step.title}", step=step.model_dump(mode="json"))

        result = await self.executor.execute_step(step, self.context)
        self.results.append(result)
        step.status = result.status

        self._update_progress()
        if result.status == StepStatus.COMPLETED:
            self._emit(
                EventType.STEP_COMPLETED,
                f"Completed: {step.title}",
                step=step.model_dump(mode="json"),
                result=result.model_dump(mode="json"),
            )
        else:
            self._emit(
                EventType.STEP_FAILED,
                f"Failed: {step.title} - {result.error}",
                step=step.model_dump(mode="json"),
                result=result.model_dump(mode="json"),
            )
        return result

    def _skip_step(self, step: ImplementationStep, unmet: List[str]) -> None:
        message = f"Skipped due to unmet dependencies: {', '.join(unmet)}"
        step.status = StepStatus.SKIPPED
        result = ExecutionResult(step_id=step.id, status=StepStatus.SKIPPED, output=message)
        self.results.append(result)

        self._update_progress()
        self._emit(
            EventType.STEP_FAILED,
            f"Step {step.id} skipped: unmet dependencies {', '.join(unmet)}",
            step=step.model_dump(mode="json"),
            result=result.model_dump(mode="json"),
        )

    def _mark_unrun_steps_skipped(self) -> None:
        """Steps the loop never reached end as skipped"""
        for step in self._ordered_steps:
            if step.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS) and self._latest_status(step.id) is None:
                step.status = StepStatus.SKIPPED
                self.results.append(ExecutionResult(
                    step_id=step.id,
                    status=StepStatus.SKIPPED,
                    output="Not run: implementation stopped",
                ))

    async def _run_final_validation(self) -> None:
        if not self.config.run_tests or self.config.dry_run:
            return

        self._emit(EventType.VALIDATION_STARTED, "Running final validation...")
        try:
            result = await self.runner.run(config.TEST_COMMAND, cwd=self.project_path, timeout_ms=config.TEST_TIMEOUT_MS)
        except ImplementationError as e:
            logger.warning(f"[Engine] Final test run did not finish: {e}")
            self._emit(EventType.VALIDATION_COMPLETED, f"Test validation: {e}", passed=False)
            return

        if is_missing_tooling(result):
            self._emit(EventType.VALIDATION_COMPLETED, "Tests skipped (no test script)", passed=True)
        elif not result.succeeded or output_reports_failure(result):
            # Reported, but the run still completes
            logger.warning(f"[Engine] Final test run failed with exit code {result.exit_code}")
            self._emit(
                EventType.VALIDATION_COMPLETED,
                "Tests failed",
                passed=False,
                output=result.combined_output,
            )
        else:
            self._emit(EventType.VALIDATION_COMPLETED, "Tests passed", passed=True, output=result.stdout)

    async def _create_commit(self) -> None:
        if not self.version_control:
            self._emit(EventType.LOG, "No version control configured, skipping commit")
            return

        result = await self.version_control.commit(commit_message(self.context))
        if result.success:
            self._emit(EventType.LOG, "Created git commit", commit_sha=result.commit_sha)
        else:
            logger.warning(f"[Engine] Commit failed: {result.output}")
            self._emit(EventType.LOG, "Failed to create git commit (this is optional)")

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _rollback_changes(self) -> bool:
        """Reverse recorded changes; False if some could not be reversed"""
        if not self.rollback_manager or not self.rollback_manager.has_changes():
            return True

        self._emit(EventType.LOG, "Rolling back changes...")
        try:
            self.rollback_manager.rollback_all()
        except RollbackError as e:
            logger.error(f"[Engine] Rollback failed: {e}")
            self._update_progress()
            self._emit(
                EventType.ERROR,
                "Rollback failed!",
                error=str(e),
                failed_paths=[change.path for change in e.failed_changes],
            )
            return False

        self._update_progress()
        self._emit(EventType.LOG, "Rollback completed successfully")
        return True

    def _handle_step_failure(self, step: ImplementationStep, result: ExecutionResult) -> ImplementationProgress:
        self._emit(
            EventType.ERROR,
            f"Step failed: {step.title}",
            step_id=step.id,
            error=result.error,
        )
        self._mark_unrun_steps_skipped()

        clean = self._rollback_changes()
        status = ImplementationStatus.FAILED if clean else ImplementationStatus.FAILED_UNRECOVERABLE
        self._set_status(status, f"Implementation failed at step {step.id}", error=result.error or f"Step {step.id} failed")
        return self.get_progress()

    def _finish_cancelled(self) -> ImplementationProgress:
        self._mark_unrun_steps_skipped()
        clean = self._rollback_changes()
        if clean:
            self._set_status(ImplementationStatus.CANCELLED, "Implementation cancelled")
        else:
            self._set_status(
                ImplementationStatus.FAILED_UNRECOVERABLE,
                "Implementation cancelled",
                error="Cancelled, but rollback could not reverse every change",
            )
        return self.get_progress()

    def _handle_error(self, error: Exception, clean: bool = True) -> ImplementationProgress:
        message = str(error)
        status = ImplementationStatus.FAILED if clean else ImplementationStatus.FAILED_UNRECOVERABLE
        self._update_progress(status=status, error=message)

        data: Dict[str, Any] = {"error": message}
        if isinstance(error, ImplementationError):
            data["code"] = error.code
            data["recoverable"] = error.recoverable
        self._emit(EventType.ERROR, f"Implementation failed: {message}", **data)
        return self.get_progress()

    # ------------------------------------------------------------------
    # Progress and events
    # ------------------------------------------------------------------

    def _latest_results(self) -> Dict[str, ExecutionResult]:
        latest: Dict[str, ExecutionResult] = {}
        for result in self.results:
            latest[result.step_id] = result
        return latest

    def _latest_status(self, step_id: str) -> Optional[StepStatus]:
        result = self._latest_results().get(step_id)
        return result.status if result else None

    def _update_progress(self, **changes: Any) -> None:
        latest = self._latest_results().values()
        updated = self.progress.model_copy(update=changes)
        updated.completed_steps = sum(1 for r in latest if r.status == StepStatus.COMPLETED)
        updated.failed_steps = sum(1 for r in latest if r.status == StepStatus.FAILED)
        updated.plan = self.plan
        updated.results = list(self.results)
        updated.can_rollback = bool(self.rollback_manager and self.rollback_manager.has_changes())

        self.progress = updated
        self.observers.publish_progress(self.progress)

    def _set_status(self, status: ImplementationStatus, message: str, error: Optional[str] = None) -> None:
        changes: Dict[str, Any] = {"status": status, "message": message}
        if error is not None:
            changes["error"] = error
        self._update_progress(**changes)
        logger.info(f"[Engine] {self.context.task_id if self.context else '?'} → {status.value}: {message}")
        self._emit(EventType.STATUS_CHANGE, message, status=status.value)

    def _emit(self, event_type: EventType, message: str, **data: Any) -> None:
        event = ImplementationEvent(type=event_type, data=data, message=message)
        logger.debug(f"[Engine] Event {event_type.value}: {message}")
        self.observers.publish_event(event)


__all__ = ["Engine", "commit_message", "snapshot_label"]
