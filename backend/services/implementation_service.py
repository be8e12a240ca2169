"""
Implementation Service - Background execution of implementation runs

Handles:
- One Engine per task id, kept in memory
- Background asyncio tasks for planning and execution
- Per-project locking, so runs against the same project never overlap

WORKFLOW STATE MACHINE:
=======================
start() → [planning] → [reviewing] ── approve() → [executing] → [completed]
                            │                          ↓
                            └─ refine()        [failed] / [cancelled]

With auto_approve, start() runs straight through to execution.
Finished runs are evicted on the next start() once IMPLEMENTATION_RETENTION_SECONDS
have passed.
"""
import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, Optional

import config
from implementation.core.engine import Engine
from implementation.core.events import ImplementationObserver
from implementation.errors import ImplementationError
from implementation.schemas import (
    ImplementationConfig,
    ImplementationProgress,
    ImplementationStatus,
    TaskContext,
    TERMINAL_STATUSES,
)
from implementation.tools.code_oracle import CodeOracle, create_code_oracle
from implementation.tools.process_runner import ProcessRunner
from implementation.tools.version_control import GitVersionControl, VersionControl
from services.event_service import EventStreamObserver, clear_events

logger = logging.getLogger(__name__)

VersionControlFactory = Callable[[Path], Optional[VersionControl]]


class ImplementationNotFoundError(Exception):
    """No engine is registered for the task id"""

    def __init__(self, task_id: str):
        super().__init__(f"No implementation found for task {task_id}")
        self.task_id = task_id


class ImplementationConflictError(Exception):
    """The request does not fit the task's current state"""


class ImplementationService:
    """
    Registry of engines keyed by task id

    The oracle is built on first use unless one is injected.
    """

    def __init__(
        self,
        oracle: Optional[CodeOracle] = None,
        version_control_factory: Optional[VersionControlFactory] = None,
        runner: Optional[ProcessRunner] = None,
        observers: Optional[Iterable[ImplementationObserver]] = None,
        retention_seconds: float = config.IMPLEMENTATION_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._oracle = oracle
        self._version_control_factory = version_control_factory or GitVersionControl
        self._runner = runner
        self._extra_observers = list(observers or [])
        self._retention_seconds = retention_seconds
        self._clock = clock

        self.engines: Dict[str, Engine] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._project_locks: Dict[str, asyncio.Lock] = {}
        self._settled_at: Dict[str, float] = {}

    @property
    def oracle(self) -> CodeOracle:
        if self._oracle is None:
            self._oracle = create_code_oracle()
        return self._oracle

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start(
        self,
        context: TaskContext,
        implementation_config: Optional[ImplementationConfig] = None,
    ) -> ImplementationProgress:
        """
        Register an engine for the task and start planning in the background

        Raises:
            ValueError: If the project path is not a directory or no oracle can be built
            ImplementationConflictError: If the task already has a run in flight
        """
        project_path = Path(context.project_path)
        if not project_path.is_dir():
            raise ValueError(f"Project path {context.project_path} is not a directory")

        self.evict_expired()

        existing = self.engines.get(context.task_id)
        if existing and (self._is_busy(context.task_id) or existing.progress.status not in TERMINAL_STATUSES):
            raise ImplementationConflictError(f"Task {context.task_id} already has an implementation in progress")

        engine = Engine(
            project_path,
            self.oracle,
            implementation_config or ImplementationConfig(),
            runner=self._runner,
            version_control=self._version_control_factory(project_path),
            observers=[EventStreamObserver(context.task_id), *self._extra_observers],
        )
        clear_events(context.task_id)
        self.engines[context.task_id] = engine
        self._settled_at.pop(context.task_id, None)

        logger.info(f"[ImplementationService] Starting task {context.task_id} in {project_path}")
        self._spawn(context.task_id, project_path, lambda: engine.implement(context))
        return engine.get_progress()

    def approve(self, task_id: str) -> ImplementationProgress:
        """
        Approve the plan under review and execute it in the background

        Raises:
            ImplementationNotFoundError, ImplementationConflictError
        """
        engine = self.get_engine(task_id)
        self._require_reviewing(task_id, engine, "approve")

        logger.info(f"[ImplementationService] Plan approved for task {task_id}")
        self._spawn(task_id, engine.project_path, engine.approve_plan)
        return engine.get_progress()

    async def refine(self, task_id: str, feedback: str) -> ImplementationProgress:
        """Refine the plan under review; waits for the oracle"""
        engine = self.get_engine(task_id)
        self._require_reviewing(task_id, engine, "refine")
        return await engine.refine_plan(feedback)

    def cancel(self, task_id: str, reason: Optional[str] = None) -> ImplementationProgress:
        engine = self.get_engine(task_id)
        logger.info(f"[ImplementationService] Cancelling task {task_id}")
        progress = engine.cancel(reason)
        self._note_settled(task_id)
        return progress

    async def rollback(self, task_id: str) -> ImplementationProgress:
        """
        Manually roll back a finished run

        Raises:
            ImplementationConflictError: If the run is still in flight
        """
        engine = self.get_engine(task_id)
        if self._is_busy(task_id):
            raise ImplementationConflictError(f"Task {task_id} is still running")

        async with self._lock_for(engine.project_path):
            progress = engine.rollback()
        self._note_settled(task_id)
        return progress

    def get_progress(self, task_id: str) -> ImplementationProgress:
        return self.get_engine(task_id).get_progress()

    def get_engine(self, task_id: str) -> Engine:
        engine = self.engines.get(task_id)
        if engine is None:
            raise ImplementationNotFoundError(task_id)
        return engine

    async def wait(self, task_id: str) -> ImplementationProgress:
        """Wait for the task's background work to settle"""
        task = self._tasks.get(task_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.get_progress(task_id)

    def evict_expired(self) -> int:
        """
        Drop finished runs, and their buffered events, once the retention window has passed

        Returns:
            Number of evicted tasks
        """
        now = self._clock()
        expired = [
            task_id
            for task_id, settled_at in self._settled_at.items()
            if now - settled_at >= self._retention_seconds and not self._is_busy(task_id)
        ]
        for task_id in expired:
            del self._settled_at[task_id]
            self.engines.pop(task_id, None)
            clear_events(task_id)
        if expired:
            logger.info(f"[ImplementationService] Evicted {len(expired)} finished task(s)")
        return len(expired)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_busy(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is not None and not task.done()

    def _require_reviewing(self, task_id: str, engine: Engine, action: str) -> None:
        if self._is_busy(task_id) or engine.progress.status != ImplementationStatus.REVIEWING:
            raise ImplementationConflictError(
                f"Cannot {action} task {task_id} in state {engine.progress.status.value}"
            )

    def _note_settled(self, task_id: str) -> None:
        engine = self.engines.get(task_id)
        if engine is not None and engine.progress.status in TERMINAL_STATUSES and not self._is_busy(task_id):
            self._settled_at[task_id] = self._clock()

    def _lock_for(self, project_path: Path) -> asyncio.Lock:
        key = str(Path(project_path).resolve())
        lock = self._project_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._project_locks[key] = lock
        return lock

    def _spawn(
        self,
        task_id: str,
        project_path: Path,
        work: Callable[[], Awaitable[ImplementationProgress]],
    ) -> None:
        lock = self._lock_for(project_path)

        async def run():
            if lock.locked():
                logger.info(f"[ImplementationService] Task {task_id} waiting for project lock on {project_path}")
            async with lock:
                progress = await work()
                logger.info(f"[ImplementationService] Task {task_id} settled in state {progress.status.value}")
                return progress

        task = asyncio.create_task(run())
        self._tasks[task_id] = task
        task.add_done_callback(lambda t: self._on_done(task_id, t))

    def _on_done(self, task_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(task_id) is task:
            del self._tasks[task_id]
            self._note_settled(task_id)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, ImplementationError):
            logger.warning(f"[ImplementationService] Task {task_id} rejected ({error.code}): {error}")
        elif error is not None:
            logger.error(f"[ImplementationService] Task {task_id} crashed: {error}", exc_info=error)


_service: Optional[ImplementationService] = None


def get_implementation_service() -> ImplementationService:
    """FastAPI dependency returning the process-wide service"""
    global _service
    if _service is None:
        _service = ImplementationService()
    return _service


__all__ = [
    "ImplementationService",
    "ImplementationNotFoundError",
    "ImplementationConflictError",
    "get_implementation_service",
]
