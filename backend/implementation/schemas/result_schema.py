"""
Result Schema - What a run produces

File changes, per-step execution results, validation results,
the progress snapshot observers receive and the discrete events
published alongside it.
"""
from typing import List, Dict, Any, Optional
from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime, timezone

import config
from .plan_schema import ImplementationPlan, StepStatus, ValidationRule


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChangeType(str, Enum):
    """Kind of file mutation"""
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class ImplementationStatus(str, Enum):
    """Engine state"""
    PENDING = "pending"
    PLANNING = "planning"
    REVIEWING = "reviewing"
    EXECUTING = "executing"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_UNRECOVERABLE = "failed_unrecoverable"  # failed and rollback left changes behind
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ImplementationStatus.COMPLETED,
    ImplementationStatus.FAILED,
    ImplementationStatus.FAILED_UNRECOVERABLE,
    ImplementationStatus.CANCELLED,
})


class EventType(str, Enum):
    """Discrete events published by the Engine"""
    STATUS_CHANGE = "status_change"
    PLAN_GENERATED = "plan_generated"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    VALIDATION_STARTED = "validation_started"
    VALIDATION_COMPLETED = "validation_completed"
    ERROR = "error"
    LOG = "log"


class FileChange(BaseModel):
    """One recorded file mutation"""
    path: str = Field(..., description="Path relative to the project root")
    change_type: ChangeType
    original_content: Optional[str] = Field(None, description="Content before the change (modify/delete)")
    new_content: Optional[str] = Field(None, description="Content after the change (create/modify)")
    timestamp: str = Field(default_factory=utc_now_iso)


class ValidationResult(BaseModel):
    """Outcome of one validation rule"""
    rule: ValidationRule
    passed: bool
    message: Optional[str] = None
    output: Optional[str] = None


class ExecutionResult(BaseModel):
    """Outcome of one attempt at one step"""
    step_id: str
    status: StepStatus
    output: Optional[str] = None
    error: Optional[str] = None
    changes: Optional[List[FileChange]] = None
    validation_results: Optional[List[ValidationResult]] = None
    duration: float = Field(0, description="Wall-clock milliseconds")


class ImplementationProgress(BaseModel):
    """Snapshot of a run, published after every state mutation"""
    status: ImplementationStatus = Field(ImplementationStatus.PENDING)
    current_step: Optional[int] = None
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    plan: Optional[ImplementationPlan] = None
    results: List[ExecutionResult] = Field(default_factory=list)
    can_rollback: bool = False


class ImplementationEvent(BaseModel):
    """A discrete event record"""
    type: EventType
    timestamp: str = Field(default_factory=utc_now_iso)
    data: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None


class ImplementationConfig(BaseModel):
    """Per-run engine options"""
    dry_run: bool = Field(default_factory=lambda: config.IMPLEMENTATION_DRY_RUN)
    auto_approve: bool = Field(default_factory=lambda: config.IMPLEMENTATION_AUTO_APPROVE)
    enable_backups: bool = Field(default_factory=lambda: config.IMPLEMENTATION_ENABLE_BACKUPS)
    run_tests: bool = Field(default_factory=lambda: config.IMPLEMENTATION_RUN_TESTS)
    validate_syntax: bool = Field(default_factory=lambda: config.IMPLEMENTATION_VALIDATE_SYNTAX)
    create_commit: bool = Field(default_factory=lambda: config.IMPLEMENTATION_CREATE_COMMIT)
    max_retries: int = Field(default_factory=lambda: config.IMPLEMENTATION_MAX_RETRIES, ge=0)
    timeout_ms: int = Field(default_factory=lambda: config.IMPLEMENTATION_TIMEOUT_MS, gt=0)


__all__ = [
    "ChangeType",
    "ImplementationStatus",
    "TERMINAL_STATUSES",
    "EventType",
    "FileChange",
    "ValidationResult",
    "ExecutionResult",
    "ImplementationProgress",
    "ImplementationEvent",
    "ImplementationConfig",
    "utc_now_iso",
]
