"""
Schemas for the Task Implementation Engine

These schemas define the contracts between engine stages:
- Context: What the caller wants implemented
- Plan: Ordered, typed steps produced by the Planner
- Results: File changes, step results and progress snapshots
"""
from .context_schema import FileContent, TaskContext
from .plan_schema import (
    StepType,
    StepStatus,
    ValidationType,
    ValidationRule,
    ImplementationStep,
    ImplementationPlan,
    PlanValidation,
)
from .result_schema import (
    ChangeType,
    ImplementationStatus,
    TERMINAL_STATUSES,
    EventType,
    FileChange,
    ValidationResult,
    ExecutionResult,
    ImplementationProgress,
    ImplementationEvent,
    ImplementationConfig,
    utc_now_iso,
)

__all__ = [
    # Context (Input)
    "FileContent",
    "TaskContext",
    # Plan
    "StepType",
    "StepStatus",
    "ValidationType",
    "ValidationRule",
    "ImplementationStep",
    "ImplementationPlan",
    "PlanValidation",
    # Results
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
