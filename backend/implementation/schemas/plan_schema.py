"""
Plan Schema - Implementation Plan

This defines the plan format that the Planner produces
and the Engine executes step by step.

Steps are typed file or process mutations with declared dependencies.
"""
from typing import List, Optional
from pydantic import BaseModel, Field
from enum import Enum


class StepType(str, Enum):
    """Kind of mutation a step performs"""
    CREATE_FILE = "create_file"
    MODIFY_FILE = "modify_file"
    DELETE_FILE = "delete_file"
    RUN_COMMAND = "run_command"
    TEST = "test"


class StepStatus(str, Enum):
    """Step execution status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ValidationType(str, Enum):
    """Kind of check a validation rule runs"""
    SYNTAX = "syntax"
    TYPE_CHECK = "type_check"
    LINT = "lint"
    TEST = "test"
    CUSTOM = "custom"


class ValidationRule(BaseModel):
    """A check gating a step's success"""
    type: ValidationType = Field(..., description="syntax, type_check, lint, test or custom")
    command: Optional[str] = Field(None, description="Command to run (custom rules)")
    error_pattern: Optional[str] = Field(None, description="Regex that marks the output as failed")
    success_pattern: Optional[str] = Field(None, description="Regex the output must match to pass")


class ImplementationStep(BaseModel):
    """A single step in the implementation plan"""
    id: str = Field("", description="Step identifier, unique within the plan")
    title: str = Field("", description="Brief step title")
    description: str = Field("", description="What the step should do")
    type: Optional[StepType] = Field(None, description="create_file, modify_file, delete_file, run_command or test")

    target: Optional[str] = Field(None, description="File path or command string")
    content: Optional[str] = Field(None, description="Literal file content; synthesized when absent")

    order: int = Field(..., description="Default execution order (1-based)")
    status: StepStatus = Field(StepStatus.PENDING)

    # Dependencies
    dependencies: List[str] = Field(default_factory=list, description="Step IDs that must complete first")

    validation: List[ValidationRule] = Field(default_factory=list, description="Checks run after the step")


class ImplementationPlan(BaseModel):
    """
    Ordered list of steps for one task

    The Planner produces this from a TaskContext.
    The Engine updates step statuses while it runs.
    """
    steps: List[ImplementationStep] = Field(default_factory=list, description="All steps to execute")
    estimated_duration: Optional[float] = Field(None, description="Estimated minutes")
    risks: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list, description="External packages required")

    def get_step(self, step_id: str) -> Optional[ImplementationStep]:
        """Get step by ID"""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]


class PlanValidation(BaseModel):
    """Outcome of Planner.validate_plan"""
    valid: bool
    issues: List[str] = Field(default_factory=list)


# Export
__all__ = [
    "StepType",
    "StepStatus",
    "ValidationType",
    "ValidationRule",
    "ImplementationStep",
    "ImplementationPlan",
    "PlanValidation",
]
