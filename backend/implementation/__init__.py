"""
Task Implementation Engine
"""
from .core import (
    Engine,
    Planner,
    StepExecutor,
    Validator,
    RollbackManager,
    ImplementationObserver,
    CallbackObserver,
    CancellationToken,
)
from .errors import ImplementationError, ValidationError, CommandTimeoutError, RollbackError

__all__ = [
    "Engine",
    "Planner",
    "StepExecutor",
    "Validator",
    "RollbackManager",
    "ImplementationObserver",
    "CallbackObserver",
    "CancellationToken",
    "ImplementationError",
    "ValidationError",
    "CommandTimeoutError",
    "RollbackError",
]
