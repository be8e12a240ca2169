"""
Core Engine Components

These components turn a task description into verified, reversible changes:
1. Planner - Task → Implementation Plan
2. Validator - Post-step checks (syntax, types, lint, tests, custom)
3. Rollback Manager - Records and reverses file mutations
4. Step Executor - Executes one plan step
5. Engine - State machine tying the stages together
"""
from .events import ImplementationObserver, CallbackObserver, ObserverList, CancellationToken
from .planner import Planner
from .validator import Validator, quick_syntax_check
from .rollback import RollbackManager
from .executor import StepExecutor
from .engine import Engine

__all__ = [
    "ImplementationObserver",
    "CallbackObserver",
    "ObserverList",
    "CancellationToken",
    "Planner",
    "Validator",
    "quick_syntax_check",
    "RollbackManager",
    "StepExecutor",
    "Engine",
]
