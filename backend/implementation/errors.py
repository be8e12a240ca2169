"""
Error kinds raised by the implementation engine
"""
from typing import Any, List, Optional

from implementation.schemas import FileChange, ValidationResult


class ImplementationError(Exception):
    """Raised for operational failures during planning or execution"""

    def __init__(
        self,
        message: str,
        code: str,
        step_id: Optional[str] = None,
        recoverable: bool = True,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.step_id = step_id
        self.recoverable = recoverable
        self.details = details

    def __str__(self):
        return self.message


class ValidationError(ImplementationError):
    """Raised when one or more validation rules fail after a step"""

    def __init__(self, message: str, validation_results: List[ValidationResult], step_id: Optional[str] = None):
        super().__init__(message, "VALIDATION_FAILED", step_id, True)
        self.validation_results = validation_results


class CommandTimeoutError(ImplementationError):
    """Raised when a subprocess exceeds its timeout"""

    def __init__(self, command: str, timeout_ms: int, output: str = ""):
        super().__init__(
            f"Command timed out after {timeout_ms}ms: {command}",
            "COMMAND_TIMEOUT",
            details=output,
        )
        self.command = command
        self.timeout_ms = timeout_ms


class RollbackError(Exception):
    """Raised when some recorded changes could not be reversed"""

    def __init__(self, message: str, failed_changes: List[FileChange]):
        super().__init__(message)
        self.failed_changes = failed_changes


__all__ = [
    "ImplementationError",
    "ValidationError",
    "CommandTimeoutError",
    "RollbackError",
]
