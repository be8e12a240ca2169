"""
Tools for the Implementation Engine

These are the narrow collaborators the engine components talk through:
- CodeOracle: LLM plan and content synthesis
- ProcessRunner: shell commands with timeouts
- FileSystem: project-rooted file access
- VersionControl: optional git snapshot and commit

Swapping one of these is how tests and alternative deployments
change engine behaviour without touching the core.
"""
from .code_oracle import CodeOracle, LangChainCodeOracle, TimedCodeOracle, OracleError, create_code_oracle
from .process_runner import ProcessRunner, ProcessResult, describe_command, EXIT_COMMAND_NOT_FOUND
from .file_system import (
    FileSystem,
    FileSystemError,
    PathNotFoundError,
    PathPermissionError,
    PathIOError,
)
from .version_control import VersionControl, GitVersionControl, CommitResult

__all__ = [
    "CodeOracle",
    "LangChainCodeOracle",
    "TimedCodeOracle",
    "OracleError",
    "create_code_oracle",
    "ProcessRunner",
    "ProcessResult",
    "describe_command",
    "EXIT_COMMAND_NOT_FOUND",
    "FileSystem",
    "FileSystemError",
    "PathNotFoundError",
    "PathPermissionError",
    "PathIOError",
    "VersionControl",
    "GitVersionControl",
    "CommitResult",
]
