"""
Process Runner - Runs shell commands for steps and validators

Every call has a timeout. A process that outlives it is killed
(with its whole process group on POSIX) and CommandTimeoutError is raised.
"""
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Sequence, Union

from pydantic import BaseModel

from implementation.errors import CommandTimeoutError

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]

# Exit status shells use for "command not found"
EXIT_COMMAND_NOT_FOUND = 127


class ProcessResult(BaseModel):
    """Captured output of a finished process"""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def combined_output(self) -> str:
        if self.stderr:
            return f"{self.stdout}\nSTDERR:\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout


def describe_command(command: Command) -> str:
    if isinstance(command, str):
        return command
    return " ".join(str(part) for part in command)


class ProcessRunner:
    """
    Runs a command in a working directory and captures its output

    String commands go through the shell; sequences are executed directly.
    """

    async def run(self, command: Command, cwd: Union[str, Path], timeout_ms: int) -> ProcessResult:
        display = describe_command(command)
        logger.debug(f"[ProcessRunner] Running in {cwd}: {display}")

        popen_kwargs = {
            "cwd": str(cwd),
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
        }
        if os.name == "posix":
            popen_kwargs["start_new_session"] = True

        try:
            if isinstance(command, str):
                proc = await asyncio.create_subprocess_shell(command, **popen_kwargs)
            else:
                proc = await asyncio.create_subprocess_exec(*[str(part) for part in command], **popen_kwargs)
        except FileNotFoundError as e:
            # Executable (or cwd) missing: report like a shell would
            return ProcessResult(stderr=f"command not found: {e}", exit_code=EXIT_COMMAND_NOT_FOUND)

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            self._kill(proc)
            await proc.wait()
            logger.warning(f"[ProcessRunner] Timed out after {timeout_ms}ms: {display}")
            raise CommandTimeoutError(display, timeout_ms)

        return ProcessResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass


__all__ = ["ProcessRunner", "ProcessResult", "Command", "describe_command", "EXIT_COMMAND_NOT_FOUND"]
