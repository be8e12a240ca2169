"""
File System Tool - Project-rooted file access

All paths are relative to the project root. Paths that resolve outside
the root are refused. Each failure surfaces as a distinct error kind so
callers can tell "missing" from "not allowed" from "disk trouble".
"""
import errno
from pathlib import Path
from typing import Union

from implementation.errors import ImplementationError


class FileSystemError(ImplementationError):
    """Base class for file access failures"""

    def __init__(self, message: str, code: str, path: str):
        super().__init__(message, code, details={"path": path})
        self.path = path


class PathNotFoundError(FileSystemError):
    def __init__(self, path: str):
        super().__init__(f"File {path} does not exist", "FILE_NOT_FOUND", path)


class PathPermissionError(FileSystemError):
    def __init__(self, path: str, reason: str = "permission denied"):
        super().__init__(f"Cannot access {path}: {reason}", "PERMISSION_DENIED", path)


class PathIOError(FileSystemError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"I/O error on {path}: {reason}", "IO_ERROR", path)


class FileSystem:
    """Reads, writes and deletes text files under a root directory"""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()

    def resolve(self, relative_path: str) -> Path:
        """Absolute path for a project-relative path, refusing escapes"""
        candidate = (self.root / relative_path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise PathPermissionError(relative_path, "path escapes the project root")
        return candidate

    def exists(self, relative_path: str) -> bool:
        return self.resolve(relative_path).exists()

    def read(self, relative_path: str) -> str:
        path = self.resolve(relative_path)
        try:
            # newline="" keeps line endings byte-for-byte
            with open(path, encoding="utf-8", newline="") as f:
                return f.read()
        except OSError as e:
            raise self._translate(relative_path, e) from e

    def write(self, relative_path: str, content: str) -> None:
        path = self.resolve(relative_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8", newline="") as f:
                f.write(content)
        except OSError as e:
            raise self._translate(relative_path, e) from e

    def delete(self, relative_path: str) -> None:
        path = self.resolve(relative_path)
        try:
            path.unlink()
        except OSError as e:
            raise self._translate(relative_path, e) from e

    @staticmethod
    def _translate(relative_path: str, error: OSError) -> FileSystemError:
        if isinstance(error, FileNotFoundError) or error.errno == errno.ENOENT:
            return PathNotFoundError(relative_path)
        if isinstance(error, PermissionError) or error.errno in (errno.EACCES, errno.EPERM):
            return PathPermissionError(relative_path)
        return PathIOError(relative_path, error.strerror or str(error))


__all__ = [
    "FileSystem",
    "FileSystemError",
    "PathNotFoundError",
    "PathPermissionError",
    "PathIOError",
]
