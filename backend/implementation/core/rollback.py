"""
Rollback Manager - Reversible file mutations for one run

Records every FileChange the executor makes, keeps pre-mutation
snapshots under <project>/.ai-buddy/backups/<task_id>/ and can replay
the log backwards to restore the project.
"""
import logging
import shutil
from pathlib import Path
from typing import List, Optional, Union

import config
from implementation.errors import RollbackError
from implementation.schemas import ChangeType, FileChange
from implementation.tools.file_system import FileSystem, PathNotFoundError

logger = logging.getLogger(__name__)


def backup_file_name(path: str) -> str:
    """Flat file name for a project-relative path"""
    return path.replace("\\", "/").replace("/", "_")


class RollbackManager:
    """
    Change log plus backup directory scoped to (project_path, task_id)

    The log is append-only while a run executes and is cleared only by a
    fully successful rollback_all().
    """

    def __init__(
        self,
        project_path: Union[str, Path],
        task_id: str,
        file_system: Optional[FileSystem] = None,
    ):
        self.project_path = Path(project_path)
        self.task_id = task_id
        self.file_system = file_system or FileSystem(self.project_path)
        self.backup_dir = self.project_path / config.BACKUP_ROOT_NAME / "backups" / task_id
        self._changes: List[FileChange] = []

    def initialize(self) -> None:
        """Create the backup directory"""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"[Rollback] Backup directory ready: {self.backup_dir}")

    def record_change(self, change: FileChange) -> None:
        """Append a change; modify/delete snapshots are also written to the backup directory"""
        self._changes.append(change)

        if change.change_type != ChangeType.CREATE and change.original_content is not None:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            backup_path = self.backup_dir / backup_file_name(change.path)
            backup_path.write_text(change.original_content, encoding="utf-8", newline="")

        logger.debug(f"[Rollback] Recorded {change.change_type.value} of {change.path}")

    def get_changes(self) -> List[FileChange]:
        return [change.model_copy() for change in self._changes]

    def has_changes(self) -> bool:
        return bool(self._changes)

    def rollback_all(self) -> None:
        """
        Reverse every recorded change, newest first

        Raises:
            RollbackError: If some changes could not be reversed. The log
                is left intact in that case.
        """
        if not self._changes:
            logger.info("[Rollback] Nothing to roll back")
            return

        logger.info(f"[Rollback] Rolling back {len(self._changes)} changes")
        failed: List[FileChange] = []

        for change in reversed(self._changes):
            try:
                self._rollback_change(change)
            except Exception as e:
                logger.error(f"[Rollback] Failed to roll back {change.path}: {e}")
                failed.append(change)

        if failed:
            raise RollbackError(f"Failed to rollback {len(failed)} changes", failed)

        self._changes = []
        logger.info("[Rollback] ✓ All changes rolled back")

    def _rollback_change(self, change: FileChange) -> None:
        if change.change_type == ChangeType.CREATE:
            try:
                self.file_system.delete(change.path)
            except PathNotFoundError:
                pass
        elif change.change_type in (ChangeType.MODIFY, ChangeType.DELETE):
            # write() recreates parent directories for deleted files
            if change.original_content is not None:
                self.file_system.write(change.path, change.original_content)

    def create_snapshot(self, path: str) -> Optional[str]:
        """Current content of a project file, or None if it does not exist"""
        try:
            return self.file_system.read(path)
        except PathNotFoundError:
            return None

    def cleanup(self) -> None:
        """Remove the backup directory; failures are only logged"""
        try:
            shutil.rmtree(self.backup_dir)
            logger.debug(f"[Rollback] Removed {self.backup_dir}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"[Rollback] Failed to clean up backup directory: {e}")

    def export_changes(self) -> List[dict]:
        """Serializable copy of the change log"""
        return [change.model_dump(mode="json") for change in self._changes]

    def import_changes(self, changes: List[Union[FileChange, dict]]) -> None:
        """Replace the change log, e.g. with one restored from export_changes()"""
        self._changes = [
            change.model_copy() if isinstance(change, FileChange) else FileChange.model_validate(change)
            for change in changes
        ]


__all__ = ["RollbackManager", "backup_file_name"]
