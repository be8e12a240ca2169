"""
Version Control Tool - Optional git safety net

Used for the pre-execution snapshot and the optional post-completion
commit. Both calls are best-effort: they report failure through their
return value and never raise.

snapshot() is non-destructive: `git stash create` builds a stash commit
from the working tree without touching it, and `git stash store` records
it under the label so it shows up in `git stash list`. Untracked files
are not part of the snapshot; the RollbackManager covers files the engine
creates.
"""
import logging
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel

import config
from implementation.errors import ImplementationError
from implementation.tools.process_runner import ProcessRunner

logger = logging.getLogger(__name__)


class CommitResult(BaseModel):
    """Outcome of a commit attempt"""
    success: bool
    commit_sha: Optional[str] = None
    output: Optional[str] = None


class VersionControl:
    """Interface used by the Engine"""

    async def snapshot(self, label: str) -> bool:
        raise NotImplementedError

    async def commit(self, message: str) -> CommitResult:
        raise NotImplementedError


class GitVersionControl(VersionControl):
    """VersionControl backed by the git CLI"""

    def __init__(
        self,
        project_path: Union[str, Path],
        runner: Optional[ProcessRunner] = None,
        timeout_ms: int = config.GIT_TIMEOUT_MS,
    ):
        self.project_path = Path(project_path)
        self.runner = runner or ProcessRunner()
        self.timeout_ms = timeout_ms

    async def snapshot(self, label: str) -> bool:
        try:
            created = await self._git("stash", "create", label)
            if not created.succeeded:
                logger.warning(f"[Git] stash create failed: {created.stderr.strip()}")
                return False

            sha = created.stdout.strip()
            if not sha:
                # Clean working tree: nothing to protect
                logger.info("[Git] No local changes to snapshot")
                return True

            stored = await self._git("stash", "store", "-m", label, sha)
            if not stored.succeeded:
                logger.warning(f"[Git] stash store failed: {stored.stderr.strip()}")
                return False

            logger.info(f"[Git] Snapshot {sha[:8]} stored as '{label}'")
            return True
        except ImplementationError as e:
            logger.warning(f"[Git] Failed to create snapshot: {e}")
            return False

    async def commit(self, message: str) -> CommitResult:
        try:
            # Backups of this and earlier runs stay out of the commit
            added = await self._git("add", "-A", "--", ".", f":(exclude){config.BACKUP_ROOT_NAME}")
            if not added.succeeded:
                return CommitResult(success=False, output=added.stderr or added.stdout)

            committed = await self._git("commit", "-m", message)
            if not committed.succeeded:
                return CommitResult(success=False, output=committed.stderr or committed.stdout)

            head = await self._git("rev-parse", "HEAD")
            sha = head.stdout.strip() if head.succeeded else None
            logger.info(f"[Git] Created commit {sha[:8] if sha else '?'}")
            return CommitResult(success=True, commit_sha=sha, output=committed.stdout)
        except ImplementationError as e:
            logger.warning(f"[Git] Failed to create commit: {e}")
            return CommitResult(success=False, output=str(e))

    async def _git(self, *args: str):
        return await self.runner.run(["git", *args], cwd=self.project_path, timeout_ms=self.timeout_ms)


__all__ = ["VersionControl", "GitVersionControl", "CommitResult"]
