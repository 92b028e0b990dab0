"""
PATCHLOOP Workspace Isolation

Uses `git worktree` so that each concurrent session owns a private
checkout. Checkpoints, resets and cleans in one session can never touch
another session's files. The session's results stay on the branch
`patchloop/<session-id>` after the worktree is removed.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from loguru import logger


class WorkspaceError(Exception):
    pass


class Workspace:
    """Manages an isolated git worktree for a single session."""

    def __init__(self, repo_path: Path, session_id: str, worktree_base: str = ".patchloop/worktrees"):
        self.repo_path = repo_path.resolve()
        self.session_id = session_id
        self.branch_name = f"patchloop/{session_id}"
        self.worktree_path = self.repo_path / worktree_base / session_id
        self._created = False

    @property
    def path(self) -> Path:
        return self.worktree_path

    @property
    def created(self) -> bool:
        return self._created

    def create(self, base_branch: str = "HEAD") -> Path:
        """
        Create the worktree on a fresh session branch.
        Stale state from a crashed run with the same id is reset first.
        """
        if self.worktree_path.exists() or self._branch_exists(self.branch_name):
            logger.warning(f"[WORKSPACE] Found stale state for {self.session_id}. Resetting...")
            self.cleanup(delete_branch=True)

        self.worktree_path.parent.mkdir(parents=True, exist_ok=True)
        # -B creates or resets the branch to the start-point
        self._git("worktree", "add", "-q", "-B", self.branch_name, str(self.worktree_path), base_branch)
        self._created = True
        logger.info(f"[WORKSPACE] Isolated checkout created: {self.worktree_path}")
        return self.worktree_path

    def cleanup(self, delete_branch: bool = False) -> None:
        """Remove the worktree; keep the session branch unless asked."""
        self._git("worktree", "remove", "--force", str(self.worktree_path), check=False)
        if self.worktree_path.exists():
            shutil.rmtree(self.worktree_path, ignore_errors=True)
        if delete_branch:
            self._git("branch", "-D", self.branch_name, check=False)
        self._git("worktree", "prune", check=False)
        self._created = False
        logger.info(f"[WORKSPACE] Cleanup complete: {self.session_id}")

    def _branch_exists(self, name: str) -> bool:
        return bool(self._git("branch", "--list", name, check=False).strip())

    def _git(self, *args: str, check: bool = True) -> str:
        return self._run_cmd(["git", *args], cwd=self.repo_path, check=check)

    @staticmethod
    def _run_cmd(cmd: list[str], cwd: Path, check: bool = True) -> str:
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise WorkspaceError(f"Git failed to run: {' '.join(cmd)}: {e}") from e
        if check and result.returncode != 0:
            raise WorkspaceError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
        return result.stdout
