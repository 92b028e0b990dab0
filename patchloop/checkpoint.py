"""
PATCHLOOP Checkpoint Manager

Snapshots the checkout before verification and restores it when an
attempt is discarded. Checkpoints are git commits; each one is pinned
under refs/patchloop/<session>/ so it stays reachable (and revertible)
for the whole session even after a hard reset moves HEAD away from it.

The state directory (.patchloop/) is never committed and never cleaned.
Commit and revert on one checkout are serialized by a lock.
"""

from __future__ import annotations

import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

CheckpointId = str

_IN_PROGRESS_MARKERS = (
    "MERGE_HEAD", "CHERRY_PICK_HEAD", "REVERT_HEAD", "REBASE_HEAD",
    "rebase-merge", "rebase-apply",
)


class CheckpointError(Exception):
    """The state store is in an unexpected condition. Fatal to the session."""
    pass


@dataclass(frozen=True)
class FileChangeRecord:
    status: str  # A, M, D, R, ...
    path: str
    old_path: str | None = None


class GitBackend:
    """Minimal git primitive runner bound to one checkout."""

    def __init__(self, root: Path, timeout: float = 60):
        self.root = root
        self.timeout = timeout

    def run(self, *args: str, check: bool = True, env: dict[str, str] | None = None) -> str:
        cmd = ["git", *args]
        try:
            result = subprocess.run(
                cmd, cwd=self.root, capture_output=True, text=True,
                timeout=self.timeout, env={**os.environ, **env} if env else None,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise CheckpointError(f"git failed to run: {' '.join(cmd)}: {e}") from e
        if check and result.returncode != 0:
            raise CheckpointError(f"Git failed: {' '.join(cmd)}\n{result.stderr.strip()}")
        return result.stdout


class CheckpointManager:
    """Commit / revert / diff over one git checkout."""

    def __init__(
        self,
        root: Path,
        session_id: str,
        state_dir: str = ".patchloop",
        git: GitBackend | None = None,
    ):
        self.root = root.resolve()
        self.session_id = session_id
        self.state_dir = state_dir.strip("/")
        self.git = git or GitBackend(self.root)
        self._lock = threading.RLock()
        self._issued: list[CheckpointId] = []
        self._last: CheckpointId | None = None

    @property
    def _ref_prefix(self) -> str:
        return f"refs/patchloop/{self.session_id}"

    @property
    def issued(self) -> list[CheckpointId]:
        return list(self._issued)

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def baseline(self, message: str = "patchloop: baseline") -> CheckpointId:
        """Pin the starting state. Commits pre-existing edits if there are any."""
        with self._lock:
            self._ensure_state_dir_ignored()
            self._check_state()
            has_head = bool(self.git.run("rev-parse", "--verify", "-q", "HEAD", check=False).strip())
            if has_head and self.is_clean():
                sha = self.head()
                self._pin(sha)
                logger.info(f"[CHECKPOINT] Baseline at {sha[:10]}")
                return sha
            return self.commit(message)

    def commit(self, message: str) -> CheckpointId:
        """Snapshot the current checkout state and return its id."""
        with self._lock:
            self._ensure_state_dir_ignored()
            self._check_state()
            # the state dir is kept out through info/exclude
            self.git.run("add", "-A")
            self.git.run(*self._identity(), "commit", "--allow-empty", "--no-verify", "-q", "-m", message)
            sha = self.head()
            self._pin(sha)
            logger.info(f"[CHECKPOINT] Committed {sha[:10]}: {message[:60]}")
            return sha

    def revert(self, checkpoint_id: CheckpointId) -> None:
        """Restore the checkout to exactly the given checkpoint."""
        with self._lock:
            if checkpoint_id not in self._issued:
                raise CheckpointError(f"Unknown checkpoint {checkpoint_id!r} for this session")
            self.git.run("reset", "--hard", "-q", checkpoint_id)
            self.git.run("clean", "-fdq", "-e", self.state_dir, "-e", f"/{self.state_dir}/")
            self._last = checkpoint_id
            logger.info(f"[CHECKPOINT] Reverted to {checkpoint_id[:10]}")

    def diff(self, from_id: CheckpointId, to_id: CheckpointId) -> list[FileChangeRecord]:
        """File-level changes between two checkpoints, ordered by path."""
        out = self.git.run("diff", "--name-status", "-M", from_id, to_id)
        records = []
        for line in out.splitlines():
            parts = line.split("\t")
            if len(parts) < 2:
                continue
            status = parts[0][:1]
            if status in ("R", "C") and len(parts) == 3:
                records.append(FileChangeRecord(status=status, path=parts[2], old_path=parts[1]))
            else:
                records.append(FileChangeRecord(status=status, path=parts[1]))
        return sorted(records, key=lambda r: r.path)

    def show(self, checkpoint_id: CheckpointId, path: str) -> str:
        return self.git.run("show", f"{checkpoint_id}:{path}")

    def release(self) -> None:
        """Drop this session's pinned refs. Checkpoints are not revertible afterwards."""
        with self._lock:
            refs = self.git.run("for-each-ref", "--format=%(refname)", self._ref_prefix, check=False)
            for ref in refs.splitlines():
                self.git.run("update-ref", "-d", ref, check=False)
            self._issued.clear()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def head(self) -> CheckpointId:
        return self.git.run("rev-parse", "HEAD").strip()

    def is_clean(self) -> bool:
        return not self.git.run("status", "--porcelain").strip()

    def tree_hash(self, checkpoint_id: CheckpointId) -> str:
        return self.git.run("rev-parse", f"{checkpoint_id}^{{tree}}").strip()

    def state_hash(self) -> str:
        """Tree hash of the working state (tracked + untracked, state dir excluded)."""
        with self._lock:
            index_file = self.git.run("rev-parse", "--git-path", "patchloop-state-index").strip()
            index_path = Path(index_file)
            if not index_path.is_absolute():
                index_path = self.root / index_path
            env = {"GIT_INDEX_FILE": str(index_path)}
            try:
                self.git.run("read-tree", "HEAD", env=env)
                self._ensure_state_dir_ignored()
                self.git.run("add", "-A", env=env)
                return self.git.run("write-tree", env=env).strip()
            finally:
                index_path.unlink(missing_ok=True)

    def ensure_at(self, checkpoint_id: CheckpointId) -> None:
        """Make sure the checkout is exactly at `checkpoint_id`."""
        with self._lock:
            if self.head() != checkpoint_id or not self.is_clean():
                logger.debug(f"[CHECKPOINT] Checkout drifted, restoring {checkpoint_id[:10]}")
                self.revert(checkpoint_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pin(self, sha: CheckpointId) -> None:
        self.git.run("update-ref", f"{self._ref_prefix}/{len(self._issued):04d}", sha)
        self._issued.append(sha)
        self._last = sha

    def _check_state(self) -> None:
        git_dir = Path(self.git.run("rev-parse", "--absolute-git-dir").strip())
        for marker in _IN_PROGRESS_MARKERS:
            if (git_dir / marker).exists():
                raise CheckpointError(f"Repository has an operation in progress ({marker})")

        unmerged = self.git.run("diff", "--name-only", "--diff-filter=U").strip()
        if unmerged:
            raise CheckpointError(f"Repository has unmerged paths: {unmerged.splitlines()[:5]}")

        if self._last is not None:
            head = self.head()
            if head != self._last:
                raise CheckpointError(
                    f"HEAD moved outside the session ({head[:10]} != {self._last[:10]})"
                )

    def _ensure_state_dir_ignored(self) -> None:
        exclude = self.git.run("rev-parse", "--git-path", "info/exclude").strip()
        exclude_path = Path(exclude)
        if not exclude_path.is_absolute():
            exclude_path = self.root / exclude_path
        entry = f"/{self.state_dir}/"
        try:
            existing = exclude_path.read_text() if exclude_path.exists() else ""
            if entry not in existing.splitlines():
                exclude_path.parent.mkdir(parents=True, exist_ok=True)
                with open(exclude_path, "a") as f:
                    f.write(("" if existing.endswith("\n") or not existing else "\n") + entry + "\n")
        except OSError as e:
            logger.warning(f"[CHECKPOINT] Could not update {exclude_path}: {e}")

    def _identity(self) -> list[str]:
        name = self.git.run("config", "user.name", check=False).strip()
        email = self.git.run("config", "user.email", check=False).strip()
        args = []
        if not name:
            args += ["-c", "user.name=patchloop"]
        if not email:
            args += ["-c", "user.email=patchloop@localhost"]
        return args
