"""
PATCHLOOP Session

One goal session and everything it owns: the checkout it works in,
the repository index, the history log, the checkpoint manager and the
model router. Nothing here is global; two sessions never share an
index or a checkpoint manager.

With `workspace.isolated` the session works in its own git worktree
on the branch `patchloop/<session-id>`, so several sessions can run
against one repository at the same time.
"""

from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from patchloop.checkpoint import CheckpointManager
from patchloop.config_loader import PatchloopConfig
from patchloop.history import HistoryLog
from patchloop.indexer import RepoIndex, Summarizer
from patchloop.workspace import Workspace

if TYPE_CHECKING:
    from patchloop.executive import SessionReport
    from patchloop.router import Router


def new_session_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


class Session:
    """Owns the per-session collaborators. Use as a context manager."""

    def __init__(
        self,
        repo_path: Path,
        config: PatchloopConfig,
        session_id: str | None = None,
        isolated: bool | None = None,
        summarizer: Summarizer | None = None,
    ):
        self.repo_path = repo_path.resolve()
        self.config = config
        self.id = session_id or new_session_id()
        self.state_dir = config.index.state_dir
        self.isolated = config.workspace.isolated if isolated is None else isolated
        self._summarizer = summarizer
        self._router: Router | None = None

        self.workspace: Workspace | None = None
        self.root = self.repo_path
        self.index: RepoIndex | None = None
        self.history = HistoryLog(self.repo_path, self.state_dir)
        self.checkpoints: CheckpointManager | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "Session":
        if self.isolated:
            self.workspace = Workspace(self.repo_path, self.id, self.config.workspace.worktree_dir)
            self.root = self.workspace.create(self.config.workspace.base_branch)

        self.index = RepoIndex(
            self.root,
            state_dir=self.state_dir,
            summarizer=self._summarizer or self._default_summarizer(),
            ignore_dirs=self.config.index.ignore_dirs,
            max_file_bytes=self.config.index.max_file_bytes,
        ).open()
        self.checkpoints = CheckpointManager(self.root, self.id, state_dir=self.state_dir)
        logger.info(f"[SESSION] {self.id} open at {self.root}")
        return self

    def close(self) -> None:
        if self.checkpoints is not None:
            self.checkpoints.release()
        if self.workspace is not None and self.workspace.created:
            self.workspace.cleanup(delete_branch=False)
        logger.info(f"[SESSION] {self.id} closed")

    def __enter__(self) -> "Session":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    @property
    def router(self) -> "Router":
        if self._router is None:
            from patchloop.router import Router

            self._router = Router(self.config)
        return self._router

    def budget_summary(self) -> dict:
        """Model spend so far; empty when no model was called."""
        return self._router.budget.summary() if self._router is not None else {}

    def _default_summarizer(self) -> Summarizer | None:
        if self.config.index.summarizer == "model":
            from patchloop.agents.summarizer import SummarizerAgent

            return SummarizerAgent(self.router)
        return None

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    @property
    def sessions_dir(self) -> Path:
        return self.repo_path / self.state_dir / "sessions"

    def save_report(self, report: "SessionReport") -> Path | None:
        """Persist the report as sessions/<id>.json. Failure is logged, not raised."""
        path = self.sessions_dir / f"{self.id}.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(report.model_dump_json(indent=2))
            os.replace(tmp, path)
        except OSError as e:
            logger.warning(f"[SESSION] Could not save report: {e}")
            return None
        return path
