"""
PATCHLOOP History Log

Append-only JSONL record of issued goals (command), planning notes
(thought) and outcomes (result). Entries are immutable once written.

Writes are flushed and fsync'd before `append` returns. A failed write
is logged and reported as False; callers carry on without history for
that step. Reads walk the file backwards in blocks, so recent entries
come back first without loading the whole log.
"""

from __future__ import annotations

import os
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

HistoryKind = Literal["command", "thought", "result"]

_BLOCK_SIZE = 8192


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    kind: HistoryKind
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def command(cls, goal: str, **extra: Any) -> "HistoryEntry":
        return cls(kind="command", payload={"goal": goal, **extra})

    @classmethod
    def thought(cls, text: str, **extra: Any) -> "HistoryEntry":
        return cls(kind="thought", payload={"text": text, **extra})

    @classmethod
    def result(cls, status: str, files: list[str] | None = None, **extra: Any) -> "HistoryEntry":
        return cls(kind="result", payload={"status": status, "files": files or [], **extra})


def _reverse_lines(path: Path) -> Iterator[bytes]:
    """Yield the lines of a file from last to first, reading in blocks."""
    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        position = f.tell()
        remainder = b""
        while position > 0:
            step = min(_BLOCK_SIZE, position)
            position -= step
            f.seek(position)
            block = f.read(step) + remainder
            lines = block.split(b"\n")
            remainder = lines.pop(0)
            for line in reversed(lines):
                if line.strip():
                    yield line
        if remainder.strip():
            yield remainder


class RecentEntries:
    """
    Lazy, finite, restartable view over the newest history entries.

    Every call to iter() re-reads the log from the end, so the view
    reflects appends made after it was created.
    """

    def __init__(self, path: Path, limit: int, kinds: frozenset[str] | None):
        self._path = path
        self._limit = limit
        self._kinds = kinds

    def __iter__(self) -> Iterator[HistoryEntry]:
        if self._limit <= 0 or not self._path.exists():
            return
        produced = 0
        try:
            for raw in _reverse_lines(self._path):
                try:
                    entry = HistoryEntry.model_validate_json(raw)
                except (ValidationError, ValueError):
                    logger.debug("[HISTORY] Skipping malformed history line")
                    continue
                if self._kinds is not None and entry.kind not in self._kinds:
                    continue
                yield entry
                produced += 1
                if produced >= self._limit:
                    return
        except OSError as e:
            logger.warning(f"[HISTORY] Could not read {self._path}: {e}")


class HistoryLog:
    """Append-only history for one repository checkout."""

    def __init__(self, root: Path, state_dir: str = ".patchloop"):
        self.root = root.resolve()
        self.path = self.root / state_dir / "history.jsonl"

    def append(self, entry: HistoryEntry) -> bool:
        """Durably append one entry. Returns False (and logs) on failure."""
        line = entry.model_dump_json() + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self._ends_torn():
                # terminate a partial line left by an interrupted write
                line = "\n" + line
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.warning(f"[HISTORY] Write failed, continuing without history: {e}")
            return False
        return True

    def _ends_torn(self) -> bool:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return False
        with open(self.path, "rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) != b"\n"

    def query_recent(self, n: int, kinds: Iterable[str] | None = None) -> RecentEntries:
        """Most-recent-first view of at most `n` entries, optionally filtered by kind."""
        return RecentEntries(self.path, n, frozenset(kinds) if kinds is not None else None)

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    def touched_files(self, limit: int = 20) -> list[str]:
        """Files named in recent results, most recent first, de-duplicated."""
        seen: dict[str, None] = {}
        for entry in self.query_recent(limit, kinds=["result"]):
            for path in entry.payload.get("files", []):
                if isinstance(path, str) and path not in seen:
                    seen[path] = None
        return list(seen)

    def build_failure_context(self, limit: int = 5) -> str:
        """Summarize recent failed steps for the planner."""
        failures = []
        for entry in self.query_recent(50, kinds=["result"]):
            if entry.payload.get("status") in ("aborted", "failure", "partial"):
                step = entry.payload.get("step", "?")
                reason = str(entry.payload.get("reason", ""))[:200]
                failures.append(f"- step {step!r}: {entry.payload['status']} {reason}".rstrip())
            if len(failures) >= limit:
                break
        if not failures:
            return ""
        return "RECENT FAILURES (avoid repeating these):\n" + "\n".join(failures)

    def get_stats(self) -> dict[str, Any]:
        """Aggregate session outcomes recorded in the log."""
        statuses: Counter[str] = Counter()
        goals = 0
        for entry in self.query_recent(1_000_000):
            if entry.kind == "command":
                goals += 1
            elif entry.kind == "result" and entry.payload.get("scope") == "session":
                statuses[entry.payload.get("status", "unknown")] += 1
        total = sum(statuses.values())
        return {
            "total_goals": goals,
            "total_sessions": total,
            "success_rate": round(100 * statuses.get("success", 0) / total, 1) if total else 0.0,
            "statuses": dict(statuses),
        }
