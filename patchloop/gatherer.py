"""
PATCHLOOP Context Gatherer

Assembles the bundle of file excerpts handed to the generator for one
attempt. Selection is deterministic: the same goal, index, history and
budget always yield the same bundle.

Order of inclusion:
  1. the pinned manifest (pyproject.toml, package.json, Cargo.toml, ...)
  2. debug context from the previous attempt (diagnostics, patch)
  3. index entries ranked by keyword relevance, recency and symbol
     definitions, added greedily until the budget runs out
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import BaseModel, Field

from patchloop.config_loader import ContextConfig
from patchloop.history import HistoryLog
from patchloop.indexer import RepoIndex

if TYPE_CHECKING:
    from patchloop.generator import Patch
    from patchloop.verifier import Diagnostic

TRUNCATION_MARKER = "\n... [truncated]"

RECENCY_WEIGHT = 4.0
RECENCY_DECAY = 0.8
DEFINITION_WEIGHT = 6.0

_BACKTICKED = re.compile(r"`([A-Za-z_][A-Za-z0-9_]*)`")
_SNAKE = re.compile(r"\b[a-z][a-z0-9]*(?:_[a-z0-9]+)+\b")
_CAMEL = re.compile(r"\b[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]*)+\b|\b[a-z]+(?:[A-Z][a-z0-9]*)+\b")


class ContextItem(BaseModel):
    path: str
    excerpt: str
    reason: str

    def render(self) -> str:
        return f"### {self.path} ({self.reason})\n{self.excerpt}\n"

    @property
    def size(self) -> int:
        return len(self.render())


class ContextBundle(BaseModel):
    items: list[ContextItem] = Field(default_factory=list)
    budget: int
    under_budget: bool = False

    @property
    def size(self) -> int:
        return sum(item.size for item in self.items)

    @property
    def paths(self) -> list[str]:
        return [item.path for item in self.items]

    def render(self) -> str:
        return "".join(item.render() for item in self.items)

    def fingerprint(self) -> str:
        return hashlib.sha256(self.render().encode()).hexdigest()


@dataclass
class DebugContext:
    """What went wrong on the previous attempt of the same step."""
    diagnostics: list["Diagnostic"] = field(default_factory=list)
    patch: "Patch | None" = None
    note: str = ""


# ---------------------------------------------------------------------------
# Goal analysis
# ---------------------------------------------------------------------------

def goal_symbols(goal: str) -> list[str]:
    """Identifiers the goal refers to: backticked names, snake_case, CamelCase."""
    found: dict[str, None] = {}
    for pattern in (_BACKTICKED, _SNAKE, _CAMEL):
        for match in pattern.finditer(goal):
            name = match.group(1) if match.groups() else match.group(0)
            found.setdefault(name, None)
    return sorted(found)


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

@dataclass
class _Candidate:
    path: str
    score: float = 0.0
    reasons: list[str] = field(default_factory=list)


def rank_candidates(
    goal: str,
    index: RepoIndex,
    touched: list[str],
    limit: int,
) -> list[_Candidate]:
    candidates: dict[str, _Candidate] = {}

    def bump(path: str, amount: float, reason: str) -> None:
        entry = index.get(path)
        if entry is None or entry.stale:
            return
        c = candidates.setdefault(path, _Candidate(path))
        c.score += amount
        if reason not in c.reasons:
            c.reasons.append(reason)

    for hit in index.lookup(goal, mode="keyword"):
        bump(hit.entry.path, hit.score, "keyword: " + ", ".join(hit.matched[:4]))

    for position, path in enumerate(touched):
        bump(path, RECENCY_WEIGHT * (RECENCY_DECAY ** position), "recently touched")

    for symbol in goal_symbols(goal):
        for path in sorted({h.entry.path for h in index.lookup(symbol, mode="definition")}):
            bump(path, DEFINITION_WEIGHT, f"defines {symbol}")

    ranked = sorted(candidates.values(), key=lambda c: (-c.score, c.path))
    return ranked[:limit]


# ---------------------------------------------------------------------------
# Budget fitting
# ---------------------------------------------------------------------------

def _fit(path: str, text: str, reason: str, remaining: int, settings: ContextConfig) -> ContextItem | None:
    """Item for `text` truncated to fit `remaining`, or None if too little would be left."""
    if len(text) > settings.max_excerpt_chars:
        text = text[: settings.max_excerpt_chars] + TRUNCATION_MARKER
    item = ContextItem(path=path, excerpt=text, reason=reason)
    if item.size <= remaining:
        return item

    overhead = ContextItem(path=path, excerpt="", reason=reason).size + len(TRUNCATION_MARKER)
    available = remaining - overhead
    if available < settings.min_excerpt_chars:
        return None
    return ContextItem(path=path, excerpt=text[:available] + TRUNCATION_MARKER, reason=reason)


def _read(index: RepoIndex, path: str) -> str | None:
    try:
        return (index.root / path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning(f"[GATHER] Skipping unreadable {path}: {e}")
        return None


def _manifest(index: RepoIndex, settings: ContextConfig) -> str | None:
    for name in settings.manifest_files:
        entry = index.get(name)
        if entry is not None and not entry.stale:
            return name
    return None


def _debug_items(debug: DebugContext) -> list[tuple[str, str, str]]:
    items = []
    if debug.diagnostics:
        from patchloop.verifier import Severity

        ordered = sorted(debug.diagnostics, key=lambda d: d.severity is not Severity.ERROR)
        text = "\n".join(d.render() for d in ordered)
        if debug.note:
            text = f"{debug.note}\n{text}"
        items.append(("<previous-diagnostics>", text, "diagnostics from the failed attempt"))
    elif debug.note:
        items.append(("<previous-diagnostics>", debug.note, "why the last attempt failed"))
    if debug.patch is not None and debug.patch.changes:
        items.append(("<previous-patch>", debug.patch.render(), "patch from the failed attempt"))
    return items


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def gather(
    goal: str,
    index: RepoIndex,
    history: HistoryLog,
    budget: int,
    debug: DebugContext | None = None,
    *,
    settings: ContextConfig | None = None,
) -> ContextBundle:
    """Build the context bundle for one attempt."""
    settings = settings or ContextConfig()
    bundle = ContextBundle(budget=budget)
    remaining = budget

    manifest = _manifest(index, settings)
    if manifest is not None:
        text = _read(index, manifest)
        if text is not None:
            item = ContextItem(path=manifest, excerpt=text, reason="project manifest")
            if item.size > budget:
                logger.warning(
                    f"[GATHER] Manifest {manifest} ({item.size} chars) exceeds budget {budget} — "
                    f"returning manifest only"
                )
                return ContextBundle(items=[item], budget=budget, under_budget=True)
            bundle.items.append(item)
            remaining -= item.size

    if debug is not None:
        for path, text, reason in _debug_items(debug):
            item = _fit(path, text, reason, remaining, settings)
            if item is None:
                logger.debug(f"[GATHER] No room for {path}")
                continue
            bundle.items.append(item)
            remaining -= item.size

    touched = history.touched_files(settings.recent_history)
    included = set(bundle.paths)
    for candidate in rank_candidates(goal, index, touched, settings.max_candidates):
        if remaining < settings.min_excerpt_chars:
            break
        if candidate.path in included:
            continue
        text = _read(index, candidate.path)
        if text is None:
            continue
        item = _fit(candidate.path, text, "; ".join(candidate.reasons), remaining, settings)
        if item is None:
            continue
        bundle.items.append(item)
        included.add(candidate.path)
        remaining -= item.size

    logger.info(
        f"[GATHER] {len(bundle.items)} items, {bundle.size}/{budget} chars"
        + (" (with debug context)" if debug else "")
    )
    return bundle
