"""
PATCHLOOP Planning Policies

Decompose a goal into ordered steps. Steps run strictly in order;
later steps may build on code earlier steps produced.

  single    : the goal is one step
  heuristic : split enumerated, bulleted, or "then"-joined goals
  model     : ask the planner model (falls back to single on failure)
"""

from __future__ import annotations

import re
from typing import Protocol

from loguru import logger

_NUMBERED_LINE = re.compile(r"^\s*\d+[.)]\s+(?P<text>.+)$")
_BULLET_LINE = re.compile(r"^\s*[-*•]\s+(?:\[[ xX]\]\s+)?(?P<text>.+)$")
_INLINE_NUMBER = re.compile(r"(?:^|\s)\(?\d+[.)]\s+")
_THEN = re.compile(r"(?:[,;.]\s*(?:and\s+)?|\s+and\s+)then\s+", re.IGNORECASE)


class PlanningPolicy(Protocol):
    async def plan(self, goal: str) -> list[str]:
        ...


class SingleStepPolicy:
    """The whole goal is one step."""

    async def plan(self, goal: str) -> list[str]:
        return [goal.strip()]


def _cap(steps: list[str], max_steps: int) -> list[str]:
    if len(steps) <= max_steps:
        return steps
    logger.warning(f"[PLAN] {len(steps)} steps exceeds {max_steps} — merging the tail")
    return steps[: max_steps - 1] + ["; ".join(steps[max_steps - 1:])]


def split_goal(goal: str) -> list[str]:
    """Deterministic decomposition of a goal into step descriptions."""
    text = goal.strip()
    if not text:
        return []

    lines = text.splitlines()
    for pattern in (_NUMBERED_LINE, _BULLET_LINE):
        items = [m["text"].strip() for m in map(pattern.match, lines) if m]
        if len(items) >= 2:
            return items

    inline = [part.strip(" ;,") for part in _INLINE_NUMBER.split(text)]
    inline = [part for part in inline if part]
    if len(inline) >= 2 and _INLINE_NUMBER.match(text):
        return inline

    parts = [part.strip(" .;,") for part in _THEN.split(text)]
    parts = [part for part in parts if part]
    if len(parts) >= 2:
        parts[1:] = [p[0].upper() + p[1:] if p[0].islower() else p for p in parts[1:]]
        return parts

    return [text]


class HeuristicPolicy:
    """Split enumerated / bulleted / "then"-joined goals; otherwise one step."""

    def __init__(self, max_steps: int = 6):
        self.max_steps = max(1, max_steps)

    async def plan(self, goal: str) -> list[str]:
        steps = _cap(split_goal(goal), self.max_steps) or [goal.strip()]
        if len(steps) > 1:
            logger.info(f"[PLAN] Split goal into {len(steps)} steps")
        return steps


def make_policy(name: str, max_steps: int = 6, planner=None) -> PlanningPolicy:
    """Build the policy named in config. `planner` is required for "model"."""
    if name == "single":
        return SingleStepPolicy()
    if name == "heuristic":
        return HeuristicPolicy(max_steps)
    if name == "model":
        if planner is None:
            raise ValueError("planning policy 'model' needs a PlannerAgent")
        return planner
    raise ValueError(f"Unknown planning policy: {name!r}")
