"""
PATCHLOOP Change Generator boundary.

The generator is an external collaborator: given a context bundle and a
goal it returns a Patch or raises GenerationError. The Executive makes no
assumption about determinism or latency and always runs it through
`run_cancellable` with a timeout.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal, Protocol

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from patchloop.gatherer import ContextBundle


class GenerationError(Exception):
    """The generator failed, timed out, or produced nothing usable."""
    pass


class SurgicalBlock(BaseModel):
    search: str
    replace: str


class FileChange(BaseModel):
    file: str
    action: Literal["create", "modify", "delete"] = "modify"
    content: str | None = None
    surgical_blocks: list[SurgicalBlock] = Field(default_factory=list)
    patch: str | None = None
    description: str = ""


class Patch(BaseModel):
    """A proposed change set for one attempt."""
    changes: list[FileChange] = Field(default_factory=list)
    summary: str = ""
    commit_message: str = ""

    @property
    def files(self) -> list[str]:
        return sorted({c.file for c in self.changes})

    def render(self, max_chars: int | None = None) -> str:
        """Plain-text form, used as debug context and in history."""
        parts = []
        if self.summary:
            parts.append(f"Summary: {self.summary}")
        for change in self.changes:
            parts.append(f"== {change.action} {change.file}")
            if change.surgical_blocks:
                for block in change.surgical_blocks:
                    parts.append(f"<<<<<<< SEARCH\n{block.search}\n=======\n{block.replace}\n>>>>>>> REPLACE")
            elif change.patch:
                parts.append(change.patch)
            elif change.content is not None:
                parts.append(change.content)
        text = "\n".join(parts)
        if max_chars is not None and len(text) > max_chars:
            text = text[:max_chars]
        return text


class ChangeGenerator(Protocol):
    """Produces a patch for a goal from a context bundle."""

    async def generate(self, bundle: "ContextBundle", goal: str) -> Patch:
        ...
