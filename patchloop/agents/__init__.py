"""
PATCHLOOP Model-Backed Collaborators

Each agent is:
  - A system prompt
  - A structured input template
  - A constrained output schema

Agents are stateless between runs. State lives in the repo.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from patchloop.router import Router, RouterResponse


class AgentContext(BaseModel):
    """Shared context passed to every agent invocation."""
    session_id: str
    objective: str
    repo_path: str
    context_text: str = ""  # rendered ContextBundle, route map, ...
    previous_output: dict[str, Any] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)


class BaseAgent(ABC):
    """
    Base class for all PATCHLOOP agents.

    Subclasses define:
      - role: str — maps to router model
      - system_prompt: str — constraints + output contract
      - build_messages() — constructs the chat messages
      - parse_response() — extracts structured output
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."

    def __init__(self, router: Router):
        self.router = router

    def run(self, context: AgentContext, **kwargs) -> dict[str, Any]:
        """Execute the agent: build messages → call model → parse."""
        messages = self.build_messages(context)
        response = self.router.complete(role=self.role, messages=messages, **kwargs)
        return self.parse_response(response, context)

    async def arun(self, context: AgentContext, **kwargs) -> dict[str, Any]:
        """Same as run(), awaiting the model so the call can be cancelled."""
        messages = self.build_messages(context)
        response = await self.router.acomplete(role=self.role, messages=messages, **kwargs)
        return self.parse_response(response, context)

    @abstractmethod
    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        """Build the message list for the LLM call."""
        ...

    @abstractmethod
    def parse_response(self, response: RouterResponse, context: AgentContext) -> dict[str, Any]:
        """Parse the LLM response into structured output."""
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}


# ---------------------------------------------------------------------------
# JSON Recovery
# ---------------------------------------------------------------------------

def strip_markdown(content: str) -> str:
    """Remove ``` or ```json wrappers."""
    content = content.strip()
    if content.startswith("```"):
        content = re.sub(r"^```(?:json)?\s*|\s*```$", "", content)
    return content.strip()


def extract_outer_json(text: str) -> str | None:
    """First top-level JSON object, found by brace tracking outside strings."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def balance_json(text: str) -> str | None:
    """Close an unterminated string, then open brackets and braces, in a truncated response."""
    repaired = text
    if repaired.count('"') % 2 != 0:
        repaired += '"'

    stack = []
    in_string = False
    escaped = False
    for ch in repaired:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    repaired += "".join(reversed(stack))
    return repaired if repaired != text else None


def parse_json_response(content: str, tag: str) -> dict[str, Any] | None:
    """
    Parse a model's JSON reply, recovering from fences, surrounding
    noise and truncation. Returns None when nothing parses.
    """
    content = strip_markdown(content)
    candidates = [content, extract_outer_json(content), balance_json(content)]
    for i, candidate in enumerate(candidates):
        if not candidate:
            continue
        try:
            result = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(result, dict):
            if i:
                logger.warning(f"[{tag}] Recovered malformed JSON response")
            return result
    logger.error(f"[{tag}] JSON recovery failed")
    return None
