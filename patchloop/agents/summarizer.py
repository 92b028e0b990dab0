"""
Summarizer Agent

Model-backed Summarizer for the repository index. One short sentence
per file. Any failure propagates; the index falls back to the symbol
summary for that file.
"""

from __future__ import annotations

from typing import Any

from patchloop.agents import AgentContext, BaseAgent
from patchloop.router import RouterResponse

MAX_INPUT_CHARS = 8_000


class SummarizerAgent(BaseAgent):
    role = "summarizer"

    system_prompt = """You summarize source files for a code search index.
Reply with ONE plain sentence (max 30 words) naming what the file defines
and what it is for. No markdown, no preamble."""

    def summarize(self, path: str, content: str) -> str:
        context = AgentContext(
            session_id="index",
            objective=f"Summarize {path}",
            repo_path="",
            context_text=content[:MAX_INPUT_CHARS],
            extra={"path": path},
        )
        return self.run(context, max_tokens=120, temperature=0.0)["summary"]

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        return [
            self._system_msg(),
            self._user_msg(f"File: {context.extra.get('path', '?')}\n\n{context.context_text}"),
        ]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> dict[str, Any]:
        summary = " ".join(response.content.split())
        if not summary:
            raise ValueError(f"Empty summary for {context.extra.get('path', '?')}")
        return {"summary": summary[:300], "_model": response.model}
