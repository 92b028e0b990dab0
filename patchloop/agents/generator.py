"""
Generator Agent

Turns a goal plus a context bundle into a Patch. Asks for surgical
search/replace blocks for edits and full content for new files.
Hardened against fenced, noisy and truncated JSON replies.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from patchloop.agents import AgentContext, BaseAgent, parse_json_response
from patchloop.gatherer import ContextBundle
from patchloop.generator import GenerationError, Patch
from patchloop.router import BudgetExceededError, RouterResponse


class GeneratorAgent(BaseAgent):
    role = "generator"

    system_prompt = """You are the change generator inside PATCHLOOP.

You receive a goal and excerpts of a repository. Produce the smallest
change that achieves the goal and keeps the project building.

You MUST respond with valid JSON only. No markdown wrapping.

Output schema:
{
  "summary": "One line describing the change",
  "commit_message": "imperative commit subject",
  "changes": [
    {
      "file": "path/relative/to/repo",
      "action": "modify|create|delete",
      "surgical_blocks": [
        {
          "search": "EXACT lines from the current file, with 2-3 lines of unchanged context",
          "replace": "the lines that replace them"
        }
      ],
      "content": "full file content, ONLY for action=create",
      "description": "what this change does"
    }
  ]
}

Rules:
1. Use `surgical_blocks` for modifications. Never output full content for an existing file.
2. `search` must match the file character-for-character, including indentation.
3. If <previous-diagnostics> is present, your last attempt failed. Fix exactly those errors.
4. If <previous-patch> is present, it was reverted. Do not assume it was applied.
5. Only touch files needed for the goal.
6. If tokens run out, prioritize completing the JSON structure.
"""

    def __init__(self, router, repo_path: Path, session_id: str = ""):
        super().__init__(router)
        self.repo_path = repo_path
        self.session_id = session_id

    async def generate(self, bundle: ContextBundle, goal: str) -> Patch:
        context = AgentContext(
            session_id=self.session_id,
            objective=goal,
            repo_path=str(self.repo_path),
            context_text=bundle.render(),
        )
        try:
            result = await self.arun(context, max_tokens=8192, response_format={"type": "json_object"})
        except BudgetExceededError as e:
            raise GenerationError(str(e)) from e
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"model call failed: {e}") from e
        return result["patch"]

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        user_content = f"""Goal: {context.objective}

Repository: {context.repo_path}

REPOSITORY CONTEXT:
{context.context_text or '(no context available)'}

Produce the JSON change set."""
        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> dict[str, Any]:
        raw = parse_json_response(response.content, "GENERATOR")
        if raw is None:
            raise GenerationError("Generator reply was not valid JSON")
        try:
            patch = Patch.model_validate(raw)
        except ValidationError as e:
            raise GenerationError(f"Generator reply did not match the patch schema: {e}") from e
        if not patch.changes:
            raise GenerationError("Generator returned no changes")

        logger.info(f"[GENERATOR] {len(patch.changes)} changes — {patch.summary[:60]}")
        return {
            "patch": patch,
            "_model": response.model,
            "_tokens": response.tokens_used,
        }
