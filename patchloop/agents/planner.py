"""
Planner Agent

Breaks a goal into ordered, independently verifiable steps.
Never writes code. Only plans. Used by the "model" planning policy;
any failure degrades to a single step so a session can still run.
"""

from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from patchloop.agents import AgentContext, BaseAgent, parse_json_response
from patchloop.history import HistoryLog
from patchloop.indexer import RepoIndex
from patchloop.router import RouterResponse


# ---------------------------------------------------------------------------
# Strict Output Schemas
# ---------------------------------------------------------------------------

class PlanStep(BaseModel):
    step_number: int
    description: str = Field(min_length=1)
    files: list[str] = Field(default_factory=list)


class ExecutionPlan(BaseModel):
    steps: list[PlanStep] = Field(min_length=1)
    risk_notes: str = ""


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class PlannerAgent(BaseAgent):
    role = "planner"

    system_prompt = """You are the planning engine inside PATCHLOOP.

Split a development goal into the fewest ordered steps that can each be
built and verified on their own. Later steps may depend on earlier ones.

You MUST respond with a valid JSON object ONLY. No markdown, no commentary.

Output schema:
{
  "steps": [
    {"step_number": 1, "description": "What to change, concretely", "files": ["path/to/file"]}
  ],
  "risk_notes": "Anything ambiguous about the goal"
}

Rules:
- Prefer ONE step. Split only when an intermediate state must build on its own.
- Each description must stand alone: it is the only instruction the generator sees.
- DO NOT add steps to run tests, formatters, or CLI commands.
- Use the file map to name real paths.
"""

    def __init__(
        self,
        router,
        index: RepoIndex,
        history: HistoryLog | None = None,
        session_id: str = "",
        max_steps: int = 6,
    ):
        super().__init__(router)
        self.index = index
        self.history = history
        self.session_id = session_id
        self.max_steps = max_steps

    async def plan(self, goal: str) -> list[str]:
        context = AgentContext(
            session_id=self.session_id,
            objective=goal,
            repo_path=str(self.index.root),
            context_text=self.index.to_agent_context(),
            extra={"failures": self.history.build_failure_context() if self.history else ""},
        )
        try:
            result = await self.arun(context, response_format={"type": "json_object"})
        except Exception as e:
            logger.warning(f"[PLAN] Planner unavailable ({e}) — using single step")
            return [goal.strip()]

        steps = [s["description"].strip() for s in result.get("steps", [])][: self.max_steps]
        return steps or [goal.strip()]

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        failures = context.extra.get("failures") or ""
        user_content = f"""Goal: {context.objective}

Repository: {context.repo_path}

{context.context_text}

{failures}

Produce your plan as JSON."""
        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> dict[str, Any]:
        """Parse and validate the plan; an invalid plan is an empty one."""
        raw = parse_json_response(response.content, "PLAN")
        try:
            plan = ExecutionPlan.model_validate(raw or {}).model_dump()
        except ValidationError as e:
            logger.error(f"[PLAN] Failed to validate plan JSON: {e}")
            logger.debug(f"[PLAN] Raw response: {response.content[:500]}")
            plan = {"steps": [], "risk_notes": f"Validation failed: {e}", "parse_error": True}

        plan["steps"] = sorted(plan["steps"], key=lambda s: s["step_number"])
        plan["_model"] = response.model
        plan["_tokens"] = response.tokens_used

        logger.info(f"[PLAN] Plan ready — {len(plan['steps'])} steps")
        if plan.get("risk_notes"):
            logger.info(f"[PLAN] Notes: {plan['risk_notes'][:200]}")
        return plan
