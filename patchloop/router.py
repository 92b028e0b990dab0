"""
PATCHLOOP Router — Vendor-Agnostic Model Access

Routes the model-backed collaborators (planner, generator, summarizer)
through LiteLLM so none of them know which vendor is behind a role.
Tracks token and dollar spend per session and retries transient
failures with exponential backoff.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from patchloop.config_loader import PatchloopConfig


class BudgetExceededError(Exception):
    """The session's token or dollar budget is spent."""
    pass


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class BudgetTracker:
    """Tracks token + dollar spend per session."""
    max_tokens: int = 150_000
    max_dollars: float = 10.0
    usage: UsageRecord = field(default_factory=UsageRecord)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.max_tokens - self.usage.total_tokens)

    @property
    def dollars_remaining(self) -> float:
        return max(0.0, self.max_dollars - self.usage.estimated_cost)

    @property
    def budget_exceeded(self) -> bool:
        return self.usage.total_tokens >= self.max_tokens or self.usage.estimated_cost >= self.max_dollars

    def record(self, response: Any) -> None:
        """Record usage from a LiteLLM response.

        Args:
            response (Any): The response object returned by LiteLLM.
        """
        usage = getattr(response, "usage", None)
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.usage.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            self.usage.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as e:
            # Unpriced models (local, custom endpoints) just don't count toward dollars.
            logger.debug(f"[ROUTER] No cost data: {e}")

        self.usage.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
            "tokens_remaining": self.tokens_remaining,
            "dollars_remaining": round(self.dollars_remaining, 4),
        }


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _supports_temperature(model: str) -> bool:
    """GPT-5 and the o-series reasoning models reject a custom temperature."""
    normalized = model.lower().replace("openai/", "")
    return not normalized.startswith(("gpt-5", "o1", "o3", "o4"))


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    response_format: dict | None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }
    if _supports_temperature(model):
        kwargs["temperature"] = temperature
    if response_format:
        kwargs["response_format"] = response_format
    return kwargs


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


_retry_policy = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=1, max=10),
    retry=retry_if_not_exception_type((BudgetExceededError, ValueError, asyncio.CancelledError)),
    reraise=True,
)


class Router:
    """
    Vendor-agnostic model router.

    Collaborators call `router.complete(role, messages)` (or `acomplete`
    from async code). The router resolves the model, enforces the
    budget, and returns structured output.
    """

    def __init__(self, config: PatchloopConfig):
        self.config = config
        self.budget = BudgetTracker(
            max_tokens=config.limits.max_tokens_per_session,
            max_dollars=config.limits.max_dollars_per_session,
        )
        self._role_model_map = {
            "planner": config.routing.planner,
            "generator": config.routing.generator,
            "summarizer": config.routing.summarizer,
        }

        litellm.suppress_debug_info = True

    def resolve_model(self, role: str) -> str:
        """Resolve a collaborator role to a model string.

        Raises:
            ValueError: If the role is not configured.
        """
        model = self._role_model_map.get(role)
        if not model:
            raise ValueError(f"Unknown role: {role}. Known: {list(self._role_model_map)}")
        return model

    def _prepare(self, role: str, messages: list[dict[str, str]], **options: Any) -> tuple[str, dict[str, Any]]:
        if self.budget.budget_exceeded:
            raise BudgetExceededError(f"Budget exceeded: {self.budget.summary()}")
        model = self.resolve_model(role)
        logger.debug(f"[ROUTER] {role} → {model} ({len(messages)} messages)")
        return model, _build_kwargs(model, messages, **options)

    def _finish(self, role: str, model: str, response: Any, start: float) -> RouterResponse:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        self.budget.record(response)
        content = response.choices[0].message.content or ""
        logger.debug(
            f"[ROUTER] {role} complete — "
            f"{self.budget.usage.total_tokens} tokens, "
            f"${self.budget.usage.estimated_cost:.4f}, "
            f"{elapsed_ms}ms"
        )
        return RouterResponse(
            content=content,
            model=model,
            tokens_used=getattr(getattr(response, "usage", None), "total_tokens", 0) or 0,
            cost=self.budget.usage.estimated_cost,
            latency_ms=elapsed_ms,
        )

    @_retry_policy
    def complete(
        self,
        role: str,
        messages: list[dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 4096,
        response_format: dict | None = None,
    ) -> RouterResponse:
        """Send a blocking completion request through LiteLLM.

        Args:
            role (str): Collaborator role (planner, generator, summarizer).
            messages (list[dict[str, str]]): Chat messages.
            temperature (float, optional): Dropped for models that reject it.
            max_tokens (int, optional): Max response tokens.
            response_format (dict | None, optional): Structured output hint.

        Raises:
            BudgetExceededError: If the session budget is spent.
        """
        model, kwargs = self._prepare(
            role, messages, temperature=temperature, max_tokens=max_tokens, response_format=response_format,
        )
        start = time.monotonic()
        response = litellm.completion(**kwargs)
        return self._finish(role, model, response, start)

    @_retry_policy
    async def acomplete(
        self,
        role: str,
        messages: list[dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 4096,
        response_format: dict | None = None,
    ) -> RouterResponse:
        """Async twin of `complete`. Cancelling the awaiting task aborts the request."""
        model, kwargs = self._prepare(
            role, messages, temperature=temperature, max_tokens=max_tokens, response_format=response_format,
        )
        start = time.monotonic()
        response = await litellm.acompletion(**kwargs)
        return self._finish(role, model, response, start)
