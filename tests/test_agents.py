import asyncio

import pytest

from patchloop.agents import balance_json, extract_outer_json, parse_json_response
from patchloop.agents.generator import GeneratorAgent
from patchloop.agents.summarizer import SummarizerAgent
from patchloop.gatherer import ContextBundle
from patchloop.generator import GenerationError
from patchloop.router import BudgetExceededError, RouterResponse


class ScriptedRouter:
    def __init__(self, content="", error=None):
        self.content = content
        self.error = error
        self.calls = []

    def complete(self, role, messages, **kwargs):
        self.calls.append(role)
        return RouterResponse(content=self.content, model="fake/model")

    async def acomplete(self, role, messages, **kwargs):
        self.calls.append(role)
        if self.error:
            raise self.error
        return RouterResponse(content=self.content, model="fake/model")


def test_json_recovery():
    assert extract_outer_json('noise {"a": "}"} trailing') == '{"a": "}"}'
    assert balance_json('{"a": [1, 2') == '{"a": [1, 2]}'
    assert parse_json_response('Sure! {"ok": true} hope that helps', "T") == {"ok": True}
    assert parse_json_response('{"steps": [{"x": "trunc', "T") == {"steps": [{"x": "trunc"}]}
    assert parse_json_response("nothing here", "T") is None


def test_generator_returns_patch(tmp_path):
    router = ScriptedRouter(
        '{"summary": "tighten clamp", "changes": [{"file": "src/util.py", '
        '"surgical_blocks": [{"search": "a", "replace": "b"}]}]}'
    )
    agent = GeneratorAgent(router, tmp_path)
    patch = asyncio.run(agent.generate(ContextBundle(budget=100), "tighten clamp"))
    assert patch.files == ["src/util.py"]
    assert router.calls == ["generator"]


@pytest.mark.parametrize("content", ["not json", '{"changes": []}', '{"changes": [{"action": "modify"}]}'])
def test_generator_rejects_unusable_replies(tmp_path, content):
    agent = GeneratorAgent(ScriptedRouter(content), tmp_path)
    with pytest.raises(GenerationError):
        asyncio.run(agent.generate(ContextBundle(budget=100), "goal"))


def test_generator_budget_exhaustion_is_a_generation_error(tmp_path):
    agent = GeneratorAgent(ScriptedRouter(error=BudgetExceededError("spent")), tmp_path)
    with pytest.raises(GenerationError):
        asyncio.run(agent.generate(ContextBundle(budget=100), "goal"))


def test_summarizer():
    agent = SummarizerAgent(ScriptedRouter("  Parses   config files.\n"))
    assert agent.summarize("src/config.py", "def parse_config(): ...") == "Parses config files."
    with pytest.raises(ValueError):
        SummarizerAgent(ScriptedRouter("   ")).summarize("a.py", "x")
