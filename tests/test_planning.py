import asyncio

import pytest

from patchloop.agents.planner import PlannerAgent
from patchloop.indexer import RepoIndex
from patchloop.planning import HeuristicPolicy, SingleStepPolicy, make_policy, split_goal
from patchloop.router import RouterResponse


class ScriptedRouter:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error

    async def acomplete(self, role, messages, **kwargs):
        if self.error:
            raise self.error
        return RouterResponse(content=self.content, model="fake/model")


def test_split_numbered_and_bulleted():
    assert split_goal("1. add a flag\n2. document it") == ["add a flag", "document it"]
    assert split_goal("- add a flag\n- [ ] document it") == ["add a flag", "document it"]
    assert split_goal("1) add a flag 2) document it") == ["add a flag", "document it"]


def test_split_then():
    assert split_goal("Add a --verbose flag, then log every request") == [
        "Add a --verbose flag", "Log every request",
    ]
    assert split_goal("Rename the module and then update imports") == ["Rename the module", "Update imports"]


def test_plain_goal_is_one_step():
    assert split_goal("Fix the off-by-one in clamp") == ["Fix the off-by-one in clamp"]
    assert split_goal("   ") == []


def test_heuristic_caps_step_count():
    goal = "\n".join(f"{i}. step {i}" for i in range(1, 6))
    steps = asyncio.run(HeuristicPolicy(max_steps=3).plan(goal))
    assert steps == ["step 1", "step 2", "step 3; step 4; step 5"]


def test_make_policy():
    assert isinstance(make_policy("single"), SingleStepPolicy)
    with pytest.raises(ValueError):
        make_policy("model")
    with pytest.raises(ValueError):
        make_policy("astrology")


def test_model_policy_uses_plan(git_repo):
    index = RepoIndex(git_repo).build()
    router = ScriptedRouter(
        '```json\n{"steps": [{"step_number": 2, "description": "wire it up"},'
        ' {"step_number": 1, "description": "add helper"}]}\n```'
    )
    planner = PlannerAgent(router, index)
    assert asyncio.run(planner.plan("add and wire a helper")) == ["add helper", "wire it up"]


def test_model_policy_falls_back_to_single_step(git_repo):
    index = RepoIndex(git_repo).build()
    assert asyncio.run(PlannerAgent(ScriptedRouter(error=RuntimeError("down")), index).plan("goal")) == ["goal"]
    assert asyncio.run(PlannerAgent(ScriptedRouter("not json at all"), index).plan("goal")) == ["goal"]
