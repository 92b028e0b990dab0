import asyncio
import json

import pytest

from conftest import git
from patchloop.event_bus import EventBus
from patchloop.executive import Executive
from patchloop.generator import FileChange, GenerationError, Patch, SurgicalBlock
from patchloop.indexer import content_hash
from patchloop.session import Session
from patchloop.verifier import has_errors

CHECK = (
    "if grep -q BROKEN src/util.py; then echo 'src/util.py:1:1: error: found BROKEN marker'; exit 1; fi; "
    "if grep -q TODO src/util.py; then echo 'src/util.py:2:1: note: leftover TODO'; fi; true"
)

GOOD_TEXT = "def clamp(value, low, high):\n    return min(max(value, low), high)\n"
GOOD = Patch(changes=[FileChange(file="src/util.py", content=GOOD_TEXT)], commit_message="tighten clamp")
BROKEN = Patch(changes=[FileChange(file="src/util.py", content="def clamp(:  # BROKEN\n")])
HINTED = Patch(changes=[FileChange(file="src/util.py", content=GOOD_TEXT + "# TODO: tidy\n")])
UNAPPLIABLE = Patch(changes=[
    FileChange(file="src/util.py", surgical_blocks=[SurgicalBlock(search="no such line", replace="x")]),
])


class ScriptedGenerator:
    """Replays canned replies: a Patch, an exception, or "hang"."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def generate(self, bundle, goal):
        self.calls.append((bundle, goal))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if reply == "hang":
            await asyncio.sleep(60)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def session(git_repo, config):
    config.verifier.command = CHECK
    config.planning.policy = "heuristic"
    s = Session(git_repo, config, session_id="test-session").open()
    yield s
    s.close()


def _run(session, generator, goal="tighten clamp", bus=None):
    executive = Executive(session, generator, bus=bus, quiet=True)
    return asyncio.run(executive.run(goal))


def _outcomes(report, step=0):
    return [a.outcome for a in report.steps[step].attempts]


def test_accepted_first_try(session, git_repo):
    report = _run(session, ScriptedGenerator(GOOD))
    assert report.status == "success"
    assert _outcomes(report) == ["accepted"]
    assert report.files == ["src/util.py"]
    assert (git_repo / "src" / "util.py").read_text() == GOOD_TEXT
    assert session.index.get("src/util.py").content_hash == content_hash(GOOD_TEXT.encode())
    assert session.checkpoints.head() == report.final_checkpoint


def test_retry_carries_diagnostics(session, git_repo):
    generator = ScriptedGenerator(BROKEN, GOOD)
    report = _run(session, generator)

    assert report.status == "success"
    assert _outcomes(report) == ["rejected", "accepted"]
    first, second = generator.calls
    assert "<previous-diagnostics>" not in first[0].paths
    assert "<previous-diagnostics>" in second[0].paths
    assert "found BROKEN marker" in second[0].render()
    assert len(report.diagnostic_sets) == 2


def test_exhausted_retries_restore_baseline(session, config):
    config.limits.max_tries = 2
    generator = ScriptedGenerator(BROKEN)
    report = _run(session, generator)

    assert report.status == "failure"
    assert len(generator.calls) == 2
    assert _outcomes(report) == ["rejected", "rejected"]
    assert report.steps[0].status == "aborted"
    cm = session.checkpoints
    assert cm.state_hash() == cm.tree_hash(report.baseline_checkpoint)


def test_generation_timeout_and_errors_count_as_attempts(session, config):
    config.limits.generation_timeout = 0.2
    generator = ScriptedGenerator("hang", GenerationError("bad json"), GOOD)
    report = _run(session, generator)

    assert report.status == "success"
    assert _outcomes(report) == ["generation-failed", "generation-failed", "accepted"]
    assert "timed out" in report.steps[0].attempts[0].error


def test_unappliable_patch_is_reverted(session, git_repo):
    original = (git_repo / "src" / "util.py").read_text()
    report = _run(session, ScriptedGenerator(UNAPPLIABLE, GOOD))
    assert _outcomes(report) == ["apply-failed", "accepted"]

    report = _run(session, ScriptedGenerator(UNAPPLIABLE))
    assert report.status == "failure"
    assert (git_repo / "src" / "util.py").read_text() == GOOD_TEXT != original


def test_hint_round_keeps_clean_fix(session, git_repo):
    generator = ScriptedGenerator(HINTED, GOOD)
    report = _run(session, generator)

    assert report.status == "success"
    assert _outcomes(report) == ["accepted", "hint-fix-kept"]
    assert [a.attempt_number for a in report.steps[0].attempts] == [1, 2]
    assert (git_repo / "src" / "util.py").read_text() == GOOD_TEXT


def test_hint_round_reverts_broken_fix(session, git_repo):
    report = _run(session, ScriptedGenerator(HINTED, BROKEN))
    assert report.status == "success"
    assert _outcomes(report) == ["accepted", "hint-fix-reverted"]
    assert "TODO" in (git_repo / "src" / "util.py").read_text()
    assert report.final_checkpoint == report.steps[0].attempts[0].checkpoint_id


def test_hint_round_disabled(session, config):
    config.verifier.auto_fix_hints = False
    generator = ScriptedGenerator(HINTED, GOOD)
    report = _run(session, generator)
    assert _outcomes(report) == ["accepted"]
    assert len(generator.calls) == 1


def test_multi_step_partial(session, git_repo):
    goal = "1. tighten clamp\n2. add a helper\n3. document it"
    generator = ScriptedGenerator(GOOD, BROKEN)
    report = _run(session, generator, goal=goal)

    assert report.status == "partial"
    assert [s.status for s in report.steps] == ["accepted", "aborted", "skipped"]
    assert len(generator.calls) == 1 + session.config.limits.max_tries
    assert "Current step (2/3): add a helper" in generator.calls[1][1]
    cm = session.checkpoints
    assert cm.state_hash() == cm.tree_hash(report.steps[0].accepted_checkpoint)
    assert (git_repo / "src" / "util.py").read_text() == GOOD_TEXT


def test_checkpoint_failure_aborts_session(session, git_repo):
    class HeadMover(ScriptedGenerator):
        async def generate(self, bundle, goal):
            git(git_repo, "commit", "--allow-empty", "-qm", "someone else")
            return await super().generate(bundle, goal)

    report = _run(session, HeadMover(GOOD))
    assert report.status == "failure"
    assert report.error.startswith("checkpoint:")
    assert report.steps[0].status == "aborted"


def test_events_history_and_report(session, git_repo):
    bus = EventBus()
    seen = []
    bus.subscribe(lambda e: seen.append(e.event_type))
    report = _run(session, ScriptedGenerator(BROKEN, GOOD), bus=bus)

    assert seen[0] == "phase.planning"
    assert seen[-1] == "session.finished"
    assert "phase.retrying" in seen
    assert seen.index("phase.accepted") > seen.index("phase.verifying")
    assert [e.event_type for e in report.events] == seen

    kinds = [e.kind for e in session.history.query_recent(50)]
    assert kinds[-1] == "command"
    assert kinds[0] == "result"
    assert session.history.touched_files() == ["src/util.py"]

    saved = json.loads((session.sessions_dir / "test-session.json").read_text())
    assert saved["status"] == "success"


def test_undecodable_target_reverts_partial_patch(session, git_repo):
    original = (git_repo / "src" / "util.py").read_text()
    (git_repo / "src" / "legacy.py").write_bytes("NAME = 'café'\n".encode("latin-1"))

    patch = Patch(changes=[
        FileChange(file="src/util.py", content=GOOD_TEXT),
        FileChange(file="src/legacy.py", surgical_blocks=[SurgicalBlock(search="NAME", replace="TITLE")]),
    ])
    report = _run(session, ScriptedGenerator(patch))

    assert report.status == "failure"
    assert set(_outcomes(report)) == {"apply-failed"}
    assert (git_repo / "src" / "util.py").read_text() == original


def test_single_accept_reindexes_only_changed_files(session, monkeypatch):
    updates = []
    original_update = session.index.update

    def spy(paths):
        if paths:
            updates.append(sorted(paths))
        return original_update(paths)

    monkeypatch.setattr(session.index, "update", spy)
    report = _run(session, ScriptedGenerator(GOOD))

    assert _outcomes(report) == ["accepted"]
    assert len(session.checkpoints.issued) == 2
    assert session.checkpoints.issued == [report.baseline_checkpoint, report.final_checkpoint]
    assert updates == [["src/util.py"]]


def test_every_rejected_attempt_keeps_its_diagnostics(session, config):
    config.limits.max_tries = 3
    report = _run(session, ScriptedGenerator(BROKEN))

    assert report.status == "failure"
    assert _outcomes(report) == ["rejected"] * 3
    assert len(report.diagnostic_sets) == 3
    assert all(has_errors(ds) for ds in report.diagnostic_sets)
    cm = session.checkpoints
    assert cm.state_hash() == cm.tree_hash(report.baseline_checkpoint)


def test_hint_round_is_the_only_attempt_past_max_tries(session, config):
    config.limits.max_tries = 2
    generator = ScriptedGenerator(BROKEN, HINTED, GOOD)
    report = _run(session, generator)

    assert report.status == "success"
    assert _outcomes(report) == ["rejected", "accepted", "hint-fix-kept"]
    numbers = [a.attempt_number for a in report.steps[0].attempts]
    assert numbers == [1, 2, 3]
    assert max(numbers) <= config.limits.max_tries + 1
    assert len(generator.calls) == 3
