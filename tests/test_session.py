import asyncio

from conftest import git
from patchloop.executive import Executive
from patchloop.generator import FileChange, Patch
from patchloop.parallel import load_goal_file
from patchloop.session import Session, new_session_id
from patchloop.workspace import Workspace


class OnePatch:
    def __init__(self, patch):
        self.patch = patch

    async def generate(self, bundle, goal):
        return self.patch


def test_session_ids_are_unique():
    assert new_session_id() != new_session_id()


def test_isolated_session_leaves_main_checkout_untouched(git_repo, config):
    config.verifier.command = "true"
    original = (git_repo / "src" / "util.py").read_text()
    patch = Patch(changes=[FileChange(file="src/util.py", content="# rewritten\n")])

    with Session(git_repo, config, session_id="iso", isolated=True) as session:
        assert session.root != git_repo
        report = asyncio.run(Executive(session, OnePatch(patch), quiet=True).run("rewrite util"))
        assert report.status == "success"
        assert (session.root / "src" / "util.py").read_text() == "# rewritten\n"
        worktree = session.root

    assert not worktree.exists()
    assert (git_repo / "src" / "util.py").read_text() == original
    assert git(git_repo, "show", "patchloop/iso:src/util.py") == "# rewritten\n"
    # history lives with the main repository
    assert (git_repo / ".patchloop" / "history.jsonl").exists()


def test_workspace_recreate_resets_stale_state(git_repo):
    ws = Workspace(git_repo, "dup")
    ws.create()
    (ws.path / "scratch.txt").write_text("left behind")
    ws.cleanup()

    again = Workspace(git_repo, "dup")
    path = again.create()
    assert not (path / "scratch.txt").exists()
    again.cleanup(delete_branch=True)
    assert git(git_repo, "branch", "--list", "patchloop/dup").strip() == ""


def test_load_goal_file(tmp_path):
    yaml_file = tmp_path / "one.yaml"
    yaml_file.write_text('goal: "Add a flag"\n')
    text_file = tmp_path / "two.txt"
    text_file.write_text("  Remove dead code\n")
    assert load_goal_file(yaml_file) == "Add a flag"
    assert load_goal_file(text_file) == "Remove dead code"
