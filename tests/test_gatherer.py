from patchloop.config_loader import ContextConfig
from patchloop.gatherer import TRUNCATION_MARKER, DebugContext, gather, goal_symbols
from patchloop.generator import FileChange, Patch
from patchloop.history import HistoryEntry, HistoryLog
from patchloop.indexer import RepoIndex
from patchloop.verifier import Diagnostic, Severity


def _setup(repo):
    return RepoIndex(repo).build(), HistoryLog(repo)


def test_goal_symbols():
    assert goal_symbols("Rename `parse_config` in AppServer and fix retry_count") == [
        "AppServer", "parse_config", "retry_count",
    ]


def test_manifest_first_then_relevant_files(git_repo):
    index, history = _setup(git_repo)
    bundle = gather("make parse_config accept a default", index, history, 10_000)
    assert bundle.paths[0] == "pyproject.toml"
    assert bundle.paths[1] == "src/config.py"
    assert bundle.size <= bundle.budget


def test_deterministic(git_repo):
    index, history = _setup(git_repo)
    first = gather("update the App class", index, history, 2_000)
    second = gather("update the App class", index, history, 2_000)
    assert first.fingerprint() == second.fingerprint()


def test_budget_is_never_exceeded(git_repo):
    (git_repo / "src" / "big_config.py").write_text("def config_value():\n" + "    x = 1\n" * 2000)
    index, history = _setup(git_repo)
    settings = ContextConfig(min_excerpt_chars=50)
    for budget in (300, 700, 1500, 5000):
        bundle = gather("config", index, history, budget, settings=settings)
        assert bundle.size <= budget
        assert not bundle.under_budget


def test_large_files_are_truncated_with_marker(git_repo):
    (git_repo / "src" / "big_config.py").write_text("def config_value():\n" + "    x = 1\n" * 2000)
    index, history = _setup(git_repo)
    bundle = gather("big config", index, history, 3_000)
    big = next(item for item in bundle.items if item.path == "src/big_config.py")
    assert big.excerpt.endswith(TRUNCATION_MARKER)


def test_oversized_manifest_returns_manifest_only(git_repo):
    (git_repo / "pyproject.toml").write_text("# padding\n" * 500)
    index, history = _setup(git_repo)
    bundle = gather("config", index, history, 500)
    assert bundle.paths == ["pyproject.toml"]
    assert bundle.under_budget


def test_recently_touched_files_rank_higher(git_repo):
    index, history = _setup(git_repo)
    history.append(HistoryEntry.result("accepted", ["src/util.py"]))
    bundle = gather("tidy things up", index, history, 10_000)
    assert "src/util.py" in bundle.paths


def test_debug_context_comes_before_candidates(git_repo):
    index, history = _setup(git_repo)
    debug = DebugContext(
        diagnostics=[
            Diagnostic("src/app.py", 3, 1, Severity.WARNING, "unused"),
            Diagnostic("src/config.py", 5, 9, Severity.ERROR, "name 'jsn' is not defined"),
        ],
        patch=Patch(changes=[FileChange(file="src/config.py", content="broken")]),
    )
    bundle = gather("fix parse_config", index, history, 10_000, debug)
    assert bundle.paths[:3] == ["pyproject.toml", "<previous-diagnostics>", "<previous-patch>"]
    diag_text = bundle.items[1].excerpt
    assert diag_text.index("jsn") < diag_text.index("unused")
