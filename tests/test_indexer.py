import json

from patchloop.indexer import RepoIndex, SymbolSummarizer, tokenize


class CountingSummarizer:
    def __init__(self):
        self.calls = []

    def summarize(self, path, content):
        self.calls.append(path)
        return f"summary of {path}"


class BrokenSummarizer:
    def summarize(self, path, content):
        raise ValueError("model unavailable")


def test_tokenize_splits_identifiers():
    assert tokenize("parseConfig snake_case HTTPServer") == ["parse", "config", "snake", "case", "httpserver"]


def test_build_indexes_tracked_files(git_repo):
    index = RepoIndex(git_repo).build()
    assert sorted(index.entries) == ["README.md", "pyproject.toml", "src/app.py", "src/config.py", "src/util.py"]
    assert "parse_config" in index.get("src/config.py").symbols
    assert index.index_path.exists()


def test_state_dir_is_not_indexed(git_repo):
    (git_repo / ".patchloop").mkdir()
    (git_repo / ".patchloop" / "notes.md").write_text("internal")
    index = RepoIndex(git_repo).build()
    assert not any(p.startswith(".patchloop") for p in index.entries)


def test_update_only_resummarizes_changed_files(git_repo):
    summarizer = CountingSummarizer()
    index = RepoIndex(git_repo, summarizer=summarizer).build()
    summarizer.calls.clear()

    assert index.update(["src/util.py", "src/app.py"]) == []
    assert summarizer.calls == []

    (git_repo / "src" / "util.py").write_text("def clamp(v):\n    return v\n")
    assert index.update(["src/util.py", "src/app.py"]) == ["src/util.py"]
    assert summarizer.calls == ["src/util.py"]


def test_update_drops_deleted_files(git_repo):
    index = RepoIndex(git_repo).build()
    (git_repo / "src" / "util.py").unlink()
    assert index.update(["src/util.py"]) == ["src/util.py"]
    assert index.get("src/util.py") is None


def test_refresh_picks_up_external_edits(git_repo):
    index = RepoIndex(git_repo).build()
    (git_repo / "src" / "new_module.py").write_text("def brand_new():\n    pass\n")
    (git_repo / "README.md").write_text("# changed\n")
    changed = index.refresh()
    assert changed == ["README.md", "src/new_module.py"]
    assert "brand_new" in index.get("src/new_module.py").symbols


def test_reload_and_rebuild_are_content_identical(git_repo):
    first = RepoIndex(git_repo).build()
    reopened = RepoIndex(git_repo).open()
    assert reopened.fingerprint() == first.fingerprint()


def test_corrupt_index_rebuilds(git_repo):
    index = RepoIndex(git_repo).build()
    index.index_path.write_text("{ not json")
    reopened = RepoIndex(git_repo)
    assert reopened.load() is False
    reopened.open()
    assert reopened.fingerprint() == index.fingerprint()


def test_schema_version_mismatch_rebuilds(git_repo):
    index = RepoIndex(git_repo).build()
    data = json.loads(index.index_path.read_text())
    data["version"] = -1
    index.index_path.write_text(json.dumps(data))
    assert RepoIndex(git_repo).load() is False


def test_summarizer_failure_falls_back_to_symbols(git_repo):
    index = RepoIndex(git_repo, summarizer=BrokenSummarizer()).build()
    entry = index.get("src/config.py")
    assert "parse_config" in entry.summary
    assert not entry.stale


def test_keyword_lookup_ranks_path_matches_first(git_repo):
    index = RepoIndex(git_repo).build()
    hits = index.lookup("config parsing", mode="keyword")
    assert hits[0].entry.path == "src/config.py"


def test_definition_lookup(git_repo):
    index = RepoIndex(git_repo).build()
    hits = index.lookup("parse_config", mode="definition")
    assert [(h.entry.path, h.line) for h in hits] == [("src/config.py", 4)]
    assert [h.entry.path for h in index.lookup("App", mode="definition")] == ["src/app.py"]


def test_symbol_summary():
    summary = SymbolSummarizer().summarize("a.py", "import os\n\ndef f():\n    pass\n")
    assert summary == "py (4 lines); defines f; imports os"
