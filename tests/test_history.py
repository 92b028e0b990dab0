from patchloop.history import HistoryEntry, HistoryLog


def test_append_and_query_recent(tmp_path):
    log = HistoryLog(tmp_path)
    log.append(HistoryEntry.command("add a flag"))
    log.append(HistoryEntry.thought("plan: 1 step(s)"))
    log.append(HistoryEntry.result("accepted", ["src/a.py"]))

    recent = list(log.query_recent(2))
    assert [e.kind for e in recent] == ["result", "thought"]
    assert recent[0].payload["files"] == ["src/a.py"]


def test_query_is_lazy_and_restartable(tmp_path):
    log = HistoryLog(tmp_path)
    view = log.query_recent(10, kinds=["result"])
    assert list(view) == []

    log.append(HistoryEntry.result("accepted", ["a.py"]))
    assert len(list(view)) == 1
    assert len(list(view)) == 1


def test_large_log_reads_backwards(tmp_path):
    log = HistoryLog(tmp_path)
    for i in range(500):
        log.append(HistoryEntry.thought(f"note {i}" + "x" * 40))
    recent = list(log.query_recent(3))
    assert [e.payload["text"][:8] for e in recent] == ["note 499", "note 498", "note 497"]


def test_malformed_lines_are_skipped(tmp_path):
    log = HistoryLog(tmp_path)
    log.append(HistoryEntry.command("first"))
    with open(log.path, "a") as f:
        f.write("{broken\n")
    log.append(HistoryEntry.command("second"))
    assert [e.payload["goal"] for e in log.query_recent(10)] == ["second", "first"]


def test_write_failure_returns_false(tmp_path):
    blocker = tmp_path / "state"
    blocker.write_text("a file, not a directory")
    log = HistoryLog(tmp_path, state_dir="state")
    assert log.append(HistoryEntry.command("x")) is False


def test_touched_files_most_recent_first(tmp_path):
    log = HistoryLog(tmp_path)
    log.append(HistoryEntry.result("accepted", ["a.py", "b.py"]))
    log.append(HistoryEntry.result("accepted", ["c.py", "a.py"]))
    assert log.touched_files() == ["c.py", "a.py", "b.py"]


def test_stats_count_session_results(tmp_path):
    log = HistoryLog(tmp_path)
    log.append(HistoryEntry.command("one"))
    log.append(HistoryEntry.result("accepted", ["a.py"]))
    log.append(HistoryEntry.result("success", ["a.py"], scope="session"))
    log.append(HistoryEntry.command("two"))
    log.append(HistoryEntry.result("failure", [], scope="session"))
    stats = log.get_stats()
    assert stats["total_goals"] == 2
    assert stats["total_sessions"] == 2
    assert stats["success_rate"] == 50.0


def test_failure_context(tmp_path):
    log = HistoryLog(tmp_path)
    assert log.build_failure_context() == ""
    log.append(HistoryEntry.result("aborted", [], step="add flag", reason="3 error(s)"))
    assert "add flag" in log.build_failure_context()


def test_torn_last_line_does_not_swallow_next_entry(tmp_path):
    log = HistoryLog(tmp_path)
    log.append(HistoryEntry.command("first"))
    with open(log.path, "a") as f:
        f.write('{"timestamp": "2026')
    log.append(HistoryEntry.command("second"))
    assert [e.payload["goal"] for e in log.query_recent(10)] == ["second", "first"]
