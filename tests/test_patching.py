import pytest

from patchloop.generator import FileChange, Patch, SurgicalBlock
from patchloop.patching import PatchApplyError, apply_patch, diff_targets, looks_like_diff, normalize_change


def test_surgical_create_delete(git_repo):
    patch = Patch(changes=[
        FileChange(file="src/util.py", surgical_blocks=[
            SurgicalBlock(search="return max(low, min(value, high))", replace="return min(max(value, low), high)"),
        ]),
        FileChange(file="src/new/helper.py", action="create", content="X = 1\n"),
        FileChange(file="README.md", action="delete"),
    ])
    applied = apply_patch(git_repo, patch)
    assert [s.split()[0] for s in applied] == ["SURGICAL", "CREATE", "DELETE"]
    assert "min(max(value, low), high)" in (git_repo / "src" / "util.py").read_text()
    assert (git_repo / "src" / "new" / "helper.py").read_text() == "X = 1\n"
    assert not (git_repo / "README.md").exists()


def test_unified_diff(git_repo):
    diff = (
        "--- a/src/util.py\n"
        "+++ b/src/util.py\n"
        "@@ -1,2 +1,2 @@\n"
        " def clamp(value, low, high):\n"
        "-    return max(low, min(value, high))\n"
        "+    return max(low, min(high, value))\n"
    )
    applied = apply_patch(git_repo, Patch(changes=[FileChange(file="src/util.py", patch=diff)]))
    assert applied == ["PATCH src/util.py"]
    assert "min(high, value)" in (git_repo / "src" / "util.py").read_text()


def test_failed_search_fails_the_patch(git_repo):
    patch = Patch(changes=[
        FileChange(file="src/util.py", surgical_blocks=[SurgicalBlock(search="not there", replace="x")]),
    ])
    with pytest.raises(PatchApplyError) as exc:
        apply_patch(git_repo, patch)
    assert exc.value.applied[0].startswith("FAIL")


def test_empty_patch_fails(git_repo):
    with pytest.raises(PatchApplyError):
        apply_patch(git_repo, Patch())


@pytest.mark.parametrize("path", ["../outside.py", ".git/config", ".patchloop/history.jsonl"])
def test_protected_paths(git_repo, path):
    patch = Patch(changes=[FileChange(file=path, action="create", content="x")])
    with pytest.raises(PatchApplyError):
        apply_patch(git_repo, patch)


def test_full_content_in_patch_field_is_promoted():
    change = normalize_change(FileChange(file="a.py", patch="```python\nprint('hi')\n```"))
    assert change.patch is None
    assert change.content == "print('hi')\n"
    assert looks_like_diff("--- a/x\n+++ b/x\n@@ -1 +1 @@\n")


def test_undecodable_file_fails_the_patch(git_repo):
    (git_repo / "src" / "legacy.py").write_bytes("NAME = 'café'\n".encode("latin-1"))
    patch = Patch(changes=[
        FileChange(file="src/util.py", content="X = 1\n"),
        FileChange(file="src/legacy.py", surgical_blocks=[SurgicalBlock(search="NAME", replace="TITLE")]),
    ])
    with pytest.raises(PatchApplyError) as exc:
        apply_patch(git_repo, patch)
    assert exc.value.applied[0] == "MODIFY src/util.py (full content)"
    assert exc.value.applied[1].startswith("FAIL src/legacy.py")


def test_nul_byte_path_fails_the_patch(git_repo):
    patch = Patch(changes=[FileChange(file="src/bad\x00name.py", action="create", content="x")])
    with pytest.raises(PatchApplyError):
        apply_patch(git_repo, patch)


def test_diff_into_state_dir_is_refused(git_repo):
    diff = (
        "--- /dev/null\n"
        "+++ b/.patchloop/history.jsonl\n"
        "@@ -0,0 +1 @@\n"
        "+{}\n"
    )
    patch = Patch(changes=[FileChange(file="src/util.py", patch=diff)])
    with pytest.raises(PatchApplyError) as exc:
        apply_patch(git_repo, patch)
    assert "protected path" in str(exc.value)
    assert not (git_repo / ".patchloop" / "history.jsonl").exists()


def test_diff_targets():
    diff = (
        "diff --git a/src/a.py b/src/a.py\n"
        "--- a/src/a.py\t2026-01-01 00:00:00\n"
        "+++ b/src/a.py\n"
        "--- /dev/null\n"
        "+++ b/.git/hooks/pre-commit\n"
    )
    assert diff_targets(diff) == ["src/a.py", ".git/hooks/pre-commit"]
