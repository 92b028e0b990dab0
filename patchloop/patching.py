"""
PATCHLOOP Patch Applicator

Writes a generated Patch into the checkout. Supports surgical
search/replace blocks, full-content rewrites, and unified diffs.
Any change that cannot be applied fails the whole attempt with
PatchApplyError; the caller reverts the checkout afterwards.
"""

from __future__ import annotations

import subprocess
import tempfile
from pathlib import Path

from loguru import logger

from patchloop.generator import FileChange, GenerationError, Patch


class PatchApplyError(GenerationError):
    """The generated patch could not be applied to the checkout."""

    def __init__(self, message: str, applied: list[str] | None = None):
        super().__init__(message)
        self.applied = applied or []


PROTECTED_DIRS = (".git", ".patchloop")


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def looks_like_diff(text: str) -> bool:
    """Check if text looks like a unified diff vs plain file content."""
    lines = text.strip().split("\n")[:20]
    diff_markers = 0
    for line in lines:
        if line.startswith(("--- a/", "+++ b/", "diff --git")):
            return True
        if line.startswith(("---", "+++", "@@", "diff ")):
            diff_markers += 1
    return diff_markers >= 2


def _strip_fences(text: str) -> str:
    if not text.strip().startswith("```"):
        return text
    lines = [l for l in text.strip().split("\n") if not l.strip().startswith("```")]
    return "\n".join(lines) + "\n"


def normalize_change(change: FileChange) -> FileChange:
    """
    Models often put full file content in `patch`. Promote it to
    `content` when it is not a diff, and strip markdown fences.
    """
    content = change.content
    patch = change.patch
    if patch and patch.strip() and not content and not looks_like_diff(patch):
        logger.info(f"[APPLY] 'patch' for {change.file} is not a diff — promoting to content")
        content, patch = patch, None
    return change.model_copy(update={
        "content": _strip_fences(content) if content else content,
        "patch": _strip_fences(patch) if patch else patch,
    })


def _resolve(root: Path, filename: str, state_dir: str) -> Path | None:
    root = root.resolve()
    try:
        target = (root / filename).resolve()
        rel = target.relative_to(root)
    except (ValueError, OSError):
        # outside the checkout, or an unusable name such as one with a NUL byte
        return None
    if rel.parts and rel.parts[0] in (*PROTECTED_DIRS, state_dir.strip("/").split("/")[0]):
        return None
    return target


def diff_targets(diff: str) -> list[str]:
    """Paths named by the ---/+++ headers of a unified diff, a/ and b/ prefixes removed."""
    targets: dict[str, None] = {}
    for line in _strip_fences(diff).splitlines():
        if not line.startswith(("--- ", "+++ ")):
            continue
        name = line[4:].split("\t")[0].strip()
        if not name or name == "/dev/null":
            continue
        if name.startswith(("a/", "b/")):
            name = name[2:]
        targets.setdefault(name, None)
    return list(targets)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def apply_change(root: Path, change: FileChange, state_dir: str = ".patchloop") -> str:
    """Apply one change. Returns a status line; FAIL lines mean it was not applied."""
    filename = change.file
    fpath = _resolve(root, filename, state_dir)
    if fpath is None:
        return f"FAIL {filename} (outside the checkout or in a protected directory)"

    if change.action == "create":
        if change.content is None:
            return f"FAIL {filename} (creation requires content)"
        fpath.parent.mkdir(parents=True, exist_ok=True)
        fpath.write_text(change.content, encoding="utf-8")
        return f"CREATE {filename}"

    if change.action == "delete":
        if not fpath.exists():
            return f"FAIL {filename} (file not found for deletion)"
        fpath.unlink()
        return f"DELETE {filename}"

    if change.patch and looks_like_diff(change.patch):
        blocked = [t for t in diff_targets(change.patch) if _resolve(root, t, state_dir) is None]
        if blocked:
            return f"FAIL {filename} (diff touches a protected path: {', '.join(blocked)})"
        outcome = apply_unified_diff(root, change.patch)
        if outcome is True:
            return f"PATCH {filename}"
        logger.warning(f"[APPLY] Diff for {filename} did not apply: {outcome}")

    if not fpath.exists():
        return f"FAIL {filename} (file not found for modification)"

    if change.surgical_blocks:
        text = fpath.read_text(encoding="utf-8")
        for block in change.surgical_blocks:
            if not block.search or block.search not in text:
                logger.warning(f"[APPLY] Surgical block search failed in {filename}")
                break
            text = text.replace(block.search, block.replace, 1)
        else:
            fpath.write_text(text, encoding="utf-8")
            return f"SURGICAL {filename} ({len(change.surgical_blocks)} blocks)"

    if change.content is not None:
        fpath.write_text(change.content, encoding="utf-8")
        return f"MODIFY {filename} (full content)"

    return f"FAIL {filename} (no valid surgical blocks, diff or content)"


def apply_patch(root: Path, patch: Patch, state_dir: str = ".patchloop") -> list[str]:
    """
    Apply every change in `patch` to the checkout at `root`.

    Raises PatchApplyError if the patch is empty or any change fails.
    The checkout may be partially modified when that happens.
    """
    if not patch.changes:
        raise PatchApplyError("Generator returned an empty patch")

    root = root.resolve()
    applied = []
    for change in patch.changes:
        try:
            status = apply_change(root, normalize_change(change), state_dir)
        except (OSError, ValueError) as e:
            status = f"FAIL {change.file} ({e})"
        applied.append(status)
        logger.debug(f"[APPLY] {status}")

    failures = [s for s in applied if s.startswith("FAIL")]
    if failures:
        raise PatchApplyError("; ".join(failures), applied=applied)
    logger.info(f"[APPLY] Applied {len(applied)} changes")
    return applied


def apply_unified_diff(root: Path, diff: str) -> bool | str:
    """Apply a unified diff with `git apply`, falling back to `patch -p1`."""
    cleaned = _strip_fences(diff)
    if not cleaned.endswith("\n"):
        cleaned += "\n"

    patch_file = None
    try:
        with tempfile.NamedTemporaryFile(mode="w", suffix=".patch", delete=False) as f:
            f.write(cleaned)
            patch_file = f.name

        attempts = [
            ["git", "apply", "--recount", "--whitespace=nowarn", patch_file],
            ["patch", "-p1", "--forward", "--fuzz=3", "-i", patch_file],
        ]
        error = ""
        for cmd in attempts:
            try:
                result = subprocess.run(cmd, cwd=root, capture_output=True, text=True, timeout=30)
            except (OSError, subprocess.TimeoutExpired) as e:
                error = str(e)
                continue
            if result.returncode == 0:
                return True
            error = (result.stderr or result.stdout).strip()
        return error or "diff did not apply"
    finally:
        if patch_file:
            Path(patch_file).unlink(missing_ok=True)
