"""
PATCHLOOP Verifier

Runs the project's build/check command against a checkpoint and turns
its combined output into structured diagnostics. Severity comes from the
tool's own markers and lands in a closed enumeration; markers we do not
recognize go to UNKNOWN rather than being coerced.

Only ERROR blocks acceptance. Lines no parser recognizes are dropped and
recorded as ParseWarnings; they never fail a run.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

from loguru import logger

from patchloop.checkpoint import CheckpointId, CheckpointManager
from patchloop.tasks import CommandOutput, Failed, Succeeded, TimedOut, run_cancellable, run_command


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    HINT = "hint"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Diagnostic:
    file: str
    line: int
    column: int
    severity: Severity
    message: str
    code: str = ""
    marker: str = ""

    def render(self) -> str:
        loc = self.file or "<tool>"
        if self.line:
            loc += f":{self.line}"
            if self.column:
                loc += f":{self.column}"
        code = f"[{self.code}] " if self.code else ""
        return f"{loc}: {self.severity.value}: {code}{self.message}"


@dataclass(frozen=True)
class ParseWarning:
    """An output line that no diagnostic parser recognized."""
    line_number: int
    text: str


@dataclass
class CheckRun:
    checkpoint_id: CheckpointId
    command: str
    returncode: int | None
    output: str = ""
    diagnostics: list[Diagnostic] = field(default_factory=list)
    parse_warnings: list[ParseWarning] = field(default_factory=list)
    timed_out: bool = False


# ---------------------------------------------------------------------------
# Severity classification
# ---------------------------------------------------------------------------

_MARKERS = {
    "error": Severity.ERROR,
    "fatal error": Severity.ERROR,
    "fatal": Severity.ERROR,
    "failed": Severity.ERROR,
    "warning": Severity.WARNING,
    "warn": Severity.WARNING,
    "note": Severity.HINT,
    "help": Severity.HINT,
    "hint": Severity.HINT,
    "info": Severity.HINT,
    "information": Severity.HINT,
    "message": Severity.HINT,
    "suggestion": Severity.HINT,
}


def classify_marker(marker: str) -> Severity:
    """Map a tool's severity marker (or lint code) to a Severity."""
    m = marker.strip().lower()
    if m in _MARKERS:
        return _MARKERS[m]
    lint = re.fullmatch(r"([a-z]+)(\d+)", m)
    if lint:
        prefix, number = lint.groups()
        # pyflakes (F) and syntax-level pycodestyle (E9xx) break the build
        if prefix == "f" or (prefix == "e" and number.startswith("9")):
            return Severity.ERROR
        if prefix in ("e", "w"):
            return Severity.WARNING
        return Severity.HINT
    return Severity.UNKNOWN


def classify(diagnostic: Diagnostic) -> Severity:
    """Severity of a diagnostic, re-derived from its original marker when present."""
    if diagnostic.marker:
        return classify_marker(diagnostic.marker)
    return diagnostic.severity


def has_errors(diagnostics: Iterable[Diagnostic]) -> bool:
    return any(d.severity is Severity.ERROR for d in diagnostics)


def is_hint_only(diagnostics: list[Diagnostic]) -> bool:
    return bool(diagnostics) and all(d.severity is Severity.HINT for d in diagnostics)


def errors(diagnostics: Iterable[Diagnostic]) -> list[Diagnostic]:
    return [d for d in diagnostics if d.severity is Severity.ERROR]


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

# gcc / clang / rustc --error-format=short / mypy / pyright-cli
_COMPILER = re.compile(
    r"^(?P<file>[^\s:][^:]*?):(?P<line>\d+)(?::(?P<col>\d+))?:\s*"
    r"(?P<sev>fatal error|error|warning|note|help|hint|info)"
    r"(?:\[(?P<code>[^\]]+)\])?:\s*(?P<msg>.*?)(?:\s{2,}\[(?P<code2>[-\w.]+)\])?$",
    re.IGNORECASE,
)
# ruff / flake8 / pylint --output-format=parseable
_LINT = re.compile(
    r"^(?P<file>[^\s:][^:]*?):(?P<line>\d+):(?P<col>\d+):?\s+(?P<code>[A-Z]+\d+)\s+(?P<msg>.*)$"
)
# tsc
_TSC = re.compile(
    r"^(?P<file>[^\s(][^(]*?)\((?P<line>\d+),(?P<col>\d+)\):\s*(?P<sev>error|warning|message)\s+"
    r"(?P<code>TS\d+):\s*(?P<msg>.*)$"
)
# go build / go vet
_GO = re.compile(r"^(?P<file>[^\s:]+\.go):(?P<line>\d+)(?::(?P<col>\d+))?:\s+(?P<msg>.+)$")
# pytest summary lines
_PYTEST = re.compile(r"^(?P<sev>FAILED|ERROR)\s+(?P<file>[^\s:]+)(?:::(?P<name>\S+))?(?:\s+-\s+(?P<msg>.*))?$")
# rustc long form: header, then ` --> file:line:col`
_RUST_HEADER = re.compile(r"^(?P<sev>error|warning|note|help)(?:\[(?P<code>\w+)\])?:\s*(?P<msg>.*)$")
_RUST_LOCATION = re.compile(r"^\s*-->\s*(?P<file>[^:]+):(?P<line>\d+):(?P<col>\d+)\s*$")
# generic `file:line:col: message` with no recognizable marker
_GENERIC = re.compile(r"^(?P<file>[^\s:][^:]*\.[A-Za-z0-9]+):(?P<line>\d+):(?P<col>\d+):\s+(?P<msg>.+)$")

# Summary and continuation lines we recognize but do not turn into diagnostics.
_SILENT = [
    re.compile(r"^\s*(\d+\s*)?\|"),
    re.compile(r"^\s*=\s+(note|help):"),
    re.compile(r"^\s*\.\.\.\s*$"),
    re.compile(r"^(error|warning): (aborting due to|could not compile|build failed|\d+ warnings? emitted)", re.I),
    re.compile(r"^(Found|Success:) .*", re.I),
    re.compile(r"^=+ .* =+$"),
]


class OutputParser:
    """Line-oriented parser over combined check-tool output."""

    def __init__(self, root: Path | None = None):
        self.root = root.resolve() if root else None

    def parse(self, output: str) -> tuple[list[Diagnostic], list[ParseWarning]]:
        diagnostics: list[Diagnostic] = []
        warnings: list[ParseWarning] = []
        pending: tuple[str, str, str] | None = None  # (marker, message, code) awaiting a location

        for number, raw in enumerate(output.splitlines(), 1):
            line = raw.rstrip()
            if not line.strip():
                continue

            loc = _RUST_LOCATION.match(line)
            if loc and pending:
                sev, msg, code = pending
                diagnostics.append(self._make(loc["file"], loc["line"], loc["col"], sev, msg, code))
                pending = None
                continue

            if any(p.match(line) for p in _SILENT) or loc:
                continue

            header = _RUST_HEADER.match(line)
            if header:
                if pending:
                    diagnostics.append(self._make("", "0", "0", *pending))
                pending = (header["sev"], header["msg"], header["code"] or "")
                continue

            diagnostic = self._match_located(line)
            if diagnostic is not None:
                diagnostics.append(diagnostic)
                continue

            warnings.append(ParseWarning(line_number=number, text=line[:300]))

        if pending:
            diagnostics.append(self._make("", "0", "0", *pending))

        return diagnostics, warnings

    def _match_located(self, line: str) -> Diagnostic | None:
        m = _COMPILER.match(line)
        if m:
            return self._make(m["file"], m["line"], m["col"], m["sev"], m["msg"], m["code"] or m["code2"] or "")
        m = _TSC.match(line)
        if m:
            return self._make(m["file"], m["line"], m["col"], m["sev"], m["msg"], m["code"])
        m = _LINT.match(line)
        if m:
            return self._make(m["file"], m["line"], m["col"], m["code"], m["msg"], m["code"])
        m = _PYTEST.match(line)
        if m:
            msg = m["msg"] or (f"{m['name']} failed" if m["name"] else "collection error")
            code = m["name"] or ""
            return self._make(m["file"], "0", "0", "failed", msg, code)
        m = _GO.match(line)
        if m:
            return self._make(m["file"], m["line"], m["col"], "error", m["msg"], "")
        m = _GENERIC.match(line)
        if m:
            return self._make(m["file"], m["line"], m["col"], "", m["msg"], "")
        return None

    def _make(self, file: str, line: str | None, col: str | None, marker: str, msg: str, code: str) -> Diagnostic:
        return Diagnostic(
            file=self._normalize(file),
            line=int(line or 0),
            column=int(col or 0),
            severity=classify_marker(marker),
            message=msg.strip(),
            code=code or "",
            marker=marker,
        )

    def _normalize(self, file: str) -> str:
        file = file.strip()
        if not file:
            return ""
        path = Path(file)
        if path.is_absolute() and self.root is not None:
            try:
                return path.resolve().relative_to(self.root).as_posix()
            except ValueError:
                return path.as_posix()
        posix = path.as_posix()
        return posix[2:] if posix.startswith("./") else posix


def sort_diagnostics(diagnostics: Iterable[Diagnostic]) -> list[Diagnostic]:
    return sorted(diagnostics, key=lambda d: (d.file, d.line, d.column))


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------

class Verifier:
    """
    Runs `command` in the checkout and reports diagnostics for a checkpoint.

    The checkout is moved to the checkpoint first if it has drifted.
    """

    def __init__(
        self,
        root: Path,
        command: str | None,
        checkpoints: CheckpointManager | None = None,
        timeout: float = 600.0,
        exit_code_is_error: bool = True,
        parser: OutputParser | None = None,
        runner: Callable[..., object] = run_command,
    ):
        self.root = root.resolve()
        self.command = command
        self.checkpoints = checkpoints
        self.timeout = timeout
        self.exit_code_is_error = exit_code_is_error
        self.parser = parser or OutputParser(self.root)
        self._runner = runner
        if not command:
            logger.warning("[VERIFY] No check command configured; every attempt will pass verification.")

    classify = staticmethod(classify)

    async def check(self, checkpoint_id: CheckpointId) -> list[Diagnostic]:
        """Ordered diagnostics (file, then line) for the given checkpoint."""
        return (await self.run(checkpoint_id)).diagnostics

    async def run(self, checkpoint_id: CheckpointId) -> CheckRun:
        if self.checkpoints is not None:
            self.checkpoints.ensure_at(checkpoint_id)

        if not self.command:
            return CheckRun(checkpoint_id=checkpoint_id, command="", returncode=0)

        logger.info(f"[VERIFY] Running `{self.command}` at {checkpoint_id[:10]}")
        result = await run_cancellable(
            lambda: self._runner(self.command, self.root),
            timeout=self.timeout,
            label=f"check `{self.command}`",
        )
        if self.checkpoints is not None:
            # build artifacts must not leak into the next checkpoint
            self.checkpoints.ensure_at(checkpoint_id)

        if isinstance(result, TimedOut):
            diag = Diagnostic(
                file="", line=0, column=0, severity=Severity.ERROR,
                message=f"check command timed out after {self.timeout:.0f}s",
                code="verifier-timeout",
            )
            return CheckRun(checkpoint_id, self.command, None, diagnostics=[diag], timed_out=True)

        if isinstance(result, Failed):
            diag = Diagnostic(
                file="", line=0, column=0, severity=Severity.ERROR,
                message=f"check command could not run: {result.describe()}",
                code="verifier-failed",
            )
            return CheckRun(checkpoint_id, self.command, None, diagnostics=[diag])

        assert isinstance(result, Succeeded)
        out: CommandOutput = result.value
        diagnostics, warnings = self.parser.parse(out.output)
        for w in warnings:
            logger.debug(f"[VERIFY] Unparsed line {w.line_number}: {w.text[:120]}")

        blocking = has_errors(diagnostics)
        if out.returncode != 0 and not blocking:
            logger.warning(
                f"[VERIFY] Exit status {out.returncode} but no errors parsed "
                f"({len(warnings)} unparsed lines)"
            )
            warnings.append(ParseWarning(0, f"exit status {out.returncode} with no parsed errors"))
            if self.exit_code_is_error:
                diagnostics.append(Diagnostic(
                    file="", line=0, column=0, severity=Severity.ERROR,
                    message=f"check command exited with status {out.returncode}",
                    code="exit-status",
                ))
        elif out.returncode == 0 and blocking:
            logger.warning("[VERIFY] Errors parsed from a run that exited 0")
            warnings.append(ParseWarning(0, "exit status 0 with parsed errors"))

        ordered = sort_diagnostics(diagnostics)
        logger.info(
            f"[VERIFY] {len(errors(ordered))} errors, {len(ordered)} diagnostics "
            f"(exit {out.returncode})"
        )
        return CheckRun(
            checkpoint_id=checkpoint_id,
            command=self.command,
            returncode=out.returncode,
            output=out.output,
            diagnostics=ordered,
            parse_warnings=warnings,
        )
