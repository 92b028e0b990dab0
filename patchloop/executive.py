"""
PATCHLOOP Executive — The Control Loop

It is NOT smart. It is deterministic.

Per goal:  Planning → (per step) Gathering → Generating → Verifying
           → Accepted | Retrying | Aborted

Responsibilities:
  - Pin a baseline checkpoint
  - Decompose the goal into ordered steps (pluggable policy)
  - For each step: refresh index, gather context, generate, apply,
    checkpoint, verify; retry with debug context up to max_tries
  - Revert every rejected attempt; restore the last accepted state on abort
  - Update the index and history for exactly what each accepted step changed
  - Emit every phase transition on the event bus

It never writes code. It only coordinates.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from patchloop.checkpoint import CheckpointError, CheckpointId
from patchloop.event_bus import EventBus, PatchEvent
from patchloop.gatherer import ContextBundle, DebugContext, gather
from patchloop.generator import ChangeGenerator, Patch
from patchloop.history import HistoryEntry
from patchloop.patching import PatchApplyError, apply_patch
from patchloop.planning import PlanningPolicy, make_policy
from patchloop.session import Session
from patchloop.tasks import Succeeded, run_cancellable
from patchloop.verifier import Diagnostic, Verifier, errors, has_errors, is_hint_only

console = Console()


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    PLANNING = "planning"
    GATHERING = "gathering"
    GENERATING = "generating"
    VERIFYING = "verifying"
    ACCEPTED = "accepted"
    RETRYING = "retrying"
    ABORTED = "aborted"


AttemptOutcome = Literal[
    "accepted", "rejected", "generation-failed", "apply-failed",
    "hint-fix-kept", "hint-fix-reverted",
]


class IterationRecord(BaseModel):
    attempt_number: int
    bundle: ContextBundle
    patch: Patch | None = None
    diagnostics: list[Diagnostic] = Field(default_factory=list)
    checkpoint_id: CheckpointId | None = None
    outcome: AttemptOutcome
    error: str = ""
    applied: list[str] = Field(default_factory=list)


class StepReport(BaseModel):
    number: int
    description: str
    status: Literal["pending", "accepted", "aborted", "skipped"] = "pending"
    attempts: list[IterationRecord] = Field(default_factory=list)
    start_checkpoint: CheckpointId | None = None
    accepted_checkpoint: CheckpointId | None = None
    files: list[str] = Field(default_factory=list)


class SessionReport(BaseModel):
    session_id: str
    goal: str
    status: Literal["success", "partial", "failure"] = "failure"
    steps: list[StepReport] = Field(default_factory=list)
    baseline_checkpoint: CheckpointId | None = None
    final_checkpoint: CheckpointId | None = None
    error: str = ""
    events: list[PatchEvent] = Field(default_factory=list)
    budget: dict[str, Any] = Field(default_factory=dict)
    started_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: str = ""

    @property
    def diagnostic_sets(self) -> list[list[Diagnostic]]:
        """Diagnostics of every verified attempt, in order."""
        return [
            a.diagnostics
            for s in self.steps
            for a in s.attempts
            if a.checkpoint_id is not None and a.outcome in ("accepted", "rejected")
        ]

    @property
    def files(self) -> list[str]:
        return sorted({f for s in self.steps if s.status == "accepted" for f in s.files})


# ---------------------------------------------------------------------------
# Executive
# ---------------------------------------------------------------------------

class Executive:
    """Runs goal sessions against one open Session."""

    def __init__(
        self,
        session: Session,
        generator: ChangeGenerator,
        verifier: Verifier | None = None,
        policy: PlanningPolicy | None = None,
        bus: EventBus | None = None,
        quiet: bool = False,
    ):
        if session.index is None or session.checkpoints is None:
            raise RuntimeError("Session must be opened before it is handed to the Executive")
        self.session = session
        self.config = session.config
        self.index = session.index
        self.history = session.history
        self.checkpoints = session.checkpoints
        self.generator = generator
        self.verifier = verifier or Verifier(
            session.root,
            self.config.verifier.command,
            checkpoints=session.checkpoints,
            timeout=self.config.verifier.timeout,
            exit_code_is_error=self.config.verifier.exit_code_is_error,
        )
        self.policy = policy or self._default_policy()
        self.bus = bus or EventBus()
        self.quiet = quiet
        self.phase: Phase | None = None
        self._report: SessionReport | None = None

    def _default_policy(self) -> PlanningPolicy:
        planning = self.config.planning
        planner = None
        if planning.policy == "model":
            from patchloop.agents.planner import PlannerAgent

            planner = PlannerAgent(
                self.session.router, self.index, self.history,
                session_id=self.session.id, max_steps=planning.max_steps,
            )
        return make_policy(planning.policy, planning.max_steps, planner=planner)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, goal: str) -> SessionReport:
        """Run one goal to a terminal status. Never raises for step failures."""
        report = SessionReport(session_id=self.session.id, goal=goal)
        self._report = report
        self._print_header(goal)
        self._record(HistoryEntry.command(goal, session=self.session.id))
        self._transition(Phase.PLANNING)

        try:
            baseline = self.checkpoints.baseline()
        except CheckpointError as e:
            logger.error(f"[EXEC] Cannot pin baseline: {e}")
            report.error = f"checkpoint: {e}"
            return self._finish(report)
        report.baseline_checkpoint = baseline
        last_accepted = baseline

        steps = await self.policy.plan(goal) or [goal]
        report.steps = [StepReport(number=i, description=d) for i, d in enumerate(steps, 1)]
        self._record(HistoryEntry.thought(
            f"plan: {len(steps)} step(s)", steps=steps, session=self.session.id,
        ))
        self._print_plan(report.steps)

        aborted = False
        for step in report.steps:
            if aborted:
                step.status = "skipped"
                continue
            step.start_checkpoint = last_accepted
            try:
                await self._run_step(step, goal, len(report.steps))
            except CheckpointError as e:
                logger.error(f"[EXEC] Checkpoint failure — aborting session: {e}")
                report.error = f"checkpoint: {e}"
                step.status = "aborted"
                self._transition(Phase.ABORTED, step=step.number, reason=report.error)
                self._restore_quietly(last_accepted)
                aborted = True
                continue
            except asyncio.CancelledError:
                self._restore_quietly(last_accepted)
                raise

            if step.status == "accepted":
                last_accepted = step.accepted_checkpoint
            else:
                aborted = True

        report.final_checkpoint = last_accepted
        return self._finish(report)

    # ------------------------------------------------------------------
    # One step
    # ------------------------------------------------------------------

    async def _run_step(self, step: StepReport, goal: str, total: int) -> None:
        step_goal = goal if total == 1 else f"{goal}\n\nCurrent step ({step.number}/{total}): {step.description}"
        start = step.start_checkpoint
        max_tries = self.config.limits.max_tries
        debug: DebugContext | None = None
        last_reason = ""

        self._print_step(step, total)

        for attempt in range(1, max_tries + 1):
            bundle = self._gather(step, attempt, step_goal, debug)

            patch, failure = await self._generate(step, attempt, bundle, step_goal)
            if patch is None:
                step.attempts.append(IterationRecord(
                    attempt_number=attempt, bundle=bundle, outcome="generation-failed", error=failure,
                ))
                self._revert(start)
                debug = DebugContext(note=f"Previous attempt produced no usable patch: {failure}")
                last_reason = failure
                self._retrying(step, attempt, max_tries, failure)
                continue

            try:
                applied = apply_patch(self.session.root, patch, self.session.state_dir)
            except PatchApplyError as e:
                step.attempts.append(IterationRecord(
                    attempt_number=attempt, bundle=bundle, patch=patch,
                    outcome="apply-failed", error=str(e), applied=e.applied,
                ))
                self._revert(start)
                debug = DebugContext(patch=patch, note=f"Previous patch could not be applied: {e}")
                last_reason = f"apply failed: {e}"
                self._retrying(step, attempt, max_tries, last_reason)
                continue

            checkpoint = self.checkpoints.commit(
                patch.commit_message or f"patchloop: step {step.number} attempt {attempt}"
            )
            diagnostics = await self._verify(step, attempt, checkpoint)

            if has_errors(diagnostics):
                step.attempts.append(IterationRecord(
                    attempt_number=attempt, bundle=bundle, patch=patch, diagnostics=diagnostics,
                    checkpoint_id=checkpoint, outcome="rejected", applied=applied,
                ))
                self._revert(start)
                debug = DebugContext(diagnostics=diagnostics, patch=patch)
                last_reason = f"{len(errors(diagnostics))} error(s): " + "; ".join(
                    d.render() for d in errors(diagnostics)[:3]
                )
                self._retrying(step, attempt, max_tries, last_reason)
                continue

            step.attempts.append(IterationRecord(
                attempt_number=attempt, bundle=bundle, patch=patch, diagnostics=diagnostics,
                checkpoint_id=checkpoint, outcome="accepted", applied=applied,
            ))
            if is_hint_only(diagnostics) and self.config.verifier.auto_fix_hints:
                checkpoint = await self._hint_round(step, attempt + 1, step_goal, checkpoint, diagnostics, patch)
            self._accept(step, checkpoint)
            return

        self._abort(step, start, last_reason)

    def _gather(self, step: StepReport, attempt: int, goal: str, debug: DebugContext | None) -> ContextBundle:
        self._transition(Phase.GATHERING, step=step.number, attempt=attempt)
        self.index.refresh()
        ctx = self.config.context
        return gather(goal, self.index, self.history, ctx.max_chars, debug, settings=ctx)

    async def _generate(
        self, step: StepReport, attempt: int, bundle: ContextBundle, goal: str,
    ) -> tuple[Patch | None, str]:
        self._transition(Phase.GENERATING, step=step.number, attempt=attempt, bundle_chars=bundle.size)
        result = await run_cancellable(
            lambda: self.generator.generate(bundle, goal),
            timeout=self.config.limits.generation_timeout,
            label=f"generate step {step.number} attempt {attempt}",
        )
        if not isinstance(result, Succeeded):
            return None, result.describe()
        if not isinstance(result.value, Patch):
            return None, f"generator returned {type(result.value).__name__}, not a Patch"
        return result.value, ""

    async def _verify(self, step: StepReport, attempt: int, checkpoint: CheckpointId) -> list[Diagnostic]:
        self._transition(Phase.VERIFYING, step=step.number, attempt=attempt, checkpoint=checkpoint)
        diagnostics = await self.verifier.check(checkpoint)
        self._print_line(
            f"  [dim]attempt {attempt}: {len(errors(diagnostics))} errors, "
            f"{len(diagnostics)} diagnostics[/]"
        )
        return diagnostics

    async def _hint_round(
        self,
        step: StepReport,
        attempt: int,
        goal: str,
        checkpoint: CheckpointId,
        hints: list[Diagnostic],
        patch: Patch,
    ) -> CheckpointId:
        """One fix-and-recheck round for hint-only diagnostics. Never a second."""
        logger.info(f"[EXEC] Step {step.number}: {len(hints)} hints — one auto-fix round")
        debug = DebugContext(
            diagnostics=hints, patch=patch,
            note="The change was accepted. Address these hints without changing behaviour.",
        )
        bundle = self._gather(step, attempt, goal, debug)
        fix, failure = await self._generate(step, attempt, bundle, goal)
        if fix is None:
            step.attempts.append(IterationRecord(
                attempt_number=attempt, bundle=bundle, outcome="hint-fix-reverted", error=failure,
            ))
            self._revert(checkpoint)
            return checkpoint

        try:
            applied = apply_patch(self.session.root, fix, self.session.state_dir)
        except PatchApplyError as e:
            step.attempts.append(IterationRecord(
                attempt_number=attempt, bundle=bundle, patch=fix,
                outcome="hint-fix-reverted", error=str(e), applied=e.applied,
            ))
            self._revert(checkpoint)
            return checkpoint

        fixed = self.checkpoints.commit(fix.commit_message or f"patchloop: step {step.number} address hints")
        diagnostics = await self._verify(step, attempt, fixed)
        if has_errors(diagnostics):
            step.attempts.append(IterationRecord(
                attempt_number=attempt, bundle=bundle, patch=fix, diagnostics=diagnostics,
                checkpoint_id=fixed, outcome="hint-fix-reverted", applied=applied,
            ))
            self._revert(checkpoint)
            logger.info("[EXEC] Hint fix introduced errors — reverted")
            return checkpoint

        step.attempts.append(IterationRecord(
            attempt_number=attempt, bundle=bundle, patch=fix, diagnostics=diagnostics,
            checkpoint_id=fixed, outcome="hint-fix-kept", applied=applied,
        ))
        return fixed

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _accept(self, step: StepReport, checkpoint: CheckpointId) -> None:
        records = self.checkpoints.diff(step.start_checkpoint, checkpoint)
        paths = sorted({r.path for r in records} | {r.old_path for r in records if r.old_path})
        step.status = "accepted"
        step.accepted_checkpoint = checkpoint
        step.files = paths

        updated = self.index.update(paths)
        self._record(HistoryEntry.result(
            "accepted", paths, step=step.description, session=self.session.id,
            checkpoint=checkpoint, attempts=len(step.attempts),
        ))
        self._transition(Phase.ACCEPTED, step=step.number, checkpoint=checkpoint, files=paths)
        logger.info(f"[EXEC] Step {step.number} accepted — {len(paths)} files, {len(updated)} re-indexed")
        self._print_line(f"[green]✅ Step {step.number} accepted[/] [dim]({', '.join(paths) or 'no file changes'})[/]")

    def _abort(self, step: StepReport, restore_to: CheckpointId, reason: str) -> None:
        self._revert(restore_to)
        step.status = "aborted"
        self._record(HistoryEntry.result(
            "aborted", [], step=step.description, reason=reason, session=self.session.id,
        ))
        self._transition(Phase.ABORTED, step=step.number, reason=reason)
        logger.warning(f"[EXEC] Step {step.number} aborted after {len(step.attempts)} attempts")
        self._print_line(f"[red]❌ Step {step.number} aborted:[/] [dim]{reason[:160]}[/]")

    def _retrying(self, step: StepReport, attempt: int, max_tries: int, reason: str) -> None:
        self._record(HistoryEntry.thought(
            f"attempt {attempt} failed: {reason[:300]}", step=step.description, session=self.session.id,
        ))
        if attempt < max_tries:
            self._transition(Phase.RETRYING, step=step.number, attempt=attempt, reason=reason[:300])
            self._print_line(f"[yellow]↻ Retrying step {step.number} ({attempt}/{max_tries})[/]")

    def _finish(self, report: SessionReport) -> SessionReport:
        accepted = sum(1 for s in report.steps if s.status == "accepted")
        if report.steps and accepted == len(report.steps) and not report.error:
            report.status = "success"
        elif accepted:
            report.status = "partial"
        else:
            report.status = "failure"

        report.finished_at = datetime.now(timezone.utc).isoformat()
        report.budget = self.session.budget_summary()

        self._record(HistoryEntry.result(
            report.status, report.files, scope="session", session=self.session.id,
            reason=report.error, goal=report.goal,
        ))
        self._emit("session.finished", status=report.status, files=report.files)
        self.session.save_report(report)
        self._print_summary(report)
        return report

    # ------------------------------------------------------------------
    # Checkout control
    # ------------------------------------------------------------------

    def _revert(self, checkpoint: CheckpointId) -> None:
        self.checkpoints.revert(checkpoint)

    def _restore_quietly(self, checkpoint: CheckpointId) -> None:
        try:
            self.checkpoints.revert(checkpoint)
        except CheckpointError as e:
            logger.error(f"[EXEC] Could not restore {checkpoint[:10]}: {e}")

    # ------------------------------------------------------------------
    # Events / history / console
    # ------------------------------------------------------------------

    def _transition(self, phase: Phase, **payload: Any) -> None:
        self.phase = phase
        self._emit(f"phase.{phase.value}", **payload)

    def _emit(self, event_type: str, **payload: Any) -> None:
        event = self.bus.emit(event_type, "executive", payload, session_id=self.session.id)
        if self._report is not None:
            self._report.events.append(event)

    def _record(self, entry: HistoryEntry) -> None:
        if not self.history.append(entry):
            logger.debug(f"[EXEC] No history for this {entry.kind} entry")

    def _print_line(self, text: str) -> None:
        if not self.quiet:
            console.print(text)

    def _print_header(self, goal: str) -> None:
        if self.quiet:
            return
        console.print(Panel(
            f"[bold green]Goal:[/] {goal[:200]}\n"
            f"[bold]Session:[/] {self.session.id}  |  "
            f"[bold]Max tries:[/] {self.config.limits.max_tries}  |  "
            f"[bold]Check:[/] {self.config.verifier.command or '—'}",
            title="⟳ PATCHLOOP",
            border_style="bright_green",
        ))

    def _print_plan(self, steps: list[StepReport]) -> None:
        if self.quiet or len(steps) < 2:
            return
        table = Table(title="Plan", border_style="magenta")
        table.add_column("#", style="dim")
        table.add_column("Step")
        for s in steps:
            table.add_row(str(s.number), s.description)
        console.print(table)

    def _print_step(self, step: StepReport, total: int) -> None:
        self._print_line(f"\n[bold]▶ Step {step.number}/{total}:[/] {step.description[:120]}")

    def _print_summary(self, report: SessionReport) -> None:
        if self.quiet:
            return
        color = {"success": "green", "partial": "yellow"}.get(report.status, "red")
        table = Table(title="Session Summary", border_style=color)
        table.add_column("Step")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Files")
        for s in report.steps:
            table.add_row(str(s.number), s.status, str(len(s.attempts)), ", ".join(s.files)[:60])
        console.print(table)
        line = f"[bold {color}]{report.status.upper()}[/]"
        if report.error:
            line += f"  [dim]{report.error[:160]}[/]"
        console.print(line)
