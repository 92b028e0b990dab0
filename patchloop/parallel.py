"""
PATCHLOOP Parallel Runner

Runs several goal sessions against one repository at once. Each worker:
  1. Loads its own config.
  2. Opens an isolated Session (its own git worktree and branch).
  3. Drives the Executive to a terminal status.

Sessions never share a checkout, an index or a checkpoint manager.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from rich.console import Console
from rich.table import Table

console = Console()


def load_goal_file(path: Path) -> str:
    """A task file is YAML with a `goal` (or `objective`) key, or plain text."""
    text = path.read_text()
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
        if isinstance(data, dict):
            goal = data.get("goal") or data.get("objective") or ""
            return str(goal).strip()
    return text.strip()


def _run_single_session(
    goal: str,
    label: str,
    repo_path: Path,
    check_command: str | None,
) -> dict[str, Any]:
    """Process-pool worker. Always returns a dict, never raises."""
    try:
        from patchloop.agents.generator import GeneratorAgent
        from patchloop.config_loader import load_config
        from patchloop.executive import Executive
        from patchloop.session import Session

        config = load_config(repo_path)
        if check_command:
            config.verifier.command = check_command

        with Session(repo_path, config, isolated=True) as session:
            generator = GeneratorAgent(session.router, session.root, session_id=session.id)
            report = asyncio.run(Executive(session, generator, quiet=True).run(goal))
            result = report.model_dump(mode="json", exclude={"events"})
            result["branch"] = session.workspace.branch_name if session.workspace else ""
            result["label"] = label
            return result

    except Exception as e:
        logger.error(f"[PARALLEL] Session failed: {label} — {e}")
        return {"label": label, "goal": goal, "status": "error", "error": str(e)}


def run_parallel(
    repo_path: Path,
    task_files: list[Path],
    max_workers: int = 3,
    check_command: str | None = None,
) -> list[dict[str, Any]]:
    """Run one isolated session per task file, `max_workers` at a time."""
    repo_path = repo_path.resolve()
    _print_parallel_header(len(task_files), max_workers)

    results: list[dict[str, Any]] = []
    with concurrent.futures.ProcessPoolExecutor(max_workers=max_workers) as executor:
        future_to_file = {
            executor.submit(_run_single_session, load_goal_file(tf), tf.stem, repo_path, check_command): tf
            for tf in task_files
        }

        for future in concurrent.futures.as_completed(future_to_file):
            task_file = future_to_file[future]
            try:
                result = future.result()
            except Exception as e:
                result = {"label": task_file.stem, "status": "error", "error": str(e)}
            results.append(result)
            _log_session_completion(result)

    results.sort(key=lambda r: r.get("label", ""))
    _print_parallel_summary(results)
    return results


# --- Helpers ---

_STATUS_COLORS = {"success": "green", "partial": "yellow"}


def _print_parallel_header(count: int, workers: int):
    console.print(f"\n[bold]⟳ PATCHLOOP batch — {count} goals, {workers} workers[/]")
    console.print("[dim]Each session runs in its own git worktree.[/]\n")


def _log_session_completion(result: dict):
    status = result.get("status", "unknown")
    color = _STATUS_COLORS.get(status, "red")
    console.print(f"  [{color}]{result.get('label', '?')}: {status}[/]")


def _print_parallel_summary(results: list[dict]) -> None:
    table = Table(title="Batch Results", border_style="bright_green")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Branch")
    table.add_column("Cost")

    for r in results:
        status = r.get("status", "unknown")
        color = _STATUS_COLORS.get(status, "red")
        cost = f"${r.get('budget', {}).get('estimated_cost', 0):.4f}"
        table.add_row(r.get("label", "?"), f"[{color}]{status}[/]", r.get("branch", "—")[:60], cost)

    console.print(table)
    successes = sum(1 for r in results if r.get("status") == "success")
    console.print(f"\n[bold]{successes}/{len(results)} succeeded[/]")
