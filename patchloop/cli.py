"""
PATCHLOOP CLI — The Interface

  patchloop run "<goal>" --repo <path>     (one goal session)
  patchloop run --repo <path>              (prompts for the goal)

Plus utilities:
  - patchloop batch     (parallel sessions, one worktree each)
  - patchloop index     (build / query the repository index)
  - patchloop history   (recent goals, outcomes, statistics)
  - patchloop status    (check config + API keys + tools)
  - patchloop init      (bootstrap .patchloop in a repo)
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from patchloop.config_loader import ConfigError, PatchloopConfig, load_config, validate_api_keys
from patchloop.history import HistoryLog
from patchloop.identity import BANNER, __codename__, __tagline__, __version__
from patchloop.indexer import RepoIndex

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".patchloop" / ".env")

app = typer.Typer(
    name="patchloop",
    help=f"{__codename__} — {__tagline__}",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

EXIT_CODES = {"success": 0, "failure": 1, "partial": 2}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _load(repo: Path) -> PatchloopConfig:
    try:
        return load_config(repo)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        raise typer.Exit(1)


def _resolve_repo(repo: Path) -> Path:
    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)
    return repo


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    goal: Optional[str] = typer.Argument(None, help="What to change, in plain language"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    check_cmd: Optional[str] = typer.Option(None, "--check", "-c", help="Build/check command (e.g. 'cargo check')"),
    max_tries: Optional[int] = typer.Option(None, "--max-tries", "-n", min=1, help="Attempts per step"),
    policy: Optional[str] = typer.Option(None, "--policy", "-p", help="Planning policy: single | heuristic | model"),
    isolated: bool = typer.Option(False, "--isolated", help="Work in a dedicated git worktree"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run one goal session: gather, generate, verify, retry."""
    from patchloop.agents.generator import GeneratorAgent
    from patchloop.executive import Executive
    from patchloop.session import Session

    _print_banner()
    _configure_logging(verbose)

    repo = _resolve_repo(repo)
    config = _load(repo)

    if not goal:
        console.print("[bold]Describe what you want PATCHLOOP to do:[/]")
        goal = typer.prompt(">>")
    if not goal.strip():
        console.print("[red]No goal provided.[/]")
        raise typer.Exit(1)

    config.verifier.command = check_cmd or config.verifier.command or _detect_check_command(repo)
    if max_tries is not None:
        config.limits.max_tries = max_tries
    if policy is not None:
        if policy not in ("single", "heuristic", "model"):
            console.print(f"[red]Unknown planning policy: {policy}[/]")
            raise typer.Exit(1)
        config.planning.policy = policy

    if not any(validate_api_keys().values()):
        console.print("[yellow]⚠ No model API keys found; generation will fail unless a local model is routed.[/]")

    with Session(repo, config, isolated=isolated or None) as session:
        generator = GeneratorAgent(session.router, session.root, session_id=session.id)
        report = asyncio.run(Executive(session, generator).run(goal))
        if session.workspace is not None:
            console.print(f"[dim]Branch: {session.workspace.branch_name}[/]")

    budget = report.budget
    if budget:
        console.print(Panel(
            f"Tokens: {budget['total_tokens']:,} / "
            f"Cost: ${budget['estimated_cost']:.4f} / "
            f"Calls: {budget['call_count']}",
            title="Budget",
            border_style="green",
        ))
    raise typer.Exit(EXIT_CODES.get(report.status, 1))


@app.command()
def batch(
    repo: Path = typer.Option(..., "--repo", "-r", help="Path to the target repository"),
    tasks_dir: Optional[Path] = typer.Option(None, "--tasks-dir", "-d", help="Directory of goal files"),
    workers: int = typer.Option(3, "--workers", "-w", min=1, help="Max concurrent sessions"),
    check_cmd: Optional[str] = typer.Option(None, "--check", "-c"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run several goals in parallel, each in its own worktree."""
    from patchloop.parallel import run_parallel

    _print_banner()
    _configure_logging(verbose)

    repo = _resolve_repo(repo)
    config = _load(repo)
    td = tasks_dir or (repo / config.index.state_dir / "tasks")

    if not td.exists():
        console.print(f"[red]Tasks directory not found: {td}[/]")
        raise typer.Exit(1)

    task_files = sorted(td.glob("*.yaml")) + sorted(td.glob("*.yml")) + sorted(td.glob("*.txt"))
    task_files = [f for f in task_files if "example" not in f.name.lower()]
    if not task_files:
        console.print(f"[red]No goal files found in {td}[/]")
        raise typer.Exit(1)

    console.print(f"[cyan]Found {len(task_files)} goals in {td}[/]")
    results = run_parallel(
        repo_path=repo,
        task_files=task_files,
        max_workers=workers,
        check_command=check_cmd or config.verifier.command or _detect_check_command(repo),
    )

    if any(r.get("status") != "success" for r in results):
        raise typer.Exit(1)


@app.command()
def index(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    rebuild: bool = typer.Option(False, "--rebuild", help="Discard the stored index and rebuild"),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Keyword lookup"),
    definition: Optional[str] = typer.Option(None, "--definition", "-D", help="Find where a symbol is declared"),
    limit: int = typer.Option(15, "--limit", "-n"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Build, refresh, or query the repository index."""
    _configure_logging(verbose)
    repo = _resolve_repo(repo)
    config = _load(repo)

    idx = RepoIndex(
        repo,
        state_dir=config.index.state_dir,
        ignore_dirs=config.index.ignore_dirs,
        max_file_bytes=config.index.max_file_bytes,
    )
    if rebuild:
        idx.build()
    else:
        idx.open()

    if not query and not definition:
        stale = sum(1 for e in idx.entries.values() if e.stale)
        console.print(f"[green]Indexed {len(idx.entries)} files[/] [dim]({stale} stale) → {idx.index_path}[/]")
        return

    hits = idx.lookup(definition, mode="definition", limit=limit) if definition else \
        idx.lookup(query, mode="keyword", limit=limit)
    if not hits:
        console.print("[dim]No matches.[/]")
        return

    table = Table(title=f"{'Definitions of ' + definition if definition else 'Matches for ' + repr(query)}",
                  border_style="cyan")
    table.add_column("File", no_wrap=True)
    table.add_column("Line", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Summary")
    for hit in hits:
        table.add_row(hit.entry.path, str(hit.line or ""), f"{hit.score:.1f}", hit.entry.summary[:80])
    console.print(table)


@app.command()
def history(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    count: int = typer.Option(10, "--count", "-n", help="Number of entries to show"),
    kind: Optional[str] = typer.Option(None, "--kind", "-k", help="command | thought | result"),
    stats: bool = typer.Option(False, "--stats", "-s", help="Show aggregate statistics"),
):
    """View recent goals and outcomes."""
    repo = _resolve_repo(repo)
    config = _load(repo)
    hist = HistoryLog(repo, config.index.state_dir)

    if stats:
        s = hist.get_stats()
        if s["total_sessions"] == 0:
            console.print("[dim]No history yet.[/]")
            return

        stats_table = Table(title="PATCHLOOP Statistics", border_style="cyan")
        stats_table.add_column("Metric")
        stats_table.add_column("Value")
        stats_table.add_row("Goals issued", str(s["total_goals"]))
        stats_table.add_row("Sessions finished", str(s["total_sessions"]))
        stats_table.add_row("Success rate", f"{s['success_rate']}%")
        for status_name, cnt in sorted(s["statuses"].items(), key=lambda x: -x[1]):
            stats_table.add_row(f"  {status_name}", str(cnt))
        console.print(stats_table)
        return

    entries = list(hist.query_recent(count, kinds=[kind] if kind else None))
    if not entries:
        console.print("[dim]No history yet. Run some goals first.[/]")
        return

    table = Table(title=f"Recent History (last {count})", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Kind")
    table.add_column("Detail")

    for entry in reversed(entries):
        p = entry.payload
        if entry.kind == "command":
            detail = p.get("goal", "")
        elif entry.kind == "thought":
            detail = f"[dim]{p.get('text', '')}[/]"
        else:
            status = p.get("status", "?")
            color = {"success": "green", "accepted": "green", "partial": "yellow"}.get(status, "red")
            files = ", ".join(p.get("files", [])[:4])
            detail = f"[{color}]{status}[/] {files}"
        table.add_row(entry.timestamp[:19], entry.kind, str(detail)[:120])

    console.print(table)


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check PATCHLOOP configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        key_table.add_row(key, "[green]✓ Available[/]" if available else "[red]✗ Missing[/]")
    console.print(key_table)

    if repo:
        repo = repo.resolve()
        config = _load(repo)
        console.print("\n[bold]Routing:[/]")
        console.print(f"  Planner:    {config.routing.planner}")
        console.print(f"  Generator:  {config.routing.generator}")
        console.print(f"  Summarizer: {config.routing.summarizer}")

        console.print("\n[bold]Limits:[/]")
        console.print(f"  Max tries:          {config.limits.max_tries}")
        console.print(f"  Generation timeout: {config.limits.generation_timeout:.0f}s")
        console.print(f"  Max tokens/session: {config.limits.max_tokens_per_session:,}")
        console.print(f"  Max $/session:      ${config.limits.max_dollars_per_session}")

        check = config.verifier.command or _detect_check_command(repo)
        console.print("\n[bold]Verifier:[/]")
        console.print(f"  Command: {check or '[red]none detected[/]'}")
        console.print(f"  Timeout: {config.verifier.timeout:.0f}s")

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["git", "patch", "cargo", "python3", "node", "go"]:
        found = shutil.which(tool)
        tools_table.add_row(tool, f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]")
    console.print(tools_table)


_CONFIG_TEMPLATE = """# PATCHLOOP repo-level config overrides
# These merge with the built-in defaults.

# Command whose output decides acceptance (auto-detected when unset):
# verifier:
#   command: "cargo check --message-format=short"
#   timeout: 600

# Retry policy:
# limits:
#   max_tries: 3
#   generation_timeout: 300

# Context budget (characters):
# context:
#   max_chars: 24000

# Planning: single | heuristic | model
# planning:
#   policy: heuristic
"""


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize the .patchloop directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    state_dir = repo / ".patchloop"
    state_dir.mkdir(exist_ok=True)
    (state_dir / "tasks").mkdir(exist_ok=True)
    (state_dir / "sessions").mkdir(exist_ok=True)

    config_path = state_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(_CONFIG_TEMPLATE)

    example = state_dir / "tasks" / "example.yaml"
    if not example.exists():
        example.write_text('goal: "Add a --verbose flag to the CLI"\n')

    gitignore = repo / ".gitignore"
    entry = ".patchloop/"
    if gitignore.exists():
        content = gitignore.read_text()
        if entry not in content.splitlines():
            with open(gitignore, "a") as f:
                f.write(("" if content.endswith("\n") or not content else "\n") + f"# PATCHLOOP\n{entry}\n")
    else:
        gitignore.write_text(f"# PATCHLOOP\n{entry}\n")

    detected = _detect_check_command(repo)
    console.print(f"[green]✅ Initialized PATCHLOOP in {state_dir}[/]")
    console.print(f"  Config:  {config_path}")
    console.print(f"  Tasks:   {state_dir / 'tasks'}")
    console.print(f"  Check:   {detected or '[yellow]not detected; set verifier.command[/]'}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _detect_check_command(repo: Path) -> str | None:
    """Auto-detect a build/check command whose output the verifier can parse."""
    if (repo / "Cargo.toml").exists():
        return "cargo check --message-format=short"
    if (repo / "tsconfig.json").exists():
        return "npx tsc --noEmit --pretty false"
    if (repo / "package.json").exists():
        return "npm test --silent"
    if (repo / "pyproject.toml").exists() or (repo / "setup.py").exists():
        return "python -m pytest -q -rfE"
    if (repo / "go.mod").exists():
        return "go vet ./... && go build ./..."
    if (repo / "Makefile").exists():
        return "make"
    return None


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        lambda msg: console.print(msg, style="dim", highlight=False, markup=False, end=""),
        level="DEBUG" if verbose else "WARNING",
        format="{time:HH:mm:ss} | {level:<7} | {message}" if verbose else "{message}",
    )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
