"""
FORGELINE CLI — The Interface

Pipeline:
  forgeline run-cycle --plan <planner.json> --repo <path>
  forgeline forge --task "..." --repo <path>

Approvals:
  forgeline changes / approve <id> / reject <id> / rollback <id>

Plus utilities:
  - forgeline status        (config, API keys, budget)
  - forgeline events        (execution event stream for a trace)
  - forgeline init <path>   (bootstrap .forgeline in a repo)
"""

from __future__ import annotations

import getpass
import json
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from forgeline.agents.parsing import parse_planner_output
from forgeline.approval import (
    Notifier,
    approve_code_change,
    build_notifier,
    list_pending_changes,
    reject_code_change,
)
from forgeline.budget import check_budget
from forgeline.config_loader import ForgelineConfig, load_config, validate_api_keys
from forgeline.cycle import CycleReport, CycleRunner
from forgeline.executors import build_executors
from forgeline.forge.executor import ForgeExecutor
from forgeline.identity import BANNER, __codename__, __tagline__, __version__
from forgeline.models import DecisionMetrics, Delegation
from forgeline.result import Err
from forgeline.store import StateStore
from forgeline.workspace.manager import WorkspaceManager

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".forgeline" / ".env")

app = typer.Typer(
    name="forgeline",
    help=f"{__codename__} — {__tagline__}\nAutonomous code-change pipeline.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

STATUS_COLORS = {
    "success": "green",
    "partial_success": "yellow",
    "failed": "red",
    "infra_unavailable": "magenta",
    "pending_approval": "yellow",
    "applied": "green",
    "approved": "cyan",
    "rolled_back": "dim",
    "rejected": "dim",
}

LEVEL_COLORS = {"debug": "dim", "info": "cyan", "warn": "yellow", "error": "red"}


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
# Wiring
# ---------------------------------------------------------------------------

@dataclass
class Pipeline:
    repo: Path
    config: ForgelineConfig
    store: StateStore
    manager: WorkspaceManager
    notifier: Notifier


def _resolve(repo: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else repo / path


def _pipeline(repo: Path) -> Pipeline:
    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)

    config = load_config(repo)
    if not config.project.repo_source:
        config.project.repo_source = str(repo)

    store = StateStore(_resolve(repo, config.state.db_path))
    manager = WorkspaceManager(config, store, root=_resolve(repo, config.workspace.root))
    return Pipeline(repo, config, store, manager, build_notifier(config.notify, base_dir=repo))


def _print_banner():
    console.print(f"[bright_yellow]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _color(status: str) -> str:
    return STATUS_COLORS.get(status, "white")


# ---------------------------------------------------------------------------
# Pipeline commands
# ---------------------------------------------------------------------------

@app.command("run-cycle")
def run_cycle(
    plan: Path = typer.Option(..., "--plan", "-p", help="Planner output JSON file"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run one cycle: filter the planner's delegations and execute the approved ones."""
    _print_banner()
    _configure_logging(verbose)

    if not plan.exists():
        console.print(f"[red]Plan file not found: {plan}[/]")
        raise typer.Exit(1)

    parsed = parse_planner_output(plan.read_text(encoding="utf-8"))
    if isinstance(parsed, Err):
        console.print(f"[red]Invalid planner output: {parsed.error}[/]")
        raise typer.Exit(1)

    p = _pipeline(repo)
    executors = build_executors(p.config, p.store, p.manager, p.repo, notifier=p.notifier)
    report = CycleRunner(p.config, p.store, executors).run(parsed.value)
    _print_report(report)

    if any(r.status == "failed" for r in report.results):
        raise typer.Exit(1)


@app.command()
def forge(
    task: str = typer.Option(..., "--task", "-t", help="What to change"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    expected: str = typer.Option("", "--expected", "-e", help="Expected result"),
    goal: str = typer.Option("manual", "--goal", "-g", help="Goal id to file the task under"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run a single code-change task through the forge, bypassing the decision filter."""
    _print_banner()
    _configure_logging(verbose)

    p = _pipeline(repo)
    check = check_budget(p.store, ForgeExecutor.agent, p.config.budget)
    if not check.allowed:
        console.print(f"[yellow]Blocked by budget: {check.reason}[/]")
        raise typer.Exit(1)

    delegation = Delegation(
        agent=ForgeExecutor.agent,
        task=task,
        goal_id=goal,
        expected_output=expected,
        decision_metrics=DecisionMetrics(impact=3, cost=2, risk=2, confidence=3),
    )
    trace_id = uuid.uuid4().hex
    executor = ForgeExecutor(p.config, p.store, p.manager, notifier=p.notifier)
    result = executor.execute(delegation, trace_id)
    if result.status != "infra_unavailable":
        p.store.save_outcome(result, project_id=p.config.project.id, trace_id=trace_id)

    color = _color(result.status)
    console.print(Panel(
        result.output or result.error or "",
        title=f"[{color}]{result.status}[/]",
        border_style=color,
    ))
    console.print(f"[dim]Trace: {trace_id}  Tokens: {result.tokens_used or 0:,}[/]")
    if result.status in ("failed", "infra_unavailable"):
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------

@app.command()
def changes(
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
    days: int = typer.Option(0, "--days", "-d", help="Show all changes from the last N days instead"),
):
    """List code changes awaiting approval."""
    p = _pipeline(repo)
    rows = p.store.recent_code_changes(days) if days else list_pending_changes(p.store)
    if not rows:
        console.print("[dim]No pending changes.[/]" if not days else "[dim]No changes in that window.[/]")
        return

    table = Table(title="Code Changes" if days else "Pending Approval", border_style="yellow")
    table.add_column("ID", style="bold")
    table.add_column("Risk")
    table.add_column("Status")
    table.add_column("Description")
    table.add_column("Files")
    table.add_column("Branch", style="dim")

    for change in rows:
        table.add_row(
            change.short_id,
            f"{change.risk}/5",
            f"[{_color(change.status)}]{change.status}[/]",
            change.description[:60],
            ", ".join(change.files_changed)[:60],
            change.branch_name or "—",
        )
    console.print(table)


@app.command()
def approve(
    change_id: str = typer.Argument(..., help="Change id or 8-char prefix"),
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
    by: Optional[str] = typer.Option(None, "--by", help="Approver name (defaults to the current user)"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Approve a pending change and apply it."""
    _configure_logging(verbose)
    p = _pipeline(repo)
    result = approve_code_change(p.store, p.manager, change_id, by or getpass.getuser())
    _print_action(result.success, result.message)


@app.command()
def reject(
    change_id: str = typer.Argument(..., help="Change id or 8-char prefix"),
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
    by: Optional[str] = typer.Option(None, "--by", help="Reviewer name (defaults to the current user)"),
):
    """Reject a pending change and drop its branch."""
    p = _pipeline(repo)
    result = reject_code_change(p.store, change_id, by or getpass.getuser(), manager=p.manager)
    _print_action(result.success, result.message)


@app.command()
def rollback(
    change_id: str = typer.Argument(..., help="Change id or 8-char prefix"),
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
):
    """Restore the files an applied change touched and delete its branch."""
    p = _pipeline(repo)
    change = p.store.get_code_change(change_id)
    if change is None:
        _print_action(False, f"Code change {change_id} not found")
        return

    workspace = p.manager.workspace_for(change.project_id or p.config.project.id, change.task_id)
    if not workspace.exists():
        _print_action(False, f"Workspace for {change.short_id} no longer exists: {workspace}")
        return

    ok = p.manager.rollback_code_change(change.id, workspace)
    _print_action(ok, f"Change {change.short_id} rolled back" if ok else f"Rollback of {change.short_id} failed")


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------

@app.command()
def events(
    trace_id: Optional[str] = typer.Argument(None, help="Trace id; omit to list recent traces"),
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
    count: int = typer.Option(10, "--count", "-n", help="Number of traces to list"),
):
    """Show the execution event stream of a trace."""
    p = _pipeline(repo)

    if not trace_id:
        traces = p.store.recent_traces(count)
        if not traces:
            console.print("[dim]No traces yet. Run a cycle first.[/]")
            return
        table = Table(title=f"Recent Traces (last {count})", border_style="cyan")
        table.add_column("Trace")
        table.add_column("Started", style="dim")
        table.add_column("Events")
        table.add_column("Errors")
        for t in traces:
            errors = t["errors"] or 0
            table.add_row(t["trace_id"], t["started_at"][:19], str(t["events"]),
                          f"[red]{errors}[/]" if errors else "0")
        console.print(table)
        return

    rows = p.store.events_for_trace(trace_id)
    if not rows:
        console.print(f"[dim]No events for trace {trace_id}[/]")
        return

    table = Table(title=f"Trace {trace_id[:8]}", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Agent")
    table.add_column("Event")
    table.add_column("Phase", style="dim")
    table.add_column("Message")
    for e in rows:
        color = LEVEL_COLORS.get(e["level"], "white")
        table.add_row(
            e["created_at"][11:19], e["agent"], f"[{color}]{e['event_type']}[/]",
            e["phase"] or "", e["message"][:80],
        )
    console.print(table)


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check FORGELINE configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    if repo:
        p = _pipeline(repo)
        config = p.config
        console.print("\n[bold]Routing:[/]")
        for role, model in config.routing.model_dump().items():
            console.print(f"  {role.capitalize():<12} {model}")

        console.print("\n[bold]Project:[/]")
        console.print(f"  Id:           {config.project.id}")
        console.print(f"  Framework:    {config.project.framework}")
        console.print(f"  Risk profile: {config.project.risk_profile}")
        console.print(f"  Approval at:  risk >= {config.approval.risk_threshold}")

        p.store.ensure_current_budget(config.budget.monthly_token_limit)
        budget = p.store.get_budget() or {}
        used = budget.get("used_tokens", 0)
        total = budget.get("total_tokens", config.budget.monthly_token_limit)
        budget_table = Table(title=f"Budget {budget.get('period', '')}", border_style="magenta")
        budget_table.add_column("Limit")
        budget_table.add_column("Value")
        budget_table.add_row("Monthly tokens", f"{used:,} / {total:,}")
        budget_table.add_row("Per task", f"{config.budget.per_task_token_limit:,}")
        budget_table.add_row("Per agent / month", f"{config.budget.per_agent_monthly_limit:,}")
        budget_table.add_row("Tasks / day", str(config.budget.max_tasks_per_day))
        budget_table.add_row("Kill switch", "on" if budget.get("hard_limit", 1) else "off")
        console.print(budget_table)

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["git", "node", "npm", "pnpm", "npx", "ruff", "mypy"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)
    console.print(tools_table)


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .forgeline directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    fl_dir = repo / ".forgeline"
    fl_dir.mkdir(exist_ok=True)
    (fl_dir / "plans").mkdir(exist_ok=True)

    config_path = fl_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(f"""# FORGELINE repo-level config overrides
# These merge with the built-in defaults.

project:
  id: "{repo.name}"
  framework: "default"   # nextjs | nestjs | react | turbo | python
  risk_profile: "low"    # low | medium | high

# Override routing for this project:
# routing:
#   implementer: "anthropic/claude-sonnet-4-20250514"

# approval:
#   risk_threshold: 3

# forge:
#   max_correction_rounds: 3
#   enable_test_execution: false
""")

    plan_path = fl_dir / "plans" / "example.json"
    if not plan_path.exists():
        plan_path.write_text(json.dumps({
            "briefing": "Example cycle",
            "next_24h_focus": "Small, safe improvements",
            "decisions_needed": [],
            "tasks_killed": [],
            "delegations": [{
                "agent": "forge",
                "task": "Add a --verbose flag to the CLI",
                "goal_id": "example-001",
                "expected_output": "The CLI accepts --verbose and logs debug output",
                "decision_metrics": {"impact": 3, "cost": 2, "risk": 2, "confidence": 4},
            }],
        }, indent=2) + "\n")

    gitignore = repo / ".gitignore"
    ignore_entries = [".forgeline/workspaces/", ".forgeline/artifacts/", ".forgeline/*.db*"]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# FORGELINE\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# FORGELINE\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]✅ Initialized FORGELINE in {fl_dir}[/]")
    console.print(f"  Config:  {config_path}")
    console.print(f"  Example: {plan_path}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _print_action(success: bool, message: str) -> None:
    if success:
        console.print(f"[green]✅ {message}[/]")
        return
    console.print(f"[red]❌ {message}[/]")
    raise typer.Exit(1)


def _print_report(report: CycleReport) -> None:
    table = Table(title=f"Cycle {report.trace_id[:8]}", border_style="bright_yellow")
    table.add_column("Agent")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Tokens")
    table.add_column("Notes")

    for r in report.results:
        notes = (r.error or r.output or "")[:60]
        table.add_row(r.agent, r.task[:50], f"[{_color(r.status)}]{r.status}[/]", f"{r.tokens_used or 0:,}", notes)
    for b in report.blocked:
        table.add_row(b.agent, b.task[:50], "[yellow]blocked[/]", "—", b.reason[:60])
    for s in report.skipped:
        table.add_row(s.agent, s.task[:50], "[dim]skipped[/]", "—", "earlier failure in queue")
    console.print(table)

    for d in report.needs_approval:
        console.print(f"  [yellow]needs approval[/] {d.agent}: {d.task[:70]}")
    for rej in report.rejected:
        console.print(f"  [dim]rejected[/] {rej.delegation.agent}: {rej.delegation.task[:50]} ({rej.reason})")

    console.print(
        f"\n[bold]{report.succeeded}/{len(report.results)} succeeded | "
        f"{len(report.blocked)} blocked | {len(report.skipped)} skipped | trace {report.trace_id}[/]"
    )


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
