"""
Risk & Approval Gate.

Scores a change from its paths and the agent's own estimate, parks
risky changes as `pending_approval` and tells a human about them.
Approving a parked change makes it live; rejecting drops its branch.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Protocol

from loguru import logger
from pydantic import BaseModel, Field
from rich.console import Console
from rich.panel import Panel

from forgeline.config_loader import ForgelineConfig, NotifyConfig
from forgeline.forge.validation import Validator
from forgeline.models import CodeChange, CodeOutput, FileChange
from forgeline.store import StateStore
from forgeline.workspace.manager import WorkspaceError, WorkspaceManager
from forgeline.workspace.security import DEFAULT_ALLOWED_DIRS, get_project_limits, validate_file_paths

MAX_RISK = 5
MANY_FILES_THRESHOLD = 2
OUT_OF_POLICY_MIN_RISK = 3


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------

class RiskAssessment(BaseModel):
    valid: bool
    risk: int = Field(ge=1, le=MAX_RISK)
    requires_approval: bool = False
    errors: list[str] = Field(default_factory=list)


def calculate_risk(files: list[FileChange], requires_approval: bool = False) -> int:
    risk = 1
    if len(files) > MANY_FILES_THRESHOLD:
        risk += 1
    if any(f.action == "modify" for f in files):
        risk += 1
    if requires_approval:
        risk = max(risk, OUT_OF_POLICY_MIN_RISK)
    return min(risk, MAX_RISK)


def validate_and_calculate_risk(
    files: list[FileChange],
    workspace: Path,
    allowed_dirs: tuple[str, ...] = DEFAULT_ALLOWED_DIRS,
) -> RiskAssessment:
    validation = validate_file_paths(files, workspace, allowed_dirs)
    if not validation.valid:
        return RiskAssessment(valid=False, risk=MAX_RISK, requires_approval=True, errors=validation.errors)
    return RiskAssessment(
        valid=True,
        risk=calculate_risk(files, validation.requires_approval),
        requires_approval=validation.requires_approval,
    )


def approval_threshold(config: ForgelineConfig) -> int:
    """Lowest effective risk that needs a human, after the project's risk profile."""
    limits = get_project_limits(config.project.risk_profile)
    return min(
        config.approval.risk_threshold,
        limits.approval_required_above_risk,
        limits.max_risk_level + 1,
    )


# ---------------------------------------------------------------------------
# Notifiers
# ---------------------------------------------------------------------------

class Notifier(Protocol):
    def send(self, message: str) -> None: ...


class ConsoleNotifier:
    def __init__(self, console: Console | None = None):
        self.console = console or Console(stderr=True)

    def send(self, message: str) -> None:
        self.console.print(Panel(message, title="Approval needed", border_style="yellow"))


class FileNotifier:
    """Appends each message to a file, one timestamped block per message."""

    def __init__(self, path: Path):
        self.path = path

    def send(self, message: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(f"[{stamp}]\n{message}\n\n")


class NullNotifier:
    def send(self, message: str) -> None:
        logger.debug(f"[NOTIFY] Dropped notification ({len(message)} chars)")


def build_notifier(config: NotifyConfig, base_dir: Path | None = None) -> Notifier:
    if config.channel == "file":
        path = Path(config.file_path)
        return FileNotifier(path if base_dir is None or path.is_absolute() else base_dir / path)
    if config.channel == "none":
        return NullNotifier()
    return ConsoleNotifier()


def notify_safely(notifier: Notifier, message: str) -> bool:
    """Deliver once. Failures are logged and never reach the pipeline."""
    try:
        notifier.send(message)
        return True
    except Exception as e:
        logger.warning(f"[NOTIFY] Delivery failed via {type(notifier).__name__}: {e}")
        return False


def format_approval_request(change_id: str, output: CodeOutput, risk: int, project_id: str | None = None) -> str:
    short = change_id[:8]
    lines = [
        f"Code change {short} needs approval" + (f" (project {project_id})" if project_id else ""),
        f"Risk: {risk}/{MAX_RISK}",
        f"Description: {output.description}",
        "",
        "Files:",
        *[f"  - {f.path} ({f.action})" for f in output.files],
        "",
        f"Rollback: {output.rollback or 'forgeline rollback ' + short}",
        "",
        f"Approve: forgeline approve {short}",
        f"Reject:  forgeline reject {short}",
    ]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

class ApprovalGate:
    def __init__(self, store: StateStore, notifier: Notifier, threshold: int):
        self.store = store
        self.notifier = notifier
        self.threshold = threshold

    def evaluate(
        self,
        files: list[FileChange],
        agent_risk: int,
        workspace: Path,
        allowed_dirs: tuple[str, ...] = DEFAULT_ALLOWED_DIRS,
    ) -> RiskAssessment:
        assessment = validate_and_calculate_risk(files, workspace, allowed_dirs)
        if not assessment.valid:
            return assessment
        risk = max(assessment.risk, agent_risk)
        return assessment.model_copy(update={
            "risk": risk,
            "requires_approval": assessment.requires_approval or risk >= self.threshold,
        })

    def route(
        self,
        change_id: str,
        output: CodeOutput,
        risk: int,
        project_id: str | None = None,
        requires_approval: bool = False,
    ) -> bool:
        """Park the change for a human when its risk reaches the threshold. True when parked."""
        if risk < self.threshold and not requires_approval:
            return False
        self.store.update_code_change_status(change_id, "pending_approval")
        notify_safely(self.notifier, format_approval_request(change_id, output, risk, project_id))
        logger.info(f"[APPROVAL] {change_id[:8]} pending approval (risk {risk}, threshold {self.threshold})")
        return True


# ---------------------------------------------------------------------------
# Human actions
# ---------------------------------------------------------------------------

class ApprovalActionResult(BaseModel):
    success: bool
    message: str


def list_pending_changes(store: StateStore) -> list[CodeChange]:
    return store.pending_approval_changes()


def _lookup_pending(store: StateStore, change_id: str) -> CodeChange | ApprovalActionResult:
    change = store.get_code_change(change_id)
    if change is None:
        return ApprovalActionResult(success=False, message=f"Code change {change_id} not found")
    if change.status != "pending_approval":
        return ApprovalActionResult(
            success=False, message=f"Code change {change.short_id} is not awaiting approval (status: {change.status})",
        )
    return change


def files_to_reapply(change: CodeChange) -> list[FileChange]:
    """Full-content writes from the recorded snapshot, else the original pending edits."""
    if change.snapshot:
        return [FileChange(path=s.path, action=s.action, content=s.after) for s in change.snapshot]
    return list(change.pending_files)


def approve_code_change(
    store: StateStore,
    manager: WorkspaceManager,
    change_id: str,
    approved_by: str,
    validator_factory: Callable[[Path], Validator] | None = None,
) -> ApprovalActionResult:
    found = _lookup_pending(store, change_id)
    if isinstance(found, ApprovalActionResult):
        return found
    change = found

    store.update_code_change_status(change.id, "approved", approved_by=approved_by)
    logger.info(f"[APPROVAL] {change.short_id} approved by {approved_by}")

    project_id = change.project_id or manager.config.project.id
    workspace = manager.workspace_for(project_id, change.task_id)
    if change.branch_name and workspace.exists() and manager.git(workspace).branch_exists(change.branch_name):
        store.update_code_change_status(change.id, "applied")
        return ApprovalActionResult(
            success=True, message=f"Change {change.short_id} approved; already committed on {change.branch_name}",
        )

    files = files_to_reapply(change)
    if not files:
        store.update_code_change_status(change.id, "failed", error="Could not reconstruct files from stored change data")
        return ApprovalActionResult(success=False, message=f"Change {change.short_id} has no recorded files to apply")

    if not workspace.exists():
        try:
            workspace = manager.prepare_workspace(project_id, manager.config.project.repo_source, change.task_id)
        except WorkspaceError as e:
            store.update_code_change_status(change.id, "failed", error=str(e))
            return ApprovalActionResult(success=False, message=f"Change {change.short_id} approved but not applied: {e}")

    factory = validator_factory or (
        lambda ws: Validator.for_workspace(ws, manager.config.forge, manager.config.validation)
    )
    outcome = manager.apply_code_change(change.id, files, workspace, factory(workspace))
    if outcome.success:
        return ApprovalActionResult(success=True, message=f"Change {change.short_id} approved and applied on {outcome.branch_name}")
    return ApprovalActionResult(success=False, message=f"Change {change.short_id} approved but failed to apply: {outcome.error}")


def reject_code_change(
    store: StateStore,
    change_id: str,
    rejected_by: str,
    manager: WorkspaceManager | None = None,
) -> ApprovalActionResult:
    found = _lookup_pending(store, change_id)
    if isinstance(found, ApprovalActionResult):
        return found
    change = found

    store.update_code_change_status(change.id, "rejected")
    if manager is not None and change.branch_name:
        workspace = manager.workspace_for(change.project_id or manager.config.project.id, change.task_id)
        if workspace.exists():
            manager.git(workspace).delete_branch(change.branch_name)
    logger.info(f"[APPROVAL] {change.short_id} rejected by {rejected_by}")
    return ApprovalActionResult(success=True, message=f"Change {change.short_id} rejected")
