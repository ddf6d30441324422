"""
Forge executor — the code-change agent behind the AgentExecutor interface.

Prepares a task workspace, runs the orchestrator, then takes the
validated working tree through the risk gate: path checks, project
limits, commit onto a feature branch, and approval routing.
"""

from __future__ import annotations

import json
import time
import uuid
from pathlib import Path
from typing import Callable

from loguru import logger

from forgeline.approval import ApprovalGate, Notifier, NullNotifier, approval_threshold
from forgeline.budget import TokenLedger
from forgeline.config_loader import ForgelineConfig
from forgeline.event_bus import EventBus, ExecutionEventEmitter
from forgeline.forge.orchestrator import ForgeOrchestrator, ForgeOutcome, ValidatorFactory
from forgeline.models import Delegation, ExecutionResult, ExecutionStatus
from forgeline.router import InfraUnavailableError, Router
from forgeline.store import StateStore, hash_content
from forgeline.workspace.manager import WorkspaceError, WorkspaceManager
from forgeline.workspace.security import allowed_dirs_for, get_project_limits

MAX_ERROR_OUTPUT_CHARS = 1500

RouterFactory = Callable[[TokenLedger], Router]


class ForgeExecutor:
    agent = "forge"

    def __init__(
        self,
        config: ForgelineConfig,
        store: StateStore,
        workspace_manager: WorkspaceManager,
        notifier: Notifier | None = None,
        router_factory: RouterFactory | None = None,
        validator_factory: ValidatorFactory | None = None,
        bus: EventBus | None = None,
    ):
        self.config = config
        self.store = store
        self.workspace_manager = workspace_manager
        self.notifier = notifier or NullNotifier()
        self._router_factory = router_factory or (lambda ledger: Router(config, ledger=ledger))
        self._validator_factory = validator_factory
        self.bus = bus

    def _result(
        self,
        delegation: Delegation,
        status: ExecutionStatus,
        start: float,
        output: str = "",
        error: str | None = None,
        tokens: int | None = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            agent=self.agent,
            task=delegation.task,
            status=status,
            output=output,
            error=error,
            tokens_used=tokens,
            execution_time_ms=int((time.monotonic() - start) * 1000),
            artifact_size_bytes=len(output.encode()) if output else None,
        )

    def _audit(self, delegation: Delegation, payload: str, warnings: list[str] | None = None) -> None:
        self.store.log_audit(
            self.agent, delegation.task, hash_content(delegation.task), hash_content(payload), warnings,
        )

    def execute(self, delegation: Delegation, trace_id: str) -> ExecutionResult:
        start = time.monotonic()
        project = self.config.project
        task_id = uuid.uuid4().hex
        emitter = ExecutionEventEmitter(self.store, trace_id, self.bus)
        router = self._router_factory(TokenLedger(self.store, self.agent, task_id, self.config.budget))

        try:
            workspace = self.workspace_manager.prepare_workspace(project.id, project.repo_source, task_id)
        except WorkspaceError as e:
            self._audit(delegation, str(e))
            emitter.error(self.agent, "forge:workspace_failed", str(e)[:300])
            return self._result(delegation, "failed", start, error=str(e))

        orchestrator = ForgeOrchestrator(self.config, router, self.workspace_manager, emitter, self._validator_factory)
        try:
            outcome = orchestrator.run(delegation, workspace, task_id, project)
        except InfraUnavailableError as e:
            logger.error(f"[FORGE] Infrastructure unavailable: {e}")
            self._audit(delegation, str(e))
            emitter.error(self.agent, "forge:infra_unavailable", str(e)[:300])
            return self._result(delegation, "infra_unavailable", start, error=str(e),
                                tokens=router.budget.usage.total_tokens)

        if not outcome.success:
            self._audit(delegation, outcome.model_dump_json(exclude={"originals"}))
            error = outcome.error or "Forge run failed"
            if outcome.lint_output:
                error = f"{error}\n{outcome.lint_output[:MAX_ERROR_OUTPUT_CHARS]}"
            return self._result(delegation, "failed", start, error=error, tokens=outcome.tokens_used)

        if not outcome.has_changes:
            self._audit(delegation, outcome.model_dump_json(exclude={"originals"}))
            description = outcome.output.description if outcome.output else "no changes needed"
            return self._result(delegation, "success", start, output=f"No changes needed: {description}",
                                tokens=outcome.tokens_used)

        return self._deliver(delegation, outcome, workspace, task_id, emitter, start)

    def _discard(self, workspace: Path, outcome: ForgeOutcome) -> None:
        self.workspace_manager.restore_workspace(workspace, outcome.output.paths)

    def _deliver(
        self,
        delegation: Delegation,
        outcome: ForgeOutcome,
        workspace: Path,
        task_id: str,
        emitter: ExecutionEventEmitter,
        start: float,
    ) -> ExecutionResult:
        """Risk gate, commit and approval routing for a validated working tree."""
        project = self.config.project
        output = outcome.output
        paths = output.paths
        tokens = outcome.tokens_used
        self._audit(delegation, json.dumps(output.model_dump()))

        limits = get_project_limits(project.risk_profile)
        max_files = min(limits.max_files_per_change, self.config.forge.max_files_per_change)
        if len(paths) > max_files:
            self._discard(workspace, outcome)
            error = f"Change touches {len(paths)} files, limit for this project is {max_files}"
            emitter.error(self.agent, "forge:limits_exceeded", error)
            return self._result(delegation, "failed", start, error=error, tokens=tokens)

        gate = ApprovalGate(self.store, self.notifier, approval_threshold(self.config))
        allowed = allowed_dirs_for(project.framework, project.allowed_dirs)
        assessment = gate.evaluate(output.files, output.risk, workspace, allowed)
        if not assessment.valid:
            self._discard(workspace, outcome)
            error = f"Path validation failed: {'; '.join(assessment.errors)}"
            emitter.error(self.agent, "forge:path_rejected", error[:300])
            return self._result(delegation, "failed", start, error=error, tokens=tokens)

        change_id = self.store.save_code_change(
            task_id, output.description, paths, assessment.risk, pending_files=output.files, project_id=project.id,
        )
        commit = self.workspace_manager.commit_verified_changes(
            change_id, output.description, workspace, output.files, outcome.lint_output, outcome.originals,
        )
        if not commit.success:
            self._discard(workspace, outcome)
            self.store.update_code_change_status(change_id, "failed", error=commit.error)
            emitter.error(self.agent, "forge:commit_failed", (commit.error or "")[:300])
            return self._result(delegation, "failed", start, error=f"Commit failed: {commit.error}", tokens=tokens)

        status: ExecutionStatus = "partial_success" if outcome.partial else "success"
        parked = gate.route(change_id, output, assessment.risk, project.id, assessment.requires_approval)
        if parked:
            emitter.warn(self.agent, "forge:pending_approval",
                         f"Change {change_id[:8]} pending approval (risk {assessment.risk}/5)",
                         metadata={"change_id": change_id, "branch": commit.branch_name})
            message = (
                f"Awaiting approval (risk={assessment.risk}). Change ID: {change_id[:8]}. "
                f"Committed on {commit.branch_name}: {output.description}"
            )
        else:
            emitter.info(self.agent, "forge:applied", f"Change {change_id[:8]} applied on {commit.branch_name}",
                         metadata={"change_id": change_id, "files": paths, "commits": commit.commits})
            message = f"Change applied: {output.description}. Files: {', '.join(paths)}"

        return self._result(delegation, status, start, output=message,
                            error=outcome.error if outcome.partial else None, tokens=tokens)
