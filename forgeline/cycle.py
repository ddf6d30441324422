"""
Cycle runner — one pass from planner output to persisted outcomes.

  1. Bias each delegation's metrics with recent feedback
  2. Decision filter (approved / needs approval / rejected)
  3. Per-agent sequential queues, budget gate before each delegation
  4. Persist outcome + feedback grade, emit execution events

The first failure for an agent aborts the rest of that agent's queue.
Other agents carry on.
"""

from __future__ import annotations

import uuid

from loguru import logger
from pydantic import BaseModel, Field

from forgeline.agents.parsing import PlannerOutput
from forgeline.budget import check_budget
from forgeline.config_loader import ForgelineConfig
from forgeline.decision_filter import filter_decisions
from forgeline.event_bus import EventBus, ExecutionEventEmitter
from forgeline.executors import AgentExecutor
from forgeline.feedback import adjust_delegations, record_feedback
from forgeline.models import BlockedTask, Delegation, ExecutionResult, RejectedDelegation
from forgeline.store import StateStore

CYCLE_AGENT = "cycle"


class CycleReport(BaseModel):
    trace_id: str
    approved: list[Delegation] = Field(default_factory=list)
    needs_approval: list[Delegation] = Field(default_factory=list)
    rejected: list[RejectedDelegation] = Field(default_factory=list)
    results: list[ExecutionResult] = Field(default_factory=list)
    blocked: list[BlockedTask] = Field(default_factory=list)
    skipped: list[Delegation] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.status in ("success", "partial_success"))


def _queues(delegations: list[Delegation]) -> dict[str, list[Delegation]]:
    """Group by agent, keeping the filter's ranking within each queue."""
    queues: dict[str, list[Delegation]] = {}
    for delegation in delegations:
        queues.setdefault(delegation.agent, []).append(delegation)
    return queues


class CycleRunner:
    def __init__(
        self,
        config: ForgelineConfig,
        store: StateStore,
        executors: dict[str, AgentExecutor],
        bus: EventBus | None = None,
    ):
        self.config = config
        self.store = store
        self.executors = executors
        self.bus = bus

    def run(self, planner_output: PlannerOutput, trace_id: str | None = None) -> CycleReport:
        trace_id = trace_id or uuid.uuid4().hex
        emitter = ExecutionEventEmitter(self.store, trace_id, self.bus)

        delegations = adjust_delegations(self.store, planner_output.delegations, self.config.budget)
        filtered = filter_decisions(delegations)
        report = CycleReport(
            trace_id=trace_id,
            approved=filtered.approved,
            needs_approval=filtered.needs_approval,
            rejected=filtered.rejected,
        )
        logger.info(
            f"[CYCLE] {trace_id[:8]}: {len(filtered.approved)} approved, "
            f"{len(filtered.needs_approval)} need approval, {len(filtered.rejected)} rejected"
        )
        emitter.info(
            CYCLE_AGENT, "cycle:start", f"Cycle started with {filtered.total} delegations",
            metadata={
                "approved": len(filtered.approved),
                "needs_approval": len(filtered.needs_approval),
                "rejected": len(filtered.rejected),
            },
        )

        for agent, queue in _queues(filtered.approved).items():
            self._run_queue(agent, queue, report, emitter, trace_id)

        emitter.info(
            CYCLE_AGENT, "cycle:complete",
            f"{report.succeeded}/{len(report.results)} delegations succeeded",
            metadata={"blocked": len(report.blocked), "skipped": len(report.skipped)},
        )
        return report

    def _run_queue(
        self,
        agent: str,
        queue: list[Delegation],
        report: CycleReport,
        emitter: ExecutionEventEmitter,
        trace_id: str,
    ) -> None:
        for index, delegation in enumerate(queue):
            check = check_budget(self.store, agent, self.config.budget)
            if not check.allowed:
                report.blocked.append(BlockedTask(agent=agent, task=delegation.task, reason=check.reason or ""))
                emitter.warn(agent, "delegation:blocked", check.reason or "Budget denied",
                             phase="budget_check", metadata={"task": delegation.task})
                continue

            emitter.info(agent, "delegation:start", delegation.task, metadata={"goal_id": delegation.goal_id})
            result = self._execute(agent, delegation, trace_id)
            report.results.append(result)

            if result.status == "infra_unavailable":
                # not the agent's fault: nothing persisted, nothing graded
                emitter.warn(agent, "delegation:skipped", result.error or "Infrastructure unavailable")
            else:
                self.store.save_outcome(result, project_id=self.config.project.id, trace_id=trace_id)
                record_feedback(self.store, delegation, result)

            if result.status in ("failed", "infra_unavailable"):
                remaining = queue[index + 1:]
                report.skipped.extend(remaining)
                if result.status == "failed":
                    emitter.error(agent, "delegation:failed", (result.error or "failed")[:500],
                                  metadata={"skipped": len(remaining)})
                if remaining:
                    logger.warning(f"[CYCLE] {agent}: skipping {len(remaining)} remaining delegation(s)")
                return

            emitter.info(agent, "delegation:complete", result.output[:500],
                         metadata={"status": result.status, "tokens": result.tokens_used})

    def _execute(self, agent: str, delegation: Delegation, trace_id: str) -> ExecutionResult:
        executor = self.executors.get(agent)
        if executor is None:
            logger.error(f"[CYCLE] No executor registered for agent '{agent}'")
            return ExecutionResult(agent=agent, task=delegation.task, status="failed",
                                   error=f"Unknown agent: {agent}")
        try:
            return executor.execute(delegation, trace_id)
        except Exception as e:
            logger.exception(f"[CYCLE] {agent} executor crashed: {e}")
            return ExecutionResult(agent=agent, task=delegation.task, status="failed",
                                   error=f"Executor crashed: {type(e).__name__}: {e}")
