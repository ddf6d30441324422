"""
Feedback Adjuster.

Turns the last week of graded outcomes for an (agent, task type) pair
into small deltas on impact / cost / risk. The caller applies them to
the next cycle's delegations before the Decision Filter runs.
"""

from __future__ import annotations

import re

from loguru import logger
from pydantic import BaseModel

from forgeline.config_loader import BudgetConfig
from forgeline.models import DecisionMetrics, Delegation, ExecutionResult
from forgeline.store import StateStore

FEEDBACK_WINDOW_DAYS = 7
RECURRENT_FAILURE_THRESHOLD = 2
CONSISTENT_SUCCESS_THRESHOLD = 3
HIGH_TOKEN_COST_RATIO = 0.7


class MetricsAdjustment(BaseModel):
    impact_delta: int = 0
    cost_delta: int = 0
    risk_delta: int = 0

    @property
    def is_neutral(self) -> bool:
        return self.impact_delta == 0 and self.cost_delta == 0 and self.risk_delta == 0


NEUTRAL_ADJUSTMENT = MetricsAdjustment()


def normalize_task_type(task: str) -> str:
    """'Add  Logging to API!' -> 'add-logging-to-api'"""
    return re.sub(r"[^a-z0-9]+", "-", task.lower().strip()).strip("-")


def compute_adjustment(
    store: StateStore,
    agent_id: str,
    task_type: str,
    config: BudgetConfig,
) -> MetricsAdjustment:
    grades = store.recent_grades(agent_id, task_type, FEEDBACK_WINDOW_DAYS)
    if not grades:
        return NEUTRAL_ADJUSTMENT

    impact_delta = 0
    cost_delta = 0
    risk_delta = 0

    failures = grades.count("FAILURE")
    successes = grades.count("SUCCESS")

    if failures >= RECURRENT_FAILURE_THRESHOLD:
        impact_delta = -1
        risk_delta = 1
    elif failures == 0 and successes >= CONSISTENT_SUCCESS_THRESHOLD:
        risk_delta = -1

    avg_tokens = store.average_tokens_for_task(agent_id, task_type, FEEDBACK_WINDOW_DAYS)
    if avg_tokens is not None and avg_tokens > config.per_task_token_limit * HIGH_TOKEN_COST_RATIO:
        cost_delta = 1

    adjustment = MetricsAdjustment(impact_delta=impact_delta, cost_delta=cost_delta, risk_delta=risk_delta)
    if not adjustment.is_neutral:
        logger.info(
            f"[FEEDBACK] {agent_id}/{task_type}: {len(grades)} samples "
            f"({successes} ok, {failures} failed) -> {adjustment.model_dump()}"
        )
    return adjustment


def _clamp(value: int) -> int:
    return max(1, min(5, value))


def apply_adjustment(delegation: Delegation, adjustment: MetricsAdjustment) -> Delegation:
    """Return a copy of the delegation with deltas applied, metrics kept in 1..5."""
    if adjustment.is_neutral:
        return delegation
    m = delegation.decision_metrics
    metrics = DecisionMetrics(
        impact=_clamp(m.impact + adjustment.impact_delta),
        cost=_clamp(m.cost + adjustment.cost_delta),
        risk=_clamp(m.risk + adjustment.risk_delta),
        confidence=m.confidence,
    )
    return delegation.model_copy(update={"decision_metrics": metrics})


def adjust_delegations(
    store: StateStore,
    delegations: list[Delegation],
    config: BudgetConfig,
) -> list[Delegation]:
    adjusted = []
    for delegation in delegations:
        task_type = normalize_task_type(delegation.task)
        adjustment = compute_adjustment(store, delegation.agent, task_type, config)
        adjusted.append(apply_adjustment(delegation, adjustment))
    return adjusted


def grade_result(result: ExecutionResult) -> str | None:
    """Map an execution status to a feedback grade. Infra outages are not graded."""
    return {
        "success": "SUCCESS",
        "partial_success": "PARTIAL",
        "failed": "FAILURE",
    }.get(result.status)


def record_feedback(store: StateStore, delegation: Delegation, result: ExecutionResult) -> str | None:
    grade = grade_result(result)
    if grade is None:
        return None
    reasons = [result.error[:200]] if result.error else []
    store.save_feedback(delegation.agent, normalize_task_type(delegation.task), grade, reasons)
    return grade
