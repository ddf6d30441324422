"""
Decision Filter: admission control for a cycle's delegations.

Pure and deterministic. Same input order and metrics, same output.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from loguru import logger

from forgeline.models import Delegation, RejectedDelegation

MAX_APPROVED_PER_CYCLE = 3

LOW_IMPACT_THRESHOLD = 2
APPROVAL_RISK_THRESHOLD = 4
APPROVAL_COST_THRESHOLD = 4

REASON_LOW_IMPACT = "Low impact, high relative cost"
REASON_QUOTA = "Exceeded max delegations per cycle"


class FilterResult(BaseModel):
    approved: list[Delegation] = Field(default_factory=list)
    needs_approval: list[Delegation] = Field(default_factory=list)
    rejected: list[RejectedDelegation] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.approved) + len(self.needs_approval) + len(self.rejected)


def filter_decisions(
    delegations: list[Delegation],
    max_approved: int = MAX_APPROVED_PER_CYCLE,
) -> FilterResult:
    """Split delegations into approved / needs-approval / rejected."""
    result = FilterResult()
    candidates: list[Delegation] = []

    for delegation in delegations:
        m = delegation.decision_metrics

        if m.impact <= LOW_IMPACT_THRESHOLD and m.cost >= m.impact:
            result.rejected.append(RejectedDelegation(delegation=delegation, reason=REASON_LOW_IMPACT))
            continue

        if m.risk >= APPROVAL_RISK_THRESHOLD or m.cost >= APPROVAL_COST_THRESHOLD:
            result.needs_approval.append(delegation)
            continue

        candidates.append(delegation)

    # sorted() is stable, so equal (impact, cost) keep input order
    ranked = sorted(
        candidates,
        key=lambda d: (-d.decision_metrics.impact, d.decision_metrics.cost),
    )

    result.approved = ranked[:max_approved]
    for overflow in ranked[max_approved:]:
        result.rejected.append(RejectedDelegation(delegation=overflow, reason=REASON_QUOTA))

    logger.info(
        f"[FILTER] {len(delegations)} in -> "
        f"{len(result.approved)} approved, "
        f"{len(result.needs_approval)} need approval, "
        f"{len(result.rejected)} rejected"
    )
    return result
