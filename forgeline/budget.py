"""
Budget Gate: token-quota enforcement before a delegation executes.

The gate answers allowed / not allowed. A denial means the task is
recorded as blocked for this cycle; it is not a failure and is not
retried until the next cycle.

TokenLedger is the write side: every LLM call lands in token_usage,
bumps the month's used_tokens and leaves an audit row.
"""

from __future__ import annotations

import math

from loguru import logger
from pydantic import BaseModel

from forgeline.config_loader import BudgetConfig
from forgeline.store import StateStore, current_period, hash_content

CHARS_PER_TOKEN = 4


class BudgetCheck(BaseModel):
    allowed: bool
    reason: str | None = None


BUDGET_ALLOWED = BudgetCheck(allowed=True)


def check_budget(store: StateStore, agent_id: str, config: BudgetConfig) -> BudgetCheck:
    """Run the quota checks in order; the first one that trips wins."""
    store.ensure_current_budget(config.monthly_token_limit)
    budget = store.get_budget()
    used = budget["used_tokens"] if budget else 0

    if budget and budget["hard_limit"] == 1 and used >= budget["total_tokens"]:
        logger.error(f"[BUDGET] KILL SWITCH: monthly budget exhausted ({agent_id})")
        return BudgetCheck(allowed=False, reason="Monthly budget exhausted (kill switch active)")

    if used >= config.monthly_token_limit:
        logger.warning(f"[BUDGET] Monthly token limit reached: {used}/{config.monthly_token_limit}")
        return BudgetCheck(
            allowed=False,
            reason=f"Monthly token limit exceeded ({used}/{config.monthly_token_limit})",
        )

    agent_usage = store.agent_monthly_usage(agent_id)
    if agent_usage >= config.per_agent_monthly_limit:
        logger.warning(f"[BUDGET] Per-agent monthly limit reached for {agent_id}: {agent_usage}")
        return BudgetCheck(
            allowed=False,
            reason=f"Agent monthly limit exceeded ({agent_usage}/{config.per_agent_monthly_limit})",
        )

    tasks_today = store.tasks_started_today(agent_id)
    if tasks_today >= config.max_tasks_per_day:
        logger.warning(f"[BUDGET] Daily task limit reached for {agent_id}: {tasks_today}")
        return BudgetCheck(
            allowed=False,
            reason=f"Daily task limit exceeded ({tasks_today}/{config.max_tasks_per_day})",
        )

    remaining = config.monthly_token_limit - used
    if remaining < config.per_task_token_limit:
        logger.warning(f"[BUDGET] {remaining} tokens left, below one task's allowance")
        return BudgetCheck(
            allowed=False,
            reason=f"Remaining monthly tokens ({remaining}) below per-task limit ({config.per_task_token_limit})",
        )

    warn_below = config.monthly_token_limit * config.warning_threshold_percent / 100
    if remaining <= warn_below:
        logger.warning(
            f"[BUDGET] Monthly budget below {config.warning_threshold_percent}%: {remaining} tokens left"
        )

    return BUDGET_ALLOWED


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenLedger:
    """Records LLM usage for one agent/task pair."""

    def __init__(self, store: StateStore, agent_id: str, task_id: str, config: BudgetConfig):
        self.store = store
        self.agent_id = agent_id
        self.task_id = task_id
        self.config = config

    def record(
        self,
        action: str,
        prompt: str,
        completion: str,
        input_tokens: int,
        output_tokens: int,
        cost_usd: float = 0.0,
    ) -> int:
        total = input_tokens + output_tokens
        self.store.record_token_usage(
            self.agent_id, self.task_id, input_tokens, output_tokens, total, cost_usd
        )
        self.store.ensure_current_budget(self.config.monthly_token_limit)
        self.store.increment_used_tokens(total, current_period())
        self.store.log_audit(
            self.agent_id,
            f"{action}: {self.task_id}",
            hash_content(prompt),
            hash_content(completion),
            runtime="litellm",
        )
        logger.debug(
            f"[BUDGET] {self.agent_id} used {total} tokens "
            f"(in={input_tokens}, out={output_tokens}, per-task limit={self.config.per_task_token_limit})"
        )
        return total
