"""
Forgeline Router — Vendor-Agnostic Model Abstraction

Routes agent calls through LiteLLM so agents never know which vendor is
backing them. Handles the per-task budget, bounded retries and usage
accounting.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from forgeline.budget import TokenLedger, estimate_tokens
from forgeline.config_loader import ForgelineConfig

# 429, 5xx, timeouts and dropped connections are worth another attempt;
# anything else (bad request, auth, content policy) fails immediately.
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    litellm.RateLimitError,
    litellm.InternalServerError,
    litellm.ServiceUnavailableError,
    litellm.Timeout,
    litellm.APIConnectionError,
)


class LLMError(Exception):
    pass


class InfraUnavailableError(LLMError):
    """The provider could not be reached at all. Not the agent's fault."""


class BudgetExceededError(Exception):
    pass


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class BudgetTracker:
    """Tracks token + dollar spend per task."""
    max_tokens: int = 50_000
    max_dollars: float = 10.0
    usage: UsageRecord = field(default_factory=UsageRecord)

    @property
    def tokens_remaining(self) -> int:
        """Tokens left before this task hits its cap.

        Returns:
            int: Remaining tokens, never negative.
        """
        return max(0, self.max_tokens - self.usage.total_tokens)

    @property
    def dollars_remaining(self) -> float:
        """Dollars left before this task hits its cost cap.

        Returns:
            float: Remaining dollars, never negative.
        """
        return max(0.0, self.max_dollars - self.usage.estimated_cost)

    @property
    def budget_exceeded(self) -> bool:
        """Whether either the token cap or the dollar cap has been reached.

        Returns:
            bool: True once no further call may be made for this task.
        """
        return self.usage.total_tokens >= self.max_tokens or self.usage.estimated_cost >= self.max_dollars

    def fraction_remaining(self) -> float:
        """Share of the token cap still unspent, between 0.0 and 1.0."""
        if self.max_tokens <= 0:
            return 0.0
        return self.tokens_remaining / self.max_tokens

    def record(self, prompt_tokens: int, completion_tokens: int, cost: float) -> None:
        """Add one completed call to the running totals.

        Args:
            prompt_tokens (int): Input tokens, as reported or estimated.
            completion_tokens (int): Output tokens, as reported or estimated.
            cost (float): Dollar cost from LiteLLM's price table, 0.0 when unknown.
        """
        self.usage.prompt_tokens += prompt_tokens
        self.usage.completion_tokens += completion_tokens
        self.usage.total_tokens += prompt_tokens + completion_tokens
        self.usage.estimated_cost += cost
        self.usage.call_count += 1

    def summary(self) -> dict:
        """Snapshot of spend for logs and error messages.

        Returns:
            dict: Total tokens, estimated cost, call count, and what is left
                of both caps.
        """
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
            "tokens_remaining": self.tokens_remaining,
            "dollars_remaining": round(self.dollars_remaining, 4),
        }


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_gpt5_model(model: str) -> bool:
    """GPT-5 family models have restricted parameter support."""
    return model.lower().replace("openai/", "").startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("o1", "o3", "o4"))


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    timeout: float,
    response_format: dict | None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "timeout": timeout,
    }
    if not _is_gpt5_model(model) and not _is_o_series_model(model):
        kwargs["temperature"] = temperature
    if response_format:
        kwargs["response_format"] = response_format
    return kwargs


def _usage_of(response: Any, messages: list[dict[str, str]], content: str) -> tuple[int, int]:
    """Provider-reported usage, or a chars/4 estimate when it is missing."""
    usage = getattr(response, "usage", None)
    prompt = getattr(usage, "prompt_tokens", None) if usage else None
    completion = getattr(usage, "completion_tokens", None) if usage else None
    if prompt is None:
        prompt = estimate_tokens("".join(m.get("content", "") for m in messages))
    if completion is None:
        completion = estimate_tokens(content)
    return int(prompt), int(completion)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


class Router:
    """
    Vendor-agnostic model router.

    Agents call `router.complete(role, messages)`. The router resolves the
    model, enforces the per-task budget, retries transient failures and
    records usage through the optional ledger.
    """

    def __init__(
        self,
        config: ForgelineConfig,
        ledger: TokenLedger | None = None,
        wait: Any = None,
        max_tokens: int | None = None,
        parent: Router | None = None,
    ):
        self.config = config
        self.ledger = ledger
        self.parent = parent
        self.budget = BudgetTracker(
            max_tokens=max_tokens or config.budget.per_task_token_limit,
            max_dollars=config.budget.per_task_dollar_limit,
        )
        self._wait = wait if wait is not None else wait_exponential(min=1, max=10)
        self._role_model_map = config.routing.model_dump()

        litellm.suppress_debug_info = True

    def sub_router(self, max_tokens: int) -> Router:
        """Create a router with its own, smaller token cap.

        Calls made through the sub-router are recorded on both trackers, so
        planning spend still counts against the task budget.

        Args:
            max_tokens (int): Token cap for the sub-router.

        Returns:
            Router: A router sharing this one's config, ledger and backoff.
        """
        return Router(self.config, ledger=self.ledger, wait=self._wait, max_tokens=max_tokens, parent=self)

    def resolve_model(self, role: str) -> str:
        """Resolve an agent role to the model configured for it.

        Args:
            role (str): Agent role name (planner, implementer, research, ...).

        Returns:
            str: The LiteLLM model string from the routing config.

        Raises:
            ValueError: If the role has no entry in the routing config.
        """
        model = self._role_model_map.get(role)
        if not model:
            raise ValueError(f"Unknown agent role: {role}. Known: {list(self._role_model_map)}")
        return model

    def _call(self, kwargs: dict[str, Any]) -> Any:
        return litellm.completion(**kwargs)

    def complete(
        self,
        role: str,
        messages: list[dict[str, str]],
        max_tokens: int | None = None,
        response_format: dict | None = None,
        action: str | None = None,
    ) -> RouterResponse:
        """Send a completion request through LiteLLM.

        Checks the task budget (and the parent's, for a sub-router) before
        calling, retries transient provider errors with backoff, then records
        usage on the tracker and, when present, the token ledger.

        Args:
            role (str): Agent role name, resolved through the routing config.
            messages (list[dict[str, str]]): Chat messages [{"role": ..., "content": ...}].
            max_tokens (int | None, optional): Max response tokens. Defaults to
                `llm.max_output_tokens`.
            response_format (dict | None, optional): Structured output request,
                e.g. {"type": "json_object"}. Defaults to None.
            action (str | None, optional): Label for the ledger's audit entry.
                Defaults to the role.

        Returns:
            RouterResponse: Content, model, token counts, cost and latency.

        Raises:
            BudgetExceededError: If the task budget is already spent.
            InfraUnavailableError: If the provider cannot be reached after retries.
            LLMError: For every other provider failure.
        """
        if self.budget.budget_exceeded:
            raise BudgetExceededError(f"Budget exceeded: {self.budget.summary()}")
        if self.parent is not None and self.parent.budget.budget_exceeded:
            raise BudgetExceededError(f"Task budget exceeded: {self.parent.budget.summary()}")

        model = self.resolve_model(role)
        kwargs = _build_kwargs(
            model,
            messages,
            self.config.llm.temperature,
            max_tokens or self.config.llm.max_output_tokens,
            self.config.llm.timeout_seconds,
            response_format,
        )
        logger.debug(f"[ROUTER] {role} → {model} ({len(messages)} messages)")

        retryer = Retrying(
            stop=stop_after_attempt(self.config.llm.max_retries),
            wait=self._wait,
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        )
        start = time.monotonic()
        try:
            response = retryer(self._call, kwargs)
        except litellm.APIConnectionError as e:
            logger.error(f"[ROUTER] {model} unreachable: {e}")
            raise InfraUnavailableError(f"LLM provider unreachable ({model}): {e}") from e
        except Exception as e:
            logger.error(f"[ROUTER] {role} call failed: {type(e).__name__}: {e}")
            raise LLMError(f"{type(e).__name__}: {e}") from e
        elapsed_ms = int((time.monotonic() - start) * 1000)

        content = response.choices[0].message.content or ""
        prompt_tokens, completion_tokens = _usage_of(response, messages, content)
        try:
            cost = float(litellm.completion_cost(completion_response=response))
        except Exception:
            # unknown model pricing
            cost = 0.0

        self.budget.record(prompt_tokens, completion_tokens, cost)
        if self.parent is not None:
            self.parent.budget.record(prompt_tokens, completion_tokens, cost)
        if self.ledger is not None:
            prompt_text = "\n".join(m.get("content", "") for m in messages)
            self.ledger.record(action or role, prompt_text, content, prompt_tokens, completion_tokens, cost)

        logger.debug(
            f"[ROUTER] {role} complete — "
            f"{self.budget.usage.total_tokens} tokens, "
            f"${self.budget.usage.estimated_cost:.4f}, "
            f"{elapsed_ms}ms"
        )
        return RouterResponse(
            content=content,
            model=model,
            input_tokens=prompt_tokens,
            output_tokens=completion_tokens,
            tokens_used=prompt_tokens + completion_tokens,
            cost=cost,
            latency_ms=elapsed_ms,
        )
