import litellm
import pytest
from tenacity import wait_none

from forgeline.budget import TokenLedger
from forgeline.router import (
    BudgetExceededError,
    InfraUnavailableError,
    LLMError,
    Router,
    _build_kwargs,
)

from tests.conftest import llm_reply

MESSAGES = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hello there"}]


def _router(config, monkeypatch, *replies, ledger=None):
    """Router whose litellm.completion pops `replies` in order."""
    queue = list(replies)
    calls = []

    def fake_completion(**kwargs):
        calls.append(kwargs)
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(litellm, "completion", fake_completion)
    return Router(config, ledger=ledger, wait=wait_none()), calls


def test_complete_records_usage(config, monkeypatch):
    router, calls = _router(config, monkeypatch, llm_reply("hi", prompt_tokens=12, completion_tokens=3))

    response = router.complete("planner", MESSAGES, response_format={"type": "json_object"})

    assert response.content == "hi"
    assert response.tokens_used == 15
    assert response.model == config.routing.planner
    assert calls[0]["response_format"] == {"type": "json_object"}
    assert router.budget.usage.call_count == 1


def test_missing_usage_is_estimated(config, monkeypatch):
    reply = llm_reply("x" * 40)
    reply.usage = None
    router, _ = _router(config, monkeypatch, reply)

    response = router.complete("research", MESSAGES)

    assert response.output_tokens == 10
    assert response.input_tokens > 0


def test_transient_errors_are_retried(config, monkeypatch):
    limited = litellm.RateLimitError(message="slow down", llm_provider="gemini", model="gemini/x")
    router, calls = _router(config, monkeypatch, limited, llm_reply("ok"))

    assert router.complete("planner", MESSAGES).content == "ok"
    assert len(calls) == 2


def test_unreachable_provider_is_infra(config, monkeypatch):
    down = litellm.APIConnectionError(message="refused", llm_provider="gemini", model="gemini/x")
    router, calls = _router(config, monkeypatch, *[down] * config.llm.max_retries)

    with pytest.raises(InfraUnavailableError):
        router.complete("planner", MESSAGES)
    assert len(calls) == config.llm.max_retries


def test_bad_request_fails_immediately(config, monkeypatch):
    bad = litellm.BadRequestError(message="bad schema", model="gemini/x", llm_provider="gemini")
    router, calls = _router(config, monkeypatch, bad, llm_reply("never"))

    with pytest.raises(LLMError) as exc:
        router.complete("planner", MESSAGES)
    assert not isinstance(exc.value, InfraUnavailableError)
    assert len(calls) == 1


def test_budget_is_checked_before_calling(config, monkeypatch):
    config.budget.per_task_token_limit = 100
    router, calls = _router(config, monkeypatch, llm_reply("a", prompt_tokens=90, completion_tokens=20))

    router.complete("planner", MESSAGES)
    with pytest.raises(BudgetExceededError):
        router.complete("planner", MESSAGES)
    assert len(calls) == 1


def test_sub_router_spend_counts_against_parent(config, monkeypatch):
    router, _ = _router(config, monkeypatch, llm_reply("a", prompt_tokens=100, completion_tokens=50))
    planning = router.sub_router(120)

    planning.complete("planner", MESSAGES)

    assert router.budget.usage.total_tokens == 150
    with pytest.raises(BudgetExceededError):
        planning.complete("planner", MESSAGES)


def test_ledger_persists_usage(config, store, monkeypatch):
    ledger = TokenLedger(store, "forge", "task-1", config.budget)
    router, _ = _router(config, monkeypatch, llm_reply("a"), ledger=ledger)

    router.complete("implementer", MESSAGES, action="forge_execution")

    assert store.agent_monthly_usage("forge") == 150
    assert store.audit_entries()[0]["action"] == "forge_execution: task-1"


def test_unknown_role(config):
    with pytest.raises(ValueError):
        Router(config).resolve_model("janitor")


def test_reasoning_models_get_no_temperature():
    assert "temperature" not in _build_kwargs("openai/o3-mini", MESSAGES, 0.2, 100, 30, None)
    assert "temperature" not in _build_kwargs("gpt-5", MESSAGES, 0.2, 100, 30, None)
    assert _build_kwargs("gemini/gemini-3-flash-preview", MESSAGES, 0.2, 100, 30, None)["temperature"] == 0.2
