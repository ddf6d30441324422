import json

import pytest

from forgeline.agents.parsing import (
    build_fallback_plan,
    extract_json_object,
    parse_code_output,
    parse_plan,
    parse_planner_output,
    strip_fences,
)
from forgeline.result import Err, Ok

from tests.conftest import make_delegation


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def test_strip_fences():
    assert strip_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_fences('  {"a": 1} ') == '{"a": 1}'


def test_extract_json_from_chatter():
    result = extract_json_object('Sure! Here it is:\n{"plan": "x"}\nHope that helps.')
    assert isinstance(result, Ok)
    assert result.value == {"plan": "x"}


@pytest.mark.parametrize("text, kind", [
    ("no braces at all", "no_json"),
    ("{not: valid}", "invalid_json"),
])
def test_extract_json_errors(text, kind):
    result = extract_json_object(text)
    assert isinstance(result, Err)
    assert result.error.kind == kind


# ---------------------------------------------------------------------------
# Forge plans
# ---------------------------------------------------------------------------

def test_parse_plan_clamps_and_truncates():
    text = json.dumps({
        "plan": "p" * 300,
        "files_to_modify": ["src/app.py", "", 7],
        "files_to_read": ["src/util.py"],
        "estimated_risk": 9,
    })
    result = parse_plan(text)
    assert isinstance(result, Ok)
    plan = result.value
    assert len(plan.plan) == 200
    assert plan.files_to_modify == ["src/app.py"]
    assert plan.estimated_risk == 5
    # approach falls back to the untruncated plan text, capped at its own limit
    assert plan.approach == "p" * 300
    assert plan.planned_files == ["src/app.py", "src/util.py"]


def test_parse_plan_defaults_risk():
    result = parse_plan('{"plan": "x", "files_to_create": ["src/new.py"], "estimated_risk": "high"}')
    assert result.value.estimated_risk == 2


@pytest.mark.parametrize("payload", [
    {"files_to_modify": ["src/app.py"]},
    {"plan": "", "files_to_modify": ["src/app.py"]},
    {"plan": "do it"},
    {"plan": "do it", "files_to_modify": []},
])
def test_parse_plan_rejects_bad_shapes(payload):
    assert isinstance(parse_plan(json.dumps(payload)), Err)


def test_fallback_plan_is_empty():
    plan = build_fallback_plan(make_delegation("Rename the greeting", expected_output="Greeting says Hi"))
    assert plan.plan == "Rename the greeting"
    assert plan.approach == "Greeting says Hi"
    assert plan.is_empty


# ---------------------------------------------------------------------------
# Code output
# ---------------------------------------------------------------------------

def test_parse_code_output():
    text = json.dumps({
        "description": "Say hi",
        "risk": 2,
        "rollback": "git revert",
        "files": [
            {"path": "src/app.py", "action": "modify", "edits": [
                {"search": "Hello", "replace": "Hi", "line": 2, "endLine": 2},
                {"search": "", "replace": "skipped"},
            ]},
            {"path": "src/new.py", "action": "create", "content": "x = 1\n"},
            {"path": "src/bad.py", "action": "delete"},
        ],
    })
    result = parse_code_output(text)
    assert isinstance(result, Ok)
    out = result.value
    assert out.paths == ["src/app.py", "src/new.py"]
    [edit] = out.files[0].edits
    assert (edit.search, edit.replace, edit.line, edit.end_line) == ("Hello", "Hi", 2, 2)
    assert out.rollback == "git revert"


def test_modify_with_content_only_is_kept():
    text = json.dumps({"description": "d", "risk": 1, "files": [
        {"path": "src/app.py", "action": "modify", "content": "print('x')\n"},
    ]})
    [change] = parse_code_output(text).value.files
    assert change.edits is None
    assert change.content == "print('x')\n"


def test_empty_files_means_nothing_to_do():
    result = parse_code_output('{"description": "Already done", "risk": 1, "files": []}')
    assert isinstance(result, Ok)
    assert result.value.files == []


@pytest.mark.parametrize("payload", [
    {"risk": 1, "files": []},
    {"description": "d", "risk": 0, "files": []},
    {"description": "d", "risk": True, "files": []},
    {"description": "d", "risk": 2},
    {"description": "d", "risk": 2, "files": [{"path": "src/a.py", "action": "modify"}]},
])
def test_parse_code_output_rejects(payload):
    assert isinstance(parse_code_output(json.dumps(payload)), Err)


# ---------------------------------------------------------------------------
# Cycle planner output
# ---------------------------------------------------------------------------

def _planner_payload(**overrides):
    payload = {
        "briefing": "Focus on onboarding",
        "next_24h_focus": "Signup flow",
        "decisions_needed": [{"goal_id": "g1", "action": "Pick a provider", "reasoning": "r" * 600}],
        "delegations": [{
            "agent": "forge",
            "task": "Add a health check endpoint",
            "goal_id": "g1",
            "decision_metrics": {"impact": 4, "cost": 2, "risk": 2, "confidence": 4},
        }],
        "tasks_killed": [],
    }
    payload.update(overrides)
    return payload


def test_parse_planner_output():
    result = parse_planner_output(json.dumps(_planner_payload()))
    assert isinstance(result, Ok)
    out = result.value
    assert out.delegations[0].decision_metrics.impact == 4
    assert len(out.decisions_needed[0].reasoning) == 500


@pytest.mark.parametrize("overrides", [
    {"briefing": ""},
    {"tasks_killed": None},
    {"delegations": [{"agent": "forge", "task": "x", "goal_id": "g1",
                      "decision_metrics": {"impact": 6, "cost": 2, "risk": 2, "confidence": 4}}]},
])
def test_parse_planner_output_rejects(overrides):
    assert isinstance(parse_planner_output(json.dumps(_planner_payload(**overrides))), Err)
