import json

import pytest
from typer.testing import CliRunner

from forgeline import __version__
from forgeline.cli import app
from forgeline.store import StateStore

runner = CliRunner()


@pytest.fixture
def repo(tmp_path, monkeypatch):
    monkeypatch.delenv("FORGELINE_DB_PATH", raising=False)
    path = tmp_path / "repo"
    path.mkdir()
    return path


def _store(repo) -> StateStore:
    return StateStore(repo / ".forgeline" / "forgeline.db")


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"FORGELINE v{__version__}" in result.stdout


def test_init_bootstraps_repo(repo):
    (repo / ".gitignore").write_text("node_modules/\n")

    result = runner.invoke(app, ["init", str(repo)])
    assert result.exit_code == 0, result.stdout

    assert f'id: "{repo.name}"' in (repo / ".forgeline" / "config.yaml").read_text()
    example = json.loads((repo / ".forgeline" / "plans" / "example.json").read_text())
    assert example["delegations"][0]["agent"] == "forge"

    runner.invoke(app, ["init", str(repo)])
    gitignore = (repo / ".gitignore").read_text()
    assert gitignore.startswith("node_modules/\n")
    assert gitignore.count(".forgeline/workspaces/") == 1


def test_changes_when_nothing_is_pending(repo):
    result = runner.invoke(app, ["changes", "--repo", str(repo)])
    assert result.exit_code == 0
    assert "No pending changes." in result.stdout


def test_changes_lists_pending(repo):
    store = _store(repo)
    change_id = store.save_code_change("task-1", "Tweak greeting", ["src/app.py"], 4)
    store.update_code_change_status(change_id, "pending_approval")

    result = runner.invoke(app, ["changes", "--repo", str(repo)])

    assert result.exit_code == 0
    assert change_id[:8] in result.stdout


def test_reject_by_prefix(repo):
    store = _store(repo)
    change_id = store.save_code_change("task-1", "Tweak greeting", ["src/app.py"], 4)
    store.update_code_change_status(change_id, "pending_approval")

    result = runner.invoke(app, ["reject", change_id[:8], "--repo", str(repo), "--by", "dana"])

    assert result.exit_code == 0
    assert store.get_code_change(change_id).status == "rejected"


def test_approve_unknown_change_exits_nonzero(repo):
    result = runner.invoke(app, ["approve", "deadbeef", "--repo", str(repo), "--by", "dana"])
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_events_without_traces(repo):
    result = runner.invoke(app, ["events", "--repo", str(repo)])
    assert result.exit_code == 0
    assert "No traces yet" in result.stdout


def test_events_for_trace(repo):
    _store(repo).append_event("trace-abc", "forge", "forge:start", "Forge started", phase="planning")

    result = runner.invoke(app, ["events", "trace-abc", "--repo", str(repo)])

    assert result.exit_code == 0
    assert "forge:start" in result.stdout


def test_run_cycle_rejects_invalid_plan(repo):
    plan = repo / "plan.json"
    plan.write_text('{"briefing": ""}')

    result = runner.invoke(app, ["run-cycle", "--plan", str(plan), "--repo", str(repo)])

    assert result.exit_code == 1
    assert "Invalid planner output" in result.stdout


def test_run_cycle_with_nothing_approved(repo):
    plan = repo / "plan.json"
    plan.write_text(json.dumps({
        "briefing": "Risky week",
        "next_24h_focus": "Database",
        "decisions_needed": [],
        "tasks_killed": [],
        "delegations": [{
            "agent": "forge",
            "task": "Migrate the database",
            "goal_id": "g1",
            "decision_metrics": {"impact": 4, "cost": 2, "risk": 5, "confidence": 3},
        }],
    }))

    result = runner.invoke(app, ["run-cycle", "--plan", str(plan), "--repo", str(repo)])

    assert result.exit_code == 0, result.stdout
    assert "needs approval" in result.stdout
    assert "0/0 succeeded" in result.stdout


def test_missing_repo_exits(tmp_path):
    result = runner.invoke(app, ["changes", "--repo", str(tmp_path / "nope")])
    assert result.exit_code == 1
