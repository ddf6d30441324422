import json

from forgeline.agents.parsing import PlannerOutput
from forgeline.cycle import CycleRunner
from forgeline.event_bus import EventBus
from forgeline.feedback import normalize_task_type
from forgeline.forge.executor import ForgeExecutor
from forgeline.models import ExecutionResult

from tests.conftest import ScriptedRouter, StubValidator, make_delegation


class FakeExecutor:
    def __init__(self, agent: str, *statuses: str):
        self.agent = agent
        self.statuses = list(statuses)
        self.seen: list[str] = []

    def execute(self, delegation, trace_id):
        self.seen.append(delegation.task)
        status = self.statuses.pop(0) if self.statuses else "success"
        return ExecutionResult(
            agent=self.agent,
            task=delegation.task,
            status=status,
            output=f"done: {delegation.task}" if status == "success" else "",
            error=None if status == "success" else f"{status} on {delegation.task}",
            tokens_used=1000,
        )


class CrashingExecutor:
    agent = "forge"

    def execute(self, delegation, trace_id):
        raise RuntimeError("kaput")


def _planner_output(*delegations) -> PlannerOutput:
    return PlannerOutput(
        briefing="Ship the health check",
        next_24h_focus="Reliability",
        decisions_needed=[],
        delegations=list(delegations),
        tasks_killed=[],
    )


def _event_types(store, trace_id):
    return [e["event_type"] for e in store.events_for_trace(trace_id)]


def test_failure_aborts_only_that_agents_queue(config, store):
    forge = FakeExecutor("forge", "failed")
    research = FakeExecutor("research")
    runner = CycleRunner(config, store, {"forge": forge, "research": research})

    report = runner.run(_planner_output(
        make_delegation("Add health endpoint", impact=5),
        make_delegation("Add metrics endpoint", impact=4),
        make_delegation("Compare uptime providers", agent="research", impact=3),
    ), trace_id="trace-1")

    assert forge.seen == ["Add health endpoint"]
    assert research.seen == ["Compare uptime providers"]
    assert [d.task for d in report.skipped] == ["Add metrics endpoint"]
    assert report.succeeded == 1
    assert len(store.recent_outcomes()) == 2
    assert store.recent_grades("forge", normalize_task_type("Add health endpoint"), 7) == ["FAILURE"]
    assert store.recent_grades("research", normalize_task_type("Compare uptime providers"), 7) == ["SUCCESS"]

    types = _event_types(store, "trace-1")
    assert types[0] == "cycle:start"
    assert types[-1] == "cycle:complete"
    assert "delegation:failed" in types
    assert types.count("delegation:complete") == 1


def test_infra_outage_is_not_recorded(config, store):
    forge = FakeExecutor("forge", "infra_unavailable")
    runner = CycleRunner(config, store, {"forge": forge})

    report = runner.run(_planner_output(
        make_delegation("Add health endpoint", impact=5),
        make_delegation("Add metrics endpoint", impact=4),
    ), trace_id="trace-2")

    assert [r.status for r in report.results] == ["infra_unavailable"]
    assert [d.task for d in report.skipped] == ["Add metrics endpoint"]
    assert store.recent_outcomes() == []
    assert store.recent_grades("forge", normalize_task_type("Add health endpoint"), 7) == []
    assert "delegation:skipped" in _event_types(store, "trace-2")


def test_budget_denial_blocks_without_running(config, store):
    config.budget.max_tasks_per_day = 0
    forge = FakeExecutor("forge")
    runner = CycleRunner(config, store, {"forge": forge})

    report = runner.run(_planner_output(make_delegation("Add health endpoint")), trace_id="trace-3")

    assert forge.seen == []
    assert report.results == []
    [blocked] = report.blocked
    assert blocked.reason.startswith("Daily task limit exceeded")
    events = store.events_for_trace("trace-3")
    assert [e["phase"] for e in events if e["event_type"] == "delegation:blocked"] == ["budget_check"]


def test_filter_runs_before_execution(config, store):
    forge = FakeExecutor("forge")
    runner = CycleRunner(config, store, {"forge": forge})

    report = runner.run(_planner_output(
        make_delegation("Polish footer", impact=1, cost=2),
        make_delegation("Migrate database", risk=4),
        make_delegation("Add health endpoint"),
    ))

    assert forge.seen == ["Add health endpoint"]
    assert [r.delegation.task for r in report.rejected] == ["Polish footer"]
    assert [d.task for d in report.needs_approval] == ["Migrate database"]


def test_unknown_agent_fails(config, store):
    report = CycleRunner(config, store, {}).run(_planner_output(make_delegation("Tweet it", agent="social")))

    [result] = report.results
    assert result.status == "failed"
    assert result.error == "Unknown agent: social"
    assert store.recent_outcomes()[0]["status"] == "failed"


def test_crashing_executor_becomes_failed_result(config, store):
    report = CycleRunner(config, store, {"forge": CrashingExecutor()}).run(
        _planner_output(make_delegation("Add health endpoint")),
    )

    [result] = report.results
    assert result.status == "failed"
    assert result.error == "Executor crashed: RuntimeError: kaput"


def test_bus_subscribers_see_cycle_events(config, store):
    bus = EventBus()
    seen = []
    bus.subscribe(lambda event: seen.append(event.event_type))

    CycleRunner(config, store, {"forge": FakeExecutor("forge")}, bus=bus).run(
        _planner_output(make_delegation("Add health endpoint")),
    )

    assert seen == ["cycle:start", "delegation:start", "delegation:complete", "cycle:complete"]


def test_low_risk_forge_delegation_end_to_end(config, store, manager, source_repo):
    config.project.id = "demo"
    config.project.repo_source = str(source_repo)
    plan = json.dumps({"plan": "Log each greeting", "files_to_modify": ["src/app.py"], "estimated_risk": 1})
    code = json.dumps({
        "description": "Log greetings",
        "risk": 1,
        "files": [{"path": "src/app.py", "action": "modify", "edits": [{
            "search": "def greet(name):\n    return f\"Hello, {name}\"",
            "replace": "def greet(name):\n    print(f\"greet {name}\")\n    return f\"Hello, {name}\"",
        }]}],
    })
    forge = ForgeExecutor(
        config, store, manager,
        router_factory=lambda ledger: ScriptedRouter(config, [plan, code], ledger=ledger),
        validator_factory=lambda ws: StubValidator(),
    )
    delegation = make_delegation("add logging", impact=3, cost=1, risk=1, confidence=4,
                                 expected_output="greet prints who it greets")

    report = CycleRunner(config, store, {"forge": forge}).run(_planner_output(delegation), trace_id="trace-1")

    assert [d.task for d in report.approved] == ["add logging"]
    assert report.blocked == []
    [result] = report.results
    assert result.status == "success", result.error

    [change] = store.recent_code_changes()
    assert change.status == "applied"
    assert change.risk == 2
    assert store.pending_approval_changes() == []

    [outcome] = store.recent_outcomes()
    assert outcome["status"] == "success"
    assert outcome["trace_id"] == "trace-1"
    assert store.recent_grades("forge", normalize_task_type("add logging"), 7) == ["SUCCESS"]
    assert store.agent_monthly_usage("forge") == 300
