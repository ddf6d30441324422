from pathlib import Path

import pytest

from forgeline.approval import (
    ApprovalGate,
    FileNotifier,
    NullNotifier,
    approval_threshold,
    approve_code_change,
    build_notifier,
    calculate_risk,
    files_to_reapply,
    format_approval_request,
    list_pending_changes,
    notify_safely,
    reject_code_change,
    validate_and_calculate_risk,
)
from forgeline.config_loader import ForgelineConfig, NotifyConfig
from forgeline.models import CodeOutput, FileChange, FileEdit
from forgeline.patch import apply_changes
from forgeline.workspace.git import GitManager

from tests.conftest import StubValidator


class RecordingNotifier:
    def __init__(self):
        self.messages: list[str] = []

    def send(self, message: str) -> None:
        self.messages.append(message)


class BrokenNotifier:
    def send(self, message: str) -> None:
        raise ConnectionError("chat service down")


def _create(*paths: str) -> list[FileChange]:
    return [FileChange(path=p, action="create", content="x") for p in paths]


MODIFY = FileChange(path="src/a.py", action="modify", edits=[FileEdit(search="a", replace="b")])


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------

def test_calculate_risk():
    assert calculate_risk(_create("src/a.py")) == 1
    assert calculate_risk(_create("src/a.py", "src/b.py", "src/c.py")) == 2
    assert calculate_risk([MODIFY]) == 2
    assert calculate_risk([MODIFY, *_create("src/b.py", "src/c.py")]) == 3
    assert calculate_risk(_create("src/a.py"), requires_approval=True) == 3


def test_invalid_paths_are_max_risk(tmp_path: Path):
    assessment = validate_and_calculate_risk(_create("src/a.py", ".env"), tmp_path)
    assert not assessment.valid
    assert assessment.risk == 5
    assert assessment.errors


def test_out_of_policy_path_raises_risk(tmp_path: Path):
    assessment = validate_and_calculate_risk(_create("scripts/run.py"), tmp_path)
    assert assessment.valid
    assert assessment.requires_approval
    assert assessment.risk == 3


@pytest.mark.parametrize("threshold, profile, expected", [
    (3, "low", 3),
    (5, "low", 3),
    (3, "high", 2),
    (2, "medium", 2),
    (5, "medium", 3),
])
def test_approval_threshold(threshold, profile, expected):
    config = ForgelineConfig()
    config.approval.risk_threshold = threshold
    config.project.risk_profile = profile
    assert approval_threshold(config) == expected


def test_evaluate_takes_the_higher_risk(store, tmp_path: Path):
    gate = ApprovalGate(store, NullNotifier(), threshold=3)
    low = gate.evaluate(_create("src/a.py"), agent_risk=1, workspace=tmp_path)
    assert (low.risk, low.requires_approval) == (1, False)

    high = gate.evaluate(_create("src/a.py"), agent_risk=4, workspace=tmp_path)
    assert (high.risk, high.requires_approval) == (4, True)


# ---------------------------------------------------------------------------
# Routing + notification
# ---------------------------------------------------------------------------

OUTPUT = CodeOutput(description="Tweak greeting", risk=2, rollback="git revert", files=[MODIFY])


def test_route_below_threshold_does_not_park(store):
    notifier = RecordingNotifier()
    change_id = store.save_code_change("t", "Tweak greeting", ["src/a.py"], 2)
    store.update_code_change_status(change_id, "applied")

    assert not ApprovalGate(store, notifier, 3).route(change_id, OUTPUT, 2)
    assert store.get_code_change(change_id).status == "applied"
    assert notifier.messages == []


def test_route_at_threshold_parks_and_notifies(store):
    notifier = RecordingNotifier()
    change_id = store.save_code_change("t", "Tweak greeting", ["src/a.py"], 3)

    assert ApprovalGate(store, notifier, 3).route(change_id, OUTPUT, 3, project_id="demo")
    assert store.get_code_change(change_id).status == "pending_approval"
    [message] = notifier.messages
    assert change_id[:8] in message
    assert "project demo" in message


def test_route_parks_out_of_policy_change_even_at_low_risk(store):
    change_id = store.save_code_change("t", "Tweak greeting", ["scripts/a.py"], 2)
    assert ApprovalGate(store, NullNotifier(), 5).route(change_id, OUTPUT, 2, requires_approval=True)
    assert [c.id for c in list_pending_changes(store)] == [change_id]


def test_notification_failure_never_raises(store):
    assert not notify_safely(BrokenNotifier(), "hello")
    change_id = store.save_code_change("t", "x", ["src/a.py"], 4)
    assert ApprovalGate(store, BrokenNotifier(), 3).route(change_id, OUTPUT, 4)
    assert store.get_code_change(change_id).status == "pending_approval"


def test_file_notifier_appends(tmp_path: Path):
    notifier = build_notifier(NotifyConfig(channel="file", file_path="logs/notify.log"), base_dir=tmp_path)
    assert isinstance(notifier, FileNotifier)
    notifier.send("first")
    notifier.send("second")
    text = (tmp_path / "logs" / "notify.log").read_text()
    assert "first" in text and "second" in text


def test_format_approval_request():
    text = format_approval_request("0123456789abcdef", OUTPUT, 4)
    assert "Code change 01234567 needs approval" in text
    assert "Risk: 4/5" in text
    assert "  - src/a.py (modify)" in text
    assert "Rollback: git revert" in text
    assert "forgeline approve 01234567" in text
    assert "forgeline reject 01234567" in text


# ---------------------------------------------------------------------------
# Human actions
# ---------------------------------------------------------------------------

GREET = FileChange(
    path="src/app.py",
    action="modify",
    edits=[FileEdit(search='return f"Hello, {name}"', replace='return f"Hi, {name}"')],
)


def _parked_change(store, manager, workspace) -> str:
    """Commit a verified change on its branch and park it, the way the forge executor does."""
    original = (workspace / "src" / "app.py").read_text()
    apply_changes(workspace, [GREET])
    change_id = store.save_code_change(
        "a1b2c3d4e5f6", "Tweak greeting", ["src/app.py"], 4, pending_files=[GREET], project_id="demo",
    )
    outcome = manager.commit_verified_changes(change_id, "Tweak greeting", workspace, [GREET],
                                              originals={"src/app.py": original})
    assert outcome.success
    ApprovalGate(store, NullNotifier(), 3).route(change_id, OUTPUT, 4)
    return change_id


def test_approve_committed_branch(store, manager, workspace):
    change_id = _parked_change(store, manager, workspace)

    result = approve_code_change(store, manager, change_id[:8], "dana")

    assert result.success
    change = store.get_code_change(change_id)
    assert change.status == "applied"
    assert change.approved_by == "dana"


def test_approve_reapplies_when_branch_is_gone(store, manager, workspace):
    change_id = _parked_change(store, manager, workspace)
    branch = store.get_code_change(change_id).branch_name
    GitManager(workspace).delete_branch(branch)

    result = approve_code_change(store, manager, change_id, "dana", validator_factory=lambda ws: StubValidator())

    assert result.success, result.message
    assert GitManager(workspace).branch_exists(branch)
    assert store.get_code_change(change_id).status == "applied"


def test_files_to_reapply_prefers_snapshot(store, manager, workspace):
    change_id = _parked_change(store, manager, workspace)
    [entry] = files_to_reapply(store.get_code_change(change_id))
    assert entry.edits is None
    assert 'return f"Hi, {name}"' in entry.content


def test_approve_requires_pending_status(store, manager):
    change_id = store.save_code_change("t", "x", ["src/a.py"], 2)
    result = approve_code_change(store, manager, change_id, "dana")
    assert not result.success
    assert "not awaiting approval" in result.message

    missing = approve_code_change(store, manager, "ffffffff", "dana")
    assert not missing.success


def test_reject_drops_branch(store, manager, workspace):
    change_id = _parked_change(store, manager, workspace)
    branch = store.get_code_change(change_id).branch_name

    result = reject_code_change(store, change_id, "dana", manager=manager)

    assert result.success
    assert store.get_code_change(change_id).status == "rejected"
    assert not GitManager(workspace).branch_exists(branch)
