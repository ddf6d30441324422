import pytest

from forgeline.models import FileChange, FileEdit
from forgeline.patch import apply_changes
from forgeline.workspace.git import GitManager, GitOperationError, build_branch_name, run_git, validate_branch_name
from forgeline.workspace.manager import WorkspaceError

from tests.conftest import StubValidator, git


GREET_EDIT = FileChange(
    path="src/app.py",
    action="modify",
    edits=[FileEdit(search='return f"Hello, {name}"', replace='return f"Hi, {name}!"')],
)
NEW_FILE = FileChange(path="src/extra.py", action="create", content="EXTRA = True\n")


def test_prepare_workspace_clones_per_task(manager, source_repo, workspace):
    assert workspace == manager.workspace_for("demo", "a1b2c3d4e5f6")
    assert (workspace / "src" / "app.py").is_file()
    assert (manager.root / "demo" / ".base" / ".git").exists()
    assert GitManager(workspace).current_branch() == "main"


def test_prepare_workspace_resets_stale_task_dir(manager, source_repo, workspace):
    (workspace / "src" / "stray.py").write_text("x = 1\n")
    again = manager.prepare_workspace("demo", str(source_repo), "a1b2c3d4e5f6")
    assert again == workspace
    assert not (again / "src" / "stray.py").exists()


def test_prepare_workspace_without_source(manager):
    with pytest.raises(WorkspaceError):
        manager.prepare_workspace("demo", "", "task")


def test_commit_verified_changes(manager, store, workspace):
    original = (workspace / "src" / "app.py").read_text()
    files = [GREET_EDIT, NEW_FILE]
    apply_changes(workspace, files)

    change_id = store.save_code_change("a1b2c3d4e5f6", "Friendlier greeting", ["src/app.py", "src/extra.py"], 2)
    outcome = manager.commit_verified_changes(
        change_id, "Friendlier greeting", workspace, files,
        originals={"src/app.py": original, "src/extra.py": None},
    )

    assert outcome.success, outcome.error
    assert outcome.branch_name == build_branch_name(change_id)
    assert len(outcome.commits) == 1
    assert "Hi, {name}!" in outcome.diff

    git_mgr = GitManager(workspace)
    assert git_mgr.current_branch() == "main"
    assert git_mgr.branch_exists(outcome.branch_name)
    assert (workspace / "src" / "app.py").read_text() == original
    assert git(workspace, "log", "-1", "--format=%s", outcome.branch_name) == "forge: Friendlier greeting"

    change = store.get_code_change(change_id)
    assert change.status == "applied"
    assert change.applied_at
    snap = {s.path: s for s in change.snapshot}
    assert snap["src/app.py"].before == original
    assert "Hi, {name}!" in snap["src/app.py"].after
    assert snap["src/extra.py"].before is None


def test_apply_code_change_success(manager, store, workspace):
    change_id = store.save_code_change("a1b2c3d4e5f6", "Greeting", ["src/app.py"], 2)
    validator = StubValidator(output="[ruff] ok")

    outcome = manager.apply_code_change(change_id, [GREET_EDIT], workspace, validator)

    assert outcome.success
    assert validator.fixed == [["src/app.py"]]
    assert store.get_code_change(change_id).status == "applied"
    assert GitManager(workspace).branch_exists(outcome.branch_name)


def test_lint_failure_rolls_back_byte_identical(manager, store, workspace):
    app = workspace / "src" / "app.py"
    before = app.read_bytes()
    change_id = store.save_code_change("a1b2c3d4e5f6", "Greeting", ["src/app.py", "src/extra.py"], 2)

    outcome = manager.apply_code_change(
        change_id, [GREET_EDIT, NEW_FILE], workspace, StubValidator(success=False, output="src/app.py:1:1: E1 bad"),
    )

    assert not outcome.success
    assert outcome.error == "Lint validation failed"
    assert app.read_bytes() == before
    assert not (workspace / "src" / "extra.py").exists()
    git_mgr = GitManager(workspace)
    assert git_mgr.current_branch() == "main"
    assert not git_mgr.branch_exists(build_branch_name(change_id))

    change = store.get_code_change(change_id)
    assert change.status == "failed"
    assert "E1 bad" in change.test_output


def test_patch_failure_rolls_back(manager, store, workspace):
    bad = FileChange(path="src/app.py", action="modify", edits=[FileEdit(search="not there", replace="x")])
    change_id = store.save_code_change("a1b2c3d4e5f6", "Broken", ["src/extra.py", "src/app.py"], 2)

    outcome = manager.apply_code_change(change_id, [NEW_FILE, bad], workspace, StubValidator())

    assert not outcome.success
    assert "Search string not found" in outcome.error
    assert not (workspace / "src" / "extra.py").exists()
    assert store.get_code_change(change_id).status == "failed"


def test_branch_creation_failure_aborts_before_writing(manager, store, workspace):
    change_id = store.save_code_change("a1b2c3d4e5f6", "Greeting", ["src/app.py"], 2)
    git(workspace, "branch", build_branch_name(change_id))
    before = (workspace / "src" / "app.py").read_text()

    outcome = manager.apply_code_change(change_id, [GREET_EDIT], workspace, StubValidator())

    assert not outcome.success
    assert "branch creation failed" in outcome.error
    assert (workspace / "src" / "app.py").read_text() == before


def test_rollback_applied_change(manager, store, workspace):
    change_id = store.save_code_change("a1b2c3d4e5f6", "Greeting", ["src/app.py"], 2)
    outcome = manager.apply_code_change(change_id, [GREET_EDIT, NEW_FILE], workspace, StubValidator())
    assert outcome.success

    assert manager.rollback_code_change(change_id, workspace)
    assert store.get_code_change(change_id).status == "rolled_back"
    assert not GitManager(workspace).branch_exists(outcome.branch_name)
    assert not (workspace / "src" / "extra.py").exists()


def test_rollback_unknown_change(manager, workspace):
    assert not manager.rollback_code_change("ffffffff", workspace)


def test_restore_workspace_discards_uncommitted_writes(manager, workspace):
    original = (workspace / "src" / "app.py").read_text()
    apply_changes(workspace, [GREET_EDIT, NEW_FILE])

    manager.restore_workspace(workspace, ["src/app.py", "src/extra.py"])

    assert (workspace / "src" / "app.py").read_text() == original
    assert not (workspace / "src" / "extra.py").exists()


def test_read_files_state_skips_missing_and_escaping(manager, workspace):
    state = manager.read_files_state(workspace, ["src/app.py", "src/none.py", "../x.py"], max_chars=10)
    assert list(state) == ["src/app.py"]
    assert len(state["src/app.py"]) == 10


def test_git_whitelist(workspace):
    with pytest.raises(GitOperationError):
        run_git(workspace, "push", "origin", "main")
    with pytest.raises(GitOperationError):
        run_git(workspace, "checkout", "--force", "main")
    with pytest.raises(GitOperationError):
        validate_branch_name("main")
    validate_branch_name("forge/task-0a1b2c3d")
