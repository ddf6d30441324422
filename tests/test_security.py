from pathlib import Path

import pytest

from forgeline.models import FileChange
from forgeline.workspace.security import (
    ProjectSecurityError,
    allowed_dirs_for,
    check_path,
    get_project_limits,
    sanitize_workspace_path,
    validate_file_paths,
)


def _files(*paths: str) -> list[FileChange]:
    return [FileChange(path=p, action="create", content="x") for p in paths]


@pytest.mark.parametrize("path", [
    "/etc/passwd",
    "../../etc/passwd",
    "../outside.py",
    "src/../../outside.py",
    ".env",
    "config/.env.production",
    ".git/config",
    "node_modules/lib/index.js",
    ".github/workflows/ci.yml",
    "Dockerfile",
    "deploy/Dockerfile",
    "package-lock.json",
    "poetry.lock",
    "certs/server.pem",
    "src/tool.exe",
])
def test_hard_violations(tmp_path: Path, path: str):
    assert check_path(path, tmp_path) is not None


@pytest.mark.parametrize("path", [
    "src/app.py",
    "src/components/Button.tsx",
    "tests/test_app.py",
    "README.md",
    "src/release..notes.md",
])
def test_acceptable_paths(tmp_path: Path, path: str):
    assert check_path(path, tmp_path) is None


def test_outside_standard_dirs_requires_approval(tmp_path: Path):
    result = validate_file_paths(_files("src/app.py", "scripts/deploy.py"), tmp_path)
    assert result.valid
    assert result.requires_approval


def test_inside_standard_dirs_needs_no_approval(tmp_path: Path):
    result = validate_file_paths(_files("src/app.py", "lib/util.py"), tmp_path)
    assert result.valid
    assert not result.requires_approval


def test_any_violation_invalidates_the_batch(tmp_path: Path):
    result = validate_file_paths(_files("src/app.py", ".env"), tmp_path)
    assert not result.valid
    assert result.errors == ["Forbidden path: .env"]


def test_framework_dirs_and_extras():
    dirs = allowed_dirs_for("NestJS", ["scripts"])
    assert "libs/" in dirs
    assert "scripts/" in dirs
    assert allowed_dirs_for("unknown-framework")[0] == "src/"


def test_project_limits_by_profile():
    assert get_project_limits("low").max_risk_level == 2
    assert get_project_limits("high").max_files_per_change == 2
    assert get_project_limits("nonsense") == get_project_limits("medium")


def test_sanitize_workspace_path(tmp_path: Path):
    assert sanitize_workspace_path(tmp_path, "src/a.py") == tmp_path.resolve() / "src" / "a.py"
    assert sanitize_workspace_path(tmp_path, "src/a..b.py") == tmp_path.resolve() / "src" / "a..b.py"
    with pytest.raises(ProjectSecurityError):
        sanitize_workspace_path(tmp_path, "../a.py")
    with pytest.raises(ProjectSecurityError):
        sanitize_workspace_path(tmp_path, "/abs/a.py")
