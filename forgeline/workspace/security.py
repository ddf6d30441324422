"""
Path security for workspace writes.

Every path an agent wants to touch is checked here before anything is
written. Hard violations make the change invalid; a path outside the
stack's usual source directories is allowed but flags the change for
human approval.
"""

from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from forgeline.models import FileChange

DEFAULT_ALLOWED_DIRS: tuple[str, ...] = (
    "src/", "app/", "apps/", "components/", "packages/", "tests/", "test/",
    "lib/", "modules/", "pages/", "views/", "routes/", "middleware/",
    "utils/", "helpers/", "hooks/", "styles/", "public/",
)

ALLOWED_DIRS_BY_FRAMEWORK: dict[str, tuple[str, ...]] = {
    "nestjs": ("src/", "libs/", "test/", "apps/"),
    "nextjs": ("src/", "app/", "pages/", "components/", "lib/", "utils/", "hooks/", "styles/", "public/"),
    "express": ("src/", "routes/", "controllers/", "middleware/", "services/", "models/", "tests/"),
    "node": ("src/", "lib/", "test/", "tests/"),
    "react": ("src/", "components/", "hooks/", "utils/", "styles/", "pages/", "tests/"),
    "angular": ("src/", "e2e/"),
    "vue": ("src/", "components/", "views/", "store/", "router/", "tests/"),
    "python": ("src/", "lib/", "tests/", "test/", "docs/"),
    "default": DEFAULT_ALLOWED_DIRS,
}

FORBIDDEN_PREFIXES: tuple[str, ...] = (
    ".git/", "node_modules/", ".pnpm/", "docker/", "infra/",
    ".github/", ".vscode/", ".cursor/", ".venv/", "venv/", "__pycache__/",
)

FORBIDDEN_FILES: frozenset[str] = frozenset({
    ".env", ".env.local", ".env.production", ".env.staging", ".env.development",
    ".gitignore", ".npmrc", ".nvmrc", "manifest.yaml", "docker-compose.yml",
    "Dockerfile", "node_modules", "package-lock.json", "pnpm-lock.yaml",
    "yarn.lock", "poetry.lock", "uv.lock",
})

FORBIDDEN_EXTENSIONS: frozenset[str] = frozenset({
    ".pem", ".key", ".cert", ".crt", ".p12", ".pfx", ".jks",
})

ALLOWED_EXTENSIONS: frozenset[str] = frozenset({
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".json", ".css", ".scss",
    ".html", ".md", ".sql", ".yaml", ".yml",
    ".py", ".pyi", ".toml", ".cfg", ".ini", ".txt", ".rst",
})


class ProjectSecurityError(Exception):
    pass


# ---------------------------------------------------------------------------
# Project limits
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProjectLimits:
    max_risk_level: int
    max_files_per_change: int
    approval_required_above_risk: int


LIMITS_BY_PROFILE: dict[str, ProjectLimits] = {
    "low": ProjectLimits(max_risk_level=2, max_files_per_change=5, approval_required_above_risk=3),
    "medium": ProjectLimits(max_risk_level=3, max_files_per_change=3, approval_required_above_risk=3),
    "high": ProjectLimits(max_risk_level=4, max_files_per_change=2, approval_required_above_risk=2),
}


def get_project_limits(risk_profile: str) -> ProjectLimits:
    return LIMITS_BY_PROFILE.get(risk_profile, LIMITS_BY_PROFILE["medium"])


def allowed_dirs_for(framework: str, extra: list[str] | None = None) -> tuple[str, ...]:
    dirs = ALLOWED_DIRS_BY_FRAMEWORK.get(framework.lower(), DEFAULT_ALLOWED_DIRS)
    extras = tuple(d if d.endswith("/") else f"{d}/" for d in (extra or []))
    return dirs + extras


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class PathValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    requires_approval: bool = False


def _normalize(file_path: str) -> str:
    return posixpath.normpath(file_path.replace("\\", "/"))


def _is_absolute(path: str) -> bool:
    return path.startswith("/") or os.path.isabs(path) or (len(path) > 1 and path[1] == ":")


def _is_forbidden(normalized: str) -> bool:
    if any(normalized.startswith(prefix) for prefix in FORBIDDEN_PREFIXES):
        return True
    basename = posixpath.basename(normalized)
    if basename in FORBIDDEN_FILES or normalized in FORBIDDEN_FILES:
        return True
    return normalized.startswith(".env") or basename.startswith(".env")


def _traverses(normalized: str) -> bool:
    return ".." in normalized.split("/")


def _escapes(workspace: Path, normalized: str) -> bool:
    root = workspace.resolve()
    resolved = (root / normalized).resolve()
    return resolved != root and root not in resolved.parents


def check_path(file_path: str, workspace: Path) -> str | None:
    """Return an error message for a path that must never be written, else None."""
    normalized = _normalize(file_path)

    if _is_absolute(file_path) or _is_absolute(normalized):
        return f"Absolute path not allowed: {file_path}"
    if _traverses(normalized):
        return f"Path traversal detected: {file_path}"
    if _escapes(workspace, normalized):
        return f"Path escapes workspace: {file_path}"
    if _is_forbidden(normalized):
        return f"Forbidden path: {file_path}"

    ext = posixpath.splitext(normalized)[1].lower()
    if ext in FORBIDDEN_EXTENSIONS:
        return f"Forbidden extension (secret/cert): {ext} ({file_path})"
    if ext and ext not in ALLOWED_EXTENSIONS:
        return f"File extension not allowed: {ext} ({file_path})"
    return None


def validate_file_paths(
    files: list[FileChange],
    workspace: Path,
    allowed_dirs: tuple[str, ...] = DEFAULT_ALLOWED_DIRS,
) -> PathValidation:
    errors: list[str] = []
    requires_approval = False

    for change in files:
        error = check_path(change.path, workspace)
        if error:
            errors.append(error)
            continue
        normalized = _normalize(change.path)
        if not any(normalized.startswith(d) for d in allowed_dirs):
            requires_approval = True
            logger.info(f"[SECURITY] {change.path} is outside standard directories; approval required")

    if errors:
        logger.warning(f"[SECURITY] Rejected paths: {errors}")
    return PathValidation(valid=not errors, errors=errors, requires_approval=requires_approval)


def sanitize_workspace_path(workspace: Path, file_path: str) -> Path:
    """Resolve a relative path inside the workspace or raise ProjectSecurityError."""
    normalized = _normalize(file_path)
    if _is_absolute(file_path) or _is_absolute(normalized):
        raise ProjectSecurityError(f"Absolute path not allowed: {file_path}")
    if _traverses(normalized):
        raise ProjectSecurityError(f"Path traversal detected: {file_path}")
    if _escapes(workspace, normalized):
        raise ProjectSecurityError(f"Path escapes workspace: {file_path}")
    return workspace.resolve() / normalized
