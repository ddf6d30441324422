"""
Configuration loader for Forgeline.
Merges packaged defaults with per-repo .forgeline/config.yaml overrides
and a small set of environment overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    planner: str = "gemini/gemini-3.1-pro-preview"
    implementer: str = "gemini/gemini-3.1-pro-preview"
    corrector: str = "gemini/gemini-3.1-pro-preview"
    tester: str = "gemini/gemini-3-flash-preview"
    research: str = "gemini/gemini-3-flash-preview"
    content: str = "gemini/gemini-3-flash-preview"


class LLMConfig(BaseModel):
    timeout_seconds: float = 30.0
    max_retries: int = Field(default=3, ge=1)
    temperature: float = 0.2
    max_output_tokens: int = 4096


class BudgetConfig(BaseModel):
    monthly_token_limit: int = 500_000
    per_agent_monthly_limit: int = 500_000
    per_task_token_limit: int = 50_000
    max_tasks_per_day: int = 10
    warning_threshold_percent: int = 20
    planning_token_limit: int = 8_000
    per_task_dollar_limit: float = 10.0


class ForgeConfig(BaseModel):
    max_correction_rounds: int = Field(default=3, ge=0)
    context_max_chars: int = 60_000
    max_context_files: int = 15
    run_build: bool = False
    build_timeout: int = 120
    enable_planning_preview: bool = True
    enable_import_expansion: bool = True
    enable_framework_rules: bool = True
    enable_test_execution: bool = False
    test_timeout: int = 120
    enable_auto_fix: bool = True
    max_files_per_change: int = 5
    lint_timeout: int = 60


class ValidationConfig(BaseModel):
    """Explicit validation commands. Unset entries are derived from the project stack."""
    lint_command: list[str] | None = None
    fix_command: list[str] | None = None
    typecheck_command: list[str] | None = None
    build_command: list[str] | None = None
    test_command: list[str] | None = None


class WorkspaceConfig(BaseModel):
    root: str = ".forgeline/workspaces"
    base_branch: str = "main"
    install_dependencies: bool = True
    install_timeout: int = 120
    artifacts_dir: str = ".forgeline/artifacts"


class ProjectConfig(BaseModel):
    id: str = "default"
    repo_source: str = ""
    language: str = ""
    framework: str = "default"
    risk_profile: Literal["low", "medium", "high"] = "low"
    allowed_dirs: list[str] = Field(default_factory=list)


class StateConfig(BaseModel):
    db_path: str = ".forgeline/forgeline.db"


class ApprovalConfig(BaseModel):
    risk_threshold: int = Field(default=3, ge=1, le=5)


class NotifyConfig(BaseModel):
    channel: Literal["console", "file", "none"] = "console"
    file_path: str = ".forgeline/notifications.log"


class ForgelineConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    forge: ForgeConfig = Field(default_factory=ForgeConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "BUDGET_MONTHLY_TOKENS": ("budget", "monthly_token_limit"),
    "BUDGET_PER_AGENT_TOKENS": ("budget", "per_agent_monthly_limit"),
    "BUDGET_PER_TASK_TOKENS": ("budget", "per_task_token_limit"),
    "BUDGET_MAX_TASKS_DAY": ("budget", "max_tasks_per_day"),
    "FORGELINE_DB_PATH": ("state", "db_path"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, (section, key) in _ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        overrides.setdefault(section, {})[key] = raw
    return overrides


def load_config(repo_path: Path | None = None, environ: dict[str, str] | None = None) -> ForgelineConfig:
    """
    Load config by merging:
      1. Built-in defaults (forgeline/config.yaml)
      2. Repo-level overrides (<repo>/.forgeline/config.yaml)
      3. Environment variable overrides (budget limits, db path)
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if repo_path:
        repo_config = repo_path / ".forgeline" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    env = os.environ if environ is None else environ
    base = _deep_merge(base, _env_overrides(dict(env)))

    return ForgelineConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
