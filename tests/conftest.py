from __future__ import annotations

import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest
from tenacity import wait_none

from forgeline.config_loader import ForgelineConfig
from forgeline.forge.validation import ValidationResult
from forgeline.models import DecisionMetrics, Delegation
from forgeline.router import Router
from forgeline.store import StateStore
from forgeline.workspace.manager import WorkspaceManager


def make_delegation(
    task: str = "Add a health check endpoint",
    agent: str = "forge",
    impact: int = 3,
    cost: int = 2,
    risk: int = 2,
    confidence: int = 3,
    goal_id: str = "goal-1",
    expected_output: str = "",
) -> Delegation:
    return Delegation(
        agent=agent,
        task=task,
        goal_id=goal_id,
        expected_output=expected_output,
        decision_metrics=DecisionMetrics(impact=impact, cost=cost, risk=risk, confidence=confidence),
    )


class StubValidator:
    """Stands in for the lint/type-check runner."""

    def __init__(self, success: bool = True, output: str = ""):
        self.success = success
        self.output = output
        self.fixed: list[list[str]] = []

    def auto_fix(self, files):
        self.fixed.append(list(files))

    def run(self, files):
        return ValidationResult(success=self.success, output=self.output)

    def run_related_tests(self, files, extra_tests=None):
        return ValidationResult(success=True, output="[tests] none")


def llm_reply(content: str, prompt_tokens: int = 100, completion_tokens: int = 50) -> SimpleNamespace:
    """Shaped like a litellm ModelResponse, as far as the router reads it."""
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


class ScriptedRouter(Router):
    """Answers from a queue of replies. Exceptions in the queue are raised from the provider call."""

    def __init__(self, config, replies: list, ledger=None, max_tokens=None, parent=None):
        super().__init__(config, ledger=ledger, wait=wait_none(), max_tokens=max_tokens, parent=parent)
        self.replies = replies
        self.requests: list[dict] = parent.requests if parent is not None else []

    def sub_router(self, max_tokens: int) -> "ScriptedRouter":
        return ScriptedRouter(self.config, self.replies, ledger=self.ledger, max_tokens=max_tokens, parent=self)

    def _call(self, kwargs):
        self.requests.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return llm_reply(reply)

    def prompt(self, index: int) -> str:
        return self.requests[index]["messages"][-1]["content"]


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "state" / "forgeline.db")


@pytest.fixture
def config() -> ForgelineConfig:
    cfg = ForgelineConfig()
    cfg.workspace.install_dependencies = False
    return cfg


@pytest.fixture
def git_identity(monkeypatch):
    for var, value in {
        "GIT_AUTHOR_NAME": "Forgeline Test",
        "GIT_AUTHOR_EMAIL": "test@forgeline.local",
        "GIT_COMMITTER_NAME": "Forgeline Test",
        "GIT_COMMITTER_EMAIL": "test@forgeline.local",
    }.items():
        monkeypatch.setenv(var, value)


@pytest.fixture
def source_repo(tmp_path: Path, git_identity) -> Path:
    """A small committed repository on `main`."""
    repo = tmp_path / "source"
    (repo / "src").mkdir(parents=True)
    (repo / "src" / "app.py").write_text(
        "def greet(name):\n"
        "    return f\"Hello, {name}\"\n"
        "\n"
        "\n"
        "def farewell(name):\n"
        "    return f\"Bye, {name}\"\n",
        encoding="utf-8",
    )
    (repo / "README.md").write_text("# demo\n", encoding="utf-8")
    git(repo, "init", "-q", "-b", "main")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def manager(config, store, tmp_path: Path) -> WorkspaceManager:
    return WorkspaceManager(config, store, root=tmp_path / "workspaces")


@pytest.fixture
def workspace(manager, source_repo) -> Path:
    """Task checkout of `source_repo` for project `demo`."""
    return manager.prepare_workspace("demo", str(source_repo), "a1b2c3d4e5f6")
