"""
Agent executors — one per delegation agent type.

The cycle runner dispatches each delegation to the executor registered
for its `agent` field. Every executor returns an ExecutionResult and
writes an audit record, success or failure.
"""

from __future__ import annotations

import re
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Protocol

from loguru import logger

from forgeline.agents import AgentContext, OutputParseError, TextAgent
from forgeline.agents.writer import ContentAgent, ResearchAgent
from forgeline.approval import Notifier, NullNotifier, notify_safely
from forgeline.budget import TokenLedger
from forgeline.config_loader import ForgelineConfig
from forgeline.event_bus import EventBus
from forgeline.forge.executor import ForgeExecutor
from forgeline.models import Delegation, ExecutionResult, ExecutionStatus
from forgeline.router import BudgetExceededError, InfraUnavailableError, LLMError, Router
from forgeline.store import StateStore, hash_content
from forgeline.workspace.manager import WorkspaceManager


class AgentExecutor(Protocol):
    agent: str

    def execute(self, delegation: Delegation, trace_id: str) -> ExecutionResult: ...


RouterFactory = Callable[[TokenLedger], Router]


def _slug(text: str, max_len: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-") or "note"


# ---------------------------------------------------------------------------
# Text executors (research, content)
# ---------------------------------------------------------------------------

class TextExecutor:
    """Runs a TextAgent and stores its markdown under the artifacts dir."""

    agent = "text"
    agent_class: type[TextAgent] = ResearchAgent
    artifact_subdir = "notes"

    def __init__(
        self,
        config: ForgelineConfig,
        store: StateStore,
        artifacts_root: Path,
        router_factory: RouterFactory | None = None,
    ):
        self.config = config
        self.store = store
        self.artifacts_root = artifacts_root
        self._router_factory = router_factory or (lambda ledger: Router(config, ledger=ledger))

    def _context(self, delegation: Delegation) -> AgentContext:
        return AgentContext(
            task=delegation.task,
            expected_output=delegation.expected_output,
            goal_id=delegation.goal_id,
        )

    def _artifact_path(self, delegation: Delegation) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        return self.artifacts_root / self.artifact_subdir / f"{stamp}-{_slug(delegation.task)}.md"

    def _write_artifact(self, delegation: Delegation, text: str) -> Path:
        path = self._artifact_path(delegation)
        path.parent.mkdir(parents=True, exist_ok=True)
        header = f"<!-- goal: {delegation.goal_id} | task: {delegation.task} -->\n\n"
        path.write_text(header + text, encoding="utf-8")
        return path

    def _delivered(self, delegation: Delegation, path: Path, text: str) -> str:
        return f"Note saved to {path}"

    def execute(self, delegation: Delegation, trace_id: str) -> ExecutionResult:
        start = time.monotonic()
        task_id = uuid.uuid4().hex
        router = self._router_factory(TokenLedger(self.store, self.agent, task_id, self.config.budget))
        agent = self.agent_class(router)

        status: ExecutionStatus = "success"
        output = ""
        error = None
        try:
            text = agent.run(self._context(delegation))
            path = self._write_artifact(delegation, text)
            output = self._delivered(delegation, path, text)
            logger.info(f"[{self.agent.upper()}] {output}")
        except InfraUnavailableError as e:
            status, error = "infra_unavailable", str(e)
        except (LLMError, BudgetExceededError, OutputParseError, OSError) as e:
            status, error = "failed", f"{type(e).__name__}: {e}"
            logger.error(f"[{self.agent.upper()}] {error}")

        self.store.log_audit(
            self.agent, delegation.task, hash_content(delegation.task), hash_content(output or error or ""),
        )
        return ExecutionResult(
            agent=self.agent,
            task=delegation.task,
            status=status,
            output=output,
            error=error,
            tokens_used=router.budget.usage.total_tokens,
            execution_time_ms=int((time.monotonic() - start) * 1000),
            artifact_size_bytes=len(output.encode()) if output else None,
        )


class ResearchExecutor(TextExecutor):
    agent = "research"
    agent_class = ResearchAgent
    artifact_subdir = "research"


class ContentExecutor(TextExecutor):
    """Drafts are saved as pending and announced; nothing is published."""

    agent = "content"
    agent_class = ContentAgent
    artifact_subdir = "drafts"

    def __init__(self, *args, notifier: Notifier | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.notifier = notifier or NullNotifier()

    def _artifact_path(self, delegation: Delegation) -> Path:
        path = super()._artifact_path(delegation)
        return path.with_name(f"pending-{path.name}")

    def _delivered(self, delegation: Delegation, path: Path, text: str) -> str:
        notify_safely(self.notifier, f"Draft ready for review: {delegation.task}\n{path}")
        return f"Draft pending review at {path}"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def build_executors(
    config: ForgelineConfig,
    store: StateStore,
    workspace_manager: WorkspaceManager,
    base_dir: Path,
    notifier: Notifier | None = None,
    router_factory: RouterFactory | None = None,
    bus: EventBus | None = None,
) -> dict[str, AgentExecutor]:
    artifacts = base_dir / config.workspace.artifacts_dir
    executors: list[AgentExecutor] = [
        ForgeExecutor(config, store, workspace_manager, notifier=notifier, router_factory=router_factory, bus=bus),
        ResearchExecutor(config, store, artifacts, router_factory=router_factory),
        ContentExecutor(config, store, artifacts, router_factory=router_factory, notifier=notifier),
    ]
    return {e.agent: e for e in executors}
