from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class Phase(str, Enum):
    PLANNING = "planning"
    CONTEXT_LOADING = "context_loading"
    IMPLEMENTATION = "implementation"
    VALIDATION = "validation"
    CORRECTION = "correction"
    TESTING = "testing"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (Phase.DONE, Phase.FAILED)


class ForgeRun(BaseModel):
    """The 'Working Memory' for one delegation going through the forge."""
    task_id: str
    task: str
    phase: Phase = Phase.PLANNING
    phase_history: list[Phase] = Field(default_factory=lambda: [Phase.PLANNING])
    rounds_used: int = 0
    replans: int = 0
    tokens_used: int = 0
    files_in_scope: list[str] = Field(default_factory=list)
    attempt_history: list[str] = Field(default_factory=list)
    last_error: str = ""

    def record_attempt(self, round_number: int, kind: str, summary: str) -> None:
        self.attempt_history.append(f"Round {round_number} ({kind}): {summary[:150]}")

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    def persist(self, ws_path: Path) -> None:
        """Write current state to workspace for debugging/auditing."""
        state_dir = ws_path / ".forgeline"
        state_dir.mkdir(parents=True, exist_ok=True)
        (state_dir / "forge_run.json").write_text(self.to_json())
