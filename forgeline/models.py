"""
Forgeline data model.

Delegations come from the external planner, ForgePlans and FileChanges
are produced by the forge agents, ExecutionResults and CodeChanges are
what the pipeline persists.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TASK_CHARS = 500
MAX_EXPECTED_OUTPUT_CHARS = 500


# ---------------------------------------------------------------------------
# Delegations
# ---------------------------------------------------------------------------

class DecisionMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    impact: int = Field(ge=1, le=5)
    cost: int = Field(ge=1, le=5)
    risk: int = Field(ge=1, le=5)
    confidence: int = Field(ge=1, le=5)


class Delegation(BaseModel):
    """A unit of work the planner assigns to one agent for this cycle."""
    model_config = ConfigDict(frozen=True)

    agent: str = Field(min_length=1)
    task: str = Field(min_length=1)
    goal_id: str = Field(min_length=1)
    expected_output: str = ""
    deadline: str | None = None
    decision_metrics: DecisionMetrics

    @field_validator("task")
    @classmethod
    def _cap_task(cls, value: str) -> str:
        return value[:MAX_TASK_CHARS]

    @field_validator("expected_output")
    @classmethod
    def _cap_expected_output(cls, value: str) -> str:
        return value[:MAX_EXPECTED_OUTPUT_CHARS]


class RejectedDelegation(BaseModel):
    delegation: Delegation
    reason: str


class BlockedTask(BaseModel):
    agent: str
    task: str
    reason: str


# ---------------------------------------------------------------------------
# Forge plan + file changes
# ---------------------------------------------------------------------------

class ForgePlan(BaseModel):
    plan: str
    files_to_read: list[str] = Field(default_factory=list)
    files_to_modify: list[str] = Field(default_factory=list)
    files_to_create: list[str] = Field(default_factory=list)
    approach: str = ""
    estimated_risk: int = Field(default=2, ge=1, le=5)
    dependencies: list[str] = Field(default_factory=list)

    @property
    def planned_files(self) -> list[str]:
        """Every file the plan names, de-duplicated, in plan order."""
        seen: dict[str, None] = {}
        for path in [*self.files_to_modify, *self.files_to_create, *self.files_to_read]:
            seen.setdefault(path, None)
        return list(seen)

    @property
    def is_empty(self) -> bool:
        return not (self.files_to_read or self.files_to_modify or self.files_to_create)


class FileEdit(BaseModel):
    search: str = Field(min_length=1)
    replace: str
    line: int | None = None
    end_line: int | None = None


class FileChange(BaseModel):
    path: str = Field(min_length=1)
    action: Literal["create", "modify"]
    content: str = ""
    edits: list[FileEdit] | None = None


class CodeOutput(BaseModel):
    """Validated implementation-phase output."""
    description: str
    risk: int = Field(ge=1, le=5)
    rollback: str = ""
    files: list[FileChange] = Field(default_factory=list)

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]


# ---------------------------------------------------------------------------
# Execution results
# ---------------------------------------------------------------------------

ExecutionStatus = Literal["success", "partial_success", "failed", "infra_unavailable"]


class ExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent: str
    task: str
    status: ExecutionStatus
    output: str = ""
    error: str | None = None
    tokens_used: int | None = None
    execution_time_ms: int | None = None
    artifact_size_bytes: int | None = None


# ---------------------------------------------------------------------------
# Code changes (persisted)
# ---------------------------------------------------------------------------

CodeChangeStatus = Literal[
    "pending",
    "pending_approval",
    "approved",
    "applied",
    "failed",
    "rolled_back",
    "rejected",
]


class FileSnapshot(BaseModel):
    """One file of an applied change: what it held before and after."""
    path: str
    action: Literal["create", "modify"]
    before: str | None = None
    after: str = ""


class CodeChange(BaseModel):
    id: str
    task_id: str
    description: str
    files_changed: list[str] = Field(default_factory=list)
    diff: str | None = None
    risk: int
    status: CodeChangeStatus = "pending"
    test_output: str | None = None
    error: str | None = None
    approved_by: str | None = None
    approved_at: str | None = None
    applied_at: str | None = None
    branch_name: str | None = None
    commits: list[str] = Field(default_factory=list)
    pending_files: list[FileChange] = Field(default_factory=list)
    snapshot: list[FileSnapshot] = Field(default_factory=list)
    project_id: str | None = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row: Any) -> "CodeChange":
        data = dict(row)
        data["files_changed"] = json.loads(data.get("files_changed") or "[]")
        data["commits"] = json.loads(data.get("commits") or "[]")
        data["pending_files"] = json.loads(data.get("pending_files") or "[]")
        data["snapshot"] = json.loads(data.get("snapshot") or "[]")
        return cls(**data)

    @property
    def short_id(self) -> str:
        return self.id[:8]
