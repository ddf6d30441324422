"""
Output contracts for LLM replies.

Every parser takes raw model text and returns Ok(model) or Err(OutputError).
Models are lenient about length (overlong text is truncated) and strict
about shape (missing fields, wrong types and out-of-range metrics are
rejected).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from forgeline.models import CodeOutput, Delegation, FileChange, FileEdit, ForgePlan
from forgeline.result import Err, Ok, Result

MAX_PLAN_CHARS = 200
MAX_APPROACH_CHARS = 300
MAX_DESCRIPTION_CHARS = 200
MAX_REASONING_CHARS = 500
MAX_BRIEFING_CHARS = 2000

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class OutputError:
    kind: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


def strip_fences(text: str) -> str:
    content = text.strip()
    if content.startswith("```"):
        lines = [l for l in content.split("\n") if not l.strip().startswith("```")]
        content = "\n".join(lines)
    return content


def extract_json_object(text: str) -> Result[dict[str, Any], OutputError]:
    """Outermost {...} in the text, decoded."""
    match = _JSON_OBJECT.search(strip_fences(text))
    if not match:
        return Err(OutputError("no_json", "No JSON object found in output"))
    try:
        raw = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        return Err(OutputError("invalid_json", str(e)))
    if not isinstance(raw, dict):
        return Err(OutputError("invalid_json", "Top-level JSON value is not an object"))
    return Ok(raw)


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v]


# ---------------------------------------------------------------------------
# Planner (cycle) output
# ---------------------------------------------------------------------------

class DecisionNeeded(BaseModel):
    goal_id: str = Field(min_length=1)
    action: str = Field(min_length=1)
    reasoning: str = Field(min_length=1)

    @field_validator("reasoning")
    @classmethod
    def _cap_reasoning(cls, value: str) -> str:
        return value[:MAX_REASONING_CHARS]


class PlannerOutput(BaseModel):
    briefing: str = Field(min_length=1)
    next_24h_focus: str = Field(min_length=1)
    decisions_needed: list[DecisionNeeded]
    delegations: list[Delegation]
    tasks_killed: list[str]

    @field_validator("briefing")
    @classmethod
    def _cap_briefing(cls, value: str) -> str:
        return value[:MAX_BRIEFING_CHARS]


def parse_planner_output(text: str) -> Result[PlannerOutput, OutputError]:
    raw = extract_json_object(text)
    if isinstance(raw, Err):
        return raw
    try:
        return Ok(PlannerOutput.model_validate(raw.value))
    except ValidationError as e:
        logger.error(f"[PLANNER] Invalid planner output: {e.error_count()} error(s)")
        return Err(OutputError("schema", str(e)))


# ---------------------------------------------------------------------------
# Forge planning output
# ---------------------------------------------------------------------------

def parse_plan(text: str) -> Result[ForgePlan, OutputError]:
    raw = extract_json_object(text)
    if isinstance(raw, Err):
        logger.error(f"[FORGE] Planning output unusable: {raw.error}")
        return raw
    data = raw.value

    plan = data.get("plan")
    if not isinstance(plan, str) or not plan:
        return Err(OutputError("schema", "Missing or invalid plan"))

    files_to_read = _string_list(data.get("files_to_read"))
    files_to_modify = _string_list(data.get("files_to_modify"))
    files_to_create = _string_list(data.get("files_to_create"))
    if not (files_to_read or files_to_modify or files_to_create):
        return Err(OutputError("schema", "Plan has no files to read, modify, or create"))

    risk = data.get("estimated_risk")
    if isinstance(risk, (int, float)) and not isinstance(risk, bool):
        estimated_risk = int(min(5, max(1, risk)))
    else:
        estimated_risk = 2

    approach = data.get("approach")
    return Ok(ForgePlan(
        plan=plan[:MAX_PLAN_CHARS],
        files_to_read=files_to_read,
        files_to_modify=files_to_modify,
        files_to_create=files_to_create,
        approach=approach[:MAX_APPROACH_CHARS] if isinstance(approach, str) else plan[:MAX_APPROACH_CHARS],
        estimated_risk=estimated_risk,
        dependencies=_string_list(data.get("dependencies")),
    ))


def build_fallback_plan(delegation: Delegation) -> ForgePlan:
    return ForgePlan(
        plan=delegation.task[:MAX_PLAN_CHARS],
        approach=delegation.expected_output[:MAX_APPROACH_CHARS],
        estimated_risk=2,
    )


# ---------------------------------------------------------------------------
# Forge code output
# ---------------------------------------------------------------------------

def _parse_edits(raw_edits: list[Any], path: str) -> list[FileEdit] | None:
    edits = []
    for raw in raw_edits:
        if not isinstance(raw, dict):
            continue
        search, replace = raw.get("search"), raw.get("replace")
        if not isinstance(search, str) or not search:
            logger.warning(f"[FORGE] Skipping edit with invalid search string in {path}")
            continue
        if not isinstance(replace, str):
            logger.warning(f"[FORGE] Skipping edit with invalid replace string in {path}")
            continue
        line, end_line = raw.get("line"), raw.get("end_line", raw.get("endLine"))
        edits.append(FileEdit(
            search=search,
            replace=replace,
            line=line if isinstance(line, int) and not isinstance(line, bool) else None,
            end_line=end_line if isinstance(end_line, int) and not isinstance(end_line, bool) else None,
        ))
    return edits or None


def _parse_file_change(raw: Any) -> FileChange | None:
    if not isinstance(raw, dict):
        return None
    path, action = raw.get("path"), raw.get("action")
    if not isinstance(path, str) or not path:
        return None
    if action not in ("create", "modify"):
        return None

    content = raw.get("content")
    if action == "create":
        if not isinstance(content, str):
            return None
        return FileChange(path=path, action="create", content=content)

    raw_edits = raw.get("edits")
    if isinstance(raw_edits, list) and raw_edits:
        edits = _parse_edits(raw_edits, path)
        if edits is None:
            logger.error(f"[FORGE] All edits were invalid for {path}")
            return None
        return FileChange(path=path, action="modify", edits=edits)

    if isinstance(content, str) and content:
        logger.debug(f"[FORGE] {path}: modify using full content (no edits)")
        return FileChange(path=path, action="modify", content=content)
    return None


def parse_code_output(text: str) -> Result[CodeOutput, OutputError]:
    raw = extract_json_object(text)
    if isinstance(raw, Err):
        logger.error(f"[FORGE] Code output unusable: {raw.error}")
        return raw
    data = raw.value

    description = data.get("description")
    if not isinstance(description, str) or not description:
        return Err(OutputError("schema", "Missing or invalid description"))

    risk = data.get("risk")
    if isinstance(risk, bool) or not isinstance(risk, (int, float)) or not 1 <= risk <= 5:
        return Err(OutputError("schema", f"Invalid risk value: {risk!r}"))

    raw_files = data.get("files")
    if not isinstance(raw_files, list):
        return Err(OutputError("schema", "Missing files array"))

    rollback = data.get("rollback")
    files: list[FileChange] = []
    for entry in raw_files:
        parsed = _parse_file_change(entry)
        if parsed is None:
            path = entry.get("path") if isinstance(entry, dict) else None
            logger.warning(f"[FORGE] Skipping invalid file entry: {path!r}")
            continue
        files.append(parsed)

    if raw_files and not files:
        return Err(OutputError("schema", "All file entries were invalid"))
    if not raw_files:
        logger.info("[FORGE] Empty files array (task may already be done)")

    return Ok(CodeOutput(
        description=description[:MAX_DESCRIPTION_CHARS],
        risk=int(risk),
        rollback=rollback if isinstance(rollback, str) else "",
        files=files,
    ))
