"""
Patch Engine

Applies search/replace edits to file content. Each edit runs against the
output of the previous one, so a later search must match already-mutated
text.

Per edit, in order:
  1. exact substring (first occurrence)
  2. trimmed multi-line window (first window wins)
  3. single trimmed line, then substring inside a line
  4. explicit line range, when the edit carries one

Failures come back as Err values, never exceptions. An edit whose match
lands inside text written by an earlier edit of the same batch is a
collision and fails the batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

from loguru import logger

from forgeline.models import FileChange, FileEdit
from forgeline.result import Err, Ok, Result
from forgeline.workspace.security import ProjectSecurityError, sanitize_workspace_path

MAX_SNIPPET_CHARS = 1500
MIN_WORD_MATCH_SCORE = 2
SNIPPET_HEAD_LINES = 40


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SearchNotFound:
    path: str
    preview: str
    edit_index: int = 0
    total_edits: int = 1
    snippet: str = ""

    @property
    def message(self) -> str:
        head = (
            f"Search string not found in {self.path} "
            f"(edit {self.edit_index + 1} of {self.total_edits}): \"{self.preview[:100]}...\""
        )
        return f"{head}\n{self.snippet}" if self.snippet else head


@dataclass(frozen=True)
class EditCollision:
    path: str
    edit_index: int
    overlapped_index: int

    @property
    def message(self) -> str:
        return (
            f"Edit {self.edit_index + 1} in {self.path} matches text already rewritten "
            f"by edit {self.overlapped_index + 1}"
        )


@dataclass(frozen=True)
class FileUnavailable:
    path: str
    detail: str

    @property
    def message(self) -> str:
        return f"{self.detail}: {self.path}"


PatchError = Union[SearchNotFound, EditCollision, FileUnavailable]


class PatchApplyError(Exception):
    """Raised by callers that need exception semantics (rollback paths)."""

    def __init__(self, failure: PatchError):
        super().__init__(failure.message)
        self.failure = failure


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Match:
    start: int
    end: int
    strategy: str


def _line_offset(lines: list[str], upto: int) -> int:
    return sum(len(line) + 1 for line in lines[:upto])


def _match_trimmed_lines(lines: list[str], search_lines: list[str]) -> Match | None:
    n = len(search_lines)
    for i in range(len(lines) - n + 1):
        if all(lines[i + j].strip() == search_lines[j] for j in range(n)):
            start = _line_offset(lines, i)
            end = _line_offset(lines, i + n)
            # window end excludes the newline after the last matched line
            return Match(start, max(end - 1, 0), "trimmed-lines")
    return None


def _match_single_line(lines: list[str], needle: str) -> Match | None:
    for i, line in enumerate(lines):
        if line.strip() == needle:
            start = _line_offset(lines, i)
            return Match(start, start + len(line), "single-line-trim")

    for i, line in enumerate(lines):
        pos = line.find(needle)
        if pos != -1:
            start = _line_offset(lines, i) + pos
            return Match(start, start + len(needle), "substring")
    return None


def fuzzy_line_match(content: str, search: str) -> Match | None:
    lines = content.split("\n")
    search_lines = [s.strip() for s in search.split("\n") if s.strip()]
    if not search_lines:
        return None

    match = _match_trimmed_lines(lines, search_lines)
    if match:
        return match
    if len(search_lines) == 1:
        return _match_single_line(lines, search_lines[0])
    return None


def _match_line_range(content: str, line: int, end_line: int) -> Match | None:
    lines = content.split("\n")
    lo, hi = line - 1, end_line - 1
    if lo < 0 or hi >= len(lines) or lo > hi:
        return None
    start = _line_offset(lines, lo)
    end = _line_offset(lines, hi) + len(lines[hi])
    return Match(start, end, "line-range")


def find_match(content: str, edit: FileEdit) -> Match | None:
    exact = content.find(edit.search)
    if exact != -1:
        return Match(exact, exact + len(edit.search), "exact")

    fuzzy = fuzzy_line_match(content, edit.search)
    if fuzzy:
        return fuzzy

    if edit.line is not None and edit.end_line is not None:
        return _match_line_range(content, edit.line, edit.end_line)
    return None


def build_error_snippet(content: str, failed_search: str) -> str:
    """Show the model the region it most likely meant, or the head of the file."""
    lines = content.split("\n")
    first = failed_search.split("\n")[0].strip().lower()
    words = [w for w in first.split() if len(w) > 2]

    best_idx, best_score = -1, 0
    for i, line in enumerate(lines):
        lowered = line.strip().lower()
        if not lowered:
            continue
        score = sum(1 for w in words if w in lowered)
        if score > best_score:
            best_idx, best_score = i, score

    if best_idx >= 0 and best_score >= MIN_WORD_MATCH_SCORE:
        start = max(0, best_idx - 5)
        end = min(len(lines), best_idx + 15)
        body = "\n".join(f"{start + k + 1}| {l}" for k, l in enumerate(lines[start:end]))
        return f"RELEVANT FILE REGION (lines {start + 1}-{end}):\n{body[:MAX_SNIPPET_CHARS]}"

    body = "\n".join(f"{k + 1}| {l}" for k, l in enumerate(lines[:SNIPPET_HEAD_LINES]))
    return f"FILE START (first {SNIPPET_HEAD_LINES} lines):\n{body[:MAX_SNIPPET_CHARS]}"


# ---------------------------------------------------------------------------
# Applying
# ---------------------------------------------------------------------------

@dataclass
class _Written:
    start: int
    end: int
    edit_index: int


def apply_edits(content: str, edits: list[FileEdit], path: str) -> Result[str, PatchError]:
    """Apply edits in order. Returns the final content or the first failure."""
    written: list[_Written] = []

    for idx, edit in enumerate(edits):
        occurrences = content.count(edit.search)
        if occurrences > 1:
            logger.warning(f"[PATCH] {occurrences} matches for edit {idx + 1} in {path}; using the first")

        match = find_match(content, edit)
        if match is None:
            logger.warning(f"[PATCH] Search not found in {path}: {edit.search[:80]!r}")
            return Err(SearchNotFound(
                path=path,
                preview=edit.search[:150],
                edit_index=idx,
                total_edits=len(edits),
                snippet=build_error_snippet(content, edit.search),
            ))

        for prior in written:
            if match.start < prior.end and prior.start < match.end:
                return Err(EditCollision(path=path, edit_index=idx, overlapped_index=prior.edit_index))

        if match.strategy != "exact":
            logger.debug(f"[PATCH] {path} edit {idx + 1} matched via {match.strategy}")

        content = content[:match.start] + edit.replace + content[match.end:]

        shift = len(edit.replace) - (match.end - match.start)
        for prior in written:
            if prior.start >= match.end:
                prior.start += shift
                prior.end += shift
        written.append(_Written(match.start, match.start + len(edit.replace), idx))

    return Ok(content)


@dataclass
class PatchPlan:
    """Computed file contents for a batch, not yet on disk."""
    writes: dict[Path, str] = field(default_factory=dict)
    applied: list[str] = field(default_factory=list)


def plan_changes(workspace: Path, changes: list[FileChange]) -> Result[PatchPlan, PatchError]:
    """Resolve every change in memory. Nothing touches disk."""
    plan = PatchPlan()
    for change in changes:
        try:
            full_path = sanitize_workspace_path(workspace, change.path)
        except ProjectSecurityError as e:
            return Err(FileUnavailable(path=change.path, detail=str(e)))

        if change.action == "create" or not change.edits:
            plan.writes[full_path] = change.content
            plan.applied.append(change.path)
            continue

        # a file may appear twice in one batch; later entries see earlier output
        if full_path in plan.writes:
            current = plan.writes[full_path]
        else:
            try:
                current = full_path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return Err(FileUnavailable(path=change.path, detail="File not found for modify"))

        outcome = apply_edits(current, change.edits, change.path)
        if isinstance(outcome, Err):
            return outcome
        plan.writes[full_path] = outcome.value
        plan.applied.append(change.path)
    return Ok(plan)


def write_plan(plan: PatchPlan) -> None:
    for full_path, content in plan.writes.items():
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")


def apply_changes(workspace: Path, changes: list[FileChange]) -> Result[list[str], PatchError]:
    """All-or-nothing: if any edit fails, no file in the batch is written."""
    planned = plan_changes(workspace, changes)
    if isinstance(planned, Err):
        return planned
    try:
        write_plan(planned.value)
    except OSError as e:
        return Err(FileUnavailable(path=", ".join(planned.value.applied), detail=f"Disk write failed ({e})"))
    logger.info(f"[PATCH] Applied {len(planned.value.applied)} file change(s)")
    return Ok(planned.value.applied)
