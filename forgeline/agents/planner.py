"""
Planner — decides which files a task touches before any code is written.

Read-only: it sees the file tree and a preview of likely files, and
answers with a ForgePlan. A replan carries the failed plan and what the
failed files actually contain.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from forgeline.agents import AgentContext, BaseAgent, PlanParseError, render_files
from forgeline.agents.parsing import OutputError, parse_plan
from forgeline.models import ForgePlan
from forgeline.result import Ok, Result
from forgeline.router import RouterResponse

TREE_MAX_CHARS_WITH_PREVIEW = 3000
TREE_MAX_CHARS = 4000


class PlannerAgent(BaseAgent):
    role = "planner"
    parse_error_type = PlanParseError

    system_prompt = """You are the planning stage of an autonomous code-change pipeline.

Your job in this step is to PLAN the change, not to make it.
You MUST respond with a valid JSON object ONLY. No markdown, no commentary.

Output schema:
{
  "plan": "Short description of what needs to change (max 200 chars)",
  "files_to_read": ["path/to/context_file.ts"],
  "files_to_modify": ["path/to/file.ts"],
  "files_to_create": [],
  "approach": "Technical approach (max 300 chars)",
  "estimated_risk": 2,
  "dependencies": ["Anything that must be checked first"]
}

Rules:
- files_to_read: every file you need to see to understand the change
  (callers, parents, types, config, routes).
- files_to_modify: only files that will actually change.
- files_to_create: only new files.
- Use REAL paths from the file tree. Never invent a path.
- estimated_risk: 1 (trivial) to 5 (high impact).
- If the task is already implemented, leave files_to_modify EMPTY.
- Prefer files whose NAME or EXPORTS relate directly to the task keywords.
  Infrastructure config (logger, database, cache, throttling) is not UI or theme code.
"""

    def run(self, context: AgentContext, **kwargs) -> ForgePlan:
        kwargs["response_format"] = {"type": "json_object"}
        kwargs.setdefault("action", "forge_planning")
        return super().run(context, **kwargs)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        lines = [
            f"Task: {context.task}",
            f"Expected result: {context.expected_output}",
            f"Goal ID: {context.goal_id}",
            f"Stack: {context.language or 'unknown'}/{context.framework}",
            "",
        ]

        if context.failed_plan is not None:
            lines += self._replan_section(context)

        preview = render_files(context.file_context, "Preview of the most relevant files:")
        if preview:
            lines += [preview, "If the task is ALREADY implemented in the code above, leave files_to_modify empty.", ""]

        tree_cap = TREE_MAX_CHARS_WITH_PREVIEW if context.file_context else TREE_MAX_CHARS
        lines += [
            "Project structure:",
            context.file_tree[:tree_cap],
            "",
            f"Directories open for writing: {', '.join(context.allowed_dirs)}",
            "",
            "Produce your plan as JSON.",
        ]
        return [self._system_msg(), self._user_msg("\n".join(lines))]

    @staticmethod
    def _replan_section(context: AgentContext) -> list[str]:
        failed = context.failed_plan
        section = [
            "=== REPLANNING: THE PREVIOUS PLAN FAILED ===",
            "You MUST choose DIFFERENT files.",
            f"- Previous approach: {failed.approach}",
            f"- Files it tried to modify: {', '.join(failed.files_to_modify) or 'none'}",
            f"- Why it failed: {context.replan_context or 'unknown'}",
            "",
        ]
        snippets = context.extra.get("failed_file_snippets") or {}
        if snippets:
            section.append("What those files actually contain (first 40 lines):")
            for path, snippet in snippets.items():
                section += [f"--- {path} ---", snippet, "--- end ---"]
            section += ["These files do NOT hold the code you expected. Pick other files.", ""]
        return section

    def parse_response(self, response: RouterResponse, context: AgentContext) -> Result[ForgePlan, OutputError]:
        parsed = parse_plan(response.content)
        if isinstance(parsed, Ok):
            plan = parsed.value
            logger.info(
                f"[FORGE] Plan ready — "
                f"{len(plan.files_to_modify)} to modify, "
                f"{len(plan.files_to_create)} to create, "
                f"{len(plan.files_to_read)} to read, "
                f"risk={plan.estimated_risk}"
            )
        return parsed


def summarize_plan(plan: ForgePlan) -> dict[str, Any]:
    return {
        "plan": plan.plan,
        "modify": plan.files_to_modify,
        "create": plan.files_to_create,
        "read": plan.files_to_read,
        "risk": plan.estimated_risk,
    }
