"""
Implementer and Corrector — produce the file changes.

Both answer with the same CodeOutput JSON: a description, a risk score
and a list of create/modify entries. Modify entries carry search/replace
edits copied verbatim from the file content they were shown.
"""

from __future__ import annotations

from forgeline.agents import AgentContext, BaseAgent, render_files
from forgeline.agents.parsing import OutputError, parse_code_output
from forgeline.models import CodeOutput
from forgeline.result import Result
from forgeline.router import RouterResponse

MAX_ERROR_CHARS = 2000
TREE_MAX_CHARS = 3000

CODE_OUTPUT_FORMAT = """Output format (plain JSON, no fences):
{
  "description": "Short description of the change (max 200 chars)",
  "risk": <number 1-5>,
  "rollback": "How to undo the change",
  "files": [
    {
      "path": "relative/path/file.ts",
      "action": "modify",
      "edits": [
        { "search": "exact excerpt of the current file", "replace": "the excerpt with the change" }
      ]
    },
    {
      "path": "relative/path/new_file.ts",
      "action": "create",
      "content": "complete content of the new file"
    }
  ]
}"""


class ImplementerAgent(BaseAgent):
    role = "implementer"

    system_prompt = f"""You are the implementation stage of an autonomous code-change pipeline.

You are editing the REAL code of a project. Everything you need is in the prompt
(file tree plus file contents). Respond with valid JSON ONLY.

Rules per action:
1. "create": put the complete file in "content".
2. "modify": use "edits" with search/replace blocks.
   - Copy "search" EXACTLY as it appears in the code shown, including indentation.
   - Include 2-3 lines of context before and after the line you change.
   - Optionally add "line" and "end_line" for a line-range edit.
   - To delete code, use an empty "replace".
   - Never use "content" for modify.

Knock-on effects: when you remove the last use of an import or variable, remove
its declaration too. Every edit must leave the file syntactically valid.

If the task is ALREADY implemented in the code shown, return an empty "files" list.

{CODE_OUTPUT_FORMAT}
"""

    def run(self, context: AgentContext, **kwargs) -> CodeOutput:
        kwargs["response_format"] = {"type": "json_object"}
        kwargs.setdefault("action", "forge_execution")
        return super().run(context, **kwargs)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        plan = context.plan
        lines = [
            f"Task: {context.task}",
            f"Expected result: {context.expected_output}",
            f"Goal ID: {context.goal_id}",
            f"Stack: {context.language or 'unknown'}/{context.framework}",
            "",
        ]
        if plan is not None:
            lines += [
                "Execution plan:",
                f"- Approach: {plan.approach}",
                f"- Files to modify: {', '.join(plan.files_to_modify) or 'none'}",
                f"- Files to create: {', '.join(plan.files_to_create) or 'none'}",
            ]
            if plan.dependencies:
                lines.append(f"- Dependencies: {'; '.join(plan.dependencies)}")
            lines.append("")

        lines += [
            "Project structure:",
            context.file_tree[:TREE_MAX_CHARS],
            "",
            f"Directories open for writing: {', '.join(context.allowed_dirs)}",
            render_files(context.file_context, "Real project code:"),
            "",
            "Modify ONLY files whose content is shown above. Make the minimal change the task needs.",
            "Respond with JSON only.",
        ]
        return [self._system_msg(), self._user_msg("\n".join(lines))]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> Result[CodeOutput, OutputError]:
        return parse_code_output(response.content)


class CorrectorAgent(ImplementerAgent):
    """Repairs a change that failed to apply or failed validation."""

    role = "corrector"

    def run(self, context: AgentContext, **kwargs) -> CodeOutput:
        kwargs.setdefault("action", "forge_correction")
        return super().run(context, **kwargs)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        restored = bool(context.extra.get("workspace_restored"))
        state_label = "ORIGINAL" if restored else "CURRENT"

        lines = [
            f"Task: {context.task}",
            f"Expected result: {context.expected_output}",
            f"Goal ID: {context.goal_id}",
            "",
        ]
        if context.plan is not None:
            lines += ["Original plan:", f"- Approach: {context.plan.approach}", ""]
        lines += [
            "Project structure:",
            context.file_tree[:2000],
            "",
            f"Directories open for writing: {', '.join(context.allowed_dirs)}",
        ]

        applied = context.extra.get("applied_files") or []
        if applied:
            lines += ["", "Edits already applied successfully:", *[f"  - {f}" for f in applied]]

        failed_file = context.extra.get("failed_file")
        if failed_file:
            idx = context.extra.get("failed_edit_index")
            suffix = f" (edit {idx + 1})" if isinstance(idx, int) else ""
            lines += ["", f"Failed edit: {failed_file}{suffix}", "Fix ONLY this edit, copying the file state below exactly."]

        if context.attempt_history:
            lines += ["", "Previous attempts:", *[f"  {a}" for a in context.attempt_history],
                      "Do NOT repeat a failed strategy."]

        escalation = context.extra.get("escalation_snippets")
        if escalation:
            lines += ["", "Extra context for the files with errors:", escalation]

        if restored:
            lines += [
                "",
                "The workspace was RESTORED to its original state. None of your previous edits are on disk.",
                "Produce EVERY edit the task needs, starting from the original files.",
            ]

        lines += [
            render_files(context.file_context, f"{state_label} state of the files on disk:"),
            "Error from the previous attempt:",
            context.error_output[:MAX_ERROR_CHARS],
            "",
            "Correction rules:",
            f"1. 'search' MUST be an exact copy of lines that exist in the {state_label} state above.",
            "2. If the error is 'Search string not found', re-read the file and copy it character for character,",
            "   or use 'line'/'end_line'. If the file does not need to change, drop it from the list.",
            "3. Fix only the reported errors. No extra changes.",
            "4. Remove unused imports you introduced.",
            "5. Respond with JSON only.",
        ]
        return [self._system_msg(), self._user_msg("\n".join(lines))]
