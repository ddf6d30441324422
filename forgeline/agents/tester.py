"""
Test writer — adds tests for a change that already passed validation.

It may only create files, and only under test locations. Anything else
in its reply is dropped before the patch engine sees it.
"""

from __future__ import annotations

from posixpath import basename

from loguru import logger

from forgeline.agents import AgentContext, render_files
from forgeline.agents.implementer import CODE_OUTPUT_FORMAT, ImplementerAgent
from forgeline.agents.parsing import OutputError, parse_code_output
from forgeline.models import CodeOutput
from forgeline.result import Ok, Result
from forgeline.router import RouterResponse

TEST_MARKERS = ("/__tests__/", "/tests/", "/test/", ".test.", ".spec.")


def is_test_path(path: str) -> bool:
    name = basename(path)
    padded = f"/{path}"
    return (
        any(marker in padded for marker in TEST_MARKERS)
        or name.startswith("test_")
        or name.endswith("_test.py")
    )


class TestWriterAgent(ImplementerAgent):
    """Writes new test files for the changed sources."""

    __test__ = False  # not a pytest class

    role = "tester"

    system_prompt = f"""You write focused automated tests for a change that was just made.

Rules:
- Only CREATE new test files. Never modify source files.
- Follow the test framework and file layout the project already uses.
- Test observable behaviour of the changed code, not its internals.
- Keep it small: one test file per changed source file at most.
- Respond with valid JSON ONLY.

{CODE_OUTPUT_FORMAT}
"""

    def run(self, context: AgentContext, **kwargs) -> CodeOutput:
        kwargs.setdefault("action", "forge_testing")
        return super().run(context, **kwargs)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        changed = context.extra.get("changed_files") or list(context.file_context)
        lines = [
            f"Task that was implemented: {context.task}",
            f"Expected result: {context.expected_output}",
            "",
            f"Changed files: {', '.join(changed)}",
            render_files(context.file_context, "Changed code:"),
            "",
            "Project structure:",
            context.file_tree[:2000],
            "",
            "Write tests for the change. Respond with JSON only.",
        ]
        return [self._system_msg(), self._user_msg("\n".join(lines))]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> Result[CodeOutput, OutputError]:
        parsed = parse_code_output(response.content)
        if not isinstance(parsed, Ok):
            return parsed
        output = parsed.value
        kept = [f for f in output.files if f.action == "create" and is_test_path(f.path)]
        dropped = len(output.files) - len(kept)
        if dropped:
            logger.warning(f"[FORGE] Test writer proposed {dropped} non-test change(s); ignored")
        return Ok(output.model_copy(update={"files": kept}))
