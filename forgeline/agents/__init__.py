"""
Forgeline Agent Roster

Each agent is:
  - A system prompt
  - A message template built from an AgentContext
  - A parser that turns the reply into a typed value

Agents are stateless between runs. State lives in the workspace and
the store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from forgeline.agents.parsing import OutputError
from forgeline.models import ForgePlan
from forgeline.result import Err, Ok, Result
from forgeline.router import Router, RouterResponse


class OutputParseError(Exception):
    """The model replied, but not in the shape the agent asked for."""

    def __init__(self, agent: str, error: OutputError):
        super().__init__(f"[{agent}] {error}")
        self.agent = agent
        self.error = error


class PlanParseError(OutputParseError):
    pass


class AgentContext(BaseModel):
    """Shared context passed to every agent invocation."""
    task: str
    expected_output: str = ""
    goal_id: str = ""
    language: str = ""
    framework: str = "default"
    file_tree: str = ""
    allowed_dirs: list[str] = Field(default_factory=list)
    plan: ForgePlan | None = None
    failed_plan: ForgePlan | None = None
    file_context: dict[str, str] = Field(default_factory=dict)  # path → content
    error_output: str = ""
    replan_context: str = ""
    attempt_history: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)


class BaseAgent(ABC):
    """
    Base class for all Forgeline agents.

    Subclasses define:
      - role: str — maps to router model
      - system_prompt: str — agent personality + constraints
      - build_messages() — constructs the chat messages
      - parse_response() — extracts structured output
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."
    parse_error_type: type[OutputParseError] = OutputParseError

    def __init__(self, router: Router):
        self.router = router
        self.last_response: RouterResponse | None = None

    def run(self, context: AgentContext, **kwargs) -> Any:
        """Execute the agent: build messages → call model → parse."""
        messages = self.build_messages(context)
        response = self.router.complete(
            role=self.role,
            messages=messages,
            **kwargs,
        )
        self.last_response = response
        parsed = self.parse_response(response, context)
        if isinstance(parsed, Err):
            raise self.parse_error_type(self.role, parsed.error)
        return parsed.value

    @abstractmethod
    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        """Build the message list for the LLM call."""
        ...

    @abstractmethod
    def parse_response(self, response: RouterResponse, context: AgentContext) -> Result[Any, OutputError]:
        """Parse the LLM response into structured output."""
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}


def render_files(file_context: dict[str, str], header: str = "Relevant file contents:") -> str:
    if not file_context:
        return ""
    parts = [f"\n\n{header}\n"]
    for fname, content in file_context.items():
        parts.append(f"\n--- {fname} ---\n{content}\n")
    return "".join(parts)


class TextAgent(BaseAgent):
    """Agents whose deliverable is free-form markdown."""

    def parse_response(self, response: RouterResponse, context: AgentContext) -> Result[str, OutputError]:
        text = response.content.strip()
        if not text:
            return Err(OutputError("empty", "Model returned no text"))
        return Ok(text)
