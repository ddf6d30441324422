"""
Research and content agents.

Neither touches a repository. Research produces a markdown note, content
produces a draft that waits for a human before it goes anywhere.
"""

from __future__ import annotations

from forgeline.agents import AgentContext, TextAgent


class ResearchAgent(TextAgent):
    role = "research"

    system_prompt = """You are a research analyst supporting a small product team.

Produce a concise markdown research note for the task you are given:
- Start with a one-paragraph summary.
- Follow with findings as bullet points, each with a confidence (high/medium/low).
- End with concrete recommendations.
Do not invent sources or statistics. Say so when something is unknown."""

    def run(self, context: AgentContext, **kwargs) -> str:
        kwargs.setdefault("action", "research")
        return super().run(context, **kwargs)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        user_content = f"""Task: {context.task}
Expected output: {context.expected_output or 'A research note'}
Goal ID: {context.goal_id}

Write the research note in markdown."""
        return [self._system_msg(), self._user_msg(user_content)]


class ContentAgent(TextAgent):
    role = "content"

    system_prompt = """You draft written content (posts, announcements, docs copy) for a product team.

Write a single ready-to-review draft in markdown. Match the requested format and
audience. Keep claims factual and avoid superlatives. The draft will be reviewed
by a human before publication."""

    def run(self, context: AgentContext, **kwargs) -> str:
        kwargs.setdefault("action", "content_draft")
        return super().run(context, **kwargs)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        user_content = f"""Task: {context.task}
Expected output: {context.expected_output or 'A draft'}
Goal ID: {context.goal_id}

Write the draft."""
        return [self._system_msg(), self._user_msg(user_content)]
