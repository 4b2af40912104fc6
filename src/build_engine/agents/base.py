"""Shared types for team agents of the iteration loop."""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from src.domain.schema import AgentType, Framework, Persona

COMPLETION_SIGNAL = "COORDINATOR:"


class AgentError(Exception):
    """Exception raised when an agent cannot build its turn."""
    pass


@dataclass
class AgentContext:
    """Everything an agent needs to write its prompt for one step."""

    screen: str
    iteration: int
    idea: str = ""
    personas: List[Persona] = field(default_factory=list)
    feature_names: List[str] = field(default_factory=list)
    framework: Framework = Framework.REACT
    previous_feedback: Optional[str] = None
    role: str = ""

    @property
    def screen_slug(self) -> str:
        """Screen name safe for artifact paths."""
        return re.sub(r"[^a-zA-Z0-9-]", "-", self.screen).lower()

    @property
    def persona_names(self) -> str:
        return ", ".join(p.name for p in self.personas if p.name) or "General users"

    def persona_details(self) -> str:
        lines = []
        for persona in self.personas:
            backstory = str(getattr(persona, "backstory", "") or "Target user")
            lines.append(f"- {persona.name}: {backstory[:100]}...")
        return "\n".join(lines) or "- General user: Target user..."


@dataclass
class AgentTurn:
    """Prompt and status of one dispatched step."""

    agent_type: AgentType
    prompt: str
    status: str


class TeamAgent:
    """Base class of the role agents.

    Subclasses set ``AGENT_TYPE`` and implement ``build_prompt``.
    """

    AGENT_TYPE: AgentType = AgentType.COORDINATOR

    def status(self, context: AgentContext) -> str:
        return f"{context.role or 'Agent'} working on {context.screen}..."

    def build_prompt(self, context: AgentContext) -> str:
        raise NotImplementedError

    def turn(self, context: AgentContext) -> AgentTurn:
        """Build the turn for a step.

        Raises:
            AgentError: If the context has no screen to work on.
        """
        if not context.screen:
            raise AgentError(f"{type(self).__name__} needs a screen to work on.")
        return AgentTurn(
            agent_type=self.AGENT_TYPE,
            prompt=self.build_prompt(context),
            status=self.status(context),
        )
