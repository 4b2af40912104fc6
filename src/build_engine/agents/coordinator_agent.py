"""Coordinator Agent - generic review turn for custom team roles."""

from src.build_engine.agents.base import COMPLETION_SIGNAL, AgentContext, TeamAgent
from src.domain.schema import AgentType


class CoordinatorAgent(TeamAgent):
    """Any team member without a dedicated agent reviews the current state."""

    AGENT_TYPE = AgentType.COORDINATOR

    def build_prompt(self, context: AgentContext) -> str:
        role = context.role or "Reviewer"
        return f"""{role.upper()} TURN - Screen: {context.screen} (Iteration {context.iteration})

You are the {role} on this team. Review the current state and provide your professional input.

PROJECT CONTEXT:
- Idea: {context.idea}
- Target Users: {context.persona_names}

When done, signal: "{COMPLETION_SIGNAL} {role} review complete. Ready for next agent."
"""
