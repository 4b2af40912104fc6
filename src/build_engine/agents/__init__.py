"""Team agents of the iteration loop."""

from src.build_engine.agents.base import AgentContext, AgentError, AgentTurn, TeamAgent
from src.build_engine.agents.coordinator_agent import CoordinatorAgent
from src.build_engine.agents.developer_agent import DeveloperAgent
from src.build_engine.agents.user_feedback_agent import FeedbackSummary, UserFeedbackAgent, parse_feedback
from src.build_engine.agents.ux_agent import UXAgent


def agent_for_role(role: str) -> TeamAgent:
    """Pick the agent playing a team-flow role; unknown roles get the coordinator."""
    for agent_cls in (UserFeedbackAgent, UXAgent, DeveloperAgent):
        if role in agent_cls.ROLE_NAMES:
            return agent_cls()
    return CoordinatorAgent()


__all__ = [
    "AgentContext",
    "AgentError",
    "AgentTurn",
    "CoordinatorAgent",
    "DeveloperAgent",
    "FeedbackSummary",
    "TeamAgent",
    "UXAgent",
    "UserFeedbackAgent",
    "agent_for_role",
    "parse_feedback",
]
