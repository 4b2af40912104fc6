"""UX Designer Agent - turns a screen name and feedback into requirements."""

from src.build_engine.agents.base import COMPLETION_SIGNAL, AgentContext, TeamAgent
from src.domain.schema import AgentType


class UXAgent(TeamAgent):
    """UX Designer preparing screen requirements for the developer."""

    AGENT_TYPE = AgentType.UX
    ROLE_NAMES = ("UX", "UX Designer")

    def status(self, context: AgentContext) -> str:
        if context.iteration == 1:
            return "Creating initial screen requirements..."
        return "Updating requirements based on feedback..."

    def build_prompt(self, context: AgentContext) -> str:
        feedback = ""
        if context.previous_feedback:
            feedback = f"\nPREVIOUS USER FEEDBACK TO ADDRESS:\n{context.previous_feedback}\n"
        mode = (
            "This is the FIRST iteration. Design this screen from scratch with mock data."
            if context.iteration == 1
            else "ITERATION MODE: Address the feedback above and create UPDATED requirements."
        )
        features = ", ".join(context.feature_names) or "(See generated features)"
        return f"""UX DESIGNER AGENT - Screen: "{context.screen}" (Iteration {context.iteration})
{feedback}
You are the UX Designer agent. Prepare detailed requirements for the Developer agent.

PROJECT CONTEXT:
- Product Idea: {context.idea}
- Target Users: {context.persona_names}
- Features: {features}

CURRENT SCREEN: {context.screen}

{mode}

Create a detailed UX specification covering:
1. Screen Layout - overall structure and the hierarchy of key sections
2. UI Components - each component with its styling and states
3. Content & Data - realistic mock data, text content and labels
4. Interactions - click/tap behaviours, hover states, transitions
5. User Flow - entry points to this screen and next steps

Save the specification as a file:
<write_file path=".buildmode/artifacts/{context.screen_slug}/iteration-{context.iteration}/ux-spec.md">
# UX Specification - {context.screen} (Iteration {context.iteration})

(Your full specification here)
</write_file>

When requirements are ready, end with:
"{COMPLETION_SIGNAL} UX requirements complete. Ready for Developer agent."
"""
