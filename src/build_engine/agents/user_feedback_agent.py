"""User Feedback Agent - persona roleplay, ratings and consolidated feedback."""

from dataclasses import dataclass, field
from typing import Any, List, Optional

from src.build_engine.agents.base import COMPLETION_SIGNAL, AgentContext, TeamAgent
from src.build_engine.json_parser import JsonParser
from src.domain.schema import USER_FEEDBACK_ROLE, AgentType, UserRating
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class FeedbackSummary:
    """Ratings and feedback extracted from a feedback reply."""

    user_ratings: List[UserRating] = field(default_factory=list)
    average_rating: Optional[float] = None
    consolidated_feedback: Optional[str] = None
    recommendation: Optional[str] = None


def _rating_value(raw: Any) -> float:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return raw
    try:
        return float(str(raw).split("/")[0].strip())
    except ValueError:
        return 5.0


def _bullets(title: str, items: Any) -> str:
    if not isinstance(items, list) or not items:
        return ""
    return f"{title}:\n" + "\n".join(f"• {item}" for item in items)


def parse_feedback(text: str) -> Optional[FeedbackSummary]:
    """Extract the JSON ratings summary from a feedback reply.

    The average is the model-supplied ``averageRating`` when present,
    otherwise the arithmetic mean of the persona ratings.

    Returns:
        FeedbackSummary, or None when the reply holds no ratings list.
    """
    result = JsonParser.parse(text)
    data = result.data if result.success else None
    if not isinstance(data, dict) or not isinstance(data.get("ratings"), list):
        logger.info("user_feedback_agent.no_ratings_found", parsed=result.success)
        return None

    ratings = [
        UserRating(
            persona_name=str(entry.get("persona") or entry.get("name") or "Unknown"),
            rating=_rating_value(entry.get("rating")),
            feedback=str(entry.get("summary") or entry.get("feedback") or ""),
        )
        for entry in data["ratings"]
        if isinstance(entry, dict)
    ]

    supplied = data.get("averageRating")
    if isinstance(supplied, (int, float)) and not isinstance(supplied, bool):
        average: Optional[float] = float(supplied)
    elif ratings:
        average = sum(float(r.rating) for r in ratings) / len(ratings)
    else:
        average = None

    recommendation = data.get("recommendation")
    parts = [
        _bullets("Top Issues", data.get("topIssues")),
        _bullets("Quick Wins", data.get("quickWins")),
        f"Recommendation: {recommendation}" if recommendation else "",
    ]
    consolidated = "\n\n".join(part for part in parts if part)
    return FeedbackSummary(
        user_ratings=ratings,
        average_rating=average,
        consolidated_feedback=consolidated or None,
        recommendation=str(recommendation) if recommendation else None,
    )


class UserFeedbackAgent(TeamAgent):
    """Roleplays every active persona and rates the screen 0-10."""

    AGENT_TYPE = AgentType.USER_FEEDBACK
    ROLE_NAMES = (USER_FEEDBACK_ROLE,)

    def status(self, context: AgentContext) -> str:
        return "Collecting user feedback and ratings..."

    def build_prompt(self, context: AgentContext) -> str:
        return f"""USER FEEDBACK ROUND - Screen: "{context.screen}"

STEP 1: Review the screenshot (if attached) or describe the current state of the screen.

STEP 2: Roleplay as EACH of these target users and provide feedback:
{context.persona_details()}

For EACH user persona, provide:

### [Persona Name]
**First Impression:** (What do you notice first?)
**Rating: X/10**
**Likes:** what works well
**Frustrations:** what doesn't work
**Confusions:** what's unclear
**Would Return:** Yes/No - brief reason

STEP 3: After all personas, output a JSON summary:
```json
{{
  "ratings": [
    {{"persona": "Name", "rating": 8, "summary": "Brief feedback"}}
  ],
  "averageRating": 7.5,
  "recommendation": "approve or iterate",
  "topIssues": ["Most important problem"],
  "quickWins": ["Cheap improvement"]
}}
```

Save the report as a file:
<write_file path=".buildmode/artifacts/{context.screen_slug}/iteration-{context.iteration}/user-feedback.md">
# User Feedback Report - {context.screen} (Iteration {context.iteration})
</write_file>

When complete, end with: "{COMPLETION_SIGNAL} User feedback complete. Awaiting approval."
"""
