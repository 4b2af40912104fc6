"""Build-mode domain models: stages, artifacts, iteration state and logs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base model serialised with camelCase keys on the message protocol."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Dump to a JSON-compatible dict with camelCase keys."""
        return self.model_dump(by_alias=True, mode="json")


class StageName(str, Enum):
    """Planning stages in pipeline order."""

    IDEA = "idea"
    USERS = "users"
    FEATURES = "features"
    TEAM = "team"
    STORIES = "stories"
    DESIGN = "design"


STAGE_ORDER: List[StageName] = list(StageName)


class UpdateType(str, Enum):
    """Kind of payload carried by a stream update."""

    PERSONA = "persona"
    FEATURE = "feature"
    STORY = "story"
    FLOW = "flow"
    SCREEN = "screen"
    TEXT = "text"


class AgentType(str, Enum):
    """Agent roles known to the iteration loop."""

    UX = "ux"
    DEVELOPER = "developer"
    USER_FEEDBACK = "user-feedback"
    COORDINATOR = "coordinator"


class Framework(str, Enum):
    """Target frameworks for the developer agent."""

    REACT = "react"
    FLUTTER = "flutter"
    HTML = "html"
    VUE = "vue"
    NEXTJS = "nextjs"


USER_FEEDBACK_ROLE = "User Feedback"
MANDATORY_ROLES = ("UX", "Developer")


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first non-empty value among keys."""
    for key in keys:
        value = data.get(key)
        if value not in (None, "", []):
            return value
    return default


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


# =============================================================================
# Artifacts
# =============================================================================


class Persona(WireModel):
    """Target user persona. Unknown fields from the model are preserved."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    name: str = ""

    @classmethod
    def from_llm_response(cls, data: Dict[str, Any], index: int) -> "Persona":
        """Build a persona from loosely-shaped model output.

        Args:
            data: Raw persona object.
            index: Zero-based position in the persona list.
        """
        payload = dict(data)
        payload["id"] = str(_pick(data, "id", default=index + 1))
        payload["name"] = str(data.get("name") or "")
        return cls.model_validate(payload)


class Feature(WireModel):
    """Product feature scored 0-10."""

    id: str
    name: str = "Unnamed Feature"
    description: str = ""
    score: Union[int, float] = 5
    frequency: str = "Weekly"
    priority: str = "Should-Have"
    personas: List[str] = Field(default_factory=list)

    @classmethod
    def from_llm_response(cls, data: Dict[str, Any], index: int) -> "Feature":
        """Build a feature, filling defaults for missing fields."""
        score = data.get("score")
        try:
            score = min(10, max(0, float(score))) if score is not None else 5
        except (TypeError, ValueError):
            score = 5
        if isinstance(score, float) and score.is_integer():
            score = int(score)
        return cls(
            id=str(_pick(data, "id", default=index + 1)),
            name=str(_pick(data, "name", "title", default="Unnamed Feature")),
            description=str(data.get("description") or ""),
            score=score,
            frequency=str(data.get("frequency") or "Weekly"),
            priority=str(data.get("priority") or "Should-Have"),
            personas=[str(p) for p in _as_list(data.get("personas"))],
        )


class ClarifyingQuestion(WireModel):
    """Open question attached to a story."""

    question: str
    answer: str = ""


class Story(WireModel):
    """User story with requirements and clarifying questions."""

    id: str
    title: str = "Untitled Story"
    description: str = ""
    requirements: List[str] = Field(default_factory=list)
    clarifying_questions: List[ClarifyingQuestion] = Field(default_factory=list)
    expanded: bool = False

    @classmethod
    def from_llm_response(cls, data: Dict[str, Any], index: int) -> "Story":
        """Build a story; plain-string questions become unanswered questions."""
        questions = []
        for item in _as_list(_pick(data, "clarifyingQuestions", "clarifying_questions")):
            if isinstance(item, str):
                questions.append(ClarifyingQuestion(question=item))
            elif isinstance(item, dict) and item.get("question"):
                questions.append(
                    ClarifyingQuestion(question=str(item["question"]), answer=str(item.get("answer") or ""))
                )
        return cls(
            id=str(_pick(data, "id", default=index + 1)),
            title=str(_pick(data, "title", "name", default="Untitled Story")),
            description=str(data.get("description") or ""),
            requirements=[str(r) for r in _as_list(data.get("requirements"))],
            clarifying_questions=questions,
            expanded=False,
        )


class Flow(WireModel):
    """User flow across screens."""

    id: str
    name: str = "Unnamed Flow"
    description: str = ""
    steps: List[Any] = Field(default_factory=list)

    @classmethod
    def from_llm_response(cls, data: Dict[str, Any], index: int) -> "Flow":
        return cls(
            id=str(_pick(data, "id", default=index + 1)),
            name=str(data.get("name") or "Unnamed Flow"),
            description=str(data.get("description") or ""),
            steps=_as_list(data.get("steps")),
        )


class Screen(WireModel):
    """Product screen to be designed and built by the team."""

    id: str
    name: str = "Unnamed Screen"
    purpose: str = ""
    ui_elements: List[Any] = Field(default_factory=list)
    user_actions: List[Any] = Field(default_factory=list)

    @classmethod
    def from_llm_response(cls, data: Dict[str, Any], index: int) -> "Screen":
        """Build a screen, accepting the older description/elements/actions keys."""
        return cls(
            id=str(_pick(data, "id", default=index + 1)),
            name=str(data.get("name") or "Unnamed Screen"),
            purpose=str(_pick(data, "purpose", "description", default="")),
            ui_elements=_as_list(_pick(data, "uiElements", "ui_elements", "elements")),
            user_actions=_as_list(_pick(data, "userActions", "user_actions", "actions")),
        )


Artifact = Union[Persona, Feature, Story, Flow, Screen]

ARTIFACT_TYPES: Dict[UpdateType, type] = {
    UpdateType.PERSONA: Persona,
    UpdateType.FEATURE: Feature,
    UpdateType.STORY: Story,
    UpdateType.FLOW: Flow,
    UpdateType.SCREEN: Screen,
}


# =============================================================================
# Stages and projects
# =============================================================================


class StageError(WireModel):
    """Failure recorded on a stage record so the generation can be retried."""

    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    retryable: bool = True
    partial_item_count: int = 0


class StageRecord(WireModel):
    """Persisted data and completion bit of one stage."""

    stage: StageName
    completed: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utcnow)
    version: str = "1.0"
    error: Optional[StageError] = None


class Project(WireModel):
    """A build-mode project and its stage records."""

    id: str
    title: str
    created_at: datetime = Field(default_factory=utcnow)
    stages: Dict[StageName, StageRecord] = Field(default_factory=dict)

    def completion_map(self) -> Dict[StageName, bool]:
        """Completion flag for every stage, False when no record exists."""
        return {
            stage: bool(self.stages.get(stage) and self.stages[stage].completed)
            for stage in STAGE_ORDER
        }


class StageStatus(WireModel):
    """Per-stage entry of the build state master record."""

    completed: bool = False
    path: str = ""
    updated_at: Optional[datetime] = None
    error: Optional[StageError] = None


class BuildState(WireModel):
    """Master record of a project, rewritten on every stage save."""

    project_name: str
    project_title: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    stages: Dict[StageName, StageStatus] = Field(default_factory=dict)


# =============================================================================
# Iteration loop
# =============================================================================


class UserRating(WireModel):
    """Rating given by one persona during the feedback round."""

    persona_name: str
    rating: Union[int, float] = 5
    feedback: str = ""


class FeedbackReport(WireModel):
    """Outcome recorded for a screen when it is approved."""

    screen: str
    feedback: str
    average_rating: Optional[float] = None
    iteration: int
    files: List[str] = Field(default_factory=list, description="Paths generated for the screen")


class GeneratedFile(WireModel):
    """File produced by an agent during an iteration step."""

    path: str
    content: str = ""
    screen: str = ""
    iteration: int = 1


class IterationState(WireModel):
    """Immutable snapshot of the iteration loop. Transitions return copies."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    active: bool = False
    current_screen_index: int = 0
    current_team_member_index: int = 0
    iteration_count: int = 0
    screen_list: List[str] = Field(default_factory=list)
    team_flow: List[str] = Field(default_factory=list)
    framework: Framework = Framework.REACT
    feedback_reports: List[FeedbackReport] = Field(default_factory=list)
    waiting_for_user_approval: bool = False
    step_complete: bool = True
    step_dispatched: bool = False
    auto_run: bool = True
    current_agent: Optional[AgentType] = None
    agent_status: str = ""
    user_ratings: List[UserRating] = Field(default_factory=list)
    average_rating: Optional[float] = None
    consolidated_feedback: Optional[str] = None
    pending_feedback: Optional[str] = None
    generated_files: List[GeneratedFile] = Field(default_factory=list)
    screenshot_url: Optional[str] = None
    screenshot_pending: bool = False
    screenshot_error: Optional[str] = None

    @property
    def current_screen(self) -> Optional[str]:
        if 0 <= self.current_screen_index < len(self.screen_list):
            return self.screen_list[self.current_screen_index]
        return None

    @property
    def current_role(self) -> Optional[str]:
        if 0 <= self.current_team_member_index < len(self.team_flow):
            return self.team_flow[self.current_team_member_index]
        return None

    @property
    def is_last_role(self) -> bool:
        return self.current_team_member_index == len(self.team_flow) - 1


class ResponseEnvelope(WireModel):
    """Structured agent reply: completion flag plus produced artifacts."""

    done: bool = False
    artifacts: List[Dict[str, Any]] = Field(default_factory=list)
    text: str = ""


# =============================================================================
# Build log and usage
# =============================================================================


class LogEntryType(str, Enum):
    """Build log entry kinds."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    ERROR = "error"


class LogMetadata(WireModel):
    model: Optional[str] = None
    tokens: Optional[int] = None
    duration: Optional[float] = None


class BuildLogEntry(WireModel):
    """One append-only build log line."""

    timestamp: datetime = Field(default_factory=utcnow)
    type: LogEntryType
    stage: str
    content: str
    metadata: Optional[LogMetadata] = None


class BuildLog(WireModel):
    """Per-project build log document."""

    project_title: str = ""
    entries: List[BuildLogEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)


class UsageCounter(WireModel):
    """Token usage counters."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def plus(self, other: "UsageCounter") -> "UsageCounter":
        """Return a new counter with other's usage added."""
        return UsageCounter(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class DomainEvent(BaseModel):
    """Domain event emitted by the engine."""

    id: UUID = Field(default_factory=uuid4, description="Event identifier")
    event_type: str = Field(description="Event type")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event payload")
    project_id: Optional[str] = Field(None, description="Project the event belongs to")
    trace_id: Optional[str] = Field(None, description="Trace identifier")
    occurred_at: datetime = Field(default_factory=utcnow, description="Event timestamp")
