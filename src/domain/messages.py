"""Tagged-union message envelopes exchanged between the engine and its host.

Every message carries a literal ``type`` discriminator and is serialised with
camelCase keys. ``parse_inbound`` validates a raw envelope into the matching
model; unknown types raise ``pydantic.ValidationError``.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Type, Union, get_args

from pydantic import Field, TypeAdapter

from src.domain.schema import (
    BuildLogEntry,
    BuildState,
    ResponseEnvelope,
    StageName,
    UpdateType,
    UsageCounter,
    WireModel,
)


# =============================================================================
# Outbound (engine -> host)
# =============================================================================


class GenerateContentStreaming(WireModel):
    type: Literal["generate-content-streaming"] = "generate-content-streaming"
    project_id: str
    stage: StageName
    prompt: str
    system_prompt: str = ""


class UserInput(WireModel):
    type: Literal["user-input"] = "user-input"
    mode: str = "build"
    value: str
    context_files: List[str] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)


class SaveStageFile(WireModel):
    type: Literal["save-stage-file"] = "save-stage-file"
    project_id: str
    stage: StageName
    data: Dict[str, Any] = Field(default_factory=dict)
    completed: bool = False


class LoadStageFile(WireModel):
    type: Literal["load-stage-file"] = "load-stage-file"
    project_id: str
    stage: StageName


class CaptureScreenshot(WireModel):
    type: Literal["capture-screenshot"] = "capture-screenshot"
    url: str


class AppendBuildLog(WireModel):
    type: Literal["append-build-log"] = "append-build-log"
    project_id: str
    entry: BuildLogEntry


class ResetTokenUsage(WireModel):
    type: Literal["reset-token-usage"] = "reset-token-usage"


class RetryGeneration(WireModel):
    """Ask the host to load a failed stage's partial content and answer with retry-ready."""

    type: Literal["retry-generation"] = "retry-generation"
    project_id: str
    stage: StageName


OutboundMessage = Annotated[
    Union[
        GenerateContentStreaming,
        UserInput,
        SaveStageFile,
        LoadStageFile,
        CaptureScreenshot,
        AppendBuildLog,
        ResetTokenUsage,
        RetryGeneration,
    ],
    Field(discriminator="type"),
]


# =============================================================================
# Inbound (host -> engine)
# =============================================================================


class StreamUpdate(WireModel):
    """Incremental generation result for one stage."""

    type: Literal["stream-update"] = "stream-update"
    stage: StageName
    update_type: UpdateType = UpdateType.TEXT
    data: Any = None
    index: int = 0
    complete: bool = False
    error: Optional[str] = None


class StageFilePayload(WireModel):
    data: Dict[str, Any] = Field(default_factory=dict)
    completed: bool = False


class StageFileLoaded(WireModel):
    type: Literal["stage-file-loaded"] = "stage-file-loaded"
    stage: StageName
    data: Optional[StageFilePayload] = None


class RetryReady(WireModel):
    type: Literal["retry-ready"] = "retry-ready"
    stage: StageName
    project_id: Optional[str] = None
    partial_content: Optional[Dict[str, Any]] = None
    partial_item_count: int = 0


class ScreenshotCaptured(WireModel):
    type: Literal["screenshot-captured"] = "screenshot-captured"
    screenshot: str


class ScreenshotError(WireModel):
    type: Literal["screenshot-error"] = "screenshot-error"
    message: str = "Unknown error"


class UsageUpdate(WireModel):
    type: Literal["usage-update"] = "usage-update"
    usage: UsageCounter


class BuildStateMessage(WireModel):
    type: Literal["build-state"] = "build-state"
    build_state: Optional[BuildState] = None


class AssistantResponse(WireModel):
    """Complete reply to a user-input message."""

    type: Literal["assistant-response"] = "assistant-response"
    text: str = ""
    envelope: Optional[ResponseEnvelope] = None
    model: Optional[str] = None


InboundMessage = Annotated[
    Union[
        StreamUpdate,
        StageFileLoaded,
        RetryReady,
        ScreenshotCaptured,
        ScreenshotError,
        UsageUpdate,
        BuildStateMessage,
        AssistantResponse,
    ],
    Field(discriminator="type"),
]

INBOUND_TYPES: Tuple[Type[WireModel], ...] = get_args(get_args(InboundMessage)[0])
OUTBOUND_TYPES: Tuple[Type[WireModel], ...] = get_args(get_args(OutboundMessage)[0])

_inbound_adapter: TypeAdapter = TypeAdapter(InboundMessage)
_outbound_adapter: TypeAdapter = TypeAdapter(OutboundMessage)


def parse_inbound(payload: Dict[str, Any]) -> WireModel:
    """Validate a raw inbound envelope into its message model."""
    return _inbound_adapter.validate_python(payload)


def parse_outbound(payload: Dict[str, Any]) -> WireModel:
    """Validate a raw outbound envelope into its message model."""
    return _outbound_adapter.validate_python(payload)
