"""Port interfaces using Python Protocol for structural subtyping."""

from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

from src.domain.schema import (
    BuildLog,
    BuildState,
    DomainEvent,
    StageName,
    StageRecord,
    UsageCounter,
)


class ILLMProvider(Protocol):
    """Port for language model operations."""

    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Generate a complete chat reply."""
        ...

    def stream_completion(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat reply as text chunks."""
        ...

    @property
    def last_usage(self) -> UsageCounter:
        """Provider-reported usage of the most recent call."""
        ...


class IStageStore(Protocol):
    """Port for the key-value document store holding project records."""

    async def read_stage(self, project_id: str, stage: StageName) -> Optional[StageRecord]:
        """Read a stage record, None if it was never written."""
        ...

    async def write_stage(self, project_id: str, record: StageRecord) -> None:
        """Write a stage record, replacing any previous one."""
        ...

    async def read_build_state(self, project_id: str) -> Optional[BuildState]:
        """Read the project's master record."""
        ...

    async def write_build_state(self, project_id: str, state: BuildState) -> None:
        """Write the project's master record."""
        ...

    async def read_build_log(self, project_id: str) -> Optional[BuildLog]:
        """Read the project's build log."""
        ...

    async def write_build_log(self, project_id: str, log: BuildLog) -> None:
        """Write the project's build log."""
        ...

    async def list_projects(self) -> List[str]:
        """List ids of all known projects."""
        ...

    async def delete_project(self, project_id: str) -> bool:
        """Delete every record of a project. Returns True if anything was removed."""
        ...


class IScreenshotCapture(Protocol):
    """Port for capturing a screenshot of a running preview server."""

    async def capture(self, url: str) -> str:
        """Capture the page at url and return it as a data URL or file path."""
        ...


class IEventBus(Protocol):
    """Port for publishing and subscribing to domain events."""

    async def publish(self, event: DomainEvent) -> None:
        """Publish a single event."""
        ...

    async def subscribe(
        self,
        event_type: str,
        handler: Callable[[DomainEvent], Awaitable[None]],
    ) -> None:
        """Subscribe to an event type. "*" receives every event."""
        ...

    async def unsubscribe(
        self,
        event_type: str,
        handler: Callable[[DomainEvent], Awaitable[None]],
    ) -> None:
        """Remove a previously subscribed handler."""
        ...
