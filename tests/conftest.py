"""Shared pytest fixtures and configuration."""

import pytest
import sys
from pathlib import Path
from typing import Any, Dict, List, Tuple
from unittest.mock import AsyncMock, MagicMock

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.build_engine.engine import BuildModeEngine
from src.build_engine.supervision import LivenessSupervisor
from src.build_engine.usage_guard import UsageGuard
from src.domain.schema import DomainEvent, UsageCounter
from src.infrastructure.messaging.event_bus import InMemoryEventBus


class ManualScheduler:
    """Scheduler fake whose timers fire only when a test says so."""

    def __init__(self) -> None:
        self.timers: Dict[str, Tuple[float, Any]] = {}

    def schedule(self, name, delay, callback) -> None:
        self.timers[name] = (delay, callback)

    def cancel(self, name) -> bool:
        return self.timers.pop(name, None) is not None

    def pending(self, name) -> bool:
        return name in self.timers

    def pending_names(self) -> List[str]:
        return sorted(self.timers)

    def cancel_all(self) -> None:
        self.timers.clear()

    def delay(self, name) -> float:
        return self.timers[name][0]

    async def fire(self, name) -> None:
        """Run one pending timer."""
        _, callback = self.timers.pop(name)
        await callback()


class RecordingBus(InMemoryEventBus):
    """Event bus keeping every published event."""

    def __init__(self) -> None:
        super().__init__()
        self.events: List[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)
        await super().publish(event)

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e.payload for e in self.events if e.event_type == event_type]

    def types(self) -> List[str]:
        return [e.event_type for e in self.events]


@pytest.fixture
def manual_scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def watchdog_scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def engine(bus, manual_scheduler, watchdog_scheduler) -> BuildModeEngine:
    """Engine bound to project "demo" with deterministic timers and no token limit."""
    return BuildModeEngine(
        bus,
        project_id="demo",
        guard=UsageGuard(limit=0),
        scheduler=manual_scheduler,
        supervisor=LivenessSupervisor(watchdog_scheduler),
    )


@pytest.fixture
def feature_items() -> List[Dict[str, Any]]:
    """Seven raw features as a model would stream them."""
    return [
        {"id": str(i), "name": f"Feature {i}", "description": f"Does thing {i}", "score": i}
        for i in range(1, 8)
    ]


@pytest.fixture
def design_data() -> Dict[str, Any]:
    return {
        "design": "Two-screen app",
        "screens": [
            {"id": "1", "name": "Home", "purpose": "Landing"},
            {"id": "2", "name": "Settings", "description": "Preferences"},
        ],
        "flows": [],
    }


@pytest.fixture
def mock_llm_provider() -> MagicMock:
    """Mock LLM provider with chat and streaming support."""
    provider = MagicMock()
    provider.model = "mock-model"
    provider.chat_completion = AsyncMock(return_value="Mock LLM response\nCOORDINATOR: done")
    provider.last_usage = UsageCounter(input_tokens=10, output_tokens=20, total_tokens=30)

    def _stream(chunks):
        async def _gen(messages, model=None, temperature=None):
            for chunk in chunks:
                yield chunk
        return _gen

    provider.stream_with = lambda chunks: setattr(provider, "stream_completion", _stream(chunks))
    provider.stream_with(['{"features": [', '{"name": "Search"}', ', {"name": "Filters"}', "]}"])
    return provider

