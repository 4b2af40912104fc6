"""Dependency Injection container."""

from typing import Optional

from src.adapters.llm.litellm_adapter import LiteLLMAdapter
from src.application.host import BuildHost
from src.application.registry import EngineRegistry
from src.application.stage_files import StageFileService
from src.build_engine.build_log import BuildLogManager
from src.config import settings
from src.domain.interfaces import IEventBus, ILLMProvider, IScreenshotCapture, IStageStore
from src.infrastructure.messaging.event_bus import InMemoryEventBus
from src.infrastructure.storage.file_stage_store import FileStageStore
from src.infrastructure.storage.in_memory_stage_store import InMemoryStageStore


class DIContainer:
    """Simple dependency injection container."""

    def __init__(self):
        """Initialize container with factory functions."""
        self._stage_store: Optional[IStageStore] = None
        self._llm_provider: Optional[ILLMProvider] = None
        self._event_bus: Optional[IEventBus] = None
        self._screenshot: Optional[IScreenshotCapture] = None
        self._stage_files: Optional[StageFileService] = None
        self._build_log: Optional[BuildLogManager] = None
        self._engine_registry: Optional[EngineRegistry] = None
        self._host: Optional[BuildHost] = None

    def get_stage_store(self) -> IStageStore:
        """Get stage store for the configured backend.

        Returns:
            FileStageStore, or InMemoryStageStore when storage_backend is "memory".
        """
        if self._stage_store is None:
            backend = settings.storage_backend.strip().lower()
            if backend == "memory":
                self._stage_store = InMemoryStageStore()
            elif backend == "file":
                self._stage_store = FileStageStore()
            else:
                raise ValueError(f"Unsupported storage backend: {backend}")
        return self._stage_store

    def get_llm_provider(self) -> ILLMProvider:
        """Get LLM provider adapter.

        Returns:
            LiteLLMAdapter instance.
        """
        if self._llm_provider is None:
            self._llm_provider = LiteLLMAdapter()
        return self._llm_provider

    def get_event_bus(self) -> IEventBus:
        """Get event bus instance."""
        if self._event_bus is None:
            self._event_bus = InMemoryEventBus()
        return self._event_bus

    def set_screenshot_capture(self, capture: Optional[IScreenshotCapture]) -> None:
        """Install a screenshot adapter; without one every capture reports an error."""
        self._screenshot = capture
        if self._host is not None:
            self._host.screenshot = capture

    def get_stage_files(self) -> StageFileService:
        if self._stage_files is None:
            self._stage_files = StageFileService(self.get_stage_store())
        return self._stage_files

    def get_build_log(self) -> BuildLogManager:
        if self._build_log is None:
            self._build_log = BuildLogManager(self.get_stage_store())
        return self._build_log

    def get_engine_registry(self) -> EngineRegistry:
        """Get engine registry instance."""
        if self._engine_registry is None:
            self._engine_registry = EngineRegistry(self.get_event_bus())
        return self._engine_registry

    async def get_host(self) -> BuildHost:
        """Get the build host, subscribed to the event bus on first use."""
        if self._host is None:
            registry = self.get_engine_registry()
            self._host = BuildHost(
                registry.get,
                self.get_llm_provider(),
                self.get_stage_files(),
                self.get_build_log(),
                screenshot=self._screenshot,
            )
            await self._host.attach(self.get_event_bus())
        return self._host


# Global container instance
_container: Optional[DIContainer] = None


def get_container() -> DIContainer:
    """Get global DI container instance.

    Returns:
        DIContainer instance.
    """
    global _container
    if _container is None:
        _container = DIContainer()
    return _container


def reset_container() -> None:
    """Drop the global container (used by tests)."""
    global _container
    _container = None
