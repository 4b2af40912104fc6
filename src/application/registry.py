"""Registry of live engines, one per project."""

from typing import Dict, Iterable, List, Optional

from src.build_engine.engine import BuildModeEngine
from src.domain.interfaces import IEventBus
from src.domain.schema import StageName
from src.utils.logger import get_logger

logger = get_logger(__name__)


class EngineRegistry:
    """Creates engines and looks them up by project id."""

    def __init__(self, event_bus: IEventBus) -> None:
        self._event_bus = event_bus
        self._engines: Dict[str, BuildModeEngine] = {}

    def get(self, project_id: Optional[str]) -> Optional[BuildModeEngine]:
        if not project_id:
            return None
        return self._engines.get(project_id)

    def project_ids(self) -> List[str]:
        return sorted(self._engines)

    async def create(self, title: str, idea: str = "", existing_ids: Iterable[str] = ()) -> BuildModeEngine:
        """Create a project by saving its idea stage.

        Raises:
            ProjectIdentityError: If the title is unusable or already taken.
        """
        engine = BuildModeEngine(self._event_bus)
        taken = set(existing_ids) | set(self._engines)
        await engine.save_stage(
            StageName.IDEA,
            {"idea": idea, "projectTitle": title},
            completed=bool(idea),
            existing_ids=taken,
        )
        self._engines[engine.project_id] = engine
        logger.info("engine_registry.created", project_id=engine.project_id)
        return engine

    def open(self, project_id: str) -> BuildModeEngine:
        """Engine of an existing project, created empty on first access."""
        engine = self._engines.get(project_id)
        if engine is None:
            engine = BuildModeEngine(self._event_bus, project_id=project_id)
            self._engines[project_id] = engine
            logger.info("engine_registry.opened", project_id=project_id)
        return engine

    def close(self, project_id: str) -> bool:
        engine = self._engines.pop(project_id, None)
        if engine is None:
            return False
        engine.close()
        return True
