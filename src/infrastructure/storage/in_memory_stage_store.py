"""In-memory stage store implementation."""

from typing import Dict, List, Optional, Tuple

from src.domain.interfaces import IStageStore
from src.domain.schema import BuildLog, BuildState, StageName, StageRecord


class InMemoryStageStore(IStageStore):
    """Simple in-memory document store for tests and ephemeral deployments."""

    def __init__(self) -> None:
        self._stages: Dict[Tuple[str, StageName], StageRecord] = {}
        self._build_states: Dict[str, BuildState] = {}
        self._build_logs: Dict[str, BuildLog] = {}

    async def read_stage(self, project_id: str, stage: StageName) -> Optional[StageRecord]:
        """Read a stage record."""
        record = self._stages.get((project_id, stage))
        return record.model_copy(deep=True) if record else None

    async def write_stage(self, project_id: str, record: StageRecord) -> None:
        """Write a stage record."""
        self._stages[(project_id, record.stage)] = record.model_copy(deep=True)

    async def read_build_state(self, project_id: str) -> Optional[BuildState]:
        """Read the master record."""
        state = self._build_states.get(project_id)
        return state.model_copy(deep=True) if state else None

    async def write_build_state(self, project_id: str, state: BuildState) -> None:
        """Write the master record."""
        self._build_states[project_id] = state.model_copy(deep=True)

    async def read_build_log(self, project_id: str) -> Optional[BuildLog]:
        """Read the build log."""
        log = self._build_logs.get(project_id)
        return log.model_copy(deep=True) if log else None

    async def write_build_log(self, project_id: str, log: BuildLog) -> None:
        """Write the build log."""
        self._build_logs[project_id] = log.model_copy(deep=True)

    async def list_projects(self) -> List[str]:
        """List project ids that have a master record."""
        return sorted(self._build_states)

    async def delete_project(self, project_id: str) -> bool:
        """Delete every record of a project."""
        removed = self._build_states.pop(project_id, None) is not None
        removed = (self._build_logs.pop(project_id, None) is not None) or removed
        for key in [key for key in self._stages if key[0] == project_id]:
            del self._stages[key]
            removed = True
        return removed
