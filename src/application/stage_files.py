"""Stage file service: stage records plus the build state master record."""

from typing import Any, Dict, Optional

from src.domain.interfaces import IStageStore
from src.domain.schema import BuildState, StageError, StageName, StageRecord, StageStatus, utcnow
from src.infrastructure.storage.file_stage_store import stage_file_name
from src.utils.logger import get_logger

logger = get_logger(__name__)


class StageFileService:
    """Writes stage records and keeps ``build-state`` in step with them."""

    def __init__(self, store: IStageStore):
        self.store = store

    async def save_stage(
        self,
        project_id: str,
        stage: StageName,
        data: Dict[str, Any],
        completed: bool,
    ) -> StageRecord:
        """Write a stage record; a completed stage stays completed."""
        existing = await self.store.read_stage(project_id, stage)
        record = StageRecord(
            stage=stage,
            completed=completed or bool(existing and existing.completed),
            data=data,
        )
        await self.store.write_stage(project_id, record)
        await self._update_build_state(project_id, record, title=data.get("projectTitle"))
        return record

    async def save_stage_with_error(
        self,
        project_id: str,
        stage: StageName,
        data: Dict[str, Any],
        message: str,
        partial_item_count: int = 0,
    ) -> StageRecord:
        """Write the partial data of a failed generation; the stage becomes incomplete."""
        record = StageRecord(
            stage=stage,
            completed=False,
            data=data,
            error=StageError(message=message, partial_item_count=partial_item_count),
        )
        await self.store.write_stage(project_id, record)
        await self._update_build_state(project_id, record)
        logger.warning(
            "stage_files.saved_with_error",
            project_id=project_id,
            stage=stage.value,
            partial_item_count=partial_item_count,
            error=message,
        )
        return record

    async def load_stage(self, project_id: str, stage: StageName) -> Optional[StageRecord]:
        return await self.store.read_stage(project_id, stage)

    async def load_build_state(self, project_id: str) -> Optional[BuildState]:
        return await self.store.read_build_state(project_id)

    async def _update_build_state(
        self,
        project_id: str,
        record: StageRecord,
        title: Optional[str] = None,
    ) -> BuildState:
        state = await self.store.read_build_state(project_id) or BuildState(project_name=project_id)
        stages = dict(state.stages)
        stages[record.stage] = StageStatus(
            completed=record.completed,
            path=stage_file_name(record.stage),
            updated_at=record.updated_at,
            error=record.error,
        )
        update: Dict[str, Any] = {"stages": stages, "last_updated": utcnow()}
        if title:
            update["project_title"] = str(title)
        state = state.model_copy(update=update)
        await self.store.write_build_state(project_id, state)
        return state
