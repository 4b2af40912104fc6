"""Stage saves, debounced autosave and partial-content resume."""

from typing import Awaitable, Callable, List, Optional, Set

from src.build_engine.artifact_store import LIST_KEY, STAGE_ARTIFACT_TYPE, ArtifactStore, normalize_artifact
from src.build_engine.prompts import build_resume_prompt
from src.build_engine.stages import StagePipeline
from src.build_engine.streaming_merge import StreamingMergeEngine
from src.build_engine.supervision import Scheduler
from src.config import settings
from src.domain.messages import BuildStateMessage, RetryReady, SaveStageFile, StageFileLoaded
from src.domain.schema import STAGE_ORDER, IterationState, StageName, StageRecord, WireModel
from src.utils.logger import get_logger

logger = get_logger(__name__)

AUTOSAVE_TIMER = "autosave"

Emitter = Callable[[WireModel], Awaitable[None]]


class PersistenceProtocol:
    """Writes stage slices through the host and restores them on load.

    Completion is OR'ed with the known value on every save, so the
    autosave (which always writes ``completed=False``) never downgrades a
    stage. Every stage edited since its last save is written when the
    autosave fires.
    """

    def __init__(
        self,
        store: ArtifactStore,
        pipeline: StagePipeline,
        merge: StreamingMergeEngine,
        emit: Emitter,
        scheduler: Scheduler,
        project_id: Callable[[], Optional[str]],
        iteration_state: Callable[[], IterationState],
        debounce: Optional[float] = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.merge = merge
        self._emit = emit
        self.scheduler = scheduler
        self._project_id = project_id
        self._iteration_state = iteration_state
        self.debounce = settings.autosave_debounce_seconds if debounce is None else debounce
        self._dirty: Set[StageName] = set()

    @property
    def dirty(self) -> bool:
        return bool(self._dirty)

    def dirty_stages(self) -> List[StageName]:
        return [stage for stage in STAGE_ORDER if stage in self._dirty]

    def stage_document(self, stage: StageName) -> dict:
        """Slice persisted for a stage; the design slice carries the loop state."""
        data = self.store.stage_slice(stage)
        if stage == StageName.DESIGN:
            data["iterationState"] = self._iteration_state().to_wire()
        return data

    async def save_current_stage_data(
        self,
        completed: bool = False,
        override_project_id: Optional[str] = None,
        stage: Optional[StageName] = None,
    ) -> Optional[StageRecord]:
        """Persist a stage slice.

        Args:
            completed: Requested completion flag.
            override_project_id: Project to write to instead of the active one.
            stage: Stage to save (defaults to the current stage).

        Returns:
            The stored record, None when no project exists yet.
        """
        project_id = override_project_id or self._project_id()
        stage = stage or self.pipeline.current_stage
        if not project_id:
            logger.debug("persistence.save_skipped_no_project", stage=stage.value)
            return None

        self._discard(stage)
        data = self.stage_document(stage)
        record = self.pipeline.save_stage(stage, data, completed)
        await self._emit(
            SaveStageFile(project_id=project_id, stage=stage, data=data, completed=record.completed)
        )
        logger.info(
            "persistence.stage_saved",
            project_id=project_id,
            stage=stage.value,
            completed=record.completed,
        )
        return record

    def schedule_auto_save(self, stage: Optional[StageName] = None) -> None:
        """Mark a stage dirty and (re)arm the debounced autosave."""
        self._dirty.add(stage or self.pipeline.current_stage)
        self.scheduler.schedule(AUTOSAVE_TIMER, self.debounce, self.flush)

    async def flush(self) -> None:
        """Save every dirty stage, not marking any of them completed."""
        for stage in self.dirty_stages():
            await self.save_current_stage_data(completed=False, stage=stage)

    def cancel_auto_save(self, stage: Optional[StageName] = None) -> None:
        """Drop pending autosave work without writing.

        Args:
            stage: Only forget this stage; other dirty stages are still saved.
                Without it every dirty stage is dropped.
        """
        if stage is None:
            self._dirty.clear()
        self._discard(stage)

    def _discard(self, stage: Optional[StageName]) -> None:
        self._dirty.discard(stage)
        if not self._dirty:
            self.scheduler.cancel(AUTOSAVE_TIMER)

    def prepare_resume(self, message: RetryReady) -> str:
        """Replay partial items of a failed generation and build the resume prompt."""
        stage = message.stage
        update_type = STAGE_ARTIFACT_TYPE.get(stage)
        partial = message.partial_content or {}
        if update_type is not None:
            raw_items = partial.get(LIST_KEY[update_type]) or []
            items = [normalize_artifact(update_type, raw, idx) for idx, raw in enumerate(raw_items)]
            self.merge.begin_resume(stage, [item for item in items if item is not None])
        count = message.partial_item_count or None
        prompt = build_resume_prompt(stage, self.store, partial, count)
        logger.info(
            "persistence.resume_prepared",
            stage=stage.value,
            replayed=len(self.store.items(update_type)) if update_type else 0,
        )
        return prompt

    def handle_stage_file_loaded(self, message: StageFileLoaded) -> Optional[IterationState]:
        """Restore a stage slice and its completion bit.

        Returns:
            The persisted iteration state when the design slice carries one.
        """
        if message.data is None:
            logger.debug("persistence.stage_file_missing", stage=message.stage.value)
            return None
        data = message.data.data
        self.store.apply_stage_data(message.stage, data)
        self.pipeline.restore_record(
            StageRecord(stage=message.stage, completed=message.data.completed, data=data)
        )
        if message.stage == StageName.DESIGN and isinstance(data.get("iterationState"), dict):
            return IterationState.model_validate(data["iterationState"])
        return None

    def handle_build_state(self, message: BuildStateMessage) -> Optional[StageName]:
        """Restore title and completion map; the current stage is re-derived."""
        build_state = message.build_state
        if build_state is None:
            return None
        if build_state.project_title:
            self.store.project_title = build_state.project_title
        completion = {stage: status.completed for stage, status in build_state.stages.items()}
        current = self.pipeline.restore(completion)
        failed = [stage.value for stage, status in build_state.stages.items() if status.error]
        logger.info("persistence.build_state_restored", current_stage=current.value, failed_stages=failed)
        return current
