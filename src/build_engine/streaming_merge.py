"""Streaming merge engine: folds model output into the artifact store."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from src.build_engine.artifact_store import (
    ARTIFACT_KEYS,
    STAGE_ARTIFACT_TYPE,
    ArtifactStore,
    artifact_key,
    normalize_artifact,
)
from src.build_engine.json_parser import JsonParser, ParseResult
from src.build_engine.stages import StagePipeline
from src.domain.messages import StreamUpdate
from src.domain.schema import StageName, UpdateType, WireModel
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class MergeOutcome:
    """What a single stream update did to the store."""

    action: str  # replaced|appended|skipped|completed|failed|text
    stage: StageName
    index: Optional[int] = None
    item: Optional[WireModel] = None
    error: Optional[str] = None


@dataclass
class _ResumeGuard:
    """Replayed items of an in-progress resume for one stage."""

    update_type: UpdateType
    offset: int
    keys: Set[str] = field(default_factory=set)


class StreamingMergeEngine:
    """Applies stream updates and complete responses to the artifact store.

    Updates for a stage are applied strictly in arrival order. An index
    inside the current list replaces that entry; any other index appends
    exactly one item.
    """

    def __init__(self, store: ArtifactStore, pipeline: StagePipeline):
        """Initialize merge engine.

        Args:
            store: Artifact store to mutate.
            pipeline: Stage pipeline receiving loading and completion flags.
        """
        self.store = store
        self.pipeline = pipeline
        self._resume: Dict[StageName, _ResumeGuard] = {}

    def apply(self, update: StreamUpdate) -> MergeOutcome:
        """Apply one stream update."""
        stage = update.stage
        if update.error:
            self.pipeline.set_loading(stage, False)
            self.end_resume(stage)
            logger.warning("streaming_merge.generation_failed", stage=stage.value, error=update.error)
            return MergeOutcome(action="failed", stage=stage, error=update.error)

        if update.complete:
            self.pipeline.set_loading(stage, False)
            self.pipeline.mark_completed(stage)
            self.end_resume(stage)
            logger.info("streaming_merge.stage_completed", stage=stage.value)
            return MergeOutcome(action="completed", stage=stage)

        if update.update_type == UpdateType.TEXT:
            text = update.data if isinstance(update.data, str) else ""
            self.store.raw_text[stage] = self.store.raw_text.get(stage, "") + text
            if stage == StageName.DESIGN:
                self.store.design = self.store.raw_text[stage]
            return MergeOutcome(action="text", stage=stage)

        return self._merge_item(stage, update.update_type, update.data, update.index)

    def _merge_item(self, stage: StageName, update_type: UpdateType, data: Any, index: int) -> MergeOutcome:
        guard = self._resume.get(stage)
        if guard is not None and guard.update_type == update_type:
            index += guard.offset

        item = normalize_artifact(update_type, data, index)
        if item is None:
            logger.debug("streaming_merge.invalid_payload", stage=stage.value, update_type=update_type.value)
            return MergeOutcome(action="skipped", stage=stage, index=index)

        if guard is not None and guard.update_type == update_type:
            key = artifact_key(item)
            if key and key in guard.keys:
                logger.info("streaming_merge.duplicate_dropped", stage=stage.value, key=key)
                return MergeOutcome(action="skipped", stage=stage, index=index, item=item)
            item = self._with_free_id(update_type, item, index)

        action = self.store.merge_at(update_type, index, item)
        return MergeOutcome(action=action, stage=stage, index=index, item=item)

    def _with_free_id(self, update_type: UpdateType, item: WireModel, index: int) -> WireModel:
        """Give item an id not used by any other entry of its list."""
        taken = {
            existing.id
            for pos, existing in enumerate(self.store.items(update_type))
            if pos != index
        }
        if item.id not in taken:
            return item
        numeric = [int(value) for value in taken if str(value).isdigit()]
        candidate = max(numeric, default=len(taken)) + 1
        while str(candidate) in taken:
            candidate += 1
        return item.model_copy(update={"id": str(candidate)})

    def begin_resume(self, stage: StageName, items: List[WireModel]) -> None:
        """Replay persisted partial items and guard the resumed stream against duplicates.

        Indexes of the resumed stream are shifted past the replayed items and
        any streamed item whose name or title matches a replayed one is dropped.
        """
        update_type = STAGE_ARTIFACT_TYPE.get(stage)
        if update_type is None:
            return
        self.store.replace(update_type, items)
        self._resume[stage] = _ResumeGuard(
            update_type=update_type,
            offset=len(items),
            keys={artifact_key(item) for item in items if artifact_key(item)},
        )
        self.pipeline.set_loading(stage, True)

    def end_resume(self, stage: StageName) -> bool:
        """Drop the resume guard of a stage; later streams merge at their own indexes."""
        guard = self._resume.pop(stage, None)
        if guard is not None:
            logger.info("streaming_merge.resume_ended", stage=stage.value, replayed=guard.offset)
        return guard is not None

    def is_resuming(self, stage: StageName) -> bool:
        return stage in self._resume

    def merge_complete_text(self, stage: StageName, text: str) -> ParseResult:
        """Merge a single, complete (non-streamed) response.

        On parse failure the raw text is kept in the store and nothing is
        merged. Each recognised artifact key is merged independently.
        """
        result = JsonParser.parse(text)
        if not result.success:
            self.store.raw_text[stage] = text
            if stage == StageName.DESIGN:
                self.store.design = text
            logger.info("streaming_merge.raw_text_preserved", stage=stage.value, error=result.error)
            return result

        data = result.data
        lists: Dict[UpdateType, List[Any]] = {}
        if isinstance(data, list):
            update_type = STAGE_ARTIFACT_TYPE.get(stage)
            if update_type is not None:
                lists[update_type] = data
        elif isinstance(data, dict):
            for key, update_type in ARTIFACT_KEYS.items():
                if isinstance(data.get(key), list):
                    lists[update_type] = data[key]

        for update_type, raw_items in lists.items():
            for index, raw in enumerate(raw_items):
                self._merge_item(stage, update_type, raw, index)
        logger.info(
            "streaming_merge.complete_text_merged",
            stage=stage.value,
            kinds=[kind.value for kind in lists],
        )
        return result
