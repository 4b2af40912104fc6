"""Stage pipeline: ordering, navigation gating and derived current stage."""

from typing import Dict, Mapping, Optional, Tuple

from src.domain.schema import STAGE_ORDER, StageName, StageRecord, utcnow
from src.utils.logger import get_logger

logger = get_logger(__name__)


def stage_index(stage: StageName) -> int:
    """Position of a stage in the pipeline."""
    return STAGE_ORDER.index(stage)


def previous_stage(stage: StageName) -> Optional[StageName]:
    """Stage preceding the given one, None for the first stage."""
    idx = stage_index(stage)
    return STAGE_ORDER[idx - 1] if idx > 0 else None


def next_stage(stage: StageName) -> Optional[StageName]:
    """Stage following the given one, None for the last stage."""
    idx = stage_index(stage)
    return STAGE_ORDER[idx + 1] if idx + 1 < len(STAGE_ORDER) else None


def can_navigate_to(stage: StageName, completion: Mapping[StageName, bool]) -> bool:
    """Whether a stage may be opened.

    The first stage is always navigable; any other stage requires the
    immediately preceding stage to be completed.
    """
    prev = previous_stage(stage)
    if prev is None:
        return True
    return bool(completion.get(prev, False))


def derive_current_stage(completion: Mapping[StageName, bool]) -> StageName:
    """First stage not yet completed, or the last stage when all are complete."""
    for stage in STAGE_ORDER:
        if not completion.get(stage, False):
            return stage
    return STAGE_ORDER[-1]


def validate_transition(
    from_stage: Optional[StageName],
    to_stage: StageName,
    completion: Mapping[StageName, bool],
) -> Tuple[bool, str]:
    """Check a navigation request and explain a refusal.

    Args:
        from_stage: Stage currently shown, if any.
        to_stage: Requested stage.
        completion: Completion flag per stage.

    Returns:
        Tuple of (allowed, reason). The reason is empty when allowed.
    """
    if from_stage == to_stage:
        return True, ""
    if can_navigate_to(to_stage, completion):
        return True, ""
    prev = previous_stage(to_stage)
    return False, f"Complete the '{prev.value}' stage before opening '{to_stage.value}'."


def merge_completion(existing: Optional[StageRecord], requested: bool) -> bool:
    """Effective completion flag: once completed, a stage stays completed."""
    return requested or bool(existing and existing.completed)


class StagePipeline:
    """Completion state of a project's stages plus the navigation cursor.

    The cursor is never restored from a previous session; it is re-derived
    from the completion map whenever records are loaded.
    """

    def __init__(self) -> None:
        self._records: Dict[StageName, StageRecord] = {}
        self.current_stage: StageName = STAGE_ORDER[0]
        self.loading: Dict[StageName, bool] = {stage: False for stage in STAGE_ORDER}

    @property
    def records(self) -> Dict[StageName, StageRecord]:
        return dict(self._records)

    def completion_map(self) -> Dict[StageName, bool]:
        """Completion flag for every stage."""
        return {stage: bool(self._records.get(stage) and self._records[stage].completed) for stage in STAGE_ORDER}

    def is_completed(self, stage: StageName) -> bool:
        record = self._records.get(stage)
        return bool(record and record.completed)

    def can_navigate_to(self, stage: StageName) -> bool:
        return can_navigate_to(stage, self.completion_map())

    def navigate(self, stage: StageName) -> bool:
        """Move the cursor. Locked stages are refused silently."""
        allowed, reason = validate_transition(self.current_stage, stage, self.completion_map())
        if not allowed:
            logger.debug("stage_pipeline.navigation_refused", stage=stage.value, reason=reason)
            return False
        self.current_stage = stage
        return True

    def save_stage(self, stage: StageName, data: dict, completed: bool) -> StageRecord:
        """Record stage data with monotonic completion.

        Returns:
            The stored record carrying the effective completion flag.
        """
        existing = self._records.get(stage)
        record = StageRecord(
            stage=stage,
            completed=merge_completion(existing, completed),
            data=data,
            updated_at=utcnow(),
        )
        self._records[stage] = record
        return record

    def mark_completed(self, stage: StageName) -> None:
        existing = self._records.get(stage)
        if existing is None:
            self._records[stage] = StageRecord(stage=stage, completed=True)
        elif not existing.completed:
            self._records[stage] = existing.model_copy(update={"completed": True, "updated_at": utcnow()})

    def restore(self, completion: Mapping[StageName, bool]) -> StageName:
        """Load completion flags from persisted state and re-derive the cursor."""
        for stage in STAGE_ORDER:
            done = bool(completion.get(stage, False))
            existing = self._records.get(stage)
            if existing is None:
                self._records[stage] = StageRecord(stage=stage, completed=done)
            else:
                self._records[stage] = existing.model_copy(update={"completed": done})
        self.current_stage = derive_current_stage(self.completion_map())
        return self.current_stage

    def restore_record(self, record: StageRecord) -> None:
        """Load a single persisted record verbatim."""
        self._records[record.stage] = record

    def set_loading(self, stage: StageName, loading: bool) -> None:
        self.loading[stage] = loading
