"""Versioned project snapshot with an explicit migration chain."""

from typing import Any, Callable, Dict

from pydantic import Field

from src.domain.schema import (
    STAGE_ORDER,
    IterationState,
    Project,
    StageName,
    StageRecord,
    UsageCounter,
    WireModel,
)
from src.utils.logger import get_logger

logger = get_logger(__name__)

CURRENT_SCHEMA_VERSION = 2


class SnapshotVersionError(Exception):
    """Raised when a snapshot was written by a newer schema version."""

    def __init__(self, version: int):
        self.version = version
        super().__init__(
            f"Snapshot schema version {version} is newer than the supported version {CURRENT_SCHEMA_VERSION}."
        )


class ProjectSnapshot(WireModel):
    """Everything needed to rebuild an engine for a project."""

    schema_version: int = CURRENT_SCHEMA_VERSION
    project: Project
    artifacts: Dict[str, Any] = Field(default_factory=dict)
    iteration_state: IterationState = Field(default_factory=IterationState)
    usage: UsageCounter = Field(default_factory=UsageCounter)


def _v1_to_v2(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Version 1 kept a flat completion map and called the artifacts "state"."""
    completion = raw.get("stages") or {}
    stages = {
        stage.value: StageRecord(stage=stage, completed=bool(completion.get(stage.value))).to_wire()
        for stage in STAGE_ORDER
    }
    iteration = dict(raw.get("iterationState") or {})
    if "isIterating" in iteration:
        iteration["active"] = iteration.pop("isIterating")
    return {
        "schemaVersion": 2,
        "project": {
            "id": raw.get("projectId", ""),
            "title": raw.get("projectTitle", ""),
            "stages": stages,
        },
        "artifacts": raw.get("state") or {},
        "iterationState": iteration,
        "usage": raw.get("tokenUsage") or {},
    }


MIGRATIONS: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    1: _v1_to_v2,
}


def migrate(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade a raw snapshot to the current schema version.

    Raises:
        SnapshotVersionError: If the snapshot is newer than this code.
    """
    version = int(raw.get("schemaVersion", 1))
    if version > CURRENT_SCHEMA_VERSION:
        raise SnapshotVersionError(version)
    while version < CURRENT_SCHEMA_VERSION:
        raw = MIGRATIONS[version](raw)
        logger.info("snapshot.migrated", from_version=version, to_version=version + 1)
        version += 1
    return raw


def load_snapshot(raw: Dict[str, Any]) -> ProjectSnapshot:
    """Validate a raw snapshot of any supported version."""
    return ProjectSnapshot.model_validate(migrate(raw))


def completion_from(snapshot: ProjectSnapshot) -> Dict[StageName, bool]:
    return snapshot.project.completion_map()
