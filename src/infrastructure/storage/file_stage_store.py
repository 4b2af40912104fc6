"""JSON file stage store.

Layout under the storage root::

    <project_id>/build-state.json
    <project_id>/build-log.json
    <project_id>/<stage>.stage.json
"""

import asyncio
import json
import os
import shutil
import time
from pathlib import Path
from typing import Any, Callable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from src.config import settings
from src.domain.interfaces import IStageStore
from src.domain.schema import BuildLog, BuildState, StageName, StageRecord
from src.utils.logger import get_logger

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

BUILD_STATE_FILE = "build-state.json"
BUILD_LOG_FILE = "build-log.json"


def stage_file_name(stage: StageName) -> str:
    """File name of a stage record."""
    return f"{stage.value}.stage.json"


class FileStageStore(IStageStore):
    """Stage store persisting pydantic documents as JSON files.

    Writes go to a temporary file first and are renamed into place so a
    crash never leaves a truncated document behind.
    """

    def __init__(self, root: Optional[str] = None):
        """Initialize store.

        Args:
            root: Storage root directory (defaults to settings.storage_root).
        """
        self.root = Path(root or settings.storage_root)

    def _project_dir(self, project_id: str) -> Path:
        return self.root / project_id

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def _read_sync(self, path: Path, model: Type[ModelT]) -> Optional[ModelT]:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return model.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error("file_store.read_failed", path=str(path), error=str(e))
            raise

    def _write_sync(self, path: Path, document: BaseModel) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp.{int(time.time() * 1000)}")
        content = json.dumps(document.model_dump(by_alias=True, mode="json"), indent=2)
        try:
            tmp_path.write_text(content, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error("file_store.write_failed", path=str(path), error=str(e))
            if tmp_path.exists():
                tmp_path.unlink()
            raise

    async def read_stage(self, project_id: str, stage: StageName) -> Optional[StageRecord]:
        """Read a stage record."""
        path = self._project_dir(project_id) / stage_file_name(stage)
        return await self._run(self._read_sync, path, StageRecord)

    async def write_stage(self, project_id: str, record: StageRecord) -> None:
        """Write a stage record."""
        path = self._project_dir(project_id) / stage_file_name(record.stage)
        await self._run(self._write_sync, path, record)
        logger.debug("file_store.stage_written", project_id=project_id, stage=record.stage.value)

    async def read_build_state(self, project_id: str) -> Optional[BuildState]:
        """Read the master record."""
        return await self._run(self._read_sync, self._project_dir(project_id) / BUILD_STATE_FILE, BuildState)

    async def write_build_state(self, project_id: str, state: BuildState) -> None:
        """Write the master record."""
        await self._run(self._write_sync, self._project_dir(project_id) / BUILD_STATE_FILE, state)

    async def read_build_log(self, project_id: str) -> Optional[BuildLog]:
        """Read the build log."""
        return await self._run(self._read_sync, self._project_dir(project_id) / BUILD_LOG_FILE, BuildLog)

    async def write_build_log(self, project_id: str, log: BuildLog) -> None:
        """Write the build log."""
        await self._run(self._write_sync, self._project_dir(project_id) / BUILD_LOG_FILE, log)

    async def list_projects(self) -> List[str]:
        """List directories holding a master record."""

        def _list() -> List[str]:
            if not self.root.exists():
                return []
            return sorted(
                entry.name
                for entry in self.root.iterdir()
                if entry.is_dir() and (entry / BUILD_STATE_FILE).exists()
            )

        return await self._run(_list)

    async def delete_project(self, project_id: str) -> bool:
        """Remove the project directory."""
        project_dir = self._project_dir(project_id)
        if not project_dir.exists():
            return False
        await self._run(shutil.rmtree, project_dir)
        logger.info("file_store.project_deleted", project_id=project_id)
        return True
