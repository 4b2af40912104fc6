"""Per-project append-only build log."""

from typing import Optional

from src.domain.interfaces import IStageStore
from src.domain.schema import BuildLog, BuildLogEntry, LogEntryType, LogMetadata, utcnow
from src.utils.logger import get_logger

logger = get_logger(__name__)


def make_entry(
    entry_type: LogEntryType,
    stage: str,
    content: str,
    model: Optional[str] = None,
    tokens: Optional[int] = None,
    duration: Optional[float] = None,
) -> BuildLogEntry:
    """Build a log entry; metadata is attached only when a value is given."""
    metadata = None
    if model is not None or tokens is not None or duration is not None:
        metadata = LogMetadata(model=model, tokens=tokens, duration=duration)
    return BuildLogEntry(type=entry_type, stage=stage, content=content, metadata=metadata)


class BuildLogManager:
    """Reads and appends build logs through the stage store."""

    def __init__(self, store: IStageStore):
        self.store = store

    async def initialize(self, project_id: str, project_title: str = "") -> BuildLog:
        """Create the log if the project has none; return the current log."""
        existing = await self.store.read_build_log(project_id)
        if existing is not None:
            return existing
        log = BuildLog(project_title=project_title)
        await self.store.write_build_log(project_id, log)
        logger.info("build_log.initialized", project_id=project_id)
        return log

    async def append(self, project_id: str, entry: BuildLogEntry) -> BuildLog:
        """Append one entry, creating the log on first use."""
        log = await self.store.read_build_log(project_id) or BuildLog()
        log = log.model_copy(update={"entries": list(log.entries) + [entry], "last_updated": utcnow()})
        await self.store.write_build_log(project_id, log)
        if entry.type == LogEntryType.ERROR:
            logger.warning("build_log.error_entry", project_id=project_id, stage=entry.stage, content=entry.content)
        return log

    async def read(self, project_id: str) -> Optional[BuildLog]:
        return await self.store.read_build_log(project_id)

    async def clear(self, project_id: str) -> BuildLog:
        """Drop every entry, keeping the title and creation time."""
        log = await self.store.read_build_log(project_id) or BuildLog()
        log = log.model_copy(update={"entries": [], "last_updated": utcnow()})
        await self.store.write_build_log(project_id, log)
        logger.info("build_log.cleared", project_id=project_id)
        return log
