"""Build-mode engine: one project's stage pipeline, merge engine and iteration loop.

Outbound messages are published on the event bus as ``DomainEvent`` with the
message type as ``event_type`` and the camelCase envelope as payload. Inbound
messages enter through ``dispatch``.
"""

from typing import Any, Dict, Iterable, Optional, Sequence, Set, Tuple, Union

from src.build_engine.artifact_store import STAGE_ARTIFACT_TYPE, ArtifactStore
from src.build_engine.build_log import make_entry
from src.build_engine.dispatcher import MessageDispatcher
from src.build_engine.orchestrator import IterationOrchestrator
from src.build_engine.persistence import PersistenceProtocol
from src.build_engine.projects import ProjectIdentityError, allocate_project_id
from src.build_engine.prompts import JSON_API_SYSTEM_PROMPT, build_stage_prompt
from src.build_engine.snapshot import ProjectSnapshot, load_snapshot
from src.build_engine.stages import StagePipeline, validate_transition
from src.build_engine.streaming_merge import StreamingMergeEngine
from src.build_engine.supervision import LivenessSupervisor, Scheduler
from src.build_engine.usage_guard import UsageGuard, UsageLimitExceeded
from src.config import settings
from src.domain.interfaces import IEventBus
from src.domain.messages import (
    AppendBuildLog,
    AssistantResponse,
    BuildStateMessage,
    GenerateContentStreaming,
    LoadStageFile,
    ResetTokenUsage,
    RetryGeneration,
    RetryReady,
    ScreenshotCaptured,
    ScreenshotError,
    StageFileLoaded,
    StreamUpdate,
    UsageUpdate,
)
from src.domain.schema import (
    DomainEvent,
    Framework,
    IterationState,
    LogEntryType,
    Project,
    StageName,
    StageRecord,
    WireModel,
)
from src.utils.logger import get_logger
from src.utils.tracing import get_trace_id

logger = get_logger(__name__)


def generation_watchdog(stage: StageName) -> str:
    return f"generation:{stage.value}"


class BuildModeEngine:
    """State of one build-mode project and the operations on it."""

    def __init__(
        self,
        event_bus: IEventBus,
        project_id: Optional[str] = None,
        guard: Optional[UsageGuard] = None,
        scheduler: Optional[Scheduler] = None,
        supervisor: Optional[LivenessSupervisor] = None,
        generation_timeout: Optional[float] = None,
    ):
        """Initialize engine.

        Args:
            event_bus: Bus receiving outbound messages.
            project_id: Id of an existing project, None for a new one.
            guard: Usage guard (one per engine by default).
            scheduler: Scheduler for control-flow transitions.
            supervisor: Liveness supervisor for generation watchdogs.
            generation_timeout: Seconds before a stage's loading flag is force-cleared.
        """
        self.event_bus = event_bus
        self.project_id = project_id
        self.guard = guard or UsageGuard()
        self.scheduler = scheduler or Scheduler()
        self.supervisor = supervisor or LivenessSupervisor()
        self.generation_timeout = (
            settings.generation_fallback_timeout_seconds if generation_timeout is None else generation_timeout
        )

        self.store = ArtifactStore()
        self.pipeline = StagePipeline()
        self.merge = StreamingMergeEngine(self.store, self.pipeline)
        self.orchestrator = IterationOrchestrator(
            self.store,
            self.guard,
            self.emit,
            self.write_log,
            self.scheduler,
            on_change=self._iteration_changed,
        )
        self.persistence = PersistenceProtocol(
            self.store,
            self.pipeline,
            self.merge,
            self.emit,
            self.scheduler,
            project_id=lambda: self.project_id,
            iteration_state=lambda: self.orchestrator.state,
        )
        self._loaded_stages: Set[StageName] = set()
        self.dispatcher = MessageDispatcher(
            {
                StreamUpdate: self._on_stream_update,
                StageFileLoaded: self._on_stage_file_loaded,
                RetryReady: self._on_retry_ready,
                ScreenshotCaptured: self._on_screenshot_captured,
                ScreenshotError: self._on_screenshot_error,
                UsageUpdate: self._on_usage_update,
                BuildStateMessage: self._on_build_state,
                AssistantResponse: self._on_assistant_response,
            }
        )

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def emit(self, message: WireModel) -> None:
        """Publish an outbound message."""
        event = DomainEvent(
            event_type=message.type,
            payload=message.to_wire(),
            project_id=self.project_id,
            trace_id=get_trace_id() or None,
        )
        await self.event_bus.publish(event)

    async def write_log(
        self,
        entry_type: LogEntryType,
        stage: str,
        content: str,
        **metadata: Any,
    ) -> None:
        """Emit an append-build-log message for the active project."""
        if not self.project_id:
            logger.debug("engine.log_skipped_no_project", stage=stage, type=entry_type.value)
            return
        entry = make_entry(entry_type, stage, content, **metadata)
        await self.emit(AppendBuildLog(project_id=self.project_id, entry=entry))

    def _iteration_changed(self) -> None:
        if self.project_id:
            self.persistence.schedule_auto_save(StageName.DESIGN)

    # ------------------------------------------------------------------
    # Project and stages
    # ------------------------------------------------------------------

    @property
    def current_stage(self) -> StageName:
        return self.pipeline.current_stage

    @property
    def iteration_state(self) -> IterationState:
        return self.orchestrator.state

    async def create_project(self, title: str, existing_ids: Iterable[str] = (), idea: str = "") -> str:
        """Establish the project id from its title.

        Raises:
            ProjectIdentityError: If the engine already has a project, or the
                title is unusable or taken.
        """
        if self.project_id:
            raise ProjectIdentityError(f"Engine already bound to project '{self.project_id}'.")
        project_id = allocate_project_id(title, existing_ids)
        self.project_id = project_id
        self.store.project_title = title
        if idea:
            self.store.idea = idea
        logger.info("engine.project_created", project_id=project_id, title=title)
        await self.write_log(LogEntryType.SYSTEM, StageName.IDEA.value, f"Project '{title}' created.")
        return project_id

    async def navigate(self, stage: StageName) -> Tuple[bool, str]:
        """Open a stage; locked stages are refused without raising.

        Pending edits of the current stage are saved first, and a stage not
        yet loaded this session is requested from the host.
        """
        allowed, reason = validate_transition(self.current_stage, stage, self.pipeline.completion_map())
        if not allowed:
            self.pipeline.navigate(stage)
            return False, reason
        if self.persistence.dirty:
            await self.persistence.flush()
        self.pipeline.navigate(stage)
        if self.project_id and stage not in self._loaded_stages and not self.pipeline.loading[stage]:
            await self.emit(LoadStageFile(project_id=self.project_id, stage=stage))
        return True, ""

    async def save_stage(
        self,
        stage: Optional[StageName] = None,
        data: Optional[Dict[str, Any]] = None,
        completed: bool = False,
        existing_ids: Iterable[str] = (),
    ) -> Optional[StageRecord]:
        """Apply stage data and persist it.

        The first save of the idea stage creates the project.

        Raises:
            ProjectIdentityError: If no project exists and the stage is not
                the idea stage, or the title cannot produce a free id.
        """
        stage = stage or self.current_stage
        if data:
            self.store.apply_stage_data(stage, data)
        if not self.project_id:
            if stage != StageName.IDEA:
                raise ProjectIdentityError("Save the idea stage first to create the project.")
            await self.create_project(self.store.project_title or self.store.idea, existing_ids)
        record = await self.persistence.save_current_stage_data(completed, stage=stage)
        self._loaded_stages.add(stage)
        return record

    def update_stage(self, stage: StageName, data: Dict[str, Any]) -> None:
        """Apply an edit and schedule the debounced autosave."""
        self.store.apply_stage_data(stage, data)
        self.persistence.schedule_auto_save(stage)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_stage(self, stage: Optional[StageName] = None) -> None:
        """Request a fresh generation of a stage's artifacts.

        Raises:
            PromptError: If the stage does not generate artifacts.
            ProjectIdentityError: If no project exists.
            UsageLimitExceeded: If the token budget is spent.
        """
        stage = stage or self.current_stage
        prompt = build_stage_prompt(stage, self.store)
        await self._dispatch_generation(stage, prompt, fresh=True)

    async def _dispatch_generation(self, stage: StageName, prompt: str, fresh: bool) -> None:
        if not self.project_id:
            raise ProjectIdentityError("Create the project before generating content.")
        try:
            self.guard.check_and_reserve(len(prompt) // 4)
        except UsageLimitExceeded as e:
            self.pipeline.set_loading(stage, False)
            self.merge.end_resume(stage)
            await self.write_log(LogEntryType.ERROR, stage.value, str(e))
            raise

        if fresh:
            self.merge.end_resume(stage)
            update_type = STAGE_ARTIFACT_TYPE.get(stage)
            if update_type is not None:
                self.store.clear(update_type)
            self.store.raw_text.pop(stage, None)
        self.pipeline.set_loading(stage, True)

        async def _timed_out() -> None:
            await self._generation_timed_out(stage)

        self.supervisor.watch(generation_watchdog(stage), self.generation_timeout, _timed_out)
        await self.emit(
            GenerateContentStreaming(
                project_id=self.project_id,
                stage=stage,
                prompt=prompt,
                system_prompt=JSON_API_SYSTEM_PROMPT,
            )
        )
        await self.write_log(LogEntryType.USER, stage.value, prompt)
        logger.info("engine.generation_dispatched", stage=stage.value, resume=not fresh)

    async def _generation_timed_out(self, stage: StageName) -> None:
        self.merge.end_resume(stage)
        if not self.pipeline.loading.get(stage):
            return
        self.pipeline.set_loading(stage, False)
        logger.warning("generation.fallback_timeout", stage=stage.value, timeout=self.generation_timeout)
        await self.write_log(
            LogEntryType.SYSTEM,
            stage.value,
            f"No completion received after {self.generation_timeout:.0f}s; loading indicator cleared.",
        )

    async def request_retry(self, stage: Optional[StageName] = None) -> None:
        """Ask the host for the failed stage's partial content (answered by retry-ready)."""
        stage = stage or self.current_stage
        if not self.project_id:
            raise ProjectIdentityError("Create the project before retrying a generation.")
        await self.emit(RetryGeneration(project_id=self.project_id, stage=stage))
        await self.write_log(LogEntryType.SYSTEM, stage.value, "Retrying generation.")

    # ------------------------------------------------------------------
    # Iteration loop
    # ------------------------------------------------------------------

    async def start_iteration(
        self,
        screens: Optional[Sequence[str]] = None,
        roles: Optional[Sequence[str]] = None,
        framework: Optional[Framework] = None,
        auto_run: bool = True,
    ) -> IterationState:
        return await self.orchestrator.start(screens, roles, framework, auto_run)

    async def next_step(self) -> None:
        await self.orchestrator.next_step()

    async def resume_iteration(self) -> IterationState:
        return await self.orchestrator.resume()

    async def approve(self, approved: bool, feedback: Optional[str] = None) -> str:
        return await self.orchestrator.approve(approved, feedback)

    async def stop_iteration(self) -> IterationState:
        return await self.orchestrator.stop()

    async def capture_screenshot(self, url: Optional[str] = None) -> None:
        await self.orchestrator.capture_screenshot(url)

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def reset_usage(self) -> None:
        self.guard.reset()
        await self.emit(ResetTokenUsage())

    def usage_status(self) -> Dict[str, Any]:
        return {
            "usage": self.guard.usage.to_wire(),
            "limit": self.guard.limit,
            "percentUsed": round(self.guard.percent_used(), 1),
            "status": self.guard.status(),
        }

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def dispatch(self, message: Union[WireModel, Dict[str, Any]]) -> None:
        """Handle one inbound message (model or raw envelope)."""
        if isinstance(message, dict):
            await self.dispatcher.dispatch_raw(message)
        else:
            await self.dispatcher.dispatch(message)

    async def _on_stream_update(self, message: StreamUpdate) -> None:
        stage = message.stage
        outcome = self.merge.apply(message)
        if outcome.action == "failed":
            self.supervisor.clear(generation_watchdog(stage))
            self.persistence.cancel_auto_save(stage)
            await self.write_log(LogEntryType.ERROR, stage.value, f"Generation failed: {outcome.error}")
        elif outcome.action == "completed":
            self.supervisor.clear(generation_watchdog(stage))
            await self.persistence.save_current_stage_data(completed=True, stage=stage)
            self._loaded_stages.add(stage)
            update_type = STAGE_ARTIFACT_TYPE.get(stage)
            count = len(self.store.items(update_type)) if update_type else 0
            await self.write_log(LogEntryType.ASSISTANT, stage.value, f"Generated {count} item(s) for {stage.value}.")
        elif outcome.action in ("replaced", "appended", "text"):
            self.persistence.schedule_auto_save(stage)

    async def _on_stage_file_loaded(self, message: StageFileLoaded) -> None:
        restored = self.persistence.handle_stage_file_loaded(message)
        self._loaded_stages.add(message.stage)
        if restored is not None:
            self.orchestrator.restore(restored)

    async def _on_retry_ready(self, message: RetryReady) -> None:
        if message.project_id and self.project_id and message.project_id != self.project_id:
            logger.warning(
                "engine.retry_for_other_project",
                project_id=self.project_id,
                message_project_id=message.project_id,
            )
            return
        prompt = self.persistence.prepare_resume(message)
        await self.write_log(
            LogEntryType.SYSTEM,
            message.stage.value,
            f"Resuming generation after {message.partial_item_count} saved item(s).",
        )
        await self._dispatch_generation(message.stage, prompt, fresh=False)

    async def _on_screenshot_captured(self, message: ScreenshotCaptured) -> None:
        self.orchestrator.handle_screenshot_captured(message)

    async def _on_screenshot_error(self, message: ScreenshotError) -> None:
        await self.orchestrator.handle_screenshot_error(message)

    async def _on_usage_update(self, message: UsageUpdate) -> None:
        self.guard.record(message.usage)

    async def _on_build_state(self, message: BuildStateMessage) -> None:
        if message.build_state is not None and not self.project_id:
            self.project_id = message.build_state.project_name
        self.persistence.handle_build_state(message)

    async def _on_assistant_response(self, message: AssistantResponse) -> None:
        await self.orchestrator.handle_reply(message)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> ProjectSnapshot:
        return ProjectSnapshot(
            project=Project(
                id=self.project_id or "",
                title=self.store.project_title,
                stages=self.pipeline.records,
            ),
            artifacts=self.store.snapshot(),
            iteration_state=self.orchestrator.state,
            usage=self.guard.usage,
        )

    def restore(self, snapshot: Union[ProjectSnapshot, Dict[str, Any]]) -> StageName:
        """Rebuild engine state from a snapshot of any supported version.

        Raises:
            SnapshotVersionError: If the snapshot is newer than this code.
        """
        if isinstance(snapshot, dict):
            snapshot = load_snapshot(snapshot)
        self.project_id = snapshot.project.id or None
        self.store.load_snapshot(snapshot.artifacts)
        if snapshot.project.title:
            self.store.project_title = snapshot.project.title
        for record in snapshot.project.stages.values():
            self.pipeline.restore_record(record)
        current = self.pipeline.restore(snapshot.project.completion_map())
        self.guard.usage = snapshot.usage
        self.orchestrator.restore(snapshot.iteration_state)
        self._loaded_stages = set(snapshot.project.stages)
        logger.info("engine.restored", project_id=self.project_id, current_stage=current.value)
        return current

    def close(self) -> None:
        """Cancel every pending timer and watchdog."""
        self.scheduler.cancel_all()
        self.supervisor.clear_all()
