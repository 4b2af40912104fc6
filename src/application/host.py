"""Build host: executes the engine's outbound messages against adapters.

The host listens to every outbound ``DomainEvent`` on the bus, performs the
requested side effect (model call, storage write, screenshot, build log) and
feeds the resulting inbound messages back into the owning engine.
"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple, Type

from src.adapters.llm.litellm_adapter import LLMProviderError
from src.application.stage_files import StageFileService
from src.build_engine.artifact_store import STAGE_ARTIFACT_TYPE
from src.build_engine.build_log import BuildLogManager, make_entry
from src.build_engine.content_streamer import ContentStreamer
from src.build_engine.engine import BuildModeEngine
from src.build_engine.prompts import partial_item_count
from src.domain.interfaces import IEventBus, ILLMProvider, IScreenshotCapture
from src.domain.messages import (
    OUTBOUND_TYPES,
    AppendBuildLog,
    AssistantResponse,
    BuildStateMessage,
    CaptureScreenshot,
    GenerateContentStreaming,
    LoadStageFile,
    ResetTokenUsage,
    RetryGeneration,
    RetryReady,
    SaveStageFile,
    ScreenshotCaptured,
    ScreenshotError,
    StageFileLoaded,
    StageFilePayload,
    UsageUpdate,
    UserInput,
    parse_outbound,
)
from src.domain.schema import STAGE_ORDER, DomainEvent, LogEntryType, StageName, WireModel
from src.infrastructure.messaging.event_bus import WILDCARD
from src.utils.logger import get_logger
from src.utils.tracing import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)

EngineLookup = Callable[[Optional[str]], Optional[BuildModeEngine]]
Handler = Callable[[Optional[str], WireModel], Awaitable[None]]


class BuildHost:
    """Side-effect executor behind one or more engines."""

    def __init__(
        self,
        engines: EngineLookup,
        llm_provider: ILLMProvider,
        stage_files: StageFileService,
        build_log: BuildLogManager,
        screenshot: Optional[IScreenshotCapture] = None,
    ):
        """Initialize host.

        Args:
            engines: Returns the engine owning a project id.
            llm_provider: Model client for generations and iteration steps.
            stage_files: Stage record service.
            build_log: Build log manager.
            screenshot: Optional screenshot capture adapter.
        """
        self._engines = engines
        self.llm = llm_provider
        self.stage_files = stage_files
        self.build_log = build_log
        self.screenshot = screenshot
        self._tasks: Set[asyncio.Task] = set()
        self._handlers: Dict[Type[WireModel], Handler] = {
            GenerateContentStreaming: self._generate,
            UserInput: self._user_input,
            SaveStageFile: self._save_stage_file,
            LoadStageFile: self._load_stage_file,
            CaptureScreenshot: self._capture_screenshot,
            AppendBuildLog: self._append_build_log,
            ResetTokenUsage: self._reset_token_usage,
            RetryGeneration: self._retry_generation,
        }
        missing = [cls.__name__ for cls in OUTBOUND_TYPES if cls not in self._handlers]
        if missing:
            raise TypeError(f"BuildHost has no handler for: {', '.join(missing)}")

    async def attach(self, event_bus: IEventBus) -> None:
        """Subscribe to every outbound message on the bus."""
        await event_bus.subscribe(WILDCARD, self.handle_event)

    async def handle_event(self, event: DomainEvent) -> None:
        message = parse_outbound(event.payload)
        await self._handlers[type(message)](event.project_id, message)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _spawn(self, name: str, coro: Awaitable[None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._done(name, t))

    def _done(self, name: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("build_host.task_failed", task=name, error=str(error), error_type=type(error).__name__)

    async def drain(self) -> None:
        """Wait until all background work, including work it spawns, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, project_id: Optional[str], message: WireModel) -> None:
        engine = self._engines(project_id)
        if engine is None:
            logger.warning("build_host.no_engine", project_id=project_id, type=getattr(message, "type", ""))
            return
        await engine.dispatch(message)

    async def _report_usage(self, project_id: Optional[str]) -> int:
        usage = self.llm.last_usage
        if usage.total_tokens:
            await self._deliver(project_id, UsageUpdate(usage=usage))
        return usage.total_tokens

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def _generate(self, project_id: Optional[str], message: GenerateContentStreaming) -> None:
        self._spawn(f"generate:{message.stage.value}", self._run_generation(message))

    async def _run_generation(self, message: GenerateContentStreaming) -> None:
        project_id = message.project_id
        stage = message.stage

        async def _emit(update: WireModel) -> None:
            await self._deliver(project_id, update)

        streamer = ContentStreamer(_emit)
        streamer.start_stage(stage)
        messages = [
            {"role": "system", "content": message.system_prompt},
            {"role": "user", "content": message.prompt},
        ]
        start_time = time.time()
        with tracer.start_as_current_span("build_host.generate") as span:
            span.set_attribute("project_id", project_id)
            span.set_attribute("stage", stage.value)
            try:
                async for chunk in self.llm.stream_completion(messages):
                    await streamer.add_chunk(stage, chunk)
                await streamer.complete_stage(stage)
            except LLMProviderError as e:
                span.record_exception(e)
                partial = await streamer.handle_generation_failure(stage, str(e))
                partial, count = self._failed_stage_content(project_id, stage, partial, streamer.item_count(stage))
                await self.stage_files.save_stage_with_error(project_id, stage, partial, str(e), count)
            tokens = await self._report_usage(project_id)
            span.set_attribute("total_tokens", tokens)

        await self.build_log.append(
            project_id,
            make_entry(
                LogEntryType.ASSISTANT,
                stage.value,
                f"Streamed {streamer.item_count(stage)} item(s).",
                model=getattr(self.llm, "model", None),
                tokens=tokens,
                duration=round(time.time() - start_time, 2),
            ),
        )

    def _failed_stage_content(
        self, project_id: Optional[str], stage: StageName, partial: dict, streamed: int
    ) -> Tuple[dict, int]:
        """Partial document saved with a generation error.

        The engine has already merged the failed stream, so its stage slice
        holds items replayed from an earlier failure as well as this run's.
        """
        engine = self._engines(project_id)
        if engine is None or STAGE_ARTIFACT_TYPE.get(stage) is None:
            return partial, streamed
        data = engine.persistence.stage_document(stage)
        return data, partial_item_count(stage, data)

    async def _user_input(self, project_id: Optional[str], message: UserInput) -> None:
        self._spawn("user-input", self._run_user_input(project_id, message))

    async def _run_user_input(self, project_id: Optional[str], message: UserInput) -> None:
        with tracer.start_as_current_span("build_host.user_input") as span:
            span.set_attribute("agent_type", str(message.settings.get("agentType", "")))
            try:
                text = await self.llm.chat_completion([{"role": "user", "content": message.value}])
            except LLMProviderError as e:
                span.record_exception(e)
                logger.error("build_host.user_input_failed", project_id=project_id, error=str(e))
                if project_id:
                    await self.build_log.append(
                        project_id,
                        make_entry(LogEntryType.ERROR, "design", f"Model call failed: {e}"),
                    )
                return
            await self._report_usage(project_id)
        await self._deliver(project_id, AssistantResponse(text=text, model=getattr(self.llm, "model", None)))

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def _save_stage_file(self, project_id: Optional[str], message: SaveStageFile) -> None:
        await self.stage_files.save_stage(message.project_id, message.stage, message.data, message.completed)

    async def _load_stage_file(self, project_id: Optional[str], message: LoadStageFile) -> None:
        self._spawn(f"load:{message.stage.value}", self._run_load_stage(message))

    async def _run_load_stage(self, message: LoadStageFile) -> None:
        record = await self.stage_files.load_stage(message.project_id, message.stage)
        payload = StageFilePayload(data=record.data, completed=record.completed) if record else None
        await self._deliver(message.project_id, StageFileLoaded(stage=message.stage, data=payload))

    async def _retry_generation(self, project_id: Optional[str], message: RetryGeneration) -> None:
        self._spawn(f"retry:{message.stage.value}", self._run_retry(message))

    async def _run_retry(self, message: RetryGeneration) -> None:
        record = await self.stage_files.load_stage(message.project_id, message.stage)
        partial = record.data if record else {}
        if record is not None and record.error is not None and record.error.partial_item_count:
            count = record.error.partial_item_count
        else:
            count = partial_item_count(message.stage, partial)
        await self._deliver(
            message.project_id,
            RetryReady(
                stage=message.stage,
                project_id=message.project_id,
                partial_content=partial,
                partial_item_count=count,
            ),
        )

    async def _append_build_log(self, project_id: Optional[str], message: AppendBuildLog) -> None:
        await self.build_log.append(message.project_id, message.entry)

    async def _reset_token_usage(self, project_id: Optional[str], message: ResetTokenUsage) -> None:
        logger.info("build_host.usage_reset", project_id=project_id)

    async def open_project(self, project_id: str) -> None:
        """Feed a stored project's build state and stage records into its engine."""
        build_state = await self.stage_files.load_build_state(project_id)
        await self._deliver(project_id, BuildStateMessage(build_state=build_state))
        for stage in STAGE_ORDER:
            record = await self.stage_files.load_stage(project_id, stage)
            if record is not None:
                await self._deliver(
                    project_id,
                    StageFileLoaded(stage=stage, data=StageFilePayload(data=record.data, completed=record.completed)),
                )

    # ------------------------------------------------------------------
    # Screenshots
    # ------------------------------------------------------------------

    async def _capture_screenshot(self, project_id: Optional[str], message: CaptureScreenshot) -> None:
        self._spawn("screenshot", self._run_capture(project_id, message.url))

    async def _run_capture(self, project_id: Optional[str], url: str) -> None:
        if self.screenshot is None:
            await self._deliver(project_id, ScreenshotError(message="No screenshot capture is configured."))
            return
        try:
            screenshot = await self.screenshot.capture(url)
        except Exception as e:
            logger.warning("build_host.screenshot_failed", url=url, error=str(e))
            await self._deliver(project_id, ScreenshotError(message=str(e)))
            return
        await self._deliver(project_id, ScreenshotCaptured(screenshot=screenshot))
