"""Iteration Loop Orchestrator.

Drives one screen at a time through the team flow. State transitions are the
pure functions of ``src.build_engine.iteration``; this class adds dispatch
through the usage guard, the auto-advance timer and build log entries.
"""

from typing import Any, Awaitable, Callable, List, Optional, Sequence

from src.build_engine import iteration
from src.build_engine.agents import AgentContext, agent_for_role, parse_feedback
from src.build_engine.artifact_store import ArtifactStore
from src.build_engine.envelope import files_from_envelope, resolve_envelope
from src.build_engine.supervision import Scheduler
from src.build_engine.usage_guard import UsageGuard, UsageLimitExceeded
from src.config import settings
from src.domain.messages import AssistantResponse, CaptureScreenshot, ScreenshotCaptured, ScreenshotError, UserInput
from src.domain.schema import AgentType, Framework, IterationState, LogEntryType, StageName, WireModel
from src.utils.logger import get_logger

logger = get_logger(__name__)

AUTO_ADVANCE_TIMER = "auto-advance"

Emitter = Callable[[WireModel], Awaitable[None]]
LogWriter = Callable[..., Awaitable[None]]


class IterationOrchestrator:
    """Side-effecting shell around the iteration state machine."""

    def __init__(
        self,
        store: ArtifactStore,
        guard: UsageGuard,
        emit: Emitter,
        write_log: LogWriter,
        scheduler: Scheduler,
        on_change: Optional[Callable[[], None]] = None,
        auto_advance_delay: Optional[float] = None,
        screenshot_url: Optional[str] = None,
    ):
        """Initialize orchestrator.

        Args:
            store: Artifact store providing screens, personas and features.
            guard: Usage guard consulted before every dispatch.
            emit: Coroutine sending outbound messages.
            write_log: Coroutine ``(entry_type, stage, content, **metadata)``
                appending a build log entry.
            scheduler: Scheduler for the auto-advance transition.
            on_change: Called after every state change (autosave hook).
            auto_advance_delay: Seconds between a completed step and the next one.
            screenshot_url: Preview URL captured before the feedback step.
        """
        self.store = store
        self.guard = guard
        self._emit = emit
        self._write_log = write_log
        self.scheduler = scheduler
        self._on_change = on_change or (lambda: None)
        self.auto_advance_delay = (
            settings.auto_advance_delay_seconds if auto_advance_delay is None else auto_advance_delay
        )
        self.screenshot_url = screenshot_url or settings.screenshot_url
        self.state = IterationState()
        self._awaiting_reply = False

    def _set(self, state: IterationState) -> None:
        self.state = state
        self._on_change()

    async def _log(self, entry_type: LogEntryType, content: str, **metadata: Any) -> None:
        await self._write_log(entry_type, StageName.DESIGN.value, content, **metadata)

    # ------------------------------------------------------------------
    # Start / step
    # ------------------------------------------------------------------

    async def start(
        self,
        screens: Optional[Sequence[str]] = None,
        roles: Optional[Sequence[str]] = None,
        framework: Optional[Framework] = None,
        auto_run: bool = True,
    ) -> IterationState:
        """Start the loop and dispatch its first step.

        Screens default to the design-stage screens, roles to the project's
        dev flow order.

        Raises:
            IterationError: If there are no screens.
            StepInFlightError: If a step of the running loop is incomplete.
            UsageLimitExceeded: If the first dispatch is rejected.
        """
        screen_names = list(screens) if screens else [s.name for s in self.store.screens]
        self.scheduler.cancel(AUTO_ADVANCE_TIMER)
        state = iteration.start(
            screen_names,
            list(roles) if roles else self.store.dev_flow_order,
            framework or Framework(settings.default_framework),
            auto_run,
            previous=self.state,
        )
        self._awaiting_reply = False
        self._set(state)
        logger.info("iteration.started", screens=len(state.screen_list), team_flow=state.team_flow)
        await self._log(
            LogEntryType.SYSTEM,
            f"Iteration loop started for {len(state.screen_list)} screen(s): {', '.join(state.screen_list)}",
        )
        await self._step()
        return self.state

    def _context(self, state: IterationState) -> AgentContext:
        return AgentContext(
            screen=state.current_screen or "",
            iteration=state.iteration_count,
            idea=self.store.idea,
            personas=self.store.personas,
            feature_names=[f.name for f in self.store.features],
            framework=state.framework,
            previous_feedback=state.pending_feedback,
            role=state.current_role or "",
        )

    async def _step(self, advance: bool = False) -> None:
        """Dispatch the current role's prompt through the usage guard.

        With ``advance`` the loop moves to the next role first. The move is
        committed only once the guard admits the dispatch.

        Raises:
            IterationError: If the loop cannot advance.
            UsageLimitExceeded: After deactivating the loop and logging the error.
        """
        state = iteration.advance(self.state) if advance else self.state
        context = self._context(state)
        turn = agent_for_role(context.role).turn(context)
        try:
            self.guard.check_and_reserve()
        except UsageLimitExceeded as e:
            self._set(self.state.model_copy(update={"active": False, "agent_status": str(e)}))
            await self._log(LogEntryType.ERROR, str(e))
            raise

        self._set(iteration.begin_step(state, turn))
        self._awaiting_reply = True
        if self.state.screenshot_pending:
            await self._emit(CaptureScreenshot(url=self.screenshot_url))
        await self._emit(
            UserInput(
                value=turn.prompt,
                settings={
                    "agentType": turn.agent_type.value,
                    "role": context.role,
                    "screen": context.screen,
                    "iteration": context.iteration,
                    "framework": context.framework.value,
                },
            )
        )
        await self._log(
            LogEntryType.USER,
            f"[{context.role}] {context.screen} (iteration {context.iteration}): {turn.status}",
        )
        logger.info(
            "iteration.step_dispatched",
            screen=context.screen,
            role=context.role,
            agent=turn.agent_type.value,
            iteration=context.iteration,
        )

    # ------------------------------------------------------------------
    # Replies and auto-advance
    # ------------------------------------------------------------------

    async def handle_reply(self, message: AssistantResponse) -> None:
        """Record a reply; a done envelope completes the in-flight step."""
        envelope = resolve_envelope(message.text, message.envelope)
        await self._log(LogEntryType.ASSISTANT, envelope.text, model=message.model)
        if not self._awaiting_reply:
            logger.debug("iteration.reply_without_step", done=envelope.done)
            return

        files = files_from_envelope(envelope)
        if not envelope.done:
            self._set(iteration.record_files(self.state, files))
            logger.debug("iteration.partial_reply", files=len(files))
            return

        feedback = None
        if self.state.current_agent == AgentType.USER_FEEDBACK:
            feedback = parse_feedback(envelope.text)
        self._awaiting_reply = False
        self._set(iteration.complete_step(self.state, files, feedback))
        logger.info(
            "iteration.step_completed",
            screen=self.state.current_screen,
            role=self.state.current_role,
            files=len(files),
            active=self.state.active,
        )

        if iteration.should_auto_advance(self.state):
            self.scheduler.schedule(AUTO_ADVANCE_TIMER, self.auto_advance_delay, self._auto_advance)
        elif not self.state.active:
            logger.info("iteration.reply_after_stop", screen=self.state.current_screen)

    async def _auto_advance(self) -> None:
        if not iteration.should_auto_advance(self.state):
            return
        try:
            await self._step(advance=True)
        except UsageLimitExceeded:
            logger.info("iteration.auto_advance_rejected", screen=self.state.current_screen)

    async def next_step(self) -> None:
        """Advance manually when auto-run is off.

        Raises:
            IterationError: If the step is incomplete or approval is pending.
            UsageLimitExceeded: If the dispatch is rejected.
        """
        self.scheduler.cancel(AUTO_ADVANCE_TIMER)
        await self._step(advance=True)

    async def resume(self) -> IterationState:
        """Continue a paused or stopped loop where it left off.

        Raises:
            IterationError: If there is no unfinished loop to resume.
            UsageLimitExceeded: If the follow-up dispatch is rejected.
        """
        self.scheduler.cancel(AUTO_ADVANCE_TIMER)
        state, action = iteration.resume(self.state)
        self._awaiting_reply = False
        self._set(state)
        await self._log(
            LogEntryType.SYSTEM,
            f"Iteration loop resumed at {state.current_screen} "
            f"({state.current_role}, iteration {state.iteration_count}).",
        )
        logger.info("iteration.resumed", screen=state.current_screen, role=state.current_role, action=action)
        if action == "dispatch":
            await self._step()
        elif action == "advance":
            await self._step(advance=True)
        return self.state

    # ------------------------------------------------------------------
    # Approval gate and stop
    # ------------------------------------------------------------------

    async def approve(self, approved: bool, feedback: Optional[str] = None) -> str:
        """Apply the operator's decision.

        Returns:
            "iterate", "next_screen" or "finished".

        Raises:
            IterationError: If the loop is not waiting for approval.
            UsageLimitExceeded: If the follow-up dispatch is rejected.
        """
        screen = self.state.current_screen
        state, outcome = iteration.approve(self.state, approved, feedback)
        self._set(state)
        decision = "Approved" if approved else f"Iterate: {feedback or iteration.DEFAULT_ITERATE_FEEDBACK}"
        await self._log(LogEntryType.USER, f"{screen}: {decision}")
        logger.info("iteration.decision", screen=screen, outcome=outcome)
        if outcome == "finished":
            await self._emit_summary()
        else:
            await self._step()
        return outcome

    async def stop(self) -> IterationState:
        """Deactivate the loop; a dispatched step may still reply."""
        self.scheduler.cancel(AUTO_ADVANCE_TIMER)
        self._set(iteration.stop(self.state))
        await self._log(LogEntryType.SYSTEM, "Iteration loop stopped.")
        logger.info("iteration.stopped", screen=self.state.current_screen)
        return self.state

    def summary(self) -> str:
        reports = self.state.feedback_reports
        lines = [f"Iteration loop complete. {len(reports)} screen(s) built:"]
        for report in reports:
            rating = f"{report.average_rating:.1f}/10" if report.average_rating is not None else "N/A"
            lines.append(f"- {report.screen} (iteration {report.iteration}, rating {rating})")
        files: List[str] = [path for report in reports for path in report.files]
        if files:
            lines.append("")
            lines.append("Generated files:")
            lines.extend(f"- {path}" for path in files)
        return "\n".join(lines)

    async def _emit_summary(self) -> None:
        text = self.summary()
        await self._emit(UserInput(value=text, settings={"summary": True}))
        await self._log(LogEntryType.SYSTEM, text)

    # ------------------------------------------------------------------
    # Screenshots
    # ------------------------------------------------------------------

    async def capture_screenshot(self, url: Optional[str] = None) -> None:
        """Request a capture, optionally from another preview URL."""
        if url:
            self.screenshot_url = url
        self._set(iteration.screenshot_requested(self.state))
        await self._emit(CaptureScreenshot(url=self.screenshot_url))

    def handle_screenshot_captured(self, message: ScreenshotCaptured) -> None:
        self._set(iteration.screenshot_captured(self.state, message.screenshot))

    async def handle_screenshot_error(self, message: ScreenshotError) -> None:
        self._set(iteration.screenshot_failed(self.state, message.message))
        await self._log(LogEntryType.ERROR, f"Screenshot capture failed: {message.message}")

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, state: IterationState) -> None:
        """Load a persisted loop state; a restored loop is paused until resumed."""
        self.scheduler.cancel(AUTO_ADVANCE_TIMER)
        self.state = iteration.pause(state)
        self._awaiting_reply = False
