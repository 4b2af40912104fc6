"""Iteration loop state machine.

Pure transitions over the immutable ``IterationState``: every function takes
a state and returns a new one. Side effects (dispatch, timers, logging to the
build log) live in ``IterationOrchestrator``.
"""

from typing import List, Optional, Sequence, Tuple

from src.build_engine.agents import AgentTurn, FeedbackSummary
from src.domain.schema import (
    USER_FEEDBACK_ROLE,
    AgentType,
    FeedbackReport,
    Framework,
    GeneratedFile,
    IterationState,
)

APPROVED_WITHOUT_ISSUES = "Approved without issues"
DEFAULT_ITERATE_FEEDBACK = "Address the issues identified above."


class IterationError(Exception):
    """Raised when a transition is not allowed in the current state."""
    pass


class StepInFlightError(IterationError):
    """Raised when a new step is requested while the current one is incomplete."""
    pass


def build_team_flow(roles: Sequence[str]) -> List[str]:
    """Team flow for an ordering of roles; the feedback role is always last."""
    ordered = [role for role in dict.fromkeys(roles) if role and role != USER_FEEDBACK_ROLE]
    return ordered + [USER_FEEDBACK_ROLE]


def start(
    screens: Sequence[str],
    roles: Sequence[str],
    framework: Framework = Framework.REACT,
    auto_run: bool = True,
    previous: Optional[IterationState] = None,
) -> IterationState:
    """Initialise the loop at the first screen, first role, iteration 1.

    Raises:
        IterationError: If no screens are given.
        StepInFlightError: If the previous loop is active with a step in flight.
    """
    screen_list = [s for s in screens if s]
    if not screen_list:
        raise IterationError("Cannot start the iteration loop without screens.")
    if previous is not None and previous.active and not previous.step_complete:
        raise StepInFlightError("A step of the running loop is still in flight.")
    return IterationState(
        active=True,
        current_screen_index=0,
        current_team_member_index=0,
        iteration_count=1,
        screen_list=screen_list,
        team_flow=build_team_flow(roles),
        framework=framework,
        auto_run=auto_run,
        current_agent=AgentType.UX,
        agent_status="Starting iteration loop...",
        step_complete=True,
    )


def begin_step(state: IterationState, turn: AgentTurn) -> IterationState:
    """Mark the current step as dispatched.

    Raises:
        IterationError: If the loop is inactive.
        StepInFlightError: If the previous step has not completed.
    """
    if not state.active:
        raise IterationError("The iteration loop is not active.")
    if not state.step_complete:
        raise StepInFlightError("The current step has not completed yet.")
    is_last = state.is_last_role
    update = {
        "step_complete": False,
        "step_dispatched": True,
        "waiting_for_user_approval": is_last,
        "current_agent": turn.agent_type,
        "agent_status": turn.status,
        "screenshot_pending": is_last,
    }
    if is_last:
        update.update({"user_ratings": [], "screenshot_error": None, "screenshot_url": None})
    return state.model_copy(update=update)


def complete_step(
    state: IterationState,
    files: Sequence[GeneratedFile] = (),
    feedback: Optional[FeedbackSummary] = None,
) -> IterationState:
    """Record the completion signal of the in-flight step."""
    stamped = [
        f.model_copy(update={"screen": state.current_screen or "", "iteration": state.iteration_count})
        for f in files
    ]
    update = {
        "step_complete": True,
        "generated_files": list(state.generated_files) + stamped,
    }
    if state.current_agent == AgentType.USER_FEEDBACK:
        update["waiting_for_user_approval"] = True
        update["agent_status"] = "User feedback complete. Awaiting your decision."
        if feedback is not None:
            update["user_ratings"] = list(feedback.user_ratings)
            update["average_rating"] = feedback.average_rating
            update["consolidated_feedback"] = feedback.consolidated_feedback
    else:
        update["agent_status"] = "Step complete."
    return state.model_copy(update=update)


def record_files(state: IterationState, files: Sequence[GeneratedFile]) -> IterationState:
    """Append files produced by a reply that did not complete the step."""
    if not files:
        return state
    stamped = [
        f.model_copy(update={"screen": state.current_screen or "", "iteration": state.iteration_count})
        for f in files
    ]
    return state.model_copy(update={"generated_files": list(state.generated_files) + stamped})


def should_auto_advance(state: IterationState) -> bool:
    return state.active and state.step_complete and state.auto_run and not state.waiting_for_user_approval


def advance(state: IterationState) -> IterationState:
    """Move to the next role of the team flow for the same screen and iteration.

    Raises:
        IterationError: If the step is incomplete, the loop is waiting for
            approval, or the current role is the last one.
    """
    if not state.active:
        raise IterationError("The iteration loop is not active.")
    if not state.step_complete:
        raise StepInFlightError("The current step has not completed yet.")
    if state.waiting_for_user_approval or state.is_last_role:
        raise IterationError("The loop is waiting for approval.")
    return state.model_copy(
        update={"current_team_member_index": state.current_team_member_index + 1, "step_dispatched": False}
    )


def format_iteration_feedback(state: IterationState, feedback: Optional[str]) -> str:
    """Feedback carried into the next UX prompt after an iterate decision."""
    average = f"{state.average_rating:.1f}" if state.average_rating is not None else "N/A"
    lines = [
        f"ITERATION {state.iteration_count} RESULTS:",
        f"Average Rating: {average}/10",
        "",
        "User Ratings:",
    ]
    lines.extend(f"- {r.persona_name}: {r.rating}/10 - {r.feedback}" for r in state.user_ratings)
    lines.append("")
    lines.append(feedback or state.consolidated_feedback or DEFAULT_ITERATE_FEEDBACK)
    return "\n".join(lines)


_SCREEN_RESET = {
    "user_ratings": [],
    "average_rating": None,
    "consolidated_feedback": None,
    "screenshot_url": None,
    "screenshot_error": None,
    "screenshot_pending": False,
}


def approve(
    state: IterationState,
    approved: bool,
    feedback: Optional[str] = None,
) -> Tuple[IterationState, str]:
    """Apply the operator's decision after the feedback step.

    Returns:
        Tuple of (new state, outcome) where outcome is "next_screen",
        "finished" or "iterate".

    Raises:
        IterationError: If the loop is not waiting for approval.
    """
    if not state.active:
        raise IterationError("The iteration loop is not active.")
    if not (state.waiting_for_user_approval and state.step_complete and state.is_last_role):
        raise IterationError("Approval is only possible after the feedback step completes.")

    if not approved:
        return (
            state.model_copy(
                update={
                    **_SCREEN_RESET,
                    "current_team_member_index": 0,
                    "step_dispatched": False,
                    "iteration_count": state.iteration_count + 1,
                    "waiting_for_user_approval": False,
                    "current_agent": AgentType.UX,
                    "agent_status": "Updating requirements based on feedback...",
                    "pending_feedback": format_iteration_feedback(state, feedback),
                }
            ),
            "iterate",
        )

    report = FeedbackReport(
        screen=state.current_screen or "",
        feedback=state.consolidated_feedback or APPROVED_WITHOUT_ISSUES,
        average_rating=state.average_rating,
        iteration=state.iteration_count,
        files=[f.path for f in state.generated_files],
    )
    reports = list(state.feedback_reports) + [report]
    next_index = state.current_screen_index + 1
    if next_index < len(state.screen_list):
        return (
            state.model_copy(
                update={
                    **_SCREEN_RESET,
                    "current_screen_index": next_index,
                    "current_team_member_index": 0,
                    "step_dispatched": False,
                    "iteration_count": 1,
                    "waiting_for_user_approval": False,
                    "current_agent": AgentType.UX,
                    "agent_status": "Moving to next screen...",
                    "pending_feedback": None,
                    "generated_files": [],
                    "feedback_reports": reports,
                }
            ),
            "next_screen",
        )
    return (
        state.model_copy(
            update={
                "active": False,
                "waiting_for_user_approval": False,
                "agent_status": "All screens complete.",
                "feedback_reports": reports,
            }
        ),
        "finished",
    )


def stop(state: IterationState) -> IterationState:
    """Deactivate the loop. A step already in flight may still complete."""
    return state.model_copy(update={"active": False, "agent_status": "Stopped."})


def pause(state: IterationState) -> IterationState:
    """Deactivate a reloaded loop; a step without its reply must be sent again."""
    if not state.active:
        return state
    update = {"active": False, "agent_status": "Paused after reload."}
    if not state.step_complete:
        update.update({"step_complete": True, "step_dispatched": False})
    return state.model_copy(update=update)


def resume(state: IterationState) -> Tuple[IterationState, str]:
    """Reactivate a paused or stopped loop at the same screen, role and iteration.

    Returns:
        Tuple of (new state, action) where action is "dispatch" (send the
        current role again), "advance" (the current role finished, the next
        one is due) or "await_approval" (the feedback step finished and the
        decision is pending).

    Raises:
        IterationError: If the loop is running, was never started or has
            finished every screen.
    """
    if state.active:
        raise IterationError("The iteration loop is already running.")
    if not state.screen_list or state.current_role is None:
        raise IterationError("There is no iteration loop to resume.")
    if len(state.feedback_reports) >= len(state.screen_list):
        raise IterationError("The iteration loop has already finished.")

    resumed = state.model_copy(update={"active": True, "agent_status": "Resuming iteration loop..."})
    if not state.step_dispatched or not state.step_complete:
        return (
            resumed.model_copy(
                update={"step_complete": True, "step_dispatched": False, "waiting_for_user_approval": False}
            ),
            "dispatch",
        )
    if state.is_last_role:
        return resumed.model_copy(update={"waiting_for_user_approval": True}), "await_approval"
    return resumed, "advance"


def screenshot_captured(state: IterationState, screenshot: str) -> IterationState:
    return state.model_copy(
        update={"screenshot_url": screenshot, "screenshot_pending": False, "screenshot_error": None}
    )


def screenshot_failed(state: IterationState, message: str) -> IterationState:
    """Record a capture failure; loop progression is unaffected."""
    return state.model_copy(update={"screenshot_pending": False, "screenshot_error": message})


def screenshot_requested(state: IterationState) -> IterationState:
    return state.model_copy(update={"screenshot_pending": True, "screenshot_error": None})
