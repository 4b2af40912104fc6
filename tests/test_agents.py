"""Tests for team agents, reply envelopes and feedback parsing."""

import pytest

from src.build_engine.agents import (
    AgentContext,
    AgentError,
    CoordinatorAgent,
    DeveloperAgent,
    UserFeedbackAgent,
    UXAgent,
    agent_for_role,
    parse_feedback,
)
from src.build_engine.envelope import (
    completion_signal,
    detect_written_files,
    files_from_envelope,
    resolve_envelope,
)
from src.domain.schema import USER_FEEDBACK_ROLE, AgentType, Framework, Persona, ResponseEnvelope


@pytest.fixture
def context():
    return AgentContext(
        screen="Recipe Detail",
        iteration=1,
        idea="Share family recipes",
        personas=[Persona(id="1", name="Ana")],
        feature_names=["Search", "Favorites"],
        framework=Framework.REACT,
        role="UX",
    )


class TestAgentForRole:
    def test_known_roles(self):
        assert isinstance(agent_for_role("UX"), UXAgent)
        assert isinstance(agent_for_role("Developer"), DeveloperAgent)
        assert isinstance(agent_for_role(USER_FEEDBACK_ROLE), UserFeedbackAgent)

    def test_custom_role_gets_coordinator(self):
        agent = agent_for_role("QA Engineer")
        assert isinstance(agent, CoordinatorAgent)
        assert agent.AGENT_TYPE == AgentType.COORDINATOR


class TestPrompts:
    def test_ux_prompt_includes_context(self, context):
        turn = UXAgent().turn(context)
        assert turn.agent_type == AgentType.UX
        assert "Recipe Detail" in turn.prompt
        assert "Search, Favorites" in turn.prompt
        assert "recipe-detail/iteration-1" in turn.prompt
        assert "COORDINATOR:" in turn.prompt

    def test_ux_prompt_carries_feedback(self, context):
        context.iteration = 2
        context.previous_feedback = "Make the button bigger"
        turn = UXAgent().turn(context)
        assert "PREVIOUS USER FEEDBACK TO ADDRESS" in turn.prompt
        assert "Make the button bigger" in turn.prompt
        assert turn.status == "Updating requirements based on feedback..."

    def test_developer_prompt_follows_framework(self, context):
        context.framework = Framework.VUE
        turn = DeveloperAgent().turn(context)
        assert "VUE" in turn.prompt
        assert "RecipeDetail" in turn.prompt

    def test_feedback_prompt_lists_personas(self, context):
        turn = UserFeedbackAgent().turn(context)
        assert "- Ana:" in turn.prompt
        assert '"averageRating"' in turn.prompt

    def test_coordinator_prompt_names_role(self, context):
        context.role = "QA Engineer"
        assert "QA ENGINEER TURN" in CoordinatorAgent().turn(context).prompt

    def test_missing_screen_rejected(self, context):
        context.screen = ""
        with pytest.raises(AgentError):
            UXAgent().turn(context)


class TestEnvelope:
    def test_marker_marks_done(self):
        envelope = resolve_envelope("All set.\nCOORDINATOR: UX requirements complete.", None)
        assert envelope.done
        assert completion_signal(envelope.text) == "UX requirements complete."

    def test_no_marker_not_done(self):
        assert not resolve_envelope("Still working on it", None).done

    def test_written_files_become_artifacts(self):
        text = '<write_file path="src/Home.jsx">export default 1;</write_file>\nCOORDINATOR: done'
        envelope = resolve_envelope(text, None)
        files = files_from_envelope(envelope)
        assert [f.path for f in files] == ["src/Home.jsx"]
        assert files[0].content == "export default 1;"

    def test_structured_envelope_preferred(self):
        """A structured envelope wins over markers found in the text."""
        envelope = ResponseEnvelope(done=False, artifacts=[{"kind": "file", "path": "a.css"}])
        resolved = resolve_envelope("COORDINATOR: done", envelope)
        assert resolved.done is False
        assert resolved.text == "COORDINATOR: done"
        assert [f.path for f in files_from_envelope(resolved)] == ["a.css"]

    def test_detect_multiple_files(self):
        text = '<write_file path="a.html"><p/></write_file><write_file path="b.css">p{}</write_file>'
        assert [f.path for f in detect_written_files(text)] == ["a.html", "b.css"]


class TestParseFeedback:
    def test_supplied_average_used(self):
        text = """### Ana
**Rating: 7/10**
```json
{"ratings": [{"persona": "Ana", "rating": 7, "summary": "Clean"},
             {"persona": "Ben", "rating": "9/10", "summary": "Fast"}],
 "averageRating": 7.5,
 "recommendation": "approve",
 "topIssues": ["Small tap targets"],
 "quickWins": ["Bigger buttons"]}
```
COORDINATOR: User feedback complete."""
        summary = parse_feedback(text)
        assert summary.average_rating == 7.5
        assert [r.persona_name for r in summary.user_ratings] == ["Ana", "Ben"]
        assert summary.user_ratings[1].rating == 9
        assert "Top Issues" in summary.consolidated_feedback
        assert "Recommendation: approve" in summary.consolidated_feedback

    def test_mean_when_average_missing(self):
        summary = parse_feedback('{"ratings": [{"name": "Ana", "rating": 6}, {"name": "Ben", "rating": 8}]}')
        assert summary.average_rating == 7.0
        assert summary.consolidated_feedback is None

    def test_ratings_kept_as_given(self):
        summary = parse_feedback(
            '{"ratings": [{"name": "Ana", "rating": "0/10"}, {"name": "Ben", "rating": "7.5"},'
            ' {"name": "Cy", "rating": "great"}]}'
        )
        assert [r.rating for r in summary.user_ratings] == [0.0, 7.5, 5.0]
        assert summary.average_rating == pytest.approx(12.5 / 3)

    def test_no_ratings(self):
        assert parse_feedback("Looks fine to me. COORDINATOR: done") is None
