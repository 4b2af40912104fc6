"""Tests for the stage pipeline and project identity."""

import pytest

from src.build_engine.projects import (
    ProjectIdentityError,
    allocate_project_id,
    is_valid_project_id,
    sanitize_project_name,
)
from src.build_engine.stages import (
    StagePipeline,
    can_navigate_to,
    derive_current_stage,
    next_stage,
    previous_stage,
    validate_transition,
)
from src.domain.schema import STAGE_ORDER, StageName


class TestStageOrdering:
    def test_order(self):
        assert [s.value for s in STAGE_ORDER] == ["idea", "users", "features", "team", "stories", "design"]

    def test_neighbours(self):
        assert previous_stage(StageName.IDEA) is None
        assert previous_stage(StageName.TEAM) == StageName.FEATURES
        assert next_stage(StageName.DESIGN) is None


class TestDeriveCurrentStage:
    def test_nothing_completed(self):
        assert derive_current_stage({}) == StageName.IDEA

    def test_first_incomplete_wins(self):
        completion = {StageName.IDEA: True, StageName.USERS: True, StageName.TEAM: True}
        assert derive_current_stage(completion) == StageName.FEATURES

    def test_all_completed_gives_last_stage(self):
        assert derive_current_stage({stage: True for stage in STAGE_ORDER}) == StageName.DESIGN


class TestNavigation:
    def test_first_stage_always_open(self):
        assert can_navigate_to(StageName.IDEA, {})

    def test_locked_until_previous_completed(self):
        assert not can_navigate_to(StageName.FEATURES, {StageName.IDEA: True})
        assert can_navigate_to(StageName.FEATURES, {StageName.IDEA: True, StageName.USERS: True})

    def test_validate_transition_reason(self):
        allowed, reason = validate_transition(StageName.IDEA, StageName.USERS, {})
        assert not allowed
        assert "idea" in reason

    def test_refused_navigation_is_silent(self):
        """A locked stage is refused without raising and the cursor stays put."""
        pipeline = StagePipeline()
        assert pipeline.navigate(StageName.DESIGN) is False
        assert pipeline.current_stage == StageName.IDEA


class TestMonotonicCompletion:
    def test_autosave_never_downgrades(self):
        pipeline = StagePipeline()
        pipeline.save_stage(StageName.IDEA, {"idea": "x"}, completed=True)
        record = pipeline.save_stage(StageName.IDEA, {"idea": "y"}, completed=False)
        assert record.completed is True
        assert record.data == {"idea": "y"}

    def test_restore_rederives_cursor(self):
        pipeline = StagePipeline()
        pipeline.current_stage = StageName.DESIGN
        current = pipeline.restore({StageName.IDEA: True})
        assert current == StageName.USERS
        assert pipeline.current_stage == StageName.USERS


class TestProjectIdentity:
    def test_sanitize(self):
        assert sanitize_project_name("  My Cool App!! ") == "my-cool-app"
        assert sanitize_project_name("a" * 80) == "a" * 50

    def test_valid_ids(self):
        assert is_valid_project_id("a")
        assert is_valid_project_id("my_app-2")
        assert not is_valid_project_id("-app")

    def test_allocate(self):
        assert allocate_project_id("Recipe Box", []) == "recipe-box"

    def test_empty_title_rejected(self):
        with pytest.raises(ProjectIdentityError):
            allocate_project_id("!!!", [])

    def test_collision_rejected(self):
        with pytest.raises(ProjectIdentityError):
            allocate_project_id("Recipe Box", ["recipe-box"])
