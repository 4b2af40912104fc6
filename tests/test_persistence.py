"""Tests for stage saves, autosave and resumed generation."""

import pytest

from src.build_engine.persistence import AUTOSAVE_TIMER
from src.config import settings
from src.domain.messages import (
    BuildStateMessage,
    RetryReady,
    StageFileLoaded,
    StageFilePayload,
    StreamUpdate,
)
from src.domain.schema import BuildState, StageName, StageStatus, UpdateType


def _feature(data, index):
    return StreamUpdate(stage=StageName.FEATURES, update_type=UpdateType.FEATURE, data=data, index=index)


class TestSaves:
    @pytest.mark.asyncio
    async def test_save_emits_stage_slice(self, engine, bus):
        await engine.save_stage(StageName.IDEA, {"idea": "Recipe sharing", "projectTitle": "Recipe Box"}, completed=True)
        saved = bus.of_type("save-stage-file")[-1]
        assert saved["projectId"] == "demo"
        assert saved["stage"] == "idea"
        assert saved["completed"] is True
        assert saved["data"] == {"idea": "Recipe sharing", "projectTitle": "Recipe Box"}

    @pytest.mark.asyncio
    async def test_design_slice_carries_iteration_state(self, engine, bus, design_data):
        await engine.save_stage(StageName.DESIGN, design_data)
        data = bus.of_type("save-stage-file")[-1]["data"]
        assert [s["name"] for s in data["screens"]] == ["Home", "Settings"]
        assert data["iterationState"]["active"] is False

    @pytest.mark.asyncio
    async def test_first_idea_save_creates_project(self, bus, manual_scheduler):
        from src.build_engine.engine import BuildModeEngine

        engine = BuildModeEngine(bus, scheduler=manual_scheduler)
        record = await engine.save_stage(
            StageName.IDEA, {"idea": "x", "projectTitle": "My Cool App"}, completed=True, existing_ids=["other"]
        )
        assert engine.project_id == "my-cool-app"
        assert record.completed

    @pytest.mark.asyncio
    async def test_save_without_project_needs_idea_stage(self, bus, manual_scheduler):
        from src.build_engine.engine import BuildModeEngine
        from src.build_engine.projects import ProjectIdentityError

        engine = BuildModeEngine(bus, scheduler=manual_scheduler)
        with pytest.raises(ProjectIdentityError):
            await engine.save_stage(StageName.USERS, {"personas": []})


class TestAutosave:
    @pytest.mark.asyncio
    async def test_edits_debounce_into_one_save(self, engine, bus, manual_scheduler):
        engine.update_stage(StageName.IDEA, {"idea": "first"})
        engine.update_stage(StageName.IDEA, {"idea": "second"})
        assert manual_scheduler.pending_names() == [AUTOSAVE_TIMER]
        assert manual_scheduler.delay(AUTOSAVE_TIMER) == settings.autosave_debounce_seconds
        assert bus.of_type("save-stage-file") == []

        await manual_scheduler.fire(AUTOSAVE_TIMER)
        saves = bus.of_type("save-stage-file")
        assert len(saves) == 1
        assert saves[0]["data"]["idea"] == "second"
        assert engine.persistence.dirty is False

    @pytest.mark.asyncio
    async def test_autosave_never_downgrades_completion(self, engine, bus, manual_scheduler, feature_items):
        await engine.save_stage(StageName.FEATURES, {"features": feature_items}, completed=True)
        engine.update_stage(StageName.FEATURES, {"features": feature_items[:2]})
        await manual_scheduler.fire(AUTOSAVE_TIMER)
        saved = bus.of_type("save-stage-file")[-1]
        assert saved["completed"] is True
        assert len(saved["data"]["features"]) == 2

    @pytest.mark.asyncio
    async def test_explicit_save_cancels_pending_autosave(self, engine, manual_scheduler):
        engine.update_stage(StageName.IDEA, {"idea": "draft"})
        await engine.save_stage(StageName.IDEA)
        assert not manual_scheduler.pending(AUTOSAVE_TIMER)

    @pytest.mark.asyncio
    async def test_streamed_items_schedule_autosave(self, engine, manual_scheduler):
        await engine.dispatch(_feature({"name": "Search"}, 0))
        assert manual_scheduler.pending(AUTOSAVE_TIMER)

    @pytest.mark.asyncio
    async def test_failed_generation_drops_autosave(self, engine, manual_scheduler):
        """The host's error record must not be overwritten by a late autosave."""
        await engine.dispatch(_feature({"name": "Search"}, 0))
        await engine.dispatch(StreamUpdate(stage=StageName.FEATURES, error="timeout"))
        assert not manual_scheduler.pending(AUTOSAVE_TIMER)

    @pytest.mark.asyncio
    async def test_edits_to_several_stages_all_saved(self, engine, bus, manual_scheduler):
        engine.update_stage(StageName.USERS, {"personas": [{"name": "Ana"}]})
        engine.update_stage(StageName.IDEA, {"idea": "Recipe sharing"})
        assert manual_scheduler.pending_names() == [AUTOSAVE_TIMER]

        await manual_scheduler.fire(AUTOSAVE_TIMER)
        saves = bus.of_type("save-stage-file")
        assert [s["stage"] for s in saves] == ["idea", "users"]
        assert saves[1]["data"]["personas"][0]["name"] == "Ana"
        assert engine.persistence.dirty is False

    @pytest.mark.asyncio
    async def test_failed_generation_keeps_other_stage_dirty(self, engine, bus, manual_scheduler):
        engine.update_stage(StageName.IDEA, {"idea": "Recipe sharing"})
        await engine.dispatch(_feature({"name": "Search"}, 0))
        await engine.dispatch(StreamUpdate(stage=StageName.FEATURES, error="timeout"))
        assert engine.persistence.dirty_stages() == [StageName.IDEA]
        assert manual_scheduler.pending(AUTOSAVE_TIMER)

        await manual_scheduler.fire(AUTOSAVE_TIMER)
        assert [s["stage"] for s in bus.of_type("save-stage-file")] == ["idea"]

    @pytest.mark.asyncio
    async def test_explicit_save_of_one_stage_keeps_others_pending(self, engine, manual_scheduler):
        engine.update_stage(StageName.IDEA, {"idea": "draft"})
        engine.update_stage(StageName.USERS, {"personas": [{"name": "Ana"}]})
        await engine.save_stage(StageName.IDEA)
        assert engine.persistence.dirty_stages() == [StageName.USERS]
        assert manual_scheduler.pending(AUTOSAVE_TIMER)


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_three_of_seven(self, engine, bus, feature_items):
        await engine.dispatch(
            RetryReady(
                stage=StageName.FEATURES,
                project_id="demo",
                partial_content={"features": feature_items[:3]},
                partial_item_count=3,
            )
        )
        prompt = bus.of_type("generate-content-streaming")[-1]["prompt"]
        assert "The following 3 items have already been generated" in prompt
        assert "Do NOT regenerate" in prompt
        assert [f.name for f in engine.store.features] == ["Feature 1", "Feature 2", "Feature 3"]

        # The model repeats one saved item before continuing.
        await engine.dispatch(_feature({"name": "Feature 2"}, 0))
        for index, raw in enumerate(feature_items[3:]):
            await engine.dispatch(_feature({"name": raw["name"], "score": raw["score"]}, index))
        await engine.dispatch(StreamUpdate(stage=StageName.FEATURES, complete=True))

        names = [f.name for f in engine.store.features]
        assert names == [f"Feature {i}" for i in range(1, 8)]
        assert len({f.id for f in engine.store.features}) == 7
        saved = bus.of_type("save-stage-file")[-1]
        assert saved["completed"] is True
        assert len(saved["data"]["features"]) == 7

    @pytest.mark.asyncio
    async def test_resume_for_other_project_ignored(self, engine, bus, feature_items):
        await engine.dispatch(
            RetryReady(stage=StageName.FEATURES, project_id="other", partial_content={"features": feature_items})
        )
        assert bus.of_type("generate-content-streaming") == []
        assert engine.store.features == []

    @pytest.mark.asyncio
    async def test_fresh_generation_after_resume_merges_by_index(self, engine, feature_items):
        await engine.dispatch(
            RetryReady(
                stage=StageName.FEATURES,
                project_id="demo",
                partial_content={"features": feature_items[:3]},
                partial_item_count=3,
            )
        )
        await engine.generate_stage(StageName.FEATURES)
        assert not engine.merge.is_resuming(StageName.FEATURES)

        await engine.dispatch(_feature({"name": "Alpha"}, 0))
        await engine.dispatch(_feature({"name": "Alpha v2"}, 0))
        await engine.dispatch(_feature({"name": "Feature 1"}, 1))
        assert [f.name for f in engine.store.features] == ["Alpha v2", "Feature 1"]

    @pytest.mark.asyncio
    async def test_timed_out_resume_stops_shifting_indexes(self, engine, feature_items, watchdog_scheduler):
        from src.build_engine.engine import generation_watchdog

        await engine.dispatch(
            RetryReady(stage=StageName.FEATURES, project_id="demo", partial_content={"features": feature_items[:3]})
        )
        await watchdog_scheduler.fire(f"watchdog:{generation_watchdog(StageName.FEATURES)}")
        assert not engine.merge.is_resuming(StageName.FEATURES)

        await engine.dispatch(_feature({"name": "Renamed"}, 0))
        assert [f.name for f in engine.store.features] == ["Renamed", "Feature 2", "Feature 3"]

    @pytest.mark.asyncio
    async def test_resume_does_not_clear_replayed_items(self, engine, feature_items):
        await engine.dispatch(
            RetryReady(stage=StageName.FEATURES, partial_content={"features": feature_items[:2]}, partial_item_count=2)
        )
        assert len(engine.store.features) == 2
        assert engine.pipeline.loading[StageName.FEATURES] is True


class TestLoad:
    @pytest.mark.asyncio
    async def test_build_state_rederives_stage(self, engine):
        build_state = BuildState(
            project_name="demo",
            project_title="Demo",
            stages={
                StageName.IDEA: StageStatus(completed=True),
                StageName.USERS: StageStatus(completed=True),
            },
        )
        await engine.dispatch(BuildStateMessage(build_state=build_state))
        assert engine.current_stage == StageName.FEATURES
        assert engine.store.project_title == "Demo"

    @pytest.mark.asyncio
    async def test_stage_file_restores_paused_loop(self, engine, design_data):
        data = dict(design_data)
        data["iterationState"] = {
            "active": True,
            "stepComplete": False,
            "screenList": ["Home", "Settings"],
            "teamFlow": ["UX", "Developer", "User Feedback"],
            "currentScreenIndex": 1,
            "iterationCount": 2,
        }
        await engine.dispatch(
            StageFileLoaded(stage=StageName.DESIGN, data=StageFilePayload(data=data, completed=True))
        )
        state = engine.iteration_state
        assert state.active is False
        assert state.step_complete is True
        assert state.current_screen == "Settings"
        assert [s.name for s in engine.store.screens] == ["Home", "Settings"]
        assert engine.pipeline.is_completed(StageName.DESIGN)

    @pytest.mark.asyncio
    async def test_missing_stage_file_is_ignored(self, engine):
        await engine.dispatch({"type": "stage-file-loaded", "stage": "users", "data": None})
        assert engine.store.personas == []
