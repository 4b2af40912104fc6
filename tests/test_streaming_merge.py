"""Tests for stream merging and the content streamer."""

import pytest

from src.build_engine.artifact_store import ArtifactStore
from src.build_engine.content_streamer import ContentStreamer
from src.build_engine.stages import StagePipeline
from src.build_engine.streaming_merge import StreamingMergeEngine
from src.domain.messages import StreamUpdate
from src.domain.schema import Feature, StageName, UpdateType


def _feature_update(data, index):
    return StreamUpdate(stage=StageName.FEATURES, update_type=UpdateType.FEATURE, data=data, index=index)


@pytest.fixture
def store():
    return ArtifactStore()


@pytest.fixture
def pipeline():
    return StagePipeline()


@pytest.fixture
def merge(store, pipeline):
    return StreamingMergeEngine(store, pipeline)


class TestApply:
    def test_index_in_range_replaces(self, merge, store):
        merge.apply(_feature_update({"name": "Search"}, 0))
        outcome = merge.apply(_feature_update({"name": "Search v2"}, 0))
        assert outcome.action == "replaced"
        assert [f.name for f in store.features] == ["Search v2"]

    def test_index_out_of_range_appends_once(self, merge, store):
        """A gap in indexes appends one item rather than padding the list."""
        merge.apply(_feature_update({"name": "Search"}, 0))
        outcome = merge.apply(_feature_update({"name": "Export"}, 7))
        assert outcome.action == "appended"
        assert len(store.features) == 2

    def test_non_object_payload_skipped(self, merge, store):
        outcome = merge.apply(_feature_update("not an object", 0))
        assert outcome.action == "skipped"
        assert store.features == []

    def test_feature_defaults(self, merge, store):
        merge.apply(_feature_update({"title": "Export", "score": 42}, 0))
        merge.apply(_feature_update({"name": "Share", "score": None}, 1))
        first, second = store.features
        assert first.name == "Export"
        assert first.id == "1"
        assert first.score == 10
        assert second.score == 5

    def test_text_updates_accumulate(self, merge, store):
        for chunk in ("Two ", "screens"):
            merge.apply(StreamUpdate(stage=StageName.DESIGN, update_type=UpdateType.TEXT, data=chunk))
        assert store.design == "Two screens"

    def test_completion_marks_stage(self, merge, pipeline):
        pipeline.set_loading(StageName.FEATURES, True)
        outcome = merge.apply(StreamUpdate(stage=StageName.FEATURES, complete=True))
        assert outcome.action == "completed"
        assert pipeline.is_completed(StageName.FEATURES)
        assert pipeline.loading[StageName.FEATURES] is False

    def test_error_clears_loading_without_completing(self, merge, pipeline):
        pipeline.set_loading(StageName.FEATURES, True)
        outcome = merge.apply(StreamUpdate(stage=StageName.FEATURES, error="rate limited"))
        assert outcome.action == "failed"
        assert outcome.error == "rate limited"
        assert not pipeline.is_completed(StageName.FEATURES)
        assert pipeline.loading[StageName.FEATURES] is False


class TestResume:
    @pytest.fixture
    def replayed(self, feature_items):
        return [Feature.from_llm_response(raw, i) for i, raw in enumerate(feature_items[:3])]

    def test_indexes_shift_past_replayed_items(self, merge, store, replayed):
        merge.begin_resume(StageName.FEATURES, replayed)
        outcome = merge.apply(_feature_update({"name": "Feature 4"}, 0))
        assert outcome.action == "appended"
        assert [f.name for f in store.features] == ["Feature 1", "Feature 2", "Feature 3", "Feature 4"]
        assert store.features[3].id == "4"

    def test_repeated_items_dropped(self, merge, store, replayed):
        merge.begin_resume(StageName.FEATURES, replayed)
        outcome = merge.apply(_feature_update({"name": "feature 2 "}, 0))
        assert outcome.action == "skipped"
        assert len(store.features) == 3

    def test_colliding_id_reassigned(self, merge, store, replayed):
        merge.begin_resume(StageName.FEATURES, replayed)
        merge.apply(_feature_update({"id": "1", "name": "Offline mode"}, 0))
        assert store.features[3].id == "4"
        assert len({f.id for f in store.features}) == 4

    def test_guard_cleared_on_completion(self, merge, replayed):
        merge.begin_resume(StageName.FEATURES, replayed)
        assert merge.is_resuming(StageName.FEATURES)
        merge.apply(StreamUpdate(stage=StageName.FEATURES, complete=True))
        assert not merge.is_resuming(StageName.FEATURES)

    def test_ended_resume_merges_at_stream_indexes(self, merge, store, replayed):
        merge.begin_resume(StageName.FEATURES, replayed)
        assert merge.end_resume(StageName.FEATURES) is True
        assert merge.end_resume(StageName.FEATURES) is False

        outcome = merge.apply(_feature_update({"name": "Feature 1 revised"}, 0))
        assert outcome.action == "replaced"
        assert store.features[0].name == "Feature 1 revised"


class TestMergeCompleteText:
    def test_each_key_merged(self, merge, store):
        text = '```json\n{"screens": [{"name": "Home"}], "flows": [{"name": "Onboarding"}]}\n```'
        result = merge.merge_complete_text(StageName.DESIGN, text)
        assert result.success
        assert [s.name for s in store.screens] == ["Home"]
        assert len(store.flows) == 1

    def test_parse_failure_keeps_raw_text(self, merge, store):
        result = merge.merge_complete_text(StageName.DESIGN, "Just prose, no JSON.")
        assert not result.success
        assert store.design == "Just prose, no JSON."
        assert store.screens == []


class TestContentStreamer:
    @pytest.fixture
    def emitted(self):
        return []

    @pytest.fixture
    def streamer(self, emitted):
        async def emit(update):
            emitted.append(update)

        return ContentStreamer(emit, max_buffer_size=1, flush_interval=0)

    @pytest.mark.asyncio
    async def test_objects_emitted_in_order(self, streamer, emitted):
        streamer.start_stage(StageName.FEATURES)
        for chunk in ['{"features": [', '{"name": "Search"}', ', {"name": "Fil', 'ters"}', "]}"]:
            await streamer.add_chunk(StageName.FEATURES, chunk)
        await streamer.complete_stage(StageName.FEATURES)

        items = [u for u in emitted if not u.complete]
        assert [u.data["name"] for u in items] == ["Search", "Filters"]
        assert [u.index for u in items] == [0, 1]
        assert emitted[-1].complete

    @pytest.mark.asyncio
    async def test_whole_text_fallback(self, streamer, emitted):
        streamer.start_stage(StageName.USERS)
        await streamer.add_chunk(StageName.USERS, "No array here yet")
        await streamer.add_chunk(StageName.USERS, ' {"personas": [{"name": "Ana"}]}')
        await streamer.complete_stage(StageName.USERS)
        assert [u.data["name"] for u in emitted if not u.complete] == ["Ana"]

    @pytest.mark.asyncio
    async def test_text_stage_streams_plain_text(self, streamer, emitted):
        streamer.start_stage(StageName.IDEA)
        await streamer.add_chunk(StageName.IDEA, "A recipe app")
        assert emitted[0].update_type == UpdateType.TEXT
        assert emitted[0].data == "A recipe app"

    @pytest.mark.asyncio
    async def test_failure_returns_partial_content(self, streamer, emitted):
        streamer.start_stage(StageName.FEATURES)
        await streamer.add_chunk(StageName.FEATURES, '{"features": [{"name": "Search"}, {"na')
        partial = await streamer.handle_generation_failure(StageName.FEATURES, "connection reset")
        assert partial == {"features": [{"name": "Search"}]}
        assert emitted[-1].error == "connection reset"
        assert streamer.item_count(StageName.FEATURES) == 1
