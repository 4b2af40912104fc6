"""Tests for adapter implementations."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from src.adapters.llm.litellm_adapter import LiteLLMAdapter, LLMProviderError
from src.domain.schema import BuildLog, BuildLogEntry, BuildState, LogEntryType, StageName, StageRecord
from src.infrastructure.storage.file_stage_store import FileStageStore, stage_file_name
from src.infrastructure.storage.in_memory_stage_store import InMemoryStageStore


def _chunk(text=None, usage=None):
    choices = [SimpleNamespace(delta=SimpleNamespace(content=text))] if text is not None else []
    return SimpleNamespace(choices=choices, usage=usage)


def _stream(*chunks):
    async def _gen():
        for chunk in chunks:
            yield chunk
    return _gen()


class TestFileStageStore:
    """Tests for FileStageStore."""

    @pytest.fixture
    def store(self, tmp_path):
        return FileStageStore(root=str(tmp_path))

    @pytest.mark.asyncio
    async def test_stage_round_trip(self, store, tmp_path):
        record = StageRecord(stage=StageName.FEATURES, completed=True, data={"features": [{"name": "Search"}]})
        await store.write_stage("demo", record)

        path = tmp_path / "demo" / stage_file_name(StageName.FEATURES)
        on_disk = json.loads(path.read_text(encoding="utf-8"))
        assert on_disk["completed"] is True
        assert "updatedAt" in on_disk

        loaded = await store.read_stage("demo", StageName.FEATURES)
        assert loaded.data == record.data
        assert list((tmp_path / "demo").glob("*.tmp.*")) == []

    @pytest.mark.asyncio
    async def test_missing_documents(self, store):
        assert await store.read_stage("demo", StageName.IDEA) is None
        assert await store.read_build_state("demo") is None
        assert await store.list_projects() == []

    @pytest.mark.asyncio
    async def test_projects_listed_by_build_state(self, store):
        await store.write_build_state("beta", BuildState(project_name="beta"))
        await store.write_build_state("alpha", BuildState(project_name="alpha"))
        await store.write_stage("orphan", StageRecord(stage=StageName.IDEA))
        assert await store.list_projects() == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_delete_project(self, store):
        await store.write_build_state("demo", BuildState(project_name="demo"))
        assert await store.delete_project("demo") is True
        assert await store.delete_project("demo") is False

    @pytest.mark.asyncio
    async def test_corrupt_document_raises(self, store, tmp_path):
        (tmp_path / "demo").mkdir()
        (tmp_path / "demo" / "build-log.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(json.JSONDecodeError):
            await store.read_build_log("demo")


class TestInMemoryStageStore:
    """Tests for InMemoryStageStore."""

    @pytest.mark.asyncio
    async def test_build_log_and_listing(self):
        store = InMemoryStageStore()
        log = BuildLog(entries=[BuildLogEntry(type=LogEntryType.SYSTEM, stage="idea", content="created")])
        await store.write_build_log("demo", log)
        await store.write_build_state("demo", BuildState(project_name="demo"))
        assert (await store.read_build_log("demo")).entries[0].content == "created"
        assert await store.list_projects() == ["demo"]
        assert await store.delete_project("demo") is True
        assert await store.read_build_log("demo") is None


class TestLiteLLMAdapter:
    """Tests for LiteLLMAdapter."""

    @pytest.fixture
    def adapter(self):
        """Create adapter instance without backoff delays."""
        return LiteLLMAdapter(model="gpt-4o-mini", max_retries=2, retry_delay=0)

    @pytest.mark.asyncio
    async def test_chat_completion(self, adapter):
        """Test chat completion with usage capture."""
        response = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="Test response"))],
            usage=SimpleNamespace(prompt_tokens=12, completion_tokens=8, total_tokens=20),
        )
        with patch("src.adapters.llm.litellm_adapter.completion", return_value=response) as mock_completion:
            result = await adapter.chat_completion([{"role": "user", "content": "Test"}])

        assert result == "Test response"
        assert adapter.last_usage.total_tokens == 20
        assert mock_completion.call_args.kwargs["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_chat_completion_retries_then_fails(self, adapter):
        with patch("src.adapters.llm.litellm_adapter.completion", side_effect=RuntimeError("503")) as mock_completion:
            with pytest.raises(LLMProviderError, match="503"):
                await adapter.chat_completion([{"role": "user", "content": "Test"}])
        assert mock_completion.call_count == 2

    def test_ollama_models_use_base_url(self):
        adapter = LiteLLMAdapter(model="ollama/llama3")
        kwargs = adapter._completion_kwargs([], None, 0.2)
        assert kwargs["api_base"].startswith("http")
        assert kwargs["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_stream_completion(self, adapter):
        """Test streamed chunks and the trailing usage chunk."""
        usage = SimpleNamespace(prompt_tokens=5, completion_tokens=3, total_tokens=8)
        stream = _stream(_chunk('{"features": ['), _chunk(""), _chunk("]}"), _chunk(usage=usage))
        with patch("src.adapters.llm.litellm_adapter.acompletion", AsyncMock(return_value=stream)) as mock_acompletion:
            chunks = [chunk async for chunk in adapter.stream_completion([{"role": "user", "content": "Test"}])]

        assert chunks == ['{"features": [', "]}"]
        assert adapter.last_usage.total_tokens == 8
        assert mock_acompletion.call_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_not_retried_after_output(self, adapter):
        async def _broken():
            yield _chunk("partial")
            raise RuntimeError("connection reset")

        with patch("src.adapters.llm.litellm_adapter.acompletion", AsyncMock(return_value=_broken())) as mock_acompletion:
            received = []
            with pytest.raises(LLMProviderError):
                async for chunk in adapter.stream_completion([{"role": "user", "content": "Test"}]):
                    received.append(chunk)

        assert received == ["partial"]
        assert mock_acompletion.await_count == 1
