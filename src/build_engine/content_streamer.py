"""Turns raw streamed model text into indexed stream updates.

The host feeds token chunks per stage. Complete JSON objects inside the
stage's artifact array are detected by brace matching and emitted once each,
in order, as ``stream-update`` messages.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.build_engine.artifact_store import LIST_KEY, STAGE_ARTIFACT_TYPE
from src.build_engine.json_parser import JsonParser, extract_json_objects, repair_json
from src.config import settings
from src.domain.messages import StreamUpdate
from src.domain.schema import StageName, UpdateType
from src.utils.logger import get_logger

logger = get_logger(__name__)

Emitter = Callable[[StreamUpdate], Awaitable[None]]


@dataclass
class _StageBuffer:
    text: str = ""
    pending_chunks: int = 0
    emitted_text: int = 0
    items: List[Dict[str, Any]] = field(default_factory=list)
    flush_handle: Optional[asyncio.TimerHandle] = None


class ContentStreamer:
    """Per-stage buffering of streamed output with debounced flushing."""

    def __init__(
        self,
        emit: Emitter,
        max_buffer_size: Optional[int] = None,
        flush_interval: Optional[float] = None,
    ):
        """Initialize streamer.

        Args:
            emit: Coroutine receiving every produced stream update.
            max_buffer_size: Un-flushed chunks that force an immediate flush.
            flush_interval: Seconds after the last chunk before a flush.
        """
        self._emit = emit
        self.max_buffer_size = max_buffer_size or settings.stream_max_buffer_size
        self.flush_interval = settings.stream_flush_interval_seconds if flush_interval is None else flush_interval
        self._buffers: Dict[StageName, _StageBuffer] = {}
        self._flush_tasks: List[asyncio.Task] = []

    def start_stage(self, stage: StageName) -> None:
        """Reset the buffer of a stage before a new generation."""
        self._cancel_flush(stage)
        self._buffers[stage] = _StageBuffer()

    async def add_chunk(self, stage: StageName, chunk: str) -> None:
        """Buffer a chunk; flush when the buffer is full, otherwise after the interval."""
        buffer = self._buffers.setdefault(stage, _StageBuffer())
        buffer.text += chunk
        buffer.pending_chunks += 1
        if buffer.pending_chunks >= self.max_buffer_size:
            await self.flush(stage)
            return
        self._schedule_flush(stage)

    def _schedule_flush(self, stage: StageName) -> None:
        self._cancel_flush(stage)
        loop = asyncio.get_running_loop()
        buffer = self._buffers[stage]
        buffer.flush_handle = loop.call_later(
            self.flush_interval,
            lambda: self._flush_tasks.append(loop.create_task(self.flush(stage))),
        )

    def _cancel_flush(self, stage: StageName) -> None:
        buffer = self._buffers.get(stage)
        if buffer and buffer.flush_handle is not None:
            buffer.flush_handle.cancel()
            buffer.flush_handle = None

    async def flush(self, stage: StageName) -> int:
        """Emit updates for content completed since the last flush.

        Returns:
            Number of updates emitted.
        """
        buffer = self._buffers.get(stage)
        if buffer is None:
            return 0
        self._cancel_flush(stage)
        buffer.pending_chunks = 0

        update_type = STAGE_ARTIFACT_TYPE.get(stage)
        if update_type is None:
            new_text = buffer.text[buffer.emitted_text :]
            if not new_text:
                return 0
            buffer.emitted_text = len(buffer.text)
            await self._emit(StreamUpdate(stage=stage, update_type=UpdateType.TEXT, data=new_text))
            return 1

        array_start = self._array_start(buffer.text, LIST_KEY[update_type])
        if array_start is None:
            return 0
        emitted = 0
        spans = extract_json_objects(buffer.text, start=array_start + 1)
        for obj_start, obj_end in spans[len(buffer.items) :]:
            item = self._decode(buffer.text[obj_start:obj_end])
            buffer.items.append(item or {})
            if item is None:
                logger.debug("content_streamer.undecodable_item", stage=stage.value, index=len(buffer.items) - 1)
                continue
            await self._emit(
                StreamUpdate(
                    stage=stage,
                    update_type=update_type,
                    data=item,
                    index=len(buffer.items) - 1,
                )
            )
            emitted += 1
        return emitted

    @staticmethod
    def _array_start(text: str, key: str) -> Optional[int]:
        key_pos = text.find(f'"{key}"')
        position = text.find("[", key_pos if key_pos != -1 else 0)
        return position if position != -1 else None

    @staticmethod
    def _decode(fragment: str) -> Optional[Dict[str, Any]]:
        for candidate in (fragment, repair_json(fragment)):
            try:
                value = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(value, dict):
                return value
        return None

    async def complete_stage(self, stage: StageName) -> None:
        """Flush what is left, fall back to a whole-text parse, then emit completion."""
        await self.flush(stage)
        buffer = self._buffers.get(stage)
        update_type = STAGE_ARTIFACT_TYPE.get(stage)
        if buffer is not None and update_type is not None and not buffer.items:
            await self._emit_whole_text(stage, buffer, update_type)
        await self._emit(StreamUpdate(stage=stage, complete=True))

    async def _emit_whole_text(self, stage: StageName, buffer: _StageBuffer, update_type: UpdateType) -> None:
        result = JsonParser.parse(buffer.text)
        if not result.success:
            logger.info("content_streamer.no_structured_output", stage=stage.value)
            return
        data = result.data
        raw_items = data if isinstance(data, list) else data.get(LIST_KEY[update_type]) if isinstance(data, dict) else None
        for index, raw in enumerate(raw_items or []):
            if not isinstance(raw, dict):
                continue
            buffer.items.append(raw)
            await self._emit(StreamUpdate(stage=stage, update_type=update_type, data=raw, index=index))

    async def handle_generation_failure(self, stage: StageName, error: str) -> Dict[str, Any]:
        """Emit the error update and return the partial content produced so far."""
        await self.flush(stage)
        await self._emit(StreamUpdate(stage=stage, error=error))
        return self.get_partial_content(stage)

    def get_partial_content(self, stage: StageName) -> Dict[str, Any]:
        """Items streamed so far, keyed like the stage document."""
        buffer = self._buffers.get(stage)
        update_type = STAGE_ARTIFACT_TYPE.get(stage)
        if buffer is None:
            return {}
        if update_type is None:
            return {"content": [buffer.text]} if buffer.text else {}
        items = [item for item in buffer.items if item]
        return {LIST_KEY[update_type]: items} if items else {}

    def item_count(self, stage: StageName) -> int:
        buffer = self._buffers.get(stage)
        return len([item for item in buffer.items if item]) if buffer else 0
