"""Throttled forwarding of partial model output.

Each in-flight message id gets its own buffer and periodic flush timer. A tick
with buffered text emits one ``ResponseChunk``; a tick with nothing buffered
cancels the timer and forgets the id, so the next chunk arms a fresh timer.
``finish`` and ``shutdown`` discard buffered text outright, and each message id
is finished at most once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from pydantic import Field
from pydantic.alias_generators import to_camel

from .config import DEFAULT_FLUSH_INTERVAL_S
from .messages import UsageReport, WeaveModel

logger = logging.getLogger("taskweave.streaming")

# Metadata keys a finish signal may carry onto the completed message.
TERMINAL_METADATA_FIELDS: tuple[str, ...] = (
    "usage_report",
    "edited_files",
    "commit_hash",
    "commit_message",
    "diff",
    "reflected_message",
    "prompt_context",
)

# Accepted spellings (snake_case or camelCase) mapped to the field name.
_TERMINAL_KEYS: dict[str, str] = {
    **{name: name for name in TERMINAL_METADATA_FIELDS},
    **{to_camel(name): name for name in TERMINAL_METADATA_FIELDS},
}


class ResponseChunk(WeaveModel):
    message_id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ResponseCompleted(WeaveModel):
    message_id: str
    content: str
    usage_report: UsageReport | None = None
    edited_files: list[str] | None = None
    commit_hash: str | None = None
    commit_message: str | None = None
    diff: str | None = None
    reflected_message: str | None = None
    prompt_context: dict[str, Any] | None = None


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timer(Protocol):
    def schedule_periodic(self, interval_s: float, callback: Callable[[], None]) -> TimerHandle: ...

    def cancel(self, handle: TimerHandle) -> None: ...


class _PeriodicCall:
    __slots__ = ("_loop", "_interval_s", "_callback", "_handle", "cancelled")

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        interval_s: float,
        callback: Callable[[], None],
    ) -> None:
        self._loop = loop
        self._interval_s = interval_s
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self.cancelled = False

    def start(self) -> None:
        self._handle = self._loop.call_later(self._interval_s, self._fire)

    def _fire(self) -> None:
        if self.cancelled:
            return
        # Re-arm first so a callback that cancels also cancels the next tick.
        self.start()
        self._callback()

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class AsyncioTimer:
    """Periodic timers on the running event loop via ``call_later``."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def schedule_periodic(self, interval_s: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        periodic = _PeriodicCall(loop, interval_s, callback)
        periodic.start()
        return periodic

    def cancel(self, handle: TimerHandle) -> None:
        handle.cancel()


class BufferState(str, Enum):
    BUFFERING = "buffering"
    FLUSHING = "flushing"
    DISCARDED = "discarded"


@dataclass(slots=True)
class _ChunkBuffer:
    message_id: str
    handle: TimerHandle
    fragments: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    state: BufferState = BufferState.BUFFERING


ChunkCallback = Callable[[ResponseChunk], None]
CompleteCallback = Callable[[ResponseCompleted], None]


class ChunkAggregator:
    def __init__(
        self,
        *,
        on_chunk: ChunkCallback,
        on_complete: CompleteCallback | None = None,
        timer: Timer | None = None,
        flush_interval_s: float = DEFAULT_FLUSH_INTERVAL_S,
    ) -> None:
        self._on_chunk = on_chunk
        self._on_complete = on_complete
        self._timer = timer or AsyncioTimer()
        self._flush_interval_s = flush_interval_s
        self._buffers: dict[str, _ChunkBuffer] = {}
        self._finished: set[str] = set()
        self._closed = False

    @property
    def active_message_ids(self) -> list[str]:
        return list(self._buffers)

    @property
    def closed(self) -> bool:
        return self._closed

    def push_chunk(
        self,
        message_id: str,
        fragment: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        if self._closed:
            logger.debug("chunk_after_shutdown_ignored", extra={"message_id": message_id})
            return
        if message_id in self._finished:
            logger.debug("chunk_after_finish_ignored", extra={"message_id": message_id})
            return
        entry = self._buffers.get(message_id)
        if entry is None:
            if not fragment:
                return
            handle = self._timer.schedule_periodic(
                self._flush_interval_s,
                lambda: self._tick(message_id),
            )
            entry = _ChunkBuffer(message_id=message_id, handle=handle)
            self._buffers[message_id] = entry
            logger.debug("chunk_buffer_started", extra={"message_id": message_id})
        if fragment:
            entry.fragments.append(fragment)
        if metadata is not None:
            entry.metadata = dict(metadata)

    def _tick(self, message_id: str) -> None:
        entry = self._buffers.get(message_id)
        if entry is None or entry.state is BufferState.DISCARDED:
            return
        if not entry.fragments:
            self._discard(entry)
            return
        content = "".join(entry.fragments)
        entry.fragments.clear()
        entry.state = BufferState.FLUSHING
        try:
            self._on_chunk(
                ResponseChunk(message_id=message_id, content=content, metadata=dict(entry.metadata))
            )
        finally:
            if entry.state is BufferState.FLUSHING:
                entry.state = BufferState.BUFFERING

    def _discard(self, entry: _ChunkBuffer) -> None:
        if entry.state is BufferState.DISCARDED:
            return
        entry.state = BufferState.DISCARDED
        entry.fragments.clear()
        self._timer.cancel(entry.handle)
        if self._buffers.get(entry.message_id) is entry:
            del self._buffers[entry.message_id]
        logger.debug("chunk_buffer_discarded", extra={"message_id": entry.message_id})

    def finish(
        self,
        message_id: str,
        final_content: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> ResponseCompleted | None:
        """Drop any buffered text for ``message_id`` and emit the final content.

        Returns ``None`` without emitting when ``message_id`` was already
        finished. Later chunks for a finished id are ignored.
        """
        if message_id in self._finished:
            logger.debug("finish_repeated_ignored", extra={"message_id": message_id})
            return None
        self._finished.add(message_id)
        entry = self._buffers.get(message_id)
        if entry is not None:
            self._discard(entry)
        terminal: dict[str, Any] = {}
        dropped: list[str] = []
        for key, value in (metadata or {}).items():
            name = _TERMINAL_KEYS.get(key)
            if name is None:
                dropped.append(key)
            else:
                terminal[name] = value
        if dropped:
            logger.debug(
                "finish_metadata_dropped",
                extra={"message_id": message_id, "keys": sorted(dropped)},
            )
        completed = ResponseCompleted.model_validate(
            {**terminal, "message_id": message_id, "content": final_content}
        )
        if self._closed:
            logger.debug("finish_after_shutdown_not_emitted", extra={"message_id": message_id})
        elif self._on_complete is not None:
            self._on_complete(completed)
        return completed

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        pending = list(self._buffers.values())
        for entry in pending:
            self._discard(entry)
        logger.debug("aggregator_shutdown", extra={"discarded": [entry.message_id for entry in pending]})


__all__ = [
    "AsyncioTimer",
    "BufferState",
    "ChunkAggregator",
    "ResponseChunk",
    "ResponseCompleted",
    "TERMINAL_METADATA_FIELDS",
    "Timer",
    "TimerHandle",
]
