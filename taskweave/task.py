"""A single conversation task: record, message store and response streaming."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from .config import EngineConfig
from .events import NoOpTaskEventSink, TaskEventSink
from .messages import ContextFile, Message, MessageRole, TextPart, UsageReport
from .models import TaskData, utc_now
from .persistence import TaskPersistence
from .store import MessageStore
from .streaming import ChunkAggregator, ResponseChunk, ResponseCompleted, Timer

logger = logging.getLogger("taskweave.task")


class Task:
    """Owns one task record, its ``MessageStore`` and its ``ChunkAggregator``.

    Store mutations schedule a background save once autosave is enabled by
    ``load()``. Saves are coalesced: while one is running, further requests fold
    into a single follow-up save of the latest state.
    """

    def __init__(
        self,
        data: TaskData,
        *,
        persistence: TaskPersistence,
        events: TaskEventSink | None = None,
        config: EngineConfig | None = None,
        timer: Timer | None = None,
    ) -> None:
        self._data = data
        self._persistence = persistence
        self._events = events or NoOpTaskEventSink()
        self._config = config or EngineConfig()
        self.store = MessageStore(data.id, on_autosave=self._request_autosave)
        self.aggregator = ChunkAggregator(
            on_chunk=self._forward_chunk,
            on_complete=self._forward_complete,
            timer=timer,
            flush_interval_s=self._config.flush_interval_s,
        )
        self._autosave_task: asyncio.Task[None] | None = None
        self._autosave_requested = False
        self._loaded = False
        self._closed = False

    @property
    def id(self) -> str:
        return self._data.id

    @property
    def data(self) -> TaskData:
        return self._data

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def loaded(self) -> bool:
        return self._loaded

    # -- persistence --------------------------------------------------------

    async def load(self) -> None:
        if self._loaded:
            return
        record = await self._persistence.load_task(self.id)
        if record is not None:
            self._data = record
        context = await self._persistence.load_context(self.id)
        if context is not None:
            self.store.load_context(context)
        if self._config.autosave:
            self.store.enable_autosave()
        self._loaded = True
        logger.debug(
            "task_loaded",
            extra={"task_id": self.id, "messages": len(self.store), "from_record": record is not None},
        )

    async def save(self) -> None:
        await self._persistence.save_task(self._data)
        await self.save_context()

    async def save_context(self) -> None:
        await self._persistence.save_context(self.id, self.store.to_context())

    def _request_autosave(self) -> None:
        self._autosave_requested = True
        if self._autosave_task is None or self._autosave_task.done():
            self._autosave_task = asyncio.create_task(self._run_autosave())
            self._autosave_task.add_done_callback(self._autosave_done)

    async def _run_autosave(self) -> None:
        while self._autosave_requested:
            self._autosave_requested = False
            await self.save()

    def _autosave_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("autosave_failed", exc_info=exc, extra={"task_id": self.id})

    async def wait_for_autosave(self) -> None:
        task = self._autosave_task
        if task is not None and not task.done():
            # Failures were already logged by the done callback.
            await asyncio.gather(task, return_exceptions=True)

    # -- record -------------------------------------------------------------

    async def update(self, **fields: Any) -> TaskData:
        unknown = set(fields) - set(TaskData.model_fields)
        if unknown:
            raise ValueError(f"unknown task fields: {sorted(unknown)}")
        if "id" in fields and fields["id"] != self.id:
            raise ValueError("task id cannot be changed")
        values = self._data.model_dump()
        values.update(fields)
        values["updated_at"] = utc_now()
        self._data = TaskData.model_validate(values)
        await self._persistence.save_task(self._data)
        logger.debug("task_updated", extra={"task_id": self.id, "fields": sorted(fields)})
        self._events.task_updated(self._data)
        return self._data

    async def set_state(self, state: str | None) -> TaskData:
        return await self.update(state=state)

    async def set_archived(self, archived: bool) -> TaskData:
        return await self.update(archived=archived)

    def _touch(self) -> None:
        self._data.updated_at = utc_now()

    # -- messages -----------------------------------------------------------

    def get_messages(self) -> list[Message]:
        return self.store.get_messages()

    def append_message(self, message: Message) -> bool:
        appended = self.store.append_message(message)
        if appended:
            self._touch()
        return appended

    def add_message(
        self,
        role: MessageRole,
        text: str,
        *,
        usage_report: UsageReport | None = None,
    ) -> Message | None:
        message = self.store.add_message(role, text, usage_report=usage_report)
        if message is not None:
            self._touch()
        return message

    def remove_message(self, message_id: str) -> list[str]:
        removed = self.store.remove_message_by_id(message_id)
        self._touch()
        return removed

    def remove_last_message(self) -> list[str]:
        removed = self.store.remove_last_message()
        if removed:
            self._touch()
        return removed

    # -- streaming ----------------------------------------------------------

    def process_response_chunk(
        self,
        message_id: str,
        fragment: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        self.aggregator.push_chunk(message_id, fragment, metadata)

    def complete_response(
        self,
        message_id: str,
        content: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> Message | None:
        """Finish streaming ``message_id`` and record the final assistant turn."""
        completed = self.aggregator.finish(message_id, content, metadata)
        if self._closed:
            logger.warning("response_completed_after_close", extra={"task_id": self.id, "message_id": message_id})
            return None
        if completed is None:
            return None
        message = Message(
            id=message_id,
            role=MessageRole.ASSISTANT,
            content=[TextPart(text=completed.content)],
            usage_report=completed.usage_report,
            reflected_message=completed.reflected_message,
            edited_files=completed.edited_files,
            commit_hash=completed.commit_hash,
            commit_message=completed.commit_message,
            diff=completed.diff,
            prompt_context=completed.prompt_context,
        )
        return message if self.append_message(message) else None

    def _forward_chunk(self, chunk: ResponseChunk) -> None:
        self._events.response_chunk(self.id, chunk)

    def _forward_complete(self, completed: ResponseCompleted) -> None:
        self._events.response_completed(self.id, completed)

    # -- context files ------------------------------------------------------

    def get_context_files(self) -> list[ContextFile]:
        return self.store.get_context_files()

    def add_file(self, path: str, *, read_only: bool = False) -> bool:
        added = self.store.add_context_file(ContextFile(path=path, read_only=read_only))
        if added:
            self._events.context_files_updated(self.id, self.store.get_context_files())
        return added

    def add_files(self, files: Iterable[ContextFile]) -> int:
        added = 0
        for file in files:
            if self.store.add_context_file(file):
                added += 1
        if added:
            self._events.context_files_updated(self.id, self.store.get_context_files())
        return added

    def drop_file(self, path: str) -> list[ContextFile]:
        dropped = self.store.drop_context_file(path)
        if dropped:
            self._events.context_files_updated(self.id, self.store.get_context_files())
        return dropped

    # -- copying ------------------------------------------------------------

    async def duplicate_from(self, source: Task) -> None:
        messages = [message.model_copy(deep=True) for message in source.get_messages()]
        files = [file.model_copy() for file in source.get_context_files()]
        self.store.set_messages(messages, save=False)
        self.store.set_context_files(files, save=False)
        await self.save()
        logger.debug("task_duplicated", extra={"task_id": self.id, "source_id": source.id})

    async def fork_from(self, source: Task, message_id: str) -> None:
        messages = source.store.get_messages_up_to(message_id)
        files = [file.model_copy() for file in source.get_context_files()]
        self.store.set_messages(messages, save=False)
        self.store.set_context_files(files, save=False)
        await self.save()
        logger.debug(
            "task_forked",
            extra={"task_id": self.id, "source_id": source.id, "message_id": message_id, "messages": len(messages)},
        )

    # -- teardown -----------------------------------------------------------

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.aggregator.shutdown()
        self.store.disable_autosave()
        await self.wait_for_autosave()
        logger.debug("task_closed", extra={"task_id": self.id})


__all__ = ["Task"]
