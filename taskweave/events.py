"""Notification contracts for task lifecycle and streaming observers.

Sinks are synchronous and fire-and-forget; the engine never waits on them.
"""

from __future__ import annotations

import time
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from .messages import ContextFile
from .models import TaskData
from .streaming import ResponseChunk, ResponseCompleted

TaskEventType = Literal[
    "task_created",
    "task_updated",
    "task_deleted",
    "context_files_updated",
    "response_chunk",
    "response_completed",
]


class TaskEvent(BaseModel):
    event_type: TaskEventType
    task_id: str
    payload: Any = None
    created_at_s: float = Field(default_factory=time.time)


class TaskEventSink(Protocol):
    def task_created(self, task: TaskData) -> None: ...

    def task_updated(self, task: TaskData) -> None: ...

    def task_deleted(self, task_id: str) -> None: ...

    def context_files_updated(self, task_id: str, files: list[ContextFile]) -> None: ...

    def response_chunk(self, task_id: str, chunk: ResponseChunk) -> None: ...

    def response_completed(self, task_id: str, completed: ResponseCompleted) -> None: ...


class NoOpTaskEventSink:
    def task_created(self, task: TaskData) -> None:
        _ = task

    def task_updated(self, task: TaskData) -> None:
        _ = task

    def task_deleted(self, task_id: str) -> None:
        _ = task_id

    def context_files_updated(self, task_id: str, files: list[ContextFile]) -> None:
        _ = (task_id, files)

    def response_chunk(self, task_id: str, chunk: ResponseChunk) -> None:
        _ = (task_id, chunk)

    def response_completed(self, task_id: str, completed: ResponseCompleted) -> None:
        _ = (task_id, completed)


class RecordingTaskEventSink:
    """Keeps every notification, in emission order."""

    def __init__(self) -> None:
        self.events: list[TaskEvent] = []

    def _record(self, event_type: TaskEventType, task_id: str, payload: Any = None) -> None:
        self.events.append(TaskEvent(event_type=event_type, task_id=task_id, payload=payload))

    def task_created(self, task: TaskData) -> None:
        self._record("task_created", task.id, task.model_copy(deep=True))

    def task_updated(self, task: TaskData) -> None:
        self._record("task_updated", task.id, task.model_copy(deep=True))

    def task_deleted(self, task_id: str) -> None:
        self._record("task_deleted", task_id)

    def context_files_updated(self, task_id: str, files: list[ContextFile]) -> None:
        self._record("context_files_updated", task_id, list(files))

    def response_chunk(self, task_id: str, chunk: ResponseChunk) -> None:
        self._record("response_chunk", task_id, chunk)

    def response_completed(self, task_id: str, completed: ResponseCompleted) -> None:
        self._record("response_completed", task_id, completed)

    def of_type(self, event_type: TaskEventType) -> list[TaskEvent]:
        return [event for event in self.events if event.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


__all__ = ["NoOpTaskEventSink", "RecordingTaskEventSink", "TaskEvent", "TaskEventSink", "TaskEventType"]
