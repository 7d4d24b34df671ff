"""Task records and the persisted context shape."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import Field, field_validator

from .messages import ContextFile, Message, WeaveModel

INTERNAL_TASK_ID = "internal"
TASK_DATA_VERSION = 1
TASK_CONTEXT_VERSION = 2

# Copied from the inheritance source (parent, or most recent task) into a new task.
INHERITABLE_FIELDS: tuple[str, ...] = (
    "main_model",
    "weak_model",
    "architect_model",
    "reasoning_effort",
    "thinking_tokens",
    "current_mode",
    "context_compacting_threshold",
    "weak_model_locked",
    "agent_profile_id",
)

# Copied only from a real parent, never from a sibling root.
PARENT_ONLY_FIELDS: tuple[str, ...] = ("working_mode", "worktree")


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_task_id() -> str:
    return uuid.uuid4().hex


class WorkingMode(str, Enum):
    LOCAL = "local"
    WORKTREE = "worktree"


class Worktree(WeaveModel):
    path: str
    base_branch: str | None = None


class TaskData(WeaveModel):
    id: str = Field(default_factory=new_task_id)
    parent_id: str | None = None
    name: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None
    archived: bool = False
    state: str | None = None
    version: int = TASK_DATA_VERSION

    main_model: str | None = None
    weak_model: str | None = None
    architect_model: str | None = None
    reasoning_effort: str | None = None
    thinking_tokens: str | None = None
    current_mode: str | None = None
    context_compacting_threshold: int | None = None
    weak_model_locked: bool | None = None
    agent_profile_id: str | None = None

    working_mode: WorkingMode = WorkingMode.LOCAL
    worktree: Worktree | None = None
    auto_approve: bool = False

    @field_validator("parent_id", mode="before")
    @classmethod
    def _empty_parent_is_root(cls, value: Any) -> Any:
        return value or None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _naive_is_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def inheritable(self, *, include_parent_only: bool = False) -> dict[str, Any]:
        names = INHERITABLE_FIELDS + (PARENT_ONLY_FIELDS if include_parent_only else ())
        values: dict[str, Any] = {}
        for name in names:
            value = getattr(self, name)
            if isinstance(value, WeaveModel):
                value = value.model_copy(deep=True)
            values[name] = value
        return values


class CreateTaskParams(WeaveModel):
    """Explicit values for a new task; ``None`` means inherit or default."""

    parent_id: str | None = None
    name: str | None = None
    archived: bool | None = None
    state: str | None = None

    main_model: str | None = None
    weak_model: str | None = None
    architect_model: str | None = None
    reasoning_effort: str | None = None
    thinking_tokens: str | None = None
    current_mode: str | None = None
    context_compacting_threshold: int | None = None
    weak_model_locked: bool | None = None
    agent_profile_id: str | None = None

    working_mode: WorkingMode | None = None
    worktree: Worktree | None = None
    auto_approve: bool | None = None

    send_event: bool = True

    @field_validator("parent_id", mode="before")
    @classmethod
    def _empty_parent_is_root(cls, value: Any) -> Any:
        return value or None

    def explicit_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"parent_id", "send_event"})


class TaskContext(WeaveModel):
    version: int = TASK_CONTEXT_VERSION
    context_messages: list[Message] = Field(default_factory=list)
    context_files: list[ContextFile] = Field(default_factory=list)


__all__ = [
    "CreateTaskParams",
    "INHERITABLE_FIELDS",
    "INTERNAL_TASK_ID",
    "PARENT_ONLY_FIELDS",
    "TASK_CONTEXT_VERSION",
    "TASK_DATA_VERSION",
    "TaskContext",
    "TaskData",
    "WorkingMode",
    "Worktree",
    "new_task_id",
    "utc_now",
]
