from __future__ import annotations

from typing import Literal

NotFoundKind = Literal["message", "task", "parent_task"]


class TaskweaveError(Exception):
    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(TaskweaveError):
    """A referenced message, tool call or task does not exist."""

    def __init__(
        self,
        identifier: str,
        *,
        kind: NotFoundKind = "message",
        detail: str | None = None,
    ) -> None:
        if detail is None:
            if kind == "task":
                detail = f"Task with id {identifier} not found"
            else:
                detail = f"Message or tool call not found: {identifier}"
        super().__init__(detail)
        self.identifier = identifier
        self.kind = kind


class ParentNotFoundError(NotFoundError):
    def __init__(self, parent_id: str) -> None:
        super().__init__(
            parent_id,
            kind="parent_task",
            detail=f"Parent task with id {parent_id} not found",
        )


__all__ = ["NotFoundError", "NotFoundKind", "ParentNotFoundError", "TaskweaveError"]
