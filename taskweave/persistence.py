"""Task persistence contracts and the bundled backends."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import DEFAULT_STORAGE_DIR, EngineConfig
from .models import TaskContext, TaskData, Worktree

logger = logging.getLogger("taskweave.persistence")

TASK_FILE = "task.json"
CONTEXT_FILE = "context.json"


def is_valid_task_id(task_id: str) -> bool:
    """True when ``task_id`` can name exactly one directory entry."""
    if not task_id or task_id in (".", ".."):
        return False
    separators = {"/", "\\", os.sep}
    if os.altsep:
        separators.add(os.altsep)
    return not any(sep in task_id for sep in separators) and "\x00" not in task_id


class TaskPersistence(Protocol):
    async def list_task_ids(self) -> list[str]: ...

    async def load_task(self, task_id: str) -> TaskData | None: ...

    async def save_task(self, task: TaskData) -> None: ...

    async def load_context(self, task_id: str) -> TaskContext | None: ...

    async def save_context(self, task_id: str, context: TaskContext) -> None: ...

    async def remove_task(self, task_id: str) -> None: ...

    async def resolve_worktree(self, task_id: str, base_branch: str | None = None) -> Worktree: ...

    async def resolve_default_model(self) -> str | None: ...


@dataclass(slots=True)
class _StoredTask:
    task: TaskData | None = None
    context: TaskContext | None = None


class InMemoryTaskPersistence:
    def __init__(self, *, default_model: str | None = None, worktree_root: str = "worktrees") -> None:
        self.default_model = default_model
        self.worktree_root = worktree_root
        self._tasks: dict[str, _StoredTask] = {}
        self._lock = asyncio.Lock()

    async def list_task_ids(self) -> list[str]:
        async with self._lock:
            return [task_id for task_id, stored in self._tasks.items() if stored.task is not None]

    async def load_task(self, task_id: str) -> TaskData | None:
        async with self._lock:
            stored = self._tasks.get(task_id)
            if stored is None or stored.task is None:
                return None
            return stored.task.model_copy(deep=True)

    async def save_task(self, task: TaskData) -> None:
        async with self._lock:
            self._tasks.setdefault(task.id, _StoredTask()).task = task.model_copy(deep=True)

    async def load_context(self, task_id: str) -> TaskContext | None:
        async with self._lock:
            stored = self._tasks.get(task_id)
            if stored is None or stored.context is None:
                return None
            return stored.context.model_copy(deep=True)

    async def save_context(self, task_id: str, context: TaskContext) -> None:
        async with self._lock:
            self._tasks.setdefault(task_id, _StoredTask()).context = context.model_copy(deep=True)

    async def remove_task(self, task_id: str) -> None:
        async with self._lock:
            self._tasks.pop(task_id, None)

    async def resolve_worktree(self, task_id: str, base_branch: str | None = None) -> Worktree:
        return Worktree(path=f"{self.worktree_root}/{task_id}", base_branch=base_branch)

    async def resolve_default_model(self) -> str | None:
        return self.default_model


class FileTaskPersistence:
    """JSON files under ``<base_dir>/<storage_dir>/tasks/<task_id>/``.

    Blocking file I/O runs in worker threads. A missing task directory reads as
    "no record"; unreadable or invalid files raise. Task ids must name a single
    directory entry: saving under any other id raises ``ValueError``, while
    loading or removing one finds nothing.
    """

    def __init__(
        self,
        base_dir: str | os.PathLike[str],
        *,
        storage_dir: str = DEFAULT_STORAGE_DIR,
        default_model: str | None = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.root = self.base_dir / storage_dir
        self.default_model = default_model

    @classmethod
    def from_config(
        cls,
        base_dir: str | os.PathLike[str],
        config: EngineConfig,
        *,
        default_model: str | None = None,
    ) -> FileTaskPersistence:
        return cls(base_dir, storage_dir=config.storage_dir, default_model=default_model)

    @property
    def tasks_dir(self) -> Path:
        return self.root / "tasks"

    def task_dir(self, task_id: str) -> Path:
        if not is_valid_task_id(task_id):
            raise ValueError(f"invalid task id: {task_id!r}")
        path = self.tasks_dir / task_id
        if path.parent != self.tasks_dir:
            raise ValueError(f"invalid task id: {task_id!r}")
        return path

    async def list_task_ids(self) -> list[str]:
        return await asyncio.to_thread(self._list_task_ids)

    def _list_task_ids(self) -> list[str]:
        if not self.tasks_dir.is_dir():
            return []
        return sorted(entry.name for entry in self.tasks_dir.iterdir() if entry.is_dir())

    async def load_task(self, task_id: str) -> TaskData | None:
        if not is_valid_task_id(task_id):
            return None
        raw = await asyncio.to_thread(self._read, self.task_dir(task_id) / TASK_FILE)
        if raw is None:
            return None
        return TaskData.model_validate_json(raw)

    async def save_task(self, task: TaskData) -> None:
        payload = task.model_dump_json(by_alias=True, indent=2)
        await asyncio.to_thread(self._write, self.task_dir(task.id) / TASK_FILE, payload)

    async def load_context(self, task_id: str) -> TaskContext | None:
        if not is_valid_task_id(task_id):
            return None
        raw = await asyncio.to_thread(self._read, self.task_dir(task_id) / CONTEXT_FILE)
        if raw is None:
            return None
        return TaskContext.model_validate_json(raw)

    async def save_context(self, task_id: str, context: TaskContext) -> None:
        payload = context.model_dump_json(by_alias=True, indent=2)
        await asyncio.to_thread(self._write, self.task_dir(task_id) / CONTEXT_FILE, payload)

    async def remove_task(self, task_id: str) -> None:
        if not is_valid_task_id(task_id):
            logger.warning("remove_invalid_task_id_skipped", extra={"task_id": task_id})
            return
        await asyncio.to_thread(self._remove_dir, self.task_dir(task_id))

    async def resolve_worktree(self, task_id: str, base_branch: str | None = None) -> Worktree:
        if not is_valid_task_id(task_id):
            raise ValueError(f"invalid task id: {task_id!r}")
        path = self.root / "worktrees" / task_id
        return Worktree(path=str(path), base_branch=base_branch)

    async def resolve_default_model(self) -> str | None:
        return self.default_model

    @staticmethod
    def _read(path: Path) -> str | None:
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    @staticmethod
    def _write(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(path)

    @staticmethod
    def _remove_dir(path: Path) -> None:
        if not path.exists():
            logger.debug("task_dir_already_removed", extra={"path": str(path)})
            return
        shutil.rmtree(path)


__all__ = [
    "CONTEXT_FILE",
    "FileTaskPersistence",
    "InMemoryTaskPersistence",
    "TASK_FILE",
    "TaskPersistence",
    "is_valid_task_id",
]
