"""Task tree lifecycle for one project.

The manager owns every loaded ``Task`` of a project, keyed by id. Root tasks
inherit configuration from the most recently updated task; subtasks inherit
from their parent, including the parent's working mode and worktree.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from .config import EngineConfig, ProjectSettings
from .errors import NotFoundError, ParentNotFoundError
from .events import NoOpTaskEventSink, TaskEventSink
from .models import (
    INTERNAL_TASK_ID,
    CreateTaskParams,
    TaskData,
    WorkingMode,
    new_task_id,
    utc_now,
)
from .persistence import TaskPersistence
from .streaming import Timer
from .task import Task

logger = logging.getLogger("taskweave.hierarchy")

_OLDEST = datetime.min.replace(tzinfo=UTC)


def _recency_key(task: TaskData) -> tuple[bool, datetime]:
    return (task.updated_at is not None, task.updated_at or _OLDEST)


class TaskHierarchyManager:
    def __init__(
        self,
        persistence: TaskPersistence,
        *,
        events: TaskEventSink | None = None,
        config: EngineConfig | None = None,
        settings: ProjectSettings | None = None,
        timer: Timer | None = None,
    ) -> None:
        self._persistence = persistence
        self._events = events or NoOpTaskEventSink()
        self._config = config or EngineConfig()
        self._settings = settings or ProjectSettings()
        self._timer = timer
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()
        self._hydrated = False

    @property
    def settings(self) -> ProjectSettings:
        return self._settings

    def _prepare_task(self, data: TaskData) -> Task:
        return Task(
            data,
            persistence=self._persistence,
            events=self._events,
            config=self._config,
            timer=self._timer,
        )

    async def hydrate(self) -> None:
        """Load the internal task and every persisted task once."""
        if self._hydrated:
            return
        async with self._lock:
            if self._hydrated:
                return
            try:
                internal = self._prepare_task(TaskData(id=INTERNAL_TASK_ID, name="Internal"))
                await internal.load()
                self._tasks[INTERNAL_TASK_ID] = internal
                for task_id in await self._persistence.list_task_ids():
                    if task_id == INTERNAL_TASK_ID or task_id in self._tasks:
                        continue
                    task = self._prepare_task(TaskData(id=task_id))
                    await task.load()
                    self._tasks[task_id] = task
            except (OSError, ValidationError):
                logger.error("task_hydration_failed", exc_info=True)
                raise
            self._hydrated = True
        logger.info("tasks_hydrated", extra={"count": len(self._tasks) - 1})

    # -- queries ------------------------------------------------------------

    async def get_task(self, task_id: str) -> Task | None:
        await self.hydrate()
        return self._tasks.get(task_id)

    async def get_internal_task(self) -> Task:
        await self.hydrate()
        return self._tasks[INTERNAL_TASK_ID]

    async def get_tasks(self) -> list[TaskData]:
        await self.hydrate()
        return [task.data for task in self._tasks.values() if task.id != INTERNAL_TASK_ID]

    async def get_most_recent_task(self) -> TaskData | None:
        await self.hydrate()
        return self._most_recent()

    def _most_recent(self) -> TaskData | None:
        candidates = [task.data for task in self._tasks.values() if task.id != INTERNAL_TASK_ID]
        if not candidates:
            return None
        return max(candidates, key=_recency_key)

    async def get_subtasks(self, task_id: str) -> list[TaskData]:
        await self.hydrate()
        return self._children(task_id)

    def _children(self, task_id: str) -> list[TaskData]:
        return [task.data for task in self._tasks.values() if task.data.parent_id == task_id]

    async def get_descendant_ids(self, task_id: str) -> list[str]:
        await self.hydrate()
        visited = {task_id}
        queue = [task_id]
        descendants: list[str] = []
        while queue:
            current = queue.pop(0)
            for child in self._children(current):
                if child.id in visited:
                    continue
                visited.add(child.id)
                descendants.append(child.id)
                queue.append(child.id)
        return descendants

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("task_not_found", extra={"task_id": task_id})
            raise NotFoundError(task_id, kind="task")
        return task

    # -- creation -----------------------------------------------------------

    async def create_task(self, params: CreateTaskParams | None = None) -> TaskData:
        await self.hydrate()
        params = params or CreateTaskParams()

        parent: Task | None = None
        if params.parent_id is not None:
            parent = self._tasks.get(params.parent_id)
            if parent is None or parent.id == INTERNAL_TASK_ID:
                logger.warning("parent_task_not_found", extra={"parent_id": params.parent_id})
                raise ParentNotFoundError(params.parent_id)
            if self._config.reuse_empty_subtasks:
                existing = self._find_empty_subtask(parent.id)
                if existing is not None:
                    logger.debug(
                        "empty_subtask_reused",
                        extra={"task_id": existing.id, "parent_id": parent.id},
                    )
                    return existing.data

        source = parent.data if parent is not None else self._most_recent()
        values: dict[str, Any] = {}
        if source is not None:
            values.update(source.inheritable(include_parent_only=parent is not None))
        if values.get("main_model") is None:
            values["main_model"] = self._settings.main_model or await self._persistence.resolve_default_model()
        if values.get("current_mode") is None:
            values["current_mode"] = self._config.default_mode
        values.update(params.explicit_fields())
        if self._settings.auto_approve_locked:
            values["auto_approve"] = True

        now = utc_now()
        data = TaskData(
            parent_id=parent.id if parent is not None else None,
            created_at=now,
            updated_at=now,
            **values,
        )
        if data.working_mode == WorkingMode.WORKTREE and data.worktree is None:
            data.worktree = await self._persistence.resolve_worktree(
                data.id,
                self._settings.default_worktree_base_branch,
            )

        task = self._prepare_task(data)
        await task.load()
        internal = self._tasks.get(INTERNAL_TASK_ID)
        if internal is not None:
            task.store.set_context_files(
                [file.model_copy() for file in internal.get_context_files()],
                save=False,
            )
        await self._save_new(task)
        self._tasks[task.id] = task

        logger.info(
            "task_created",
            extra={"task_id": task.id, "parent_id": data.parent_id, "inherited_from": source.id if source else None},
        )
        if params.send_event:
            self._events.task_created(task.data)
        return task.data

    def _find_empty_subtask(self, parent_id: str) -> Task | None:
        for task in self._tasks.values():
            data = task.data
            if data.parent_id == parent_id and not data.name and not data.archived and not len(task.store):
                return task
        return None

    async def _save_new(self, task: Task) -> None:
        try:
            await task.save()
        except OSError:
            logger.error("task_save_failed", exc_info=True, extra={"task_id": task.id})
            await task.close()
            raise

    async def duplicate_task(self, task_id: str) -> TaskData:
        await self.hydrate()
        source = self._require(task_id)
        now = utc_now()
        data = source.data.model_copy(
            deep=True,
            update={"id": new_task_id(), "created_at": now, "updated_at": now},
        )
        if self._settings.auto_approve_locked:
            data.auto_approve = True

        task = self._prepare_task(data)
        await task.load()
        await task.duplicate_from(source)
        self._tasks[task.id] = task
        logger.info("task_duplicated", extra={"task_id": task.id, "source_id": source.id})
        self._events.task_created(task.data)
        return task.data

    async def fork_task(self, task_id: str, message_id: str) -> TaskData:
        """Branch ``task_id`` at ``message_id`` into a sibling or child task.

        Forking a root task makes the fork its subtask; forking a subtask
        attaches the fork to the same parent.
        """
        await self.hydrate()
        source = self._require(task_id)
        # Resolve the history first so an unknown message creates nothing.
        source.store.get_messages_up_to(message_id)

        source_data = source.data
        parent_id = source_data.id if source_data.is_root else source_data.parent_id
        now = utc_now()
        data = TaskData(
            parent_id=parent_id,
            name=source_data.name,
            created_at=now,
            updated_at=now,
            state=source_data.state,
            auto_approve=source_data.auto_approve or self._settings.auto_approve_locked,
            **source_data.inheritable(include_parent_only=True),
        )

        task = self._prepare_task(data)
        await task.load()
        await task.fork_from(source, message_id)
        self._tasks[task.id] = task
        logger.info(
            "task_forked",
            extra={"task_id": task.id, "source_id": source.id, "parent_id": parent_id, "message_id": message_id},
        )
        self._events.task_created(task.data)
        return task.data

    # -- mutation -----------------------------------------------------------

    async def update_task(self, task_id: str, **fields: Any) -> TaskData:
        await self.hydrate()
        task = self._require(task_id)
        if self._settings.auto_approve_locked and fields.get("auto_approve") is False:
            logger.debug("auto_approve_locked", extra={"task_id": task_id})
            fields["auto_approve"] = True
        return await task.update(**fields)

    async def settings_changed(self, settings: ProjectSettings) -> None:
        await self.hydrate()
        newly_locked = settings.auto_approve_locked and not self._settings.auto_approve_locked
        self._settings = settings
        if not newly_locked:
            return
        for task in list(self._tasks.values()):
            if task.id == INTERNAL_TASK_ID or task.data.auto_approve:
                continue
            await task.update(auto_approve=True)

    # -- deletion -----------------------------------------------------------

    async def delete_task(self, task_id: str) -> None:
        """Delete ``task_id`` and, before it, every subtask beneath it.

        An id with no loaded task still has its persisted state removed. The
        empty id and the internal task are never deleted.
        """
        if not task_id:
            logger.warning("delete_empty_task_id_skipped")
            return
        if task_id == INTERNAL_TASK_ID:
            logger.warning("delete_internal_task_skipped", extra={"task_id": task_id})
            return
        await self.hydrate()
        await self._delete(task_id, visited=set())

    async def _delete(self, task_id: str, *, visited: set[str]) -> None:
        visited.add(task_id)
        for child in self._children(task_id):
            if child.id not in visited:
                await self._delete(child.id, visited=visited)

        task = self._tasks.get(task_id)
        if task is not None:
            await task.close()
            self._tasks.pop(task_id, None)
        else:
            logger.debug("delete_unknown_task", extra={"task_id": task_id})
        try:
            await self._persistence.remove_task(task_id)
        except OSError:
            logger.error("task_delete_failed", exc_info=True, extra={"task_id": task_id})
            raise
        if task is not None:
            logger.info("task_deleted", extra={"task_id": task_id})
            self._events.task_deleted(task_id)

    # -- teardown -----------------------------------------------------------

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        await asyncio.gather(*(task.close() for task in tasks))
        self._tasks.clear()
        self._hydrated = False
        logger.debug("task_hierarchy_closed", extra={"closed": len(tasks)})


__all__ = ["TaskHierarchyManager"]
