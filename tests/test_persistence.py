from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from taskweave.config import EngineConfig
from taskweave.hierarchy import TaskHierarchyManager
from taskweave.messages import Message, MessageRole, ToolCallPart
from taskweave.models import CreateTaskParams, TaskContext, TaskData
from taskweave.persistence import (
    CONTEXT_FILE,
    TASK_FILE,
    FileTaskPersistence,
    InMemoryTaskPersistence,
    is_valid_task_id,
)


@pytest.mark.asyncio
async def test_file_persistence_writes_camel_case_json(tmp_path) -> None:
    persistence = FileTaskPersistence(tmp_path)
    task = TaskData(id="abc", parent_id="root", main_model="model-a")
    context = TaskContext(
        context_messages=[
            Message(
                id="a1",
                role=MessageRole.ASSISTANT,
                content=[ToolCallPart(tool_call_id="c1", tool_name="grep", input={"q": "x"})],
            )
        ]
    )

    await persistence.save_task(task)
    await persistence.save_context("abc", context)

    task_dir = tmp_path / ".taskweave" / "tasks" / "abc"
    task_json = json.loads((task_dir / TASK_FILE).read_text(encoding="utf-8"))
    context_json = json.loads((task_dir / CONTEXT_FILE).read_text(encoding="utf-8"))
    assert task_json["parentId"] == "root"
    assert task_json["mainModel"] == "model-a"
    assert context_json["contextMessages"][0]["content"][0]["toolCallId"] == "c1"
    assert context_json["version"] == 2

    loaded_task = await persistence.load_task("abc")
    loaded_context = await persistence.load_context("abc")
    assert loaded_task == task
    assert loaded_context is not None
    assert isinstance(loaded_context.context_messages[0].parts[0], ToolCallPart)


@pytest.mark.asyncio
async def test_file_persistence_missing_task(tmp_path) -> None:
    persistence = FileTaskPersistence(tmp_path)

    assert await persistence.list_task_ids() == []
    assert await persistence.load_task("nope") is None
    assert await persistence.load_context("nope") is None
    await persistence.remove_task("nope")


@pytest.mark.asyncio
async def test_file_persistence_remove_task(tmp_path) -> None:
    persistence = FileTaskPersistence(tmp_path)
    await persistence.save_task(TaskData(id="gone"))
    await persistence.save_task(TaskData(id="kept"))

    await persistence.remove_task("gone")

    assert await persistence.list_task_ids() == ["kept"]


@pytest.mark.asyncio
async def test_file_persistence_invalid_record_raises(tmp_path) -> None:
    persistence = FileTaskPersistence(tmp_path)
    task_dir = tmp_path / ".taskweave" / "tasks" / "broken"
    task_dir.mkdir(parents=True)
    (task_dir / TASK_FILE).write_text("{not json", encoding="utf-8")

    with pytest.raises(ValueError):
        await persistence.load_task("broken")


@pytest.mark.asyncio
async def test_manager_round_trip_through_files(tmp_path) -> None:
    manager = TaskHierarchyManager(FileTaskPersistence(tmp_path))
    root = await manager.create_task(CreateTaskParams(name="root", main_model="model-a"))
    child = await manager.create_task(CreateTaskParams(parent_id=root.id))
    task = await manager.get_task(child.id)
    assert task is not None
    task.add_message(MessageRole.USER, "persist me")
    await manager.close()

    restored = TaskHierarchyManager(FileTaskPersistence(tmp_path))
    restored_child = await restored.get_task(child.id)

    assert restored_child is not None
    assert restored_child.data.parent_id == root.id
    assert restored_child.data.main_model == "model-a"
    assert [message.content for message in restored_child.get_messages()] == ["persist me"]

    await restored.delete_task(root.id)
    assert await restored.get_tasks() == []
    assert not (tmp_path / ".taskweave" / "tasks" / child.id).exists()
    await restored.close()


@pytest.mark.asyncio
async def test_in_memory_persistence_returns_copies() -> None:
    persistence = InMemoryTaskPersistence(default_model="m")
    task = TaskData(id="t1", name="before")

    await persistence.save_task(task)
    task.name = "after"
    loaded = await persistence.load_task("t1")

    assert loaded is not None and loaded.name == "before"
    assert await persistence.resolve_default_model() == "m"


@pytest.mark.asyncio
async def test_delete_with_path_like_ids_keeps_other_tasks(tmp_path) -> None:
    manager = TaskHierarchyManager(FileTaskPersistence(tmp_path))
    first = await manager.create_task(CreateTaskParams(name="first"))
    second = await manager.create_task(CreateTaskParams(name="second"))
    persistence = FileTaskPersistence(tmp_path)
    before = await persistence.list_task_ids()

    for task_id in ("", ".", "..", "../tasks", "a/b"):
        await manager.delete_task(task_id)

    assert {first.id, second.id} <= set(before)
    assert await persistence.list_task_ids() == before
    for task_id in (first.id, second.id):
        assert (tmp_path / ".taskweave" / "tasks" / task_id / TASK_FILE).is_file()
    assert sorted(task.id for task in await manager.get_tasks()) == sorted([first.id, second.id])
    await manager.close()


@pytest.mark.asyncio
async def test_file_persistence_rejects_path_like_ids(tmp_path) -> None:
    persistence = FileTaskPersistence(tmp_path)

    for task_id in ("", ".", "..", "../escape", "a/b"):
        assert is_valid_task_id(task_id) is False
        with pytest.raises(ValueError):
            persistence.task_dir(task_id)
        assert await persistence.load_task(task_id) is None
        await persistence.remove_task(task_id)
    with pytest.raises(ValueError):
        await persistence.save_task(TaskData(id="../escape"))
    assert not (tmp_path / ".taskweave" / "escape").exists()


@pytest.mark.asyncio
async def test_naive_updated_at_is_read_as_utc(tmp_path) -> None:
    persistence = FileTaskPersistence(tmp_path)
    await persistence.save_task(TaskData(id="fresh", main_model="new-model", updated_at=datetime.now(UTC)))
    legacy_dir = tmp_path / ".taskweave" / "tasks" / "legacy"
    legacy_dir.mkdir(parents=True)
    (legacy_dir / TASK_FILE).write_text(
        json.dumps({"id": "legacy", "mainModel": "old-model", "updatedAt": "2024-01-01T00:00:00"}),
        encoding="utf-8",
    )
    manager = TaskHierarchyManager(persistence)

    legacy = await persistence.load_task("legacy")
    created = await manager.create_task()

    assert legacy is not None and legacy.updated_at == datetime(2024, 1, 1, tzinfo=UTC)
    assert created.main_model == "new-model"
    await manager.close()


@pytest.mark.asyncio
async def test_file_persistence_from_config_uses_storage_dir(tmp_path) -> None:
    persistence = FileTaskPersistence.from_config(tmp_path, EngineConfig(storage_dir=".weave"), default_model="m")

    await persistence.save_task(TaskData(id="t1"))

    assert (tmp_path / ".weave" / "tasks" / "t1" / TASK_FILE).is_file()
    assert await persistence.resolve_default_model() == "m"
