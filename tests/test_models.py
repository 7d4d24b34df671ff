from __future__ import annotations

from datetime import UTC, datetime

import pytest

from taskweave.config import EngineConfig, ProjectSettings
from taskweave.messages import (
    CodeBlockPart,
    Message,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    extract_text_content,
    is_message_empty,
    is_prose_part,
)
from taskweave.models import CreateTaskParams, TaskData, WorkingMode, Worktree


def test_message_parses_discriminated_parts_from_camel_case() -> None:
    message = Message.model_validate(
        {
            "id": "a1",
            "role": "assistant",
            "content": [
                {"type": "reasoning", "text": "hmm"},
                {"type": "tool-call", "toolCallId": "c1", "toolName": "grep", "input": {"q": "x"}},
                {"type": "code-block", "code": "print(1)", "language": "python"},
            ],
            "usageReport": {"model": "m", "sentTokens": 1, "receivedTokens": 2, "messageCost": 0.1},
        }
    )

    assert [type(part) for part in message.parts] == [ReasoningPart, ToolCallPart, CodeBlockPart]
    assert message.usage_report is not None and message.usage_report.received_tokens == 2


def test_user_message_has_no_parts() -> None:
    message = Message(role="user", content="hello")

    assert message.parts == []
    assert len(message.id) == 32


def test_emptiness_rules() -> None:
    assert is_message_empty("  ") is True
    assert is_message_empty([TextPart(text=""), ReasoningPart(text=" ")]) is True
    assert is_message_empty([CodeBlockPart(code="x")]) is False
    assert is_message_empty([ToolResultPart(tool_call_id="c", tool_name="t")]) is False


def test_extract_text_content_joins_text_parts() -> None:
    content = [TextPart(text="one"), ReasoningPart(text="skip"), TextPart(text="two")]

    assert extract_text_content(content) == "one\ntwo"
    assert extract_text_content("plain") == "plain"


def test_unknown_part_type_is_rejected() -> None:
    with pytest.raises(TypeError):
        is_prose_part(object())  # type: ignore[arg-type]


def test_task_data_normalises_empty_parent() -> None:
    assert TaskData(parent_id="").parent_id is None
    assert TaskData.model_validate({"parentId": "p1"}).parent_id == "p1"


def test_task_data_reads_naive_timestamps_as_utc() -> None:
    data = TaskData.model_validate({"createdAt": "2024-01-01T00:00:00", "updatedAt": "2024-01-02T08:30:00"})

    assert data.created_at == datetime(2024, 1, 1, tzinfo=UTC)
    assert data.updated_at == datetime(2024, 1, 2, 8, 30, tzinfo=UTC)
    assert TaskData(updated_at=None).updated_at is None


def test_inheritable_fields_copy_worktree() -> None:
    worktree = Worktree(path="/wt/a")
    data = TaskData(main_model="m", working_mode=WorkingMode.WORKTREE, worktree=worktree)

    without = data.inheritable()
    with_parent = data.inheritable(include_parent_only=True)

    assert without["main_model"] == "m"
    assert "worktree" not in without
    assert with_parent["worktree"] == worktree
    assert with_parent["worktree"] is not worktree


def test_create_params_explicit_fields_skip_unset() -> None:
    params = CreateTaskParams(parent_id="p", name="n", auto_approve=False, send_event=False)

    assert params.explicit_fields() == {"name": "n", "auto_approve": False}


def test_engine_config_validation() -> None:
    assert EngineConfig().flush_interval_s == 0.01
    with pytest.raises(ValueError):
        EngineConfig(flush_interval_s=0)
    with pytest.raises(ValueError):
        EngineConfig(default_mode="")


def test_project_settings_accepts_camel_case() -> None:
    settings = ProjectSettings.model_validate({"autoApproveLocked": True, "mainModel": "m"})

    assert settings.auto_approve_locked is True
    assert settings.main_model == "m"
