"""Conversation history and task tree management for agent sessions."""

from .config import EngineConfig, ProjectSettings
from .errors import NotFoundError, ParentNotFoundError, TaskweaveError
from .events import NoOpTaskEventSink, RecordingTaskEventSink, TaskEvent, TaskEventSink
from .hierarchy import TaskHierarchyManager
from .messages import (
    CodeBlockPart,
    ContentPart,
    ContextFile,
    ImagePart,
    Message,
    MessageRole,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    UsageReport,
    extract_text_content,
    is_message_empty,
)
from .models import (
    INTERNAL_TASK_ID,
    CreateTaskParams,
    TaskContext,
    TaskData,
    WorkingMode,
    Worktree,
)
from .persistence import FileTaskPersistence, InMemoryTaskPersistence, TaskPersistence
from .store import MessageStore
from .streaming import (
    AsyncioTimer,
    BufferState,
    ChunkAggregator,
    ResponseChunk,
    ResponseCompleted,
    Timer,
    TimerHandle,
)
from .task import Task

__all__ = [
    "AsyncioTimer",
    "BufferState",
    "ChunkAggregator",
    "CodeBlockPart",
    "ContentPart",
    "ContextFile",
    "CreateTaskParams",
    "EngineConfig",
    "FileTaskPersistence",
    "INTERNAL_TASK_ID",
    "ImagePart",
    "InMemoryTaskPersistence",
    "Message",
    "MessageRole",
    "MessageStore",
    "NoOpTaskEventSink",
    "NotFoundError",
    "ParentNotFoundError",
    "ProjectSettings",
    "ReasoningPart",
    "RecordingTaskEventSink",
    "ResponseChunk",
    "ResponseCompleted",
    "Task",
    "TaskContext",
    "TaskData",
    "TaskEvent",
    "TaskEventSink",
    "TaskHierarchyManager",
    "TaskPersistence",
    "TaskweaveError",
    "TextPart",
    "Timer",
    "TimerHandle",
    "ToolCallPart",
    "ToolResultPart",
    "UsageReport",
    "WorkingMode",
    "Worktree",
    "extract_text_content",
    "is_message_empty",
]
