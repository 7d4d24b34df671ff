"""Per-task message store with cascade-safe edits.

Tool calls and tool results are kept paired: removing one side removes the
other, and any assistant or tool message left without content parts is dropped
from the history. Results whose call was already gone before an edit (orphans)
are tolerated and never raise.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from pathlib import PurePath

from .errors import NotFoundError
from .messages import (
    ContextFile,
    Message,
    MessageRole,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    UsageReport,
    is_message_empty,
    is_prose_part,
    tool_call_id_of,
)
from .models import TaskContext

logger = logging.getLogger("taskweave.store")

AutosaveCallback = Callable[[], None]


def _find_part(message: Message, part_type: type, tool_call_id: str) -> int:
    for index, part in enumerate(message.parts):
        if tool_call_id_of(part) == tool_call_id and isinstance(part, part_type):
            return index
    return -1


def _strip_part(message: Message, index: int) -> None:
    parts = list(message.parts)
    del parts[index]
    message.content = parts


class MessageStore:
    """Ordered conversation history and context files of one task."""

    def __init__(
        self,
        task_id: str,
        *,
        messages: Iterable[Message] | None = None,
        files: Iterable[ContextFile] | None = None,
        on_autosave: AutosaveCallback | None = None,
    ) -> None:
        self.task_id = task_id
        self._messages: list[Message] = list(messages or [])
        self._files: list[ContextFile] = list(files or [])
        self._on_autosave = on_autosave
        self._autosave_enabled = False

    # -- autosave ---------------------------------------------------------

    @property
    def autosave_enabled(self) -> bool:
        return self._autosave_enabled

    def enable_autosave(self) -> None:
        logger.debug("autosave_enabled", extra={"task_id": self.task_id})
        self._autosave_enabled = True

    def disable_autosave(self) -> None:
        logger.debug("autosave_disabled", extra={"task_id": self.task_id})
        self._autosave_enabled = False

    def _autosave(self) -> None:
        if self._autosave_enabled and self._on_autosave is not None:
            self._on_autosave()

    # -- messages ---------------------------------------------------------

    def get_messages(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def append_message(self, message: Message) -> bool:
        """Append ``message``; empty assistant turns and reused ids are skipped."""
        if message.role == MessageRole.ASSISTANT and is_message_empty(message.content):
            logger.debug("empty_assistant_message_skipped", extra={"task_id": self.task_id})
            return False
        if any(existing.id == message.id for existing in self._messages):
            logger.warning(
                "duplicate_message_id_skipped",
                extra={"task_id": self.task_id, "message_id": message.id},
            )
            return False
        self._messages.append(message)
        logger.debug(
            "message_added",
            extra={"task_id": self.task_id, "role": message.role, "total": len(self._messages)},
        )
        self._autosave()
        return True

    def add_message(
        self,
        role: MessageRole,
        text: str,
        *,
        usage_report: UsageReport | None = None,
    ) -> Message | None:
        if not text:
            return None
        content: str | list = text if role == MessageRole.USER else [TextPart(text=text)]
        message = Message(role=role, content=content, usage_report=usage_report)
        return message if self.append_message(message) else None

    def set_messages(self, messages: Iterable[Message], *, save: bool = True) -> None:
        self._messages = list(messages)
        logger.debug("messages_set", extra={"task_id": self.task_id, "total": len(self._messages)})
        if save:
            self._autosave()

    def clear_messages(self, *, save: bool = True) -> None:
        logger.debug("messages_cleared", extra={"task_id": self.task_id})
        self._messages = []
        if save:
            self._autosave()

    def _index_of(self, message_id: str) -> int:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return -1

    def remove_message_by_id(self, message_id: str) -> list[str]:
        """Remove a message, or a tool call/result pair, by id.

        ``message_id`` may name a message or a tool call. Returns the ids of the
        messages actually removed, in removal order. Raises ``NotFoundError``
        without touching the history when nothing matches.
        """
        index = self._index_of(message_id)
        if index != -1:
            removed = self._remove_at(index)
        else:
            removed = self._remove_tool_call(message_id)
        self._autosave()
        return removed

    def remove_last_message(self) -> list[str]:
        if not self._messages:
            logger.warning("remove_last_on_empty_history", extra={"task_id": self.task_id})
            return []
        index = len(self._messages) - 1
        message = self._messages[index]
        if message.role == MessageRole.TOOL:
            removed = self._remove_tool_message(index)
        else:
            del self._messages[index]
            removed = [message.id]
        logger.debug("last_message_removed", extra={"task_id": self.task_id, "removed": removed})
        self._autosave()
        return removed

    def remove_messages_up_to_last_user_message(self) -> list[Message]:
        """Drop the last user message and everything after it."""
        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index].role == MessageRole.USER:
                removed = self._messages[index:]
                self._messages = self._messages[:index]
                logger.debug(
                    "messages_truncated",
                    extra={"task_id": self.task_id, "removed": len(removed), "total": len(self._messages)},
                )
                self._autosave()
                return removed
        logger.warning("no_user_message_to_truncate", extra={"task_id": self.task_id})
        return []

    def _remove_at(self, index: int) -> list[str]:
        message = self._messages[index]
        if message.role == MessageRole.ASSISTANT:
            return self._remove_assistant_message(index)
        if message.role == MessageRole.TOOL:
            return self._remove_tool_message(index)
        del self._messages[index]
        logger.debug("message_removed", extra={"task_id": self.task_id, "message_id": message.id})
        return [message.id]

    def _remove_assistant_message(self, index: int) -> list[str]:
        message = self._messages[index]
        parts = message.parts
        call_ids = [part.tool_call_id for part in parts if isinstance(part, ToolCallPart)]
        if call_ids and any(is_prose_part(part) for part in parts):
            # Keep the tool calls so their results stay answered; only the prose goes.
            message.content = [part for part in parts if not is_prose_part(part)]
            logger.debug(
                "assistant_prose_removed",
                extra={"task_id": self.task_id, "message_id": message.id, "kept_parts": len(message.parts)},
            )
            return [message.id]

        del self._messages[index]
        touched: list[Message] = []
        for call_id in call_ids:
            for later in self._messages[index:]:
                if later.role != MessageRole.TOOL:
                    continue
                part_index = _find_part(later, ToolResultPart, call_id)
                if part_index != -1:
                    _strip_part(later, part_index)
                    touched.append(later)
        logger.debug(
            "assistant_message_removed",
            extra={"task_id": self.task_id, "message_id": message.id, "tool_calls": call_ids},
        )
        return [message.id, *self._prune(touched)]

    def _remove_tool_message(self, index: int) -> list[str]:
        message = self._messages.pop(index)
        touched: list[Message] = []
        for part in message.parts:
            if not isinstance(part, ToolResultPart):
                continue
            owner = self._find_call_owner(part.tool_call_id, end=index)
            if owner is None:
                continue
            _strip_part(owner, _find_part(owner, ToolCallPart, part.tool_call_id))
            touched.append(owner)
        logger.debug("tool_message_removed", extra={"task_id": self.task_id, "message_id": message.id})
        return [message.id, *self._prune(touched)]

    def _remove_tool_call(self, tool_call_id: str) -> list[str]:
        result_index = -1
        for index, message in enumerate(self._messages):
            if message.role == MessageRole.TOOL and _find_part(message, ToolResultPart, tool_call_id) != -1:
                result_index = index
                break
        call_owner = self._find_call_owner(
            tool_call_id,
            end=result_index if result_index != -1 else len(self._messages),
        )
        if result_index == -1 and call_owner is None:
            logger.error(
                "message_or_tool_call_not_found",
                extra={"task_id": self.task_id, "tool_call_id": tool_call_id},
            )
            raise NotFoundError(tool_call_id)

        touched: list[Message] = []
        if result_index != -1:
            for message in self._messages[result_index:]:
                if message.role != MessageRole.TOOL:
                    continue
                part_index = _find_part(message, ToolResultPart, tool_call_id)
                if part_index != -1:
                    _strip_part(message, part_index)
                    touched.append(message)
        if call_owner is not None:
            _strip_part(call_owner, _find_part(call_owner, ToolCallPart, tool_call_id))
            touched.append(call_owner)
        logger.debug(
            "tool_call_removed",
            extra={"task_id": self.task_id, "tool_call_id": tool_call_id},
        )
        return self._prune(touched)

    def _find_call_owner(self, tool_call_id: str, *, end: int) -> Message | None:
        for index in range(min(end, len(self._messages)) - 1, -1, -1):
            candidate = self._messages[index]
            if candidate.role == MessageRole.ASSISTANT and _find_part(candidate, ToolCallPart, tool_call_id) != -1:
                return candidate
        return None

    def _prune(self, touched: list[Message]) -> list[str]:
        emptied: list[Message] = []
        for message in touched:
            if not isinstance(message.content, str) and not message.content and message not in emptied:
                emptied.append(message)
        if not emptied:
            return []
        emptied_ids = {id(message) for message in emptied}
        self._messages = [message for message in self._messages if id(message) not in emptied_ids]
        logger.debug(
            "empty_messages_pruned",
            extra={"task_id": self.task_id, "message_ids": [message.id for message in emptied]},
        )
        return [message.id for message in emptied]

    def get_messages_up_to(self, message_id: str) -> list[Message]:
        """Return a deep-copied history prefix ending at ``message_id``.

        An assistant target keeps only its text and reasoning parts. A tool
        target (message id or tool call id) is cut back to the assistant turn
        that issued the call, keeping the calls up to and including it and the
        tool messages that answer them.
        """
        index = self._index_of(message_id)
        if index == -1:
            for position, message in enumerate(self._messages):
                if message.role == MessageRole.TOOL and _find_part(message, ToolResultPart, message_id) != -1:
                    index = position
                    break
        if index == -1:
            logger.error("messages_up_to_not_found", extra={"task_id": self.task_id, "message_id": message_id})
            raise NotFoundError(message_id)

        target = self._messages[index]
        if target.role == MessageRole.ASSISTANT and not isinstance(target.content, str):
            prefix = [message.model_copy(deep=True) for message in self._messages[: index + 1]]
            prefix[-1].content = [part for part in prefix[-1].parts if is_prose_part(part)]
            return prefix

        if target.role == MessageRole.TOOL and target.parts:
            tool_call_id = self._target_tool_call_id(target, message_id)
            if tool_call_id is not None:
                truncated = self._truncate_at_tool_call(tool_call_id, index)
                if truncated is not None:
                    return truncated

        return [message.model_copy(deep=True) for message in self._messages[: index + 1]]

    @staticmethod
    def _target_tool_call_id(target: Message, message_id: str) -> str | None:
        results = [part for part in target.parts if isinstance(part, ToolResultPart)]
        for part in results:
            if part.tool_call_id == message_id:
                return part.tool_call_id
        return results[0].tool_call_id if results else None

    def _truncate_at_tool_call(self, tool_call_id: str, target_index: int) -> list[Message] | None:
        for index in range(target_index - 1, -1, -1):
            message = self._messages[index]
            if message.role != MessageRole.ASSISTANT:
                continue
            call_index = _find_part(message, ToolCallPart, tool_call_id)
            if call_index == -1:
                continue
            result = [m.model_copy(deep=True) for m in self._messages[:index]]
            assistant = message.model_copy(deep=True)
            assistant.content = assistant.parts[: call_index + 1]
            result.append(assistant)
            kept_calls = {part.tool_call_id for part in assistant.parts if isinstance(part, ToolCallPart)}
            for following in self._messages[index + 1 : target_index + 1]:
                if following.role != MessageRole.TOOL:
                    result.append(following.model_copy(deep=True))
                    continue
                first_result = next(
                    (part for part in following.parts if isinstance(part, ToolResultPart)),
                    None,
                )
                if first_result is not None and first_result.tool_call_id in kept_calls:
                    result.append(following.model_copy(deep=True))
            return result
        return None

    # -- context files ----------------------------------------------------

    def get_context_files(self) -> list[ContextFile]:
        return list(self._files)

    def add_context_file(self, file: ContextFile) -> bool:
        target = PurePath(file.path)
        if any(PurePath(existing.path) == target for existing in self._files):
            return False
        self._files.append(file.model_copy())
        logger.debug("context_file_added", extra={"task_id": self.task_id, "path": file.path})
        self._autosave()
        return True

    def drop_context_file(self, path: str) -> list[ContextFile]:
        """Drop ``path`` and every context file beneath it."""
        target = PurePath(path)
        dropped: list[ContextFile] = []
        kept: list[ContextFile] = []
        for file in self._files:
            candidate = PurePath(file.path)
            if candidate == target or target in candidate.parents:
                dropped.append(file)
            else:
                kept.append(file)
        self._files = kept
        logger.debug(
            "context_files_dropped",
            extra={"task_id": self.task_id, "path": path, "dropped": [file.path for file in dropped]},
        )
        if dropped:
            self._autosave()
        return dropped

    def set_context_files(self, files: Iterable[ContextFile], *, save: bool = True) -> None:
        self._files = list(files)
        if save:
            self._autosave()

    def clear_context_files(self, *, save: bool = True) -> None:
        self._files = []
        if save:
            self._autosave()

    # -- persistence shape --------------------------------------------------

    def to_context(self) -> TaskContext:
        return TaskContext(context_messages=list(self._messages), context_files=list(self._files))

    def load_context(self, context: TaskContext) -> None:
        self._messages = list(context.context_messages)
        self._files = list(context.context_files)


__all__ = ["AutosaveCallback", "MessageStore"]
