"""Conversation message models.

Message content is either plain text (user turns) or an ordered list of typed
content parts (assistant and tool turns). Parts form a closed union keyed on
``type``; helpers that inspect parts end their dispatch with ``TypeError`` so a
new part type cannot slip through unhandled.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def new_message_id() -> str:
    return uuid.uuid4().hex


class WeaveModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        use_enum_values=True,
    )


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TextPart(WeaveModel):
    type: Literal["text"] = "text"
    text: str


class ReasoningPart(WeaveModel):
    type: Literal["reasoning"] = "reasoning"
    text: str


class ImagePart(WeaveModel):
    type: Literal["image"] = "image"
    image: str
    media_type: str | None = None


class CodeBlockPart(WeaveModel):
    type: Literal["code-block"] = "code-block"
    code: str
    language: str | None = None


class ToolCallPart(WeaveModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: Any = None


class ToolResultPart(WeaveModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any = None


ContentPart = Annotated[
    TextPart | ReasoningPart | ImagePart | CodeBlockPart | ToolCallPart | ToolResultPart,
    Field(discriminator="type"),
]


class UsageReport(WeaveModel):
    model: str | None = None
    sent_tokens: int = 0
    received_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    message_cost: float = 0.0
    total_cost: float | None = None


class ContextFile(WeaveModel):
    path: str
    read_only: bool = False


class Message(WeaveModel):
    id: str = Field(default_factory=new_message_id)
    role: MessageRole
    content: str | list[ContentPart]
    usage_report: UsageReport | None = None
    reflected_message: str | None = None
    edited_files: list[str] | None = None
    commit_hash: str | None = None
    commit_message: str | None = None
    diff: str | None = None
    prompt_context: dict[str, Any] | None = None

    @property
    def parts(self) -> list[ContentPart]:
        """Content parts, or an empty list for plain-text content."""
        if isinstance(self.content, str):
            return []
        return self.content


def tool_call_id_of(part: ContentPart) -> str | None:
    """Return the tool call id a part participates in, if any."""
    if isinstance(part, (ToolCallPart, ToolResultPart)):
        return part.tool_call_id
    if isinstance(part, (TextPart, ReasoningPart, ImagePart, CodeBlockPart)):
        return None
    raise TypeError(f"unsupported content part: {type(part).__name__}")


def is_prose_part(part: ContentPart) -> bool:
    """True for text and reasoning parts."""
    if isinstance(part, (TextPart, ReasoningPart)):
        return True
    if isinstance(part, (ImagePart, CodeBlockPart, ToolCallPart, ToolResultPart)):
        return False
    raise TypeError(f"unsupported content part: {type(part).__name__}")


def extract_text_content(content: str | list[ContentPart]) -> str:
    if isinstance(content, str):
        return content
    texts: list[str] = []
    for part in content:
        if isinstance(part, TextPart):
            texts.append(part.text)
        elif isinstance(part, (ReasoningPart, ImagePart, CodeBlockPart, ToolCallPart, ToolResultPart)):
            continue
        else:
            raise TypeError(f"unsupported content part: {type(part).__name__}")
    return "\n".join(text for text in texts if text)


def is_message_empty(content: str | list[ContentPart]) -> bool:
    """True when content carries nothing worth keeping.

    Blank text and reasoning parts do not count; any image, code block, tool
    call or tool result does.
    """
    if isinstance(content, str):
        return not content.strip()
    for part in content:
        if is_prose_part(part):
            if part.text.strip():  # type: ignore[union-attr]
                return False
        else:
            return False
    return True


__all__ = [
    "CodeBlockPart",
    "ContentPart",
    "ContextFile",
    "ImagePart",
    "Message",
    "MessageRole",
    "ReasoningPart",
    "TextPart",
    "ToolCallPart",
    "ToolResultPart",
    "UsageReport",
    "WeaveModel",
    "extract_text_content",
    "is_message_empty",
    "is_prose_part",
    "new_message_id",
    "tool_call_id_of",
]
