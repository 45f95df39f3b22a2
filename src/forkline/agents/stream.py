"""Models for the streamed messages an agent process emits."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ContentType = Literal["thinking", "text", "tool_use", "tool_result"]
CONTENT_TYPES: frozenset[str] = frozenset({"thinking", "text", "tool_use", "tool_result"})


class ContentBlock(BaseModel):
    """One unit of a streamed message: reasoning, visible text, a tool call or its result."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(..., description="Block discriminator, e.g. thinking, text, tool_use, tool_result.")
    text: str | None = Field(default=None, description="Visible text for text blocks.")
    thinking: str | None = Field(default=None, description="Reasoning text for thinking blocks.")
    name: str | None = Field(default=None, description="Tool name for tool_use blocks.")
    input: Any = Field(default=None, description="Tool arguments for tool_use blocks.")


class MessageBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: list[ContentBlock] | str | None = None


class StreamMessage(BaseModel):
    """A single line of an agent's streamed output."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(..., description="Message kind, e.g. assistant, user, system, result.")
    message: MessageBody | None = None

    def content_blocks(self) -> list[ContentBlock]:
        if self.message is None or not isinstance(self.message.content, list):
            return []
        return list(self.message.content)


def coerce_message(message: StreamMessage | dict[str, Any]) -> StreamMessage:
    if isinstance(message, StreamMessage):
        return message
    return StreamMessage.model_validate(message)


__all__ = [
    "CONTENT_TYPES",
    "ContentBlock",
    "ContentType",
    "MessageBody",
    "StreamMessage",
    "coerce_message",
]
