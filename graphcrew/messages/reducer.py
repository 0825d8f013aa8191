"""Message-state reducer for the shared conversation log.

Used as the LangGraph channel reducer for ``messages``:

    messages: Annotated[list[AnyMessage], merge_messages]

Semantics:
  - incoming messages are coerced and get a uuid when they have no id
  - ``RemoveMessage(id=REMOVE_ALL_MESSAGES)`` resets the log to whatever
    follows it in the same batch
  - otherwise same id overwrites in place, ``RemoveMessage(id)`` deletes,
    unknown ids are appended
"""

from __future__ import annotations

import uuid
from typing import Any, Sequence, Union

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    MessageLikeRepresentation,
    RemoveMessage,
    ToolMessage,
    convert_to_messages,
)
from langgraph.graph.message import REMOVE_ALL_MESSAGES

from graphcrew.core.errors import OrphanToolResult, UnknownRemovalTarget
from graphcrew.core.truncation import TOOL_USE_BLOCK_TYPES

Messages = Union[Sequence[MessageLikeRepresentation], MessageLikeRepresentation]


def create_remove_all_message() -> RemoveMessage:
    """Marker that makes :func:`merge_messages` drop everything before it."""
    return RemoveMessage(id=REMOVE_ALL_MESSAGES)


def is_removal(message: BaseMessage) -> bool:
    return message.type == "remove"


def tool_call_ids(message: BaseMessage) -> set[str]:
    """Ids of the tool calls an AI message makes (tool_calls + content blocks)."""
    if not isinstance(message, AIMessage):
        return set()
    ids = {tc["id"] for tc in message.tool_calls if tc.get("id")}
    ids.update(tc["id"] for tc in message.invalid_tool_calls if tc.get("id"))
    if isinstance(message.content, list):
        for block in message.content:
            if isinstance(block, dict) and block.get("type") in TOOL_USE_BLOCK_TYPES and block.get("id"):
                ids.add(block["id"])
    return ids


def _coerce(messages: Messages) -> list[BaseMessage]:
    if isinstance(messages, (BaseMessage, str, dict, tuple)):
        messages = [messages]
    result = []
    for m in convert_to_messages(list(messages)):
        if m.id is None:
            m = m.model_copy(update={"id": str(uuid.uuid4())})
        result.append(m)
    return result


def merge_messages(left: Messages, right: Messages) -> list[BaseMessage]:
    """Merge ``right`` into ``left`` and return the new log.

    Raises
    ------
    UnknownRemovalTarget
        A removal marker names an id that is not in the log.
    OrphanToolResult
        An appended tool result answers no earlier tool call.
    """
    left_messages = [m.model_copy() for m in _coerce(left)]
    right_messages = _coerce(right)

    remove_all_idx = None
    for i, m in enumerate(right_messages):
        if is_removal(m) and m.id == REMOVE_ALL_MESSAGES:
            remove_all_idx = i
    if remove_all_idx is not None:
        return right_messages[remove_all_idx + 1:]

    artifacts: dict[str, Any] = {
        m.tool_call_id: m.artifact
        for m in left_messages
        if isinstance(m, ToolMessage) and m.artifact is not None
    }
    known_calls: set[str] = set()
    for m in left_messages:
        known_calls |= tool_call_ids(m)

    merged = list(left_messages)
    index_by_id = {m.id: i for i, m in enumerate(merged)}
    ids_to_remove: set[str] = set()

    for m in right_messages:
        if isinstance(m, ToolMessage) and m.artifact is None and m.tool_call_id in artifacts:
            m = m.model_copy(update={"artifact": artifacts[m.tool_call_id]})

        existing_idx = index_by_id.get(m.id)
        if existing_idx is not None:
            if is_removal(m):
                ids_to_remove.add(m.id)
            else:
                ids_to_remove.discard(m.id)
                merged[existing_idx] = m
                known_calls |= tool_call_ids(m)
            continue

        if is_removal(m):
            raise UnknownRemovalTarget(m.id)
        if isinstance(m, ToolMessage) and m.tool_call_id not in known_calls:
            raise OrphanToolResult(m.tool_call_id)
        index_by_id[m.id] = len(merged)
        merged.append(m)
        known_calls |= tool_call_ids(m)
        if isinstance(m, ToolMessage) and m.artifact is not None:
            artifacts[m.tool_call_id] = m.artifact

    return [m for m in merged if m.id not in ids_to_remove]
