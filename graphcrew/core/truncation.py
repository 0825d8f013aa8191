"""Size guards for tool results and tool-call inputs.

Oversized tool output is truncated at ingestion (tool executor), before each
model call (pre-flight, see ``graphcrew.messages.prune``) and after a provider
overflow error (model node). All three share the helpers below.
"""

from __future__ import annotations

import json
from typing import Any, Sequence

from langchain_core.messages import AIMessage, BaseMessage

# A single tool result larger than this is almost certainly a bug
HARD_MAX_TOOL_RESULT_CHARS = 400_000
HARD_MAX_TOOL_INPUT_CHARS = 200_000
CHARS_PER_TOKEN = 4

# Newline snapping window around a cut point
NEWLINE_SNAP_CHARS = 200
# Below this budget a tail is not worth keeping
MIN_HEAD_TAIL_BUDGET = 200
HEAD_RATIO = 0.7

TOOL_USE_BLOCK_TYPES = ("tool_use", "tool_call")


def max_tool_result_chars(context_window_tokens: int | None = None) -> int:
    """Max characters for one tool result: 30% of the window, hard-capped."""
    if not context_window_tokens or context_window_tokens <= 0:
        return HARD_MAX_TOOL_RESULT_CHARS
    return min(int(context_window_tokens * 0.3) * CHARS_PER_TOKEN, HARD_MAX_TOOL_RESULT_CHARS)


def max_tool_input_chars(context_window_tokens: int | None = None) -> int:
    """Max characters for one tool-call input: 15% of the window, hard-capped."""
    if not context_window_tokens or context_window_tokens <= 0:
        return HARD_MAX_TOOL_INPUT_CHARS
    return min(int(context_window_tokens * 0.15) * CHARS_PER_TOKEN, HARD_MAX_TOOL_INPUT_CHARS)


def _head_only(content: str, max_chars: int) -> str:
    total = len(content)
    indicator = f"\n\n… [truncated: {total} chars total, showing first {max_chars} chars]"
    available = max_chars - len(indicator)
    if available <= 0:
        return content[:max_chars]
    last_newline = content.rfind("\n", 0, available)
    cut = last_newline if 0 < last_newline and last_newline > available - NEWLINE_SNAP_CHARS else available
    indicator = f"\n\n… [truncated: {total} chars total, showing first {cut} chars]"
    return content[:cut] + indicator


def truncate_tool_result_content(content: str, max_chars: int) -> str:
    """Shrink ``content`` to at most ``max_chars`` characters.

    Keeps ~70% of the budget from the head and ~30% from the tail around a
    visible marker, snapping both cuts to nearby newlines so JSON and log
    output stay readable. Falls back to head-only when the budget is too
    small for a useful tail.
    """
    if len(content) <= max_chars:
        return content

    total = len(content)
    # Worst-case marker: retained size can only shrink after snapping
    indicator = f"\n\n… [truncated: {total} chars total, kept {max_chars} chars] …\n\n"
    available = max_chars - len(indicator)
    if available < MIN_HEAD_TAIL_BUDGET:
        return _head_only(content, max_chars)

    head_budget = int(available * HEAD_RATIO)
    tail_budget = available - head_budget

    head_end = head_budget
    last_newline = content.rfind("\n", 0, head_budget)
    if 0 < last_newline and last_newline > head_budget - NEWLINE_SNAP_CHARS:
        head_end = last_newline

    tail_start = total - tail_budget
    next_newline = content.find("\n", tail_start, tail_start + NEWLINE_SNAP_CHARS)
    if next_newline != -1 and next_newline + 1 < total:
        tail_start = next_newline + 1

    kept = head_end + (total - tail_start)
    indicator = f"\n\n… [truncated: {total} chars total, kept {kept} chars] …\n\n"
    return content[:head_end] + indicator + content[tail_start:]


def truncate_tool_input(tool_input: Any, max_chars: int) -> dict[str, Any]:
    """Replace an oversized tool-call input with a JSON-object stub."""
    serialized = tool_input if isinstance(tool_input, str) else json.dumps(tool_input, default=str)
    return {
        "_truncated": serialized[:max_chars] + f"\n… [truncated: {len(serialized)} → {max_chars} chars]",
        "_original_chars": len(serialized),
    }


def _serialized_len(value: Any) -> int:
    if isinstance(value, str):
        return len(value)
    return len(json.dumps(value, default=str))


def truncate_ai_tool_inputs(message: AIMessage, max_chars: int) -> AIMessage | None:
    """Return a copy of ``message`` with oversized tool inputs truncated.

    Covers both ``tool_use``/``tool_call`` content blocks and the
    ``tool_calls`` args. Returns None when nothing exceeded ``max_chars``.
    """
    changed = False
    content = message.content
    if isinstance(content, list):
        new_content: list[Any] = []
        for block in content:
            if (
                isinstance(block, dict)
                and block.get("type") in TOOL_USE_BLOCK_TYPES
                and block.get("input") is not None
                and _serialized_len(block["input"]) > max_chars
            ):
                new_content.append({**block, "input": truncate_tool_input(block["input"], max_chars)})
                changed = True
            else:
                new_content.append(block)
        content = new_content

    new_calls = []
    for call in message.tool_calls:
        if _serialized_len(call["args"]) > max_chars:
            new_calls.append({**call, "args": truncate_tool_input(call["args"], max_chars)})
            changed = True
        else:
            new_calls.append(call)

    if not changed:
        return None
    return message.model_copy(update={"content": content, "tool_calls": new_calls})


def truncate_oversized_content(
    messages: Sequence[BaseMessage],
    max_chars: int,
) -> tuple[list[BaseMessage], bool]:
    """Truncate every tool result and tool input longer than ``max_chars``.

    Used for overflow recovery. Returns a new list and whether anything was
    truncated; untouched messages are reused.
    """
    result: list[BaseMessage] = []
    truncated = False
    for msg in messages:
        if msg.type == "tool" and isinstance(msg.content, str) and len(msg.content) > max_chars:
            result.append(
                msg.model_copy(update={"content": truncate_tool_result_content(msg.content, max_chars)})
            )
            truncated = True
            continue
        if isinstance(msg, AIMessage):
            shrunk = truncate_ai_tool_inputs(msg, max_chars)
            if shrunk is not None:
                result.append(shrunk)
                truncated = True
                continue
        result.append(msg)
    return result, truncated
