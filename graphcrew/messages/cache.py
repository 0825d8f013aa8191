"""Prompt-cache markers for Anthropic and Bedrock.

Both providers cache the prompt prefix up to a marker. Markers are placed on
the newest two eligible messages on every call, after stripping every marker
left over from earlier turns, so at most two markers are ever sent:

  - Anthropic: ``cache_control: {"type": "ephemeral"}`` on the last text block
    of the last two human messages.
  - Bedrock (Converse): a sibling ``{"cachePoint": {"type": "default"}}``
    block after the last non-empty text block of the last two non-tool,
    non-empty messages.

Messages are never mutated; changed ones are copied.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Sequence

from langchain_core.messages import BaseMessage
from loguru import logger

MAX_CACHE_MARKERS = 2
EPHEMERAL = {"type": "ephemeral"}
CACHE_POINT = {"cachePoint": {"type": "default"}}


class CacheMarkerStyle(str, Enum):
    """Where the marker lives."""

    INLINE = "inline"  # annotation on a text block (Anthropic)
    SIBLING = "sibling"  # separate content block (Bedrock)


PROVIDER_MARKER_STYLES = {
    "anthropic": CacheMarkerStyle.INLINE,
    "bedrock": CacheMarkerStyle.SIBLING,
}


def _is_cache_point(block: Any) -> bool:
    return isinstance(block, dict) and "cachePoint" in block and "type" not in block


def _is_text_block(block: Any) -> bool:
    return isinstance(block, dict) and block.get("type") == "text"


def _strip(content: Any, *, inline: bool = True, sibling: bool = True) -> tuple[Any, bool]:
    """Remove markers from a content list. Returns (content, changed)."""
    if not isinstance(content, list):
        return content, False
    stripped: list[Any] = []
    changed = False
    for block in content:
        if sibling and _is_cache_point(block):
            changed = True
            continue
        if inline and isinstance(block, dict) and "cache_control" in block:
            block = {k: v for k, v in block.items() if k != "cache_control"}
            changed = True
        stripped.append(block)
    return (stripped if changed else content), changed


def _mark_inline(content: Any) -> list[Any] | None:
    if isinstance(content, str):
        return [{"type": "text", "text": content, "cache_control": dict(EPHEMERAL)}]
    for j in range(len(content) - 1, -1, -1):
        if _is_text_block(content[j]):
            marked = list(content)
            marked[j] = {**content[j], "cache_control": dict(EPHEMERAL)}
            return marked
    return None


def _mark_sibling(content: Any) -> list[Any] | None:
    if isinstance(content, str):
        return [{"type": "text", "text": content}, dict(CACHE_POINT)]
    if not any(_is_text_block(b) and isinstance(b.get("text"), str) and b["text"] for b in content):
        return None
    marked = list(content)
    for j in range(len(marked) - 1, -1, -1):
        block = marked[j]
        if _is_text_block(block) and block.get("text"):
            marked.insert(j + 1, dict(CACHE_POINT))
            return marked
    marked.append(dict(CACHE_POINT))
    return marked


def _eligible(message: BaseMessage, style: CacheMarkerStyle) -> bool:
    if style is CacheMarkerStyle.INLINE:
        return message.type == "human"
    return message.type != "tool" and message.content != ""


def apply_cache_markers(
    messages: Sequence[BaseMessage],
    style: CacheMarkerStyle,
) -> list[BaseMessage]:
    """Strip all markers and place fresh ones in a single backward pass."""
    result = list(messages)
    if len(result) < 2:
        return result

    mark = _mark_inline if style is CacheMarkerStyle.INLINE else _mark_sibling
    marked = 0
    for i in range(len(result) - 1, -1, -1):
        message = result[i]
        content, changed = _strip(message.content)
        if marked < MAX_CACHE_MARKERS and _eligible(message, style):
            new_content = mark(content)
            if new_content is not None:
                content = new_content
                changed = True
                marked += 1
        if changed:
            result[i] = message.model_copy(update={"content": content})

    logger.debug(f"Cache markers ({style.value}): {marked} placed on {len(result)} messages")
    return result


def add_cache_control(messages: Sequence[BaseMessage]) -> list[BaseMessage]:
    """Anthropic: mark the last two human messages."""
    return apply_cache_markers(messages, CacheMarkerStyle.INLINE)


def add_bedrock_cache_control(messages: Sequence[BaseMessage]) -> list[BaseMessage]:
    """Bedrock: cache points after the last two non-tool, non-empty messages."""
    return apply_cache_markers(messages, CacheMarkerStyle.SIBLING)


def _strip_all(messages: Sequence[BaseMessage], *, inline: bool, sibling: bool) -> list[BaseMessage]:
    result = list(messages)
    for i, message in enumerate(result):
        content, changed = _strip(message.content, inline=inline, sibling=sibling)
        if changed:
            result[i] = message.model_copy(update={"content": content})
    return result


def strip_anthropic_cache_control(messages: Sequence[BaseMessage]) -> list[BaseMessage]:
    """Remove ``cache_control`` annotations (switching away from Anthropic)."""
    return _strip_all(messages, inline=True, sibling=False)


def strip_bedrock_cache_control(messages: Sequence[BaseMessage]) -> list[BaseMessage]:
    """Remove ``cachePoint`` blocks (switching away from Bedrock)."""
    return _strip_all(messages, inline=False, sibling=True)


def apply_prompt_cache(messages: Sequence[BaseMessage], provider: str) -> list[BaseMessage]:
    """Apply the marker style for ``provider``; other providers get none."""
    style = PROVIDER_MARKER_STYLES.get(provider)
    if style is None:
        return _strip_all(messages, inline=True, sibling=True)
    return apply_cache_markers(messages, style)
