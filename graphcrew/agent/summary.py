"""Conversation summaries — compact the messages pruning cut off.

When pruning drops messages from the window, the agent node can ask the
model to fold them into the durable summary carried in the system prompt.
"""

from __future__ import annotations

import json
from typing import Any, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from loguru import logger

from graphcrew.core.config.schema import SummarizationTrigger
from graphcrew.core.providers.base import BaseLLMProvider

DEFAULT_SUMMARIZATION_PROMPT = (
    "You are a summarization assistant. Summarize the following conversation messages concisely, "
    "preserving key facts, decisions, and context needed to continue the conversation. "
    "Do not include preamble -- output only the summary."
)

# Per-message limits before the total budget applies
TOOL_RESULT_CHARS = 800
MESSAGE_CHARS = 600
TOOL_ARGS_CHARS = 200
BUDGET_CHARS = 20_000
MIN_MESSAGE_ALLOWANCE = 80


def should_trigger_summarization(
    trigger: SummarizationTrigger | None,
    messages_to_refine_count: int,
    max_context_tokens: int | None = None,
    pre_prune_total_tokens: int | None = None,
    remaining_context_tokens: int | None = None,
) -> bool:
    """Whether the cut-off messages should be summarized now.

    Nothing to refine never triggers. Without a trigger, or without the
    numbers a trigger needs, any cut-off triggers.
    """
    if messages_to_refine_count <= 0:
        return False
    if trigger is None or trigger.value is None:
        return True

    if trigger.type == "messages_to_refine":
        return messages_to_refine_count >= trigger.value

    remaining = remaining_context_tokens
    if max_context_tokens and pre_prune_total_tokens is not None:
        remaining = max_context_tokens - pre_prune_total_tokens

    if trigger.type == "token_ratio":
        if not max_context_tokens or remaining is None:
            return True
        return 1 - remaining / max_context_tokens >= trigger.value
    if remaining is None:
        return True
    return remaining <= trigger.value


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}… [{len(text) - limit} more chars]"


def _text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"]
        if texts:
            return "\n".join(t for t in texts if t.strip())
    return json.dumps(content, default=str)


def format_message_for_summary(message: BaseMessage) -> str:
    if message.type == "tool":
        return f"[tool_result: {message.name or 'unknown'}] → {_clip(_text(message.content), TOOL_RESULT_CHARS)}"
    if isinstance(message, AIMessage) and message.tool_calls:
        parts = []
        text = _text(message.content).strip() if message.content else ""
        if text:
            parts.append(_clip(text, MESSAGE_CHARS))
        for call in message.tool_calls:
            args = _clip(json.dumps(call["args"], default=str), TOOL_ARGS_CHARS)
            parts.append(f"[tool_call: {call['name']}({args})]")
        return "[ai]: " + "\n".join(parts)
    return f"[{message.type}]: {_clip(_text(message.content), MESSAGE_CHARS)}"


def format_messages_for_summarization(messages: Sequence[BaseMessage], budget_chars: int = BUDGET_CHARS) -> str:
    """One line per message; over budget, every message is trimmed proportionally."""
    formatted = [format_message_for_summary(m) for m in messages]
    total = sum(len(f) for f in formatted)
    if total <= budget_chars:
        return "\n".join(formatted)
    ratio = budget_chars / total
    return "\n".join(
        _clip(f, max(MIN_MESSAGE_ALLOWANCE, int(len(f) * ratio))) for f in formatted
    )


async def summarize_messages(
    provider: BaseLLMProvider,
    model: str,
    messages: Sequence[BaseMessage],
    prior_summary: str | None = None,
    prompt: str | None = None,
    **client_options: Any,
) -> str:
    """Summarize ``messages``, merging ``prior_summary`` when there is one.

    Provider errors propagate; an empty reply returns ``""``.
    """
    formatted = format_messages_for_summarization(messages)
    if prior_summary:
        body = f"## Prior Summary\n\n{prior_summary}\n\n## New Messages to Incorporate\n\n{formatted}"
    else:
        body = formatted
    reply = await provider.achat(
        [SystemMessage(content=prompt or DEFAULT_SUMMARIZATION_PROMPT), HumanMessage(content=body)],
        model=model,
        **client_options,
    )
    summary = _text(reply.content).strip() if reply.content else ""
    logger.debug(f"Summarized {len(messages)} messages into {len(summary)} chars")
    return summary
