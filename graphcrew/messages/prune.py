"""Fit the conversation log into a model's context window.

``make_prune_messages`` builds a per-agent pruner. Each call:

  1. counts tokens for messages not yet in the index map
  2. pre-flight truncates oversized tool results and tool-call inputs
  3. applies position-based pruning when enabled
  4. returns the whole log if it fits, otherwise the newest messages that
     fit, never starting on a tool result
  5. repairs orphaned tool calls/results at the cut
  6. if nothing fits, truncates every payload to a stub and tries once more
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, MutableMapping, Sequence

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from loguru import logger

from graphcrew.core.truncation import (
    TOOL_USE_BLOCK_TYPES,
    max_tool_input_chars,
    max_tool_result_chars,
    truncate_ai_tool_inputs,
    truncate_tool_result_content,
)
from graphcrew.messages.pruning import ContextPruningSettings, apply_context_pruning
from graphcrew.messages.reducer import tool_call_ids

TokenCounter = Callable[[BaseMessage], int]

# Every reply is primed with an assistant label
REPLY_PRIMER_TOKENS = 3
EMERGENCY_MAX_CHARS = 150


@dataclass
class PruningResult:
    context: list[BaseMessage]
    remaining_context_tokens: int
    messages_to_refine: list[BaseMessage] = field(default_factory=list)


@dataclass
class PruneOutput:
    context: list[BaseMessage]
    index_token_count_map: dict[int, int]
    messages_to_refine: list[BaseMessage] = field(default_factory=list)
    pre_prune_total_tokens: int = 0
    remaining_context_tokens: int = 0


def calculate_total_tokens(usage: dict[str, Any]) -> dict[str, int]:
    """Normalise provider usage: cache creation/read count as input tokens."""
    details = usage.get("input_token_details") or {}
    input_tokens = (
        int(usage.get("input_tokens") or 0)
        + int(details.get("cache_creation") or 0)
        + int(details.get("cache_read") or 0)
    )
    output_tokens = int(usage.get("output_tokens") or 0)
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }


# ── Window selection ──────────────────────────────────────


def get_messages_within_token_limit(
    messages: Sequence[BaseMessage],
    max_context_tokens: int,
    index_token_count_map: MutableMapping[int, int],
    start_type: str | Sequence[str] | None = None,
    instruction_tokens: int = 0,
) -> PruningResult:
    """Keep the newest messages whose token counts fit the budget.

    A leading system message is always kept and its mapped count is reserved;
    without one, ``instruction_tokens`` is reserved instead. When the window
    would start on a tool result, it is advanced to the first ai/human
    message.
    """
    current = REPLY_PRIMER_TOKENS
    original_length = len(messages)
    instructions = messages[0] if messages and messages[0].type == "system" else None
    reserved = index_token_count_map.get(0, 0) if instructions is not None else instruction_tokens
    remaining_tokens = max_context_tokens - reserved

    remaining = list(messages)
    context: list[BaseMessage] = []  # newest first
    pruned: list[BaseMessage] = []
    dropped: list[BaseMessage] = []
    end_index = 1 if instructions is not None else 0

    if current < remaining_tokens:
        index = len(remaining)
        while remaining and current < remaining_tokens and index > end_index:
            index -= 1
            if len(remaining) == 1 and instructions is not None:
                break
            popped = remaining.pop()
            count = index_token_count_map.get(index, 0)
            if current + count <= remaining_tokens:
                context.append(popped)
                current += count
            else:
                pruned.append(popped)
                break

        start_types: Sequence[str] | None
        if isinstance(start_type, str):
            start_types = [start_type]
        else:
            start_types = start_type
        if context and context[-1].type == "tool":
            start_types = ["ai", "human"]

        if start_types and context:
            required = -1
            skipped_tokens = 0
            for i in range(len(context) - 1, -1, -1):
                if context[i].type in start_types:
                    required = i + 1
                    break
                skipped_tokens += index_token_count_map.get(original_length - 1 - i, 0)
            if required > 0:
                current -= skipped_tokens
                dropped = list(reversed(context[required:]))
                context = context[:required]

    if instructions is not None:
        context.append(instructions)
        remaining.pop(0)

    remaining_tokens -= current
    return PruningResult(
        context=list(reversed(context)),
        remaining_context_tokens=remaining_tokens,
        messages_to_refine=remaining + pruned + dropped,
    )


# ── Orphan repair ─────────────────────────────────────────


def strip_orphan_tool_use_blocks(message: AIMessage, present_result_ids: set[str]) -> AIMessage | None:
    """Drop tool calls whose results are not in context. None if nothing remains."""
    kept_calls = [tc for tc in message.tool_calls if tc.get("id") in present_result_ids]
    content = message.content
    if isinstance(content, list):
        content = [
            block
            for block in content
            if not (
                isinstance(block, dict)
                and block.get("type") in TOOL_USE_BLOCK_TYPES
                and isinstance(block.get("id"), str)
                and block["id"] not in present_result_ids
            )
        ]
        if not content:
            return None
    return message.model_copy(update={"content": content, "tool_calls": kept_calls})


def repair_orphaned_tool_messages(
    context: Sequence[BaseMessage],
    all_messages: Sequence[BaseMessage],
    token_counter: TokenCounter,
    index_token_count_map: MutableMapping[int, int],
) -> tuple[list[BaseMessage], int, int]:
    """Make every tool call in ``context`` have its result and vice versa.

    Returns (context, reclaimed_tokens, dropped_count).
    """
    positions = {id(m): i for i, m in enumerate(all_messages)}

    def _count(message: BaseMessage) -> int:
        pos = positions.get(id(message))
        if pos is not None and pos in index_token_count_map:
            return index_token_count_map[pos]
        return token_counter(message)

    valid_call_ids: set[str] = set()
    for m in context:
        valid_call_ids |= tool_call_ids(m)
    present_result_ids = {m.tool_call_id for m in context if isinstance(m, ToolMessage) and m.tool_call_id}

    reclaimed = 0
    dropped = 0
    repaired: list[BaseMessage] = []
    for m in context:
        if isinstance(m, ToolMessage):
            if not m.tool_call_id or m.tool_call_id not in valid_call_ids:
                dropped += 1
                reclaimed += _count(m)
                continue
            repaired.append(m)
            continue

        ids = tool_call_ids(m)
        if isinstance(m, AIMessage) and ids and not ids <= present_result_ids:
            original_tokens = _count(m)
            stripped = strip_orphan_tool_use_blocks(m, present_result_ids)
            if stripped is None:
                dropped += 1
                reclaimed += original_tokens
            else:
                reclaimed += original_tokens - token_counter(stripped)
                repaired.append(stripped)
            continue

        repaired.append(m)

    return repaired, reclaimed, dropped


# ── Pre-flight truncation ─────────────────────────────────


def pre_flight_truncate_tool_results(
    messages: Sequence[BaseMessage],
    max_context_tokens: int,
    index_token_count_map: MutableMapping[int, int],
    token_counter: TokenCounter,
) -> tuple[list[BaseMessage], int]:
    """Truncate tool results above 30% of the budget; recount changed ones."""
    max_chars = max_tool_result_chars(max_context_tokens)
    result = list(messages)
    count = 0
    for i, m in enumerate(result):
        if m.type != "tool" or not isinstance(m.content, str) or len(m.content) <= max_chars:
            continue
        result[i] = m.model_copy(update={"content": truncate_tool_result_content(m.content, max_chars)})
        index_token_count_map[i] = token_counter(result[i])
        count += 1
    return result, count


def pre_flight_truncate_tool_call_inputs(
    messages: Sequence[BaseMessage],
    max_context_tokens: int,
    index_token_count_map: MutableMapping[int, int],
    token_counter: TokenCounter,
) -> tuple[list[BaseMessage], int]:
    """Truncate tool-call inputs above 15% of the budget.

    The calls already ran, so the model only needs to know what was called.
    """
    max_chars = max_tool_input_chars(max_context_tokens)
    result = list(messages)
    count = 0
    for i, m in enumerate(result):
        if not isinstance(m, AIMessage):
            continue
        shrunk = truncate_ai_tool_inputs(m, max_chars)
        if shrunk is None:
            continue
        result[i] = shrunk
        index_token_count_map[i] = token_counter(shrunk)
        count += 1
    return result, count


def emergency_truncate(
    messages: Sequence[BaseMessage],
    index_token_count_map: MutableMapping[int, int],
    token_counter: TokenCounter,
    max_chars: int = EMERGENCY_MAX_CHARS,
) -> list[BaseMessage]:
    """Reduce every tool payload to a stub naming what was called."""
    result = list(messages)
    for i, m in enumerate(result):
        if m.type == "tool" and isinstance(m.content, str) and len(m.content) > max_chars:
            stub = m.content[:max_chars] + f"\n… [emergency truncated: {len(m.content)} → {max_chars} chars]"
            result[i] = m.model_copy(update={"content": stub})
            index_token_count_map[i] = token_counter(result[i])
        elif isinstance(m, AIMessage):
            shrunk = truncate_ai_tool_inputs(m, max_chars)
            if shrunk is not None:
                result[i] = shrunk
                index_token_count_map[i] = token_counter(shrunk)
    return result


# ── Pruner factory ────────────────────────────────────────


def make_prune_messages(
    max_tokens: int,
    token_counter: TokenCounter,
    index_token_count_map: dict[int, int] | None = None,
    start_index: int = 0,
    pruning_settings: ContextPruningSettings | None = None,
    get_instruction_tokens: Callable[[], int] | None = None,
):
    """Create a stateful pruner for one agent.

    Parameters
    ----------
    max_tokens : int
        Context window of the agent's model.
    token_counter : callable
        ``Message -> int`` supplied by the host.
    index_token_count_map : dict[int, int], optional
        Known token counts by log position (e.g. restored history).
    start_index : int
        First position not yet counted.
    pruning_settings : ContextPruningSettings, optional
        Position-based pruning settings; skipped unless enabled.
    get_instruction_tokens : callable, optional
        Current system prompt + tool schema + summary overhead, read on
        every call so summary changes between turns are reflected.
    """
    # Shared with the caller so counts survive between turns
    token_map: dict[int, int] = index_token_count_map if index_token_count_map is not None else {}
    state = {"last_turn_start": start_index, "last_cut_off": 0}

    def prune_messages(
        messages: Sequence[BaseMessage],
        start_type: str | Sequence[str] | None = None,
    ) -> PruneOutput:
        if not messages:
            return PruneOutput(context=[], index_token_count_map=token_map, remaining_context_tokens=max_tokens)

        # Log was reset (remove-all); positions no longer line up
        if len(messages) < state["last_turn_start"]:
            token_map.clear()
            state["last_turn_start"] = 0
            state["last_cut_off"] = 0

        for i in range(state["last_turn_start"], len(messages)):
            if i not in token_map:
                token_map[i] = token_counter(messages[i])

        instruction_tokens = get_instruction_tokens() if get_instruction_tokens else 0
        effective_max = max(0, max_tokens - instruction_tokens)

        working, truncated_results = pre_flight_truncate_tool_results(messages, effective_max, token_map, token_counter)
        working, truncated_inputs = pre_flight_truncate_tool_call_inputs(working, effective_max, token_map, token_counter)
        if truncated_results or truncated_inputs:
            logger.debug(f"Pre-flight truncation: {truncated_results} results, {truncated_inputs} inputs")

        if pruning_settings is not None and pruning_settings.enabled:
            working, _ = apply_context_pruning(
                working,
                token_counter=token_counter,
                index_token_count_map=token_map,
                settings=pruning_settings,
            )

        total_tokens = sum(token_map.get(i, 0) for i in range(len(working)))
        state["last_turn_start"] = len(working)

        if state["last_cut_off"] == 0 and total_tokens + instruction_tokens <= max_tokens:
            return PruneOutput(
                context=working,
                index_token_count_map=token_map,
                pre_prune_total_tokens=total_tokens,
                remaining_context_tokens=max_tokens - total_tokens - instruction_tokens,
            )

        window = get_messages_within_token_limit(
            working, max_tokens, token_map, start_type=start_type, instruction_tokens=instruction_tokens,
        )
        context, reclaimed, _ = repair_orphaned_tool_messages(window.context, working, token_counter, token_map)
        messages_to_refine = list(window.messages_to_refine)

        if not context and effective_max > 0:
            logger.warning(f"No messages fit {effective_max} tokens, applying emergency truncation")
            working = emergency_truncate(working, token_map, token_counter)
            window = get_messages_within_token_limit(
                working, max_tokens, token_map, start_type=start_type, instruction_tokens=instruction_tokens,
            )
            context, reclaimed, _ = repair_orphaned_tool_messages(window.context, working, token_counter, token_map)
            messages_to_refine = list(window.messages_to_refine)

        remaining = max(0, min(max_tokens, window.remaining_context_tokens + reclaimed))
        leading_system = 1 if context and context[0].type == "system" else 0
        state["last_cut_off"] = max(len(working) - (len(context) - leading_system), 0)

        return PruneOutput(
            context=context,
            index_token_count_map=token_map,
            messages_to_refine=messages_to_refine,
            pre_prune_total_tokens=total_tokens,
            remaining_context_tokens=remaining,
        )

    return prune_messages


__all__ = [
    "PruneOutput",
    "PruningResult",
    "calculate_total_tokens",
    "emergency_truncate",
    "get_messages_within_token_limit",
    "make_prune_messages",
    "pre_flight_truncate_tool_call_inputs",
    "pre_flight_truncate_tool_results",
    "repair_orphaned_tool_messages",
    "strip_orphan_tool_use_blocks",
]
