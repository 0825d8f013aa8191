"""Position-based context pruning for old tool results.

There are no per-message timestamps, so age is positional: the distance of a
message from the end of the log as a fraction of its length (0 = newest,
1 = oldest). Two severities:

  - soft-trim: keep head + tail of the tool result, drop the middle
  - hard-clear: replace the whole result with a placeholder

The system message, everything before the first human message, and the last
``keep_last_assistants`` assistant turns are never pruned. Neither are tool
results carrying images or shorter than ``min_prunable_tool_chars``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, MutableMapping, Sequence

from langchain_core.messages import BaseMessage
from loguru import logger
from pydantic import BaseModel, ConfigDict


class SoftTrimSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_chars: int = 4_000
    head_chars: int = 1_500
    tail_chars: int = 1_500


class HardClearSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    placeholder: str = "[Old tool result content cleared]"


class ContextPruningSettings(BaseModel):
    """Resolved pruning settings (opt-in, immutable)."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    keep_last_assistants: int = 3
    soft_trim_ratio: float = 0.3
    hard_clear_ratio: float = 0.5
    min_prunable_tool_chars: int = 50_000
    soft_trim: SoftTrimSettings = SoftTrimSettings()
    hard_clear: HardClearSettings = HardClearSettings()


DEFAULT_CONTEXT_PRUNING_SETTINGS = ContextPruningSettings()


def resolve_context_pruning_settings(
    overrides: Mapping[str, Any] | BaseModel | None = None,
) -> ContextPruningSettings:
    """Merge partial overrides into the defaults, field by field.

    ``None`` values mean "use the default"; nested ``soft_trim`` and
    ``hard_clear`` sections merge key by key as well.
    """
    if overrides is None:
        return DEFAULT_CONTEXT_PRUNING_SETTINGS
    if isinstance(overrides, ContextPruningSettings):
        return overrides
    if isinstance(overrides, BaseModel):
        overrides = overrides.model_dump(exclude_none=True)

    merged = DEFAULT_CONTEXT_PRUNING_SETTINGS.model_dump()
    for key, value in overrides.items():
        if value is None or key not in merged:
            continue
        if isinstance(value, BaseModel):
            value = value.model_dump(exclude_none=True)
        if isinstance(value, Mapping):
            merged[key] = {**merged[key], **{k: v for k, v in value.items() if v is not None}}
        else:
            merged[key] = value
    return ContextPruningSettings.model_validate(merged)


@dataclass
class ContextPruningResult:
    soft_trimmed: int = 0
    hard_cleared: int = 0


def _has_image_content(message: BaseMessage) -> bool:
    if not isinstance(message.content, list):
        return False
    return any(
        isinstance(block, dict) and block.get("type") in ("image_url", "image")
        for block in message.content
    )


def soft_trim_content(content: str, settings: SoftTrimSettings) -> str:
    head, tail = settings.head_chars, settings.tail_chars
    indicator = (
        f"\n\n… [soft-trimmed: {len(content)} chars → {head + tail} chars, middle removed] …\n\n"
    )
    return content[:head] + indicator + (content[-tail:] if tail > 0 else "")


def _protected_indices(messages: Sequence[BaseMessage], keep_last_assistants: int) -> set[int]:
    protected: set[int] = set()
    if messages and messages[0].type == "system":
        protected.add(0)

    for i, message in enumerate(messages):
        if message.type == "human":
            break
        protected.add(i)

    # An assistant turn is a contiguous run of ai/tool messages
    turns_found = 0
    in_turn = False
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].type in ("ai", "tool"):
            protected.add(i)
            in_turn = True
            continue
        if in_turn:
            turns_found += 1
            in_turn = False
            if turns_found >= keep_last_assistants:
                break
        if turns_found < keep_last_assistants:
            protected.add(i)
    return protected


def apply_context_pruning(
    messages: Sequence[BaseMessage],
    *,
    token_counter: Callable[[BaseMessage], int] | None = None,
    index_token_count_map: MutableMapping[int, int] | None = None,
    settings: ContextPruningSettings | Mapping[str, Any] | None = None,
) -> tuple[list[BaseMessage], ContextPruningResult]:
    """Degrade old tool results by position.

    Returns a new list (pruned messages are copies) and counts. When a token
    counter and map are given, pruned positions are recounted in the map.
    """
    resolved = resolve_context_pruning_settings(settings)
    result = list(messages)
    outcome = ContextPruningResult()
    if not resolved.enabled or not result:
        return result, outcome

    total = len(result)
    protected = _protected_indices(result, resolved.keep_last_assistants)

    for i, message in enumerate(result):
        if message.type != "tool" or i in protected or _has_image_content(message):
            continue
        content = message.content
        if not isinstance(content, str) or len(content) < resolved.min_prunable_tool_chars:
            continue

        age = (total - i) / total
        if age >= resolved.hard_clear_ratio and resolved.hard_clear.enabled:
            new_content = resolved.hard_clear.placeholder
            outcome.hard_cleared += 1
        elif age >= resolved.soft_trim_ratio and len(content) > resolved.soft_trim.max_chars:
            new_content = soft_trim_content(content, resolved.soft_trim)
            outcome.soft_trimmed += 1
        else:
            continue

        result[i] = message.model_copy(update={"content": new_content})
        if token_counter is not None and index_token_count_map is not None:
            index_token_count_map[i] = token_counter(result[i])

    if outcome.soft_trimmed or outcome.hard_cleared:
        logger.debug(
            f"Context pruning: {outcome.soft_trimmed} soft-trimmed, "
            f"{outcome.hard_cleared} hard-cleared of {total} messages"
        )
    return result, outcome
