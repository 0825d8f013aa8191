"""Conversation log: reducer, prompt caching and context pruning."""

from graphcrew.messages.cache import (
    CacheMarkerStyle,
    add_bedrock_cache_control,
    add_cache_control,
    apply_prompt_cache,
    strip_anthropic_cache_control,
    strip_bedrock_cache_control,
)
from graphcrew.messages.prune import (
    PruneOutput,
    calculate_total_tokens,
    get_messages_within_token_limit,
    make_prune_messages,
    repair_orphaned_tool_messages,
)
from graphcrew.messages.pruning import (
    ContextPruningSettings,
    apply_context_pruning,
    resolve_context_pruning_settings,
)
from graphcrew.messages.reducer import create_remove_all_message, merge_messages

__all__ = [
    "CacheMarkerStyle",
    "ContextPruningSettings",
    "PruneOutput",
    "add_bedrock_cache_control",
    "add_cache_control",
    "apply_context_pruning",
    "apply_prompt_cache",
    "calculate_total_tokens",
    "create_remove_all_message",
    "get_messages_within_token_limit",
    "make_prune_messages",
    "merge_messages",
    "repair_orphaned_tool_messages",
    "resolve_context_pruning_settings",
    "strip_anthropic_cache_control",
    "strip_bedrock_cache_control",
]
