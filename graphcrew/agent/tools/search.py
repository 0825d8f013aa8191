"""Tool search — discover deferred tools by regex.

Deferred tools are left out of the model's tool binding until found here.
The search tool returns readable matches as content and the matched names as
``artifact["tool_references"]``; the model node reads those artifacts back
with :func:`extract_tool_discoveries` and marks the tools discovered.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Literal, Sequence

from langchain_core.messages import BaseMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool, tool
from loguru import logger
from pydantic import BaseModel, Field

from graphcrew.agent.tools import ToolRegistry

TOOL_SEARCH_NAME = "tool_search_regex"

MAX_PATTERN_LENGTH = 200
MAX_REGEX_COMPLEXITY = 5

_NESTED_QUANTIFIER_RE = re.compile(r"\([^)]*[+*][^)]*\)[+*?]")
_DANGEROUS_RES = [
    re.compile(r"\.\{1000,\}"),
    re.compile(r"\(\?=\.\{100,\}\)"),
    re.compile(r"\([^)]*\|\s*\){20,}"),
    re.compile(r"\(\.\*\)\+"),
    re.compile(r"\(\.\+\)\+"),
    re.compile(r"\(\.\*\)\*"),
    re.compile(r"\(\.\+\)\*"),
]

FIELD_SCORES = {"name": 0.95, "description": 0.75, "parameters": 0.60}

SearchField = Literal["name", "description", "parameters"]


class ToolSearchInput(BaseModel):
    query: str = Field(
        min_length=1,
        max_length=MAX_PATTERN_LENGTH,
        description="Regex pattern to search tool names and descriptions. "
        "Unsafe patterns are converted to a literal search.",
    )
    fields: list[SearchField] = Field(
        default_factory=lambda: ["name", "description"],
        description="Which fields to search. Default: name and description",
    )
    max_results: int = Field(default=10, ge=1, le=50, description="Maximum number of matching tools to return")


# ── Pattern safety ────────────────────────────────────────


def count_nested_groups(pattern: str) -> int:
    max_depth = depth = 0
    for i, ch in enumerate(pattern):
        escaped = i > 0 and pattern[i - 1] == "\\"
        if ch == "(" and not escaped:
            depth += 1
            max_depth = max(max_depth, depth)
        elif ch == ")" and not escaped:
            depth = max(0, depth - 1)
    return max_depth


def is_dangerous_pattern(pattern: str) -> bool:
    """Patterns prone to catastrophic backtracking, e.g. ``(a+)+``."""
    if _NESTED_QUANTIFIER_RE.search(pattern):
        return True
    if count_nested_groups(pattern) > MAX_REGEX_COMPLEXITY:
        return True
    return any(r.search(pattern) for r in _DANGEROUS_RES)


def sanitize_regex(pattern: str) -> tuple[str, bool]:
    """Return (safe_pattern, was_escaped)."""
    if is_dangerous_pattern(pattern):
        return re.escape(pattern), True
    try:
        re.compile(pattern)
    except re.error:
        return re.escape(pattern), True
    return pattern, False


# ── Search ────────────────────────────────────────────────


def search_registry(
    registry: ToolRegistry,
    pattern: str,
    fields: Sequence[str] = ("name", "description"),
    max_results: int = 10,
    only_deferred: bool = True,
) -> list[dict[str, Any]]:
    """Score registry entries against ``pattern`` (case-insensitive).

    A name match beats a description match beats a parameter-name match.
    """
    regex = re.compile(pattern, re.IGNORECASE)
    results = []
    for definition in registry.values():
        if only_deferred and not definition.defer_loading:
            continue
        haystacks = {
            "name": definition.name,
            "description": definition.description,
            "parameters": " ".join(definition.parameters_schema.get("properties", {})),
        }
        for field_name in ("name", "description", "parameters"):
            text = haystacks[field_name]
            if field_name in fields and text and regex.search(text):
                results.append({
                    "tool_name": definition.name,
                    "match_score": FIELD_SCORES[field_name],
                    "matched_field": field_name,
                    "snippet": text[:100],
                })
                break
    results.sort(key=lambda r: r["match_score"], reverse=True)
    return results[:max_results]


def format_search_results(matches: list[dict[str, Any]], total: int, pattern: str) -> str:
    if not matches:
        return f'No tools matched the pattern "{pattern}".\nTotal tools searched: {total}'
    lines = [f"Found {len(matches)} matching tools:", ""]
    for m in matches:
        lines.append(f"- {m['tool_name']} (score: {m['match_score']:.2f})")
        lines.append(f"  Matched in: {m['matched_field']}")
        lines.append(f"  Snippet: {m['snippet']}")
        lines.append("")
    lines.append(f"Total tools searched: {total}")
    lines.append(f"Pattern used: {pattern}")
    return "\n".join(lines)


def make_tool_search_tool(
    registry: ToolRegistry | Callable[[], ToolRegistry] | None = None,
    only_deferred: bool = True,
) -> BaseTool:
    """Create the regex tool-search tool.

    ``registry`` may be a mapping, a callable returning one, or omitted and
    supplied per call as ``config["configurable"]["tool_registry"]``.
    """

    @tool(TOOL_SEARCH_NAME, args_schema=ToolSearchInput, response_format="content_and_artifact")
    def tool_search_regex(
        query: str,
        fields: list[SearchField] | None = None,
        max_results: int = 10,
        config: RunnableConfig = None,
    ) -> tuple[str, dict[str, Any]]:
        """Searches through available tools to find ones matching your query pattern.

        Use this when you need to discover tools for a specific task. Higher
        scores (0.9+) indicate name matches, medium scores (0.7+) description
        matches.
        """
        pattern, escaped = sanitize_regex(query)
        warning = "Note: The provided pattern was converted to a literal search for safety.\n\n" if escaped else ""

        configurable = (config or {}).get("configurable", {})
        source = configurable.get("tool_registry", registry)
        current = source() if callable(source) else source
        if not current:
            return (
                f"{warning}Error: No tool registry provided.",
                {"tool_references": [], "metadata": {"total_searched": 0, "pattern": pattern}},
            )

        candidates = [d for d in current.values() if d.defer_loading or not only_deferred]
        matches = search_registry(current, pattern, fields or ["name", "description"], max_results, only_deferred)
        logger.debug(f"Tool search {pattern!r}: {len(matches)}/{len(candidates)} matched")
        return (
            warning + format_search_results(matches, len(candidates), pattern),
            {
                "tool_references": [m["tool_name"] for m in matches],
                "metadata": {"total_searched": len(candidates), "pattern": pattern},
            },
        )

    return tool_search_regex


def extract_tool_discoveries(messages: Sequence[BaseMessage]) -> list[str]:
    """Tool names found by tool-search results in the latest tool batch."""
    found: list[str] = []
    for message in reversed(messages):
        if not isinstance(message, ToolMessage):
            break
        if message.name != TOOL_SEARCH_NAME or not isinstance(message.artifact, dict):
            continue
        for name in message.artifact.get("tool_references", []):
            if name not in found:
                found.append(name)
    return found
