"""Tool system — tool definitions and the per-agent tool registry."""

from __future__ import annotations

from typing import Any, Iterable, Literal

from langchain_core.tools import BaseTool
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, Field

ToolCaller = Literal["direct", "code_execution"]


class ToolDefinition(BaseModel):
    """Registry entry describing how a tool may be bound and called."""

    name: str
    description: str = ""
    parameters_schema: dict[str, Any] = Field(default_factory=dict)
    defer_loading: bool = False
    allowed_callers: list[ToolCaller] = Field(default_factory=lambda: ["direct"])

    @property
    def directly_callable(self) -> bool:
        return "direct" in self.allowed_callers

    @classmethod
    def from_tool(cls, tool: BaseTool, *, defer_loading: bool = False) -> ToolDefinition:
        schema = convert_to_openai_tool(tool)["function"].get("parameters", {})
        return cls(
            name=tool.name,
            description=tool.description or "",
            parameters_schema=schema,
            defer_loading=defer_loading,
        )


ToolRegistry = dict[str, ToolDefinition]


def build_tool_registry(
    tools: Iterable[BaseTool],
    deferred: Iterable[str] = (),
) -> ToolRegistry:
    """Registry for ``tools``, marking names in ``deferred`` as deferred."""
    deferred_names = set(deferred)
    return {
        t.name: ToolDefinition.from_tool(t, defer_loading=t.name in deferred_names)
        for t in tools
    }


def select_tools(tools: Iterable[BaseTool], names: list[str]) -> list[BaseTool]:
    """Filter tools by name; ``"*"`` selects everything."""
    if "*" in names:
        return list(tools)
    wanted = set(names)
    return [t for t in tools if t.name in wanted]


def tool_schemas(tools: Iterable[BaseTool]) -> list[dict[str, Any]]:
    """OpenAI function-format schemas for binding."""
    return [convert_to_openai_tool(t) for t in tools]


__all__ = [
    "ToolDefinition",
    "ToolRegistry",
    "build_tool_registry",
    "select_tools",
    "tool_schemas",
]
