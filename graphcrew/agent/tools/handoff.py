"""Hand-off tools — transfer control to another agent in the crew."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated

from langchain_core.messages import BaseMessage, ToolMessage
from langchain_core.messages.tool import ToolOutputMixin
from langchain_core.tools import BaseTool, InjectedToolCallId, tool

HANDOFF_PREFIX = "transfer_to_"


@dataclass
class RouteTo(ToolOutputMixin):
    """Tool outcome asking the parent graph to continue at ``agent``.

    ``messages`` are appended to the shared log before the target runs. The
    tool executor coalesces every RouteTo in a batch into one parent Command.
    """

    agent: str
    messages: list[BaseMessage] = field(default_factory=list)


def handoff_tool_name(agent_name: str) -> str:
    return f"{HANDOFF_PREFIX}{agent_name}"


def create_handoff_tool(agent_name: str, description: str | None = None) -> BaseTool:
    """Create ``transfer_to_<agent_name>``."""
    name = handoff_tool_name(agent_name)

    @tool(name, description=description or f"Transfer control to the {agent_name} agent")
    def handoff(tool_call_id: Annotated[str, InjectedToolCallId]) -> RouteTo:
        message = ToolMessage(
            content=f"Successfully transferred to {agent_name}",
            name=name,
            tool_call_id=tool_call_id,
        )
        return RouteTo(agent=agent_name, messages=[message])

    return handoff
