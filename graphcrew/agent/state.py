"""AgentState — LangGraph state definition."""

from __future__ import annotations

from typing import Annotated, TypedDict

from langchain_core.messages import AnyMessage

from graphcrew.messages.reducer import merge_messages


class AgentState(TypedDict):
    """
    Shared conversation log.

    ``messages`` uses :func:`merge_messages`: same id overwrites in place,
    ``RemoveMessage`` deletes, a remove-all marker resets the log.
    """

    messages: Annotated[list[AnyMessage], merge_messages]
