"""CrewRunner — per-run entry point over a compiled crew graph."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from langchain_core.messages import BaseMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool
from loguru import logger

from graphcrew.agent.context import AgentContext
from graphcrew.agent.graph import create_crew
from graphcrew.core.config.schema import Config
from graphcrew.core.providers.base import BaseLLMProvider


class CrewRunner:
    """
    Runs a compiled graph against fresh turn state.

    Contexts outlive a single run (tools, instructions, durable summary),
    but their token map, usage, step ids and overflow counter describe one
    conversation log. They are reset before every run so a new log is never
    measured with a previous one's numbers.

    Flow:
        1. Reset every agent context
        2. graph.ainvoke(messages)
        3. Return the resulting message log
    """

    def __init__(self, graph: Any, contexts: Mapping[str, AgentContext] | Sequence[AgentContext]):
        self.graph = graph
        if isinstance(contexts, Mapping):
            self.contexts = dict(contexts)
        else:
            self.contexts = {ctx.agent_id: ctx for ctx in contexts}

    @classmethod
    def from_config(
        cls,
        config: Config,
        provider: BaseLLMProvider | Mapping[str, BaseLLMProvider],
        tools: Sequence[BaseTool] = (),
        token_counter=None,
        error_handler=None,
    ) -> CrewRunner:
        graph, contexts = create_crew(
            config, provider, tools, token_counter=token_counter, error_handler=error_handler
        )
        return cls(graph, contexts)

    def reset(self) -> None:
        for ctx in self.contexts.values():
            ctx.reset()

    async def run(self, messages: Sequence[BaseMessage], config: RunnableConfig | None = None) -> list[BaseMessage]:
        """Run the graph on ``messages`` and return the full resulting log.

        Parameters
        ----------
        messages : Sequence[BaseMessage]
            Conversation so far, ending with the new input.
        config : RunnableConfig, optional
            Passed through to ``graph.ainvoke``.

        Returns
        -------
        list[BaseMessage]
            Input messages followed by everything the run appended.
        """
        self.reset()
        logger.debug(f"Crew run: {len(messages)} messages, agents={list(self.contexts)}")
        state = await self.graph.ainvoke({"messages": list(messages)}, config)
        result = list(state["messages"])
        usage = {a: (ctx.current_usage or {}).get("total_tokens", 0) for a, ctx in self.contexts.items()}
        logger.info(f"Crew run finished: {len(result) - len(messages)} new messages, usage={usage}")
        return result
