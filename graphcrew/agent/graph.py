"""LangGraph StateGraph — compile single- and multi-agent graphs."""

from __future__ import annotations

from typing import Mapping, Sequence

from langchain_core.tools import BaseTool
from langgraph.graph import END, START, StateGraph

from graphcrew.agent.context import AgentContext
from graphcrew.agent.nodes import make_nodes, should_continue
from graphcrew.agent.state import AgentState
from graphcrew.agent.tools.executor import TOOLS_NODE
from graphcrew.agent.tools.handoff import create_handoff_tool
from graphcrew.core.config.schema import Config, ExecutionConfig
from graphcrew.core.providers.base import BaseLLMProvider

AGENT_NODE = "agent"


def create_graph(
    ctx: AgentContext,
    provider: BaseLLMProvider,
    execution: ExecutionConfig | None = None,
    error_handler=None,
):
    """
    Build and compile one agent's graph.

    Graph flow:
        START → agent ⇄ tools → END
    """
    nodes = make_nodes(ctx, provider, execution, error_handler)

    graph = StateGraph(AgentState)
    graph.add_node(AGENT_NODE, nodes["agent"])
    graph.add_node(TOOLS_NODE, nodes["tools"])

    graph.add_edge(START, AGENT_NODE)
    graph.add_conditional_edges(AGENT_NODE, should_continue, {TOOLS_NODE: TOOLS_NODE, END: END})
    graph.add_edge(TOOLS_NODE, AGENT_NODE)
    return graph.compile(name=ctx.agent_id)


def create_multi_agent_graph(
    contexts: Sequence[AgentContext],
    providers: BaseLLMProvider | Mapping[str, BaseLLMProvider],
    handoffs: Mapping[str, Sequence[str]],
    start_agent: str | None = None,
    execution: ExecutionConfig | None = None,
    error_handler=None,
):
    """
    Compile each agent as a subgraph under one parent graph.

    An agent transfers control with its ``transfer_to_<agent>`` tools; the
    tool executor turns those into ``Command(graph=Command.PARENT)``, so the
    parent moves to the target node with the merged log.
    """
    if not contexts:
        raise ValueError("create_multi_agent_graph needs at least one agent")
    known = {ctx.agent_id for ctx in contexts}

    parent = StateGraph(AgentState)
    for ctx in contexts:
        targets = [t for t in handoffs.get(ctx.agent_id, []) if t != ctx.agent_id]
        unknown = set(targets) - known
        if unknown:
            raise ValueError(f"Agent '{ctx.agent_id}' hands off to unknown agents: {sorted(unknown)}")

        ctx.add_tools([create_handoff_tool(target) for target in targets])

        provider = providers[ctx.agent_id] if isinstance(providers, Mapping) else providers
        subgraph = create_graph(ctx, provider, execution, error_handler)
        parent.add_node(ctx.agent_id, subgraph, destinations=tuple(targets))

    parent.add_edge(START, start_agent or contexts[0].agent_id)
    return parent.compile()


def create_crew(
    config: Config,
    provider: BaseLLMProvider | Mapping[str, BaseLLMProvider],
    tools: Sequence[BaseTool] = (),
    token_counter=None,
    error_handler=None,
):
    """Build contexts from ``config.agents`` and compile the matching graph.

    Returns ``(graph, contexts)``; contexts are keyed by agent id.
    """
    if not config.agents:
        raise ValueError("No agents configured")
    settings = config.pruning.resolve()
    contexts = {
        agent.agent_id: AgentContext.from_config(
            agent,
            tools,
            token_counter=token_counter,
            pruning_settings=settings,
            execution=config.execution,
            summarization=config.summarization,
        )
        for agent in config.agents
    }
    for agent in config.agents:
        api_base = config.get_api_base(agent.model)
        if api_base:
            contexts[agent.agent_id].client_options["api_base"] = api_base

    if len(config.agents) == 1:
        agent = config.agents[0]
        single = provider[agent.agent_id] if isinstance(provider, Mapping) else provider
        graph = create_graph(contexts[agent.agent_id], single, config.execution, error_handler)
    else:
        graph = create_multi_agent_graph(
            list(contexts.values()),
            provider,
            {a.agent_id: a.handoffs for a in config.agents},
            execution=config.execution,
            error_handler=error_handler,
        )
    return graph.with_config(recursion_limit=config.execution.recursion_limit), contexts
