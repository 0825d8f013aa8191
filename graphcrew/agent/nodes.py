"""Graph nodes — agent (model call) and tools."""

# LangGraph inspects the `config` annotation at add_node; keep it a real type.

from typing import Any, Sequence

from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.runnables import RunnableConfig
from loguru import logger

from graphcrew.agent.context import AgentContext
from graphcrew.agent.state import AgentState
from graphcrew.agent.summary import should_trigger_summarization, summarize_messages
from graphcrew.agent.tools import tool_schemas
from graphcrew.agent.tools.executor import ToolExecutor, tools_condition
from graphcrew.agent.tools.search import extract_tool_discoveries
from graphcrew.core.config.schema import ExecutionConfig
from graphcrew.core.errors import EmptyContextError, ProviderError, classify_overflow, extract_error_message
from graphcrew.core.providers.base import BaseLLMProvider
from graphcrew.core.truncation import max_tool_result_chars, truncate_oversized_content
from graphcrew.messages.cache import apply_prompt_cache
from graphcrew.messages.prune import PruneOutput

MIN_RECOVERY_CHARS = 1000


def make_nodes(
    ctx: AgentContext,
    provider: BaseLLMProvider,
    execution: ExecutionConfig | None = None,
    error_handler=None,
):
    """
    Create node functions closed over the agent context and provider.

    Returns dict of {node_name: callable} for graph registration.
    """
    execution = execution or ExecutionConfig()
    executor = ToolExecutor(
        ctx.tools,
        handle_tool_errors=execution.handle_tool_errors,
        error_handler=error_handler,
        tool_call_step_ids=ctx.tool_call_step_ids,
        max_tool_result_chars=max_tool_result_chars(ctx.max_context_tokens),
    )

    async def agent(state: AgentState, config: RunnableConfig) -> dict[str, Any]:
        """Prune the log, call the model, recover once from context overflow."""
        messages = state["messages"]

        discovered = extract_tool_discoveries(messages)
        if discovered:
            ctx.mark_tools_as_discovered(discovered)
        await ctx.ensure_token_calculation()

        pruned = ctx.prune(messages)
        if ctx.summarization is not None and ctx.summarization.enabled:
            pruned = await _summarize_cut_off(messages, pruned)
        if not pruned.context:
            raise EmptyContextError(
                f"No messages left for agent '{ctx.agent_id}' after pruning. "
                f"{ctx.format_token_budget_breakdown()}"
            )
        if len(pruned.context) < len(messages):
            logger.debug(f"[{ctx.agent_id}] pruned {len(messages)} → {len(pruned.context)} messages")

        system = ctx.build_system_message()
        payload: list[BaseMessage] = [system, *pruned.context] if system else list(pruned.context)
        tools = tool_schemas(ctx.get_tools_for_binding()) or None

        ai_message = await _call_with_recovery(payload, tools)
        ctx.update_usage(ai_message.usage_metadata)
        if ai_message.name is None:
            ai_message = ai_message.model_copy(update={"name": ctx.agent_id})

        if ai_message.tool_calls:
            ctx.register_tool_call_steps(ai_message.tool_calls)
            names = [tc["name"] for tc in ai_message.tool_calls]
            logger.debug(f"[{ctx.agent_id}] LLM tool calls: {names}")
        else:
            snippet = ai_message.content[:80] if isinstance(ai_message.content, str) else "<blocks>"
            logger.debug(f"[{ctx.agent_id}] LLM response (no tools): {snippet!r}")
        return {"messages": [ai_message]}

    async def _summarize_cut_off(messages: Sequence[BaseMessage], pruned: PruneOutput) -> PruneOutput:
        """Fold newly cut-off messages into the summary, then prune again with it."""
        settings = ctx.summarization
        fresh = pruned.messages_to_refine[ctx.summarized_count:]
        if not should_trigger_summarization(
            settings.trigger,
            len(fresh),
            max_context_tokens=ctx.max_context_tokens,
            pre_prune_total_tokens=pruned.pre_prune_total_tokens,
            remaining_context_tokens=pruned.remaining_context_tokens,
        ):
            return pruned

        options = {k: v for k, v in ctx.client_options.items() if k != "max_tokens"}
        try:
            text = await summarize_messages(
                provider,
                settings.model or ctx.model,
                fresh,
                prior_summary=ctx.summary,
                prompt=settings.prompt,
                max_tokens=settings.max_tokens,
                **options,
            )
        except ProviderError as e:
            logger.error(f"[{ctx.agent_id}] summarization failed: {e}")
            return pruned
        if not text:
            logger.warning(f"[{ctx.agent_id}] summarization returned nothing, keeping previous summary")
            return pruned

        ctx.summarized_count = len(pruned.messages_to_refine)
        ctx.set_summary(text)
        logger.info(f"[{ctx.agent_id}] summarized {len(fresh)} messages ({ctx.summary_tokens} tokens)")
        return ctx.prune(messages)

    async def _call_with_recovery(payload: list[BaseMessage], tools: list[dict[str, Any]] | None) -> AIMessage:
        while True:
            # Cache markers go on last, after pruning and truncation
            outgoing = apply_prompt_cache(payload, ctx.provider) if ctx.prompt_cache else payload
            await ctx.wait_for_rate_limit()
            ctx.mark_stream_call()
            try:
                response = await provider.achat(outgoing, model=ctx.model, tools=tools, **ctx.client_options)
            except ProviderError as e:
                verdict = classify_overflow(extract_error_message(e))
                if not verdict.likely or not ctx.can_attempt_overflow_recovery(execution.max_overflow_retries):
                    raise
                ctx.record_overflow_recovery()
                max_chars = max(
                    MIN_RECOVERY_CHARS,
                    int(max_tool_result_chars(ctx.max_context_tokens) * 0.5 ** ctx.overflow_recoveries),
                )
                payload, truncated = truncate_oversized_content(payload, max_chars)
                if not truncated:
                    raise
                if verdict.definite:
                    logger.warning(f"[{ctx.agent_id}] context overflow, retrying with tool content ≤ {max_chars} chars")
                else:
                    logger.warning(
                        f"[{ctx.agent_id}] error looks like a context overflow (low confidence), "
                        f"retrying with tool content ≤ {max_chars} chars: {e}"
                    )
                logger.warning(ctx.format_token_budget_breakdown())
            else:
                ctx.reset_overflow_recovery()
                return response

    return {
        "agent": agent,
        "tools": executor.run,
        "executor": executor,
    }


def should_continue(state: AgentState) -> str:
    """Conditional edge: after agent, go to tools or end."""
    return tools_condition(state)
