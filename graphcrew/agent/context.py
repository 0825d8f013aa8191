"""AgentContext — per-agent token budget, tool visibility and rate limiting."""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from langchain_core.messages import BaseMessage, SystemMessage
from langchain_core.tools import BaseTool
from langchain_core.utils.function_calling import convert_to_openai_tool
from loguru import logger

from graphcrew.agent.tools import ToolDefinition, ToolRegistry, build_tool_registry, select_tools
from graphcrew.agent.tools.search import make_tool_search_tool
from graphcrew.core.config.schema import AgentConfig, ExecutionConfig, SummarizationConfig
from graphcrew.core.providers.litellm import make_token_counter
from graphcrew.messages.prune import PruneOutput, calculate_total_tokens, make_prune_messages
from graphcrew.messages.pruning import ContextPruningSettings

TokenCounter = Callable[[BaseMessage], int]


@dataclass
class TokenBudgetBreakdown:
    instruction_tokens: int
    system_message_tokens: int
    tool_schema_tokens: int
    summary_tokens: int
    max_context_tokens: int | None
    available_for_messages: int | None


class AgentContext:
    """
    Mutable state of one agent across a run.

    Owns the token map, the discovered-tool set and the rate-limit timestamp;
    the model node and tool executor receive it by reference. Token counts
    for the system prompt and tool schemas are computed asynchronously; await
    :meth:`ensure_token_calculation` before trusting the breakdown.
    """

    def __init__(
        self,
        agent_id: str,
        provider: str,
        model: str,
        *,
        tools: Sequence[BaseTool] = (),
        tool_registry: ToolRegistry | None = None,
        instructions: str = "",
        additional_instructions: str = "",
        max_context_tokens: int | None = None,
        token_counter: TokenCounter | None = None,
        stream_buffer: float = 0.0,
        client_options: dict[str, Any] | None = None,
        prompt_cache: bool = False,
        pruning_settings: ContextPruningSettings | None = None,
        include_tool_schema_tokens: bool = True,
        include_summary_tokens: bool = True,
        summarization: SummarizationConfig | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.provider = provider
        self.model = model
        self.tools = list(tools)
        self.tool_registry: ToolRegistry = tool_registry if tool_registry is not None else {}
        self.instructions = instructions
        self.additional_instructions = additional_instructions
        self.max_context_tokens = max_context_tokens
        self.token_counter = token_counter
        self.stream_buffer = stream_buffer
        self.client_options = client_options or {}
        self.prompt_cache = prompt_cache
        self.pruning_settings = pruning_settings
        self.include_tool_schema_tokens = include_tool_schema_tokens
        self.include_summary_tokens = include_summary_tokens
        self.summarization = summarization

        self.instruction_tokens = 0
        self.tool_schema_tokens = 0
        self.token_calculation: asyncio.Task | None = None

        # Turn-scoped
        self.index_token_count_map: dict[int, int] = {}
        self.current_usage: dict[str, int] | None = None
        self.last_stream_call: float | None = None
        self.discovered_tool_names: set[str] = set()
        self.overflow_recoveries = 0
        self.tool_call_step_ids: dict[str, str] = {}
        self.summarized_count = 0  # cut-off messages already folded into the summary
        self._prune: Callable[..., PruneOutput] | None = None

        # Summary survives reset(); the durable copy is what reset restores
        self.summary: str | None = None
        self.summary_tokens = 0
        self._durable_summary: tuple[str, int] | None = None

    @classmethod
    def from_config(
        cls,
        agent: AgentConfig,
        tools: Sequence[BaseTool] = (),
        *,
        token_counter: TokenCounter | None = None,
        pruning_settings: ContextPruningSettings | None = None,
        execution: ExecutionConfig | None = None,
        summarization: SummarizationConfig | None = None,
    ) -> AgentContext:
        """Build a context from config and start token calculation when a loop is running."""
        execution = execution or ExecutionConfig()
        selected = select_tools(tools, agent.tools)
        ctx = cls(
            agent_id=agent.agent_id,
            provider=agent.provider,
            model=agent.model,
            tools=selected,
            tool_registry=build_tool_registry(selected, agent.deferred_tools),
            instructions=agent.instructions,
            additional_instructions=agent.additional_instructions,
            max_context_tokens=agent.max_context_tokens,
            token_counter=token_counter or make_token_counter(agent.model),
            stream_buffer=agent.stream_buffer,
            client_options={"temperature": agent.temperature, "max_tokens": agent.max_tokens},
            prompt_cache=agent.prompt_cache,
            pruning_settings=pruning_settings,
            include_tool_schema_tokens=execution.include_tool_schema_tokens,
            include_summary_tokens=execution.include_summary_tokens,
            summarization=summarization,
        )
        if agent.deferred_tools:
            search = make_tool_search_tool(lambda: ctx.tool_registry)
            ctx.tools.append(search)
            ctx.tool_registry[search.name] = ToolDefinition.from_tool(search)

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass  # deferred until ensure_token_calculation()
        else:
            ctx.start_token_calculation()
        return ctx

    # ── Token accounting ────────────────────────────────────

    def build_instructions(self) -> str:
        """System prompt text: instructions, additional instructions, summary."""
        parts = [self.instructions, self.additional_instructions]
        if self.summary:
            parts.append(f"## Conversation summary\n\n{self.summary}")
        return "\n\n".join(p for p in parts if p)

    def build_system_message(self) -> SystemMessage | None:
        text = self.build_instructions()
        return SystemMessage(content=text) if text else None

    async def calculate_instruction_tokens(self) -> None:
        """Count the system prompt and the JSON schema of every bound tool."""
        if self.token_counter is None:
            return
        text = "\n\n".join(p for p in (self.instructions, self.additional_instructions) if p)
        self.instruction_tokens = self.token_counter(SystemMessage(content=text)) if text else 0

        self.tool_schema_tokens = 0
        if self.include_tool_schema_tokens:
            for tool in self.get_tools_for_binding():
                schema = json.dumps(convert_to_openai_tool(tool))
                self.tool_schema_tokens += self.token_counter(SystemMessage(content=schema))
        logger.debug(
            f"[{self.agent_id}] instruction tokens={self.instruction_tokens}, "
            f"tool schema tokens={self.tool_schema_tokens}"
        )

    def start_token_calculation(self) -> asyncio.Task:
        self.token_calculation = asyncio.ensure_future(self.calculate_instruction_tokens())
        return self.token_calculation

    async def ensure_token_calculation(self) -> None:
        """Await the token calculation, starting it if it has not run yet."""
        if self.token_calculation is None:
            self.start_token_calculation()
        await self.token_calculation

    @property
    def total_instruction_tokens(self) -> int:
        """Tokens taken before any message: prompt + tool schemas + summary."""
        summary = self.summary_tokens if self.include_summary_tokens else 0
        return self.instruction_tokens + self.tool_schema_tokens + summary

    def get_token_budget_breakdown(self) -> TokenBudgetBreakdown:
        summary = self.summary_tokens if self.include_summary_tokens else 0
        available = None
        if self.max_context_tokens is not None:
            available = max(0, self.max_context_tokens - self.total_instruction_tokens)
        return TokenBudgetBreakdown(
            instruction_tokens=self.instruction_tokens,
            system_message_tokens=self.instruction_tokens + summary,
            tool_schema_tokens=self.tool_schema_tokens,
            summary_tokens=summary,
            max_context_tokens=self.max_context_tokens,
            available_for_messages=available,
        )

    def format_token_budget_breakdown(self) -> str:
        b = self.get_token_budget_breakdown()
        return (
            f"Token budget [{self.agent_id}]: max={b.max_context_tokens or 'unknown'}, "
            f"instructions={b.instruction_tokens}, tool schemas={b.tool_schema_tokens}, "
            f"summary={b.summary_tokens}, available={b.available_for_messages if b.available_for_messages is not None else 'unknown'}, "
            f"mapped messages={len(self.index_token_count_map)} ({sum(self.index_token_count_map.values())} tokens)"
        )

    def update_usage(self, usage: dict[str, Any] | None) -> None:
        if usage:
            self.current_usage = calculate_total_tokens(usage)

    # ── Summary ─────────────────────────────────────────────

    def set_summary(self, text: str | None, token_count: int | None = None) -> None:
        """Set the durable conversation summary (included in the system prompt)."""
        if not text:
            self.summary, self.summary_tokens, self._durable_summary = None, 0, None
            return
        if token_count is None:
            token_count = self.token_counter(SystemMessage(content=text)) if self.token_counter else 0
        self.summary, self.summary_tokens = text, token_count
        self._durable_summary = (text, token_count)

    # ── Pruning ─────────────────────────────────────────────

    def prune(self, messages: Sequence[BaseMessage], start_type: str | Sequence[str] | None = None) -> PruneOutput:
        """Fit ``messages`` into the budget left after instructions.

        Without a known window or token counter the log is returned as is.
        """
        if self.max_context_tokens is None or self.token_counter is None:
            return PruneOutput(context=list(messages), index_token_count_map=self.index_token_count_map)
        if self._prune is None:
            self._prune = make_prune_messages(
                max_tokens=self.max_context_tokens,
                token_counter=self.token_counter,
                index_token_count_map=self.index_token_count_map,
                pruning_settings=self.pruning_settings,
                get_instruction_tokens=lambda: self.total_instruction_tokens,
            )
        return self._prune(messages, start_type=start_type)

    # ── Tools ───────────────────────────────────────────────

    def get_tools_for_binding(self) -> list[BaseTool]:
        """Tools to bind for the next call.

        Unregistered tools are always bound. Registered ones need a direct
        caller and must be either non-deferred or discovered this run.
        """
        bound = []
        for tool in self.tools:
            definition = self.tool_registry.get(tool.name)
            if definition is None:
                bound.append(tool)
            elif definition.directly_callable and (
                not definition.defer_loading or tool.name in self.discovered_tool_names
            ):
                bound.append(tool)
        return bound

    def add_tools(self, tools: Sequence[BaseTool]) -> None:
        """Bind extra tools (e.g. hand-offs); unregistered, so always bound."""
        present = {t.name for t in self.tools}
        added = [t for t in tools if t.name not in present]
        if added:
            self.tools.extend(added)
            self.token_calculation = None

    def get_deferred_tool_registry(self) -> ToolRegistry:
        return {
            name: d for name, d in self.tool_registry.items()
            if d.defer_loading and name not in self.discovered_tool_names
        }

    def mark_tools_as_discovered(self, names: Sequence[str]) -> list[str]:
        """Record discovered tools. Returns the newly discovered names."""
        new = [n for n in names if n in self.tool_registry and n not in self.discovered_tool_names]
        if new:
            self.discovered_tool_names.update(new)
            # Bound tool schemas changed
            self.token_calculation = None
            logger.debug(f"[{self.agent_id}] discovered tools: {new}")
        return new

    # ── Rate limiting ───────────────────────────────────────

    def seconds_until_next_call(self) -> float:
        if not self.stream_buffer or self.last_stream_call is None:
            return 0.0
        elapsed = time.monotonic() - self.last_stream_call
        return max(0.0, self.stream_buffer - elapsed)

    async def wait_for_rate_limit(self) -> None:
        delay = self.seconds_until_next_call()
        if delay > 0:
            logger.debug(f"[{self.agent_id}] rate limit: waiting {delay:.2f}s")
            await asyncio.sleep(delay)

    def mark_stream_call(self) -> None:
        self.last_stream_call = time.monotonic()

    # ── Overflow recovery ───────────────────────────────────

    def can_attempt_overflow_recovery(self, max_retries: int = 1) -> bool:
        return self.overflow_recoveries < max_retries

    def record_overflow_recovery(self) -> None:
        self.overflow_recoveries += 1

    def reset_overflow_recovery(self) -> None:
        """Called after a successful model call; the next overflow gets its own retries."""
        self.overflow_recoveries = 0

    # ── Tool call steps ─────────────────────────────────────

    def register_tool_call_steps(self, tool_calls: Sequence[dict[str, Any]]) -> None:
        """Give every new tool call a step id; the tool executor passes it to the tool."""
        for call in tool_calls:
            if call.get("id") and call["id"] not in self.tool_call_step_ids:
                self.tool_call_step_ids[call["id"]] = f"step_{uuid.uuid4().hex[:16]}"

    # ── Lifecycle ───────────────────────────────────────────

    def reset(self) -> None:
        """Clear turn-scoped state; keep instruction counts and the durable summary."""
        self.index_token_count_map.clear()
        self.current_usage = None
        self.last_stream_call = None
        if self.discovered_tool_names:
            self.discovered_tool_names.clear()
            self.token_calculation = None
        self.overflow_recoveries = 0
        self.tool_call_step_ids.clear()
        self.summarized_count = 0
        self._prune = None
        if self._durable_summary is not None:
            self.summary, self.summary_tokens = self._durable_summary
        else:
            self.summary, self.summary_tokens = None, 0
