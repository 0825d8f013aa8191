"""Tool executor — dispatch the tool calls of the last AI message.

Calls run concurrently; each failure is contained in its own error
ToolMessage. Hand-off outcomes (:class:`RouteTo`) are coalesced into a single
``Command(graph=Command.PARENT)`` so the parent graph sees one routing
decision per batch.
"""

import asyncio
import inspect
import json
from typing import Any, Callable, Iterable, Sequence

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.runnables.config import merge_configs
from langchain_core.tools import BaseTool
from langgraph.errors import GraphBubbleUp
from langgraph.graph import END
from langgraph.types import Command
from loguru import logger

from graphcrew.agent.tools.handoff import RouteTo
from graphcrew.core.errors import InvalidToolInput, ToolNotFound
from graphcrew.core.truncation import max_tool_result_chars as default_max_chars
from graphcrew.core.truncation import truncate_tool_result_content

SERVER_TOOL_PREFIX = "srvtoolu_"
TOOLS_NODE = "tools"

ErrorHandler = Callable[[dict[str, Any], dict[str, Any]], Any]
RuntimeToolLoader = Callable[[list[dict[str, Any]]], Sequence[BaseTool]]


def error_tool_message(error: BaseException, call: dict[str, Any]) -> ToolMessage:
    return ToolMessage(
        content=f"Error: {error}\n Please fix your mistakes.",
        name=call["name"],
        tool_call_id=call.get("id") or "",
        status="error",
    )


def _split_input(input: Any) -> tuple[list[BaseMessage], bool]:
    """Return (messages, is_list_input)."""
    if isinstance(input, list):
        return input, True
    if isinstance(input, dict) and isinstance(input.get("messages"), list):
        return input["messages"], False
    raise InvalidToolInput(f"Unsupported tool executor input: {type(input).__name__}")


def answered_tool_call_ids(messages: Iterable[BaseMessage]) -> set[str]:
    return {m.tool_call_id for m in messages if isinstance(m, ToolMessage)}


class ToolExecutor:
    """Runs tool calls for one agent.

    Parameters
    ----------
    tools : list[BaseTool]
        Tools bound for this agent.
    tool_map : dict, optional
        Name → tool override (defaults to ``tools`` by name).
    handle_tool_errors : bool
        Contain tool failures as error ToolMessages instead of raising.
    error_handler : callable, optional
        ``(data, metadata)`` called on each tool failure; may be async.
        Its own failures are logged and swallowed.
    tool_call_step_ids : dict[str, str], optional
        Tool call id → step id, passed to tools as call metadata.
    load_runtime_tools : callable, optional
        ``tool_calls -> tools``; replaces the tool set for each call.
    max_tool_result_chars : int, optional
        Results above this are truncated at ingestion.
    """

    def __init__(
        self,
        tools: Sequence[BaseTool],
        tool_map: dict[str, BaseTool] | None = None,
        handle_tool_errors: bool = True,
        error_handler: ErrorHandler | None = None,
        tool_call_step_ids: dict[str, str] | None = None,
        load_runtime_tools: RuntimeToolLoader | None = None,
        max_tool_result_chars: int | None = None,
    ) -> None:
        self.tools = list(tools)
        self.tool_map = tool_map if tool_map is not None else {t.name: t for t in self.tools}
        self.handle_tool_errors = handle_tool_errors
        self.error_handler = error_handler
        self.tool_call_step_ids = tool_call_step_ids if tool_call_step_ids is not None else {}
        self.load_runtime_tools = load_runtime_tools
        self.max_tool_result_chars = max_tool_result_chars or default_max_chars()
        self._usage: dict[str, int] = {}

    def get_tool_usage_counts(self) -> dict[str, int]:
        """Snapshot of per-tool invocation counts."""
        return dict(self._usage)

    async def run(self, input: Any, config: RunnableConfig = None) -> Any:
        """Execute pending tool calls of the last message in ``input``.

        ``input`` is a message list or a ``{"messages": [...]}`` state.

        Raises
        ------
        InvalidToolInput
            Unrecognised input shape or last message is not an AI message.
        """
        messages, is_list = _split_input(input)
        if not messages or not isinstance(messages[-1], AIMessage):
            raise InvalidToolInput("ToolExecutor only accepts AIMessages as input.")
        message = messages[-1]

        if self.load_runtime_tools is not None:
            self.tools = list(self.load_runtime_tools(list(message.tool_calls)))
            self.tool_map = {t.name: t for t in self.tools}

        answered = answered_tool_call_ids(messages)
        pending = [
            call for call in message.tool_calls
            if call.get("id") not in answered
            and not (call.get("id") or "").startswith(SERVER_TOOL_PREFIX)
        ]
        skipped = len(message.tool_calls) - len(pending)
        if skipped:
            logger.debug(f"Skipping {skipped} answered or server-side tool calls")

        outputs = await asyncio.gather(*(self._run_one(call, config) for call in pending))

        if not any(isinstance(o, (RouteTo, Command)) for o in outputs):
            return outputs if is_list else {"messages": outputs}
        return self._coalesce(messages, outputs, is_list)

    async def _run_one(self, call: dict[str, Any], config: RunnableConfig | None) -> Any:
        try:
            tool = self.tool_map.get(call["name"])
            if tool is None:
                raise ToolNotFound(call["name"])
            turn = self._usage.get(call["name"], 0)
            self._usage[call["name"]] = turn + 1

            call_config = merge_configs(
                config,
                {"metadata": {"step_id": self.tool_call_step_ids.get(call.get("id")), "turn": turn}},
            )
            logger.debug(f"Executing tool: {call['name']} (turn {turn})")
            output = await tool.ainvoke(
                {"type": "tool_call", "id": call.get("id"), "name": call["name"], "args": call["args"]},
                call_config,
            )
            return self._to_outcome(output, call, tool.name)
        except GraphBubbleUp:
            raise
        except Exception as e:
            if not self.handle_tool_errors:
                raise
            logger.error(f"Tool error: {call['name']} → {e}")
            await self._report_error(e, call, config)
            return error_tool_message(e, call)

    def _to_outcome(self, output: Any, call: dict[str, Any], name: str) -> Any:
        if isinstance(output, (RouteTo, Command)):
            return output
        if isinstance(output, ToolMessage):
            content = output.content
            if isinstance(content, list):
                # UI-only items are not part of the tool result the model sees
                content = [
                    item for item in content
                    if isinstance(item, str) or "metadata" not in item
                ]
            if isinstance(content, str) and len(content) > self.max_tool_result_chars:
                logger.debug(f"Truncating {name} result: {len(content)} chars")
                content = truncate_tool_result_content(content, self.max_tool_result_chars)
            if content is not output.content:
                output = output.model_copy(update={"content": content})
            return output
        content = output if isinstance(output, str) else json.dumps(output, default=str)
        if len(content) > self.max_tool_result_chars:
            content = truncate_tool_result_content(content, self.max_tool_result_chars)
        return ToolMessage(content=content, name=name, tool_call_id=call.get("id") or "")

    async def _report_error(
        self, error: Exception, call: dict[str, Any], config: RunnableConfig | None
    ) -> None:
        if self.error_handler is None:
            return
        data = {"error": error, "id": call.get("id"), "name": call["name"], "input": call["args"]}
        try:
            result = self.error_handler(data, (config or {}).get("metadata", {}))
            if inspect.isawaitable(result):
                await result
        except Exception as handler_error:
            logger.warning(f"Tool error handler failed for {call['name']}: {handler_error}")

    @staticmethod
    def _coalesce(messages: list[BaseMessage], outputs: list[Any], is_list: bool) -> list[Any]:
        """Ordinary batches plus one parent Command with every route target."""
        batches: list[Any] = []
        commands: list[Command] = []
        targets: list[str] = []
        results: list[BaseMessage] = []
        for output in outputs:
            if isinstance(output, RouteTo):
                if output.agent not in targets:
                    targets.append(output.agent)
                results.extend(output.messages)
            elif isinstance(output, Command):
                commands.append(output)
            else:
                results.append(output)
                batches.append([output] if is_list else {"messages": [output]})

        if targets:
            logger.debug(f"Hand-off to {targets}")
            commands.append(
                Command(graph=Command.PARENT, goto=targets, update={"messages": [*messages, *results]})
            )
        return [*batches, *commands]


def tools_condition(state: list[BaseMessage] | dict[str, Any], invoked_tool_ids: set[str] | None = None) -> str:
    """Route to the tools node only when the last AI message has unanswered calls."""
    messages = state if isinstance(state, list) else state["messages"]
    message = messages[-1]
    calls = getattr(message, "tool_calls", None) or []
    if not calls:
        return END
    invoked = (invoked_tool_ids or set()) | answered_tool_call_ids(messages)
    if all(c.get("id") in invoked for c in calls):
        return END
    return TOOLS_NODE
