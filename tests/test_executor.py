"""Tests for the tool executor and hand-off routing."""

from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import tool
from langgraph.errors import GraphInterrupt
from langgraph.graph import END
from langgraph.types import Command

from graphcrew.agent.tools.executor import ToolExecutor, tools_condition
from graphcrew.agent.tools.handoff import RouteTo, create_handoff_tool
from graphcrew.core.errors import InvalidToolInput
from graphcrew.messages.reducer import merge_messages


@tool
async def add(a: int, b: int) -> int:
    """Add two numbers."""
    return a + b


@tool
def boom() -> str:
    """Always fails."""
    raise ValueError("kaput")


@tool
def echo(text: str) -> str:
    """Echo text back."""
    return text


@tool
def search(query: str = "") -> str:
    """Search the knowledge base."""
    return "42"


@tool
def whoami(config: RunnableConfig) -> str:
    """Report call metadata."""
    meta = config.get("metadata", {})
    return f"{meta.get('step_id')}:{meta.get('turn')}"


@tool
def ask_user() -> str:
    """Pause the graph for human input."""
    raise GraphInterrupt(())


@tool
def dump() -> str:
    """Return a lot of text."""
    return "x" * 5000


@tool
def widget() -> list:
    """Return content plus a UI-only item."""
    return [{"type": "text", "text": "ok"}, {"type": "text", "text": "ui", "metadata": {"kind": "card"}}]


def _ai(*calls):
    return AIMessage(
        content="",
        id="ai1",
        tool_calls=[{"id": cid, "name": name, "args": args} for cid, name, args in calls],
    )


@pytest.fixture
def human():
    return HumanMessage(content="hi", id="h1")


# ── Dispatch ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_failure_is_isolated(human):
    executor = ToolExecutor([add, boom, echo])
    ai = _ai(("c1", "add", {"a": 1, "b": 2}), ("c2", "boom", {}), ("c3", "echo", {"text": "hi"}))
    out = await executor.run({"messages": [human, ai]})

    msgs = out["messages"]
    assert [m.tool_call_id for m in msgs] == ["c1", "c2", "c3"]
    assert msgs[0].content == "3"
    assert msgs[1].status == "error"
    assert msgs[1].content.startswith("Error: kaput")
    assert "Please fix your mistakes." in msgs[1].content
    assert msgs[2].content == "hi"
    assert msgs[2].status == "success"


@pytest.mark.asyncio
async def test_list_input_returns_list(human):
    executor = ToolExecutor([echo])
    out = await executor.run([human, _ai(("c1", "echo", {"text": "yo"}))])
    assert isinstance(out, list)
    assert out[0].content == "yo"


@pytest.mark.asyncio
async def test_unknown_tool(human):
    executor = ToolExecutor([echo])
    out = await executor.run([human, _ai(("c1", "nope", {}))])
    assert out[0].status == "error"
    assert 'Tool "nope" not found.' in out[0].content


@pytest.mark.asyncio
async def test_errors_raise_when_not_handled(human):
    executor = ToolExecutor([boom], handle_tool_errors=False)
    with pytest.raises(ValueError, match="kaput"):
        await executor.run([human, _ai(("c1", "boom", {}))])


@pytest.mark.asyncio
async def test_graph_interrupt_propagates_even_when_errors_handled(human):
    handler = MagicMock()
    executor = ToolExecutor([ask_user, echo], handle_tool_errors=True, error_handler=handler)
    with pytest.raises(GraphInterrupt):
        await executor.run([human, _ai(("c1", "ask_user", {}), ("c2", "echo", {"text": "hi"}))])
    handler.assert_not_called()


@pytest.mark.asyncio
async def test_error_handler_called_and_contained(human):
    handler = MagicMock()
    executor = ToolExecutor([boom], error_handler=handler)
    out = await executor.run([human, _ai(("c1", "boom", {}))], {"metadata": {"run": "r1"}})
    data, metadata = handler.call_args.args
    assert data["id"] == "c1"
    assert data["name"] == "boom"
    assert isinstance(data["error"], ValueError)
    assert metadata["run"] == "r1"
    assert out[0].status == "error"


@pytest.mark.asyncio
async def test_failing_error_handler_is_swallowed(human):
    def handler(data, metadata):
        raise RuntimeError("handler broke")

    executor = ToolExecutor([boom], error_handler=handler)
    out = await executor.run([human, _ai(("c1", "boom", {}))])
    assert out[0].content.startswith("Error: kaput")


@pytest.mark.asyncio
async def test_answered_and_server_calls_skipped(human):
    executor = ToolExecutor([echo])
    ai = _ai(("c1", "echo", {"text": "a"}), ("c2", "echo", {"text": "b"}), ("srvtoolu_1", "web_search", {}))
    done = ToolMessage(content="a", tool_call_id="c1")
    out = await executor.run([human, ai, done, ai])
    assert [m.tool_call_id for m in out] == ["c2"]
    assert executor.get_tool_usage_counts() == {"echo": 1}


@pytest.mark.asyncio
async def test_call_metadata_and_usage_counts(human):
    executor = ToolExecutor([whoami], tool_call_step_ids={"w1": "step-1"})
    out = await executor.run([human, _ai(("w1", "whoami", {}), ("w2", "whoami", {}))])
    assert [m.content for m in out] == ["step-1:0", "None:1"]
    assert executor.get_tool_usage_counts() == {"whoami": 2}


@pytest.mark.asyncio
async def test_step_ids_read_from_shared_map(human):
    step_ids = {}
    executor = ToolExecutor([whoami], tool_call_step_ids=step_ids)
    step_ids["w1"] = "step-late"
    out = await executor.run([human, _ai(("w1", "whoami", {}))])
    assert out[0].content == "step-late:0"


@pytest.mark.asyncio
async def test_runtime_tool_loader(human):
    loader = MagicMock(return_value=[echo])
    executor = ToolExecutor([], load_runtime_tools=loader)
    out = await executor.run([human, _ai(("c1", "echo", {"text": "late"}))])
    assert out[0].content == "late"
    assert loader.call_args.args[0][0]["name"] == "echo"


@pytest.mark.asyncio
async def test_large_results_truncated_at_ingestion(human):
    executor = ToolExecutor([dump], max_tool_result_chars=1000)
    out = await executor.run([human, _ai(("c1", "dump", {}))])
    assert len(out[0].content) <= 1000
    assert "truncated" in out[0].content


@pytest.mark.asyncio
async def test_ui_metadata_items_filtered(human):
    executor = ToolExecutor([widget])
    out = await executor.run([human, _ai(("c1", "widget", {}))])
    assert out[0].content == [{"type": "text", "text": "ok"}]


# ── Invalid input ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_last_message_must_be_ai(human):
    with pytest.raises(InvalidToolInput):
        await ToolExecutor([echo]).run([human])


@pytest.mark.asyncio
async def test_unknown_input_shape():
    with pytest.raises(InvalidToolInput):
        await ToolExecutor([echo]).run("not a state")


# ── Scenario ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_search_scenario_log(human):
    """hi → search tool call → "42" yields a three-message log."""
    log = merge_messages([], [human])
    ai = AIMessage(content="", tool_calls=[{"id": "t1", "name": "search", "args": {}}])
    log = merge_messages(log, [ai])
    out = await ToolExecutor([search]).run({"messages": log})
    log = merge_messages(log, out["messages"])

    assert [m.type for m in log] == ["human", "ai", "tool"]
    assert log[0].content == "hi"
    assert [tc["id"] for tc in log[1].tool_calls] == ["t1"]
    assert log[2].tool_call_id == "t1"
    assert log[2].content == "42"


# ── Hand-off ──────────────────────────────────────────────


def test_handoff_tool_shape():
    handoff = create_handoff_tool("billing")
    assert handoff.name == "transfer_to_billing"
    assert "billing" in handoff.description


@pytest.mark.asyncio
async def test_handoff_tool_returns_route():
    handoff = create_handoff_tool("billing", description="Send billing questions over.")
    route = await handoff.ainvoke({"type": "tool_call", "id": "h1", "name": handoff.name, "args": {}})
    assert isinstance(route, RouteTo)
    assert route.agent == "billing"
    assert route.messages[0].tool_call_id == "h1"
    assert route.messages[0].content == "Successfully transferred to billing"


@pytest.mark.asyncio
async def test_handoff_coalesced_into_parent_command(human):
    to_billing = create_handoff_tool("billing")
    to_support = create_handoff_tool("support")
    executor = ToolExecutor([echo, to_billing, to_support])
    ai = _ai(
        ("c1", "echo", {"text": "noted"}),
        ("h1", "transfer_to_billing", {}),
        ("h2", "transfer_to_support", {}),
    )
    out = await executor.run({"messages": [human, ai]})

    assert isinstance(out, list)
    batches, commands = out[:-1], [o for o in out if isinstance(o, Command)]
    assert len(commands) == 1
    cmd = commands[0]
    assert cmd.graph == Command.PARENT
    assert cmd.goto == ["billing", "support"]
    update = cmd.update["messages"]
    assert update[:2] == [human, ai]
    assert [m.tool_call_id for m in update[2:]] == ["c1", "h1", "h2"]
    assert batches == [{"messages": [update[2]]}]


# ── tools_condition ───────────────────────────────────────


def test_tools_condition(human):
    ai = _ai(("c1", "echo", {"text": "x"}))
    assert tools_condition({"messages": [human, ai]}) == "tools"
    assert tools_condition([human, AIMessage(content="done")]) == END
    assert tools_condition([human, ai], invoked_tool_ids={"c1"}) == END
