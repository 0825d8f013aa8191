"""Tests for the LiteLLM provider."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from graphcrew.core.config import Config
from graphcrew.core.errors import ProviderError
from graphcrew.core.providers import litellm as provider_module
from graphcrew.core.providers.litellm import LiteLLMProvider, make_token_counter, message_to_dict, setup_provider


def _response(content="hello", tool_calls=None, cached=0):
    msg = SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = SimpleNamespace(finish_reason="stop", message=msg)
    usage = SimpleNamespace(
        prompt_tokens=10,
        completion_tokens=5,
        prompt_tokens_details=SimpleNamespace(cached_tokens=cached),
        cache_creation_input_tokens=0,
    )
    return SimpleNamespace(choices=[choice], usage=usage)


def _tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


# ── achat ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_achat_returns_ai_message():
    mock = AsyncMock(return_value=_response("hi there", cached=4))
    with patch.object(provider_module.litellm, "acompletion", mock):
        msg = await LiteLLMProvider().achat([HumanMessage(content="hi")], model="openai/gpt-4o", temperature=0.2)

    assert isinstance(msg, AIMessage)
    assert msg.content == "hi there"
    assert msg.usage_metadata["input_tokens"] == 10
    assert msg.usage_metadata["input_token_details"]["cache_read"] == 4
    kwargs = mock.call_args.kwargs
    assert kwargs["model"] == "openai/gpt-4o"
    assert kwargs["temperature"] == 0.2
    assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
    assert "tools" not in kwargs


@pytest.mark.asyncio
async def test_achat_parses_tool_calls():
    calls = [_tool_call("c1", "lookup", '{"query": "x"}'), _tool_call("c2", "broken", "{not json")]
    mock = AsyncMock(return_value=_response(content=None, tool_calls=calls))
    tools = [{"type": "function", "function": {"name": "lookup", "parameters": {}}}]
    with patch.object(provider_module.litellm, "acompletion", mock):
        msg = await LiteLLMProvider().achat([HumanMessage(content="q")], model="m", tools=tools)

    assert msg.content == ""
    assert msg.tool_calls[0]["args"] == {"query": "x"}
    assert msg.tool_calls[1]["args"] == {"raw": "{not json"}
    assert mock.call_args.kwargs["tool_choice"] == "auto"


@pytest.mark.asyncio
async def test_achat_wraps_errors():
    error = RuntimeError("prompt is too long")
    error.status_code = 400
    with patch.object(provider_module.litellm, "acompletion", AsyncMock(side_effect=error)):
        with pytest.raises(ProviderError) as exc_info:
            await LiteLLMProvider("anthropic").achat([HumanMessage(content="q")], model="m")

    assert str(exc_info.value) == "prompt is too long"
    assert exc_info.value.status_code == 400
    assert exc_info.value.provider == "anthropic"
    assert exc_info.value.__cause__ is error


# ── Message conversion ────────────────────────────────────


def test_message_to_dict_roles():
    assert message_to_dict(SystemMessage(content="s")) == {"role": "system", "content": "s"}
    assert message_to_dict(ToolMessage(content="r", tool_call_id="t1")) == {
        "role": "tool", "tool_call_id": "t1", "content": "r",
    }


def test_message_to_dict_keeps_cache_blocks():
    blocks = [{"type": "text", "text": "hi", "cache_control": {"type": "ephemeral"}}]
    assert message_to_dict(HumanMessage(content=blocks))["content"] == blocks


def test_message_to_dict_ai_tool_calls():
    ai = AIMessage(
        content=[
            {"type": "text", "text": "calling"},
            {"type": "tool_use", "id": "t1", "name": "lookup", "input": {"query": "x"}},
        ],
        tool_calls=[{"id": "t1", "name": "lookup", "args": {"query": "x"}}],
    )
    d = message_to_dict(ai)
    assert d["role"] == "assistant"
    assert d["content"] == [{"type": "text", "text": "calling"}]
    assert d["tool_calls"][0]["function"]["name"] == "lookup"
    assert json.loads(d["tool_calls"][0]["function"]["arguments"]) == {"query": "x"}


# ── Token counting and setup ──────────────────────────────


def test_make_token_counter():
    with patch.object(provider_module.litellm, "token_counter", return_value=7) as counter:
        count = make_token_counter("openai/gpt-4o")
        assert count(HumanMessage(content="hello")) == 7
    assert counter.call_args.kwargs == {
        "model": "openai/gpt-4o",
        "messages": [{"role": "user", "content": "hello"}],
    }


def test_setup_provider_sets_missing_keys(monkeypatch):
    # setenv first so teardown restores the original environment
    monkeypatch.setenv("GROQ_API_KEY", "placeholder")
    monkeypatch.delenv("GROQ_API_KEY")
    monkeypatch.setenv("OPENAI_API_KEY", "already-set")
    setup_provider(Config(providers={"groq": {"api_key": "gsk"}, "openai": {"api_key": "sk-new"}}))
    assert provider_module.os.environ["GROQ_API_KEY"] == "gsk"
    assert provider_module.os.environ["OPENAI_API_KEY"] == "already-set"
