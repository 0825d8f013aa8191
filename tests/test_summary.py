"""Tests for graphcrew.agent.summary."""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from graphcrew.agent.summary import (
    DEFAULT_SUMMARIZATION_PROMPT,
    format_message_for_summary,
    format_messages_for_summarization,
    should_trigger_summarization,
    summarize_messages,
)
from graphcrew.core.config.schema import SummarizationTrigger
from graphcrew.core.errors import ProviderError
from graphcrew.core.providers.base import BaseLLMProvider


class ScriptedProvider(BaseLLMProvider):
    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    async def achat(self, messages, model, tools=None, temperature=0.7, max_tokens=4096, api_base=None, **kw):
        self.calls.append({"messages": list(messages), "model": model, "max_tokens": max_tokens})
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


# ── Trigger ───────────────────────────────────────────────


def test_nothing_to_refine_never_triggers():
    assert not should_trigger_summarization(None, 0)
    assert not should_trigger_summarization(SummarizationTrigger(type="messages_to_refine", value=0), 0)


def test_no_trigger_means_any_cut_off():
    assert should_trigger_summarization(None, 1)
    assert should_trigger_summarization(SummarizationTrigger(type="token_ratio"), 1)


def test_messages_to_refine_trigger():
    trigger = SummarizationTrigger(type="messages_to_refine", value=3)
    assert not should_trigger_summarization(trigger, 2)
    assert should_trigger_summarization(trigger, 3)


def test_token_ratio_trigger():
    trigger = SummarizationTrigger(type="token_ratio", value=0.8)
    assert should_trigger_summarization(trigger, 1, max_context_tokens=1000, pre_prune_total_tokens=850)
    assert not should_trigger_summarization(trigger, 1, max_context_tokens=1000, pre_prune_total_tokens=500)
    # window unknown
    assert should_trigger_summarization(trigger, 1, pre_prune_total_tokens=500)


def test_remaining_tokens_trigger():
    trigger = SummarizationTrigger(type="remaining_tokens", value=200)
    assert should_trigger_summarization(trigger, 1, max_context_tokens=1000, pre_prune_total_tokens=900)
    assert not should_trigger_summarization(trigger, 1, max_context_tokens=1000, pre_prune_total_tokens=500)
    assert should_trigger_summarization(trigger, 1, remaining_context_tokens=150)
    assert not should_trigger_summarization(trigger, 1, remaining_context_tokens=300)


# ── Formatting ────────────────────────────────────────────


def test_format_tool_result_is_clipped():
    line = format_message_for_summary(ToolMessage(content="x" * 1000, tool_call_id="t1", name="dump"))
    assert line.startswith("[tool_result: dump] → ")
    assert line.endswith("… [200 more chars]")


def test_format_tool_calls():
    ai = AIMessage(content="checking", tool_calls=[{"id": "t1", "name": "search", "args": {"q": "cats"}}])
    assert format_message_for_summary(ai) == '[ai]: checking\n[tool_call: search({"q": "cats"})]'


def test_format_text_blocks():
    human = HumanMessage(content=[{"type": "text", "text": "hello"}, {"type": "image_url", "image_url": "u"}])
    assert format_message_for_summary(human) == "[human]: hello"


def test_budget_trims_every_message():
    messages = [HumanMessage(content="a" * 500) for _ in range(10)]
    out = format_messages_for_summarization(messages, budget_chars=1000)
    lines = out.split("\n")
    assert len(lines) == 10
    assert all("more chars]" in line for line in lines)
    assert len(out) < 3000


# ── Summarize ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_summarize_messages():
    provider = ScriptedProvider(AIMessage(content="  They talked about cats.  "))
    text = await summarize_messages(provider, "gpt-4o", [HumanMessage(content="cats?")], max_tokens=256)

    assert text == "They talked about cats."
    call = provider.calls[0]
    assert isinstance(call["messages"][0], SystemMessage)
    assert call["messages"][0].content == DEFAULT_SUMMARIZATION_PROMPT
    assert call["messages"][1].content == "[human]: cats?"
    assert call["max_tokens"] == 256


@pytest.mark.asyncio
async def test_summarize_with_prior_summary_and_prompt():
    provider = ScriptedProvider(AIMessage(content="merged"))
    await summarize_messages(
        provider, "gpt-4o", [HumanMessage(content="dogs?")], prior_summary="cats", prompt="Be terse.",
    )
    system, body = provider.calls[0]["messages"]
    assert system.content == "Be terse."
    assert body.content == "## Prior Summary\n\ncats\n\n## New Messages to Incorporate\n\n[human]: dogs?"


@pytest.mark.asyncio
async def test_empty_reply_returns_empty_string():
    provider = ScriptedProvider(AIMessage(content=""))
    assert await summarize_messages(provider, "gpt-4o", [HumanMessage(content="hi")]) == ""


@pytest.mark.asyncio
async def test_provider_errors_propagate():
    provider = ScriptedProvider(ProviderError("boom"))
    with pytest.raises(ProviderError):
        await summarize_messages(provider, "gpt-4o", [HumanMessage(content="hi")])
