"""Tests for prompt-cache marker injection."""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from graphcrew.messages.cache import (
    add_bedrock_cache_control,
    add_cache_control,
    apply_prompt_cache,
    strip_anthropic_cache_control,
    strip_bedrock_cache_control,
)


@pytest.fixture
def log():
    return [
        SystemMessage(content="You are helpful."),
        HumanMessage(content="first"),
        AIMessage(content="ok", tool_calls=[{"id": "t1", "name": "search", "args": {}}]),
        ToolMessage(content="result", tool_call_id="t1"),
        AIMessage(content="answer"),
        HumanMessage(content="second"),
        AIMessage(content=""),
        HumanMessage(content=[{"type": "text", "text": "third"}, {"type": "image_url", "image_url": {"url": "x"}}]),
    ]


def _inline_marked(messages):
    return [
        i for i, m in enumerate(messages)
        if isinstance(m.content, list) and any(isinstance(b, dict) and "cache_control" in b for b in m.content)
    ]


def _sibling_marked(messages):
    return [
        i for i, m in enumerate(messages)
        if isinstance(m.content, list) and any(isinstance(b, dict) and "cachePoint" in b for b in m.content)
    ]


# ── Anthropic (inline) ────────────────────────────────────


def test_anthropic_marks_last_two_human_messages(log):
    out = add_cache_control(log)
    assert _inline_marked(out) == [5, 7]
    assert out[5].content == [{"type": "text", "text": "second", "cache_control": {"type": "ephemeral"}}]
    # marker sits on the last text block, the image is untouched
    assert out[7].content[0]["cache_control"] == {"type": "ephemeral"}
    assert "cache_control" not in out[7].content[1]


def test_anthropic_is_idempotent(log):
    once = add_cache_control(log)
    twice = add_cache_control(once)
    assert [m.content for m in twice] == [m.content for m in once]


def test_anthropic_moves_markers_forward(log):
    once = add_cache_control(log)
    grown = add_cache_control([*once, AIMessage(content="reply"), HumanMessage(content="fourth")])
    assert _inline_marked(grown) == [7, 9]


def test_unchanged_messages_are_not_copied(log):
    out = add_cache_control(log)
    assert out[2] is log[2]
    assert out[4] is log[4]
    assert log[5].content == "second"


def test_short_log_unchanged():
    single = [HumanMessage(content="hi")]
    out = add_cache_control(single)
    assert out[0] is single[0]
    assert out[0].content == "hi"


def test_at_most_two_markers():
    log = [HumanMessage(content=f"q{i}") for i in range(10)]
    for apply in (add_cache_control, add_bedrock_cache_control):
        out = apply(apply(log))
        assert len(_inline_marked(out)) + len(_sibling_marked(out)) <= 2


# ── Bedrock (sibling block) ───────────────────────────────


def test_bedrock_marks_last_two_non_tool_non_empty(log):
    out = add_bedrock_cache_control(log)
    # index 6 is empty, index 3 is a tool result
    assert _sibling_marked(out) == [5, 7]
    assert out[5].content == [{"type": "text", "text": "second"}, {"cachePoint": {"type": "default"}}]
    assert out[7].content[1] == {"cachePoint": {"type": "default"}}
    assert out[7].content[2]["type"] == "image_url"


def test_bedrock_includes_ai_messages():
    log = [HumanMessage(content="q"), AIMessage(content="a"), ToolMessage(content="r", tool_call_id="t")]
    out = add_bedrock_cache_control(log)
    assert _sibling_marked(out) == [0, 1]


def test_bedrock_is_idempotent(log):
    once = add_bedrock_cache_control(log)
    twice = add_bedrock_cache_control(once)
    assert [m.content for m in twice] == [m.content for m in once]


# ── Stripping and provider switches ───────────────────────


def test_strip_anthropic(log):
    stripped = strip_anthropic_cache_control(add_cache_control(log))
    assert _inline_marked(stripped) == []
    assert strip_anthropic_cache_control(stripped) == stripped


def test_strip_bedrock(log):
    stripped = strip_bedrock_cache_control(add_bedrock_cache_control(log))
    assert _sibling_marked(stripped) == []
    assert stripped[5].content == [{"type": "text", "text": "second"}]


def test_switch_anthropic_to_bedrock(log):
    out = apply_prompt_cache(add_cache_control(log), "bedrock")
    assert _inline_marked(out) == []
    assert _sibling_marked(out) == [5, 7]


def test_other_providers_get_no_markers(log):
    out = apply_prompt_cache(add_bedrock_cache_control(add_cache_control(log)), "openai")
    assert _inline_marked(out) == []
    assert _sibling_marked(out) == []
