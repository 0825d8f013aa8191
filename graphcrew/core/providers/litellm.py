"""LiteLLM provider — thin wrapper that returns LangChain AIMessage."""

from __future__ import annotations

import json
import os
from typing import Any, Callable, Sequence

import litellm
from langchain_core.messages import AIMessage, BaseMessage
from loguru import logger

from graphcrew.core.config.schema import Config
from graphcrew.core.errors import ProviderError
from graphcrew.core.providers.base import BaseLLMProvider
from graphcrew.core.truncation import TOOL_USE_BLOCK_TYPES

# Suppress litellm noise
litellm.suppress_debug_info = True


def setup_provider(config: Config) -> None:
    """Set env vars for LiteLLM from config. Call once at startup."""
    for env, val in [
        ("ANTHROPIC_API_KEY", config.providers.anthropic.api_key),
        ("OPENAI_API_KEY", config.providers.openai.api_key),
        ("OPENROUTER_API_KEY", config.providers.openrouter.api_key),
        ("DEEPSEEK_API_KEY", config.providers.deepseek.api_key),
        ("GROQ_API_KEY", config.providers.groq.api_key),
        ("GEMINI_API_KEY", config.providers.gemini.api_key),
    ]:
        _set_key(env, val)


class LiteLLMProvider(BaseLLMProvider):
    """LiteLLM-backed provider.

    Content blocks are passed through untouched so prompt-cache markers reach
    providers that understand them.
    """

    def __init__(self, provider: str = "litellm") -> None:
        self.provider = provider

    async def achat(
        self,
        messages: Sequence[BaseMessage],
        model: str,
        tools: list[dict[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_base: str | None = None,
        **client_options: Any,
    ) -> AIMessage:
        """Call LiteLLM and return a LangChain AIMessage.

        Raises
        ------
        ProviderError
            Any failure from the provider call, with the provider's message.
        """
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [message_to_dict(m) for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
            **client_options,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if api_base:
            kwargs["api_base"] = api_base

        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            logger.error(f"LLM error ({model}): {e}")
            raise ProviderError(
                str(e), provider=self.provider, status_code=getattr(e, "status_code", None)
            ) from e
        return self._to_ai_message(response)

    @staticmethod
    def _to_ai_message(response: Any) -> AIMessage:
        """Convert litellm response → LangChain AIMessage."""
        choice = response.choices[0]
        msg = choice.message

        tool_calls = []
        if getattr(msg, "tool_calls", None):
            for tc in msg.tool_calls:
                args = tc.function.arguments
                if isinstance(args, str):
                    try:
                        args = json.loads(args) if args else {}
                    except json.JSONDecodeError:
                        args = {"raw": args}
                tool_calls.append({"id": tc.id, "name": tc.function.name, "args": args})

        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0
        details = getattr(usage, "prompt_tokens_details", None)
        cache_read = getattr(details, "cached_tokens", 0) or 0
        cache_creation = getattr(usage, "cache_creation_input_tokens", 0) or 0

        return AIMessage(
            content=msg.content or "",
            tool_calls=tool_calls,
            usage_metadata={
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "total_tokens": input_tokens + output_tokens,
                "input_token_details": {"cache_read": cache_read, "cache_creation": cache_creation},
            },
            response_metadata={"finish_reason": choice.finish_reason or "stop"},
        )


def message_to_dict(msg: BaseMessage) -> dict[str, Any]:
    """Convert a LangChain message to the OpenAI-style dict litellm expects."""
    content = msg.content
    if msg.type == "human":
        return {"role": "user", "content": content}
    if msg.type == "system":
        return {"role": "system", "content": content}
    if msg.type == "tool":
        return {"role": "tool", "tool_call_id": msg.tool_call_id, "content": content}
    if isinstance(msg, AIMessage):
        # tool_use blocks are re-expressed as tool_calls below
        if isinstance(content, list):
            content = [
                b for b in content
                if not (isinstance(b, dict) and b.get("type") in TOOL_USE_BLOCK_TYPES)
            ]
        d: dict[str, Any] = {"role": "assistant", "content": content}
        if msg.tool_calls:
            d["tool_calls"] = [
                {
                    "id": tc["id"],
                    "type": "function",
                    "function": {"name": tc["name"], "arguments": json.dumps(tc["args"], default=str)},
                }
                for tc in msg.tool_calls
            ]
        return d
    return {"role": "user", "content": str(content)}


def make_token_counter(model: str) -> Callable[[BaseMessage], int]:
    """Build a ``Message -> int`` counter backed by ``litellm.token_counter``."""

    def count(message: BaseMessage) -> int:
        return litellm.token_counter(model=model, messages=[message_to_dict(message)])

    return count


def _set_key(env_name: str, value: str) -> None:
    if value:
        os.environ.setdefault(env_name, value)
