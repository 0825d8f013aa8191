"""Base LLM provider — strategy pattern interface."""

from __future__ import annotations

import abc
from typing import Any, Sequence

from langchain_core.messages import AIMessage, BaseMessage


class BaseLLMProvider(abc.ABC):
    """Abstract base for LLM providers.

    Implementations raise :class:`graphcrew.core.errors.ProviderError` on
    failure; its message is fed to the overflow classifier.
    """

    @abc.abstractmethod
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
        """Send a chat completion request and return an AIMessage."""
        ...
