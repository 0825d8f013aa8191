"""Error types and provider context-overflow classification."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any


class GraphCrewError(Exception):
    """Base class for graphcrew errors."""


class UnknownRemovalTarget(GraphCrewError):
    """A removal marker referenced an id that is not in the log."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(
            f"Attempting to delete a message with an ID that doesn't exist ('{message_id}')"
        )


class OrphanToolResult(GraphCrewError):
    """A tool result was appended without a matching earlier tool call."""

    def __init__(self, tool_call_id: str):
        self.tool_call_id = tool_call_id
        super().__init__(
            f"Tool result references unknown tool call '{tool_call_id}'"
        )


class InvalidToolInput(GraphCrewError):
    """The tool executor received input it cannot dispatch."""


class ToolNotFound(GraphCrewError):
    """A tool call named a tool that is not bound."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f'Tool "{name}" not found.')


class EmptyContextError(GraphCrewError):
    """Pruning left no messages to send to the model."""


class ProviderError(GraphCrewError):
    """Raised by provider adapters. ``str(err)`` is the provider's message."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


# ── Overflow classification ───────────────────────────────

# Exact phrases providers use when the prompt exceeds the context window
CONTEXT_OVERFLOW_PHRASES = (
    "request_too_large",
    "context length exceeded",
    "maximum context length",
    "prompt is too long",
    "exceeds model context window",
    "exceeds the model",
    "too large for model",
    "context_length_exceeded",
    "max_tokens",
    "token limit",
    "input too long",
    "payload too large",
    "content_too_large",
)

_OVERFLOW_HINT_RE = re.compile(
    r"413|too large|too long|context.*exceed|exceed.*context|token.*limit|"
    r"limit.*token|prompt.*size|size.*limit|maximum.*length|length.*maximum",
    re.IGNORECASE,
)

# Mention "limit" / "too large" but are not overflow errors
_FALSE_POSITIVE_RE = re.compile(
    r"rate.?limit|too many requests|quota|billing|auth|permission|forbidden",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class OverflowClassification:
    """Result of :func:`classify_overflow`.

    ``definite`` is safe for automatic recovery; ``likely`` should gate at
    most one retry.
    """

    definite: bool
    likely: bool

    def __bool__(self) -> bool:
        return self.likely


def is_context_overflow_error(error_message: str | None) -> bool:
    """Strict check against known provider phrases."""
    if not error_message:
        return False
    lower = error_message.lower()
    if _FALSE_POSITIVE_RE.search(lower):
        return False
    return any(phrase in lower for phrase in CONTEXT_OVERFLOW_PHRASES)


def is_likely_context_overflow_error(error_message: str | None) -> bool:
    """Strict check plus a broader regex heuristic."""
    if not error_message:
        return False
    if is_context_overflow_error(error_message):
        return True
    lower = error_message.lower()
    if _FALSE_POSITIVE_RE.search(lower):
        return False
    return bool(_OVERFLOW_HINT_RE.search(lower))


def classify_overflow(error_message: str | None) -> OverflowClassification:
    """Classify a provider error message as a context overflow."""
    definite = is_context_overflow_error(error_message)
    likely = definite or is_likely_context_overflow_error(error_message)
    return OverflowClassification(definite=definite, likely=likely)


def extract_error_message(error: Any) -> str:
    """Best-effort human readable message from an error value.

    Handles plain strings, exceptions and provider payloads shaped like
    ``{"message": ...}`` or ``{"error": {"message": ...}}``.
    """
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        return str(error)
    if isinstance(error, dict):
        if isinstance(error.get("message"), str):
            return error["message"]
        inner = error.get("error")
        if isinstance(inner, str):
            return inner
        if isinstance(inner, dict) and isinstance(inner.get("message"), str):
            return inner["message"]
    try:
        return json.dumps(error)
    except (TypeError, ValueError):
        return str(error)
