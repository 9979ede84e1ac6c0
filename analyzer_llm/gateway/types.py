"""Core types and DTOs for the LLM provider layer."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderName(str, Enum):
    """Supported LLM vendors."""

    OPENAI = "openai"
    CLAUDE = "claude"


class MessageRole(str, Enum):
    """Conversation roles shared by both vendor wire formats."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class FollowUpKind(str, Enum):
    """Kinds of extra context a model may ask for in a later turn."""

    FILE = "file"
    SEARCH = "search"


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


@dataclass
class ChatMessage:
    """A single conversation message."""

    role: MessageRole
    content: str

    def to_wire(self) -> dict[str, str]:
        return {"role": MessageRole(self.role).value, "content": self.content}


@dataclass
class LlmRequest:
    """A provider-agnostic request.

    Messages are conversation history; their order is preserved in every
    vendor payload.
    """

    messages: list[ChatMessage] = field(default_factory=list)
    model: str = ""  # empty → provider default
    system_prompt: str = ""
    max_output_tokens: int | None = None
    temperature: float | None = None
    wants_structured_output: bool = False

    @classmethod
    def from_prompt(cls, prompt: str, system_prompt: str = "", **kwargs: Any) -> LlmRequest:
        """Shortcut for a single user turn."""
        return cls(
            messages=[ChatMessage(role=MessageRole.USER, content=prompt)],
            system_prompt=system_prompt,
            **kwargs,
        )

    def with_model(self, model: str) -> LlmRequest:
        """Copy with only the model replaced (used by model fallback)."""
        return dataclasses.replace(self, model=model, messages=list(self.messages))


@dataclass
class LlmResponse:
    """Normalized response, same shape regardless of vendor."""

    content: str = ""
    finish_reason: str | None = None
    model_used: str | None = None
    raw_vendor_payload: Any = None

    # Usage, normalized from prompt_tokens/completion_tokens (OpenAI)
    # and input_tokens/output_tokens (Claude)
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict:
        """JSON-compatible summary (without the raw vendor payload)."""
        return {
            "content": self.content,
            "finish_reason": self.finish_reason,
            "model_used": self.model_used,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "latency_ms": self.latency_ms,
        }


@dataclass
class FollowUpRequest:
    """A model's request for more context (a file or a code search)."""

    kind: FollowUpKind
    path: str | None = None
    pattern: str | None = None
    file_pattern: str | None = None
    max_results: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> FollowUpRequest | None:
        """Build from the model's JSON; returns None for unknown kinds."""
        raw_kind = str(data.get("type") or data.get("kind") or "").lower()
        if raw_kind == "grep":
            raw_kind = FollowUpKind.SEARCH.value
        try:
            kind = FollowUpKind(raw_kind)
        except ValueError:
            return None
        max_results = data.get("maxResults", data.get("max_results"))
        return cls(
            kind=kind,
            path=data.get("path"),
            pattern=data.get("pattern"),
            file_pattern=data.get("filePattern", data.get("file_pattern")),
            max_results=int(max_results) if isinstance(max_results, (int, float)) else None,
        )


@dataclass
class StructuredResponse(Generic[T]):
    """Parsed structured output plus any follow-up requests, passed through."""

    data: T
    follow_up_requests: list[FollowUpRequest] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Resilience configuration
# ---------------------------------------------------------------------------


@dataclass
class RateLimitConfig:
    """Sliding-window limit: at most max_requests in any trailing window_ms."""

    max_requests: int = 60
    window_ms: float = 60_000

    def __post_init__(self) -> None:
        if self.max_requests < 0:
            raise ValueError("max_requests must be >= 0")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be > 0")


DEFAULT_RATE_LIMITS: dict[str, RateLimitConfig] = {
    ProviderName.OPENAI.value: RateLimitConfig(max_requests=60, window_ms=60_000),
    ProviderName.CLAUDE.value: RateLimitConfig(max_requests=50, window_ms=60_000),
}


@dataclass
class RetryPolicy:
    """Exponential backoff policy.

    delay(attempt) = min(initial_delay * backoff_factor**attempt, max_delay)
                     + uniform(0, jitter)
    """

    max_retries: int = 3
    initial_delay: float = 1.0  # seconds
    backoff_factor: float = 2.0
    max_delay: float | None = 30.0  # None → uncapped
    jitter: float = 0.0  # seconds, upper bound of the random addend

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1
