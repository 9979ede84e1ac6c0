"""LLM Providers — one variant per vendor behind a shared contract.

Each provider translates an LlmRequest into its vendor's HTTP protocol,
sends it, and returns an LlmResponse with normalized fields.

Vendor-specific behaviors:
  - OpenAI: chat completions; system prompt prepended as a leading message;
    no native schema support here, so structured output uses JSON mode plus
    an explicit "respond only with JSON" instruction
  - Claude: messages API; system prompt in a dedicated field; max_tokens is
    mandatory; native structured output via output_format when a schema is
    supplied

Failures surface as exceptions from analyzer_llm.gateway.errors:
ConfigurationError (no key), TransportError (wire/HTTP), ParseError
(structured call returned no usable JSON).
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from analyzer_llm.gateway.errors import ConfigurationError, ParseError, TransportError
from analyzer_llm.gateway.json_extractor import extract_json
from analyzer_llm.gateway.types import (
    FollowUpRequest,
    LlmRequest,
    LlmResponse,
    MessageRole,
    ProviderName,
    StructuredResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0  # seconds

JSON_ONLY_INSTRUCTION = (
    "Respond only with valid JSON. Do not include explanations, prose or markdown code fences."
)

# How much of an unparseable response to log from each end
_LOG_SNIPPET = 1000


def _vendor_error_message(resp: httpx.Response) -> str:
    """Pull the human-readable message out of a vendor error body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or resp.text[:500])
    return resp.text[:500]


def _usage(data: dict) -> dict:
    usage = data.get("usage")
    return usage if isinstance(usage, dict) else {}


def _follow_up_requests(parsed: Any) -> list[FollowUpRequest]:
    """Lift the model's optional `requests` list into FollowUpRequests."""
    if not isinstance(parsed, dict):
        return []
    raw = parsed.get("requests")
    if not isinstance(raw, list):
        return []
    items = [FollowUpRequest.from_dict(item) for item in raw if isinstance(item, dict)]
    return [item for item in items if item is not None]


class BaseLlmProvider(ABC):
    """Base class for all vendor providers."""

    name: ProviderName
    display_name: str
    default_model: str
    api_url: str

    def __init__(
        self,
        api_key: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        default_model: str | None = None,
    ):
        # Whitespace-only keys count as absent
        self.api_key = (api_key or "").strip()
        self.timeout = timeout
        if default_model:
            self.default_model = default_model

    def is_configured(self) -> bool:
        """True iff a non-blank credential is present."""
        return bool(self.api_key)

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise ConfigurationError(
                f"{self.display_name} API key not configured",
                provider=self.name.value,
            )

    async def send_request(self, request: LlmRequest) -> LlmResponse:
        """Send a request and return the normalized text response."""
        return await self._send(request, schema=None)

    async def send_structured_request(
        self,
        request: LlmRequest,
        schema: dict | None = None,
    ) -> StructuredResponse[Any]:
        """Send a request for JSON output and return the parsed data.

        Raises ParseError when the (successful) response holds no usable JSON.
        """
        structured = dataclasses.replace(
            request,
            wants_structured_output=True,
            messages=list(request.messages),
        )
        response = await self._send(structured, schema=schema)

        parsed = extract_json(response.content)
        if parsed is None:
            content = response.content
            logger.error(
                "Failed to extract JSON from %s response (length=%d). First chars: %s | Last chars: %s",
                self.display_name,
                len(content),
                content[:_LOG_SNIPPET],
                content[-_LOG_SNIPPET:],
            )
            raise ParseError(
                f"Failed to extract valid JSON from {self.display_name} response",
                provider=self.name.value,
                content=content,
            )

        return StructuredResponse(data=parsed, follow_up_requests=_follow_up_requests(parsed))

    async def _send(self, request: LlmRequest, schema: dict | None) -> LlmResponse:
        self._require_configured()
        model = request.model or self.default_model
        payload = self._build_payload(request, model, schema)

        data, latency_ms = await self._post(payload, self._headers(schema))

        response = self._parse_response(data, model)
        response.latency_ms = latency_ms
        return response

    async def _post(self, payload: dict, headers: dict[str, str]) -> tuple[Any, int]:
        """POST the payload; returns (decoded body, latency in ms)."""
        start = time.monotonic()
        provider = self.name.value

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.api_url, json=payload, headers=headers)

            if resp.status_code >= 400:
                logger.error(
                    "%s API %d for model=%s: %s",
                    self.display_name,
                    resp.status_code,
                    payload.get("model"),
                    _vendor_error_message(resp),
                )
            resp.raise_for_status()
            data = resp.json()

        except httpx.TimeoutException as e:
            raise TransportError(
                f"{self.display_name} timeout after {self.timeout}s",
                provider=provider,
                error_code="timeout",
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise TransportError(
                f"{self.display_name} API error {status}: {_vendor_error_message(e.response)}",
                provider=provider,
                status_code=status,
                error_code="rate_limited" if status == 429 else str(status),
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"{self.display_name} request failed: {e}",
                provider=provider,
                error_code="network",
            ) from e
        except ValueError as e:
            raise TransportError(
                f"{self.display_name} returned a non-JSON body",
                provider=provider,
                status_code=resp.status_code,
                error_code="invalid_body",
            ) from e

        if not isinstance(data, dict):
            raise TransportError(
                f"{self.display_name} returned an unexpected body ({type(data).__name__})",
                provider=provider,
                status_code=resp.status_code,
                error_code="invalid_body",
            )

        return data, int((time.monotonic() - start) * 1000)

    @abstractmethod
    def _headers(self, schema: dict | None) -> dict[str, str]:
        ...

    @abstractmethod
    def _build_payload(self, request: LlmRequest, model: str, schema: dict | None) -> dict:
        ...

    @abstractmethod
    def _parse_response(self, data: dict, model: str) -> LlmResponse:
        ...


# ---------------------------------------------------------------------------
# OpenAI (chat completions)
# ---------------------------------------------------------------------------

# GPT-5 series and o-series are reasoning models: no temperature, and
# max_completion_tokens instead of max_tokens.
_REASONING_MODEL_PREFIXES = ("gpt-5", "o1", "o3", "o4")


def _is_reasoning_model(model: str) -> bool:
    return any(model.startswith(p) for p in _REASONING_MODEL_PREFIXES)


class OpenAiProvider(BaseLlmProvider):
    """OpenAI Chat Completions provider."""

    name = ProviderName.OPENAI
    display_name = "OpenAI"
    default_model = "gpt-5.1"
    api_url = "https://api.openai.com/v1/chat/completions"

    def _headers(self, schema: dict | None) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, request: LlmRequest, model: str, schema: dict | None) -> dict:
        system_prompt = request.system_prompt
        if request.wants_structured_output:
            instruction = JSON_ONLY_INSTRUCTION
            if schema is not None:
                instruction += " The JSON must match this schema: " + json.dumps(schema)
            system_prompt = f"{system_prompt}\n\n{instruction}" if system_prompt else instruction

        messages = []
        if system_prompt:
            messages.append({"role": MessageRole.SYSTEM.value, "content": system_prompt})
        messages.extend(m.to_wire() for m in request.messages)

        payload: dict[str, Any] = {"model": model, "messages": messages}

        if request.wants_structured_output:
            payload["response_format"] = {"type": "json_object"}

        if _is_reasoning_model(model):
            if request.max_output_tokens is not None:
                payload["max_completion_tokens"] = request.max_output_tokens
        else:
            if request.max_output_tokens is not None:
                payload["max_tokens"] = request.max_output_tokens
            if request.temperature is not None:
                payload["temperature"] = request.temperature

        return payload

    def _parse_response(self, data: dict, model: str) -> LlmResponse:
        choices = data.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else None
        if not isinstance(choice, dict):
            choice = {}
        message = choice.get("message")
        if not isinstance(message, dict):
            message = {}
        usage = _usage(data)

        return LlmResponse(
            content=message.get("content") or "",
            finish_reason=choice.get("finish_reason"),
            model_used=data.get("model") or model,
            raw_vendor_payload=data,
            input_tokens=usage.get("prompt_tokens") or 0,
            output_tokens=usage.get("completion_tokens") or 0,
        )


# ---------------------------------------------------------------------------
# Claude (Anthropic messages)
# ---------------------------------------------------------------------------

ANTHROPIC_VERSION = "2023-06-01"
STRUCTURED_OUTPUTS_BETA = "structured-outputs-2025-11-13"
DEFAULT_MAX_TOKENS = 8192


class ClaudeProvider(BaseLlmProvider):
    """Anthropic Messages API provider with native structured outputs."""

    name = ProviderName.CLAUDE
    display_name = "Claude"
    default_model = "claude-sonnet-4-5"
    api_url = "https://api.anthropic.com/v1/messages"

    def _headers(self, schema: dict | None) -> dict[str, str]:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        if schema is not None:
            headers["anthropic-beta"] = STRUCTURED_OUTPUTS_BETA
        return headers

    def _build_payload(self, request: LlmRequest, model: str, schema: dict | None) -> dict:
        # Claude has no system role inside messages: fold those into `system`
        system_parts = [request.system_prompt] if request.system_prompt else []
        system_parts.extend(m.content for m in request.messages if MessageRole(m.role) == MessageRole.SYSTEM)
        if request.wants_structured_output and schema is None:
            system_parts.append(JSON_ONLY_INSTRUCTION)

        payload: dict[str, Any] = {"model": model}
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        payload["messages"] = [m.to_wire() for m in request.messages if MessageRole(m.role) != MessageRole.SYSTEM]
        payload["max_tokens"] = request.max_output_tokens or DEFAULT_MAX_TOKENS

        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if schema is not None:
            payload["output_format"] = {"type": "json_schema", "schema": schema}

        return payload

    def _parse_response(self, data: dict, model: str) -> LlmResponse:
        text = ""
        blocks = data.get("content")
        for block in blocks if isinstance(blocks, list) else []:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text") or ""
                break
        usage = _usage(data)

        return LlmResponse(
            content=text,
            finish_reason=data.get("stop_reason"),
            model_used=data.get("model") or model,
            raw_vendor_payload=data,
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
        )


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------

PROVIDER_REGISTRY: dict[ProviderName, type[BaseLlmProvider]] = {
    ProviderName.OPENAI: OpenAiProvider,
    ProviderName.CLAUDE: ClaudeProvider,
}


def create_provider(name: ProviderName | str, api_key: str | None, **kwargs: Any) -> BaseLlmProvider:
    """Instantiate the provider registered for *name*."""
    try:
        provider_name = ProviderName(name)
    except ValueError:
        raise ConfigurationError(f"Unknown provider: {name}", provider=str(name)) from None
    return PROVIDER_REGISTRY[provider_name](api_key=api_key, **kwargs)
