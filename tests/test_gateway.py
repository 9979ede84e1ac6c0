"""Tests for the resilience layer.

Covers:
  - Types and DTOs
  - Sliding-window Rate Limiter
  - Retry Wrapper
  - Model-Fallback Sequencer
  - Provider Factory
"""

from __future__ import annotations

import asyncio
import logging
import threading
from unittest.mock import AsyncMock, patch

import pytest

from analyzer_llm.gateway.errors import (
    AllModelsFailedError,
    ConfigurationError,
    NoModelsAttemptedError,
    RateLimitDeniedError,
    TransportError,
)
from analyzer_llm.gateway.factory import ProviderFactory
from analyzer_llm.gateway.fallback import ModelFallbackSequencer, send_with_fallback
from analyzer_llm.gateway.providers import ClaudeProvider, OpenAiProvider
from analyzer_llm.gateway.rate_limiter import SlidingWindowRateLimiter
from analyzer_llm.gateway.retry import compute_backoff, with_retry, with_retry_and_count
from analyzer_llm.gateway.types import (
    DEFAULT_RATE_LIMITS,
    ChatMessage,
    FollowUpKind,
    FollowUpRequest,
    LlmRequest,
    LlmResponse,
    MessageRole,
    ProviderName,
    RateLimitConfig,
    RetryPolicy,
)


# ==========================================================================
# Test: Types
# ==========================================================================


class TestTypes:
    def test_request_from_prompt(self):
        req = LlmRequest.from_prompt("Hello", system_prompt="Be brief.")
        assert req.messages == [ChatMessage(role=MessageRole.USER, content="Hello")]
        assert req.system_prompt == "Be brief."
        assert req.model == ""
        assert req.wants_structured_output is False

    def test_with_model_only_changes_model(self):
        req = LlmRequest(
            messages=[
                ChatMessage(MessageRole.USER, "first"),
                ChatMessage(MessageRole.ASSISTANT, "second"),
            ],
            model="a",
            system_prompt="sys",
            temperature=0.2,
        )
        copy = req.with_model("b")
        assert copy.model == "b"
        assert req.model == "a"
        assert copy.messages == req.messages
        assert copy.messages is not req.messages
        assert copy.system_prompt == "sys"
        assert copy.temperature == 0.2

    def test_response_total_tokens_and_dict(self):
        resp = LlmResponse(content="hi", model_used="gpt-4o", input_tokens=10, output_tokens=5)
        assert resp.total_tokens == 15
        d = resp.to_dict()
        assert d["content"] == "hi"
        assert d["total_tokens"] == 15
        assert "raw_vendor_payload" not in d

    def test_follow_up_from_dict(self):
        item = FollowUpRequest.from_dict({"type": "file", "path": "src/app.py"})
        assert item.kind == FollowUpKind.FILE
        assert item.path == "src/app.py"

    def test_follow_up_grep_is_search(self):
        item = FollowUpRequest.from_dict({"type": "grep", "pattern": "def main", "filePattern": "*.py", "maxResults": 5})
        assert item.kind == FollowUpKind.SEARCH
        assert item.file_pattern == "*.py"
        assert item.max_results == 5

    def test_follow_up_unknown_kind(self):
        assert FollowUpRequest.from_dict({"type": "shell"}) is None

    def test_retry_policy_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.total_attempts == 4

    def test_retry_policy_rejects_negative_retries(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)

    def test_default_rate_limits(self):
        assert DEFAULT_RATE_LIMITS["openai"].max_requests == 60
        assert DEFAULT_RATE_LIMITS["claude"].max_requests == 50
        assert DEFAULT_RATE_LIMITS["openai"].window_ms == 60_000


# ==========================================================================
# Test: Rate Limiter
# ==========================================================================


class TestRateLimiter:
    @pytest.fixture
    def limiter(self, clock):
        return SlidingWindowRateLimiter(
            {"openai": RateLimitConfig(max_requests=5, window_ms=60_000)},
            clock=clock,
        )

    def test_calls_within_limit_proceed(self, limiter):
        assert all(limiter.can_proceed("openai") for _ in range(5))

    def test_call_over_limit_is_refused(self, limiter):
        for _ in range(5):
            assert limiter.can_proceed("openai") is True
        assert limiter.can_proceed("openai") is False

    def test_refusal_records_nothing(self, limiter):
        for _ in range(5):
            limiter.can_proceed("openai")
        limiter.can_proceed("openai")
        limiter.can_proceed("openai")
        assert limiter.get_request_count("openai") == 5

    def test_window_slides(self, limiter, clock):
        for _ in range(5):
            limiter.can_proceed("openai")
        assert limiter.can_proceed("openai") is False

        clock.now = 61_000
        assert limiter.can_proceed("openai") is True
        assert limiter.get_request_count("openai") == 1

    def test_partial_expiry(self, limiter, clock):
        limiter.can_proceed("openai")  # t=0
        clock.now = 30_000
        for _ in range(4):
            limiter.can_proceed("openai")
        assert limiter.can_proceed("openai") is False

        # Only the t=0 call has left the window
        clock.now = 60_001
        assert limiter.can_proceed("openai") is True
        assert limiter.can_proceed("openai") is False

    def test_call_exactly_one_window_later_still_counts(self, limiter, clock):
        for _ in range(5):
            limiter.can_proceed("openai")

        # Entries expire only once strictly older than now - window
        clock.now = 60_000
        assert limiter.can_proceed("openai") is False
        clock.now = 60_000.5
        assert limiter.can_proceed("openai") is True

    def test_keys_are_independent(self, limiter):
        for _ in range(5):
            limiter.can_proceed("openai")
        assert limiter.can_proceed("claude") is True

    def test_enum_and_string_keys_share_window(self, limiter):
        for _ in range(5):
            limiter.can_proceed(ProviderName.OPENAI)
        assert limiter.can_proceed("openai") is False

    def test_instances_are_isolated(self, clock):
        configs = {"openai": RateLimitConfig(max_requests=1, window_ms=1000)}
        first = SlidingWindowRateLimiter(configs, clock=clock)
        second = SlidingWindowRateLimiter(configs, clock=clock)
        assert first.can_proceed("openai") is True
        assert first.can_proceed("openai") is False
        assert second.can_proceed("openai") is True

    def test_check_raises_when_denied(self, limiter):
        for _ in range(5):
            limiter.check("openai")
        with pytest.raises(RateLimitDeniedError) as exc_info:
            limiter.check("openai")
        assert exc_info.value.key == "openai"

    def test_configure_replaces_limit(self, limiter):
        limiter.configure("openai", RateLimitConfig(max_requests=1, window_ms=60_000))
        assert limiter.can_proceed("openai") is True
        assert limiter.can_proceed("openai") is False

    def test_unknown_key_gets_default_limit(self, limiter):
        stats = limiter.get_stats("custom")
        assert stats["max_requests"] == 60
        assert stats["current_requests"] == 0

    def test_get_all_stats(self, limiter):
        limiter.can_proceed("openai")
        stats = {s["key"]: s for s in limiter.get_all_stats()}
        assert stats["openai"]["current_requests"] == 1
        assert stats["openai"]["max_requests"] == 5

    def test_concurrent_threads_never_exceed_limit(self):
        limiter = SlidingWindowRateLimiter({"openai": RateLimitConfig(max_requests=50, window_ms=60_000)})
        results: list[bool] = []
        results_lock = threading.Lock()

        def worker():
            for _ in range(20):
                allowed = limiter.can_proceed("openai")
                with results_lock:
                    results.append(allowed)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 50
        assert len(results) == 200

    @pytest.mark.asyncio
    async def test_wait_until_available_immediate(self, limiter):
        assert await limiter.wait_until_available("openai") is True
        # Waiting does not record a call
        assert limiter.get_request_count("openai") == 0

    @pytest.mark.asyncio
    async def test_wait_until_available_sleeps_until_expiry(self, limiter, clock):
        for _ in range(5):
            limiter.can_proceed("openai")
        clock.now = 10_000

        async def fake_sleep(seconds):
            clock.advance(seconds * 1000)

        with patch("analyzer_llm.gateway.rate_limiter.asyncio.sleep", side_effect=fake_sleep) as mock_sleep:
            assert await limiter.wait_until_available("openai") is True

        # 50s left in the window plus the 100ms buffer
        assert mock_sleep.call_args_list[0].args[0] == pytest.approx(50.1)
        assert limiter.can_proceed("openai") is True

    @pytest.mark.asyncio
    async def test_wait_until_available_timeout(self, limiter):
        for _ in range(5):
            limiter.can_proceed("openai")
        # Fake clock never advances, so the window never frees up
        assert await limiter.wait_until_available("openai", timeout=0.01) is False


# ==========================================================================
# Test: Retry Wrapper
# ==========================================================================


@pytest.fixture
def no_sleep():
    with patch("analyzer_llm.gateway.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


class TestRetry:
    @pytest.mark.asyncio
    async def test_success_first_attempt(self, no_sleep):
        operation = AsyncMock(return_value="ok")
        result = await with_retry(operation, RetryPolicy(max_retries=2))
        assert result == "ok"
        assert operation.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_always_failing_runs_max_retries_plus_one(self, no_sleep):
        error = TransportError("boom", status_code=503)
        operation = AsyncMock(side_effect=error)

        with pytest.raises(TransportError) as exc_info:
            await with_retry(operation, RetryPolicy(max_retries=2))

        assert exc_info.value is error
        assert operation.await_count == 3
        assert no_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(self, no_sleep):
        operation = AsyncMock(side_effect=[RuntimeError("1"), RuntimeError("2"), "third time"])
        outcome = await with_retry_and_count(operation, RetryPolicy(max_retries=2))
        assert outcome.result == "third time"
        assert outcome.attempts == 3
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_zero_retries_single_attempt(self, no_sleep):
        operation = AsyncMock(side_effect=ValueError("bad"))
        with pytest.raises(ValueError):
            await with_retry(operation, RetryPolicy(max_retries=0))
        assert operation.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_error_classification(self, no_sleep):
        # Even a configuration error is retried: the caller must pre-classify
        operation = AsyncMock(side_effect=ConfigurationError("no key"))
        with pytest.raises(ConfigurationError):
            await with_retry(operation, RetryPolicy(max_retries=3))
        assert operation.await_count == 4

    @pytest.mark.asyncio
    async def test_backoff_delays(self, no_sleep):
        operation = AsyncMock(side_effect=[RuntimeError(), RuntimeError(), RuntimeError(), "ok"])
        policy = RetryPolicy(max_retries=3, initial_delay=0.5, backoff_factor=2.0, max_delay=None)
        await with_retry(operation, policy)
        delays = [c.args[0] for c in no_sleep.await_args_list]
        assert delays == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, no_sleep):
        errors = [RuntimeError("a"), RuntimeError("b")]
        operation = AsyncMock(side_effect=[*errors, "ok"])
        calls = []
        await with_retry(operation, RetryPolicy(max_retries=2), on_retry=lambda n, e: calls.append((n, e)))
        assert calls == [(1, errors[0]), (2, errors[1])]

    @pytest.mark.asyncio
    async def test_attempts_are_sequential(self):
        in_flight = 0
        max_in_flight = 0
        calls = 0

        async def operation():
            nonlocal in_flight, max_in_flight, calls
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            calls += 1
            if calls < 3:
                raise RuntimeError("again")
            return calls

        result = await with_retry(operation, RetryPolicy(max_retries=2, initial_delay=0))
        assert result == 3
        assert max_in_flight == 1

    @pytest.mark.asyncio
    async def test_log_records_carry_attempt(self, no_sleep, caplog):
        operation = AsyncMock(side_effect=RuntimeError("down"))
        with caplog.at_level(logging.INFO, logger="analyzer_llm.gateway.retry"):
            with pytest.raises(RuntimeError):
                await with_retry(operation, RetryPolicy(max_retries=2))

        records = [r for r in caplog.records if r.name == "analyzer_llm.gateway.retry"]
        assert [r.attempt for r in records] == [1, 2, 3]
        assert records[-1].levelno == logging.WARNING

    def test_compute_backoff_capped(self):
        policy = RetryPolicy(initial_delay=1.0, backoff_factor=2.0, max_delay=30.0)
        assert compute_backoff(0, policy) == 1.0
        assert compute_backoff(3, policy) == 8.0
        assert compute_backoff(20, policy) == 30.0

    def test_compute_backoff_jitter_bounds(self):
        policy = RetryPolicy(initial_delay=1.0, backoff_factor=2.0, max_delay=None, jitter=0.5)
        for _ in range(20):
            delay = compute_backoff(1, policy)
            assert 2.0 <= delay <= 2.5


# ==========================================================================
# Test: Model-Fallback Sequencer
# ==========================================================================


def _failing_for(*failing_models):
    """send_request side effect that fails for the given models."""
    calls: list[str] = []

    async def side_effect(request: LlmRequest) -> LlmResponse:
        calls.append(request.model)
        if request.model in failing_models:
            raise TransportError(f"{request.model} unavailable", status_code=404)
        return LlmResponse(content="ok", model_used=request.model)

    return side_effect, calls


class TestModelFallback:
    @pytest.fixture
    def provider(self):
        return OpenAiProvider(api_key="sk-test")

    @pytest.mark.asyncio
    async def test_first_success_short_circuits(self, provider):
        side_effect, calls = _failing_for()
        with patch.object(provider, "send_request", side_effect=side_effect):
            resp = await send_with_fallback(provider, LlmRequest.from_prompt("hi"), ["a", "b", "c"])
        assert resp.model_used == "a"
        assert calls == ["a"]

    @pytest.mark.asyncio
    async def test_falls_through_to_third_model(self, provider):
        side_effect, calls = _failing_for("a", "b")
        with patch.object(provider, "send_request", side_effect=side_effect):
            resp = await send_with_fallback(provider, LlmRequest.from_prompt("hi"), ["a", "b", "c"])
        assert resp.content == "ok"
        assert resp.model_used == "c"
        assert calls == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_empty_model_list_makes_no_calls(self, provider):
        mock_send = AsyncMock()
        with patch.object(provider, "send_request", mock_send):
            with pytest.raises(NoModelsAttemptedError):
                await send_with_fallback(provider, LlmRequest.from_prompt("hi"), [])
        mock_send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_fail_exposes_last_error_only(self, provider):
        side_effect, calls = _failing_for("a", "b")
        with patch.object(provider, "send_request", side_effect=side_effect):
            with pytest.raises(AllModelsFailedError) as exc_info:
                await send_with_fallback(provider, LlmRequest.from_prompt("hi"), ["a", "b"])

        err = exc_info.value
        assert calls == ["a", "b"]
        assert err.last_model == "b"
        assert isinstance(err.last_error, TransportError)
        assert "b unavailable" in str(err.last_error)
        assert err.__cause__ is err.last_error
        assert err.provider == "openai"

    @pytest.mark.asyncio
    async def test_other_request_fields_held_fixed(self, provider):
        seen: list[LlmRequest] = []

        async def side_effect(request):
            seen.append(request)
            if len(seen) == 1:
                raise TransportError("fail")
            return LlmResponse(content="ok")

        original = LlmRequest.from_prompt("hi", system_prompt="sys", temperature=0.3)
        with patch.object(provider, "send_request", side_effect=side_effect):
            await send_with_fallback(provider, original, ["a", "b"])

        assert [r.model for r in seen] == ["a", "b"]
        assert all(r.system_prompt == "sys" and r.temperature == 0.3 for r in seen)
        assert all(r.messages == original.messages for r in seen)
        assert original.model == ""

    @pytest.mark.asyncio
    async def test_composed_with_retry(self, provider, no_sleep):
        side_effect, calls = _failing_for("a")
        with patch.object(provider, "send_request", side_effect=side_effect):
            resp = await send_with_fallback(
                provider,
                LlmRequest.from_prompt("hi"),
                ["a", "b"],
                retry_policy=RetryPolicy(max_retries=1),
            )
        assert resp.model_used == "b"
        # "a" retried once before falling back
        assert calls == ["a", "a", "b"]

    @pytest.mark.asyncio
    async def test_sequencer_object(self, provider):
        side_effect, calls = _failing_for("x")
        sequencer = ModelFallbackSequencer(provider, ["x", "y"])
        with patch.object(provider, "send_request", side_effect=side_effect):
            resp = await sequencer.send(LlmRequest.from_prompt("hi"))
        assert resp.model_used == "y"
        assert calls == ["x", "y"]


# ==========================================================================
# Test: Provider Factory
# ==========================================================================


class TestProviderFactory:
    def test_get_provider_by_name(self, test_settings):
        factory = ProviderFactory(test_settings)
        assert isinstance(factory.get_provider("openai"), OpenAiProvider)
        assert isinstance(factory.get_provider(ProviderName.CLAUDE), ClaudeProvider)

    def test_providers_are_cached(self, test_settings):
        factory = ProviderFactory(test_settings)
        assert factory.get_provider("openai") is factory.get_provider(ProviderName.OPENAI)

    def test_provider_built_from_settings(self, test_settings):
        provider = ProviderFactory(test_settings).get_provider("openai")
        assert provider.api_key == "sk-test-fake-key"
        assert provider.timeout == 30.0
        assert provider.default_model == "gpt-4o-mini"

    def test_current_provider_follows_settings(self, test_settings):
        assert ProviderFactory(test_settings).get_current_provider().name == ProviderName.OPENAI
        test_settings.llm_provider = ProviderName.CLAUDE
        assert ProviderFactory(test_settings).get_current_provider().name == ProviderName.CLAUDE

    def test_unknown_provider(self, test_settings):
        with pytest.raises(ConfigurationError):
            ProviderFactory(test_settings).get_provider("gemini")

    def test_configured_providers(self, test_settings):
        factory = ProviderFactory(test_settings)
        assert factory.is_provider_configured("openai") is True
        assert factory.is_provider_configured("claude") is False
        assert factory.get_configured_providers() == [ProviderName.OPENAI]

    def test_default_fallback_models_from_settings(self, test_settings):
        provider = ProviderFactory(test_settings).get_provider("openai")
        sequencer = ModelFallbackSequencer(provider, settings=test_settings)
        assert sequencer.models == ["gpt-4o-mini", "gpt-4o"]

    def test_default_fallback_models_per_provider(self, test_settings):
        provider = ProviderFactory(test_settings).get_provider(ProviderName.CLAUDE)
        sequencer = ModelFallbackSequencer(provider, settings=test_settings)
        assert sequencer.models == ["claude-sonnet-4-5"]

    def test_explicit_models_win_over_settings(self, test_settings):
        provider = ProviderFactory(test_settings).get_provider("openai")
        sequencer = ModelFallbackSequencer(provider, ["only-this"], settings=test_settings)
        assert sequencer.models == ["only-this"]

    def test_default_models_list_is_a_copy(self, test_settings):
        provider = ProviderFactory(test_settings).get_provider("openai")
        sequencer = ModelFallbackSequencer(provider, settings=test_settings)
        sequencer.models.append("extra")
        assert test_settings.openai_fallback_models == ["gpt-4o-mini", "gpt-4o"]
