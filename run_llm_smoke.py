"""
run_llm_smoke.py — End-to-end smoke test of the LLM provider layer.

Runs against the real vendor APIs in one go:
  1. Validate settings (API key for LLM_PROVIDER)
  2. Rate-limit check for the active provider
  3. Plain request with retry
  4. Structured (JSON) request
  5. Model fallback over the configured model list

Usage:
    OPENAI_API_KEY=sk-... python run_llm_smoke.py
    LLM_PROVIDER=claude CLAUDE_API_KEY=... python run_llm_smoke.py
"""

import asyncio
import json
import logging
import sys

from analyzer_llm.core.config import settings, validate_settings
from analyzer_llm.core.logging import setup_logging
from analyzer_llm.gateway.errors import LlmError
from analyzer_llm.gateway.factory import ProviderFactory
from analyzer_llm.gateway.fallback import ModelFallbackSequencer
from analyzer_llm.gateway.rate_limiter import SlidingWindowRateLimiter
from analyzer_llm.gateway.retry import with_retry
from analyzer_llm.gateway.types import LlmRequest

setup_logging()
logger = logging.getLogger("llm_smoke")

SYSTEM_PROMPT = "You are a senior engineer reviewing source code."

SOURCE_SNIPPET = '''
def parse_port(value):
    if not value:
        return 8080
    return int(value)
'''

STRUCTURED_PROMPT = (
    "Describe the function below as JSON with keys "
    '"name" (string), "purpose" (string) and "edge_cases" (list of strings).\n'
    f"```python\n{SOURCE_SNIPPET}```"
)

STRUCTURED_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "purpose": {"type": "string"},
        "edge_cases": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["name", "purpose", "edge_cases"],
    "additionalProperties": False,
}


async def main() -> int:
    errors = validate_settings()
    if errors:
        for err in errors:
            logger.error("Config: %s", err)
        return 1

    factory = ProviderFactory()
    provider = factory.get_current_provider()
    limiter = SlidingWindowRateLimiter(settings.rate_limit_configs())
    policy = settings.retry_policy()

    logger.info("Provider: %s (configured: %s)", provider.name.value, factory.get_configured_providers())

    if not limiter.can_proceed(provider.name):
        logger.error("Rate limit reached for %s, try again later", provider.name.value)
        return 1

    try:
        # Plain request
        request = LlmRequest.from_prompt(
            f"In one sentence, what does this function do?\n{SOURCE_SNIPPET}",
            system_prompt=SYSTEM_PROMPT,
        )
        response = await with_retry(lambda: provider.send_request(request), policy)
        logger.info("Plain response: %s", json.dumps(response.to_dict(), ensure_ascii=False))

        # Structured request
        structured = await with_retry(
            lambda: provider.send_structured_request(
                LlmRequest.from_prompt(STRUCTURED_PROMPT, system_prompt=SYSTEM_PROMPT),
                STRUCTURED_SCHEMA,
            ),
            policy,
        )
        logger.info("Structured data: %s", json.dumps(structured.data, ensure_ascii=False))

        # Model fallback
        sequencer = ModelFallbackSequencer(provider, retry_policy=policy)
        fallback_response = await sequencer.send(request)
        logger.info("Fallback answered with model %s", fallback_response.model_used)

    except LlmError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
