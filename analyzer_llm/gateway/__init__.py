"""LLM provider orchestration and resilience layer.

Calls external LLM vendor APIs on behalf of the code-analysis tool:
  - Provider contract with one variant per vendor (OpenAI, Claude)
  - Sliding-window Rate Limiter (per vendor key, process-local)
  - Retry Wrapper (exponential backoff with optional jitter)
  - Model-Fallback Sequencer
  - Response Extractor (JSON extraction and repair from free text)
"""
