"""
Shared utilities for the story bible pipeline.

This package contains reusable components used across all pipeline stages:
- llm_client.py: Anthropic/OpenAI client with retry, rate-limit recovery and usage tracking
- logging_config.py: Structured JSON logging for pipeline observability
"""

__all__ = [
    "llm_client",
    "logging_config",
]
