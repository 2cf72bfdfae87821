"""Model invocation layer for the story bible pipeline.

This module wraps the Anthropic and OpenAI SDKs behind one client that sends a
system + user prompt pair and returns the decoded response text. Every call is
retried with a fixed backoff schedule, rate-limit signals get their own longer
cooldown, and token usage is tracked for cost reporting.

The SDK client ("model handle") is created by an explicit initialization step,
``init_model_handle``, and injected into ``LLMClient``; nothing touches the
network or the environment at import time.
"""

import hashlib
import logging
import os
import time
from typing import Any, List, Optional, Tuple, Type, TypeVar

import anthropic
import instructor
import openai
from langfuse import observe
from pydantic import BaseModel, ConfigDict, Field

from storybible.constants import (
    ENABLE_LANGFUSE,
    LLM_MAX_RETRIES,
    LLM_MAX_TOKENS,
    LLM_MODEL,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    RATE_LIMIT_DELAY,
    RETRY_DELAYS,
)
from storybible.exceptions import ConfigurationError, ModelInvocationError

T = TypeVar("T", bound=BaseModel)

logger = logging.getLogger(__name__)


class TokenUsage(BaseModel):
    """Token usage statistics."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0  # Prompt cache hits


class CallOptions(BaseModel):
    """Per-call options for a text generation request."""

    max_retries: int = Field(default=LLM_MAX_RETRIES, ge=1)
    timeout_seconds: float = Field(default=LLM_TIMEOUT_SECONDS, gt=0)
    temperature: float = Field(default=LLM_TEMPERATURE, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(
        default=LLM_MAX_TOKENS, description="Output cap; None omits the cap (OpenAI only)"
    )
    model: Optional[str] = Field(default=None, description="Override the client's model for this call")


class ModelHandle(BaseModel):
    """Initialized SDK client for one provider."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    provider: str
    client: Any


def detect_provider(model: str) -> str:
    """Detect LLM provider from model name.

    Args:
        model: Model name

    Returns:
        Provider name: 'anthropic' or 'openai'

    Raises:
        ConfigurationError: If the model name matches no supported provider
    """
    if model.startswith("claude"):
        return "anthropic"
    if model.startswith("gpt") or model.startswith("o"):
        return "openai"
    raise ConfigurationError(f"Unsupported model: {model}")


def init_model_handle(
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    enable_langfuse: bool = ENABLE_LANGFUSE,
) -> ModelHandle:
    """Create the SDK client for the provider serving ``model``.

    Args:
        model: Model name (defaults to LLM_MODEL)
        api_key: API key (if None, uses ANTHROPIC_API_KEY or OPENAI_API_KEY)
        enable_langfuse: Use the Langfuse-wrapped OpenAI client for tracing

    Returns:
        ModelHandle with the provider name and SDK client

    Raises:
        ConfigurationError: If the provider is unknown or no API key is available
    """
    model = model or LLM_MODEL
    provider = detect_provider(model)

    if provider == "anthropic":
        key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not key:
            raise ConfigurationError("ANTHROPIC_API_KEY environment variable is not set")
        client = anthropic.Anthropic(api_key=key)
    else:
        key = api_key or os.getenv("OPENAI_API_KEY")
        if not key:
            raise ConfigurationError("OPENAI_API_KEY environment variable is not set")
        if enable_langfuse:
            from langfuse.openai import OpenAI

            client = OpenAI(api_key=key)
            logger.info("Langfuse tracing enabled for OpenAI")
        else:
            client = openai.OpenAI(api_key=key)

    logger.info(f"Model handle initialized: provider={provider}, model={model}")
    return ModelHandle(provider=provider, client=client)


def is_rate_limit_error(error: BaseException) -> bool:
    """Return True when ``error`` is a rate-limit signal from the service."""
    if isinstance(error, (anthropic.RateLimitError, openai.RateLimitError)):
        return True
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    return status == 429


def _as_int(value: Any) -> int:
    return value if isinstance(value, int) else 0


class LLMClient:
    """Text-generation client with retry, rate-limit recovery and usage tracking.

    Features:
    - Plain-text generation from a system + user prompt pair
    - Retry up to ``max_retries`` attempts with a 2s/4s/8s backoff schedule
    - Fixed 60s cooldown when the service signals a rate limit
    - Per-call timeout (a timeout counts as a failed attempt)
    - Instructor-backed structured generation for typed responses
    - Token usage tracking and cost estimation
    - Request/response logging (prompt hash, tokens, latency)
    """

    def __init__(
        self,
        handle: Optional[ModelHandle] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        retry_delays: Optional[List[float]] = None,
        rate_limit_delay: float = RATE_LIMIT_DELAY,
        enable_langfuse: bool = ENABLE_LANGFUSE,
    ):
        """Initialize the client.

        Args:
            handle: Pre-built model handle (if None, one is created for ``model``)
            model: Model to use (if None, uses LLM_MODEL)
            api_key: API key passed to ``init_model_handle`` when no handle is given
            retry_delays: Backoff schedule in seconds, indexed by failed attempt
            rate_limit_delay: Cooldown in seconds after a rate-limit signal
            enable_langfuse: Enable Langfuse tracing on the OpenAI client
        """
        self.model = model or LLM_MODEL
        self.handle = handle or init_model_handle(
            self.model, api_key=api_key, enable_langfuse=enable_langfuse
        )
        self.provider = self.handle.provider
        self.retry_delays = list(retry_delays or RETRY_DELAYS)
        self.rate_limit_delay = rate_limit_delay
        self._structured_client = None

        # Token tracking
        self.total_usage = TokenUsage()

        logger.info(
            f"LLMClient initialized with provider={self.provider}, model={self.model}"
        )

    @observe(as_type="generation")
    def generate_text(
        self,
        system_prompt: str,
        user_prompt: str,
        options: Optional[CallOptions] = None,
    ) -> str:
        """Send one prompt pair and return the response text.

        Args:
            system_prompt: System instruction
            user_prompt: User content
            options: Retry ceiling, timeout, temperature and output cap

        Returns:
            Text of the first text-bearing content block

        Raises:
            Exception: The last observed error once all attempts are exhausted
        """
        options = options or CallOptions()
        model = options.model or self.model
        prompt_hash = self._hash_prompt(system_prompt + user_prompt)
        logger.info(
            f"Generating text: model={model}, prompt_hash={prompt_hash}, "
            f"temperature={options.temperature}, max_retries={options.max_retries}"
        )

        last_error: Optional[BaseException] = None
        for attempt in range(options.max_retries):
            start_time = time.time()
            try:
                text, usage = self._request_text(system_prompt, user_prompt, model, options)
                self._update_total_usage(usage)
                self._log_response(
                    prompt_hash=prompt_hash,
                    model=model,
                    latency_ms=(time.time() - start_time) * 1000,
                    attempt=attempt + 1,
                    success=True,
                    usage=usage,
                )
                return text

            except Exception as e:
                last_error = e
                self._log_response(
                    prompt_hash=prompt_hash,
                    model=model,
                    latency_ms=(time.time() - start_time) * 1000,
                    attempt=attempt + 1,
                    success=False,
                    error=str(e)[:200],
                )

                if attempt < options.max_retries - 1:
                    delay = self._retry_delay(attempt, e)
                    if is_rate_limit_error(e):
                        logger.warning(f"Rate limited. Waiting {delay:.0f}s before retry...")
                    else:
                        logger.info(f"Retrying in {delay:.2f} seconds...")
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {options.max_retries} attempts failed for prompt_hash={prompt_hash}"
                    )

        raise last_error or ModelInvocationError("Model call failed after all retries")

    def _retry_delay(self, attempt: int, error: BaseException) -> float:
        """Delay before the next attempt.

        Args:
            attempt: Failed attempt index (0-based)
            error: Error raised by the failed attempt

        Returns:
            Delay in seconds
        """
        if is_rate_limit_error(error):
            return self.rate_limit_delay
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]

    def _request_text(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        options: CallOptions,
    ) -> Tuple[str, TokenUsage]:
        """Perform one provider call and decode its text."""
        client = self.handle.client

        if self.provider == "anthropic":
            response = client.messages.create(
                model=model,
                max_tokens=options.max_tokens or LLM_MAX_TOKENS,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                temperature=options.temperature,
                timeout=options.timeout_seconds,
            )
            text = next(
                (
                    block.text
                    for block in (response.content or [])
                    if getattr(block, "type", None) == "text"
                ),
                None,
            )
            if text is None:
                raise ModelInvocationError("No text content in model response")
            return text, self._extract_usage(getattr(response, "usage", None))

        api_params = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": options.temperature,
            "timeout": options.timeout_seconds,
        }
        # GPT-5 and o* models use max_completion_tokens instead of max_tokens
        # and only the default temperature (1) is supported
        if model.startswith("gpt-5") or model.startswith("o"):
            api_params["temperature"] = 1.0
            if options.max_tokens:
                api_params["max_completion_tokens"] = options.max_tokens
        elif options.max_tokens:
            api_params["max_tokens"] = options.max_tokens

        response = client.chat.completions.create(**api_params)
        choice = response.choices[0]
        if getattr(choice.message, "refusal", None):
            logger.warning(f"Model refused: {choice.message.refusal}")
        content = choice.message.content
        if not content or not content.strip():
            raise ModelInvocationError(
                f"Empty response from model (finish_reason={getattr(choice, 'finish_reason', None)})"
            )
        return content, self._extract_usage(getattr(response, "usage", None))

    def generate(
        self,
        prompt: str,
        response_model: Type[T],
        temperature: float = 0.3,
        max_tokens: int = LLM_MAX_TOKENS,
        system_prompt: Optional[str] = None,
        max_retries: int = LLM_MAX_RETRIES,
    ) -> T:
        """Generate structured response using Pydantic model validation.

        Uses the same retry schedule as ``generate_text``.

        Args:
            prompt: User prompt/instruction
            response_model: Pydantic model class for structured output
            temperature: Sampling temperature (default: 0.3)
            max_tokens: Maximum tokens to generate
            system_prompt: Optional system prompt for context
            max_retries: Maximum number of attempts

        Returns:
            Validated Pydantic model instance

        Raises:
            Exception: The last observed error once all attempts are exhausted
        """
        prompt_hash = self._hash_prompt(prompt)
        logger.info(
            f"Generating structured response: model={self.model}, "
            f"response_model={response_model.__name__}, prompt_hash={prompt_hash}"
        )
        structured = self._get_structured_client()

        last_error: Optional[BaseException] = None
        for attempt in range(max_retries):
            start_time = time.time()
            try:
                if self.provider == "anthropic":
                    api_params = {
                        "model": self.model,
                        "max_tokens": max_tokens,
                        "temperature": temperature,
                        "messages": [{"role": "user", "content": prompt}],
                        "response_model": response_model,
                    }
                    if system_prompt:
                        api_params["system"] = system_prompt
                    response = structured.messages.create(**api_params)
                else:
                    messages = []
                    if system_prompt:
                        messages.append({"role": "system", "content": system_prompt})
                    messages.append({"role": "user", "content": prompt})
                    response = structured.chat.completions.create(
                        model=self.model,
                        messages=messages,
                        temperature=temperature,
                        max_tokens=max_tokens,
                        response_model=response_model,
                    )

                raw_response = getattr(response, "_raw_response", None)
                usage = self._extract_usage(getattr(raw_response, "usage", None))
                self._update_total_usage(usage)
                self._log_response(
                    prompt_hash=prompt_hash,
                    model=self.model,
                    latency_ms=(time.time() - start_time) * 1000,
                    attempt=attempt + 1,
                    success=True,
                    usage=usage,
                )
                return response

            except Exception as e:
                last_error = e
                self._log_response(
                    prompt_hash=prompt_hash,
                    model=self.model,
                    latency_ms=(time.time() - start_time) * 1000,
                    attempt=attempt + 1,
                    success=False,
                    error=str(e)[:200],
                )
                if attempt < max_retries - 1:
                    time.sleep(self._retry_delay(attempt, e))

        raise last_error or ModelInvocationError("Structured model call failed after all retries")

    def _get_structured_client(self):
        """Instructor-patched view of the model handle, built on first use."""
        if self._structured_client is None:
            if self.provider == "anthropic":
                self._structured_client = instructor.from_anthropic(self.handle.client)
            else:
                self._structured_client = instructor.from_openai(self.handle.client)
        return self._structured_client

    def _extract_usage(self, raw_usage: Any) -> TokenUsage:
        """Extract token usage from a provider usage object.

        Args:
            raw_usage: ``response.usage`` from either SDK (may be None)

        Returns:
            TokenUsage object with token counts
        """
        usage = TokenUsage()
        if raw_usage is None:
            return usage

        if self.provider == "anthropic":
            # Anthropic usage structure: input_tokens, output_tokens, cache_read_input_tokens
            usage.prompt_tokens = _as_int(getattr(raw_usage, "input_tokens", 0))
            usage.completion_tokens = _as_int(getattr(raw_usage, "output_tokens", 0))
            usage.total_tokens = usage.prompt_tokens + usage.completion_tokens
            usage.cached_tokens = _as_int(getattr(raw_usage, "cache_read_input_tokens", 0))
        else:
            usage.prompt_tokens = _as_int(getattr(raw_usage, "prompt_tokens", 0))
            usage.completion_tokens = _as_int(getattr(raw_usage, "completion_tokens", 0))
            usage.total_tokens = _as_int(getattr(raw_usage, "total_tokens", 0))
            details = getattr(raw_usage, "prompt_tokens_details", None)
            if details is not None:
                usage.cached_tokens = _as_int(getattr(details, "cached_tokens", 0))

        return usage

    def _update_total_usage(self, usage: TokenUsage) -> None:
        """Update cumulative token usage.

        Args:
            usage: Token usage from current request
        """
        self.total_usage.prompt_tokens += usage.prompt_tokens
        self.total_usage.completion_tokens += usage.completion_tokens
        self.total_usage.total_tokens += usage.total_tokens
        self.total_usage.cached_tokens += usage.cached_tokens

    def get_usage_summary(self) -> dict:
        """Get summary of total token usage.

        Returns:
            Dictionary with usage stats and cost estimates
        """
        # Cost estimates (per 1M tokens)
        costs = {
            "claude-sonnet-4-20250514": {"input": 3, "output": 15, "cached": 0.3},
            "claude-opus-4-20250514": {"input": 15, "output": 75, "cached": 1.5},
            "gpt-5": {"input": 1.25, "output": 10, "cached": 0.125},
            "gpt-4o-mini": {"input": 0.15, "output": 0.60, "cached": 0.075},
        }

        model_cost = costs.get(self.model, costs["claude-sonnet-4-20250514"])

        uncached_prompt = self.total_usage.prompt_tokens - self.total_usage.cached_tokens
        input_cost = (
            uncached_prompt * model_cost["input"]
            + self.total_usage.cached_tokens * model_cost["cached"]
        ) / 1_000_000
        output_cost = self.total_usage.completion_tokens * model_cost["output"] / 1_000_000

        return {
            "model": self.model,
            "prompt_tokens": self.total_usage.prompt_tokens,
            "completion_tokens": self.total_usage.completion_tokens,
            "total_tokens": self.total_usage.total_tokens,
            "cached_tokens": self.total_usage.cached_tokens,
            "cache_hit_rate": (
                f"{self.total_usage.cached_tokens / self.total_usage.prompt_tokens * 100:.1f}%"
                if self.total_usage.prompt_tokens > 0 else "0.0%"
            ),
            "estimated_cost_usd": round(input_cost + output_cost, 4),
            "input_cost_usd": round(input_cost, 4),
            "output_cost_usd": round(output_cost, 4),
        }

    def reset_usage(self) -> None:
        """Reset token usage counters."""
        self.total_usage = TokenUsage()

    def _hash_prompt(self, prompt: str) -> str:
        """Generate SHA256 hash of prompt for logging.

        Args:
            prompt: Text prompt to hash

        Returns:
            First 16 characters of SHA256 hash
        """
        return hashlib.sha256(prompt.encode()).hexdigest()[:16]

    def _log_response(
        self,
        prompt_hash: str,
        model: str,
        latency_ms: float,
        attempt: int,
        success: bool,
        usage: Optional[TokenUsage] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log response metadata.

        Args:
            prompt_hash: Hash of the prompt
            model: Model that served the call
            latency_ms: Response latency in milliseconds
            attempt: Attempt number (1-indexed)
            success: Whether the request succeeded
            usage: Token usage statistics
            error: Error message if failed
        """
        log_data = {
            "prompt_hash": prompt_hash,
            "model": model,
            "latency_ms": round(latency_ms, 2),
            "attempt": attempt,
            "success": success,
        }

        if usage:
            log_data["tokens"] = {
                "prompt": usage.prompt_tokens,
                "completion": usage.completion_tokens,
                "total": usage.total_tokens,
                "cached": usage.cached_tokens,
            }

        if error:
            log_data["error"] = error

        if success:
            logger.info(f"LLM response: {log_data}")
        else:
            logger.warning(f"LLM response failed: {log_data}")
