"""
Completion API client wrapper.

Provides one entry point for every LLM call in the app:
- Admission through the shared request (and optional token) rate limiter
- A single POST per call with a fixed low temperature — no retries,
  callers decide what a failure means for them
- Parsing of both known response shapes ("completion_message" and
  OpenAI-style "choices")
- Structured logging of every call (purpose, latency, usage — never content)

Usage:
    from callbot.llm.client import get_completion_client

    client = get_completion_client()
    result = await client.complete("Summarize: ...", max_tokens=200, purpose="summary")
    print(result.text)
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from callbot.config import settings
from callbot.llm.ratelimit import RateLimiter, TokenRateLimiter

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    """Result of a completion API call."""
    text: str
    shape: str
    latency_ms: int
    model: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


class LLMError(Exception):
    """Raised when a completion call fails."""
    pass


class CompletionAPIError(LLMError):
    """The completion endpoint answered with a non-success status."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Completion API error (HTTP {status_code}): {body}")


class CompletionParseError(LLMError):
    """The completion endpoint answered with a shape we don't recognize."""
    pass


def estimate_tokens(prompt: str, max_tokens: int) -> int:
    """Rough token estimate for the token-aware limiter (~4 chars per token)."""
    return len(prompt) // 4 + max_tokens


def parse_completion_text(data: Any) -> tuple[str, str]:
    """
    Pull the completion text out of either known response shape.

    Returns:
        (text, shape) where shape is "completion_message" or "choices".

    Raises:
        CompletionParseError: If neither shape matches.
    """
    if isinstance(data, dict):
        message = data.get("completion_message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, dict) and isinstance(content.get("text"), str):
                return content["text"].strip(), "completion_message"

        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            choice_message = choices[0].get("message")
            if isinstance(choice_message, dict) and isinstance(choice_message.get("content"), str):
                return choice_message["content"].strip(), "choices"

    raise CompletionParseError("Failed to parse response from completion API.")


def _usage_from(data: dict) -> tuple[Optional[int], Optional[int]]:
    """Token usage, when the vendor reports it (OpenAI-style or Llama metrics)."""
    usage = data.get("usage")
    if isinstance(usage, dict):
        return usage.get("prompt_tokens"), usage.get("completion_tokens")

    metrics = data.get("metrics")
    if isinstance(metrics, list):
        counts = {
            m.get("metric"): m.get("value")
            for m in metrics
            if isinstance(m, dict)
        }
        return counts.get("num_prompt_tokens"), counts.get("num_completion_tokens")

    return None, None


class CompletionClient:
    """
    Wrapper around the remote completion endpoint.

    One instance is shared across requests so its rate limiters see every
    call the process makes.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        limiter: Optional[RateLimiter] = None,
        token_limiter: Optional[TokenRateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key or settings.llm_api_key
        self._api_url = api_url or settings.llm_api_url
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature if temperature is None else temperature
        self._timeout = timeout_seconds or settings.llm_timeout_seconds
        self._transport = transport

        self._limiter = limiter or RateLimiter(
            max_requests=settings.llm_rate_limit_requests,
            time_window=settings.llm_rate_limit_window_seconds,
        )
        if token_limiter is None and settings.llm_token_budget > 0:
            token_limiter = TokenRateLimiter(
                max_tokens=settings.llm_token_budget,
                time_window=settings.llm_token_window_seconds,
            )
        self._token_limiter = token_limiter

        # Process-level usage counters
        self.session_call_count: int = 0
        self.session_failure_count: int = 0
        self.session_prompt_tokens: int = 0
        self.session_completion_tokens: int = 0

        logger.info(
            "llm_client.initialized",
            extra={
                "action": "llm_client.initialized",
                "model": self._model,
                "max_requests": self._limiter.max_requests,
                "time_window": self._limiter.time_window,
                "token_budget": self._token_limiter.max_tokens if self._token_limiter else 0,
            },
        )

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def complete(
        self,
        prompt: str,
        max_tokens: int = 150,
        purpose: str = "unknown",
    ) -> CompletionResult:
        """
        Send a prompt to the completion API and return its text.

        Args:
            prompt: Full prompt, sent as a single system message.
            max_tokens: Max output tokens.
            purpose: What this call is for (e.g., "relevance", "extraction").
                     Used in logs to distinguish call types.
                     NEVER include email content in this field.

        Returns:
            CompletionResult with the stripped response text.

        Raises:
            CompletionAPIError: Non-success HTTP status.
            CompletionParseError: Unrecognized response shape.
            LLMError: Transport failure.
        """
        waited = await self._limiter.admit()
        if self._token_limiter is not None:
            waited += await self._token_limiter.admit(estimate_tokens(prompt, max_tokens))

        payload = {
            "model": self._model,
            "messages": [{"role": "system", "content": prompt}],
            "temperature": self._temperature,
            "max_tokens": max_tokens,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

        start = time.monotonic()
        try:
            async with self._http() as http:
                resp = await http.post(self._api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            self.session_failure_count += 1
            logger.error(
                "llm.call.transport_error",
                extra={
                    "action": "llm.call.transport_error",
                    "purpose": purpose,
                    "error": str(e),
                },
            )
            raise LLMError(f"Completion API request failed: {e}") from e

        latency_ms = int((time.monotonic() - start) * 1000)

        if resp.is_error:
            self.session_failure_count += 1
            logger.error(
                "llm.call.api_error",
                extra={
                    "action": "llm.call.api_error",
                    "purpose": purpose,
                    "status_code": resp.status_code,
                    "response_body": resp.text[:500],
                    "latency_ms": latency_ms,
                },
            )
            raise CompletionAPIError(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            self.session_failure_count += 1
            raise CompletionParseError("Completion API returned non-JSON body.") from e

        try:
            text, shape = parse_completion_text(data)
        except CompletionParseError:
            self.session_failure_count += 1
            logger.error(
                "llm.call.unexpected_shape",
                extra={
                    "action": "llm.call.unexpected_shape",
                    "purpose": purpose,
                    "top_level_keys": sorted(data.keys()) if isinstance(data, dict) else type(data).__name__,
                },
            )
            raise

        prompt_tokens, completion_tokens = _usage_from(data)
        self.session_call_count += 1
        self.session_prompt_tokens += prompt_tokens or 0
        self.session_completion_tokens += completion_tokens or 0

        # NEVER log prompt or response content
        logger.info(
            "llm.call.success",
            extra={
                "action": "llm.call.success",
                "purpose": purpose,
                "shape": shape,
                "max_tokens": max_tokens,
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "rate_limit_wait_ms": int(waited * 1000),
                "latency_ms": latency_ms,
                "session_call_count": self.session_call_count,
            },
        )

        return CompletionResult(
            text=text,
            shape=shape,
            latency_ms=latency_ms,
            model=self._model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )

    def get_session_stats(self) -> dict:
        """Process-level usage statistics."""
        return {
            "total_calls": self.session_call_count,
            "failed_calls": self.session_failure_count,
            "total_prompt_tokens": self.session_prompt_tokens,
            "total_completion_tokens": self.session_completion_tokens,
            "model": self._model,
        }

    def reset_session_stats(self) -> None:
        self.session_call_count = 0
        self.session_failure_count = 0
        self.session_prompt_tokens = 0
        self.session_completion_tokens = 0


# Shared instance so every request goes through the same limiter
_client: Optional[CompletionClient] = None


def get_completion_client() -> CompletionClient:
    """Get or create the process-wide completion client."""
    global _client
    if _client is None:
        _client = CompletionClient()
    return _client
