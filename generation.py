"""
generation.py — Itinerary generation through the Anthropic Messages API.

GenerationClient.generate(prompt) returns a GenerationResult or raises
FatalGenerationError once its own retry budget is spent.

Retry policy
------------
  retryable   HTTP 429, HTTP >= 500, timeout, connection reset / DNS failure
  fatal       any other HTTP error status

A retryable failure waits retry_delay * attempt (linear backoff) and tries
again, up to max_retries extra attempts.  The SDK's own retries are switched
off so the budget here is the only one.

Fallback model
--------------
  * Truncated answer (stop_reason == 'max_tokens') from the primary model on
    the very first attempt → exactly one call to the fallback model with a
    larger token budget.  If that call also truncates or fails, the original
    truncated result is returned.
  * Timeouts that exhaust the retry budget → one fallback-model call before
    giving up.
The fallback call never falls back again.
"""

import asyncio
import inspect
import logging
import time

import anthropic
import httpx
from anthropic import AsyncAnthropic

from errors import (
    FatalGenerationError,
    GenerationError,
    GenerationTimeoutError,
    TransientGenerationError,
)
from schemas import FinishReason, GenerationResult, Usage

logger = logging.getLogger(__name__)

_STOP_REASONS = {
    'end_turn':      FinishReason.COMPLETE,
    'stop_sequence': FinishReason.COMPLETE,
    'max_tokens':    FinishReason.TRUNCATED,
}


def classify_status(status_code: int) -> type[GenerationError]:
    """429 and 5xx are worth retrying; anything else is final."""
    if status_code == 429 or status_code >= 500:
        return TransientGenerationError
    return FatalGenerationError


def _text_of(message) -> str:
    blocks = getattr(message, 'content', None) or []
    parts  = [getattr(b, 'text', '') for b in blocks if getattr(b, 'type', 'text') == 'text']
    return ''.join(p for p in parts if p).strip()


def _usage_of(message) -> Usage:
    usage = getattr(message, 'usage', None)
    prompt_tokens     = int(getattr(usage, 'input_tokens', 0) or 0)
    completion_tokens = int(getattr(usage, 'output_tokens', 0) or 0)
    return Usage(
        prompt_tokens     = prompt_tokens,
        completion_tokens = completion_tokens,
        total_tokens      = prompt_tokens + completion_tokens,
    )


class GenerationClient:

    def __init__(
        self,
        client: AsyncAnthropic | None = None,
        *,
        model: str,
        fallback_model: str | None = None,
        max_tokens: int = 4000,
        token_ceiling: int = 8000,
        token_increment: int = 2000,
        temperature: float = 0.7,
        timeout: float = 90.0,
        max_retries: int = 2,
        retry_delay: float = 2.0,
        sleep=asyncio.sleep,
    ):
        self._client         = client if client is not None else AsyncAnthropic(max_retries=0, timeout=timeout)
        self.model           = model
        self.fallback_model  = fallback_model
        self.max_tokens      = max_tokens
        self.token_ceiling   = token_ceiling
        self.token_increment = token_increment
        self.temperature     = temperature
        self.timeout         = timeout
        self.max_retries     = max_retries
        self.retry_delay     = retry_delay
        self._sleep          = sleep

    @classmethod
    def from_settings(cls, settings, client: AsyncAnthropic | None = None) -> 'GenerationClient':
        if client is None:
            client = AsyncAnthropic(
                api_key=settings.anthropic_api_key,
                max_retries=0,
                timeout=settings.generation_timeout,
            )
        return cls(
            client,
            model           = settings.generation_model,
            fallback_model  = settings.generation_fallback_model,
            max_tokens      = settings.generation_max_tokens,
            token_ceiling   = settings.generation_token_ceiling,
            token_increment = settings.generation_token_increment,
            temperature     = settings.generation_temperature,
            timeout         = settings.generation_timeout,
            max_retries     = settings.generation_max_retries,
            retry_delay     = settings.generation_retry_delay,
        )

    async def aclose(self) -> None:
        close = getattr(self._client, 'close', None)
        if close is not None:
            result = close()
            if inspect.isawaitable(result):
                await result

    # ── Public API ────────────────────────────────────────────────────────────

    async def generate(self, prompt: str, model: str | None = None,
                       allow_fallback: bool = True) -> GenerationResult:
        model = model or self.model

        try:
            result, attempts = await self._request_with_retries(prompt, model, self.max_tokens)
        except FatalGenerationError as exc:
            if isinstance(exc.__cause__, GenerationTimeoutError) and self._fallback_eligible(model, allow_fallback):
                logger.warning('Generation: %s timed out after %d attempt(s) — trying fallback %s',
                               model, self.max_retries + 1, self.fallback_model)
                try:
                    return await self._request(prompt, self.fallback_model, self._fallback_budget(), attempt=1)
                except GenerationError as fb_exc:
                    logger.error('Generation: fallback %s after timeout failed — %s',
                                 self.fallback_model, fb_exc)
            raise

        if result.truncated and attempts == 1 and self._fallback_eligible(model, allow_fallback):
            return await self._truncation_fallback(prompt, result)

        if result.truncated:
            logger.warning('Generation: returning truncated result (%d chars, %d completion tokens, max_tokens=%d)',
                           len(result.content), result.usage.completion_tokens, result.max_tokens or 0)
        return result

    # ── Internals ─────────────────────────────────────────────────────────────

    def _fallback_eligible(self, model: str, allow_fallback: bool) -> bool:
        return bool(
            allow_fallback
            and self.fallback_model
            and self.fallback_model != model
            and model == self.model
        )

    def _fallback_budget(self) -> int:
        return min(self.token_ceiling, self.max_tokens + self.token_increment)

    async def _truncation_fallback(self, prompt: str, original: GenerationResult) -> GenerationResult:
        budget = self._fallback_budget()
        logger.warning('Generation: %s truncated at %d tokens — one fallback call to %s with max_tokens=%d',
                       original.model_used, self.max_tokens, self.fallback_model, budget)
        try:
            fallback = await self._request(prompt, self.fallback_model, budget, attempt=1)
        except GenerationError as exc:
            logger.warning('Generation: fallback %s failed (%s) — keeping truncated result',
                           self.fallback_model, exc)
            return original

        if fallback.truncated:
            logger.warning('Generation: fallback %s also truncated — keeping original result',
                           self.fallback_model)
            return original
        return fallback

    async def _request_with_retries(self, prompt: str, model: str,
                                    max_tokens: int) -> tuple[GenerationResult, int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._request(prompt, model, max_tokens, attempt), attempt
            except TransientGenerationError as exc:
                if attempt > self.max_retries:
                    logger.error('Generation: %s still failing after %d attempt(s) — giving up',
                                 model, attempt)
                    raise FatalGenerationError(
                        f'Generation failed after {attempt} attempt(s): {exc}',
                        status_code=exc.status_code, model=model,
                    ) from exc
                delay = self.retry_delay * attempt
                logger.info('Generation: retrying %s in %.1fs (attempt %d failed: %s)',
                            model, delay, attempt, exc)
                await self._sleep(delay)

    async def _request(self, prompt: str, model: str, max_tokens: int, attempt: int) -> GenerationResult:
        logger.info('Generation request: model=%s attempt=%d prompt=%d chars max_tokens=%d',
                    model, attempt, len(prompt), max_tokens)
        started = time.monotonic()
        try:
            message = await asyncio.wait_for(
                self._client.messages.create(
                    model=model,
                    max_tokens=max_tokens,
                    temperature=self.temperature,
                    messages=[{'role': 'user', 'content': prompt}],
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, anthropic.APITimeoutError) as exc:
            logger.error('Generation timeout: model=%s attempt=%d after %.0fs', model, attempt, self.timeout)
            raise GenerationTimeoutError(
                f'Generation request timed out after {self.timeout:.0f}s', model=model,
            ) from exc
        except anthropic.APIConnectionError as exc:
            logger.error('Generation network error: model=%s attempt=%d — %s', model, attempt, exc)
            raise TransientGenerationError(f'Network error: {exc}', model=model) from exc
        except anthropic.APIStatusError as exc:
            status = exc.status_code
            logger.error('Generation API error: model=%s attempt=%d status=%d — %s',
                         model, attempt, status, exc.message)
            raise classify_status(status)(
                f'Generation API error {status}: {exc.message}', status_code=status, model=model,
            ) from exc
        except (httpx.TransportError, ConnectionError, OSError) as exc:
            logger.error('Generation transport error: model=%s attempt=%d — %s', model, attempt, exc)
            raise TransientGenerationError(f'Network error: {exc}', model=model) from exc

        duration_ms   = int((time.monotonic() - started) * 1000)
        stop_reason   = getattr(message, 'stop_reason', None)
        finish_reason = _STOP_REASONS.get(stop_reason, FinishReason.UNKNOWN)
        result = GenerationResult(
            content       = _text_of(message),
            finish_reason = finish_reason,
            usage         = _usage_of(message),
            model_used    = model,
            duration_ms   = duration_ms,
            max_tokens    = max_tokens,
        )
        logger.info('Generation response: model=%s %dms finish=%s tokens=%d (prompt %d, completion %d) %d chars',
                    result.model_used, duration_ms, finish_reason.value, result.usage.total_tokens,
                    result.usage.prompt_tokens, result.usage.completion_tokens, len(result.content))
        return result
