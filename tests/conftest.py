"""Shared fixtures: fake Anthropic responses, fake mail transport, controllable clock.

No network access — the Anthropic client and mail transports are AsyncMocks.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from config import Settings
from schemas import FinishReason, GenerationResult, Usage

ANTHROPIC_URL = 'https://api.anthropic.com/v1/messages'


# === Helpers ===


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_message(text: str = 'Day 1: Morning in Alfama...', stop_reason: str = 'end_turn',
                 input_tokens: int = 120, output_tokens: int = 900):
    """Shape-compatible stand-in for anthropic.types.Message."""
    return SimpleNamespace(
        content=[SimpleNamespace(type='text', text=text)],
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def api_status_error(status: int) -> anthropic.APIStatusError:
    request  = httpx.Request('POST', ANTHROPIC_URL)
    response = httpx.Response(status, request=request)
    return anthropic.APIStatusError(f'HTTP {status}', response=response, body=None)


def api_timeout_error() -> anthropic.APITimeoutError:
    return anthropic.APITimeoutError(request=httpx.Request('POST', ANTHROPIC_URL))


def api_connection_error() -> anthropic.APIConnectionError:
    return anthropic.APIConnectionError(request=httpx.Request('POST', ANTHROPIC_URL))


def make_result(content: str = 'Day 1: Morning in Alfama...', finish=FinishReason.COMPLETE,
                model: str = 'primary-model') -> GenerationResult:
    return GenerationResult(
        content=content,
        finish_reason=finish,
        usage=Usage(prompt_tokens=100, completion_tokens=800, total_tokens=900),
        model_used=model,
        duration_ms=1200,
    )


# === FIXTURES ===


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        generation_model='primary-model',
        generation_fallback_model='fallback-model',
        generation_max_tokens=4000,
        generation_token_ceiling=8000,
        generation_token_increment=2000,
        generation_timeout=5.0,
        generation_max_retries=2,
        generation_retry_delay=0.0,
        email_from='planner@example.com',
        operator_email='ops@example.com',
        email_max_retries=3,
        email_retry_delay=0.0,
        cache_ttl=3600,
        cache_check_period=600,
    )


@pytest.fixture
def anthropic_client() -> MagicMock:
    """client.messages.create is an AsyncMock; set side_effect/return_value per test."""
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=make_message())
    return client


@pytest.fixture
def transport() -> MagicMock:
    fake = MagicMock()
    fake.name = 'fake'
    fake.send = AsyncMock(return_value='<msg-1@example.com>')
    fake.verify = AsyncMock(return_value=None)
    fake.aclose = AsyncMock(return_value=None)
    return fake


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Records backoff delays instead of waiting."""
    return AsyncMock(return_value=None)
