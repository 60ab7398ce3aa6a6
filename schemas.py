"""
schemas.py — Pydantic v2 models for the itinerary pipeline.

  TripRequest       canonical request produced once by the normalizer (frozen)
  Usage             token accounting reported by the generation service
  GenerationResult  one finished generation call
  GenerationMetadata / CacheEntry
                    what the cache keeps for a fingerprint (frozen; replaced wholesale)
  DeliveryOutcome   result of one deliver() call, logged only
  Ack               the synchronous acknowledgment returned to the webhook caller
"""

import re
from datetime import date, datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Shared validator helpers ──────────────────────────────────────────────────

def _collapse(v) -> str | None:
    """Collapse all whitespace to a single space, strip ends. None if empty."""
    if v is None:
        return None
    s = re.sub(r'\s+', ' ', str(v)).strip()
    return s or None


def _strip_only(v) -> str | None:
    """Strip leading/trailing whitespace only — preserve internal newlines."""
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    for fmt in ('%Y-%m-%d', '%d.%m.%Y', '%d/%m/%Y', '%Y/%m/%d', '%d-%m-%Y'):
        try:
            return datetime.strptime(value.strip(), fmt).date()
        except ValueError:
            continue
    return None


# ── Request ───────────────────────────────────────────────────────────────────

class TripRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    destination:     str | None = Field(default=None, max_length=100)
    start_date:      str | None = None
    end_date:        str | None = None
    budget:          str | None = Field(default=None, max_length=500)
    interests:       str | None = Field(default=None, max_length=1000)
    people_count:    str        = '1'
    recipient_email: str | None = Field(default=None, max_length=254)
    recipient_name:  str | None = Field(default=None, max_length=200)
    phone:           str | None = Field(default=None, max_length=50)
    notes:           str | None = Field(default=None, max_length=2000)

    @field_validator('destination', 'start_date', 'end_date', 'budget',
                     'recipient_email', 'recipient_name', 'phone', mode='before')
    @classmethod
    def collapse_single_line(cls, v):
        return _collapse(v)

    @field_validator('interests', 'notes', mode='before')
    @classmethod
    def strip_multiline(cls, v):
        return _strip_only(v)

    @field_validator('people_count', mode='before')
    @classmethod
    def default_people(cls, v):
        return _collapse(v) or '1'

    @property
    def trip_days(self) -> int:
        """Inclusive day count; 1 when either date is missing or unparseable."""
        start, end = _parse_date(self.start_date), _parse_date(self.end_date)
        if start is None or end is None:
            return 1
        return abs((end - start).days) + 1

    @property
    def dates_label(self) -> str | None:
        if self.start_date and self.end_date:
            return f'{self.start_date} - {self.end_date}'
        return self.start_date or self.end_date

    def audit_echo(self) -> dict:
        """Request fields echoed into a cache entry (no contact details)."""
        return {
            'destination':  self.destination,
            'start_date':   self.start_date,
            'end_date':     self.end_date,
            'budget':       self.budget,
            'interests':    self.interests,
            'people_count': self.people_count,
        }


# ── Generation ────────────────────────────────────────────────────────────────

class FinishReason(str, Enum):
    COMPLETE  = 'complete'
    TRUNCATED = 'truncated'
    UNKNOWN   = 'unknown'


class Usage(BaseModel):
    prompt_tokens:     int = 0
    completion_tokens: int = 0
    total_tokens:      int = 0


class GenerationResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    content:       str
    finish_reason: FinishReason = FinishReason.UNKNOWN
    usage:         Usage        = Field(default_factory=Usage)
    model_used:    str
    duration_ms:   int          = 0
    max_tokens:    int | None   = None

    @property
    def truncated(self) -> bool:
        return self.finish_reason is FinishReason.TRUNCATED


class GenerationMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    model:         str | None   = None
    tokens_used:   int | None   = None
    finish_reason: FinishReason = FinishReason.UNKNOWN

    @classmethod
    def from_result(cls, result: GenerationResult) -> 'GenerationMetadata':
        return cls(
            model         = result.model_used,
            tokens_used   = result.usage.total_tokens,
            finish_reason = result.finish_reason,
        )


# ── Cache ─────────────────────────────────────────────────────────────────────

class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    fingerprint:         str
    generated_document:  str
    source_request_echo: dict = Field(default_factory=dict)
    generation_metadata: GenerationMetadata = Field(default_factory=GenerationMetadata)
    created_at:          float              # epoch seconds, from the cache clock
    ttl_seconds:         int

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    @property
    def cached_at_iso(self) -> str:
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc).isoformat()


# ── Delivery ──────────────────────────────────────────────────────────────────

class ErrorInfo(BaseModel):
    type:        str
    message:     str
    retryable:   bool = False
    status_code: int | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> 'ErrorInfo':
        return cls(
            type        = type(exc).__name__,
            message     = str(exc),
            retryable   = bool(getattr(exc, 'retryable', False)),
            status_code = getattr(exc, 'status_code', None),
        )


class DeliveryOutcome(BaseModel):
    success:              bool
    transport_message_id: str | None       = None
    attempts_made:        int              = 0
    last_error:           ErrorInfo | None = None


# ── Ack ───────────────────────────────────────────────────────────────────────

class Ack(BaseModel):
    success: bool = True
    message: str
