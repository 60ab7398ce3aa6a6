"""
orchestrator.py — Request → ack, then generation and delivery in the background.

    ack = await orchestrator.handle(raw_payload)

handle() always returns a success Ack, quickly, whatever happens later:

  invalid request   → generic "accepted" ack, nothing else happens (logged)
  cache hit         → "processing" ack; background: deliver the cached itinerary
  cache miss        → "processing" ack; background: prompt → generate → cache → deliver

Background work runs as asyncio tasks that the request path never awaits.
Failures inside a task are caught at the task boundary, logged, and reported
through DeliveryClient.notify_failure(); there are no retries at this level.
A done-callback on every task logs anything that still escapes.
"""

import asyncio
import logging
import uuid

from cache import RouteCache, compute_fingerprint
from delivery import DeliveryClient
from errors import FatalDeliveryError, FatalGenerationError, ValidationError
from generation import GenerationClient
from normalizer import missing_required, normalize_payload
from prompts import build_itinerary_prompt
from rendering import render_itinerary_email
from schemas import Ack, CacheEntry, DeliveryOutcome, GenerationMetadata, TripRequest

logger = logging.getLogger(__name__)

ACK_ACCEPTED   = 'Request accepted! A travel manager will contact you shortly to confirm the details.'
ACK_PROCESSING = 'Your itinerary is being generated. Check your inbox within 5 minutes!'


class TripOrchestrator:

    def __init__(
        self,
        cache: RouteCache,
        generator: GenerationClient,
        delivery: DeliveryClient,
        *,
        normalizer=normalize_payload,
        prompt_builder=build_itinerary_prompt,
        renderer=render_itinerary_email,
    ):
        self.cache          = cache
        self.generator      = generator
        self.delivery       = delivery
        self._normalize     = normalizer
        self._build_prompt  = prompt_builder
        self._render        = renderer
        self._tasks: set[asyncio.Task] = set()

    # ── Request path ──────────────────────────────────────────────────────────

    async def handle(self, raw) -> Ack:
        """Acknowledge immediately; schedule the real work.  Never raises."""
        request_id = uuid.uuid4().hex[:8]
        try:
            request = self._normalize(raw)
            missing = missing_required(request)
            if missing:
                logger.warning('req=%s: %s — request accepted without processing',
                               request_id, ValidationError(missing))
                return Ack(message=ACK_ACCEPTED)

            fingerprint = compute_fingerprint(request)
            cached      = self.cache.get(fingerprint)

            if cached is not None:
                logger.info('req=%s: cached itinerary for %s → %s',
                            request_id, request.destination, request.recipient_email)
                self._spawn(request_id, request, self.deliver_cached(request, cached, request_id))
            else:
                logger.info('req=%s: generating itinerary for %s (%d day(s)) → %s',
                            request_id, request.destination, request.trip_days, request.recipient_email)
                self._spawn(request_id, request, self.generate_and_deliver(request, fingerprint, request_id))
            return Ack(message=ACK_PROCESSING)

        except Exception as exc:
            logger.error('req=%s: request handling error: %s', request_id, exc, exc_info=True)
            return Ack(message=ACK_ACCEPTED)

    # ── Pipeline steps (awaitable directly, e.g. from the CLI) ────────────────

    async def deliver_cached(self, request: TripRequest, entry: CacheEntry,
                             request_id: str = '-') -> DeliveryOutcome:
        return await self._deliver_document(request, entry.generated_document, request_id)

    async def generate_and_deliver(self, request: TripRequest, fingerprint: str | None = None,
                                   request_id: str = '-') -> DeliveryOutcome:
        """Generate, cache and deliver.  Raises FatalGenerationError / FatalDeliveryError."""
        fingerprint = fingerprint or compute_fingerprint(request)
        prompt      = self._build_prompt(request)
        result      = await self.generator.generate(prompt)

        if not result.content:
            raise FatalGenerationError('Generation service returned an empty response',
                                       model=result.model_used)

        logger.info('req=%s: itinerary generated for %s (%d chars, finish=%s, tokens=%d, model=%s)',
                    request_id, request.destination, len(result.content),
                    result.finish_reason.value, result.usage.total_tokens, result.model_used)

        self.cache.set(fingerprint, result.content,
                       GenerationMetadata.from_result(result), request.audit_echo())

        return await self._deliver_document(request, result.content, request_id)

    async def _deliver_document(self, request: TripRequest, document: str,
                                request_id: str) -> DeliveryOutcome:
        rendered = self._render(request, document)
        outcome  = await self.delivery.deliver(request.recipient_email, rendered)
        if not outcome.success:
            error = outcome.last_error
            raise FatalDeliveryError(
                f'Delivery to {request.recipient_email} failed after {outcome.attempts_made} '
                f'attempt(s): {error.message if error else "unknown error"}',
                status_code=error.status_code if error else None,
            )
        logger.info('req=%s: itinerary delivered to %s (attempts=%d)',
                    request_id, request.recipient_email, outcome.attempts_made)
        return outcome

    # ── Background tasks ──────────────────────────────────────────────────────

    def _spawn(self, request_id: str, request: TripRequest, work) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(request_id, request, work),
                                   name=f'itinerary-{request_id}')
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def _guarded(self, request_id: str, request: TripRequest, work) -> None:
        try:
            await work
        except Exception as exc:
            logger.error('req=%s: itinerary pipeline failed for %s → %s: %s',
                         request_id, request.destination, request.recipient_email, exc, exc_info=True)
            await self.delivery.notify_failure(exc, {
                'request_id': request_id,
                'destination': request.destination,
                'recipient_email': request.recipient_email,
                'start_date': request.start_date,
                'end_date': request.end_date,
            })

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning('Background task %s was cancelled', task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.critical('Background task %s escaped its error handling: %s',
                            task.get_name(), exc, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for in-flight background work; returns how many tasks are still running."""
        if not self._tasks:
            return 0
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        return len(still_running)
