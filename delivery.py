"""
delivery.py — Itinerary delivery with bounded retries and operator notices.

DeliveryClient.deliver(recipient, rendered) never raises: it returns a
DeliveryOutcome describing how many attempts were made and the last error.
notify_failure(error, context) never raises either; any problem sending the
notice is logged and dropped.

A connectivity self-check can be scheduled at startup (start_self_check);
a failed check logs a warning and does not block later deliveries.
"""

import asyncio
import logging

from errors import DeliveryError, FatalDeliveryError, NotificationError
from rendering import RenderedEmail, render_failure_notice
from schemas import DeliveryOutcome, ErrorInfo
from transports import MailMessage, build_transport

logger = logging.getLogger(__name__)


class DeliveryClient:

    def __init__(self, transport, *, sender: str | None, sender_name: str | None = None,
                 operator_address: str | None = None, max_retries: int = 3,
                 retry_delay: float = 5.0, sleep=asyncio.sleep):
        self.transport        = transport
        self.sender           = sender
        self.sender_name      = sender_name
        self.operator_address = operator_address
        self.max_retries      = max_retries
        self.retry_delay      = retry_delay
        self._sleep           = sleep
        self._self_check: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings, transport=None) -> 'DeliveryClient':
        return cls(
            transport if transport is not None else build_transport(settings),
            sender           = settings.sender_address,
            sender_name      = settings.email_from_name,
            operator_address = settings.notification_address,
            max_retries      = settings.email_max_retries,
            retry_delay      = settings.email_retry_delay,
        )

    # ── Connectivity self-check ───────────────────────────────────────────────

    async def verify_connection(self) -> bool:
        try:
            await self.transport.verify()
        except Exception as exc:
            logger.warning('Mail transport (%s) verification failed: %s — deliveries will still be attempted',
                           getattr(self.transport, 'name', 'unknown'), exc)
            return False
        logger.info('Mail transport (%s) verified', getattr(self.transport, 'name', 'unknown'))
        return True

    def start_self_check(self) -> asyncio.Task:
        """Schedule verify_connection() without waiting for it."""
        self._self_check = asyncio.create_task(self.verify_connection(), name='mail-self-check')
        return self._self_check

    async def aclose(self) -> None:
        if self._self_check is not None and not self._self_check.done():
            self._self_check.cancel()
        await self.transport.aclose()

    # ── Delivery ──────────────────────────────────────────────────────────────

    def _message(self, to: str, rendered: RenderedEmail) -> MailMessage:
        return MailMessage(
            to        = to,
            subject   = rendered.subject,
            html_body = rendered.html_body,
            text_body = rendered.text_body,
            from_addr = self.sender or '',
            from_name = self.sender_name,
        )

    async def deliver(self, recipient: str, rendered: RenderedEmail) -> DeliveryOutcome:
        if not recipient:
            return DeliveryOutcome(
                success=False, attempts_made=0,
                last_error=ErrorInfo.from_exception(FatalDeliveryError('Recipient not specified')),
            )

        message    = self._message(recipient, rendered)
        attempt    = 0
        last_error = None
        while True:
            attempt += 1
            logger.info('Sending itinerary to %s (attempt %d)', recipient, attempt)
            try:
                message_id = await self.transport.send(message)
            except DeliveryError as exc:
                last_error = exc
            except Exception as exc:
                # Transports classify their own errors; anything else is a bug → not retried
                last_error = FatalDeliveryError(f'Unexpected transport error: {exc}')
                logger.error('Unexpected error from mail transport: %s', exc, exc_info=True)
            else:
                logger.info('Itinerary sent to %s (message_id=%s, attempts=%d)', recipient, message_id, attempt)
                return DeliveryOutcome(success=True, transport_message_id=message_id or None,
                                       attempts_made=attempt)

            logger.error('Sending to %s failed (attempt %d): %s', recipient, attempt, last_error)
            if not last_error.retryable or attempt > self.max_retries:
                return DeliveryOutcome(success=False, attempts_made=attempt,
                                       last_error=ErrorInfo.from_exception(last_error))

            delay = self.retry_delay * attempt
            logger.info('Retrying delivery to %s in %.1fs', recipient, delay)
            await self._sleep(delay)

    # ── Operator notification ─────────────────────────────────────────────────

    async def _send_notice(self, error: BaseException, context: dict) -> None:
        rendered = render_failure_notice(error, context)
        try:
            await self.transport.send(self._message(self.operator_address, rendered))
        except Exception as exc:
            raise NotificationError(f'Could not send failure notice: {exc}') from exc

    async def notify_failure(self, error: BaseException, context: dict | None = None) -> None:
        """Best-effort failure notice to the operator address.  Never raises."""
        if not self.operator_address:
            logger.warning('Cannot send failure notification: no operator address configured')
            return
        try:
            await self._send_notice(error, context or {})
        except Exception as exc:
            logger.error('Failed to send failure notification: %s', exc)
            return
        logger.info('Failure notification sent to %s', self.operator_address)
