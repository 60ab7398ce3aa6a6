"""
transports.py — Outbound mail transports.

  SmtpTransport     smtp / gmail / sendgrid providers (smtplib in a worker thread)
  MailgunTransport  Mailgun HTTP API (httpx.AsyncClient)

Every transport exposes:
    await transport.send(message)  → transport message id
    await transport.verify()       → raises DeliveryError if unreachable
    await transport.aclose()

Errors are raised already classified:
  TransientDeliveryError   connection-level failure, timeout, server reply >= 500
  FatalDeliveryError       authentication failure, refused recipient, any other rejection
"""

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

import httpx
from starlette.concurrency import run_in_threadpool

from errors import DeliveryError, FatalDeliveryError, TransientDeliveryError

logger = logging.getLogger(__name__)

SENDGRID_SMTP_HOST = 'smtp.sendgrid.net'
SENDGRID_SMTP_PORT = 587
MAILGUN_API_BASE   = 'https://api.mailgun.net/v3'


@dataclass(frozen=True)
class MailMessage:
    to:          str
    subject:     str
    html_body:   str
    text_body:   str
    from_addr:   str
    from_name:   str | None = None

    @property
    def from_header(self) -> str:
        return formataddr((self.from_name, self.from_addr)) if self.from_name else self.from_addr


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

def classify_smtp_error(exc: Exception) -> DeliveryError:
    """Map an smtplib / socket failure onto the delivery error taxonomy."""
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return FatalDeliveryError(f'SMTP authentication failed: {exc}', status_code=exc.smtp_code)
    if isinstance(exc, (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError)):
        return TransientDeliveryError(f'SMTP connection error: {exc}',
                                      status_code=getattr(exc, 'smtp_code', None))
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        return FatalDeliveryError(f'Recipient refused: {exc}')
    if isinstance(exc, smtplib.SMTPResponseException):
        if exc.smtp_code >= 500:
            return TransientDeliveryError(f'SMTP server error {exc.smtp_code}: {exc.smtp_error!r}',
                                          status_code=exc.smtp_code)
        return FatalDeliveryError(f'SMTP rejected message {exc.smtp_code}: {exc.smtp_error!r}',
                                  status_code=exc.smtp_code)
    if isinstance(exc, smtplib.SMTPException):
        return FatalDeliveryError(f'SMTP error: {exc}')
    if isinstance(exc, OSError):
        # socket timeouts, connection resets, DNS failures
        return TransientDeliveryError(f'Connection error: {exc}')
    return FatalDeliveryError(f'Unexpected transport error: {exc}')


class SmtpTransport:
    name = 'smtp'

    def __init__(self, host: str, port: int = 587, secure: bool = False,
                 username: str | None = None, password: str | None = None,
                 timeout: float = 30.0):
        self.host     = host
        self.port     = port
        self.secure   = secure
        self.username = username
        self.password = password
        self.timeout  = timeout

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.secure:
            conn = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context)
        else:
            conn = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        try:
            if not self.secure:
                conn.ehlo()
                if conn.has_extn('starttls'):
                    conn.starttls(context=context)
                    conn.ehlo()
            if self.username:
                conn.login(self.username, self.password or '')
        except Exception:
            conn.close()
            raise
        return conn

    @staticmethod
    def _quit(conn: smtplib.SMTP) -> None:
        try:
            conn.quit()
        except (smtplib.SMTPException, OSError):
            conn.close()

    def _send_sync(self, message: MailMessage) -> str:
        msg = EmailMessage()
        msg['From']       = message.from_header
        msg['To']         = message.to
        msg['Subject']    = message.subject
        msg['Message-ID'] = make_msgid(domain=message.from_addr.rpartition('@')[2] or None)
        msg.set_content(message.text_body)
        msg.add_alternative(message.html_body, subtype='html')

        try:
            conn = self._connect()
            try:
                conn.send_message(msg)
            finally:
                self._quit(conn)
        except Exception as exc:
            raise classify_smtp_error(exc) from exc
        return msg['Message-ID']

    def _verify_sync(self) -> None:
        try:
            conn = self._connect()
            try:
                conn.noop()
            finally:
                self._quit(conn)
        except Exception as exc:
            raise classify_smtp_error(exc) from exc

    async def send(self, message: MailMessage) -> str:
        return await run_in_threadpool(self._send_sync, message)

    async def verify(self) -> None:
        await run_in_threadpool(self._verify_sync)

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Mailgun HTTP API
# ---------------------------------------------------------------------------

class MailgunTransport:
    name = 'mailgun'

    def __init__(self, api_key: str, domain: str, http_client: httpx.AsyncClient | None = None,
                 timeout: float = 30.0, api_base: str = MAILGUN_API_BASE):
        self.domain    = domain
        self.api_base  = api_base.rstrip('/')
        self._auth     = ('api', api_key)
        self._owns_client = http_client is None
        self._http     = http_client or httpx.AsyncClient(
            timeout=timeout,
            headers={'User-Agent': 'TripPlanner/1.0'},
        )

    @staticmethod
    def _classify_response(response: httpx.Response) -> DeliveryError:
        detail = response.text[:200]
        if response.status_code >= 500:
            return TransientDeliveryError(f'Mailgun server error {response.status_code}: {detail}',
                                          status_code=response.status_code)
        return FatalDeliveryError(f'Mailgun rejected message {response.status_code}: {detail}',
                                  status_code=response.status_code)

    async def send(self, message: MailMessage) -> str:
        try:
            response = await self._http.post(
                f'{self.api_base}/{self.domain}/messages',
                auth=self._auth,
                data={
                    'from':    message.from_header,
                    'to':      message.to,
                    'subject': message.subject,
                    'text':    message.text_body,
                    'html':    message.html_body,
                },
            )
        except httpx.TransportError as exc:
            raise TransientDeliveryError(f'Mailgun connection error: {exc}') from exc

        if response.status_code >= 400:
            raise self._classify_response(response)
        try:
            return response.json().get('id') or ''
        except ValueError:
            return ''

    async def verify(self) -> None:
        try:
            response = await self._http.get(f'{self.api_base}/domains/{self.domain}', auth=self._auth)
        except httpx.TransportError as exc:
            raise TransientDeliveryError(f'Mailgun connection error: {exc}') from exc
        if response.status_code >= 400:
            raise self._classify_response(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_transport(settings):
    """Pick the transport for EMAIL_PROVIDER (unknown providers fall back to SMTP)."""
    provider = (settings.email_provider or 'smtp').lower()

    if provider == 'mailgun':
        return MailgunTransport(settings.mailgun_api_key or '', settings.mailgun_domain or '')
    if provider == 'sendgrid':
        return SmtpTransport(SENDGRID_SMTP_HOST, SENDGRID_SMTP_PORT, secure=False,
                             username='apikey', password=settings.sendgrid_api_key,
                             timeout=settings.smtp_timeout)
    if provider not in ('smtp', 'gmail'):
        logger.warning('Unknown EMAIL_PROVIDER %r — using SMTP', provider)
    return SmtpTransport(settings.smtp_host, settings.smtp_port, secure=settings.smtp_secure,
                         username=settings.smtp_user, password=settings.smtp_password,
                         timeout=settings.smtp_timeout)
