"""Tests for DeliveryClient retries, operator notices and the mail transports."""

import smtplib
from unittest.mock import MagicMock

import httpx
import pytest

import transports
from delivery import DeliveryClient
from errors import FatalDeliveryError, TransientDeliveryError
from rendering import RenderedEmail
from transports import MailgunTransport, MailMessage, SmtpTransport, build_transport, classify_smtp_error

RENDERED = RenderedEmail(subject='Your trip itinerary for Lisbon', html_body='<p>Day 1</p>', text_body='Day 1')


def _delivery(transport, no_sleep, **overrides) -> DeliveryClient:
    params = dict(
        sender='planner@example.com',
        sender_name='Trip Planner',
        operator_address='ops@example.com',
        max_retries=3,
        retry_delay=5.0,
        sleep=no_sleep,
    )
    params.update(overrides)
    return DeliveryClient(transport, **params)


class TestDeliver:

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, transport, no_sleep):
        outcome = await _delivery(transport, no_sleep).deliver('ana@example.com', RENDERED)

        assert outcome.success is True
        assert outcome.attempts_made == 1
        assert outcome.transport_message_id == '<msg-1@example.com>'
        message = transport.send.await_args.args[0]
        assert message.to == 'ana@example.com'
        assert message.subject == RENDERED.subject
        assert message.from_header == 'Trip Planner <planner@example.com>'

    @pytest.mark.asyncio
    async def test_reset_then_success(self, transport, no_sleep):
        transport.send.side_effect = [TransientDeliveryError('connection reset'), '<msg-2@example.com>']
        outcome = await _delivery(transport, no_sleep).deliver('ana@example.com', RENDERED)

        assert outcome.success is True
        assert outcome.attempts_made == 2
        assert [c.args[0] for c in no_sleep.await_args_list] == [5.0]

    @pytest.mark.asyncio
    async def test_linear_backoff_until_exhausted(self, transport, no_sleep):
        transport.send.side_effect = TransientDeliveryError('server busy', status_code=554)
        outcome = await _delivery(transport, no_sleep).deliver('ana@example.com', RENDERED)

        assert outcome.success is False
        assert outcome.attempts_made == 4
        assert transport.send.await_count == 4
        assert [c.args[0] for c in no_sleep.await_args_list] == [5.0, 10.0, 15.0]
        assert outcome.last_error.type == 'TransientDeliveryError'
        assert outcome.last_error.status_code == 554

    @pytest.mark.asyncio
    async def test_fatal_error_stops_immediately(self, transport, no_sleep):
        transport.send.side_effect = FatalDeliveryError('auth failed', status_code=535)
        outcome = await _delivery(transport, no_sleep).deliver('ana@example.com', RENDERED)

        assert outcome.success is False
        assert outcome.attempts_made == 1
        assert outcome.last_error.retryable is False
        no_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_not_retried(self, transport, no_sleep):
        transport.send.side_effect = RuntimeError('boom')
        outcome = await _delivery(transport, no_sleep).deliver('ana@example.com', RENDERED)

        assert outcome.success is False
        assert outcome.attempts_made == 1
        assert outcome.last_error.type == 'FatalDeliveryError'

    @pytest.mark.asyncio
    async def test_missing_recipient(self, transport, no_sleep):
        outcome = await _delivery(transport, no_sleep).deliver('', RENDERED)

        assert outcome.success is False
        assert outcome.attempts_made == 0
        transport.send.assert_not_called()


class TestNotifyFailure:

    @pytest.mark.asyncio
    async def test_sends_notice_to_operator(self, transport, no_sleep):
        await _delivery(transport, no_sleep).notify_failure(
            FatalDeliveryError('gave up'), {'destination': 'Lisbon'},
        )

        message = transport.send.await_args.args[0]
        assert message.to == 'ops@example.com'
        assert 'FatalDeliveryError' in message.subject
        assert 'Lisbon' in message.text_body

    @pytest.mark.asyncio
    async def test_never_raises_when_transport_fails(self, transport, no_sleep):
        transport.send.side_effect = TransientDeliveryError('down')
        await _delivery(transport, no_sleep).notify_failure(RuntimeError('x'), {})
        assert transport.send.await_count == 1

    @pytest.mark.asyncio
    async def test_skipped_without_operator_address(self, transport, no_sleep):
        await _delivery(transport, no_sleep, operator_address=None).notify_failure(RuntimeError('x'))
        transport.send.assert_not_called()


class TestVerifyConnection:

    @pytest.mark.asyncio
    async def test_verified(self, transport, no_sleep):
        assert await _delivery(transport, no_sleep).verify_connection() is True

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self, transport, no_sleep):
        transport.verify.side_effect = TransientDeliveryError('unreachable')
        assert await _delivery(transport, no_sleep).verify_connection() is False

    @pytest.mark.asyncio
    async def test_self_check_task_and_close(self, transport, no_sleep):
        delivery = _delivery(transport, no_sleep)
        task = delivery.start_self_check()
        assert await task is True

        await delivery.aclose()
        transport.aclose.assert_awaited_once()

    def test_from_settings_uses_sender_and_operator(self, settings, transport):
        delivery = DeliveryClient.from_settings(settings, transport)
        assert delivery.sender == 'planner@example.com'
        assert delivery.operator_address == 'ops@example.com'
        assert delivery.max_retries == 3


class TestSmtpClassification:

    @pytest.mark.parametrize('exc', [
        smtplib.SMTPServerDisconnected('Connection unexpectedly closed'),
        smtplib.SMTPConnectError(421, b'Service not available'),
        smtplib.SMTPResponseException(554, b'Transaction failed'),
        ConnectionResetError('reset by peer'),
        TimeoutError('timed out'),
    ])
    def test_transient(self, exc):
        assert isinstance(classify_smtp_error(exc), TransientDeliveryError)

    @pytest.mark.parametrize('exc', [
        smtplib.SMTPAuthenticationError(535, b'Bad credentials'),
        smtplib.SMTPRecipientsRefused({'x@example.com': (550, b'No such user')}),
        smtplib.SMTPResponseException(450, b'Mailbox busy'),
        smtplib.SMTPException('odd'),
        ValueError('bad header'),
    ])
    def test_fatal(self, exc):
        assert isinstance(classify_smtp_error(exc), FatalDeliveryError)

    def test_status_code_is_kept(self):
        assert classify_smtp_error(smtplib.SMTPResponseException(552, b'Too big')).status_code == 552


MESSAGE = MailMessage(to='ana@example.com', subject='Trip', html_body='<p>x</p>', text_body='x',
                      from_addr='planner@example.com', from_name='Trip Planner')


def _mailgun(handler) -> MailgunTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MailgunTransport('key-123', 'mg.example.com', http_client=client)


class TestSmtpTransport:

    @pytest.fixture
    def smtp(self, monkeypatch) -> MagicMock:
        conn = MagicMock()
        conn.has_extn.return_value = True
        factory = MagicMock(return_value=conn)
        monkeypatch.setattr(transports.smtplib, 'SMTP', factory)
        conn.factory = factory
        return conn

    def _transport(self, **overrides) -> SmtpTransport:
        params = dict(host='mail.example.com', port=587, username='planner@example.com', password='s3cret')
        params.update(overrides)
        return SmtpTransport(**params)

    @pytest.mark.asyncio
    async def test_send_uses_starttls_and_login(self, smtp):
        message_id = await self._transport().send(MESSAGE)

        smtp.factory.assert_called_once_with('mail.example.com', 587, timeout=30.0)
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with('planner@example.com', 's3cret')
        sent = smtp.send_message.call_args.args[0]
        assert sent['To'] == 'ana@example.com'
        assert sent['From'] == 'Trip Planner <planner@example.com>'
        assert message_id == sent['Message-ID']
        smtp.quit.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_starttls_or_login_when_not_offered(self, smtp):
        smtp.has_extn.return_value = False
        await self._transport(username=None).send(MESSAGE)

        smtp.starttls.assert_not_called()
        smtp.login.assert_not_called()

    @pytest.mark.asyncio
    async def test_server_error_on_send_is_transient_and_connection_closed(self, smtp):
        smtp.send_message.side_effect = smtplib.SMTPDataError(554, b'Transaction failed')

        with pytest.raises(TransientDeliveryError) as exc_info:
            await self._transport().send(MESSAGE)
        assert exc_info.value.status_code == 554
        smtp.quit.assert_called_once()

    @pytest.mark.asyncio
    async def test_login_failure_is_fatal_and_connection_closed(self, smtp):
        smtp.login.side_effect = smtplib.SMTPAuthenticationError(535, b'Bad credentials')

        with pytest.raises(FatalDeliveryError):
            await self._transport().send(MESSAGE)
        smtp.close.assert_called_once()
        smtp.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_quit_falls_back_to_close(self, smtp):
        smtp.quit.side_effect = smtplib.SMTPServerDisconnected('gone')
        await self._transport().send(MESSAGE)
        smtp.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_verify_runs_noop_and_closes(self, smtp):
        await self._transport().verify()
        smtp.noop.assert_called_once()
        smtp.quit.assert_called_once()

    @pytest.mark.asyncio
    async def test_verify_noop_failure_still_closes(self, smtp):
        smtp.noop.side_effect = smtplib.SMTPServerDisconnected('Connection unexpectedly closed')

        with pytest.raises(TransientDeliveryError):
            await self._transport().verify()
        smtp.quit.assert_called_once()


class TestMailgunTransport:

    @pytest.mark.asyncio
    async def test_send_posts_form_and_returns_id(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={'id': '<mg-1@mg.example.com>', 'message': 'Queued'})

        transport = _mailgun(handler)
        assert await transport.send(MESSAGE) == '<mg-1@mg.example.com>'

        request = seen[0]
        assert request.url == 'https://api.mailgun.net/v3/mg.example.com/messages'
        assert request.headers['authorization'].startswith('Basic ')
        assert b'to=ana%40example.com' in request.content

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        transport = _mailgun(lambda request: httpx.Response(503, text='unavailable'))
        with pytest.raises(TransientDeliveryError) as exc_info:
            await transport.send(MESSAGE)
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_is_fatal(self):
        transport = _mailgun(lambda request: httpx.Response(401, text='Forbidden'))
        with pytest.raises(FatalDeliveryError):
            await transport.send(MESSAGE)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError('refused', request=request)

        with pytest.raises(TransientDeliveryError):
            await _mailgun(handler).send(MESSAGE)

    @pytest.mark.asyncio
    async def test_verify_checks_domain(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={'domain': {'name': 'mg.example.com'}})

        await _mailgun(handler).verify()
        assert seen == ['/v3/domains/mg.example.com']


class TestBuildTransport:

    def test_mailgun(self, settings):
        transport = build_transport(settings.model_copy(update={
            'email_provider': 'mailgun', 'mailgun_api_key': 'k', 'mailgun_domain': 'mg.example.com',
        }))
        assert isinstance(transport, MailgunTransport)
        assert transport.domain == 'mg.example.com'

    def test_sendgrid_uses_smtp_relay(self, settings):
        transport = build_transport(settings.model_copy(update={
            'email_provider': 'sendgrid', 'sendgrid_api_key': 'SG.x',
        }))
        assert isinstance(transport, SmtpTransport)
        assert (transport.host, transport.port, transport.username) == ('smtp.sendgrid.net', 587, 'apikey')

    def test_smtp_default(self, settings):
        transport = build_transport(settings.model_copy(update={
            'email_provider': 'smtp', 'smtp_host': 'mail.example.com', 'smtp_port': 465, 'smtp_secure': True,
        }))
        assert isinstance(transport, SmtpTransport)
        assert (transport.host, transport.port, transport.secure) == ('mail.example.com', 465, True)
