"""
manage.py — Operator CLI for the trip planner.

Usage:
    python manage.py check-delivery
    python manage.py fingerprint --destination Lisbon --interests "food, tiles"
    python manage.py send-itinerary --destination Lisbon --email someone@example.com
"""

import asyncio
import logging

import click

from cache import RouteCache, compute_fingerprint
from config import Settings, validate_settings
from delivery import DeliveryClient
from errors import TripServiceError
from generation import GenerationClient
from normalizer import missing_required
from orchestrator import TripOrchestrator
from schemas import TripRequest


def _trip_options(fn):
    for option in reversed([
        click.option('--destination', required=True, help='City or region'),
        click.option('--start-date',  default=None, help='Trip start (YYYY-MM-DD)'),
        click.option('--end-date',    default=None, help='Trip end (YYYY-MM-DD)'),
        click.option('--budget',      default=None),
        click.option('--interests',   default=None),
        click.option('--people',      default='1', show_default=True),
    ]):
        fn = option(fn)
    return fn


def _request(destination, start_date, end_date, budget, interests, people, **extra) -> TripRequest:
    return TripRequest(
        destination  = destination,
        start_date   = start_date,
        end_date     = end_date,
        budget       = budget,
        interests    = interests,
        people_count = people,
        **extra,
    )


@click.group()
@click.option('--log-level', default='WARNING', show_default=True,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
def cli(log_level: str):
    """Trip planner maintenance commands."""
    logging.basicConfig(level=log_level.upper(), format='%(asctime)s [%(levelname)s] %(message)s')


@cli.command('check-delivery')
def check_delivery():
    """Verify that the configured mail transport is reachable."""
    settings = Settings.from_env()
    delivery = DeliveryClient.from_settings(settings)

    async def _check():
        try:
            return await delivery.verify_connection()
        finally:
            await delivery.aclose()

    if asyncio.run(_check()):
        click.echo(f'✓ {settings.email_provider} transport is reachable')
    else:
        click.echo(f'✗ {settings.email_provider} transport verification failed (see log)', err=True)
        raise SystemExit(1)


@cli.command('fingerprint')
@_trip_options
def fingerprint(**fields):
    """Print the cache key for a trip request."""
    click.echo(compute_fingerprint(_request(**fields)))


@cli.command('send-itinerary')
@_trip_options
@click.option('--email', required=True, help='Recipient address')
@click.option('--name',  default=None, help='Recipient name for the greeting')
def send_itinerary(email: str, name: str | None, **fields):
    """Generate and email one itinerary now (bypasses the cache)."""
    settings = Settings.from_env()
    for warning in validate_settings(settings):
        click.echo(f'! {warning}', err=True)

    request = _request(**fields, recipient_email=email, recipient_name=name)
    missing = missing_required(request)
    if missing:
        click.echo(f"✗ Missing or invalid: {', '.join(missing)}", err=True)
        raise SystemExit(2)

    orchestrator = TripOrchestrator(
        RouteCache(enabled=False),
        GenerationClient.from_settings(settings),
        DeliveryClient.from_settings(settings),
    )

    async def _run():
        try:
            return await orchestrator.generate_and_deliver(request, request_id='cli')
        finally:
            await orchestrator.delivery.aclose()
            await orchestrator.generator.aclose()

    try:
        outcome = asyncio.run(_run())
    except TripServiceError as exc:
        click.echo(f'✗ {type(exc).__name__}: {exc}', err=True)
        raise SystemExit(1)

    click.echo(f'✓ Sent itinerary for {request.destination} to {email} '
               f'(attempts={outcome.attempts_made}, id={outcome.transport_message_id})')


if __name__ == '__main__':
    cli()
