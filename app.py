#!/usr/bin/env python3
"""
Trip Planner — itinerary webhook (FastAPI, async)

The form builder posts a trip request to /api/route and gives up after a few
seconds; it also treats any non-2xx answer as a failure worth retrying.  So
every POST is answered 200 {"success": true, "message": ...} straight away
and the itinerary is generated and emailed in a background task.

Routes
  POST   /api/route     webhook (also POST /)
  GET    /health        liveness + model / cache info
  GET    /cache/stats   cache counters
  DELETE /cache         drop every cached itinerary

Services (cache, generation client, delivery client, orchestrator) are built
once in the lifespan handler and kept on app.state.
"""

import logging
import os
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from cache import RouteCache
from config import Settings, validate_settings
from delivery import DeliveryClient
from generation import GenerationClient
from normalizer import decode_body
from orchestrator import ACK_ACCEPTED, TripOrchestrator
from ratelimit import RateLimiter
from redis_client import get_redis
from schemas import Ack

# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s [%(levelname)s] %(message)s',
)
logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 30


def build_orchestrator(settings: Settings) -> TripOrchestrator:
    """Construct the service graph once per process."""
    return TripOrchestrator(
        RouteCache.from_settings(settings),
        GenerationClient.from_settings(settings),
        DeliveryClient.from_settings(settings),
    )


# ---------------------------------------------------------------------------
# Startup / shutdown
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    for warning in validate_settings(settings):
        logger.warning('Configuration warning: %s', warning)

    if app.state.orchestrator is None:
        app.state.orchestrator = build_orchestrator(settings)
    orchestrator: TripOrchestrator = app.state.orchestrator

    orchestrator.cache.start_sweeper()
    orchestrator.delivery.start_self_check()

    if app.state.rate_limiter is None:
        app.state.rate_limiter = RateLimiter.from_settings(settings)
        # Connect (or decide on the in-memory fallback) before the first request
        await run_in_threadpool(get_redis)

    logger.warning('Trip planner ready: model=%s fallback=%s cache=%s',
                   settings.generation_model, settings.generation_fallback_model,
                   'on' if settings.cache_enabled else 'off')
    try:
        yield
    finally:
        still_running = await orchestrator.drain(timeout=SHUTDOWN_GRACE_SECONDS)
        if still_running:
            logger.warning('Shutting down with %d itinerary task(s) still running', still_running)
        await orchestrator.cache.stop_sweeper()
        await orchestrator.delivery.aclose()
        await orchestrator.generator.aclose()


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

def create_app(settings: Settings | None = None,
               orchestrator: TripOrchestrator | None = None,
               rate_limiter: RateLimiter | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    app = FastAPI(title='Trip Planner API', docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.settings     = settings
    app.state.orchestrator = orchestrator
    app.state.rate_limiter = rate_limiter

    # ── CORS ─────────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=['GET', 'POST', 'DELETE', 'OPTIONS'],
        allow_headers=['Content-Type', 'Authorization'],
    )

    # ── Security headers ─────────────────────────────────────────────────────
    @app.middleware('http')
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options']        = 'DENY'
        response.headers['Referrer-Policy']        = 'strict-origin-when-cross-origin'
        if settings.is_production:
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

    # ── Request log (method, path, client, status, duration, content type) ───
    @app.middleware('http')
    async def log_requests(request: Request, call_next):
        started  = time.monotonic()
        response = await call_next(request)
        logger.info('HTTP %s %s ip=%s status=%d %dms type=%s',
                    request.method, request.url.path, _client_key(request, settings.trust_proxy),
                    response.status_code, int((time.monotonic() - started) * 1000),
                    request.headers.get('content-type', '-'))
        return response

    # ── Map HTTPException → { "success": false, "error": "..." } ─────────────
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code,
                            content={'success': False, 'error': exc.detail})

    # ── Routes ───────────────────────────────────────────────────────────────

    @app.post('/api/route')
    @app.post('/')
    async def route_webhook(request: Request):
        """
        Accept a trip request in any supported payload shape and acknowledge it.

        Always 200 with success=true.  Validation problems, oversized bodies, rate
        limiting and internal errors are only visible in the logs.
        """
        try:
            raw = await _read_body(request, settings.max_body_bytes)
            if raw is None:
                logger.warning('Webhook body over %d bytes from %s — request acknowledged, not processed',
                               settings.max_body_bytes, _client_key(request, settings.trust_proxy))
                return Ack(message=ACK_ACCEPTED).model_dump()
            data = decode_body(raw, request.headers.get('content-type'))

            client_key = _client_key(request, settings.trust_proxy)
            allowed, retry_after = request.app.state.rate_limiter.check(client_key)
            if not allowed:
                logger.warning('Rate limit hit: client=%s retry_after=%ds — request acknowledged, not processed',
                               client_key, retry_after)
                return Ack(message=ACK_ACCEPTED).model_dump()

            ack = await request.app.state.orchestrator.handle(data)
            return ack.model_dump()

        except Exception as exc:
            logger.error('Unhandled error in /api/route: %s', exc, exc_info=True)
            return Ack(message=ACK_ACCEPTED).model_dump()

    @app.get('/health')
    async def health(request: Request):
        orchestrator = request.app.state.orchestrator
        return {
            'status':        'ok',
            'model':         settings.generation_model,
            'cache_enabled': orchestrator.cache.enabled,
            'pending_tasks': orchestrator.pending,
        }

    @app.get('/cache/stats')
    async def cache_stats(request: Request):
        return {'cache': request.app.state.orchestrator.cache.stats()}

    @app.delete('/cache')
    async def clear_cache(request: Request):
        cache = request.app.state.orchestrator.cache
        if not cache.enabled:
            raise HTTPException(status_code=409, detail='Cache is disabled')
        cache.clear()
        return {'status': 'ok', 'message': 'Cache cleared'}

    return app


def _client_key(request: Request, trust_proxy: bool = False) -> str:
    """Socket peer address; the first X-Forwarded-For hop only behind a trusted proxy."""
    if trust_proxy:
        forwarded = request.headers.get('x-forwarded-for', '')
        if forwarded:
            return forwarded.split(',')[0].strip()
    return request.client.host if request.client else 'unknown'


async def _read_body(request: Request, limit: int) -> bytes | None:
    """Read the body, giving up (None) as soon as it exceeds limit bytes."""
    declared = request.headers.get('content-length', '')
    if declared.isdigit() and int(declared) > limit:
        return None

    chunks, size = [], 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            return None
        chunks.append(chunk)
    return b''.join(chunks)


app = create_app()


if __name__ == '__main__':
    uvicorn.run(app, host=os.getenv('HOST', '0.0.0.0'), port=int(os.getenv('PORT', '3000')))
