"""
config.py — Settings for the itinerary service.

All values come from environment variables (a .env file next to this module
is loaded first, overriding the process environment as app.py always did).
Settings.from_env() is called once at startup; the resulting object is
passed to every service constructor so tests can build their own.

Usage
-----
    from config import Settings, validate_settings

    settings = Settings.from_env()
    for warning in validate_settings(settings):
        logger.warning(warning)
"""

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from errors import ConfigurationError

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(__file__)

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning('Invalid integer for %s=%r — using default %d', name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning('Invalid number for %s=%r — using default %s', name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_str(name)
    if raw is None:
        return default
    return raw.lower() in _TRUE_VALUES


class Settings(BaseModel):
    # ── Generation service ───────────────────────────────────────────────────
    generation_model:           str   = 'claude-haiku-4-5-20251001'
    generation_fallback_model:  str | None = 'claude-sonnet-4-5-20250929'
    generation_max_tokens:      int   = Field(default=4000, ge=1)
    generation_token_ceiling:   int   = Field(default=8000, ge=1)
    generation_token_increment: int   = Field(default=2000, ge=0)
    generation_temperature:     float = Field(default=0.7, ge=0.0, le=1.0)
    generation_timeout:         float = Field(default=90.0, gt=0)     # seconds
    generation_max_retries:     int   = Field(default=2, ge=0)
    generation_retry_delay:     float = Field(default=2.0, ge=0)      # seconds
    anthropic_api_key:          str | None = None

    # ── Cache ────────────────────────────────────────────────────────────────
    cache_enabled:      bool = True
    cache_ttl:          int  = Field(default=3600, ge=1)              # seconds
    cache_check_period: int  = Field(default=600, ge=1)               # seconds

    # ── Delivery ─────────────────────────────────────────────────────────────
    email_provider:     str  = 'smtp'     # smtp | gmail | sendgrid | mailgun
    email_from:         str | None = None
    email_from_name:    str  = 'AI Travel Planner'
    smtp_host:          str  = 'smtp.gmail.com'
    smtp_port:          int  = 587
    smtp_secure:        bool = False
    smtp_user:          str | None = None
    smtp_password:      str | None = None
    smtp_timeout:       float = 30.0
    sendgrid_api_key:   str | None = None
    mailgun_api_key:    str | None = None
    mailgun_domain:     str | None = None
    email_max_retries:  int   = Field(default=3, ge=0)
    email_retry_delay:  float = Field(default=5.0, ge=0)              # seconds
    operator_email:     str | None = None

    # ── HTTP surface ─────────────────────────────────────────────────────────
    rate_limit_max:     int  = Field(default=100, ge=1)
    rate_limit_window:  int  = Field(default=900, ge=1)               # seconds
    trust_proxy:        bool = False                                  # honour X-Forwarded-For
    max_body_bytes:     int  = Field(default=10 * 1024 * 1024, ge=1)  # webhook body cap
    cors_origins:       list[str] = Field(default_factory=lambda: ['*'])
    log_level:          str  = 'INFO'
    app_env:            str  = 'development'

    @property
    def sender_address(self) -> str | None:
        """Envelope sender: EMAIL_FROM, else the SMTP login."""
        return self.email_from or self.smtp_user

    @property
    def notification_address(self) -> str | None:
        """Where failure notices go: OPERATOR_EMAIL, else the sender itself."""
        return self.operator_email or self.email_from

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == 'production'

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> 'Settings':
        if load_dotenv_file:
            load_dotenv(os.path.join(BASE_DIR, '.env'), override=True)

        defaults = cls()
        cors_raw = _env_str('CORS_ORIGINS', '*')
        return cls(
            generation_model           = _env_str('GENERATION_MODEL', defaults.generation_model),
            generation_fallback_model  = _env_str('GENERATION_FALLBACK_MODEL', defaults.generation_fallback_model),
            generation_max_tokens      = _env_int('GENERATION_MAX_TOKENS', defaults.generation_max_tokens),
            generation_token_ceiling   = _env_int('GENERATION_TOKEN_CEILING', defaults.generation_token_ceiling),
            generation_token_increment = _env_int('GENERATION_TOKEN_INCREMENT', defaults.generation_token_increment),
            generation_temperature     = _env_float('GENERATION_TEMPERATURE', defaults.generation_temperature),
            generation_timeout         = _env_float('GENERATION_TIMEOUT', defaults.generation_timeout),
            generation_max_retries     = _env_int('GENERATION_MAX_RETRIES', defaults.generation_max_retries),
            generation_retry_delay     = _env_float('GENERATION_RETRY_DELAY', defaults.generation_retry_delay),
            anthropic_api_key          = _env_str('ANTHROPIC_API_KEY'),

            cache_enabled      = _env_bool('CACHE_ENABLED', defaults.cache_enabled),
            cache_ttl          = _env_int('CACHE_TTL', defaults.cache_ttl),
            cache_check_period = _env_int('CACHE_CHECK_PERIOD', defaults.cache_check_period),

            email_provider    = (_env_str('EMAIL_PROVIDER', defaults.email_provider) or '').lower(),
            email_from        = _env_str('EMAIL_FROM'),
            email_from_name   = _env_str('EMAIL_FROM_NAME', defaults.email_from_name),
            smtp_host         = _env_str('SMTP_HOST', defaults.smtp_host),
            smtp_port         = _env_int('SMTP_PORT', defaults.smtp_port),
            smtp_secure       = _env_bool('SMTP_SECURE', defaults.smtp_secure),
            smtp_user         = _env_str('SMTP_USER'),
            smtp_password     = _env_str('SMTP_PASS'),
            smtp_timeout      = _env_float('SMTP_TIMEOUT', defaults.smtp_timeout),
            sendgrid_api_key  = _env_str('SENDGRID_API_KEY'),
            mailgun_api_key   = _env_str('MAILGUN_API_KEY'),
            mailgun_domain    = _env_str('MAILGUN_DOMAIN'),
            email_max_retries = _env_int('EMAIL_MAX_RETRIES', defaults.email_max_retries),
            email_retry_delay = _env_float('EMAIL_RETRY_DELAY', defaults.email_retry_delay),
            operator_email    = _env_str('OPERATOR_EMAIL'),

            rate_limit_max    = _env_int('RATE_LIMIT_MAX', defaults.rate_limit_max),
            rate_limit_window = _env_int('RATE_LIMIT_WINDOW', defaults.rate_limit_window),
            trust_proxy       = _env_bool('TRUST_PROXY', defaults.trust_proxy),
            max_body_bytes    = _env_int('MAX_BODY_BYTES', defaults.max_body_bytes),
            cors_origins      = [o.strip() for o in cors_raw.split(',') if o.strip()],
            log_level         = (_env_str('LOG_LEVEL', defaults.log_level) or 'INFO').upper(),
            app_env           = _env_str('APP_ENV', defaults.app_env),
        )


def validate_settings(settings: Settings) -> list[str]:
    """
    Return a list of configuration warnings.

    In production the same problems are fatal: ConfigurationError is raised
    so the process refuses to start half-configured.
    """
    problems = []
    if not (settings.anthropic_api_key or os.getenv('ANTHROPIC_API_KEY')):
        problems.append('ANTHROPIC_API_KEY is required')
    if not settings.sender_address:
        problems.append('EMAIL_FROM or SMTP_USER is required')
    if settings.email_provider == 'mailgun' and not (settings.mailgun_api_key and settings.mailgun_domain):
        problems.append('MAILGUN_API_KEY and MAILGUN_DOMAIN are required for the mailgun provider')
    if settings.generation_token_ceiling < settings.generation_max_tokens:
        problems.append('GENERATION_TOKEN_CEILING is below GENERATION_MAX_TOKENS — '
                        'fallback calls will not get a larger token budget')

    if problems and settings.is_production:
        raise ConfigurationError(f"Configuration errors: {', '.join(problems)}")
    return problems
