import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    ENVIRONMENT: str = "dev"  # "dev" | "test" | "prod"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    DB_STATEMENT_TIMEOUT_MS: int = 5000

    # Identity (bearer tokens issued upstream)
    JWT_SECRET: Optional[str] = None  # HS256 shared secret
    JWT_ISSUER: Optional[str] = None
    JWT_AUDIENCE: Optional[str] = None
    JWT_JWKS_URL: Optional[str] = None  # RS256 verification when no shared secret
    AUTH_ALLOW_USER_HEADER: bool = False  # X-User-Id identity (dev/test only)

    # Reference day for quota ledger and reconciler schedule
    QUOTA_TIMEZONE: str = "Europe/Rome"
    QUOTA_CAS_MAX_ATTEMPTS: int = 8

    # Expiration reconciler schedule (local time in QUOTA_TIMEZONE)
    RECONCILE_HOUR: int = 0
    RECONCILE_MINUTE: int = 5

    # Per-process AI rate limiter
    AI_RATE_LIMIT_ENABLED: bool = True
    AI_RATE_LIMIT_WINDOW_SECONDS: int = 60
    AI_RATE_LIMIT_MAX: int = 10
    AI_RATE_LIMIT_SWEEP_SECONDS: int = 300

    # AI chat input
    AI_MAX_INPUT_CHARS: int = 4000

    # Downstream AI endpoint (opaque)
    AI_API_URL: Optional[str] = None
    AI_API_KEY: Optional[str] = None
    AI_TIMEOUT_SECONDS: float = 30.0

    # Usage log dispatch
    USAGE_LOG_MODE: str = "thread"  # thread | rq
    USAGE_LOG_WORKERS: int = 2
    REDIS_URL: str = "redis://localhost:6379/0"
    USAGE_LOG_QUEUE: str = "usage-log"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Header auth in prod always raises.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("quotagate")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AI_API_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if not (cfg.JWT_SECRET or cfg.JWT_JWKS_URL):
        missing.append("JWT_SECRET|JWT_JWKS_URL")
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.USAGE_LOG_MODE not in {"thread", "rq"}:
        message = f"USAGE_LOG_MODE must be 'thread' or 'rq', got {cfg.USAGE_LOG_MODE!r}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.ENVIRONMENT.lower() == "prod" and cfg.AUTH_ALLOW_USER_HEADER:
        raise RuntimeError("AUTH_ALLOW_USER_HEADER must not be enabled in prod")

    return True
