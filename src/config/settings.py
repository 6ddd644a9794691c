"""
Application Settings for Receipt Insights.

All runtime configuration is read from environment variables prefixed with
``RECEIPTS_``. ``Settings.from_env()`` is called once at startup; services
receive the values they need as constructor arguments.

Environment variables:
- RECEIPTS_DATABASE_URL: SQLAlchemy async URL (default: local SQLite file)
- RECEIPTS_LLM_BASE_URL / RECEIPTS_LLM_API_KEY / RECEIPTS_LLM_MODEL
- RECEIPTS_LLM_VISION_MODEL: model used for receipt image extraction
- RECEIPTS_LLM_TIMEOUT: seconds per LLM request
- RECEIPTS_LLM_MAX_REQUESTS_PER_MINUTE: local rolling-window cap
- RECEIPTS_JOB_MAX_ATTEMPTS / RECEIPTS_JOB_BACKOFF_SECONDS
- RECEIPTS_JWT_SECRET / RECEIPTS_JWT_ALGORITHM
- RECEIPTS_CORS_ORIGINS: comma-separated list
- RECEIPTS_ENVIRONMENT: development | production
- RECEIPTS_DEV_MODE: "1" enables dev defaults (console logs, reload)
- RECEIPTS_SCHEDULER_ENABLED: "1" starts the in-process scheduler
- RECEIPTS_UPLOAD_DIR: directory for uploaded receipt images
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from src.lib.exceptions import ConfigurationError

ENV_PREFIX = "RECEIPTS_"

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./receipts.db"
DEFAULT_LLM_BASE_URL = "https://api.openai.com/v1"
DEFAULT_LLM_MODEL = "gpt-4o-mini"
DEFAULT_LLM_VISION_MODEL = "gpt-4o"
DEFAULT_UPLOAD_DIR = "./uploads"

# Used only when RECEIPTS_DEV_MODE=1 and no secret is configured
_DEV_JWT_SECRET = "dev-only-insecure-jwt-secret"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_int(name: str, value: str | None, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {value!r}") from exc


def _parse_float(name: str, value: str | None, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from exc


@dataclass
class Settings:
    """Resolved runtime configuration."""

    database_url: str = DEFAULT_DATABASE_URL
    llm_base_url: str = DEFAULT_LLM_BASE_URL
    llm_api_key: str = ""
    llm_model: str = DEFAULT_LLM_MODEL
    llm_vision_model: str = DEFAULT_LLM_VISION_MODEL
    llm_timeout: float = 30.0
    llm_max_requests_per_minute: int = 100
    job_max_attempts: int = 3
    job_backoff_seconds: float = 10.0
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    cors_origins: list[str] = field(default_factory=list)
    environment: str = "development"
    dev_mode: bool = False
    scheduler_enabled: bool = False
    upload_dir: str = DEFAULT_UPLOAD_DIR

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``).

        Returns:
            Validated Settings instance.

        Raises:
            ConfigurationError: If a value cannot be parsed, or the JWT secret
                is missing outside dev mode.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            return env.get(f"{ENV_PREFIX}{name}")

        dev_mode = _parse_bool(get("DEV_MODE"))
        environment = get("ENVIRONMENT") or "development"

        jwt_secret = get("JWT_SECRET") or ""
        if not jwt_secret:
            if dev_mode and environment != "production":
                jwt_secret = _DEV_JWT_SECRET
            else:
                raise ConfigurationError(
                    f"{ENV_PREFIX}JWT_SECRET is not set. "
                    f"Set it, or set {ENV_PREFIX}DEV_MODE=1 for local development."
                )

        cors_origins = [
            origin.strip()
            for origin in (get("CORS_ORIGINS") or "").split(",")
            if origin.strip()
        ]
        if environment == "production" and "*" in cors_origins:
            raise ConfigurationError(
                f"{ENV_PREFIX}CORS_ORIGINS contains wildcard '*' which is forbidden in production."
            )

        settings = cls(
            database_url=get("DATABASE_URL") or DEFAULT_DATABASE_URL,
            llm_base_url=get("LLM_BASE_URL") or DEFAULT_LLM_BASE_URL,
            llm_api_key=get("LLM_API_KEY") or "",
            llm_model=get("LLM_MODEL") or DEFAULT_LLM_MODEL,
            llm_vision_model=get("LLM_VISION_MODEL") or DEFAULT_LLM_VISION_MODEL,
            llm_timeout=_parse_float("LLM_TIMEOUT", get("LLM_TIMEOUT"), 30.0),
            llm_max_requests_per_minute=_parse_int(
                "LLM_MAX_REQUESTS_PER_MINUTE", get("LLM_MAX_REQUESTS_PER_MINUTE"), 100
            ),
            job_max_attempts=_parse_int("JOB_MAX_ATTEMPTS", get("JOB_MAX_ATTEMPTS"), 3),
            job_backoff_seconds=_parse_float(
                "JOB_BACKOFF_SECONDS", get("JOB_BACKOFF_SECONDS"), 10.0
            ),
            jwt_secret=jwt_secret,
            jwt_algorithm=get("JWT_ALGORITHM") or "HS256",
            cors_origins=cors_origins,
            environment=environment,
            dev_mode=dev_mode,
            scheduler_enabled=_parse_bool(get("SCHEDULER_ENABLED")),
            upload_dir=get("UPLOAD_DIR") or DEFAULT_UPLOAD_DIR,
        )

        if settings.job_max_attempts < 1:
            raise ConfigurationError(f"{ENV_PREFIX}JOB_MAX_ATTEMPTS must be >= 1")
        if settings.llm_max_requests_per_minute < 0:
            raise ConfigurationError(f"{ENV_PREFIX}LLM_MAX_REQUESTS_PER_MINUTE must be >= 0")
        return settings


__all__ = ["ENV_PREFIX", "Settings"]
