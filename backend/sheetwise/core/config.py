"""Configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    PROJECT_NAME: str = "Sheetwise Receipt Processing"
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    # Dev DB fallback (fail fast by default)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)

    # Redis / Dramatiq
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)
    # Use an in-memory StubBroker (unit tests, local scripts)
    DRAMATIQ_TESTING: bool = Field(default=False)
    JOB_MAX_RETRIES: int = Field(default=3)
    JOB_MIN_BACKOFF_MS: int = Field(default=1000)
    JOB_MAX_BACKOFF_MS: int = Field(default=60000)
    JOB_TIME_LIMIT_MS: int = Field(default=10 * 60 * 1000)

    # OpenAI
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    SEGMENTATION_MODEL: str = Field(default="gpt-4o")
    EXTRACTION_MODEL: str = Field(default="gpt-4o-mini")

    # Storage
    STORAGE_BACKEND: str = Field(default="minio")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="receipts")
    MINIO_USE_SSL: bool = Field(default=False)
    STORAGE_DIRECTORY: str = Field(default="./storage")

    # Image handling
    CROP_PADDING_RATIO: float = Field(default=0.05)
    OVERLAY_STROKE_WIDTH: int = Field(default=5)
    DEFAULT_CURRENCY: str = Field(default="USD")

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    # Optional release name to tag worker events
    SENTRY_RELEASE: Optional[str] = Field(default=None)

    @property
    def broker_url(self) -> str:
        """Broker URL, falling back to the general Redis URL."""
        return self.DRAMATIQ_BROKER_URL or os.getenv("DRAMATIQ_BROKER_URL") or self.REDIS_URL


# Instantiate global settings
settings = Settings()
