"""Dramatiq worker entry point.

Configures logging and Sentry, then imports the tasks module so its
broker is installed and its actors are registered when the worker starts.

Run with:
    dramatiq sheetwise.worker --threads 5

Concurrency is set only by the ``--processes`` and ``--threads`` flags.
"""

import logging
import os

from sheetwise.core.config import settings
from sheetwise.core.observability import init_sentry

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("sheetwise.worker")

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

# Propagate key env vars for libraries reading directly from os.environ
if settings.OPENAI_API_KEY:
    os.environ.setdefault("OPENAI_API_KEY", settings.OPENAI_API_KEY)

from sheetwise.core.tasks import broker, process_upload  # noqa: E402,F401

logger.info("Tasks registered: %s", process_upload.actor_name)
