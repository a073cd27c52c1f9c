"""Dramatiq task definitions for background processing.

Every accepted upload becomes one ``process_upload`` message on the
``receipt-processing`` queue. The worker retries failed runs with
exponential backoff; a missing upload is a data-integrity error and is
never retried.

To run the worker:

```bash
dramatiq sheetwise.worker --processes 1 --threads 5
```

The broker URL defaults to ``REDIS_URL``. Override it with
``DRAMATIQ_BROKER_URL``. Set ``DRAMATIQ_TESTING=true`` to use the
in-memory stub broker instead (unit tests, local scripts).
"""

from __future__ import annotations

import json
import logging

import dramatiq
import redis
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, Callbacks, Pipelines, Retries, ShutdownNotifications, TimeLimit
from dramatiq.rate_limits import ConcurrentRateLimiter
from dramatiq.rate_limits.backends import RedisBackend, StubBackend

from sheetwise.core.config import settings
from sheetwise.core.database import SessionLocal
from sheetwise.core.errors import UploadNotFoundError
from sheetwise.core.observability import sentry_breadcrumb
from sheetwise.services.extraction_service import OpenAIExtractor
from sheetwise.services.segmentation_service import OpenAISegmenter
from sheetwise.services.storage_service import StorageService
from sheetwise.services.upload_processor import UploadProcessor

logger = logging.getLogger(__name__)

QUEUE_NAME = "receipt-processing"


def _configure_broker() -> dramatiq.Broker:
    if settings.DRAMATIQ_TESTING:
        logger.info("Configuring Dramatiq with StubBroker")
        return StubBroker()

    logger.info("Configuring Dramatiq with Redis URL: %s", settings.broker_url)
    # explicit list: RedisBroker would otherwise install its own default Retries
    middleware = [
        AgeLimit(),
        TimeLimit(time_limit=settings.JOB_TIME_LIMIT_MS),
        ShutdownNotifications(),
        Callbacks(),
        Pipelines(),
        Retries(
            max_retries=settings.JOB_MAX_RETRIES,
            min_backoff=settings.JOB_MIN_BACKOFF_MS,
            max_backoff=settings.JOB_MAX_BACKOFF_MS,
        ),
    ]
    return RedisBroker(url=settings.broker_url, middleware=middleware)


broker = _configure_broker()
dramatiq.set_broker(broker)

if settings.DRAMATIQ_TESTING:
    mutex_backend = StubBackend()
else:
    mutex_backend = RedisBackend(url=settings.broker_url)


def upload_mutex(upload_id: int) -> ConcurrentRateLimiter:
    """Mutex that keeps two executions of one upload from overlapping."""
    return ConcurrentRateLimiter(
        mutex_backend,
        f"upload-mutex-{upload_id}",
        limit=1,
        ttl=settings.JOB_TIME_LIMIT_MS,
    )


# Lightweight Redis publisher for progress events
_redis_pub = None


def _get_redis_pub():
    global _redis_pub
    if _redis_pub is None:
        if settings.DRAMATIQ_TESTING:
            _redis_pub = False
        else:
            _redis_pub = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_pub


def publish_progress(user_id: int, upload_id: int, percent: int) -> None:
    pub = _get_redis_pub()
    if not pub:
        return
    payload = json.dumps({"type": "upload.progress", "user_id": user_id, "upload_id": upload_id, "progress": percent})
    try:
        pub.publish(f"uploads:user:{user_id}", payload)
        pub.publish(f"uploads:upload:{upload_id}", payload)
    except redis.RedisError as e:
        logger.debug("progress publish failed for upload=%s: %s", upload_id, e)


def build_processor() -> UploadProcessor:
    """Wire the production collaborators into an orchestrator."""
    return UploadProcessor(
        session_factory=SessionLocal,
        storage=StorageService(),
        segmenter=OpenAISegmenter(),
        extractor=OpenAIExtractor(),
        progress=publish_progress,
    )


@dramatiq.actor(queue_name=QUEUE_NAME, max_retries=settings.JOB_MAX_RETRIES, throws=(UploadNotFoundError,))
def process_upload(upload_id: int, image_path: str) -> None:
    """Segment and extract every receipt on an uploaded sheet."""
    sentry_breadcrumb(category="task", message="process_upload", data={"upload_id": upload_id})
    with upload_mutex(upload_id).acquire():
        build_processor().process(upload_id, image_path)


def enqueue_upload(upload_id: int, image_path: str) -> None:
    process_upload.send(upload_id, image_path)
    logger.info("[tasks] enqueued upload=%s image=%s", upload_id, image_path)
