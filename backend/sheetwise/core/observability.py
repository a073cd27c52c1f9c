"""Observability helpers (Sentry init, breadcrumbs and metrics).

Centralises Sentry initialisation for the worker so configuration does
not drift. Initialisation is a no-op when no DSN is configured, and the
breadcrumb/metric helpers never raise: observability must not change
the outcome of a job.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.dramatiq import DramatiqIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from sheetwise.core.config import settings

logger = logging.getLogger(__name__)


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
	"""Scrub secrets before sending to Sentry.

	- Drop any extra keys that look like credentials
	- Trim very long exception messages (they may embed model output)
	"""
	try:
		extra = event.get("extra") or {}
		for k in list(extra.keys()):
			if any(s in k.lower() for s in ("key", "secret", "token", "password")):
				extra.pop(k, None)
		for exc in (event.get("exception") or {}).get("values", []) or []:
			value = exc.get("value")
			if isinstance(value, str) and len(value) > 2000:
				exc["value"] = value[:2000]
	except Exception:  # best effort
		pass
	return event


def init_sentry(service: str) -> bool:
	"""Initialise Sentry once for a given process.

	Returns True if Sentry was initialised; False otherwise.
	"""
	if not settings.SENTRY_DSN:
		return False
	if getattr(init_sentry, "_done", False):  # prevent duplicate init in same process
		return True
	sentry_sdk.init(
		dsn=settings.SENTRY_DSN,
		integrations=[
			DramatiqIntegration(),
			SqlalchemyIntegration(),
			LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
		],
		traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
		environment=settings.ENVIRONMENT,
		release=settings.SENTRY_RELEASE,
		before_send=_before_send,
	)
	sentry_sdk.set_tag("service", service)
	init_sentry._done = True  # type: ignore[attr-defined]
	return True


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: add a breadcrumb for important lifecycle steps."""
	if not settings.SENTRY_DSN:
		return
	try:
		sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})
	except Exception as exc:
		logger.debug("sentry breadcrumb failed: %s", exc)


def sentry_metric_inc(name: str, value: int = 1, tags: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: increment a metric using Sentry Metrics if available."""
	if not settings.SENTRY_DSN:
		return
	try:
		from sentry_sdk import metrics  # type: ignore

		safe_tags = {str(k): str(v)[:64] for k, v in (tags or {}).items()}
		metrics.incr(name, value=value, tags=safe_tags)  # type: ignore[attr-defined]
	except Exception as exc:
		logger.debug("sentry metric %s failed: %s", name, exc)


__all__ = ["init_sentry", "sentry_breadcrumb", "sentry_metric_inc"]
