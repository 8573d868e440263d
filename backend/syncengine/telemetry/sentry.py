"""
Sentry Error Tracking
=====================

Error tracking for sync runs.

Related files:
- syncengine/services/sync_runner.py: captures failed runs with run context
- syncengine/workers/arq_worker.py: initializes Sentry on worker startup

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays inactive without it)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier set by CI/CD
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


def init_sentry(dsn: Optional[str] = None, environment: Optional[str] = None) -> bool:
    """
    Initialize the Sentry SDK for the worker process.

    Args:
        dsn: Sentry DSN; falls back to SENTRY_DSN
        environment: Environment name; falls back to ENVIRONMENT

    Returns:
        True if Sentry was initialized, False when no DSN is configured.
    """
    dsn = dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = environment or os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,        # Capture INFO+ as breadcrumbs
                event_level=logging.ERROR,  # Send ERROR+ as events
            ),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
        release=os.environ.get("RELEASE_VERSION"),
    )

    logger.debug("[SENTRY] Initialized for %s environment", environment)
    return True


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Capture an exception to Sentry with extra context.

    Use this for exceptions that are recorded on the run and then re-raised,
    so the event carries the run/integration identifiers.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event
    """
    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        scope.capture_exception(exception)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message to Sentry.

    Args:
        message: The message to capture
        level: Severity level (debug, info, warning, error, fatal)
        extra: Additional context to attach
    """
    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        scope.capture_message(message, level=level)
