"""
Telemetry Module
================

Error reporting for the sync engine.

Components:
- sentry.py: Sentry init plus capture helpers used by the run executor

Logging itself is stdlib `logging` with per-module loggers and bracketed
prefixes ("[SHOPIFY_SYNC]", "[META_INSIGHTS]", ...).

Environment Variables:
- SENTRY_DSN: Sentry project DSN (reporting is off when unset)
- ENVIRONMENT: Sentry environment tag

Usage:
    from syncengine.telemetry import init_sentry, capture_exception

    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)   # worker startup
    capture_exception(exc, extra={"run_id": run_id})

Related modules:
- syncengine/workers/arq_worker.py: initializes Sentry on startup
- syncengine/services/sync_runner.py: reports failed runs
"""

from syncengine.telemetry.sentry import capture_exception, capture_message, init_sentry

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
