"""ARQ worker for sync runs.

WHAT:
    Thin queue adapter: `process_sync_run` opens a session, builds the run
    descriptor and delegates to `sync_runner.execute_run`.

WHY:
    Claiming and scheduling runs belongs to the dispatcher. The worker only
    executes one run per job and reports a compact result; the `sync_runs`
    row remains the source of truth.

USAGE:
    arq syncengine.workers.arq_worker.WorkerSettings

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - syncengine/services/sync_runner.py
"""

import logging
import platform
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import urlparse

from arq.connections import RedisSettings

from syncengine.config import get_settings
from syncengine.database import SessionLocal
from syncengine.errors import RateLimitExhausted, classify_error
from syncengine.schemas import RunDescriptor
from syncengine.services.sync_runner import execute_run
from syncengine.telemetry import init_sentry

logger = logging.getLogger(__name__)


# =============================================================================
# REDIS SETTINGS
# =============================================================================

def get_redis_settings(redis_url: Optional[str] = None) -> RedisSettings:
    """Redis connection settings from REDIS_URL.

    Supports redis:// and rediss:// (TLS) URLs with optional credentials and db.
    """
    parsed = urlparse(redis_url or get_settings().REDIS_URL)

    use_ssl = parsed.scheme == "rediss"
    host = parsed.hostname or "localhost"
    port = parsed.port or 6379
    database = int(parsed.path.lstrip("/")) if parsed.path and parsed.path != "/" else 0

    logger.info("[ARQ] Redis: host=%s, port=%s, ssl=%s, db=%s", host, port, use_ssl, database)

    return RedisSettings(
        host=host,
        port=port,
        password=parsed.password,
        database=database,
        ssl=use_ssl,
        conn_timeout=30,
        conn_retries=5,
        conn_retry_delay=1,
    )


# =============================================================================
# SYNC RUN JOB
# =============================================================================

async def process_sync_run(
    ctx: Dict,
    run_id: Optional[str],
    integration_id: str,
    job_type: str,
    trigger: str = "schedule",
    retry_count: int = 0,
) -> Dict:
    """Execute one sync run.

    Returns:
        {"success": True, "stats": {...}} or {"success": False, "error_code": ..., "error": ...}.
        Rate-limit exhaustion is flagged `retryable` for the dispatcher.
    """
    run = RunDescriptor(
        run_id=run_id,
        integration_id=integration_id,
        job_type=job_type,
        trigger=trigger,
        retry_count=retry_count,
    )
    logger.info("[ARQ] Starting %s for integration %s (run=%s)", job_type, integration_id, run_id)

    db = SessionLocal()
    try:
        result = await execute_run(db, run)
        return {"success": True, **result.to_payload()}
    except Exception as exc:
        # execute_run already recorded and reported the failure
        logger.warning("[ARQ] %s failed for integration %s: %s", job_type, integration_id, exc)
        return {
            "success": False,
            "error_code": classify_error(exc),
            "error": str(exc)[:500],
            "retryable": isinstance(exc, RateLimitExhausted),
        }
    finally:
        db.close()


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    settings = get_settings()
    sentry_enabled = init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)

    logger.info("=" * 60)
    logger.info("[ARQ] Sync worker starting up")
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Meta stub mode: %s", settings.META_STUB_MODE)
    logger.info("[ARQ] Sentry: %s", "enabled" if sentry_enabled else "disabled")
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))
    logger.info("[ARQ] Sync worker shutting down (jobs=%d, uptime=%s)", ctx.get("jobs_processed", 0), uptime)


async def on_job_end(ctx: Dict) -> None:
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=10: runs for different integrations in parallel; the
      dispatcher keeps one in-flight run per (integration, job type)
    - retry_jobs=False: failures are returned, retries are the dispatcher's call
    """

    functions = [process_sync_run]

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()

    max_jobs = 10
    job_timeout = 900
    keep_result = 3600
    retry_jobs = False
    health_check_interval = 30

    queue_name = "arq:syncengine"
