"""Job dispatch and run-record bookkeeping.

WHAT:
    - JOB_HANDLERS / run_job: route a run descriptor to its job handler
    - execute_run: run a job and keep its `sync_runs` row current
      (running -> succeeded with stats, or failed with a classified error)

WHY:
    The dispatcher that claims queued runs only needs one entry point, and a
    failed run must carry enough detail (code + message) to be triaged without
    re-running it.

REFERENCES:
    - syncengine/errors.py: classify_error, error_payload
    - syncengine/workers/arq_worker.py (calls execute_run)
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from syncengine.errors import UnknownJobType, classify_error, error_payload
from syncengine.models import SyncRun, SyncRunStatusEnum
from syncengine.schemas import JobResult, RunDescriptor
from syncengine.services.meta_sync_service import META_7D_FILL, META_FRESH, run_meta_7d_fill, run_meta_fresh
from syncengine.services.shopify_sync_service import (
    SHOPIFY_7D_FILL,
    SHOPIFY_FRESH,
    run_shopify_7d_fill,
    run_shopify_fresh,
)
from syncengine.telemetry import capture_exception, capture_message

logger = logging.getLogger(__name__)

JobHandler = Callable[..., Awaitable[JobResult]]

JOB_HANDLERS: Dict[str, JobHandler] = {
    SHOPIFY_7D_FILL: run_shopify_7d_fill,
    SHOPIFY_FRESH: run_shopify_fresh,
    META_7D_FILL: run_meta_7d_fill,
    META_FRESH: run_meta_fresh,
}


def is_known_job_type(job_type: str) -> bool:
    return job_type in JOB_HANDLERS


async def run_job(db: Session, run: RunDescriptor, **options: Any) -> JobResult:
    """Run the handler for `run.job_type`.

    Options (settings, today, client_factory, on_rate_limit) are passed
    through to the handler.

    Raises:
        UnknownJobType: For a job type without a handler
    """
    handler = JOB_HANDLERS.get(run.job_type)
    if handler is None:
        raise UnknownJobType(f"Unknown job type: {run.job_type}")

    logger.info(
        "[SYNC_RUNNER] Running %s for integration %s (trigger=%s, retry=%d)",
        run.job_type, run.integration_id, run.trigger, run.retry_count,
    )
    return await handler(db, run, **options)


def _load_run_record(db: Session, run_id: Optional[str]) -> Optional[SyncRun]:
    if not run_id:
        return None
    try:
        key = UUID(str(run_id))
    except ValueError:
        logger.warning("[SYNC_RUNNER] Ignoring malformed run id %s", run_id)
        return None
    record = db.get(SyncRun, key)
    if record is None:
        logger.warning("[SYNC_RUNNER] sync_runs row %s not found, running without a run record", run_id)
        capture_message("sync_runs row not found", level="warning", extra={"run_id": str(run_id)})
    return record


async def execute_run(db: Session, run: RunDescriptor, **options: Any) -> JobResult:
    """Run a job and record its outcome on the `sync_runs` row (if any).

    Failures are classified, stored, sent to Sentry and re-raised so the
    caller (worker or dispatcher) decides about retries.
    """
    record = _load_run_record(db, run.run_id)
    if record is not None:
        record.status = SyncRunStatusEnum.running
        record.started_at = datetime.utcnow()
        record.finished_at = None
        record.error_code = None
        record.error_message = None
        record.retry_count = run.retry_count
        db.commit()

        def on_rate_limit(active: bool, reset_at: Optional[datetime]) -> None:
            record.rate_limited = active
            record.rate_limit_reset_at = reset_at.replace(tzinfo=None) if reset_at else None
            db.commit()

        options.setdefault("on_rate_limit", on_rate_limit)

    try:
        result = await run_job(db, run, **options)
    except Exception as exc:
        db.rollback()
        code = classify_error(exc)
        logger.error(
            "[SYNC_RUNNER] %s failed for integration %s: [%s] %s",
            run.job_type, run.integration_id, code, exc,
        )
        capture_exception(exc, extra={
            "operation": "execute_run",
            "run_id": run.run_id,
            "integration_id": run.integration_id,
            "job_type": run.job_type,
            "error_code": code,
        })
        if record is not None:
            record.status = SyncRunStatusEnum.failed
            record.error_code = code
            record.error_message = str(exc)[:2000]
            record.stats = {"error": error_payload(exc)}
            record.rate_limited = False
            record.finished_at = datetime.utcnow()
            db.commit()
        raise

    if record is not None:
        record.status = SyncRunStatusEnum.succeeded
        record.stats = result.to_payload()["stats"]
        record.rate_limited = False
        record.rate_limit_reset_at = None
        record.finished_at = datetime.utcnow()
        db.commit()

    logger.info("[SYNC_RUNNER] %s succeeded for integration %s", run.job_type, run.integration_id)
    return result
