"""Tests for job dispatch, run-record bookkeeping and the ARQ adapter."""

import asyncio
from datetime import date
from types import SimpleNamespace

import httpx
import pytest

from syncengine.errors import MissingCredential, RateLimitExhausted, UnknownJobType
from syncengine.models import SyncRun, SyncRunStatusEnum
from syncengine.schemas import JobResult, JobStats, RunDescriptor
from syncengine.services import sync_runner
from syncengine.services.shopify_client import ShopifyClient
from syncengine.services.sync_runner import JOB_HANDLERS, execute_run, is_known_job_type, run_job
from syncengine.workers import arq_worker

TODAY = date(2024, 1, 8)


def _sync_run(db_session, integration, job_type: str) -> SyncRun:
    record = SyncRun(integration_id=integration.id, job_type=job_type, trigger="schedule")
    db_session.add(record)
    db_session.commit()
    return record


def _descriptor(record: SyncRun, **overrides) -> RunDescriptor:
    values = {
        "run_id": str(record.id),
        "integration_id": str(record.integration_id),
        "job_type": record.job_type,
        "trigger": record.trigger,
    }
    values.update(overrides)
    return RunDescriptor(**values)


class TestDispatch:
    def test_every_job_type_has_a_handler(self):
        assert set(JOB_HANDLERS) == {"shopify_7d_fill", "shopify_fresh", "meta_7d_fill", "meta_fresh"}
        assert is_known_job_type("meta_fresh")
        assert not is_known_job_type("google_fresh")

    def test_unknown_job_type_raises(self, db_session):
        run = RunDescriptor(integration_id="abc", job_type="google_fresh")

        with pytest.raises(UnknownJobType):
            asyncio.run(run_job(db_session, run))

    def test_payload_omits_the_unused_cursor_flag(self):
        stats = JobStats(job_type="meta_fresh", integration_id="abc", cursor_advanced=True)

        payload = JobResult(stats=stats).to_payload()["stats"]

        assert payload["cursorAdvanced"] is True
        assert "cursorInitialized" not in payload
        assert payload["jobType"] == "meta_fresh"


class TestExecuteRun:
    def test_success_records_stats(self, db_session, settings, make_meta_integration):
        integration = make_meta_integration()
        record = _sync_run(db_session, integration, "meta_7d_fill")
        stub_settings = settings.model_copy(update={"META_STUB_MODE": True})

        result = asyncio.run(execute_run(db_session, _descriptor(record), settings=stub_settings, today=TODAY))

        db_session.refresh(record)
        assert record.status == SyncRunStatusEnum.succeeded
        assert record.started_at is not None
        assert record.finished_at is not None
        assert record.error_code is None
        assert record.stats["jobType"] == "meta_7d_fill"
        assert record.stats["cursorInitialized"] is True
        assert record.stats["stubbedDays"] == 7
        assert result.stats.persisted_rows == record.stats["persistedRows"]

    def test_failure_records_classified_error_and_reraises(self, db_session, settings, make_shopify_integration):
        integration = make_shopify_integration(token=None)
        record = _sync_run(db_session, integration, "shopify_fresh")

        with pytest.raises(MissingCredential):
            asyncio.run(execute_run(db_session, _descriptor(record, retry_count=2), settings=settings, today=TODAY))

        db_session.refresh(record)
        assert record.status == SyncRunStatusEnum.failed
        assert record.error_code == "AUTH_ERROR"
        assert "token" in record.error_message.lower()
        assert record.stats["error"]["type"] == "MissingCredential"
        assert record.retry_count == 2
        assert record.rate_limited is False

    def test_rate_limit_wait_is_visible_on_the_run(
        self, db_session, settings, make_shopify_integration, orders_page
    ):
        """WHAT: While the client sleeps out a 429 the run row shows rate_limited.
        WHY: Operators watching sync_runs need to tell a stalled run from a throttled one.
        """
        integration = make_shopify_integration()
        record = _sync_run(db_session, integration, "shopify_fresh")
        responses = [httpx.Response(429), httpx.Response(200, json=orders_page([]))]
        observed = []

        async def sleep(seconds: float) -> None:
            db_session.refresh(record)
            observed.append((record.rate_limited, record.rate_limit_reset_at is not None))

        def factory(ctx, settings, on_rate_limit=None):
            return ShopifyClient(
                ctx.shop_domain,
                ctx.access_token,
                transport=httpx.MockTransport(lambda request: responses.pop(0)),
                sleep=sleep,
                on_rate_limit=on_rate_limit,
            )

        asyncio.run(execute_run(db_session, _descriptor(record), settings=settings, today=TODAY, client_factory=factory))

        db_session.refresh(record)
        assert observed == [(True, True)]
        assert record.status == SyncRunStatusEnum.succeeded
        assert record.rate_limited is False
        assert record.rate_limit_reset_at is None

    def test_runs_without_a_record(self, db_session, settings, make_meta_integration):
        integration = make_meta_integration()
        stub_settings = settings.model_copy(update={"META_STUB_MODE": True})
        run = RunDescriptor(run_id=None, integration_id=str(integration.id), job_type="meta_7d_fill")

        result = asyncio.run(execute_run(db_session, run, settings=stub_settings, today=TODAY))

        assert result.stats.cursor_initialized is True
        assert db_session.query(SyncRun).count() == 0

    def test_missing_record_is_reported(self, db_session, settings, make_meta_integration, monkeypatch):
        integration = make_meta_integration()
        messages = []
        monkeypatch.setattr(sync_runner, "capture_message", lambda message, **kwargs: messages.append(message))
        stub_settings = settings.model_copy(update={"META_STUB_MODE": True})
        run = RunDescriptor(
            run_id="00000000-0000-0000-0000-000000000001",
            integration_id=str(integration.id),
            job_type="meta_7d_fill",
        )

        asyncio.run(execute_run(db_session, run, settings=stub_settings, today=TODAY))

        assert messages == ["sync_runs row not found"]


class TestArqWorker:
    def _patch_session(self, monkeypatch):
        closed = []
        monkeypatch.setattr(arq_worker, "SessionLocal", lambda: SimpleNamespace(close=lambda: closed.append(True)))
        return closed

    def test_success_returns_stats(self, monkeypatch):
        closed = self._patch_session(monkeypatch)
        captured = {}

        async def fake_execute_run(db, run, **options):
            captured["run"] = run
            return JobResult(stats=JobStats(job_type=run.job_type, integration_id=run.integration_id, cursor_advanced=True))

        monkeypatch.setattr(arq_worker, "execute_run", fake_execute_run)

        result = asyncio.run(arq_worker.process_sync_run({}, "run-1", "int-1", "meta_fresh", retry_count=1))

        assert result["success"] is True
        assert result["stats"]["cursorAdvanced"] is True
        assert captured["run"].retry_count == 1
        assert captured["run"].trigger == "schedule"
        assert closed == [True]

    def test_rate_limit_failure_is_retryable(self, monkeypatch):
        closed = self._patch_session(monkeypatch)

        async def fake_execute_run(db, run, **options):
            raise RateLimitExhausted("Platform rate limit persisted after 5 attempts", attempts=5)

        monkeypatch.setattr(arq_worker, "execute_run", fake_execute_run)

        result = asyncio.run(arq_worker.process_sync_run({}, "run-1", "int-1", "shopify_fresh"))

        assert result == {
            "success": False,
            "error_code": "RATE_LIMIT",
            "error": "Platform rate limit persisted after 5 attempts",
            "retryable": True,
        }
        assert closed == [True]

    def test_redis_settings_from_url(self):
        redis = arq_worker.get_redis_settings("rediss://:secret@cache.internal:6380/2")

        assert redis.host == "cache.internal"
        assert redis.port == 6380
        assert redis.password == "secret"
        assert redis.database == 2
        assert redis.ssl is True
