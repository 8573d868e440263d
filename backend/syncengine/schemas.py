"""Pydantic schemas for the job invocation contract."""

from typing import List, Optional

from pydantic import BaseModel, Field


class RunDescriptor(BaseModel):
    """Run handed to the engine by the dispatcher."""

    run_id: Optional[str] = Field(default=None, description="sync_runs row id, if the dispatcher created one")
    integration_id: str
    job_type: str = Field(description="One of the known job types, e.g. 'meta_fresh'")
    trigger: str = Field(default="manual", description="manual, schedule, webhook, retry")
    retry_count: int = Field(default=0, ge=0)


class JobStats(BaseModel):
    """Observability stats returned by every job handler.

    Serialized with camelCase keys (`model_dump(by_alias=True)`), which is the
    shape stored on `sync_runs.stats`.
    """

    job_type: str = Field(alias="jobType")
    integration_id: str = Field(alias="integrationId")
    dates_requested: List[str] = Field(default_factory=list, alias="datesRequested")
    dates_affected: List[str] = Field(default_factory=list, alias="datesAffected")
    fetched_rows: int = Field(default=0, alias="fetchedRows")
    persisted_rows: int = Field(default=0, alias="persistedRows")
    api_calls: int = Field(default=0, alias="apiCalls")
    rate_limit_events: int = Field(default=0, alias="rateLimitEvents")
    window_start: Optional[str] = Field(default=None, alias="windowStart")
    window_end: Optional[str] = Field(default=None, alias="windowEnd")
    cursor_previous: Optional[str] = Field(default=None, alias="cursorPrevious")
    cursor_next: Optional[str] = Field(default=None, alias="cursorNext")
    cursor_advanced: Optional[bool] = Field(default=None, alias="cursorAdvanced")
    cursor_initialized: Optional[bool] = Field(default=None, alias="cursorInitialized")
    stub_mode_enabled: bool = Field(default=False, alias="stubModeEnabled")
    stubbed_days: int = Field(default=0, alias="stubbedDays")

    model_config = {"populate_by_name": True}


class JobResult(BaseModel):
    """Return value of `run_job`."""

    stats: JobStats

    def to_payload(self) -> dict:
        # Fill jobs report cursorInitialized, fresh jobs cursorAdvanced; drop the other
        unset = {name for name in ("cursor_advanced", "cursor_initialized") if getattr(self.stats, name) is None}
        return {"stats": self.stats.model_dump(by_alias=True, exclude=unset)}
