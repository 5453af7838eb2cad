from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ALLOWED_METHODS = {"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"}

STATUS_UP = "UP"
STATUS_DOWN = "DOWN"
STATUS_PENDING = "PENDING"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Jobs (scheduler -> transport -> probe worker) ---

class Job(WireModel):
    monitor_id: str = Field(min_length=1)
    region: str = Field(min_length=1)
    url: str
    method: str = "GET"
    expected_status_codes: list[int] = [200, 201, 202, 204]
    timeout: int = 30
    retries: int = 0
    headers: Optional[dict[str, str]] = None
    body: Optional[str] = None

    @field_validator("url")
    @classmethod
    def url_valid(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    @field_validator("method")
    @classmethod
    def method_valid(cls, v: str) -> str:
        v = v.upper().strip()
        if v not in ALLOWED_METHODS:
            raise ValueError(f"Method must be one of: {', '.join(sorted(ALLOWED_METHODS))}")
        return v

    @field_validator("expected_status_codes")
    @classmethod
    def status_codes_valid(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("At least one expected status code is required")
        for code in v:
            if code < 100 or code > 599:
                raise ValueError("Expected status codes must be between 100 and 599")
        return v

    @field_validator("timeout")
    @classmethod
    def timeout_valid(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Timeout must be at least 1 second")
        if v > 120:
            raise ValueError("Timeout must be at most 120 seconds")
        return v

    @field_validator("retries")
    @classmethod
    def retries_valid(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Retries cannot be negative")
        return v


# --- Results (probe worker -> ingestion gateway) ---

class CheckResultIn(WireModel):
    monitor_id: str = Field(min_length=1)
    region: str = Field(min_length=1)
    status: Literal["UP", "DOWN"]
    response_time_ms: Optional[int] = Field(default=None, ge=0)
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    checked_at: datetime

    @field_validator("checked_at")
    @classmethod
    def checked_at_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class ResultBatch(WireModel):
    """Envelope only; items are validated one by one by the gateway."""

    results: list[Any]
    caller_request_id: Optional[str] = None
    region: Optional[str] = None
    shared_secret: Optional[str] = None


class IngestSummary(WireModel):
    caller_request_id: Optional[str] = None
    region: Optional[str] = None
    received: int = 0
    processed: int = 0
    skipped_invalid: int = 0
    failed: int = 0
    incidents_opened: int = 0
    incidents_resolved: int = 0


# --- Scheduler ---

class TickReport(WireModel):
    started_at: datetime
    due_monitors: int = 0
    jobs_built: int = 0
    jobs_sent: int = 0
    failures_by_region: dict[str, int] = {}
    unreachable_regions: list[str] = []
    monitors_stamped: int = 0
    skipped: bool = False
    skip_reason: Optional[str] = None
    duration_ms: int = 0


class SchedulerStats(WireModel):
    active_monitors: int
    recently_checked_monitors: int
    regions: list[str]
    last_tick: Optional[TickReport] = None
