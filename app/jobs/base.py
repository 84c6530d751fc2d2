from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

TRIGGER_MANUAL = "manual"
TRIGGER_AUTOMATIC = "automatic"
TRIGGERED_BY_SCHEDULER = "scheduler"

SKIP_DISABLED = "disabled"
SKIP_MISSING_CONFIG = "missing-config"


@dataclass
class JobRunOptions:
    trigger: str = TRIGGER_MANUAL
    triggered_by: Optional[str] = None
    triggered_by_id: Optional[str] = None
    dry_run: bool = False
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def scheduled(cls) -> "JobRunOptions":
        return cls(trigger=TRIGGER_AUTOMATIC, triggered_by=TRIGGERED_BY_SCHEDULER)


@dataclass
class JobContext:
    job_key: str
    job_run_id: Optional[int]
    options: JobRunOptions
    params: dict[str, Any]

    @property
    def dry_run(self) -> bool:
        return self.options.dry_run

    def int_param(self, name: str, default: int, lo: int, hi: int) -> int:
        raw = self.params.get(name, default)
        try:
            value = int(raw)
        except (TypeError, ValueError):
            value = default
        return max(lo, min(hi, value))


@dataclass
class JobOutcome:
    rows_affected: int = 0
    meta: dict[str, Any] = field(default_factory=dict)


JobHandler = Callable[[AsyncSession, JobContext], Awaitable[JobOutcome]]


@dataclass(frozen=True)
class JobDefinition:
    key: str
    description: str
    handler: JobHandler
    interval_minutes: int
    enabled: bool = True
    requires_provider: bool = True
    default_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class JobRunResult:
    job_key: str
    status: str
    job_run_id: Optional[int] = None
    rows_affected: int = 0
    reason: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in ("success", "skipped", "already_running")

    def as_dict(self) -> dict:
        return {
            "jobKey": self.job_key,
            "status": self.status,
            "jobRunId": self.job_run_id,
            "rowsAffected": self.rows_affected,
            "reason": self.reason,
            "meta": self.meta,
            "error": self.error,
        }
