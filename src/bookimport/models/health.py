"""Models for import metrics, alerts and health snapshots."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 1, Severity.WARNING: 2, Severity.CRITICAL: 3}


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class Metrics(BaseModel):
    books_per_minute: float = 0.0
    average_process_time: float = 0.0  # ms
    success_rate: float = 100.0  # percent
    duplicate_rate: float = 0.0
    error_rate: float = 0.0
    active_batches: int = 0
    pending_batches: int = 0
    total_books_today: int = 0
    failed_books_today: int = 0
    current_batch_progress: float = 0.0


class HealthAlert(BaseModel):
    rule: str
    severity: Severity
    message: str
    triggered_at: datetime
    metrics: dict[str, float] = Field(default_factory=dict)


class HealthReport(BaseModel):
    status: HealthState
    alerts: list[HealthAlert] = Field(default_factory=list)
    metrics: Metrics
