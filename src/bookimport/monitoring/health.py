"""Combine metrics and alerts into a single health snapshot."""

from __future__ import annotations

import logging
from datetime import datetime

from bookimport.models.batch import BatchItem, ImportBatch
from bookimport.models.health import HealthReport, HealthState, Metrics, Severity
from bookimport.monitoring.metrics import MetricsAggregator
from bookimport.monitoring.rules import AlertRuleEngine

logger = logging.getLogger(__name__)

_STATE_FOR = {
    Severity.CRITICAL: HealthState.UNHEALTHY,
    Severity.WARNING: HealthState.DEGRADED,
    Severity.INFO: HealthState.HEALTHY,
}


class HealthMonitor:
    def __init__(
        self,
        aggregator: MetricsAggregator | None = None,
        engine: AlertRuleEngine | None = None,
    ) -> None:
        self.aggregator = aggregator or MetricsAggregator()
        self.engine = engine or AlertRuleEngine()

    def evaluate(self, metrics: Metrics, now: datetime) -> HealthReport:
        alerts = self.engine.evaluate(metrics, now)
        status = HealthState.HEALTHY
        if alerts:
            worst = max(alerts, key=lambda a: a.severity.rank)
            status = _STATE_FOR[worst.severity]
        if status != HealthState.HEALTHY:
            logger.warning("Import health %s: %s", status.value, "; ".join(a.message for a in alerts))
        return HealthReport(status=status, alerts=alerts, metrics=metrics)

    def check(
        self,
        items: list[BatchItem],
        batches: list[ImportBatch],
        now: datetime,
    ) -> HealthReport:
        return self.evaluate(self.aggregator.compute(items, batches, now), now)
