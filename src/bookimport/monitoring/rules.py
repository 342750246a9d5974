"""Threshold alert rules evaluated against a Metrics snapshot.

Evaluation is pure: the same metrics and timestamp always give the same
alerts. When several rules watch one metric only the most severe firing
rule is reported.
"""

from __future__ import annotations

import logging
import operator
from datetime import datetime
from typing import Literal

from pydantic import BaseModel

from bookimport.config import Settings
from bookimport.models.health import HealthAlert, Metrics, Severity

logger = logging.getLogger(__name__)

_OPS = {
    "gt": operator.gt,
    "ge": operator.ge,
    "lt": operator.lt,
    "le": operator.le,
}


class AlertRule(BaseModel):
    name: str
    metric: str
    comparison: Literal["gt", "ge", "lt", "le"]
    threshold: float
    severity: Severity
    message: str
    only_while_active: bool = False

    def fires(self, metrics: Metrics) -> bool:
        if self.only_while_active and metrics.active_batches == 0:
            return False
        value = getattr(metrics, self.metric)
        return _OPS[self.comparison](value, self.threshold)


def default_rules(settings: Settings | None = None) -> list[AlertRule]:
    s = settings or Settings()
    return [
        AlertRule(
            name="high_error_rate",
            metric="error_rate",
            comparison="gt",
            threshold=s.error_rate_critical,
            severity=Severity.CRITICAL,
            message="Error rate {value:.1f}% is above {threshold:.0f}%",
        ),
        AlertRule(
            name="elevated_error_rate",
            metric="error_rate",
            comparison="gt",
            threshold=s.error_rate_warning,
            severity=Severity.WARNING,
            message="Error rate {value:.1f}% is above {threshold:.0f}%",
        ),
        AlertRule(
            name="low_success_rate",
            metric="success_rate",
            comparison="lt",
            threshold=s.success_rate_warning,
            severity=Severity.WARNING,
            message="Success rate {value:.1f}% is below {threshold:.0f}%",
        ),
        AlertRule(
            name="high_duplicate_rate",
            metric="duplicate_rate",
            comparison="gt",
            threshold=s.duplicate_rate_info,
            severity=Severity.INFO,
            message="Duplicate rate {value:.1f}% is above {threshold:.0f}%",
        ),
        AlertRule(
            name="import_stalled",
            metric="books_per_minute",
            comparison="le",
            threshold=0.0,
            severity=Severity.WARNING,
            message="Batches are running but no books finished in the window",
            only_while_active=True,
        ),
        AlertRule(
            name="pending_backlog",
            metric="pending_batches",
            comparison="gt",
            threshold=s.pending_backlog_info,
            severity=Severity.INFO,
            message="{value:.0f} batches waiting to start",
        ),
    ]


class AlertRuleEngine:
    def __init__(self, rules: list[AlertRule] | None = None) -> None:
        self.rules = rules if rules is not None else default_rules()

    def evaluate(self, metrics: Metrics, evaluated_at: datetime) -> list[HealthAlert]:
        """Return firing alerts, most severe first, at most one per metric."""
        winners: dict[str, AlertRule] = {}
        for rule in self.rules:
            if not rule.fires(metrics):
                continue
            current = winners.get(rule.metric)
            if current is None or rule.severity.rank > current.severity.rank:
                winners[rule.metric] = rule

        alerts = []
        for rule in winners.values():
            value = float(getattr(metrics, rule.metric))
            alerts.append(
                HealthAlert(
                    rule=rule.name,
                    severity=rule.severity,
                    message=rule.message.format(value=value, threshold=rule.threshold),
                    triggered_at=evaluated_at,
                    metrics={rule.metric: value},
                )
            )
        alerts.sort(key=lambda a: a.severity.rank, reverse=True)
        if alerts:
            logger.debug("%d alert(s) firing: %s", len(alerts), [a.rule for a in alerts])
        return alerts
