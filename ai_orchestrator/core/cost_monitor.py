"""
Cost monitoring and budget alerts.

Every execution attempt is appended to the usage ledger. Reports are built by
aggregating ledger rows at read time, and budget thresholds are evaluated
after every record and periodically.

Alert Order:
1. Daily and monthly totals against the global budget
2. Per-provider daily and monthly sub-limits
3. Single-job cost spike
4. Month-to-date run rate projected past the monthly budget
"""

import calendar
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config.loader import BudgetConfig
from ..storage.models import AlertDetails, AlertSeverity, AlertType, CostAlert, UsageLogEntry
from ..storage.repository import AlertRepository, UsageLedger
from . import events

logger = logging.getLogger(__name__)

TOP_EXPENSIVE_LIMIT = 10


class Timeframe(Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


@dataclass(frozen=True)
class ReportTotals:
    cost: float = 0.0
    tokens: int = 0
    requests: int = 0
    jobs: int = 0


@dataclass
class ProviderBreakdown:
    cost: float = 0.0
    tokens: int = 0
    requests: int = 0
    successful: int = 0
    average_cost_per_request: float = 0.0
    success_rate: float = 0.0


@dataclass
class AgentBreakdown:
    cost: float = 0.0
    jobs: int = 0
    successful: int = 0
    average_cost_per_job: float = 0.0
    success_rate: float = 0.0


@dataclass(frozen=True)
class ExpensiveJob:
    job_id: str
    content_id: str
    cost: float
    provider: str
    timestamp: datetime


@dataclass(frozen=True)
class CostTrends:
    cost_growth: float = 0.0
    efficiency_change: float = 0.0
    quality_impact: float = 0.0


@dataclass(frozen=True)
class CostReport:
    """Aggregated view of the ledger for one period."""
    timeframe: Timeframe
    start: datetime
    end: datetime
    totals: ReportTotals
    by_provider: Dict[str, ProviderBreakdown] = field(default_factory=dict)
    by_agent: Dict[str, AgentBreakdown] = field(default_factory=dict)
    top_expensive: List[ExpensiveJob] = field(default_factory=list)
    trends: CostTrends = field(default_factory=CostTrends)


@dataclass(frozen=True)
class Recommendation:
    type: str
    priority: str
    description: str
    potential_savings: float
    implementation: str


def _sum_costs(entries: List[UsageLogEntry]) -> float:
    """Exact decimal sum so totals don't drift with float addition order."""
    return float(sum((Decimal(str(entry.cost)) for entry in entries), Decimal("0")))


def _percent_change(current: float, previous: float) -> float:
    if previous <= 0:
        return 0.0
    return round((current - previous) / previous * 100, 2)


class CostMonitor:
    """Records usage, builds reports and raises deduplicated budget alerts.

    The ledger is append-only and holds no running totals; alert creation is
    serialised by a lock so concurrent records cannot raise the same alert
    twice.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        alerts: AlertRepository,
        config: Optional[BudgetConfig] = None,
        bus: Optional[events.EventBus] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.ledger = ledger
        self.alerts = alerts
        self.config = config or BudgetConfig()
        self.bus = bus or events.EventBus()
        self.clock = clock
        self._alert_lock = threading.Lock()

    def attach(self, bus: events.EventBus) -> None:
        """Record every completed and failed attempt published on ``bus``."""
        bus.subscribe(events.JOB_COMPLETED, self._on_job_completed)
        bus.subscribe(events.JOB_FAILED, self._on_job_failed)

    def _on_job_completed(self, payload: Dict[str, Any]) -> None:
        usage = payload.get("usage") or {}
        self.record(
            job_id=payload["job_id"],
            cost=payload.get("cost", 0.0),
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            success=True,
            provider_id=payload.get("provider_id"),
            agent_id=payload.get("agent_id"),
            template_id=payload.get("template_id"),
            content_id=payload.get("content_id"),
            processing_time_ms=payload.get("processing_time_ms", 0),
            retry_count=payload.get("retry_count", 0),
            quality_score=payload.get("quality_score"),
        )

    def _on_job_failed(self, payload: Dict[str, Any]) -> None:
        self.record(
            job_id=payload["job_id"],
            cost=payload.get("cost", 0.0),
            success=False,
            provider_id=payload.get("provider_id"),
            agent_id=payload.get("agent_id"),
            template_id=payload.get("template_id"),
            content_id=payload.get("content_id"),
            error_message=payload.get("error"),
            processing_time_ms=payload.get("processing_time_ms", 0),
            retry_count=payload.get("retry_count", 0),
        )

    def record(
        self,
        job_id: str,
        cost: float = 0.0,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        success: bool = True,
        provider_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        template_id: Optional[str] = None,
        content_id: Optional[str] = None,
        error_message: Optional[str] = None,
        processing_time_ms: int = 0,
        retry_count: int = 0,
        quality_score: Optional[float] = None,
    ) -> UsageLogEntry:
        """Append one attempt to the ledger, then check thresholds.

        Raises:
            ValueError: If cost or token counts are negative
        """
        if cost < 0:
            raise ValueError("cost cannot be negative")
        if prompt_tokens < 0 or completion_tokens < 0:
            raise ValueError("token counts cannot be negative")

        entry = UsageLogEntry(
            timestamp=self.clock(),
            job_id=job_id,
            cost=cost,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            success=success,
            provider_id=provider_id,
            agent_id=agent_id,
            template_id=template_id,
            content_id=content_id,
            error_message=error_message,
            processing_time_ms=processing_time_ms,
            retry_count=retry_count,
            quality_score=quality_score,
        )
        self.ledger.append(entry)

        try:
            self.evaluate_thresholds(job_cost=cost if success else None, provider_id=provider_id)
        except Exception:
            logger.exception("Failed to evaluate cost thresholds after job %s", job_id)
        return entry

    # Reports

    def period_for(
        self,
        timeframe: Timeframe,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Tuple[datetime, datetime]:
        now = self.clock()
        end = end or now
        if start is not None:
            return start, end
        if timeframe is Timeframe.HOUR:
            return now - timedelta(hours=1), end
        if timeframe is Timeframe.DAY:
            return now.replace(hour=0, minute=0, second=0, microsecond=0), end
        if timeframe is Timeframe.WEEK:
            return now - timedelta(days=7), end
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0), end

    def report(
        self,
        timeframe: Timeframe = Timeframe.DAY,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> CostReport:
        """Aggregate ledger rows for a period.

        ``hour`` is the last 60 minutes, ``day`` runs from local midnight,
        ``week`` covers the last 7 days and ``month`` starts on the 1st.
        """
        start, end = self.period_for(timeframe, start, end)
        entries = self.ledger.fetch(start, end)

        successful = [entry for entry in entries if entry.success]
        totals = ReportTotals(
            cost=_sum_costs(entries),
            tokens=sum(entry.total_tokens for entry in entries),
            requests=len(entries),
            jobs=len(successful),
        )
        top_expensive = [
            ExpensiveJob(
                job_id=entry.job_id,
                content_id=entry.content_id or "unknown",
                cost=entry.cost,
                provider=entry.provider_id or "unknown",
                timestamp=entry.timestamp,
            )
            for entry in sorted(successful, key=lambda e: e.cost, reverse=True)[:TOP_EXPENSIVE_LIMIT]
        ]

        return CostReport(
            timeframe=timeframe,
            start=start,
            end=end,
            totals=totals,
            by_provider=self._group_by_provider(entries),
            by_agent=self._group_by_agent(entries),
            top_expensive=top_expensive,
            trends=self._trends(entries, start, end),
        )

    @staticmethod
    def _group_by_provider(entries: List[UsageLogEntry]) -> Dict[str, ProviderBreakdown]:
        grouped: Dict[str, List[UsageLogEntry]] = {}
        for entry in entries:
            grouped.setdefault(entry.provider_id or "unknown", []).append(entry)

        breakdown = {}
        for provider, rows in grouped.items():
            cost = _sum_costs(rows)
            successful = sum(1 for row in rows if row.success)
            breakdown[provider] = ProviderBreakdown(
                cost=cost,
                tokens=sum(row.total_tokens for row in rows),
                requests=len(rows),
                successful=successful,
                average_cost_per_request=cost / len(rows),
                success_rate=successful / len(rows) * 100,
            )
        return breakdown

    @staticmethod
    def _group_by_agent(entries: List[UsageLogEntry]) -> Dict[str, AgentBreakdown]:
        grouped: Dict[str, List[UsageLogEntry]] = {}
        for entry in entries:
            grouped.setdefault(entry.agent_id or "unknown", []).append(entry)

        breakdown = {}
        for agent, rows in grouped.items():
            cost = _sum_costs(rows)
            successful = sum(1 for row in rows if row.success)
            breakdown[agent] = AgentBreakdown(
                cost=cost,
                jobs=len(rows),
                successful=successful,
                average_cost_per_job=cost / len(rows),
                success_rate=successful / len(rows) * 100,
            )
        return breakdown

    def _trends(self, current: List[UsageLogEntry], start: datetime, end: datetime) -> CostTrends:
        """Compare the period with the equally long window right before it."""
        previous = self.ledger.fetch(start - (end - start), start - timedelta(microseconds=1))

        current_cost = _sum_costs(current)
        previous_cost = _sum_costs(previous)

        def cost_per_success(rows: List[UsageLogEntry], total: float) -> float:
            successes = sum(1 for row in rows if row.success)
            return total / successes if successes else 0.0

        def average_quality(rows: List[UsageLogEntry]) -> Optional[float]:
            scores = [row.quality_score for row in rows if row.quality_score is not None]
            return sum(scores) / len(scores) if scores else None

        current_quality = average_quality(current)
        previous_quality = average_quality(previous)
        quality_impact = 0.0
        if current_quality is not None and previous_quality is not None:
            quality_impact = round(current_quality - previous_quality, 2)

        return CostTrends(
            cost_growth=_percent_change(current_cost, previous_cost),
            efficiency_change=_percent_change(
                cost_per_success(current, current_cost),
                cost_per_success(previous, previous_cost),
            ),
            quality_impact=quality_impact,
        )

    # Alerts

    def _severity(self, current: float, limit: float) -> Optional[AlertSeverity]:
        if current >= limit * self.config.critical_percent / 100:
            return AlertSeverity.CRITICAL
        if current >= limit * self.config.warning_percent / 100:
            return AlertSeverity.WARNING
        return None

    def evaluate_thresholds(
        self,
        job_cost: Optional[float] = None,
        provider_id: Optional[str] = None,
    ) -> List[CostAlert]:
        """Compare current spend with the budget and raise any new alerts.

        Args:
            job_cost: Cost of the attempt just recorded, checked for a spike
            provider_id: Restrict provider sub-limit checks to this provider

        Returns:
            Alerts created by this call; duplicates inside the cool-down are
            suppressed
        """
        config = self.config
        now = self.clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)
        created: List[CostAlert] = []

        def raise_alert(alert_type, severity, message, current, limit, timeframe, provider=None):
            alert = self._create_alert(
                alert_type, severity, message,
                AlertDetails(current=round(current, 6), limit=limit, timeframe=timeframe, provider=provider),
            )
            if alert is not None:
                created.append(alert)

        daily = self.ledger.total_cost(day_start, now)
        monthly = self.ledger.total_cost(month_start, now)
        for alert_type, current, limit, timeframe in (
            (AlertType.DAILY_LIMIT, daily, config.daily, "daily"),
            (AlertType.MONTHLY_LIMIT, monthly, config.monthly, "monthly"),
        ):
            severity = self._severity(current, limit)
            if severity is None:
                continue
            label = "limit exceeded" if severity is AlertSeverity.CRITICAL else "warning"
            raise_alert(
                alert_type, severity,
                f"{timeframe.capitalize()} cost {label}: ${current:.2f}/${limit:.2f}",
                current, limit, timeframe,
            )

        providers = config.provider_limits
        if provider_id is not None:
            providers = {
                name: limits for name, limits in providers.items() if name == provider_id
            }
        for name, limits in providers.items():
            for start, limit, timeframe in (
                (day_start, limits.daily, "daily"),
                (month_start, limits.monthly, "monthly"),
            ):
                current = self.ledger.total_cost(start, now, name)
                severity = self._severity(current, limit)
                if severity is not None:
                    raise_alert(
                        AlertType.PROVIDER_QUOTA, severity,
                        f"Provider {name} approaching {timeframe} limit: ${current:.2f}/${limit:.2f}",
                        current, limit, timeframe, provider=name,
                    )

        if job_cost is not None and job_cost > config.max_cost_per_job:
            raise_alert(
                AlertType.JOB_COST_SPIKE, AlertSeverity.WARNING,
                f"Job cost ${job_cost:.4f} exceeds per-job maximum ${config.max_cost_per_job:.2f}",
                job_cost, config.max_cost_per_job, "job", provider=provider_id,
            )

        elapsed_days = (now - month_start).total_seconds() / 86400
        if elapsed_days >= 1 and self._severity(monthly, config.monthly) is None:
            days_in_month = calendar.monthrange(now.year, now.month)[1]
            projected = monthly / elapsed_days * days_in_month
            if projected > config.monthly:
                raise_alert(
                    AlertType.BUDGET_THRESHOLD, AlertSeverity.WARNING,
                    f"Projected monthly spend ${projected:.2f} exceeds budget ${config.monthly:.2f}",
                    projected, config.monthly, "monthly_forecast",
                )
        return created

    def _create_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        details: AlertDetails,
    ) -> Optional[CostAlert]:
        with self._alert_lock:
            now = self.clock()
            cooldown_start = now - timedelta(minutes=self.config.alert_cooldown_minutes)
            if self.alerts.find_since(alert_type, severity, details.provider, details.timeframe, cooldown_start):
                logger.debug("Suppressed duplicate %s %s alert", severity.value, alert_type.value)
                return None
            alert = CostAlert(
                id=f"{alert_type.value}-{uuid.uuid4().hex[:12]}",
                type=alert_type,
                severity=severity,
                message=message,
                details=details,
                triggered_at=now,
            )
            self.alerts.add(alert)

        logger.warning("Cost alert created: %s - %s", alert_type.value, message)
        self.bus.emit(events.COST_ALERT_CREATED, {
            "alert_id": alert.id,
            "type": alert_type.value,
            "severity": severity.value,
            "message": message,
            "details": asdict(details),
            "triggered_at": now.isoformat(),
        })
        return alert

    def get_active_alerts(self) -> List[CostAlert]:
        """Unacknowledged alerts, newest first."""
        return self.alerts.list_alerts(include_acknowledged=False)

    def acknowledge_alert(self, alert_id: str) -> bool:
        alert = self.alerts.get(alert_id)
        if alert is None:
            return False
        now = self.clock()
        if not self.alerts.acknowledge(alert_id, now):
            return False
        self.bus.emit(events.COST_ALERT_ACKNOWLEDGED, {
            "alert_id": alert_id,
            "type": alert.type.value,
            "acknowledged_at": now.isoformat(),
        })
        return True

    def cleanup_alerts(self) -> int:
        """Drop acknowledged alerts older than the retention window."""
        cutoff = self.clock() - timedelta(hours=self.config.alert_retention_hours)
        removed = self.alerts.delete_acknowledged_before(cutoff)
        if removed:
            logger.info("Removed %d acknowledged cost alerts", removed)
        return removed

    def update_budget(self, config: Optional[BudgetConfig] = None, **changes: Any) -> BudgetConfig:
        """Replace the budget, or change individual fields of the current one.

        Raises:
            ValueError: If the resulting budget is invalid
        """
        updated = config or self.config
        if changes:
            updated = replace(updated, **changes)
        self.config = updated
        logger.info("Budget configuration updated")
        self.bus.emit(events.COST_BUDGET_UPDATED, {
            "config": asdict(updated),
            "updated_at": self.clock().isoformat(),
        })
        return updated

    def recommendations(self) -> List[Recommendation]:
        """Cost optimisation hints based on the last 7 days. Advisory only."""
        try:
            report = self.report(Timeframe.WEEK)
        except Exception:
            logger.exception("Failed to generate optimization recommendations")
            return []

        recommendations = []
        if report.by_provider:
            name, stats = max(
                report.by_provider.items(), key=lambda item: item[1].average_cost_per_request,
            )
            if stats.average_cost_per_request > 0.05:
                recommendations.append(Recommendation(
                    type="expensive_provider",
                    priority="high",
                    description=(
                        f"Provider {name} has a high average cost: "
                        f"${stats.average_cost_per_request:.4f}/request"
                    ),
                    potential_savings=round(stats.cost * 0.3, 2),
                    implementation="Route non-critical jobs to cheaper providers",
                ))

        failed_requests = report.totals.requests - report.totals.jobs
        cost_per_success = report.totals.cost / report.totals.jobs if report.totals.jobs else 0.0
        wasted = failed_requests * cost_per_success
        if wasted > 10:
            recommendations.append(Recommendation(
                type="failed_jobs",
                priority="medium",
                description=f"Estimated cost of failed attempts: ${wasted:.2f}",
                potential_savings=round(wasted, 2),
                implementation="Improve input validation and provider health checks",
            ))

        for name, stats in sorted(report.by_provider.items()):
            if stats.requests >= 10 and stats.success_rate < 80:
                recommendations.append(Recommendation(
                    type="unreliable_provider",
                    priority="medium",
                    description=f"Provider {name} success rate is {stats.success_rate:.1f}%",
                    potential_savings=round(stats.cost * (100 - stats.success_rate) / 100, 2),
                    implementation="Lower this provider's preference or check its configuration",
                ))

        if report.totals.cost > 50:
            recommendations.append(Recommendation(
                type="scheduling_optimization",
                priority="low",
                description="Schedule non-urgent jobs in off-peak hours",
                potential_savings=round(report.totals.cost * 0.15, 2),
                implementation="Enqueue low-priority work with a delay",
            ))
        return recommendations
