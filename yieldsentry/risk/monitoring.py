import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import aiohttp

from yieldsentry.config import RiskSettings, RiskThreshold
from yieldsentry.risk.scoring import categorize_risk
from yieldsentry.schemas import RiskAlert
from yieldsentry.services.reliability import AdapterHealth, ReliabilityCoordinator
from yieldsentry.services.ticker import PeriodicTask

logger = logging.getLogger(__name__)

# Weights for the system-level score
SYSTEM_WEIGHTS = {
    "technical": 0.35,
    "operational": 0.25,
    "financial": 0.25,
    "security": 0.15,
}
COMPLETENESS_BY_STATUS = {"healthy": 1.0, "degraded": 0.8, "down": 0.0}
LEVEL_NONE, LEVEL_WARNING, LEVEL_CRITICAL = 0, 1, 2


@dataclass
class DataQuality:
    freshness: float
    completeness: float


@dataclass
class SystemRiskData:
    adapter_health: Dict[str, AdapterHealth]
    data_quality: Dict[str, DataQuality]
    response_time_ms: float
    error_rate: float
    timestamp: float


@dataclass
class SystemRiskMetrics:
    overall_score: float
    category: str
    technical: float
    operational: float
    financial: float
    security: float
    confidence: float
    risk_factors: List[str] = field(default_factory=list)


class RiskMonitor:
    """
    Periodically scores system health from the reliability coordinator and
    raises threshold alerts. An alert fires when a metric moves into a higher
    level (warning -> critical) than at the previous check, so a metric that
    stays above its threshold doesn't flood the list. Alerts are kept until the
    retention window passes, acknowledged or not.
    """

    def __init__(
        self,
        coordinator: ReliabilityCoordinator,
        settings: Optional[RiskSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.coordinator = coordinator
        self.settings = settings or RiskSettings()
        self._clock = clock
        self.thresholds: Dict[str, RiskThreshold] = {t.metric: t for t in self.settings.thresholds}
        self.alerts: List[RiskAlert] = []
        self.metrics: Dict[str, float] = {}
        self._levels: Dict[str, int] = {}
        self._is_checking = False
        self._ticker = PeriodicTask("risk-monitor", self.run_check, self.settings.check_interval_sec)

    def start(self):
        self._ticker.start()
        logger.info("🛡️ Risk monitor online (%d thresholds)", len(self.thresholds))

    async def stop(self):
        await self._ticker.stop()

    # Signals ----------------------------------------------------------------

    def collect_system_risk_data(self) -> SystemRiskData:
        now = self._clock()
        health = self.coordinator.get_adapter_health()
        stale_after = self.coordinator.settings.health_check_interval_sec * 2
        quality = {}
        for name, record in health.items():
            if not record.enabled:
                continue
            age = max(0.0, now - record.last_check)
            # Full freshness within two probe intervals, linear decay to 0 at ten
            freshness = 1.0 if age <= stale_after else max(0.0, 1.0 - (age - stale_after) / (stale_after * 4))
            quality[name] = DataQuality(freshness=freshness, completeness=COMPLETENESS_BY_STATUS[record.status])

        reliability = self.coordinator.get_system_reliability()
        return SystemRiskData(
            adapter_health={n: h for n, h in health.items() if h.enabled},
            data_quality=quality,
            response_time_ms=reliability.average_response_time_ms,
            error_rate=self.coordinator.error_rate(),
            timestamp=now,
        )

    def evaluate_risk(self, data: SystemRiskData) -> SystemRiskMetrics:
        statuses = [h.status for h in data.adapter_health.values()]
        qualities = list(data.data_quality.values())
        avg_quality = (
            sum((q.freshness + q.completeness) / 2 for q in qualities) / len(qualities) if qualities else 0.0
        )
        avg_freshness = sum(q.freshness for q in qualities) / len(qualities) if qualities else 0.0

        technical = statuses.count("down") * 25
        if avg_quality < 0.9:
            technical += 20
        if avg_quality < 0.8:
            technical += 15

        operational = 0
        if data.response_time_ms > 1000:
            operational += 15
        if data.error_rate > 0.05:
            operational += 20

        financial = 0
        if avg_freshness < 0.95:
            financial += 10
        if avg_freshness < 0.85:
            financial += 15

        security = statuses.count("degraded") * 10

        scores = {
            "technical": min(technical, 100),
            "operational": min(operational, 100),
            "financial": min(financial, 100),
            "security": min(security, 100),
        }
        overall = sum(scores[k] * SYSTEM_WEIGHTS[k] for k in SYSTEM_WEIGHTS)
        overall = round(max(0.0, min(100.0, overall)), 2)

        factors = []
        if scores["technical"] > 50:
            factors.append("API reliability issues")
        if scores["operational"] > 50:
            factors.append("Performance degradation")
        if scores["financial"] > 50:
            factors.append("Data accuracy concerns")
        if scores["security"] > 50:
            factors.append("Security vulnerabilities")

        return SystemRiskMetrics(
            overall_score=overall,
            category=categorize_risk(overall),
            confidence=max(0.1, 1 - (sum(scores.values()) / 4) / 100),
            risk_factors=factors,
            **scores,
        )

    # Check loop -------------------------------------------------------------

    async def run_check(self) -> Optional[SystemRiskMetrics]:
        if self._is_checking:
            logger.debug("Risk check already in progress, skipping")
            return None
        self._is_checking = True
        try:
            data = self.collect_system_risk_data()
            metrics = self.evaluate_risk(data)
            total = len(data.adapter_health)
            unhealthy = sum(1 for h in data.adapter_health.values() if h.status != "healthy")

            self.metrics = {
                "overall_risk": metrics.overall_score,
                "response_time": data.response_time_ms,
                "error_rate": data.error_rate,
                "adapter_health": unhealthy / total if total else 1.0,
            }
            for name, value in self.metrics.items():
                await self.check_threshold(name, value)
            self._prune_alerts()
            return metrics
        except Exception as e:
            logger.error("Risk monitoring error: %s", e, exc_info=True)
            return None
        finally:
            self._is_checking = False

    async def check_threshold(self, metric: str, value: float) -> Optional[RiskAlert]:
        threshold = self.thresholds.get(metric)
        if threshold is None or not threshold.enabled:
            return None

        if value >= threshold.critical_level:
            level, severity, limit = LEVEL_CRITICAL, "critical", threshold.critical_level
        elif value >= threshold.warning_level:
            level, severity, limit = LEVEL_WARNING, "warning", threshold.warning_level
        else:
            level, severity, limit = LEVEL_NONE, None, None

        previous = self._levels.get(metric, LEVEL_NONE)
        self._levels[metric] = level
        if level <= previous:
            return None
        alert = self._create_alert(severity, metric, value, limit)
        await self._notify(alert, threshold.notification_channels)
        return alert

    def _create_alert(self, severity: str, metric: str, value: float, limit: float) -> RiskAlert:
        now = self._clock()
        alert = RiskAlert(
            id=f"alert_{int(now * 1000)}_{uuid.uuid4().hex[:9]}",
            type="threshold_breach",
            severity=severity,
            title=f"{metric} {severity.upper()}",
            message=f"{metric} is {value:.4g} (threshold: {limit:g})",
            metric_name=metric,
            current_value=value,
            threshold=limit,
            timestamp=now,
            protocol_id="system",
            action_required=severity == "critical",
        )
        self.alerts.append(alert)
        return alert

    def _prune_alerts(self):
        cutoff = self._clock() - self.settings.alert_retention_sec
        self.alerts = [a for a in self.alerts if a.timestamp >= cutoff]

    # Notifications ----------------------------------------------------------

    async def _notify(self, alert: RiskAlert, channels: List[str]):
        for channel in channels:
            if channel == "in_app":
                log = logger.error if alert.severity == "critical" else logger.warning
                log("🚨 %s: %s", alert.title, alert.message)
            elif channel == "webhook":
                await self._send_webhook(alert)
            elif channel == "email":
                logger.info("Email notifications are not supported; alert %s logged only", alert.id)

    async def _send_webhook(self, alert: RiskAlert):
        url = self.settings.webhook_url
        if not url:
            return
        try:
            timeout = aiohttp.ClientTimeout(total=5)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=alert.model_dump(mode="json")) as resp:
                    if resp.status >= 400:
                        logger.warning("Alert webhook returned status=%s", resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Alert webhook failed: %s", e)

    # Queries ----------------------------------------------------------------

    def get_active_alerts(self) -> List[RiskAlert]:
        return [a for a in self.alerts if not a.acknowledged]

    def get_all_alerts(self) -> List[RiskAlert]:
        return list(self.alerts)

    def acknowledge_alert(self, alert_id: str) -> bool:
        for alert in self.alerts:
            if alert.id == alert_id:
                alert.acknowledged = True
                return True
        return False

    def generate_risk_report(self) -> Dict:
        data = self.collect_system_risk_data()
        metrics = self.evaluate_risk(data)
        active = self.get_active_alerts()
        statuses = [h.status for h in data.adapter_health.values()]
        qualities = list(data.data_quality.values())

        recommendations = []
        if metrics.overall_score > 50:
            recommendations.append("Add data source redundancy")
        if any(a.metric_name == "response_time" for a in active):
            recommendations.append("Optimize upstream response times and lean on the cache")
        if metrics.overall_score > 75:
            recommendations.append("Switch the reliability method to 'fastest' or add fallback sources")

        return {
            "timestamp": data.timestamp,
            "overall_risk_score": metrics.overall_score,
            "risk_category": metrics.category,
            "risk_factors": metrics.risk_factors,
            "active_alerts": len(active),
            "critical_alerts": sum(1 for a in active if a.severity == "critical"),
            "system_health": {
                "api": (statuses.count("healthy") / len(statuses) * 100) if statuses else 0.0,
                "data": (sum((q.freshness + q.completeness) / 2 for q in qualities) / len(qualities) * 100)
                if qualities else 0.0,
                "performance": max(0.0, 100 - (data.error_rate * 1000 + data.response_time_ms / 10)),
            },
            "recommendations": recommendations,
        }
