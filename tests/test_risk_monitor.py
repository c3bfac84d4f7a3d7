import asyncio

from yieldsentry.adapters.base import BaseAdapter
from yieldsentry.config import RiskSettings, RiskThreshold
from yieldsentry.risk.monitoring import RiskMonitor
from yieldsentry.schemas import ProtocolInfo
from yieldsentry.services.reliability import ReliabilityCoordinator


class _Clock:
    def __init__(self, now: float = 10_000.0):
        self.now = now

    def __call__(self):
        return self.now


class _QuietAdapter(BaseAdapter):
    def __init__(self, name):
        super().__init__(ProtocolInfo(name=name, chain="stacks", base_url=f"http://{name}"))

    async def list(self):
        return []


def _monitor(clock=None, thresholds=None, **settings):
    clock = clock or _Clock()
    coord = ReliabilityCoordinator(
        {"a": _QuietAdapter("a"), "b": _QuietAdapter("b")}, clock=clock
    )
    if thresholds is not None:
        settings["thresholds"] = thresholds
    monitor = RiskMonitor(coord, RiskSettings(**settings), clock=clock)
    return monitor, coord


def test_threshold_alerts_fire_on_level_increase_only():
    monitor, _ = _monitor()

    def check(value):
        return asyncio.run(monitor.check_threshold("overall_risk", value))

    warning = check(60)
    assert warning.severity == "warning"
    assert warning.threshold == 50
    assert warning.action_required is False

    assert check(65) is None

    critical = check(80)
    assert critical.severity == "critical"
    assert critical.action_required is True

    assert check(40) is None
    assert check(55).severity == "warning"
    assert len(monitor.get_all_alerts()) == 3


def test_unknown_or_disabled_metric_is_ignored():
    monitor, _ = _monitor(
        thresholds=[RiskThreshold(metric="error_rate", warning_level=0.05, critical_level=0.1, enabled=False)]
    )
    assert asyncio.run(monitor.check_threshold("error_rate", 0.5)) is None
    assert asyncio.run(monitor.check_threshold("overall_risk", 99)) is None
    assert monitor.get_all_alerts() == []


def test_acknowledge_hides_alert_but_keeps_it():
    monitor, _ = _monitor()
    alert = asyncio.run(monitor.check_threshold("response_time", 5_000))

    assert monitor.acknowledge_alert(alert.id) is True
    assert monitor.get_active_alerts() == []
    assert monitor.get_all_alerts()[0].acknowledged is True
    assert monitor.acknowledge_alert("alert_missing") is False


def test_webhook_channel_is_notified(monkeypatch):
    monitor, _ = _monitor(webhook_url="http://hooks.local/alerts")
    sent = []

    async def _fake_send(alert):
        sent.append(alert.metric_name)

    monkeypatch.setattr(monitor, "_send_webhook", _fake_send)

    asyncio.run(monitor.check_threshold("error_rate", 0.2))
    asyncio.run(monitor.check_threshold("response_time", 5_000))

    # response_time is in-app only by default
    assert sent == ["error_rate"]


def test_run_check_flags_down_adapters():
    monitor, coord = _monitor()
    for _ in range(5):
        coord.record_failure("a")
        coord.record_failure("b")

    metrics = asyncio.run(monitor.run_check())

    assert monitor.metrics["adapter_health"] == 1.0
    assert metrics.technical >= 50
    assert "API reliability issues" in metrics.risk_factors
    alerts = monitor.get_active_alerts()
    assert any(a.metric_name == "adapter_health" and a.severity == "critical" for a in alerts)


def test_healthy_system_raises_nothing():
    monitor, _ = _monitor()

    metrics = asyncio.run(monitor.run_check())

    assert metrics.overall_score == 0.0
    assert metrics.category == "low"
    assert monitor.get_all_alerts() == []


def test_stale_health_records_lower_data_quality():
    clock = _Clock()
    monitor, _ = _monitor(clock=clock)

    clock.now += 10 * monitor.coordinator.settings.health_check_interval_sec
    data = monitor.collect_system_risk_data()

    assert all(q.freshness == 0.0 for q in data.data_quality.values())
    assert monitor.evaluate_risk(data).financial == 25


def test_old_alerts_are_pruned():
    clock = _Clock()
    monitor, _ = _monitor(clock=clock, alert_retention_sec=60)
    asyncio.run(monitor.check_threshold("response_time", 5_000))

    clock.now += 61
    monitor._prune_alerts()
    assert monitor.get_all_alerts() == []


def test_risk_report_shape():
    monitor, coord = _monitor()
    coord.record_failure("a")
    coord.record_failure("a")
    coord.record_failure("a")

    report = monitor.generate_risk_report()

    assert report["risk_category"] in {"low", "medium", "high", "critical"}
    assert report["system_health"]["api"] == 50.0
    assert report["active_alerts"] == 0
    assert set(report) >= {"overall_risk_score", "risk_factors", "recommendations", "critical_alerts"}
