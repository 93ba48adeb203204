"""
Monitoring package - webhook alerts, Prometheus metrics and health endpoints.
"""

from keeper.monitoring.alerting import Alert, AlertConfig, AlertManager, AlertSeverity, AlertType
from keeper.monitoring.metrics import HealthChecker, KeeperMetrics, start_metrics_server

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "HealthChecker",
    "KeeperMetrics",
    "start_metrics_server",
]
