"""
Monitoring package.

Prometheus metrics and webhook alerting.
"""

from settlement.monitoring.alerting import Alert, AlertConfig, AlertManager, AlertSeverity, AlertType
from settlement.monitoring.metrics import SettlementMetrics, start_metrics_server

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "SettlementMetrics",
    "start_metrics_server",
]
