"""Monitoring: Prometheus метрики событий безопасности и health check.

ApiModule монтирует `router` под /monitor.
"""

from .monitoring_module import MonitoringModule

__all__ = ["MonitoringModule"]
