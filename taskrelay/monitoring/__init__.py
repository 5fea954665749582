"""Monitoring - health checks."""

from taskrelay.monitoring.health_check import HealthChecker, check_health

__all__ = [
    "HealthChecker",
    "check_health",
]
