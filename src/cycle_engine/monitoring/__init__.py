"""
Monitoring Layer - Health checks, cycle monitoring and alerting.

This module provides:
    - HealthChecker: Component health checks with timeouts
    - HealthStatus: Health status enum (HEALTHY, DEGRADED, UNHEALTHY, WARNING)
    - ComponentHealth: Health check result for a single component
    - AggregateHealth: Overall system health aggregation
    - CycleMonitor: Missed selections, overdue/halted cycles, open conflicts
    - AlertManager: Telegram notifications with deduplication

Health Checks:
    - Database connectivity
    - Chain RPC reachability AND head block staleness
    - Results feed reachability

Alert Deduplication:
    - Same alert won't fire repeatedly within cooldown window
    - Different alert types are tracked separately
"""

from .health_checker import (
    AggregateHealth,
    ComponentHealth,
    HealthChecker,
    HealthStatus,
)
from .alerting import AlertManager
from .cycle_monitor import CycleIssue, CycleMonitor

__all__ = [
    # Health checking
    "HealthChecker",
    "HealthStatus",
    "ComponentHealth",
    "AggregateHealth",
    # Cycles
    "CycleMonitor",
    "CycleIssue",
    # Alerting
    "AlertManager",
]
