"""
Health Checker for component health monitoring.

Monitors the database, the chain RPC (block freshness) and the results feed.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from cycle_engine.chain.gateway import ChainGateway
    from cycle_engine.ingestion.feed_client import ResultsFeedClient
    from cycle_engine.storage.database import Database

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    WARNING = "warning"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    """Health check result for a single component."""

    component: str
    status: HealthStatus
    message: str
    latency_ms: Optional[float] = None


@dataclass
class AggregateHealth:
    """Overall system health."""

    status: HealthStatus
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class HealthChecker:
    """
    Checks health of system components.

    Monitors:
    - Database connectivity
    - Chain RPC reachability and block age
    - Results feed reachability

    Usage:
        checker = HealthChecker(db, gateway, feed)
        overall = await checker.check_all()
    """

    def __init__(
        self,
        db: Optional["Database"] = None,
        gateway: Optional["ChainGateway"] = None,
        feed: Optional["ResultsFeedClient"] = None,
        block_staleness_threshold: float = 300.0,  # 5 minutes
    ) -> None:
        self.db = db
        self._gateway = gateway
        self._feed = feed
        self._block_staleness_threshold = block_staleness_threshold

    async def check_database(self) -> ComponentHealth:
        start_time = time.time()

        try:
            if self.db is None:
                return ComponentHealth(
                    component="database",
                    status=HealthStatus.UNHEALTHY,
                    message="No database connection configured",
                )

            await self.db.execute("SELECT 1")

            return ComponentHealth(
                component="database",
                status=HealthStatus.HEALTHY,
                message="Database is accessible",
                latency_ms=(time.time() - start_time) * 1000,
            )

        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return ComponentHealth(
                component="database",
                status=HealthStatus.UNHEALTHY,
                message=f"Database error: {str(e)}",
                latency_ms=(time.time() - start_time) * 1000,
            )

    async def check_chain(self) -> ComponentHealth:
        """
        Check the RPC node answers and its head block is recent.

        A head older than the staleness threshold means the node is stuck
        or out of sync; confirmations would stall behind it.
        """
        if self._gateway is None:
            return ComponentHealth(
                component="chain_rpc",
                status=HealthStatus.WARNING,
                message="No chain gateway configured",
            )

        start_time = time.time()
        try:
            block = await self._gateway.latest_block()
        except Exception as e:
            logger.error(f"Chain health check failed: {e}")
            return ComponentHealth(
                component="chain_rpc",
                status=HealthStatus.UNHEALTHY,
                message=f"RPC error: {str(e)}",
                latency_ms=(time.time() - start_time) * 1000,
            )

        latency_ms = (time.time() - start_time) * 1000
        age_seconds = datetime.now(timezone.utc).timestamp() - block.timestamp
        if age_seconds > self._block_staleness_threshold:
            return ComponentHealth(
                component="chain_rpc",
                status=HealthStatus.DEGRADED,
                message=f"Head block {block.number} is stale ({age_seconds:.0f}s old)",
                latency_ms=latency_ms,
            )

        return ComponentHealth(
            component="chain_rpc",
            status=HealthStatus.HEALTHY,
            message=f"Head block {block.number} ({age_seconds:.0f}s old)",
            latency_ms=latency_ms,
        )

    async def check_feed(self) -> ComponentHealth:
        if self._feed is None:
            return ComponentHealth(
                component="results_feed",
                status=HealthStatus.WARNING,
                message="No results feed configured",
            )

        start_time = time.time()
        reachable = await self._feed.ping()
        latency_ms = (time.time() - start_time) * 1000
        if not reachable:
            return ComponentHealth(
                component="results_feed",
                status=HealthStatus.DEGRADED,
                message="Results feed is unreachable",
                latency_ms=latency_ms,
            )
        return ComponentHealth(
            component="results_feed",
            status=HealthStatus.HEALTHY,
            message="Results feed is reachable",
            latency_ms=latency_ms,
        )

    async def check_all(self, timeout: float = 15.0) -> AggregateHealth:
        """
        Check all components with timeout.

        Args:
            timeout: Maximum time for all checks in seconds
        """
        components = []

        checks = [
            ("database", self.check_database),
            ("chain_rpc", self.check_chain),
            ("results_feed", self.check_feed),
        ]

        for name, check_func in checks:
            try:
                result = await asyncio.wait_for(
                    check_func(),
                    timeout=timeout / len(checks),
                )
                components.append(result)
            except asyncio.TimeoutError:
                components.append(ComponentHealth(
                    component=name,
                    status=HealthStatus.UNHEALTHY,
                    message=f"{name} check timed out",
                ))
            except Exception as e:
                components.append(ComponentHealth(
                    component=name,
                    status=HealthStatus.UNHEALTHY,
                    message=f"{name} check failed: {str(e)}",
                ))

        return AggregateHealth(
            status=self._calculate_overall_status(components),
            components=components,
        )

    def _calculate_overall_status(
        self,
        components: List[ComponentHealth],
    ) -> HealthStatus:
        """Calculate overall status from component statuses."""
        statuses = [c.status for c in components]

        if HealthStatus.UNHEALTHY in statuses:
            return HealthStatus.UNHEALTHY

        if HealthStatus.DEGRADED in statuses or HealthStatus.WARNING in statuses:
            return HealthStatus.DEGRADED

        return HealthStatus.HEALTHY
