"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Session store reachability (memory or Redis)
    • GeoIndex size
    • AlertStore size
    • Fanout backlog (in-flight tasks, exhausted intents)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from vecisafe.app.container import Services
from vecisafe.app.core.config import settings

logger = logging.getLogger(__name__)

# In-flight deliveries above this count report the dispatcher as degraded
FANOUT_BACKLOG_WARN = 1000


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


async def check_session_store(services: Services) -> ComponentHealth:
    comp = ComponentHealth(name="session_store")
    start = time.monotonic()
    backend = services.config.SESSION_BACKEND
    comp.details = {"backend": backend}
    if backend == "redis":
        comp.details["url"] = _redact(services.config.REDIS_URL)

    if await services.session_store.ping():
        comp.message = "Session store reachable"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Session store unreachable"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_geo_index(services: Services) -> ComponentHealth:
    comp = ComponentHealth(name="geo_index")
    start = time.monotonic()
    comp.details = {
        "backend": services.config.GEO_INDEX_BACKEND,
        "subscribers": len(services.geo_index),
    }
    comp.message = f"{len(services.geo_index)} subscribers indexed"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_alert_store(services: Services) -> ComponentHealth:
    comp = ComponentHealth(name="alert_store")
    start = time.monotonic()
    try:
        count = await services.alert_store.count()
        comp.details = {"alerts": count}
        comp.message = f"{count} alerts stored"
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_dispatcher(services: Services) -> ComponentHealth:
    comp = ComponentHealth(name="fanout")
    start = time.monotonic()
    stats = services.dispatcher.stats()
    comp.details = stats

    if stats["in_flight"] > FANOUT_BACKLOG_WARN:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Fanout backlog: {stats['in_flight']} deliveries in flight"
    elif stats["exhausted"]:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"{stats['exhausted']} deliveries exhausted"
    else:
        comp.message = f"{stats['in_flight']} deliveries in flight"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(services: Services) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_session_store(services),
        check_geo_index(services),
        check_alert_store(services),
        check_dispatcher(services),
    ]
    for coro in checks:
        report.components.append(await coro)

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    if report.status != HealthStatus.HEALTHY:
        logger.warning("Health check %s", report.status.value)
    return report
