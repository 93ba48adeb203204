"""
Prometheus metrics and a small HTTP server with health endpoints.

- /metrics - Prometheus text exposition of the keeper registry
- /health  - liveness (200 while every component reports healthy)
- /ready   - readiness (200 once the keeper passed preflight and is cycling)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from keeper.core.json_utils import dumps_bytes

KEEPER_STATES = (
    "IDLE",
    "PREFLIGHTING",
    "RUNNING",
    "HARVESTING",
    "QUOTING",
    "SWAPPING",
    "DISTRIBUTING",
    "STOPPING",
    "STOPPED",
    "FAULTED",
)


class KeeperMetrics:
    """Counters and gauges for one keeper process."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Cycle ===
        self.cycles = Counter(
            'keeper_cycles_total',
            'Keeper cycles by outcome',
            labelnames=['outcome'],
            registry=reg
        )
        self.cycle_failures = Counter(
            'keeper_cycle_failures_total',
            'Failed cycles by failure kind',
            labelnames=['kind'],
            registry=reg
        )
        self.consecutive_failures = Gauge(
            'keeper_consecutive_failures',
            'Current consecutive failure count',
            registry=reg
        )
        self.cycle_duration_sec = Histogram(
            'keeper_cycle_duration_seconds',
            'Wall time of one cycle',
            buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
            registry=reg
        )
        self.state = Gauge(
            'keeper_state',
            'Current orchestrator state (1 for the active state)',
            labelnames=['state'],
            registry=reg
        )
        self.last_success_ts = Gauge(
            'keeper_last_success_timestamp',
            'Unix time of the last successful cycle',
            registry=reg
        )

        # === Amounts (base units) ===
        self.harvested = Counter(
            'keeper_harvested_amount_total',
            'Withheld fees harvested',
            registry=reg
        )
        self.swapped_in = Counter(
            'keeper_swapped_in_amount_total',
            'Harvested tokens sold through the aggregator',
            registry=reg
        )
        self.swapped_out = Counter(
            'keeper_swapped_out_amount_total',
            'Reward currency received from swaps',
            registry=reg
        )
        self.distributed = Counter(
            'keeper_distributed_amount_total',
            'Reward currency paid out to holders',
            registry=reg
        )
        self.recipients = Counter(
            'keeper_distribution_recipients_total',
            'Recipients paid across all distribution batches',
            registry=reg
        )
        self.unswapped = Gauge(
            'keeper_unswapped_amount',
            'Harvested amount awaiting a swap',
            registry=reg
        )
        self.undistributed = Gauge(
            'keeper_undistributed_amount',
            'Reward amount awaiting distribution',
            registry=reg
        )
        self.price_impact_pct = Gauge(
            'keeper_last_price_impact_pct',
            'Price impact of the last accepted quote (%)',
            registry=reg
        )
        self.owner_paid = Counter(
            'keeper_owner_paid_amount_total',
            'Harvested tokens paid to the owner wallet',
            registry=reg
        )
        self.upkeep_swapped_in = Counter(
            'keeper_upkeep_swapped_in_amount_total',
            'Harvested tokens sold for the keeper SOL top-up',
            registry=reg
        )

        # === Keeper wallet ===
        self.sol_balance = Gauge(
            'keeper_sol_balance_lamports',
            'Keeper native balance at the start of the last cycle',
            registry=reg
        )

        self.registry = reg

    def set_state(self, state: str) -> None:
        for name in KEEPER_STATES:
            self.state.labels(state=name).set(1 if name == state else 0)

    def render(self) -> bytes:
        return generate_latest(self.registry)


@dataclass
class HealthStatus:
    healthy: bool = True
    ready: bool = False
    last_heartbeat_ms: int = 0
    components: Dict[str, bool] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)


class HealthChecker:
    """Component health plus readiness, served by /health and /ready."""

    def __init__(self) -> None:
        self._components: Dict[str, bool] = {}
        self._details: Dict[str, Any] = {}
        self._ready = False
        self._last_heartbeat = int(time.time() * 1000)

    def set_component_health(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        self._components[name] = healthy
        if detail:
            self._details[name] = detail
        self.heartbeat()

    def set_ready(self, ready: bool) -> None:
        self._ready = ready
        self.heartbeat()

    def heartbeat(self) -> None:
        self._last_heartbeat = int(time.time() * 1000)

    def is_healthy(self) -> bool:
        return all(self._components.values()) if self._components else True

    def is_ready(self) -> bool:
        return self._ready and self.is_healthy()

    def get_status(self) -> HealthStatus:
        return HealthStatus(
            healthy=self.is_healthy(),
            ready=self.is_ready(),
            last_heartbeat_ms=self._last_heartbeat,
            components=dict(self._components),
            details=dict(self._details),
        )

    def to_dict(self) -> Dict[str, Any]:
        status = self.get_status()
        return {
            "healthy": status.healthy,
            "ready": status.ready,
            "last_heartbeat_ms": status.last_heartbeat_ms,
            "components": status.components,
            "details": status.details,
        }


def _response(status: bytes, content_type: bytes, body: bytes) -> bytes:
    return (
        b"HTTP/1.1 " + status + b"\r\n"
        b"Content-Type: " + content_type + b"\r\n"
        b"Content-Length: " + str(len(body)).encode() + b"\r\n"
        b"Connection: close\r\n\r\n"
        + body
    )


async def start_metrics_server(
    metrics: KeeperMetrics,
    port: int,
    health_checker: Optional[HealthChecker] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """Start the HTTP server for /metrics, /health and /ready."""
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        req = await reader.read(2048)
        path_raw = b"/"
        request_line = req.split(b"\r\n", 1)[0]
        parts = request_line.split(b" ")
        if len(parts) >= 2:
            path_raw = parts[1]
        path = urlparse(path_raw.decode("utf-8", errors="ignore")).path

        if path == "/health":
            healthy = health_checker.is_healthy() if health_checker else True
            body = dumps_bytes(health_checker.to_dict() if health_checker else {"healthy": True})
            status = b"200 OK" if healthy else b"503 Service Unavailable"
            resp = _response(status, b"application/json", body)
        elif path == "/ready":
            ready = health_checker.is_ready() if health_checker else True
            status = b"200 OK" if ready else b"503 Service Unavailable"
            resp = _response(status, b"application/json", dumps_bytes({"ready": ready}))
        elif path in ("/", "/metrics"):
            resp = _response(b"200 OK", CONTENT_TYPE_LATEST.encode(), metrics.render())
        else:
            resp = _response(b"404 Not Found", b"text/plain", b"not found\n")

        writer.write(resp)
        await writer.drain()
        writer.close()

    return await asyncio.start_server(handle, host, port)
