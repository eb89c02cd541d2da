from typing import Any, Dict
import time

from prometheus_client import CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client import Counter, Gauge
from fastapi import APIRouter, Response

from core.storage import StorageUnavailableError
from modules.auth.audit import SECURITY_EVENT_TOPIC


class MonitoringModule:
    """Prometheus метрики безопасности и health check.

    Счётчики событий наполняются подпиской на "security.event" в event_bus,
    gauge сессий пересчитывается при каждом scrape.

    Usage: instantiate, call attach(), mount `router` in the FastAPI app.
    """

    def __init__(self, name: str = "monitoring", runtime: Any = None):
        self.name = name
        self.runtime = runtime
        self.registry = CollectorRegistry()
        self._start_time = time.time()
        self._attached = False

        self.health_requests_total = Counter(
            "gapauth_health_requests_total",
            "Total health check requests",
            registry=self.registry,
        )
        self.uptime = Gauge("gapauth_uptime_seconds", "Service uptime seconds", registry=self.registry)

        self.security_events_total = Counter(
            "gapauth_security_events_total",
            "Security events by category and outcome",
            ["category", "outcome", "severity"],
            registry=self.registry,
        )
        self.sessions = Gauge(
            "gapauth_sessions",
            "Sessions by state",
            ["state"],
            registry=self.registry,
        )

        self.router = APIRouter()
        self.router.add_api_route("/metrics", self.metrics_endpoint, methods=["GET"])
        self.router.add_api_route("/health", self.health_endpoint, methods=["GET"])

    def attach(self) -> None:
        if self.runtime is not None and not self._attached:
            self.runtime.event_bus.subscribe(SECURITY_EVENT_TOPIC, self._on_security_event)
            self._attached = True

    def detach(self) -> None:
        if self.runtime is not None and self._attached:
            self.runtime.event_bus.unsubscribe(SECURITY_EVENT_TOPIC, self._on_security_event)
            self._attached = False

    async def _on_security_event(self, event_type: str, event: Dict[str, Any]) -> None:
        self.security_events_total.labels(
            category=event.get("category", "unknown"),
            outcome=event.get("outcome", "unknown"),
            severity=event.get("severity", "info"),
        ).inc()

    async def metrics_endpoint(self) -> Response:
        self.uptime.set(time.time() - self._start_time)
        if self.runtime is not None and await self.runtime.service_registry.has_service("auth.session_stats"):
            stats = await self.runtime.service_registry.call("auth.session_stats")
            for state in ("active", "revoked", "expired", "downgraded"):
                self.sessions.labels(state=state).set(stats.get(state, 0))
        data = generate_latest(self.registry)
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    async def health_endpoint(self) -> dict:
        self.health_requests_total.inc()
        checks = {"status": "ok", "uptime": time.time() - self._start_time}

        if self.runtime:
            try:
                await self.runtime.storage.get("health_check", "probe")
                checks["storage"] = "ok"
            except StorageUnavailableError as e:
                checks["storage"] = "error"
                checks["storage_error"] = type(e.cause).__name__ if e.cause else "timeout"
                checks["status"] = "degraded"

        return checks
