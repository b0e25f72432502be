"""HTTP status surface for the gateway monitor."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
from fastapi import FastAPI, HTTPException

from gateway_monitor import __version__
from gateway_monitor.cycle import Monitor
from gateway_monitor.errors import PersistenceFailure
from gateway_monitor.models import MonitoredService
from gateway_monitor.report import format_value
from gateway_monitor.scheduler import MonitorScheduler
from gateway_monitor.store import ServiceStore


logger = structlog.get_logger(__name__)


def _service_to_dict(service: MonitoredService) -> dict[str, Any]:
    snapshot = service.last_snapshot or {}
    return {
        "id": service.id,
        "application_type": service.application_type,
        "source_id": service.source_id,
        "source_name": service.source_name,
        "is_alive": service.is_alive,
        "is_alive_transition_at": (
            service.is_alive_transition_at.isoformat() if service.is_alive_transition_at else None
        ),
        "last_notified_transition": service.last_notified_transition,
        "is_active": service.is_active,
        "properties": {key: {"name": p.name, "value": format_value(p.value)} for key, p in snapshot.items()},
    }


def create_app(
    monitor: Monitor,
    store: ServiceStore,
    scheduler: Optional[MonitorScheduler] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if scheduler is not None:
            await scheduler.start()
        logger.info("Gateway monitor API started")
        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()
            logger.info("Gateway monitor API stopped")

    app = FastAPI(title="Gateway Monitor", version=__version__, lifespan=lifespan)

    @app.get("/")
    async def root():
        """Liveness check."""
        return {"status": "healthy", "service": "gateway-monitor", "version": __version__}

    @app.get("/services")
    async def list_services():
        """Last stored state of every registered service."""
        try:
            services = await asyncio.to_thread(store.list_services)
        except PersistenceFailure as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return {"services": [_service_to_dict(s) for s in services]}

    @app.get("/jobs")
    async def list_jobs():
        return {"jobs": scheduler.list_jobs() if scheduler is not None else []}

    @app.post("/run")
    async def run_cycle(periodic: bool = False):
        """Run one check cycle now and return its summary."""
        result = await monitor.run_cycle(periodic=periodic)
        return {
            "periodic": result.periodic,
            "evaluated": result.evaluated,
            "failed": result.failed,
            "delivered": result.delivered,
            "sections": {
                "online": len(result.report.online),
                "offline": len(result.report.offline),
                "added": len(result.report.added),
                "modified": len(result.report.modified),
                "removed": len(result.report.removed),
            },
            "text": result.text,
            "elapsed_seconds": round(result.elapsed_seconds, 3),
        }

    return app
