from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import REGISTRY, generate_latest

from peermatch.config import settings
from peermatch.dependencies import ServicesDep
from peermatch.monitoring.health_checks import run_all_checks

router = APIRouter(tags=["internal"])


@router.get("/health")
async def health_check(services: ServicesDep):
    """Health check endpoint."""
    checks = await run_all_checks(services.store, services.queue)
    all_healthy = all(c.healthy for c in checks)
    return {
        "status": "healthy" if all_healthy else "degraded",
        "instance": settings.instance_id,
        "connections": len(services.registry),
        "components": [
            {
                "component": c.component,
                "healthy": c.healthy,
                "latency_ms": c.latency_ms,
                "message": c.message,
            }
            for c in checks
        ],
    }


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(
        generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
