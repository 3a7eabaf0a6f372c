"""Operational routes: liveness with Redis status, Prometheus scrape."""

from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from manifest_deployer import VERSION, events
from manifest_deployer.routers.deployitems import update_gauges

router = APIRouter(tags=["system"])


@router.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "redis": events.redis_status(),
        "version": VERSION,
    }


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Refresh the per-phase gauge, then expose all metrics."""
    update_gauges()
    return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)
