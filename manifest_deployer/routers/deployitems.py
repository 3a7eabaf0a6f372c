"""
DeployItem API routes — read-only views of manifest DeployItems.

Features:
  - Phase, lastError and decoded managed resources per item
  - Rate limiting per-IP via slowapi
  - Lifecycle events from the item's Redis Stream (if connected)
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from manifest_deployer import events, metrics
from manifest_deployer.config import settings
from manifest_deployer.errors import DecodeError
from manifest_deployer.models import (
    DeployItem,
    DeployItemListResponse,
    DeployItemResponse,
    ErrorResponse,
    Phase,
    decode_status,
)
from manifest_deployer.services.kubernetes_service import get_deploy_item, list_deploy_items

logger = logging.getLogger("deployitems")

router = APIRouter(prefix="/deployitems", tags=["deployitems"])
limiter = Limiter(key_func=get_remote_address)


def _to_response(item: DeployItem) -> DeployItemResponse:
    try:
        status = decode_status(item.providerStatus)
    except DecodeError as e:
        logger.warning(f"DeployItem {item.namespace}/{item.name} has unreadable status: {e}")
        status = None
    return DeployItemResponse(
        name=item.name,
        namespace=item.namespace,
        phase=item.phase.value,
        generation=item.generation,
        observedGeneration=item.observedGeneration,
        lastError=item.lastError,
        managedResources=status.managedResources if status else [],
    )


def update_gauges():
    counts = {p.value: 0 for p in Phase}
    for item in list_deploy_items():
        counts[item.phase.value] += 1
    metrics.update_phase_gauge(counts)


@router.get("", response_model=DeployItemListResponse)
@limiter.limit(settings.RATE_LIMIT)
async def list_deploy_items_endpoint(
    request: Request,
    namespace: Optional[str] = Query(None, description="Filter by namespace"),
    phase: Optional[Phase] = Query(None, description="Filter by phase"),
):
    """List manifest DeployItems."""
    items = list_deploy_items(namespace=namespace)
    if phase:
        items = [i for i in items if i.phase == phase]
    return DeployItemListResponse(items=[_to_response(i) for i in items], total=len(items))


@router.get("/{namespace}/{name}", response_model=DeployItemResponse,
            responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_deploy_item_endpoint(namespace: str, name: str, request: Request):
    """Get a single DeployItem with its managed resources."""
    item = get_deploy_item(namespace, name)
    if not item:
        raise HTTPException(status_code=404, detail=f"DeployItem '{namespace}/{name}' not found")
    return _to_response(item)


@router.get("/{namespace}/{name}/events", responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_deploy_item_events(namespace: str, name: str, request: Request):
    """Lifecycle events recorded for a DeployItem (empty without Redis)."""
    item = get_deploy_item(namespace, name)
    if not item:
        raise HTTPException(status_code=404, detail=f"DeployItem '{namespace}/{name}' not found")
    return {"deployItem": f"{namespace}/{name}", "events": events.read_events(namespace, name)}
