# app/api/v1/endpoints/health.py
"""
GP51 health monitor endpoints.
"""
import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from app.api.v1.dependencies import get_current_admin, get_monitor, get_platform_client, get_rate_limiter
from app.core.exceptions import FleetSyncException
from app.core.security import decode_access_token
from app.schemas.health import HealthMetrics
from app.services.health.monitor import HealthMonitor

router = APIRouter()
logger = logging.getLogger("fleetsync.api.health")


@router.get("/metrics", response_model=HealthMetrics, response_model_by_alias=True)
async def get_health_metrics(
    admin: Dict[str, Any] = Depends(get_current_admin),
    monitor: HealthMonitor = Depends(get_monitor),
):
    """Current health snapshot."""
    return monitor.get_health_metrics()


@router.post("/check", response_model=HealthMetrics, response_model_by_alias=True)
async def run_health_check(
    admin: Dict[str, Any] = Depends(get_current_admin),
    monitor: HealthMonitor = Depends(get_monitor),
    client = Depends(get_platform_client),
    rate_limiter = Depends(get_rate_limiter),
):
    """Probe GP51 once and return the updated snapshot."""
    await rate_limiter.check_rate_limit(admin["sub"], "health_check")
    return await monitor.probe(client)


@router.post("/clear", response_model=HealthMetrics, response_model_by_alias=True)
async def clear_health_history(
    admin: Dict[str, Any] = Depends(get_current_admin),
    monitor: HealthMonitor = Depends(get_monitor),
):
    """Reset the rolling window and counters."""
    logger.info(f"Admin {admin['sub']} cleared GP51 health history")
    monitor.clear_history()
    return monitor.get_health_metrics()


@router.websocket("/subscribe")
async def subscribe_health(
    websocket: WebSocket,
    token: str,
    monitor: HealthMonitor = Depends(get_monitor),
):
    """
    Push the health snapshot on every status transition.

    The admin token is passed as a query parameter. The current snapshot is
    sent right after the connection is accepted.
    """
    try:
        payload = decode_access_token(token)
    except FleetSyncException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if payload.get("role") != "admin":
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = monitor.subscribe(queue.put_nowait)

    async def push_snapshots() -> None:
        while True:
            metrics = await queue.get()
            await websocket.send_json(metrics.model_dump(mode="json", by_alias=True))

    pusher = asyncio.create_task(push_snapshots())
    try:
        # Incoming frames are ignored; receiving surfaces the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Health subscriber disconnected")
    finally:
        unsubscribe()
        pusher.cancel()
