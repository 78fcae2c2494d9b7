"""
Event handlers for application lifecycle events.
"""
import asyncio
import logging
from typing import List

from app.core.config import settings
from app.schemas.health import HealthMetrics
from app.services.event_bus.bus import get_event_bus
from app.services.event_bus.events import EventType

logger = logging.getLogger("fleetsync")

# Collection of background tasks to manage
background_tasks: List[asyncio.Task] = []
_health_unsubscribe = None


def _bridge_health_to_bus(metrics: HealthMetrics) -> None:
    """Forward health transitions onto the event bus."""
    task = asyncio.get_running_loop().create_task(get_event_bus().publish(
        EventType.HEALTH_STATUS_CHANGED,
        metrics.model_dump(mode="json", by_alias=True)
    ))
    background_tasks.append(task)
    task.add_done_callback(lambda t: background_tasks.remove(t) if t in background_tasks else None)


async def _probe_loop(interval: int) -> None:
    """Probe GP51 periodically so the monitor can recover without import traffic."""
    from app.services.gp51.client import get_gp51_client
    from app.services.health.monitor import get_health_monitor

    monitor = get_health_monitor()
    client = get_gp51_client()
    while True:
        await asyncio.sleep(interval)
        await monitor.probe(client)


async def startup_event_handler() -> None:
    """
    Handle application startup.

    Initialize the database, the event bus and the health monitor wiring.
    """
    global _health_unsubscribe
    logger.info(f"Starting {settings.PROJECT_NAME}")

    try:
        from app.db.session import initialize_database
        await initialize_database(create_tables=True)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")

    event_bus = get_event_bus()
    await event_bus.initialize()

    from app.services.health.monitor import get_health_monitor
    _health_unsubscribe = get_health_monitor().subscribe(_bridge_health_to_bus, replay=False)

    if settings.HEALTH_PROBE_INTERVAL_SECONDS > 0:
        background_tasks.append(asyncio.create_task(_probe_loop(settings.HEALTH_PROBE_INTERVAL_SECONDS)))
        logger.info(f"GP51 health probe every {settings.HEALTH_PROBE_INTERVAL_SECONDS}s")

    try:
        from app.services.imports.orchestrator import get_import_orchestrator
        from app.services.imports.backup import BackupManager
        from app.db.session import get_repository_context
        await BackupManager(get_repository_context).purge_expired()
        get_import_orchestrator()
    except Exception as e:
        logger.error(f"Error preparing import services: {e}")

    await event_bus.publish(EventType.SYSTEM_STARTUP, {"service": settings.PROJECT_NAME})
    logger.info(f"{settings.PROJECT_NAME} v{settings.VERSION} startup complete")


async def shutdown_event_handler() -> None:
    """
    Handle application shutdown.

    Running imports are paused so they can be resumed later.
    """
    global _health_unsubscribe
    logger.info(f"Shutting down {settings.PROJECT_NAME}")

    try:
        from app.services.imports.orchestrator import get_import_orchestrator
        await get_import_orchestrator().shutdown()
    except Exception as e:
        logger.error(f"Error pausing running imports: {e}")

    if _health_unsubscribe is not None:
        _health_unsubscribe()
        _health_unsubscribe = None

    event_bus = get_event_bus()
    await event_bus.publish(EventType.SYSTEM_SHUTDOWN, {"reason": "Application shutdown", "graceful": True})

    for task in list(background_tasks):
        if not task.done():
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                logger.warning(f"Task {task.get_name()} was cancelled")
    background_tasks.clear()

    try:
        from app.services.gp51.client import get_gp51_client
        await get_gp51_client().close()
    except Exception as e:
        logger.error(f"Error closing GP51 client: {e}")

    try:
        from app.db.session import close_database_connections
        await close_database_connections()
    except Exception as e:
        logger.error(f"Error closing database connections: {e}")

    await event_bus.shutdown()
    logger.info("Application shutdown complete")
