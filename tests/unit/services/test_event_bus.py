import pytest

from app.services.event_bus.events import EventType
from app.services.rate_limiter import RateLimiter


@pytest.mark.asyncio
async def test_publish_reaches_sync_and_async_subscribers(event_bus):
    received = []

    def sync_subscriber(data):
        received.append(("sync", data["job_id"]))

    async def async_subscriber(data):
        received.append(("async", data["job_id"]))

    await event_bus.subscribe(EventType.IMPORT_PAUSED, sync_subscriber)
    await event_bus.subscribe(EventType.IMPORT_PAUSED, async_subscriber)

    delivered = await event_bus.publish(EventType.IMPORT_PAUSED, {"job_id": "import-1"})

    assert delivered
    assert received == [("sync", "import-1"), ("async", "import-1")]
    assert event_bus.get_subscriber_count(EventType.IMPORT_PAUSED) == 2


@pytest.mark.asyncio
async def test_failed_delivery_is_recorded(event_bus):
    async def broken(data):
        raise ValueError("subscriber bug")

    subscriber_id = await event_bus.subscribe(EventType.IMPORT_FAILED, broken, subscriber_id="broken")

    delivered = await event_bus.publish(EventType.IMPORT_FAILED, {"job_id": "import-1"})

    assert not delivered
    [failure] = event_bus.get_failed_deliveries(subscriber_id)
    assert failure["event_type"] == EventType.IMPORT_FAILED.value
    assert failure["error"] == "subscriber bug"


@pytest.mark.asyncio
async def test_unsubscribe_and_history(event_bus):
    received = []
    subscriber_id = await event_bus.subscribe(EventType.IMPORT_COMPLETED, received.append)

    await event_bus.publish(EventType.IMPORT_COMPLETED, {"job_id": "import-1"})
    assert await event_bus.unsubscribe(EventType.IMPORT_COMPLETED, subscriber_id)
    assert not await event_bus.unsubscribe(EventType.IMPORT_COMPLETED, subscriber_id)
    await event_bus.publish(EventType.IMPORT_COMPLETED, {"job_id": "import-2"})

    assert [event["job_id"] for event in received] == ["import-1"]
    history = event_bus.get_event_history()
    assert [entry["data"]["job_id"] for entry in history] == ["import-1", "import-2"]
    assert history[0]["data"]["event_type"] == EventType.IMPORT_COMPLETED.value


@pytest.mark.asyncio
async def test_rate_limiter_blocks_after_budget():
    from fastapi import HTTPException

    limiter = RateLimiter()
    limiter.set_limit("start_import", 2, 300)

    await limiter.check_rate_limit("admin-1", "start_import")
    await limiter.check_rate_limit("admin-1", "start_import")
    with pytest.raises(HTTPException) as exc_info:
        await limiter.check_rate_limit("admin-1", "start_import")

    assert exc_info.value.status_code == 429
    assert "Retry-After" in exc_info.value.headers
    # Budgets are per subject
    await limiter.check_rate_limit("admin-2", "start_import")

    status = await limiter.get_limit_status("admin-1", "start_import")
    assert status["remaining"] == 0
    assert status["used"] == 2
