import asyncio

import pytest

from app.core.exceptions import FatalPlatformError, RecordValidationError, RetryableError
from app.services.imports.chunk_processor import ChunkCancelled, ChunkProcessor
from app.services.imports.planner import WorkItem

from conftest import FakeGP51Client, FakeWriter, make_users


def user_items(count: int):
    return [WorkItem(kind="user", identifier=username) for username in make_users(count)]


def make_processor(client, health, writer=None, **options):
    options.setdefault("item_concurrency", 1)
    options.setdefault("max_attempts", 3)
    options.setdefault("retry_base_delay", 0)
    options.setdefault("retry_max_delay", 0)
    options.setdefault("call_timeout", 5)
    return ChunkProcessor(client=client, writer=writer or FakeWriter(), health=health, **options)


@pytest.mark.asyncio
async def test_transient_errors_are_retried(health):
    client = FakeGP51Client()
    client.script(
        "u000",
        RetryableError("GP51 returned HTTP 503", error_kind="server_error"),
        RetryableError("GP51 returned HTTP 503", error_kind="server_error"),
    )
    writer = FakeWriter()
    processor = make_processor(client, health, writer)

    result = await processor.process_chunk(user_items(2), "job-1")

    assert result.success_count == 2
    assert result.failure_count == 0
    assert client.calls == ["u000", "u000", "u000", "u001"]
    assert writer.applied == ["u000", "u001"]
    # One health outcome per item, recorded after its retries
    assert health.get_health_metrics().total_requests == 2
    assert health.get_health_metrics().error_count == 0


@pytest.mark.asyncio
async def test_item_fails_after_max_attempts(health):
    client = FakeGP51Client()
    client.script("u000", *[RetryableError("rate limited", error_kind="rate_limit")] * 3)
    processor = make_processor(client, health)

    result = await processor.process_chunk(user_items(1), "job-1", chunk_index=4)

    assert result.chunk_index == 4
    assert result.failure_count == 1
    [entry] = result.errors
    assert entry.item_identifier == "u000"
    assert entry.attempts == 3
    assert entry.step == "fetch"
    assert entry.error_kind == "rate_limit"
    assert client.calls.count("u000") == 3
    assert health.get_health_metrics().error_count == 1


@pytest.mark.asyncio
async def test_validation_errors_are_not_retried(health):
    client = FakeGP51Client()
    client.script("u001", RecordValidationError("malformed email"))
    processor = make_processor(client, health)

    result = await processor.process_chunk(user_items(3), "job-1")

    assert result.success_count == 2
    assert result.failure_count == 1
    assert client.calls.count("u001") == 1
    assert result.errors[0].attempts == 1
    assert result.errors[0].step == "validate"


@pytest.mark.asyncio
async def test_platform_rejection_keeps_fetch_step(health):
    client = FakeGP51Client()
    client.script("u000", RecordValidationError("user not found", step="fetch"))
    processor = make_processor(client, health)

    result = await processor.process_chunk(user_items(1), "job-1")

    assert result.errors[0].step == "fetch"


@pytest.mark.asyncio
async def test_fatal_error_stops_chunk(health):
    client = FakeGP51Client()
    client.script("u001", FatalPlatformError("GP51 login failed: password wrong"))
    processor = make_processor(client, health)

    result = await processor.process_chunk(user_items(5), "job-1")

    assert result.fatal_error is not None
    assert client.calls == ["u000", "u001"]
    assert result.success_count == 1
    assert result.failure_count == 1
    assert result.processed_count == 2
    assert result.errors[0].step == "authenticate"


@pytest.mark.asyncio
async def test_slow_calls_time_out(health):
    client = FakeGP51Client()
    client.delay = 0.5
    processor = make_processor(client, health, call_timeout=0.01, max_attempts=2)

    result = await processor.process_chunk(user_items(1), "job-1")

    assert result.failure_count == 1
    assert result.errors[0].error_kind == "timeout"
    assert result.errors[0].attempts == 2


@pytest.mark.asyncio
async def test_pause_signal_cancels_chunk(health):
    client = FakeGP51Client()
    processor = make_processor(client, health)
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(ChunkCancelled):
        await processor.process_chunk(user_items(3), "job-1", cancel_event=cancel)

    assert client.calls == []


@pytest.mark.asyncio
async def test_errors_are_reported_in_item_order(health):
    client = FakeGP51Client()
    client.delay = 0.001
    client.script("u007", RecordValidationError("bad record"))
    client.script("u002", RecordValidationError("bad record"))
    processor = make_processor(client, health, item_concurrency=4)
    progress = []

    result = await processor.process_chunk(
        user_items(10), "job-1", on_item_done=lambda done, total: progress.append((done, total))
    )

    assert [e.item_identifier for e in result.errors] == ["u002", "u007"]
    assert result.success_count == 8
    assert progress[-1] == (10, 10)
    assert len(progress) == 10
    assert client.max_in_flight <= 4


def test_backoff_is_bounded(health):
    processor = make_processor(FakeGP51Client(), health, retry_base_delay=0.5, retry_max_delay=8.0)

    assert processor.backoff_delay(1) == 0.5
    assert processor.backoff_delay(2) == 1.0
    assert processor.backoff_delay(5) == 8.0
    assert processor.backoff_delay(10) == 8.0
    assert processor.backoff_delay(1, retry_after=3) == 3.0
    assert processor.backoff_delay(1, retry_after=60) == 8.0
