import pytest
from pydantic import ValidationError

from app.models.import_job import ImportType
from app.schemas.import_job import ErrorLogEntry, StartImportRequest
from app.services.imports.planner import WorkItem, build_plan, slice_chunk

from conftest import FakeGP51Client


def test_start_request_accepts_camel_case():
    request = StartImportRequest.model_validate({
        "importType": "selective",
        "selectedUsernames": [" alice ", "bob", "alice", ""],
        "performCleanup": True,
        "batchSize": 25,
    })

    assert request.import_type == ImportType.SELECTIVE
    assert request.selected_usernames == ["alice", "bob"]
    assert request.perform_cleanup
    assert request.batch_size == 25


def test_selective_request_needs_usernames():
    with pytest.raises(ValidationError):
        StartImportRequest.model_validate({"importType": "selective"})


@pytest.mark.parametrize("batch_size", [0, -5, 5000])
def test_batch_size_bounds(batch_size):
    with pytest.raises(ValidationError):
        StartImportRequest.model_validate({"importType": "users_only", "batchSize": batch_size})


def test_error_entry_reads_legacy_username_key():
    entry = ErrorLogEntry.model_validate({
        "username": "alice",
        "error": "malformed email",
        "timestamp": "2026-10-01T12:00:00Z",
        "step": "validate",
        "attempts": 1,
    })

    assert entry.item_identifier == "alice"
    assert entry.to_record()["item_identifier"] == "alice"


def test_error_entry_requires_an_attempt():
    with pytest.raises(ValidationError):
        ErrorLogEntry(
            item_identifier="alice", error="x", timestamp="2026-10-01T12:00:00Z", step="fetch", attempts=0
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("import_type, selected, expected", [
    (ImportType.USERS_ONLY, None, ["user:alice", "user:bob"]),
    (ImportType.USERS_ONLY, ["bob"], ["user:bob"]),
    (ImportType.VEHICLES_ONLY, None, ["vehicle:d1", "vehicle:d2"]),
    (ImportType.COMPLETE_SYSTEM, None, ["user:alice", "user:bob", "vehicle:d1", "vehicle:d2"]),
    (ImportType.SELECTIVE, ["bob"], ["user:bob", "vehicle:d2"]),
])
async def test_build_plan(import_type, selected, expected):
    client = FakeGP51Client(users=["alice", "bob"], devices={"d1": "alice", "d2": "bob"})

    plan = await build_plan(client, import_type, selected)

    assert [f"{item.kind}:{item.identifier}" for item in plan] == expected


def test_slice_chunk_covers_plan():
    plan = [WorkItem("user", f"u{i}") for i in range(7)]

    chunks = [slice_chunk(plan, index, 3) for index in range(3)]

    assert [len(chunk) for chunk in chunks] == [3, 3, 1]
    assert [item for chunk in chunks for item in chunk] == plan
    assert WorkItem.from_dict(plan[4].to_dict()) == plan[4]
