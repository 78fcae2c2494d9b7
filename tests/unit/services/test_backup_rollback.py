from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, update

from app.core.exceptions import FatalPlatformError, InvalidTransitionError, NotFoundError
from app.db.repositories.fleet import FleetRepository
from app.db.repositories.import_jobs import ImportJobRepository
from app.models.backup import BackupRecord
from app.models.fleet import FleetUser
from app.models.import_job import ImportJobStatus, ImportType
from app.schemas.import_job import ImportJobCreate, StartImportRequest
from app.services.event_bus.events import EventType
from app.services.imports.backup import BackupManager

from conftest import FakeGP51Client, make_users


async def seed_users(session_factory, *users):
    async with session_factory() as session:
        session.add_all(users)
        await session.commit()


async def get_user(repositories, username):
    async with repositories(FleetRepository) as fleet:
        return await fleet.get_entity("user", username)


async def run_failing_import(make_orchestrator, session_factory):
    """Ten users in chunks of two; GP51 rejects the session on the fifth user."""
    await seed_users(session_factory, FleetUser(
        gp51_username="u001", name="Original", email="original@example.com"
    ))
    client = FakeGP51Client(users=make_users(10))
    client.script("u004", FatalPlatformError("GP51 login failed: token revoked"))
    orchestrator = make_orchestrator(client)

    job_id = await orchestrator.start_import(
        StartImportRequest(import_type=ImportType.USERS_ONLY, batch_size=2)
    )
    await orchestrator.wait_for_job(job_id)
    return orchestrator, await orchestrator.get_job(job_id)


@pytest.mark.asyncio
async def test_rollback_restores_state_after_failed_import(make_orchestrator, session_factory, repositories, event_bus):
    orchestrator, job = await run_failing_import(make_orchestrator, session_factory)

    assert job.status == ImportJobStatus.FAILED
    assert job.current_chunk == 2
    assert job.total_chunks == 5
    assert (await get_user(repositories, "u001")).name == "User u001"
    assert await get_user(repositories, "u003") is not None

    result = await orchestrator.rollback_job(job.id)

    assert result.success
    assert result.backup_ref == job.backup_tables[0]
    assert result.records_restored == 1
    assert result.records_removed == 3
    assert result.warnings == []

    restored = await get_user(repositories, "u001")
    assert restored.name == "Original"
    assert restored.email == "original@example.com"
    for username in ("u000", "u002", "u003"):
        assert await get_user(repositories, username) is None

    job = await orchestrator.get_job(job.id)
    assert job.rolled_back_at is not None
    assert job.status == ImportJobStatus.FAILED
    published = [e["event_type"] for e in event_bus.get_event_history(limit=100)]
    assert EventType.IMPORT_ROLLED_BACK.value in published


@pytest.mark.asyncio
async def test_second_rollback_warns(make_orchestrator, session_factory, repositories):
    orchestrator, job = await run_failing_import(make_orchestrator, session_factory)
    await orchestrator.rollback_job(job.id)

    again = await orchestrator.rollback_job(job.id)

    assert again.success
    assert again.records_removed == 0
    assert len(again.warnings) == 1
    assert (await get_user(repositories, "u001")).name == "Original"


@pytest.mark.asyncio
async def test_dry_run_changes_nothing(make_orchestrator, session_factory, repositories):
    orchestrator, job = await run_failing_import(make_orchestrator, session_factory)

    result = await orchestrator.rollback_job(job.id, dry_run=True)

    assert result.success
    assert result.dry_run
    assert result.records_restored == 1
    assert result.records_removed == 3
    assert (await get_user(repositories, "u001")).name == "User u001"
    assert await get_user(repositories, "u000") is not None
    assert (await orchestrator.get_job(job.id)).rolled_back_at is None


@pytest.mark.asyncio
async def test_missing_backup_leaves_records_untouched(make_orchestrator, session_factory, repositories):
    orchestrator, job = await run_failing_import(make_orchestrator, session_factory)
    async with session_factory() as session:
        await session.execute(delete(BackupRecord))
        await session.commit()

    result = await orchestrator.rollback_job(job.id)

    assert not result.success
    assert "not found" in result.error
    assert await get_user(repositories, "u000") is not None
    assert (await get_user(repositories, "u001")).name == "User u001"
    assert (await orchestrator.get_job(job.id)).rolled_back_at is None


@pytest.mark.asyncio
async def test_expired_backup_is_refused(make_orchestrator, session_factory, repositories):
    orchestrator, job = await run_failing_import(make_orchestrator, session_factory)
    async with session_factory() as session:
        await session.execute(
            update(BackupRecord).values(expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        )
        await session.commit()

    result = await orchestrator.rollback_job(job.id)

    assert not result.success
    assert "expired" in result.error
    assert await get_user(repositories, "u000") is not None

    backups = BackupManager(repositories)
    assert await backups.purge_expired() == 10


@pytest.mark.asyncio
async def test_rollback_requires_finished_job(repositories):
    backups = BackupManager(repositories)
    async with repositories(ImportJobRepository) as jobs:
        job = await jobs.create_job(ImportJobCreate(
            job_name="pending", import_type=ImportType.USERS_ONLY, chunk_size=10
        ))

    with pytest.raises(InvalidTransitionError):
        await backups.rollback(job.id)
    with pytest.raises(NotFoundError):
        await backups.rollback("import-missing")


@pytest.mark.asyncio
async def test_job_without_backup_reference_cannot_roll_back(repositories):
    backups = BackupManager(repositories)
    async with repositories(ImportJobRepository) as jobs:
        job = await jobs.create_job(ImportJobCreate(
            job_name="never ran", import_type=ImportType.USERS_ONLY, chunk_size=10
        ))
        await jobs.transition_status(job.id, ImportJobStatus.PENDING, ImportJobStatus.FAILED)

    result = await backups.rollback(job.id)

    assert not result.success
    assert result.backup_ref is None


@pytest.mark.asyncio
async def test_cleanup_is_backed_up_and_reverted(make_orchestrator, session_factory, repositories):
    await seed_users(
        session_factory,
        FleetUser(gp51_username="old1", name="Old One", email="old1@example.com", is_gp51_imported=True),
        FleetUser(gp51_username="admin", name="Admin", email="admin@example.com", is_gp51_imported=True),
        FleetUser(gp51_username="local", name="Local", email="local@example.com"),
    )
    client = FakeGP51Client(users=["u000", "u001"])
    orchestrator = make_orchestrator(client)

    job_id = await orchestrator.start_import(StartImportRequest(
        importType="users_only",
        performCleanup=True,
        preserveAdminEmail="admin@example.com",
        batchSize=10,
    ))
    await orchestrator.wait_for_job(job_id)
    job = await orchestrator.get_job(job_id)

    assert job.status == ImportJobStatus.COMPLETED
    assert await get_user(repositories, "old1") is None
    assert await get_user(repositories, "admin") is not None
    assert await get_user(repositories, "local") is not None
    assert await get_user(repositories, "u000") is not None

    result = await orchestrator.rollback_job(job_id)

    assert result.success
    assert result.records_restored == 1
    assert result.records_removed == 2
    assert (await get_user(repositories, "old1")).name == "Old One"
    assert await get_user(repositories, "u000") is None
    assert await get_user(repositories, "u001") is None
