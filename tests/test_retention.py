from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.models.records import Kind, ObjectRecord, Role, ShortLinkRecord, dump_record, utcnow
from app.services.admission import AdmissionPipeline
from app.services.errors import StorageFailure
from app.services.metadata_store import RedisMetadataStore
from app.services.retention import RetentionScheduler, compute_expiry_days, remove_object
from conftest import make_settings

LIMIT = 1024 * 1024


def make_record(size_bytes, role=Role.NORMAL, created_at=None, identifier="abcdef12"):
    return ObjectRecord(
        id=identifier,
        content_type="application/octet-stream",
        kind=Kind.FILE,
        size_bytes=size_bytes,
        created_at=created_at or utcnow(),
        role_at_upload=role,
    )


@pytest.fixture
def retention_settings():
    return make_settings(retention_enabled=True, filesize_limit_kb=1024)


@pytest.fixture
def retention(retention_settings, metadata_store, blob_store):
    return RetentionScheduler(retention_settings, metadata_store, blob_store)


@pytest.fixture
def pipeline(retention_settings, metadata_store, blob_store):
    return AdmissionPipeline(retention_settings, metadata_store, blob_store)


def test_expiry_at_limit_is_min_age():
    assert compute_expiry_days(LIMIT, LIMIT, 30, 180) == pytest.approx(30)


def test_expiry_of_empty_file_is_max_age():
    assert compute_expiry_days(0, LIMIT, 30, 180) == pytest.approx(180)


def test_expiry_decreases_with_size():
    days = [compute_expiry_days(size, LIMIT, 30, 180) for size in range(0, LIMIT + 1, LIMIT // 16)]
    assert all(a >= b for a, b in zip(days, days[1:]))
    assert all(30 <= d <= 180 for d in days)


def test_expiry_without_limit():
    assert compute_expiry_days(123, None, 30, 180) is None


def test_admin_record_uses_normal_limit(retention):
    admin = make_record(LIMIT, role=Role.ADMIN)
    assert retention.expiry_days_for(admin) == pytest.approx(30)


def test_expiry_above_limit_is_min_age():
    assert compute_expiry_days(2 * LIMIT, LIMIT, 30, 180) == pytest.approx(30)
    assert compute_expiry_days(100 * LIMIT, LIMIT, 30, 180) == pytest.approx(30)


def test_oversize_admin_upload_is_kept_min_age(metadata_store, blob_store):
    scheduler = RetentionScheduler(
        make_settings(retention_enabled=True, filesize_limit_kb=512, admin_filesize_limit_kb=None),
        metadata_store,
        blob_store,
    )
    record = make_record(LIMIT, role=Role.ADMIN)
    assert scheduler.expiry_days_for(record) == pytest.approx(30)
    assert scheduler.is_expired(record, record.created_at + timedelta(minutes=1)) is False
    assert scheduler.is_expired(record, record.created_at + timedelta(days=30)) is True


def test_no_limit_never_expires(metadata_store, blob_store):
    scheduler = RetentionScheduler(
        make_settings(retention_enabled=True, filesize_limit_kb=None), metadata_store, blob_store
    )
    record = make_record(10, created_at=utcnow() - timedelta(days=10_000))
    assert scheduler.is_expired(record) is False


def test_is_expired_boundary(retention):
    record = make_record(LIMIT)
    assert retention.is_expired(record, record.created_at + timedelta(days=29)) is False
    assert retention.is_expired(record, record.created_at + timedelta(days=30)) is True


def test_future_created_at_is_not_expired(retention):
    record = make_record(LIMIT, created_at=utcnow() + timedelta(days=400))
    assert retention.is_expired(record, utcnow()) is False


@pytest.mark.asyncio
async def test_sweep_disabled_is_noop(metadata_store, blob_store, pipeline):
    await pipeline.admit(b"x" * 100, "x.txt")
    scheduler = RetentionScheduler(make_settings(retention_enabled=False), metadata_store, blob_store)

    report = await scheduler.sweep(utcnow() + timedelta(days=1000))
    assert report.scanned == 0
    assert len(metadata_store) == 1


@pytest.mark.asyncio
async def test_sweep_removes_expired_and_is_idempotent(retention, pipeline, metadata_store, blob_store):
    address = await pipeline.admit(b"y" * 100, "y.txt")
    identifier = address.rsplit("/", 1)[-1]
    short = await pipeline.shorten("https://example.com")

    # Fresh objects survive
    report = await retention.sweep()
    assert report.scanned == 1
    assert report.expired == 0

    later = utcnow() + timedelta(days=181)
    report = await retention.sweep(later)
    assert report.expired == 1
    assert await metadata_store.get(identifier) is None
    assert not await blob_store.exists(identifier)

    # Short links never expire
    assert isinstance(await metadata_store.get(short.rsplit("/", 1)[-1]), ShortLinkRecord)

    report = await retention.sweep(later)
    assert report.scanned == 0
    assert report.expired == 0


@pytest.mark.asyncio
async def test_sweep_removes_record_with_missing_blob(retention, pipeline, metadata_store, blob_store):
    identifier = (await pipeline.admit(b"z" * 100, "z.txt")).rsplit("/", 1)[-1]
    await blob_store.delete(identifier)

    report = await retention.sweep(utcnow() + timedelta(days=181))
    assert report.expired == 1
    assert report.failed == 0
    assert await metadata_store.get(identifier) is None


@pytest.mark.asyncio
async def test_sweep_skips_failing_record(retention, pipeline, metadata_store, blob_store):
    first = (await pipeline.admit(b"a" * 100, "a.txt")).rsplit("/", 1)[-1]
    second = (await pipeline.admit(b"b" * 100, "b.txt")).rsplit("/", 1)[-1]

    with patch.object(blob_store, "delete", AsyncMock(side_effect=[StorageFailure("busy"), True])):
        report = await retention.sweep(utcnow() + timedelta(days=181))

    assert report.expired == 1
    assert report.failed == 1
    # The failed record stays for the next sweep
    remaining = [await metadata_store.get(first), await metadata_store.get(second)]
    assert sum(record is not None for record in remaining) == 1


@pytest.mark.asyncio
async def test_sweep_survives_scan_failure(retention, metadata_store):
    async def broken_scan():
        raise StorageFailure("redis down")
        yield

    with patch.object(metadata_store, "scan_objects", broken_scan):
        report = await retention.sweep()
    assert report.expired == 0


@pytest.mark.asyncio
async def test_sweep_expires_what_was_scanned_before_failure(retention, pipeline, metadata_store):
    identifier = (await pipeline.admit(b"c" * 100, "c.txt")).rsplit("/", 1)[-1]
    found = await metadata_store.get(identifier)

    async def interrupted_scan():
        yield found
        raise StorageFailure("redis down")

    with patch.object(metadata_store, "scan_objects", interrupted_scan):
        report = await retention.sweep(utcnow() + timedelta(days=181))
    assert report.scanned == 1
    assert report.expired == 1
    assert await metadata_store.get(identifier) is None


@pytest.mark.asyncio
async def test_sweep_continues_past_unreadable_redis_key(retention_settings, blob_store):
    old = utcnow() - timedelta(days=400)
    payloads = {
        f"pastecdn:old{n}": dump_record(make_record(100, created_at=old, identifier=f"old{n}")) for n in (1, 3)
    }

    async def scan_iter(*args, **kwargs):
        for key in ("pastecdn:old1", "pastecdn:old2", "pastecdn:old3"):
            yield key

    async def get(key):
        if key == "pastecdn:old2":
            raise RedisConnectionError("connection reset")
        return payloads[key]

    client = AsyncMock()
    client.scan_iter = MagicMock(side_effect=scan_iter)
    client.get.side_effect = get
    client.delete.return_value = 1
    scheduler = RetentionScheduler(retention_settings, RedisMetadataStore("redis://unused", client=client), blob_store)

    report = await scheduler.sweep()
    assert report.scanned == 2
    assert report.expired == 2
    deleted = [call.args[0] for call in client.delete.await_args_list]
    assert deleted == ["pastecdn:old1", "pastecdn:old3"]


@pytest.mark.asyncio
async def test_remove_object(metadata_store, blob_store, pipeline):
    identifier = (await pipeline.admit(b"bye", "bye.txt")).rsplit("/", 1)[-1]

    assert await remove_object(identifier, metadata_store, blob_store) is True
    assert await remove_object(identifier, metadata_store, blob_store) is False


@pytest.mark.asyncio
async def test_orphan_sweep(retention, pipeline, metadata_store, blob_store):
    async def chunks():
        yield b"orphaned"

    await blob_store.write("orphan01", chunks())
    kept = (await pipeline.admit(b"kept", "kept.txt")).rsplit("/", 1)[-1]

    # Younger than a reservation: could still be committed
    assert await retention.sweep_orphans() == 0

    removed = await retention.sweep_orphans(utcnow() + timedelta(hours=2))
    assert removed == 1
    assert not await blob_store.exists("orphan01")
    assert await blob_store.exists(kept)


def test_start_registers_jobs(retention):
    scheduler = MagicMock()
    retention.scheduler = scheduler

    retention.start()

    job_ids = [call.kwargs["id"] for call in scheduler.add_job.call_args_list]
    assert job_ids == ["retention_sweep", "orphan_sweep"]
    cron_kwargs = scheduler.add_job.call_args_list[0].kwargs
    assert cron_kwargs["trigger"] == "cron"
    assert cron_kwargs["hour"] == 0
    scheduler.start.assert_called_once()
