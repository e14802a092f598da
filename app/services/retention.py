"""Age- and size-based expiry of stored objects.

Small files live close to ``max_age`` days, files at the size limit close to
``min_age``::

    ratio       = min(size_bytes / limit_bytes, 1)
    expiry_days = min_age + (min_age - max_age) * (ratio - 1) ** 5

Short links never expire. Each record is decided independently, so a sweep
can be re-run at any time.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.models.records import ObjectRecord, Role, utcnow
from app.services.blob_store import BlobStore
from app.services.errors import StorageFailure
from app.services.metadata_store import MetadataStore
from config import Settings
from logger_config import setup_logger

logger = setup_logger()

SECONDS_PER_DAY = 24 * 60 * 60
SWEEP_JOB_ID = "retention_sweep"
ORPHAN_JOB_ID = "orphan_sweep"


def compute_expiry_days(size_bytes: int, limit_bytes: Optional[int], min_age: float, max_age: float) -> Optional[float]:
    """Days an object of ``size_bytes`` is kept, or None if it never expires.

    Objects at or above the limit (admin uploads can be) are kept ``min_age``.
    """
    if not limit_bytes:
        return None
    ratio = min(size_bytes / limit_bytes, 1.0)
    exponent = (ratio - 1) ** 5
    return min_age + (min_age - max_age) * exponent


@dataclass
class SweepReport:
    scanned: int = 0
    expired: int = 0
    failed: int = 0


async def remove_object(identifier: str, metadata_store: MetadataStore, blob_store: BlobStore) -> bool:
    """Delete an object's blob, then its record.

    A blob that is already gone is logged and the record removed anyway.
    Returns whether a record was removed.

    Raises:
        StorageFailure: either store failed; the record is kept if the blob
            could not be deleted
    """
    if not await blob_store.delete(identifier):
        logger.warning(f"Blob for {identifier} was already missing, removing its record")
    return await metadata_store.delete(identifier)


class RetentionScheduler:
    def __init__(
        self,
        settings: Settings,
        metadata_store: MetadataStore,
        blob_store: BlobStore,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.settings = settings
        self.metadata_store = metadata_store
        self.blob_store = blob_store
        self.scheduler = scheduler

    @property
    def enabled(self) -> bool:
        return self.settings.retention_enabled

    def reference_limit(self, role: Role) -> Optional[int]:
        """Limit the formula divides by; admin uploads fall back to the normal limit."""
        limit = self.settings.limit_bytes(role)
        if limit is None and role is Role.ADMIN:
            limit = self.settings.limit_bytes(Role.NORMAL)
        return limit

    def expiry_days_for(self, record: ObjectRecord) -> Optional[float]:
        return compute_expiry_days(
            record.size_bytes,
            self.reference_limit(record.role_at_upload),
            self.settings.retention_min_age,
            self.settings.retention_max_age,
        )

    def is_expired(self, record: ObjectRecord, now: Optional[datetime] = None) -> bool:
        expiry_days = self.expiry_days_for(record)
        if expiry_days is None:
            return False
        now = now or utcnow()
        created_at = record.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        # Clock skew never makes an object younger than zero days
        age_days = max((now - created_at).total_seconds(), 0) / SECONDS_PER_DAY
        return age_days >= expiry_days

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Delete every expired object. A no-op when retention is disabled."""
        report = SweepReport()
        if not self.enabled:
            logger.debug("Retention disabled, skipping sweep")
            return report

        now = now or utcnow()
        logger.info("Running retention sweep...")
        expired: List[ObjectRecord] = []
        try:
            async for record in self.metadata_store.scan_objects():
                report.scanned += 1
                if self.is_expired(record, now):
                    expired.append(record)
        except StorageFailure as e:
            # Expire what was found so far; the rest waits for the next sweep
            logger.error(f"Retention scan interrupted after {report.scanned} records: {e}")

        for record in expired:
            try:
                if await remove_object(record.id, self.metadata_store, self.blob_store):
                    report.expired += 1
                    logger.info(f"Expired {record.id} ({record.size_bytes} bytes, created {record.created_at.isoformat()})")
            except StorageFailure as e:
                report.failed += 1
                logger.error(f"Failed to expire {record.id}, retrying next sweep: {e}")

        logger.info(f"Retention sweep done: scanned={report.scanned} expired={report.expired} failed={report.failed}")
        return report

    async def sweep_orphans(self, now: Optional[datetime] = None) -> int:
        """Delete blobs that have no record and are older than a reservation."""
        now_ts = (now or utcnow()).timestamp()
        blobs = await asyncio.to_thread(lambda: list(self.blob_store.iter_blobs()))
        removed = 0
        for blob_id, mtime in blobs:
            if now_ts - mtime < self.settings.reservation_ttl:
                continue
            try:
                if await self.metadata_store.get(blob_id) is not None:
                    continue
                if await self.blob_store.delete(blob_id):
                    removed += 1
                    logger.warning(f"Removed orphan blob {blob_id}")
            except StorageFailure as e:
                logger.error(f"Failed to check orphan blob {blob_id}: {e}")
        if removed:
            logger.info(f"Orphan sweep removed {removed} blobs")
        return removed

    def start(self) -> None:
        """Register the sweep jobs and start the scheduler on the running loop."""
        if self.scheduler is None:
            self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.scheduler.add_job(
            self.sweep,
            trigger="cron",
            hour=self.settings.retention_sweep_hour,
            minute=0,
            id=SWEEP_JOB_ID,
            name="Expire old objects",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self.sweep_orphans,
            trigger="interval",
            hours=1,
            id=ORPHAN_JOB_ID,
            name="Remove orphan blobs",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info(
            f"Retention scheduler started (enabled={self.enabled}, daily at {self.settings.retention_sweep_hour:02d}:00 UTC)"
        )

    def shutdown(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Retention scheduler stopped")
