"""
Auction Inventory Sync - Sync Orchestrator
Sequences archive -> clear staging -> fetch -> stage -> merge -> verify
for one provider source.
"""

import logging
import os
import socket
from datetime import datetime
from typing import List, Optional

from .database import InventoryDatabase
from .exceptions import AuctionSyncError, InvalidConfiguration, SyncError
from .models import (
    InventoryRecord,
    RunStatus,
    SourceTag,
    SyncStage,
    SyncStats,
    utcnow,
)
from .provider import AuctionsApiClient
from .transformer import RecordTransformer
from .verification import SyncVerifier, VerificationConfig

logger = logging.getLogger(__name__)


class InventorySyncManager:
    """
    Runs one sync for one source, end to end.

    Features:
    - Archival of stale records before staging is touched
    - Recovery of staging left behind by an interrupted run
    - Batched staging writes with spot-check of each batch
    - Single-transaction merge into inventory
    - Advisory verification; violations never fail the run
    - Per-source run lock and sync_runs bookkeeping

    Runs of the same source must not interleave; the run lock enforces it
    across processes sharing the database.
    """

    BATCH_SIZE = 1000

    def __init__(
        self,
        client: AuctionsApiClient,
        db: InventoryDatabase,
        source: SourceTag = SourceTag.AUCTIONS_API,
        batch_size: int = BATCH_SIZE,
        freshness_window_hours: float = 24.0,
        verification_config: Optional[VerificationConfig] = None,
        dry_run: bool = False,
        lock_ttl_minutes: int = 120,
    ):
        """Initialize the orchestrator. Raises InvalidConfiguration on bad inputs."""
        try:
            self.source = SourceTag(source)
        except ValueError:
            valid = ", ".join(tag.value for tag in SourceTag)
            raise InvalidConfiguration(
                f"Unknown source '{source}' (expected one of: {valid})",
                setting="provider_source",
            )
        if batch_size < 1:
            raise InvalidConfiguration("Batch size must be positive", setting="batch_size")
        if freshness_window_hours <= 0:
            raise InvalidConfiguration(
                "Freshness window must be positive", setting="freshness_window_hours"
            )

        self.client = client
        self.db = db
        self.batch_size = batch_size
        self.freshness_window_hours = freshness_window_hours
        self.verification_config = verification_config or VerificationConfig()
        self.dry_run = dry_run
        self.lock_ttl_minutes = lock_ttl_minutes
        self.transformer = RecordTransformer(self.source)
        self.owner = f"{socket.gethostname()}:{os.getpid()}"

        logger.info(
            f"InventorySyncManager initialized (source={self.source.value}, "
            f"batch_size={batch_size}, freshness={freshness_window_hours}h, dry_run={dry_run})"
        )

    def run(self, expected_count: Optional[int] = None, now: Optional[datetime] = None) -> SyncStats:
        """
        Execute one sync run.

        Args:
            expected_count: Optional expected active record count for verification
            now: Reference time for archival and verification

        Returns:
            SyncStats with the verification report attached

        Raises:
            SyncInProgress: another run holds the lock for this source
            ProviderError, PersistenceError, TransformError: fatal to the run;
                inventory keeps the previous merge's data
            SyncError: any other unexpected failure, with the stage reached
        """
        stats = SyncStats(source_api=self.source.value, dry_run=self.dry_run)

        if self.dry_run:
            return self._dry_run(stats)

        source = self.source.value
        self.db.acquire_run_lock(source, self.owner, self.lock_ttl_minutes)
        run_id = None
        try:
            run_id = self.db.start_run(source)
            self._run_stages(stats, run_id, expected_count, now)
            self.db.finish_run(run_id, RunStatus.COMPLETED, records_fetched=stats.fetched)
        except (Exception, KeyboardInterrupt) as e:
            logger.error(
                f"❌ Sync failed for {source} at stage '{stats.stage.value}': {e} "
                f"(fetched={stats.fetched}, staged={stats.staged}, merged={stats.merged})",
                extra={"source": source, "stage": stats.stage.value, "records_count": stats.fetched, "run_id": run_id},
            )
            if run_id is not None:
                self._record_failure(run_id, stats, e)
            if isinstance(e, Exception) and not isinstance(e, AuctionSyncError):
                raise SyncError(
                    f"Unexpected failure: {e}",
                    stage=stats.stage.value,
                    source=source,
                    records_fetched=stats.fetched,
                ) from e
            raise
        finally:
            self.db.release_run_lock(source, self.owner)

        stats.finished_at = utcnow()
        self._log_summary(stats)
        return stats

    def _run_stages(self, stats: SyncStats, run_id: int, expected_count: Optional[int], now: Optional[datetime]):
        source = self.source.value

        # 1. Archive records the previous runs stopped refreshing
        self._enter(stats, run_id, SyncStage.ARCHIVING)
        stats.archived = self.db.archive_stale(source, self.freshness_window_hours, now=now)
        logger.info(f"📦 Archived {stats.archived} records not seen in {self.freshness_window_hours}h")

        # 2. Clear staging; leftovers mean the previous run died mid-way
        residual = self.db.count_staging(source)
        if residual:
            logger.warning(
                f"⚠️ Staging holds {residual} records from an interrupted run - clearing",
                extra={"source": source, "records_count": residual},
            )
        stats.staging_recovered = self.db.clear_staging(source)
        self._enter(stats, run_id, SyncStage.STAGING_CLEARED)

        # 3. Fetch everything through one scroll session
        self._enter(stats, run_id, SyncStage.FETCHING)
        logger.info("📡 Starting scroll session...")
        raw_records = self.client.fetch_all()
        stats.fetched = len(raw_records)
        self.db.update_run_stage(run_id, SyncStage.FETCHING, records_fetched=stats.fetched)
        logger.info(f"📊 Fetched {stats.fetched} records from provider")

        # 4. Transform and stage in bounded batches
        records = self.transformer.transform_many(raw_records, now)
        self._stage(stats, records)
        self._enter(stats, run_id, SyncStage.STAGED)

        # 5. Merge staging into inventory
        result = self.db.merge_staging(source)
        stats.inserted = result.inserted
        stats.updated = result.updated
        stats.skipped_foreign = result.skipped_foreign
        self._enter(stats, run_id, SyncStage.MERGED)

        # 6. Verify (advisory)
        verifier = SyncVerifier(self.db)
        stats.report = verifier.verify(
            expected_count=expected_count,
            config=self.verification_config,
            source=source,
            now=now,
        )
        self._enter(stats, run_id, SyncStage.VERIFIED)

        db_stats = self.db.get_stats(source)
        stats.active_records = db_stats['active_records']
        stats.archived_records = db_stats['archived_records']

    def _stage(self, stats: SyncStats, records: List[InventoryRecord]):
        source = self.source.value
        total = len(records)

        for i in range(0, total, self.batch_size):
            batch = records[i:i + self.batch_size]
            stats.staged += self.db.stage_records(batch, source)
            stats.batches += 1

            if not self.db.verify_batch_written([r.id for r in batch], source):
                logger.warning(f"⚠️ Batch {stats.batches} could not be confirmed in staging")

            progress = round((i + len(batch)) / total * 100)
            logger.info(f"📈 Progress: {progress}% ({i + len(batch)}/{total} records)")

    def _enter(self, stats: SyncStats, run_id: int, stage: SyncStage):
        stats.stage = stage
        self.db.update_run_stage(run_id, stage)
        logger.debug(f"Stage -> {stage.value}", extra={"source": self.source.value, "stage": stage.value})

    def _record_failure(self, run_id: int, stats: SyncStats, error: BaseException):
        try:
            self.db.finish_run(
                run_id,
                RunStatus.FAILED,
                error_message=f"{type(error).__name__} at {stats.stage.value}: {error}",
                records_fetched=stats.fetched,
            )
        except Exception as e:
            logger.error(f"Could not record failed run {run_id}: {e}")

    def _dry_run(self, stats: SyncStats) -> SyncStats:
        """Fetch and transform only. Nothing is written to the store."""
        logger.info("[DRY RUN] Fetching and transforming without touching the store")
        stats.stage = SyncStage.FETCHING
        raw_records = self.client.fetch_all()
        stats.fetched = len(raw_records)
        records = self.transformer.transform_many(raw_records)
        logger.info(f"[DRY RUN] Would stage {len(records)} records in "
                    f"{-(-len(records) // self.batch_size)} batches")
        stats.finished_at = utcnow()
        return stats

    def _log_summary(self, stats: SyncStats):
        logger.info("🎉 Sync completed!")
        logger.info(f"   • Records fetched: {stats.fetched}")
        logger.info(f"   • Batches staged: {stats.batches}")
        logger.info(f"   • Inserted / updated: {stats.inserted} / {stats.updated}")
        logger.info(f"   • Active / archived: {stats.active_records} / {stats.archived_records}")
        logger.info(f"   • Duration: {stats.duration_seconds}s")
        if stats.report is not None and not stats.report.success:
            logger.warning(f"   • Verification: {len(stats.report.errors)} advisory issues")
