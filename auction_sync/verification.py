"""
Auction Inventory Sync - Verification Engine
Post-run consistency checks producing an advisory SyncReport.

Checks:
    1. record count parity against an expected count
    2. staging emptiness for the source
    3. recency of the last synced record
    4. field completeness of a sample of records
    5. cross-table integrity against the secondary cache
    6. outcome of the last recorded run

Every check is independent. A violation is collected into the report and
never raised; a check whose query times out is logged and left out.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from .database import InventoryDatabase
from .exceptions import PersistenceError, QueryTimeout, VerificationViolation
from .models import RunStatus, SyncReport, utcnow

logger = logging.getLogger(__name__)

REQUIRED_SAMPLE_FIELDS = ("id", "make", "model", "external_id")


class VerificationConfig(BaseModel):
    """Toggles and thresholds for SyncVerifier.verify()."""
    verify_record_count: bool = True
    verify_staging: bool = True
    verify_timestamps: bool = True
    verify_sample_records: bool = True
    verify_data_integrity: bool = True
    verify_run_status: bool = True

    sample_size: int = 10
    sample_validity_threshold_percent: float = 90.0
    sync_time_threshold_hours: float = 72.0
    data_integrity_threshold_percent: float = 20.0
    query_timeout_seconds: float = 15.0

    @classmethod
    def from_settings(cls, settings, **overrides) -> "VerificationConfig":
        values = {
            "sample_size": settings.sample_size,
            "sample_validity_threshold_percent": settings.sample_validity_threshold_percent,
            "sync_time_threshold_hours": settings.sync_time_threshold_hours,
            "data_integrity_threshold_percent": settings.data_integrity_threshold_percent,
            "query_timeout_seconds": settings.query_timeout_seconds,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


class SyncVerifier:
    """Runs the verification checks against an InventoryDatabase."""

    def __init__(self, db: InventoryDatabase):
        self.db = db

    def verify(
        self,
        expected_count: Optional[int] = None,
        config: Optional[VerificationConfig] = None,
        source: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SyncReport:
        """
        Verify the inventory after a run.

        Args:
            expected_count: Records the run expects to be active, if known
            config: Check toggles and thresholds
            source: Restrict checks to one source tag
            now: Reference time for the recency check

        Returns:
            SyncReport; its errors list holds every violation
        """
        config = config or VerificationConfig()
        now = now or utcnow()
        details: Dict[str, Any] = {}
        errors: List[str] = []
        timed_out: List[str] = []

        logger.info("🔍 Starting sync verification...")

        checks = [
            ("record_count", config.verify_record_count,
             lambda: self._check_record_count(details, source, expected_count)),
            ("staging", config.verify_staging,
             lambda: self._check_staging(details, source)),
            ("timestamps", config.verify_timestamps,
             lambda: self._check_recency(details, source, now, config.sync_time_threshold_hours)),
            ("sample_records", config.verify_sample_records,
             lambda: self._check_sample(details, source, config)),
            ("data_integrity", config.verify_data_integrity,
             lambda: self._check_integrity(details, source, config.data_integrity_threshold_percent)),
            ("run_status", config.verify_run_status,
             lambda: self._check_run_status(source)),
        ]

        for name, enabled, check in checks:
            if enabled:
                self._run_check(name, check, config.query_timeout_seconds, errors, timed_out)

        report = SyncReport(
            source_api=source,
            verified_at=now,
            expected_count=expected_count,
            timed_out_checks=tuple(timed_out),
            errors=tuple(errors),
            **details,
        )

        if report.success:
            logger.info(f"✅ {report.message}")
        else:
            logger.warning(f"❌ {report.message}")
            for error in report.errors:
                logger.warning(f"   • {error}")
        return report

    def _run_check(
        self,
        name: str,
        check: Callable[[], None],
        timeout: float,
        errors: List[str],
        timed_out: List[str],
    ):
        try:
            with self.db.query_deadline(timeout):
                check()
        except VerificationViolation as violation:
            errors.append(str(violation))
        except QueryTimeout:
            logger.warning(f"⚠️ {name} check timed out after {timeout}s - not counted as a violation")
            timed_out.append(name)
        except PersistenceError as e:
            errors.append(f"Failed to run {name} check: {e}")

    def _active_count(self, details: Dict[str, Any], source: Optional[str]) -> int:
        if details.get("actual_count") is None:
            details["actual_count"] = self.db.count_inventory(source)
        return details["actual_count"]

    # =========================================================================
    # CHECKS
    # =========================================================================

    def _check_record_count(self, details, source, expected_count):
        actual = self._active_count(details, source)
        logger.info(f"📊 Found {actual} active records in inventory")

        if expected_count is not None and actual != expected_count:
            raise VerificationViolation(
                f"Record count mismatch: expected {expected_count}, found {actual}",
                check="record_count",
            )

    def _check_staging(self, details, source):
        residual = self.db.count_staging(source)
        details["staging_residual"] = residual
        details["staging_cleared"] = residual == 0

        if residual:
            raise VerificationViolation(
                f"Staging table not cleared: {residual} records remaining",
                check="staging",
            )
        logger.info("✅ Staging table properly cleared")

    def _check_recency(self, details, source, now, threshold_hours):
        last_sync = self.db.latest_sync_time(source)
        if last_sync is None:
            logger.info("No synced records yet - recency check skipped")
            return

        hours = (now - last_sync).total_seconds() / 3600
        details["last_sync_time"] = last_sync
        details["last_sync_age_hours"] = round(hours, 2)

        if hours > threshold_hours:
            raise VerificationViolation(
                f"Last sync is too old: {hours:.1f} hours ago (threshold: {threshold_hours:g} hours)",
                check="timestamps",
            )
        logger.info(f"✅ Recent sync detected: {hours:.1f} hours ago (within {threshold_hours:g}h threshold)")

    def _check_sample(self, details, source, config: VerificationConfig):
        if not self._active_count(details, source):
            return

        sample = self.db.sample_records(config.sample_size, source)
        if not sample:
            return

        valid = 0
        missing_fields: List[str] = []
        for record in sample:
            missing = [f for f in REQUIRED_SAMPLE_FIELDS if not _has_text(record.get(f))]
            if missing:
                logger.debug(f"⚠️ Invalid record {record.get('id') or 'unknown'}: missing {', '.join(missing)}")
                missing_fields.extend(f for f in missing if f not in missing_fields)
            else:
                valid += 1

        ratio = valid / len(sample)
        passed = ratio * 100 >= config.sample_validity_threshold_percent
        details["sample_size"] = len(sample)
        details["sample_valid_ratio"] = round(ratio, 4)
        details["sample_records_verified"] = passed

        if not passed:
            raise VerificationViolation(
                f"Sample verification failed: {valid}/{len(sample)} records valid "
                f"({ratio * 100:.0f}% < {config.sample_validity_threshold_percent:g}%), "
                f"missing fields: {', '.join(missing_fields)}",
                check="sample_records",
            )
        logger.info(f"✅ Sample verification passed: {valid}/{len(sample)} records valid")

    def _check_integrity(self, details, source, threshold_percent):
        main = self._active_count(details, source)
        try:
            cache = self.db.count_cache(source)
        except QueryTimeout:
            raise
        except PersistenceError as e:
            logger.warning(f"⚠️ Unable to check cache table: {e} (not critical)")
            details["data_integrity_passed"] = True
            return

        details["cache_count"] = cache
        if cache == 0:
            # Not yet populated; cannot be told apart from never populated
            logger.info(f"✅ Data integrity check: main table has {main} records, cache is empty (not yet populated)")
            details["data_integrity_passed"] = True
            return

        difference = abs(main - cache) / main * 100 if main else 100.0
        passed = difference < threshold_percent
        details["integrity_difference_percent"] = round(difference, 2)
        details["data_integrity_passed"] = passed

        if not passed:
            raise VerificationViolation(
                f"Data integrity issue: {difference:.1f}% difference between main ({main}) "
                f"and cache ({cache}) tables (threshold: {threshold_percent:g}%)",
                check="data_integrity",
            )
        logger.info(f"✅ Data integrity check passed: {difference:.1f}% difference between main ({main}) and cache ({cache})")

    def _check_run_status(self, source):
        last_run = self.db.get_last_run(source)
        if last_run is None:
            return
        if last_run.status == RunStatus.FAILED:
            raise VerificationViolation(
                f"Last sync failed: {last_run.error_message or 'Unknown error'}",
                check="run_status",
            )
        if last_run.status == RunStatus.COMPLETED:
            logger.info("✅ Last sync completed successfully")


def quick_sync_check(db: InventoryDatabase, source: Optional[str] = None) -> bool:
    """Just checks whether any active inventory exists."""
    try:
        return db.count_inventory(source) > 0
    except PersistenceError as e:
        logger.error(f"Quick sync check failed: {e}")
        return False
