"""
Auction Inventory Sync - Database Tests
Tests for InventoryDatabase staging, archival, merge and bookkeeping.
"""

import pytest
from pathlib import Path
from datetime import timedelta

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from auction_sync.database import InventoryDatabase
from auction_sync.exceptions import PersistenceError, QueryTimeout, SyncInProgress
from auction_sync.models import RunStatus, SourceTag, SyncStage
from conftest import NOW

SOURCE = SourceTag.AUCTIONS_API.value
OTHER = SourceTag.ENCAR.value


def snapshot(db, source=None):
    """Full inventory state as comparable dicts."""
    return [r.model_dump() for r in db.get_records(source)]


class TestDatabaseInitialization:
    """Tests for database initialization."""

    def test_database_creates_file(self, tmp_path):
        """Database should create SQLite file."""
        db_path = tmp_path / "nested" / "test.db"
        db = InventoryDatabase(db_path)

        assert db_path.exists()
        db.close()

    def test_database_stats_empty(self, temp_database):
        """New database should have zero records."""
        stats = temp_database.get_stats(SOURCE)

        assert stats["total_records"] == 0
        assert stats["active_records"] == 0
        assert stats["staging_records"] == 0
        assert stats["last_sync"] is None


class TestStaging:
    """Tests for the staging quarantine."""

    def test_stage_and_count(self, temp_database, make_records):
        written = temp_database.stage_records(make_records(3), SOURCE)

        assert written == 3
        assert temp_database.count_staging(SOURCE) == 3
        assert temp_database.count_staging(OTHER) == 0

    def test_restaging_same_ids_upserts(self, temp_database, make_records):
        temp_database.stage_records(make_records(3), SOURCE)
        temp_database.stage_records(make_records(3), SOURCE)

        assert temp_database.count_staging(SOURCE) == 3

    def test_foreign_records_rejected(self, temp_database, make_records):
        with pytest.raises(ValueError):
            temp_database.stage_records(make_records(2, source=SourceTag.ENCAR), SOURCE)

    def test_clear_is_scoped_by_source(self, temp_database, make_records):
        """Leftover staging of 500 records is removed for its source only."""
        temp_database.stage_records(make_records(500), SOURCE)
        temp_database.stage_records(make_records(4, source=SourceTag.ENCAR), OTHER)

        removed = temp_database.clear_staging(SOURCE)

        assert removed == 500
        assert temp_database.count_staging(SOURCE) == 0
        assert temp_database.count_staging(OTHER) == 4

    def test_verify_batch_written(self, temp_database, make_records):
        records = make_records(20)
        temp_database.stage_records(records, SOURCE)

        assert temp_database.verify_batch_written([r.id for r in records], SOURCE)
        assert not temp_database.verify_batch_written(["missing-1", "missing-2"], SOURCE)
        assert temp_database.verify_batch_written([], SOURCE)


class TestMerge:
    """Tests for staging -> inventory merge."""

    def test_merge_inserts_and_empties_staging(self, temp_database, make_records):
        temp_database.stage_records(make_records(5), SOURCE)

        result = temp_database.merge_staging(SOURCE)

        assert result.inserted == 5
        assert result.updated == 0
        assert temp_database.count_inventory(SOURCE) == 5
        assert temp_database.count_staging(SOURCE) == 0

    def test_merge_overwrites_fields(self, populated_database, make_records):
        changed = make_records(2, synced_at=NOW + timedelta(hours=1), make="Kia")
        populated_database.stage_records(changed, SOURCE)

        result = populated_database.merge_staging(SOURCE)

        record = populated_database.get_record(f"{SOURCE}-1")
        assert result.updated == 2
        assert result.inserted == 0
        assert record.make == "Kia"
        assert record.last_synced_at == NOW + timedelta(hours=1)
        assert populated_database.count_inventory(SOURCE) == 5

    def test_merge_is_idempotent(self, temp_database, make_records):
        """Merging the same batch twice equals merging it once."""
        temp_database.stage_records(make_records(10), SOURCE)
        temp_database.merge_staging(SOURCE)
        once = snapshot(temp_database)

        temp_database.stage_records(make_records(10), SOURCE)
        temp_database.merge_staging(SOURCE)
        twice = snapshot(temp_database)

        assert once == twice

    def test_merge_never_touches_other_source(self, temp_database, make_records):
        """An id owned by another source is skipped, not overwritten."""
        theirs = make_records(3, source=SourceTag.ENCAR, prefix="shared")
        temp_database.stage_records(theirs, OTHER)
        temp_database.merge_staging(OTHER)
        before = snapshot(temp_database, OTHER)

        ours = make_records(3, prefix="shared", make="Kia")
        temp_database.stage_records(ours, SOURCE)
        result = temp_database.merge_staging(SOURCE)

        assert result.skipped_foreign == 3
        assert result.inserted == 0
        assert snapshot(temp_database, OTHER) == before
        assert temp_database.count_inventory(SOURCE) == 0

    def test_merge_only_scoped_staging(self, temp_database, make_records):
        temp_database.stage_records(make_records(2), SOURCE)
        temp_database.stage_records(make_records(2, source=SourceTag.ENCAR), OTHER)

        temp_database.merge_staging(SOURCE)

        assert temp_database.count_inventory(OTHER) == 0
        assert temp_database.count_staging(OTHER) == 2


class TestArchival:
    """Tests for freshness-window archival."""

    def test_stale_records_archived(self, temp_database, make_records):
        temp_database.stage_records(make_records(3, synced_at=NOW - timedelta(hours=30)), SOURCE)
        temp_database.merge_staging(SOURCE)

        archived = temp_database.archive_stale(SOURCE, 24, now=NOW)

        assert archived == 3
        record = temp_database.get_record(f"{SOURCE}-1")
        assert record.is_archived
        assert not record.is_active
        assert record.archived_at == NOW
        assert temp_database.count_inventory(SOURCE) == 0
        assert temp_database.count_inventory(SOURCE, include_archived=True) == 3

    def test_fresh_records_kept(self, populated_database):
        archived = populated_database.archive_stale(SOURCE, 24, now=NOW + timedelta(hours=23))

        assert archived == 0
        assert populated_database.count_inventory(SOURCE) == 5

    def test_archived_at_set_once(self, temp_database, make_records):
        temp_database.stage_records(make_records(1, synced_at=NOW - timedelta(hours=30)), SOURCE)
        temp_database.merge_staging(SOURCE)
        temp_database.archive_stale(SOURCE, 24, now=NOW)

        again = temp_database.archive_stale(SOURCE, 24, now=NOW + timedelta(days=3))

        assert again == 0
        assert temp_database.get_record(f"{SOURCE}-1").archived_at == NOW

    def test_archival_survives_refetch(self, temp_database, make_records):
        """Archived records stay archived when fetched again."""
        temp_database.stage_records(make_records(1, synced_at=NOW - timedelta(hours=30)), SOURCE)
        temp_database.merge_staging(SOURCE)
        temp_database.archive_stale(SOURCE, 24, now=NOW)

        temp_database.stage_records(make_records(1, synced_at=NOW, make="Kia"), SOURCE)
        temp_database.merge_staging(SOURCE)

        record = temp_database.get_record(f"{SOURCE}-1")
        assert record.is_archived
        assert not record.is_active
        assert record.archived_at == NOW
        assert record.make == "Kia"

    def test_refetch_does_not_relive_archived(self, temp_database, make_records):
        """A live lot re-fetched for an archived record stays not live."""
        temp_database.stage_records(make_records(1, synced_at=NOW - timedelta(hours=30)), SOURCE)
        temp_database.merge_staging(SOURCE)
        temp_database.archive_stale(SOURCE, 24, now=NOW)

        live = make_records(1, synced_at=NOW)[0].model_copy(update={"is_live": True})
        temp_database.stage_records([live], SOURCE)
        temp_database.merge_staging(SOURCE)

        record = temp_database.get_record(f"{SOURCE}-1")
        assert record.is_archived
        assert not record.is_live

    def test_live_flag_updates_for_active_records(self, temp_database, make_records):
        temp_database.stage_records(make_records(1), SOURCE)
        temp_database.merge_staging(SOURCE)

        live = make_records(1)[0].model_copy(update={"is_live": True})
        temp_database.stage_records([live], SOURCE)
        temp_database.merge_staging(SOURCE)

        assert temp_database.get_record(f"{SOURCE}-1").is_live

    def test_archival_scoped_by_source(self, temp_database, make_records):
        stale = NOW - timedelta(hours=48)
        temp_database.stage_records(make_records(2, source=SourceTag.ENCAR, synced_at=stale), OTHER)
        temp_database.merge_staging(OTHER)

        assert temp_database.archive_stale(SOURCE, 24, now=NOW) == 0
        assert temp_database.count_inventory(OTHER) == 2


class TestReads:
    """Tests for counts, samples and the cache table."""

    def test_latest_sync_time(self, populated_database):
        assert populated_database.latest_sync_time(SOURCE) == NOW
        assert populated_database.latest_sync_time(OTHER) is None

    def test_sample_records(self, populated_database):
        sample = populated_database.sample_records(3, SOURCE)

        assert len(sample) == 3
        assert set(sample[0]) >= {"id", "make", "model", "external_id"}

    def test_refresh_cache(self, populated_database):
        assert populated_database.count_cache(SOURCE) == 0

        copied = populated_database.refresh_cache(SOURCE)

        assert copied == 5
        assert populated_database.count_cache(SOURCE) == 5

    def test_images_round_trip(self, temp_database, make_records):
        record = make_records(1)[0].model_copy(update={"images": ["a.jpg", "b.jpg"]})
        temp_database.stage_records([record], SOURCE)
        temp_database.merge_staging(SOURCE)

        assert temp_database.get_record(record.id).images == ["a.jpg", "b.jpg"]


class TestRunBookkeeping:
    """Tests for sync_runs rows."""

    def test_run_lifecycle(self, temp_database):
        run_id = temp_database.start_run(SOURCE)
        temp_database.update_run_stage(run_id, SyncStage.FETCHING, records_fetched=42)
        temp_database.finish_run(run_id, RunStatus.COMPLETED)

        run = temp_database.get_last_run(SOURCE)
        assert run.id == run_id
        assert run.status == RunStatus.COMPLETED
        assert run.stage == SyncStage.FETCHING
        assert run.records_fetched == 42
        assert run.finished_at is not None

    def test_failed_run_keeps_message(self, temp_database):
        run_id = temp_database.start_run(SOURCE)
        temp_database.finish_run(run_id, RunStatus.FAILED, error_message="boom")

        run = temp_database.get_last_run(SOURCE)
        assert run.status == RunStatus.FAILED
        assert run.error_message == "boom"

    def test_no_runs(self, temp_database):
        assert temp_database.get_last_run(SOURCE) is None


class TestRunLock:
    """Tests for the per-source run lock."""

    def test_second_owner_blocked(self, temp_database):
        temp_database.acquire_run_lock(SOURCE, "host-a:1", now=NOW)

        with pytest.raises(SyncInProgress) as exc_info:
            temp_database.acquire_run_lock(SOURCE, "host-b:2", now=NOW)

        assert exc_info.value.owner == "host-a:1"

    def test_other_source_not_blocked(self, temp_database):
        temp_database.acquire_run_lock(SOURCE, "host-a:1", now=NOW)
        temp_database.acquire_run_lock(OTHER, "host-b:2", now=NOW)

    def test_release_allows_next_run(self, temp_database):
        temp_database.acquire_run_lock(SOURCE, "host-a:1", now=NOW)
        temp_database.release_run_lock(SOURCE, "host-a:1")

        temp_database.acquire_run_lock(SOURCE, "host-b:2", now=NOW)

    def test_expired_lock_replaced(self, temp_database):
        temp_database.acquire_run_lock(SOURCE, "crashed:1", ttl_minutes=60, now=NOW)

        temp_database.acquire_run_lock(SOURCE, "host-b:2", now=NOW + timedelta(minutes=61))


class TestErrorTranslation:
    """Tests for sqlite3 failures surfacing as typed errors."""

    def test_query_deadline_interrupts(self, temp_database):
        """A query past its deadline raises QueryTimeout."""
        slow = """
            WITH RECURSIVE n(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM n)
            SELECT COUNT(*) FROM n
        """
        with pytest.raises(QueryTimeout):
            with temp_database.query_deadline(0.05):
                with temp_database._guard("inventory"):
                    temp_database.conn.execute(slow).fetchone()

    def test_deadline_removed_afterwards(self, populated_database):
        with populated_database.query_deadline(0.05):
            pass

        assert populated_database.count_inventory(SOURCE) == 5

    def test_store_failure_is_persistence_error(self, temp_database):
        temp_database.conn.execute("DROP TABLE inventory_cache")

        with pytest.raises(PersistenceError) as exc_info:
            temp_database.count_cache(SOURCE)

        assert not isinstance(exc_info.value, QueryTimeout)
        assert exc_info.value.table == "inventory_cache"
