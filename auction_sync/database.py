"""
Auction Inventory Sync - Inventory Database
SQLite store for the authoritative inventory, its staging quarantine,
the secondary cache used for integrity checks, and run bookkeeping.
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .exceptions import PersistenceError, QueryTimeout, SyncInProgress
from .models import (
    InventoryRecord,
    MergeResult,
    RunStatus,
    SyncRun,
    SyncStage,
    utcnow,
)

logger = logging.getLogger(__name__)

# Fixed width so that string ordering equals time ordering
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

INVENTORY_TABLE = "inventory"
STAGING_TABLE = "inventory_staging"
CACHE_TABLE = "inventory_cache"

RECORD_COLUMNS = (
    "id", "external_id", "source_api",
    "make", "model", "year", "title", "price", "mileage",
    "vin", "color", "fuel", "transmission", "condition", "images",
    "lot_number", "current_bid", "buy_now_price", "final_bid", "sale_date",
    "is_active", "is_live", "is_archived",
    "last_synced_at", "archived_at",
)

# Overwritten on merge. Ownership and archival state are never touched.
MERGE_OVERWRITE_COLUMNS = tuple(
    c for c in RECORD_COLUMNS
    if c not in ("id", "source_api", "is_active", "is_live", "is_archived", "archived_at")
)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as fixed-width UTC text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _record_columns_sql(prefix: str = "") -> str:
    return ", ".join(f"{prefix}{c}" for c in RECORD_COLUMNS)


class InventoryDatabase:
    """
    SQLite database for the inventory pipeline.

    Tables:
    - inventory: authoritative records, soft-deleted via is_archived
    - inventory_staging: one run's fetched records, scoped by source_api
    - inventory_cache: secondary read copy compared by verification
    - sync_runs: one row per orchestrated run (running/completed/failed)
    - sync_locks: per-source run lock

    Every mutation of inventory rows is filtered by source_api, so runs
    for different sources never write each other's rows.
    """

    RECORD_SCHEMA = """
        id TEXT NOT NULL,
        external_id TEXT,
        source_api TEXT NOT NULL,
        make TEXT,
        model TEXT,
        year INTEGER,
        title TEXT,
        price INTEGER DEFAULT 0,
        mileage INTEGER DEFAULT 0,
        vin TEXT,
        color TEXT,
        fuel TEXT,
        transmission TEXT,
        condition TEXT,
        images TEXT,
        lot_number TEXT,
        current_bid REAL DEFAULT 0,
        buy_now_price REAL DEFAULT 0,
        final_bid REAL,
        sale_date TEXT,
        is_active INTEGER DEFAULT 1,
        is_live INTEGER DEFAULT 0,
        is_archived INTEGER DEFAULT 0,
        last_synced_at TEXT,
        archived_at TEXT
    """

    INVENTORY_SCHEMA = f"""
    CREATE TABLE IF NOT EXISTS {INVENTORY_TABLE} (
        {RECORD_SCHEMA},
        PRIMARY KEY (id)
    )
    """

    STAGING_SCHEMA = f"""
    CREATE TABLE IF NOT EXISTS {STAGING_TABLE} (
        {RECORD_SCHEMA},
        PRIMARY KEY (source_api, id)
    )
    """

    CACHE_SCHEMA = f"""
    CREATE TABLE IF NOT EXISTS {CACHE_TABLE} (
        id TEXT PRIMARY KEY,
        source_api TEXT NOT NULL,
        make TEXT,
        model TEXT,
        price INTEGER,
        cached_at TEXT
    )
    """

    RUNS_SCHEMA = """
    CREATE TABLE IF NOT EXISTS sync_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source_api TEXT NOT NULL,
        status TEXT NOT NULL,
        stage TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        error_message TEXT,
        records_fetched INTEGER DEFAULT 0
    )
    """

    LOCKS_SCHEMA = """
    CREATE TABLE IF NOT EXISTS sync_locks (
        source_api TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        acquired_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """

    INDEX_SCHEMA = f"""
    CREATE INDEX IF NOT EXISTS idx_inventory_source ON {INVENTORY_TABLE}(source_api, is_archived);
    CREATE INDEX IF NOT EXISTS idx_inventory_last_synced ON {INVENTORY_TABLE}(last_synced_at);
    CREATE INDEX IF NOT EXISTS idx_cache_source ON {CACHE_TABLE}(source_api);
    CREATE INDEX IF NOT EXISTS idx_sync_runs_source ON sync_runs(source_api, started_at);
    """

    def __init__(self, db_path: Path):
        """Initialize database connection."""
        self.db_path = Path(db_path)
        self._ensure_dir()
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self._deadline_timeout: Optional[float] = None
        self._init_schema()
        logger.info(f"Database initialized: {self.db_path}")

    def _ensure_dir(self):
        """Ensure database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()
        cursor.execute(self.INVENTORY_SCHEMA)
        cursor.execute(self.STAGING_SCHEMA)
        cursor.execute(self.CACHE_SCHEMA)
        cursor.execute(self.RUNS_SCHEMA)
        cursor.execute(self.LOCKS_SCHEMA)
        cursor.executescript(self.INDEX_SCHEMA)
        self.conn.commit()

    # =========================================================================
    # ERROR TRANSLATION / DEADLINES
    # =========================================================================

    @contextmanager
    def _guard(self, table: str, source: Optional[str] = None):
        """Translate sqlite3 failures into PersistenceError / QueryTimeout."""
        try:
            yield
        except sqlite3.OperationalError as e:
            if "interrupted" in str(e).lower():
                raise QueryTimeout(
                    f"Query on {table} exceeded its deadline",
                    timeout=self._deadline_timeout,
                    table=table,
                ) from e
            raise PersistenceError(f"Store operation failed: {e}", table=table, source=source) from e
        except sqlite3.Error as e:
            raise PersistenceError(f"Store operation failed: {e}", table=table, source=source) from e

    @contextmanager
    def query_deadline(self, timeout: Optional[float]):
        """
        Interrupt any query that runs past `timeout` seconds.

        Interrupted queries surface as QueryTimeout from the store methods.
        """
        if not timeout:
            yield
            return

        deadline = time.monotonic() + timeout
        self._deadline_timeout = timeout
        self.conn.set_progress_handler(
            lambda: 1 if time.monotonic() > deadline else 0, 1000
        )
        try:
            yield
        finally:
            self.conn.set_progress_handler(None, 0)
            self._deadline_timeout = None

    # =========================================================================
    # ARCHIVAL
    # =========================================================================

    def archive_stale(
        self,
        source: str,
        freshness_hours: float = 24.0,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Soft-delete records of `source` not synced within the freshness window.

        Already archived records are left alone, so archived_at is set once.

        Returns:
            Number of records archived
        """
        now = now or utcnow()
        cutoff = now - timedelta(hours=freshness_hours)

        with self._guard(INVENTORY_TABLE, source), self.conn:
            cursor = self.conn.execute(
                f"""
                UPDATE {INVENTORY_TABLE}
                SET is_archived = 1, is_active = 0, is_live = 0, archived_at = ?
                WHERE source_api = ?
                AND is_archived = 0
                AND last_synced_at < ?
                """,
                (to_db_time(now), source, to_db_time(cutoff))
            )

        archived = cursor.rowcount
        if archived:
            logger.info(f"Archived {archived} {source} records older than {freshness_hours}h")
        return archived

    # =========================================================================
    # STAGING
    # =========================================================================

    def count_staging(self, source: Optional[str] = None) -> int:
        """Count staged records, optionally for one source."""
        return self._count(STAGING_TABLE, source)

    def clear_staging(self, source: str) -> int:
        """Remove every staged record of `source`. Returns rows removed."""
        with self._guard(STAGING_TABLE, source), self.conn:
            cursor = self.conn.execute(
                f"DELETE FROM {STAGING_TABLE} WHERE source_api = ?",
                (source,)
            )
        return cursor.rowcount

    def stage_records(self, records: List[InventoryRecord], source: str) -> int:
        """
        Upsert one batch of transformed records into staging.

        The batch is written in a single transaction; a failure leaves
        nothing of this batch behind.
        """
        if not records:
            return 0

        foreign = [r.id for r in records if r.source_api.value != source]
        if foreign:
            raise ValueError(
                f"{len(foreign)} records in batch do not belong to source {source}"
            )

        placeholders = ", ".join("?" for _ in RECORD_COLUMNS)
        updates = ", ".join(
            f"{c} = excluded.{c}" for c in RECORD_COLUMNS if c not in ("id", "source_api")
        )

        with self._guard(STAGING_TABLE, source), self.conn:
            self.conn.executemany(
                f"""
                INSERT INTO {STAGING_TABLE} ({_record_columns_sql()})
                VALUES ({placeholders})
                ON CONFLICT(source_api, id) DO UPDATE SET {updates}
                """,
                [self._record_to_row(r) for r in records]
            )
        return len(records)

    def verify_batch_written(
        self,
        ids: Iterable[str],
        source: str,
        table: str = STAGING_TABLE,
        check_limit: int = 10,
    ) -> bool:
        """Confirm the first `check_limit` ids of a written batch are present."""
        sample = [i for i in ids if i][:check_limit]
        if not sample:
            return True

        marks = ", ".join("?" for _ in sample)
        with self._guard(table, source):
            row = self.conn.execute(
                f"SELECT COUNT(*) AS count FROM {table} WHERE source_api = ? AND id IN ({marks})",
                (source, *sample)
            ).fetchone()

        found = row['count']
        if found < len(sample):
            logger.error(f"Batch verification failed: found {found}/{len(sample)} records in {table}")
            return False
        logger.debug(f"Batch verification passed: {found}/{len(sample)} records confirmed in {table}")
        return True

    # =========================================================================
    # MERGE
    # =========================================================================

    def merge_staging(self, source: str) -> MergeResult:
        """
        Upsert non-archived staged records of `source` into inventory, then
        empty staging for `source`, in one transaction.

        Conflicts on id overwrite every column except ownership and archival
        state. Ids owned by another source are left untouched. Re-merging an
        unchanged batch leaves inventory unchanged.
        """
        updates = ",\n                    ".join(
            f"{c} = excluded.{c}" for c in MERGE_OVERWRITE_COLUMNS
        )

        with self._guard(INVENTORY_TABLE, source), self.conn:
            staged = self.conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN i.source_api = s.source_api THEN 1 ELSE 0 END) AS existing,
                    SUM(CASE WHEN i.source_api != s.source_api THEN 1 ELSE 0 END) AS foreign_owned
                FROM {STAGING_TABLE} s
                LEFT JOIN {INVENTORY_TABLE} i ON i.id = s.id
                WHERE s.source_api = ? AND s.is_archived = 0
                """,
                (source,)
            ).fetchone()

            self.conn.execute(
                f"""
                INSERT INTO {INVENTORY_TABLE} ({_record_columns_sql()})
                SELECT {_record_columns_sql()} FROM {STAGING_TABLE}
                WHERE source_api = ? AND is_archived = 0
                ON CONFLICT(id) DO UPDATE SET
                    {updates},
                    is_active = CASE WHEN {INVENTORY_TABLE}.is_archived = 1
                                     THEN 0 ELSE excluded.is_active END,
                    is_live = CASE WHEN {INVENTORY_TABLE}.is_archived = 1
                                   THEN 0 ELSE excluded.is_live END
                WHERE {INVENTORY_TABLE}.source_api = excluded.source_api
                """,
                (source,)
            )

            self.conn.execute(
                f"DELETE FROM {STAGING_TABLE} WHERE source_api = ?",
                (source,)
            )

        total = staged['total'] or 0
        existing = staged['existing'] or 0
        foreign = staged['foreign_owned'] or 0
        result = MergeResult(
            inserted=total - existing - foreign,
            updated=existing,
            skipped_foreign=foreign,
        )

        if foreign:
            logger.warning(f"Merge skipped {foreign} ids owned by another source")
        logger.info(
            f"Merged {source}: {result.inserted} inserted, {result.updated} updated"
        )
        return result

    # =========================================================================
    # INVENTORY READS
    # =========================================================================

    def _count(self, table: str, source: Optional[str] = None, where: str = "") -> int:
        clauses = []
        params = []
        if source:
            clauses.append("source_api = ?")
            params.append(source)
        if where:
            clauses.append(where)
        sql = f"SELECT COUNT(*) AS count FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)

        with self._guard(table, source):
            return self.conn.execute(sql, params).fetchone()['count']

    def count_inventory(self, source: Optional[str] = None, include_archived: bool = False) -> int:
        """Count inventory records (active only unless include_archived)."""
        where = "" if include_archived else "is_archived = 0"
        return self._count(INVENTORY_TABLE, source, where)

    def count_cache(self, source: Optional[str] = None) -> int:
        """Count rows in the secondary cache table."""
        return self._count(CACHE_TABLE, source)

    def latest_sync_time(self, source: Optional[str] = None) -> Optional[datetime]:
        """Timestamp of the most recently synced inventory record."""
        sql = f"SELECT MAX(last_synced_at) AS last_sync FROM {INVENTORY_TABLE}"
        params = []
        if source:
            sql += " WHERE source_api = ?"
            params.append(source)

        with self._guard(INVENTORY_TABLE, source):
            row = self.conn.execute(sql, params).fetchone()
        return from_db_time(row['last_sync'])

    def sample_records(self, size: int = 10, source: Optional[str] = None) -> List[Dict]:
        """Most recently synced active records, as plain dicts."""
        sql = f"""
            SELECT id, make, model, year, price, external_id, source_api, last_synced_at
            FROM {INVENTORY_TABLE}
            WHERE is_archived = 0
        """
        params: list = []
        if source:
            sql += " AND source_api = ?"
            params.append(source)
        sql += " ORDER BY last_synced_at DESC, id LIMIT ?"
        params.append(size)

        with self._guard(INVENTORY_TABLE, source):
            return [dict(row) for row in self.conn.execute(sql, params).fetchall()]

    def get_record(self, record_id: str) -> Optional[InventoryRecord]:
        """Get full inventory record by id."""
        with self._guard(INVENTORY_TABLE):
            row = self.conn.execute(
                f"SELECT * FROM {INVENTORY_TABLE} WHERE id = ?",
                (record_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def get_records(self, source: Optional[str] = None) -> List[InventoryRecord]:
        """All inventory records ordered by id, archived included."""
        sql = f"SELECT * FROM {INVENTORY_TABLE}"
        params = []
        if source:
            sql += " WHERE source_api = ?"
            params.append(source)
        sql += " ORDER BY id"

        with self._guard(INVENTORY_TABLE, source):
            return [self._row_to_record(row) for row in self.conn.execute(sql, params).fetchall()]

    def refresh_cache(self, source: str) -> int:
        """Rebuild the secondary cache rows of `source` from active inventory."""
        with self._guard(CACHE_TABLE, source), self.conn:
            self.conn.execute(f"DELETE FROM {CACHE_TABLE} WHERE source_api = ?", (source,))
            cursor = self.conn.execute(
                f"""
                INSERT OR REPLACE INTO {CACHE_TABLE} (id, source_api, make, model, price, cached_at)
                SELECT id, source_api, make, model, price, ?
                FROM {INVENTORY_TABLE}
                WHERE source_api = ? AND is_archived = 0
                """,
                (to_db_time(utcnow()), source)
            )
        logger.info(f"Cache refreshed for {source}: {cursor.rowcount} rows")
        return cursor.rowcount

    def get_stats(self, source: Optional[str] = None) -> Dict:
        """Get database statistics."""
        total = self.count_inventory(source, include_archived=True)
        active = self.count_inventory(source)
        last_sync = self.latest_sync_time(source)

        return {
            'total_records': total,
            'active_records': active,
            'archived_records': total - active,
            'staging_records': self.count_staging(source),
            'last_sync': last_sync.isoformat() if last_sync else None,
        }

    # =========================================================================
    # RUN BOOKKEEPING
    # =========================================================================

    def start_run(self, source: str) -> int:
        """Record a new running sync run and return its id."""
        with self._guard("sync_runs", source), self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO sync_runs (source_api, status, stage, started_at)
                VALUES (?, ?, ?, ?)
                """,
                (source, RunStatus.RUNNING.value, SyncStage.IDLE.value, to_db_time(utcnow()))
            )
        return cursor.lastrowid

    def update_run_stage(self, run_id: int, stage: SyncStage, records_fetched: Optional[int] = None):
        with self._guard("sync_runs"), self.conn:
            self.conn.execute(
                """
                UPDATE sync_runs
                SET stage = ?, records_fetched = COALESCE(?, records_fetched)
                WHERE id = ?
                """,
                (SyncStage(stage).value, records_fetched, run_id)
            )

    def finish_run(
        self,
        run_id: int,
        status: RunStatus,
        error_message: Optional[str] = None,
        records_fetched: Optional[int] = None,
    ):
        """Close a run as completed or failed."""
        with self._guard("sync_runs"), self.conn:
            self.conn.execute(
                """
                UPDATE sync_runs
                SET status = ?, finished_at = ?, error_message = ?,
                    records_fetched = COALESCE(?, records_fetched)
                WHERE id = ?
                """,
                (RunStatus(status).value, to_db_time(utcnow()), error_message, records_fetched, run_id)
            )

    def get_last_run(self, source: Optional[str] = None) -> Optional[SyncRun]:
        """Most recently started run, optionally for one source."""
        sql = "SELECT * FROM sync_runs"
        params = []
        if source:
            sql += " WHERE source_api = ?"
            params.append(source)
        sql += " ORDER BY started_at DESC, id DESC LIMIT 1"

        with self._guard("sync_runs", source):
            row = self.conn.execute(sql, params).fetchone()
        if not row:
            return None

        return SyncRun(
            id=row['id'],
            source_api=row['source_api'],
            status=RunStatus(row['status']),
            stage=SyncStage(row['stage']),
            started_at=from_db_time(row['started_at']),
            finished_at=from_db_time(row['finished_at']),
            error_message=row['error_message'],
            records_fetched=row['records_fetched'] or 0,
        )

    # =========================================================================
    # RUN LOCK
    # =========================================================================

    def acquire_run_lock(
        self,
        source: str,
        owner: str,
        ttl_minutes: int = 120,
        now: Optional[datetime] = None,
    ):
        """
        Take the per-source run lock.

        An expired lock (holder crashed) is replaced.

        Raises:
            SyncInProgress: if another owner holds a live lock
        """
        now = now or utcnow()
        try:
            with self.conn:
                self.conn.execute(
                    "DELETE FROM sync_locks WHERE source_api = ? AND expires_at < ?",
                    (source, to_db_time(now))
                )
                self.conn.execute(
                    """
                    INSERT INTO sync_locks (source_api, owner, acquired_at, expires_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (source, owner, to_db_time(now), to_db_time(now + timedelta(minutes=ttl_minutes)))
                )
        except sqlite3.IntegrityError:
            row = self.conn.execute(
                "SELECT owner FROM sync_locks WHERE source_api = ?", (source,)
            ).fetchone()
            holder = row['owner'] if row else None
            raise SyncInProgress(
                f"A sync run for {source} is already in progress",
                source=source,
                owner=holder,
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not acquire run lock: {e}", table="sync_locks", source=source) from e

        logger.debug(f"Run lock acquired for {source} by {owner}")

    def release_run_lock(self, source: str, owner: str):
        with self._guard("sync_locks", source), self.conn:
            self.conn.execute(
                "DELETE FROM sync_locks WHERE source_api = ? AND owner = ?",
                (source, owner)
            )

    # =========================================================================
    # ROW MAPPING
    # =========================================================================

    @staticmethod
    def _record_to_row(record: InventoryRecord) -> tuple:
        data = record.model_dump()
        data['source_api'] = record.source_api.value
        data['images'] = json.dumps(record.images)
        data['last_synced_at'] = to_db_time(record.last_synced_at)
        data['archived_at'] = to_db_time(record.archived_at)
        for flag in ('is_active', 'is_live', 'is_archived'):
            data[flag] = int(data[flag])
        return tuple(data[c] for c in RECORD_COLUMNS)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> InventoryRecord:
        data = {c: row[c] for c in RECORD_COLUMNS}
        data['images'] = json.loads(data['images']) if data['images'] else []
        data['last_synced_at'] = from_db_time(data['last_synced_at'])
        data['archived_at'] = from_db_time(data['archived_at'])
        for flag in ('is_active', 'is_live', 'is_archived'):
            data[flag] = bool(data[flag])
        if data['last_synced_at'] is None:
            del data['last_synced_at']
        return InventoryRecord(**data)

    def close(self):
        """Close database connection."""
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
