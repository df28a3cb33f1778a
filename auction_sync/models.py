"""
Auction Inventory Sync - Pydantic Models
Canonical inventory schema, scroll session values, and run reports.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class SourceTag(str, Enum):
    """Which provider produced an inventory record."""
    AUCTIONS_API = "auctions_api"
    AUCTIONAPIS = "auctionapis"
    ENCAR = "encar"


class SyncStage(str, Enum):
    """Per-run pipeline states, in execution order."""
    IDLE = "idle"
    ARCHIVING = "archiving"
    STAGING_CLEARED = "staging_cleared"
    FETCHING = "fetching"
    STAGED = "staged"
    MERGED = "merged"
    VERIFIED = "verified"


class RunStatus(str, Enum):
    """Outcome recorded in the sync_runs table."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class InventoryRecord(BaseModel):
    """Canonical vehicle entry shared by staging and the inventory table."""
    id: str
    external_id: str
    source_api: SourceTag
    
    make: str = "Unknown"
    model: str = "Unknown"
    year: int = 2020
    title: str = ""
    price: int = 0
    mileage: int = 0
    
    vin: Optional[str] = None
    color: Optional[str] = None
    fuel: Optional[str] = None
    transmission: Optional[str] = None
    condition: str = "good"
    images: List[str] = Field(default_factory=list)
    
    # Lot / lifecycle
    lot_number: Optional[str] = None
    current_bid: float = 0.0
    buy_now_price: float = 0.0
    final_bid: Optional[float] = None
    sale_date: Optional[str] = None
    
    is_active: bool = True
    is_live: bool = False
    is_archived: bool = False
    
    last_synced_at: datetime = Field(default_factory=utcnow)
    archived_at: Optional[datetime] = None
    
    @field_validator("price", "mileage", mode="before")
    @classmethod
    def coerce_int(cls, v):
        """Numeric fields fall back to zero instead of failing."""
        if v is None or v == "":
            return 0
        try:
            return max(int(round(float(v))), 0)
        except (TypeError, ValueError, OverflowError):
            return 0
    
    @field_validator("current_bid", "buy_now_price", mode="before")
    @classmethod
    def coerce_float(cls, v):
        if v is None or v == "":
            return 0.0
        try:
            number = float(v)
        except (TypeError, ValueError):
            return 0.0
        return number if math.isfinite(number) else 0.0
    
    @field_validator("last_synced_at", "archived_at")
    @classmethod
    def ensure_utc(cls, v):
        """Naive datetimes are taken as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v
    
    @model_validator(mode="after")
    def archived_is_inactive(self):
        if self.is_archived:
            self.is_active = False
        return self


class ScrollSession(BaseModel):
    """
    Provider pagination cursor.
    
    Passed to and returned from every client call instead of living as
    ambient state on the client, so independent sources can hold their own.
    """
    cursor: Optional[str] = None
    ttl_minutes: int
    limit: int
    opened_at: datetime = Field(default_factory=utcnow)
    pages_fetched: int = 0
    records_fetched: int = 0
    
    @property
    def exhausted(self) -> bool:
        """No continuation cursor left."""
        return not self.cursor


class ScrollPage(BaseModel):
    """One page of provider records plus the session to continue with."""
    records: List[Dict[str, Any]] = Field(default_factory=list)
    session: ScrollSession
    
    @property
    def is_last(self) -> bool:
        """Zero records or a missing cursor ends the scroll."""
        return not self.records or self.session.exhausted


class Generation(BaseModel):
    generation_id: int
    name: str = ""
    start_year: Optional[int] = None
    end_year: Optional[int] = None


class Brand(BaseModel):
    """Reference data from GET /brands."""
    id: int
    name: str


class VehicleModel(BaseModel):
    """Reference data from GET /models/{brand_id}."""
    id: int
    name: str
    generations: List[Generation] = Field(default_factory=list)


class MergeResult(BaseModel):
    """Outcome of a staging -> inventory merge."""
    inserted: int = 0
    updated: int = 0
    skipped_foreign: int = 0  # ids owned by another source
    
    @property
    def total(self) -> int:
        return self.inserted + self.updated


class SyncRun(BaseModel):
    """Row of the sync_runs bookkeeping table."""
    id: int
    source_api: str
    status: RunStatus
    stage: SyncStage
    started_at: datetime
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    records_fetched: int = 0


class SyncReport(BaseModel):
    """Verification outcome. Immutable once built."""
    model_config = ConfigDict(frozen=True)
    
    source_api: Optional[str] = None
    verified_at: datetime = Field(default_factory=utcnow)
    
    expected_count: Optional[int] = None
    actual_count: Optional[int] = None
    
    staging_cleared: Optional[bool] = None
    staging_residual: int = 0
    
    last_sync_time: Optional[datetime] = None
    last_sync_age_hours: Optional[float] = None
    
    sample_size: int = 0
    sample_valid_ratio: Optional[float] = None
    sample_records_verified: Optional[bool] = None
    
    cache_count: Optional[int] = None
    integrity_difference_percent: Optional[float] = None
    data_integrity_passed: Optional[bool] = None
    
    timed_out_checks: Tuple[str, ...] = ()
    errors: Tuple[str, ...] = ()
    
    @property
    def success(self) -> bool:
        return not self.errors
    
    @property
    def message(self) -> str:
        if self.success:
            return "Sync verification completed successfully - inventory is properly synced"
        return f"Sync verification failed with {len(self.errors)} issues"


class SyncStats(BaseModel):
    """Statistics of one orchestrated run, for logs, notifications and the stats file."""
    source_api: str
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    stage: SyncStage = SyncStage.IDLE
    dry_run: bool = False
    
    archived: int = 0
    staging_recovered: int = 0
    fetched: int = 0
    staged: int = 0
    batches: int = 0
    
    inserted: int = 0
    updated: int = 0
    skipped_foreign: int = 0
    
    active_records: int = 0
    archived_records: int = 0
    
    report: Optional[SyncReport] = None
    
    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or utcnow()
        return round((end - self.started_at).total_seconds(), 2)
    
    @property
    def merged(self) -> int:
        return self.inserted + self.updated
    
    @property
    def verified(self) -> bool:
        return self.report is not None and self.report.success
    
    def to_json_file(self, filepath):
        """Save stats to JSON for external inspection."""
        import json
        data = self.model_dump(mode="json")
        data["duration_seconds"] = self.duration_seconds
        data["verified"] = self.verified
        if self.report is not None:
            data["report"]["success"] = self.report.success
            data["report"]["message"] = self.report.message
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
