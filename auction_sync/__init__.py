"""
Auction Inventory Sync - auction_sync package
"""

from .provider import AuctionsApiClient
from .transformer import RecordTransformer, transform_record, transform_records
from .database import InventoryDatabase
from .verification import SyncVerifier, VerificationConfig, quick_sync_check
from .sync import InventorySyncManager
from .notifications import NotificationService
from .models import (
    InventoryRecord,
    ScrollSession,
    ScrollPage,
    SourceTag,
    SyncStage,
    SyncReport,
    SyncStats,
)

__all__ = [
    "AuctionsApiClient",
    "RecordTransformer",
    "transform_record",
    "transform_records",
    "InventoryDatabase",
    "SyncVerifier",
    "VerificationConfig",
    "quick_sync_check",
    "InventorySyncManager",
    "NotificationService",
    "InventoryRecord",
    "ScrollSession",
    "ScrollPage",
    "SourceTag",
    "SyncStage",
    "SyncReport",
    "SyncStats",
]
