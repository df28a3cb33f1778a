#!/usr/bin/env python3
"""
Auction Inventory Sync - Main Entry Point
Pull the provider's bulk export into the inventory table and verify it.

Usage:
    python main.py                                # Full sync for the configured source
    python main.py --expected-count 12000         # Also check record-count parity
    python main.py --dry-run                      # Fetch + transform only
    python main.py --verify-only --sync-threshold-hours 168
    python main.py --refresh-cache                # Rebuild the secondary cache table
    python main.py --brands                       # List provider brands
    python main.py --models 12                    # List models of brand 12

Exit codes:
    0  run finished (verification issues are advisory and do not change this)
    1  unrecoverable error: configuration, provider, store, or lock held
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from config.settings import settings
from auction_sync.database import InventoryDatabase
from auction_sync.exceptions import AuctionSyncError, ConfigurationError
from auction_sync.logging_config import setup_logging
from auction_sync.models import SyncReport, SyncStats
from auction_sync.notifications import NotificationService
from auction_sync.provider import AuctionsApiClient
from auction_sync.sync import InventorySyncManager
from auction_sync.verification import SyncVerifier, VerificationConfig

logger = logging.getLogger(__name__)


def build_client() -> AuctionsApiClient:
    """Create the provider client from settings. Fails before any network call."""
    if not settings.provider_configured:
        raise ConfigurationError(
            "Provider API key not configured (set PROVIDER_API_KEY in .env)",
            setting="provider_api_key",
        )
    return AuctionsApiClient(
        api_key=settings.provider_api_key,
        base_url=settings.provider_base_url,
        scroll_time=settings.scroll_time_minutes,
        limit=settings.scroll_limit,
        timeout=settings.request_timeout_seconds,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay_seconds,
        page_delay=settings.page_delay_seconds,
    )


def run_sync(args) -> SyncStats:
    """Run one full sync for the selected source."""
    source = args.source or settings.provider_source
    config = VerificationConfig.from_settings(
        settings, sync_time_threshold_hours=args.sync_threshold_hours
    )

    logger.info("=" * 60)
    logger.info(f"Starting Auction Inventory Sync (source={source})")
    logger.info(f"Dry Run: {args.dry_run}")
    logger.info("=" * 60)

    with build_client() as client, InventoryDatabase(settings.db_path) as db:
        manager = InventorySyncManager(
            client=client,
            db=db,
            source=source,
            batch_size=settings.batch_size,
            freshness_window_hours=settings.freshness_window_hours,
            verification_config=config,
            dry_run=args.dry_run,
            lock_ttl_minutes=settings.run_lock_ttl_minutes,
        )
        stats = manager.run(expected_count=args.expected_count)

    if not args.dry_run:
        stats.to_json_file(settings.stats_path)
        logger.debug(f"📊 Saved {settings.stats_path}")

    if settings.discord_webhook_configured or settings.telegram_webhook_url:
        with NotificationService(
            discord_webhook_url=settings.discord_webhook_url,
            telegram_webhook_url=settings.telegram_webhook_url,
        ) as notifier:
            notifier.send_report(stats)

    print_report(stats)
    return stats


def run_verify_only(args) -> SyncReport:
    """Verify the current inventory without syncing."""
    source = args.source or settings.provider_source
    config = VerificationConfig.from_settings(
        settings, sync_time_threshold_hours=args.sync_threshold_hours
    )
    with InventoryDatabase(settings.db_path) as db:
        report = SyncVerifier(db).verify(
            expected_count=args.expected_count, config=config, source=source
        )
    print_verification(report)
    return report


def refresh_cache(args) -> int:
    source = args.source or settings.provider_source
    with InventoryDatabase(settings.db_path) as db:
        count = db.refresh_cache(source)
    print(f"✅ Cache refreshed: {count} rows for {source}")
    return count


def list_brands():
    with build_client() as client:
        for brand in client.get_brands():
            print(f"{brand.id:>6}  {brand.name}")


def list_models(brand_id: int):
    with build_client() as client:
        for model in client.get_models(brand_id):
            generations = ", ".join(g.name for g in model.generations)
            print(f"{model.id:>6}  {model.name}" + (f"  [{generations}]" if generations else ""))


def print_verification(report: SyncReport):
    status = "✅ PASSED" if report.success else "⚠️  ISSUES FOUND (advisory)"
    print(f"Verification: {status}")
    if report.actual_count is not None:
        expected = report.expected_count if report.expected_count is not None else "-"
        print(f"   Records: {report.actual_count} (expected: {expected})")
    if report.staging_cleared is not None:
        print(f"   Staging cleared: {report.staging_cleared}")
    if report.last_sync_age_hours is not None:
        print(f"   Last sync: {report.last_sync_age_hours:.1f} hours ago")
    if report.sample_valid_ratio is not None:
        print(f"   Sample validity: {report.sample_valid_ratio * 100:.0f}% of {report.sample_size}")
    if report.data_integrity_passed is not None:
        print(f"   Cross-table integrity: {'ok' if report.data_integrity_passed else 'mismatch'}")
    if report.timed_out_checks:
        print(f"   Timed out (skipped): {', '.join(report.timed_out_checks)}")
    for error in report.errors:
        print(f"   • {error}")


def print_report(stats: SyncStats):
    """Print final sync report to console."""
    print("\n" + "=" * 60)
    print("📊 SYNC REPORT")
    print("=" * 60)
    print(f"Source: {stats.source_api}{' (dry run)' if stats.dry_run else ''}")
    print(f"Stage reached: {stats.stage.value}")
    print(f"Duration: {stats.duration_seconds}s")
    print()
    print(f"📦 Archived (stale): {stats.archived}")
    print(f"🧹 Staging recovered: {stats.staging_recovered}")
    print(f"📡 Fetched: {stats.fetched}")
    print(f"💾 Staged: {stats.staged} in {stats.batches} batches")
    print(f"✨ Inserted: {stats.inserted}")
    print(f"🔄 Updated: {stats.updated}")
    if stats.skipped_foreign:
        print(f"⏭️  Skipped (owned by another source): {stats.skipped_foreign}")
    print(f"🟢 Active / archived: {stats.active_records} / {stats.archived_records}")
    print()
    if stats.report is not None:
        print_verification(stats.report)
    print("=" * 60)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Auction Inventory Sync - provider export to inventory table"
    )
    parser.add_argument(
        "--source",
        help=f"Source tag to sync (default: {settings.provider_source})",
    )
    parser.add_argument(
        "--expected-count",
        type=int,
        dest="expected_count",
        help="Expected active record count for verification",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and transform without writing to the store",
    )
    parser.add_argument(
        "--verify-only",
        action="store_true",
        dest="verify_only",
        help="Only run verification against the current store",
    )
    parser.add_argument(
        "--sync-threshold-hours",
        type=float,
        dest="sync_threshold_hours",
        help="Override the recency threshold (default from settings)",
    )
    parser.add_argument(
        "--refresh-cache",
        action="store_true",
        dest="refresh_cache",
        help="Rebuild the secondary cache table from active inventory",
    )
    parser.add_argument(
        "--brands",
        action="store_true",
        help="List provider brands",
    )
    parser.add_argument(
        "--models",
        type=int,
        metavar="BRAND_ID",
        help="List provider models for a brand",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help=f"Log level (default: {settings.log_level})",
    )
    return parser


def main(argv=None) -> int:
    """Main entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    setup_logging(
        args.log_level or settings.log_level,
        json_format=settings.log_json_format,
        log_file=str(settings.log_file) if settings.log_file else None,
    )

    try:
        if args.brands:
            list_brands()
        elif args.models is not None:
            list_models(args.models)
        elif args.verify_only:
            run_verify_only(args)
        elif args.refresh_cache:
            refresh_cache(args)
        else:
            run_sync(args)
    except AuctionSyncError as e:
        logger.error(f"❌ {type(e).__name__}: {e}")
        if settings.discord_webhook_configured:
            with NotificationService(discord_webhook_url=settings.discord_webhook_url) as notifier:
                notifier.send_alert("❌ Inventory sync failed", f"{type(e).__name__}: {e}", is_error=True)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
