"""
Auction Inventory Sync - Notification Service
Sends sync run reports via Discord/Telegram webhooks.
"""

import logging
from typing import Optional

import httpx

from .models import SyncStats

logger = logging.getLogger(__name__)

# Status colors (Semaphore system)
COLOR_SUCCESS = 0x2ECC71  # Green
COLOR_WARNING = 0xF1C40F  # Yellow
COLOR_ERROR = 0xE74C3C   # Red


class NotificationService:
    """
    Sends sync reports via webhooks.

    Delivery problems are logged and never affect the run.
    """

    def __init__(
        self,
        discord_webhook_url: Optional[str] = None,
        telegram_webhook_url: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.discord_url = discord_webhook_url
        self.telegram_url = telegram_webhook_url
        self._client = client or httpx.Client(timeout=30.0)

    def send_report(self, stats: SyncStats):
        """Send sync report to all configured webhooks."""
        if self.discord_url:
            self._send_discord(stats)

        if self.telegram_url:
            self._send_telegram(stats)

    @staticmethod
    def _determine_status(stats: SyncStats) -> tuple:
        """Green when verified, yellow when verification has advisory issues."""
        if stats.report is None:
            return COLOR_WARNING, "⚠️", "NOT VERIFIED"
        if stats.report.errors:
            return COLOR_WARNING, "⚠️", "ATTENTION"
        return COLOR_SUCCESS, "✅", "SUCCESS"

    def build_embed(self, stats: SyncStats) -> dict:
        color, emoji, status_text = self._determine_status(stats)
        finished = stats.finished_at or stats.started_at

        fields = [
            {"name": "📡 Fetched", "value": f"**{stats.fetched}** records", "inline": True},
            {"name": "✨ Inserted", "value": f"**{stats.inserted}**", "inline": True},
            {"name": "🔄 Updated", "value": f"**{stats.updated}**", "inline": True},
            {"name": "📦 Archived", "value": f"**{stats.archived}**", "inline": True},
            {"name": "🟢 Active", "value": f"**{stats.active_records}**", "inline": True},
        ]

        if stats.staging_recovered:
            fields.append({
                "name": "🧹 Staging recovered",
                "value": f"**{stats.staging_recovered}** leftover records cleared",
                "inline": False,
            })

        if stats.report is not None and stats.report.errors:
            error_text = "\n".join(f"• {e}" for e in stats.report.errors[:3])
            if len(stats.report.errors) > 3:
                error_text += f"\n... +{len(stats.report.errors) - 3} more"
            fields.append({
                "name": "🔍 Verification issues",
                "value": error_text[:1024],  # Discord limit
                "inline": False,
            })

        return {
            "title": f"🚗 Inventory Sync - {stats.source_api}",
            "description": f"**{emoji} {status_text}** - finished at {finished.strftime('%H:%M:%S')} UTC",
            "color": color,
            "fields": fields,
            "footer": {"text": f"Auction Inventory Sync • {stats.duration_seconds}s"},
            "timestamp": finished.isoformat(),
        }

    def _send_discord(self, stats: SyncStats):
        try:
            response = self._client.post(
                self.discord_url,
                json={"embeds": [self.build_embed(stats)]},
            )
            if response.status_code in (200, 204):
                logger.info("Discord notification sent successfully")
            else:
                logger.warning(f"Discord notification failed: {response.status_code}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Discord notification: {e}")

    def _send_telegram(self, stats: SyncStats):
        _, emoji, status_text = self._determine_status(stats)
        message = (
            f"{emoji} *Inventory Sync - {stats.source_api}* ({status_text})\n\n"
            f"📡 Fetched: {stats.fetched}\n"
            f"✨ Inserted: {stats.inserted}\n"
            f"🔄 Updated: {stats.updated}\n"
            f"📦 Archived: {stats.archived}\n"
        )
        if stats.report is not None and stats.report.errors:
            message += f"\n🔍 Verification issues: {len(stats.report.errors)}"

        try:
            response = self._client.post(
                self.telegram_url,
                json={"text": message, "parse_mode": "Markdown"},
            )
            if response.status_code == 200:
                logger.info("Telegram notification sent successfully")
            else:
                logger.warning(f"Telegram notification failed: {response.status_code}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Telegram notification: {e}")

    def send_alert(self, title: str, message: str, is_error: bool = False):
        """Send a simple alert message (used for failed runs)."""
        if not self.discord_url:
            return
        embed = {
            "title": title,
            "description": message[:2048],
            "color": COLOR_ERROR if is_error else COLOR_SUCCESS,
        }
        try:
            self._client.post(self.discord_url, json={"embeds": [embed]})
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Discord alert: {e}")

    def close(self):
        """Close HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
