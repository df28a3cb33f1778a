"""
Auction Inventory Sync - Configuration Settings
Pydantic Settings for type-safe configuration from .env
"""

from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    # Provider API
    provider_base_url: str = Field(default="https://api.auctionsapi.com")
    provider_api_key: str = Field(default="")
    provider_source: str = Field(default="auctions_api")
    scroll_time_minutes: int = Field(default=10)  # provider max 15
    scroll_limit: int = Field(default=1000)  # provider max 2000
    page_delay_seconds: float = Field(default=0.5)
    request_timeout_seconds: float = Field(default=30.0)
    max_retries: int = Field(default=3)
    retry_delay_seconds: float = Field(default=2.0)
    
    # Store
    db_path: Path = Field(default=Path("./inventory.db"))
    stats_path: Path = Field(default=Path("./last_run_stats.json"))
    
    # Processing
    batch_size: int = Field(default=1000)
    freshness_window_hours: float = Field(default=24.0)
    run_lock_ttl_minutes: int = Field(default=120)
    
    # Verification
    sync_time_threshold_hours: float = Field(default=72.0)
    data_integrity_threshold_percent: float = Field(default=20.0)
    sample_size: int = Field(default=10)
    sample_validity_threshold_percent: float = Field(default=90.0)
    query_timeout_seconds: float = Field(default=15.0)
    
    # Notifications
    discord_webhook_url: Optional[str] = Field(default=None)
    telegram_webhook_url: Optional[str] = Field(default=None)
    
    # Logging
    log_level: str = Field(default="INFO")
    log_json_format: bool = Field(default=False)  # Enable JSON logs for production
    log_file: Optional[Path] = Field(default=None)
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"
    
    @property
    def provider_configured(self) -> bool:
        """Check if provider credentials are configured."""
        return bool(self.provider_api_key)
    
    @property
    def discord_webhook_configured(self) -> bool:
        """Check if Discord webhook is configured."""
        return bool(self.discord_webhook_url)


# Singleton instance
settings = Settings()
