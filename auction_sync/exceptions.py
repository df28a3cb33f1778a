"""
Auction Inventory Sync - Custom Exceptions
Typed failures for the ingestion, merge and verification pipeline.
"""

from enum import Enum


class AuctionSyncError(Exception):
    """Base exception for all Auction Inventory Sync errors."""
    
    def __init__(self, message: str, context: dict = None):
        super().__init__(message)
        self.context = context or {}
    
    def __str__(self):
        base = super().__str__()
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base} [{context_str}]"
        return base


class ConfigurationError(AuctionSyncError):
    """Errors in configuration (missing .env values, etc). Fatal before any network call."""
    
    def __init__(self, message: str, setting: str = None):
        context = {"setting": setting} if setting else {}
        super().__init__(message, context)
        self.setting = setting


class InvalidConfiguration(ConfigurationError):
    """A configured value falls outside the provider-declared bounds."""


class ProviderErrorReason(str, Enum):
    """Classified reason for a failed provider call."""
    AUTH_ERROR = "auth_error"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    IP_NOT_ALLOWLISTED = "ip_not_allowlisted"
    NO_SUBSCRIPTION_DATA = "no_subscription_data"
    RATE_OR_SIZE_LIMIT = "rate_or_size_limit"
    UNKNOWN = "unknown"


def classify_provider_error(status_code: int = None, message: str = "") -> ProviderErrorReason:
    """
    Map an HTTP status and the provider's error message to a reason.
    
    The provider reuses 403 for several account problems and only the
    message text tells them apart.
    """
    text = (message or "").lower()
    
    if status_code == 401:
        return ProviderErrorReason.AUTH_ERROR
    if status_code == 403:
        if "api_key" in text:
            return ProviderErrorReason.AUTH_ERROR
        if "subscription" in text:
            return ProviderErrorReason.SUBSCRIPTION_INACTIVE
        if "whitelist" in text:
            return ProviderErrorReason.IP_NOT_ALLOWLISTED
        if "data" in text:
            return ProviderErrorReason.NO_SUBSCRIPTION_DATA
    if status_code == 429:
        return ProviderErrorReason.RATE_OR_SIZE_LIMIT
    if status_code == 400 and ("scroll_time" in text or "limit" in text):
        return ProviderErrorReason.RATE_OR_SIZE_LIMIT
    return ProviderErrorReason.UNKNOWN


class ProviderError(AuctionSyncError):
    """Errors from the auction data provider API."""
    
    def __init__(
        self,
        message: str,
        status_code: int = None,
        reason: ProviderErrorReason = None,
    ):
        if reason is None:
            reason = classify_provider_error(status_code, message)
        context = {"reason": reason.value}
        if status_code:
            context["status"] = status_code
        super().__init__(message, context)
        self.status_code = status_code
        self.reason = reason
    
    @property
    def is_client_error(self) -> bool:
        """4xx errors."""
        return bool(self.status_code) and 400 <= self.status_code < 500
    
    @property
    def is_server_error(self) -> bool:
        """5xx errors - server issue, may retry."""
        return bool(self.status_code) and self.status_code >= 500
    
    @property
    def is_retryable(self) -> bool:
        """Check if error is worth retrying."""
        if self.reason in (
            ProviderErrorReason.AUTH_ERROR,
            ProviderErrorReason.SUBSCRIPTION_INACTIVE,
            ProviderErrorReason.IP_NOT_ALLOWLISTED,
            ProviderErrorReason.NO_SUBSCRIPTION_DATA,
        ):
            return False
        if self.reason == ProviderErrorReason.RATE_OR_SIZE_LIMIT:
            return True
        # No status means the request never completed (timeout, reset)
        return self.status_code is None or self.is_server_error


class ScrollSessionError(AuctionSyncError):
    """Misuse of the provider scroll session."""


class NoActiveSession(ScrollSessionError):
    """continue/close called without an open session."""
    
    def __init__(self, message: str = "No active scroll session. Start a new scroll first."):
        super().__init__(message)


class SessionAlreadyOpen(ScrollSessionError):
    """open called while a session is still open on the same client."""
    
    def __init__(self, message: str = "A scroll session is already active. End it before starting a new one."):
        super().__init__(message)


class TransformError(AuctionSyncError):
    """A provider record could not be mapped. Signals a programming error."""
    
    def __init__(self, message: str, record_id: str = None):
        context = {"record_id": record_id} if record_id else {}
        super().__init__(message, context)
        self.record_id = record_id


class PersistenceError(AuctionSyncError):
    """Errors with store operations during staging or merge."""
    
    def __init__(self, message: str, table: str = None, source: str = None):
        context = {}
        if table:
            context["table"] = table
        if source:
            context["source"] = source
        super().__init__(message, context)
        self.table = table
        self.source = source


class QueryTimeout(PersistenceError):
    """A store query exceeded its deadline and was interrupted."""
    
    def __init__(self, message: str, timeout: float = None, table: str = None):
        super().__init__(message, table=table)
        self.timeout = timeout
        if timeout is not None:
            self.context["timeout"] = timeout


class VerificationViolation(AuctionSyncError):
    """An advisory consistency check failed. Collected, never propagated."""
    
    def __init__(self, message: str, check: str = None):
        super().__init__(message)
        self.check = check


class SyncError(AuctionSyncError):
    """Fatal error during a sync run."""
    
    def __init__(
        self,
        message: str,
        stage: str = None,
        source: str = None,
        records_fetched: int = None,
    ):
        context = {}
        if source:
            context["source"] = source
        if stage:
            context["stage"] = stage
        if records_fetched is not None:
            context["records"] = records_fetched
        super().__init__(message, context)
        self.stage = stage
        self.source = source
        self.records_fetched = records_fetched


class SyncInProgress(AuctionSyncError):
    """Another run holds the lock for this source."""
    
    def __init__(self, message: str, source: str = None, owner: str = None):
        context = {}
        if source:
            context["source"] = source
        if owner:
            context["owner"] = owner
        super().__init__(message, context)
        self.source = source
        self.owner = owner
