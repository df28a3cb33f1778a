"""
Auction Inventory Sync - Provider Client
Bounded HTTP calls against the auction data provider's scroll export API.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .exceptions import (
    ConfigurationError,
    InvalidConfiguration,
    NoActiveSession,
    ProviderError,
    SessionAlreadyOpen,
)
from .models import Brand, ScrollPage, ScrollSession, VehicleModel

logger = logging.getLogger(__name__)


class AuctionsApiClient:
    """
    Client for the provider's cursor-paginated bulk export.
    
    Features:
    - Scroll sessions passed around as explicit ScrollSession values
    - At most one open session per client instance
    - Typed ProviderError with classified reasons
    - Retry with exponential backoff for rate/size limits and server errors
    - Session always closed when fetch_all exits
    """
    
    MAX_SCROLL_TIME_MINUTES = 15
    MAX_LIMIT = 2000
    USER_AGENT = "AuctionInventorySync/1.0"
    
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.auctionsapi.com",
        scroll_time: int = 10,
        limit: int = 1000,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        page_delay: float = 0.5,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Validate configuration and build the HTTP client. No network call is made here."""
        if not api_key:
            raise ConfigurationError(
                "Provider API key is not configured", setting="provider_api_key"
            )
        if not 1 <= int(scroll_time) <= self.MAX_SCROLL_TIME_MINUTES:
            raise InvalidConfiguration(
                f"Scroll time must be between 1 and {self.MAX_SCROLL_TIME_MINUTES} minutes, got {scroll_time}",
                setting="scroll_time_minutes",
            )
        if not 1 <= int(limit) <= self.MAX_LIMIT:
            raise InvalidConfiguration(
                f"Limit must be between 1 and {self.MAX_LIMIT}, got {limit}",
                setting="scroll_limit",
            )
        if max_retries < 1:
            raise InvalidConfiguration("max_retries must be at least 1", setting="max_retries")
        
        self.api_key = api_key
        self.scroll_time = int(scroll_time)
        self.limit = int(limit)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.page_delay = page_delay
        self._sleep = sleep
        self._active: Optional[ScrollSession] = None
        
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Accept": "application/json",
                "User-Agent": self.USER_AGENT,
            },
        )
        logger.info(
            f"AuctionsApiClient initialized (scroll_time={self.scroll_time}min, limit={self.limit})"
        )
    
    # =========================================================================
    # SCROLL SESSION
    # =========================================================================
    
    @property
    def active_session(self) -> Optional[ScrollSession]:
        return self._active
    
    def has_active_session(self) -> bool:
        """Check if there's an open scroll session."""
        return self._active is not None
    
    def open_session(self) -> ScrollPage:
        """
        Start a new scroll session and return its first page.
        
        Raises:
            SessionAlreadyOpen: if the previous session was not closed
            ProviderError: on network failure or non-2xx response
        """
        if self._active is not None:
            raise SessionAlreadyOpen()
        
        payload = self._request("/cars", {
            "scroll_time": self.scroll_time,
            "limit": self.limit,
        })
        records, cursor = self._parse_page(payload)
        
        session = ScrollSession(
            cursor=cursor,
            ttl_minutes=self.scroll_time,
            limit=self.limit,
            pages_fetched=1,
            records_fetched=len(records),
        )
        self._active = session
        logger.debug(f"Scroll session opened: {len(records)} records, cursor={'yes' if cursor else 'none'}")
        return ScrollPage(records=records, session=session)
    
    def continue_session(self, session: ScrollSession) -> ScrollPage:
        """
        Fetch the next page for an open session.
        
        The session is closed before re-raising a provider failure, since
        the cursor cannot be trusted afterwards.
        """
        if self._active is None:
            raise NoActiveSession()
        if session.exhausted:
            raise NoActiveSession("Scroll session has no continuation cursor")
        
        try:
            payload = self._request("/cars", {"scroll_id": session.cursor})
        except ProviderError:
            self.close_session()
            raise
        records, cursor = self._parse_page(payload)
        
        next_session = session.model_copy(update={
            "cursor": cursor,
            "pages_fetched": session.pages_fetched + 1,
            "records_fetched": session.records_fetched + len(records),
        })
        self._active = next_session
        return ScrollPage(records=records, session=next_session)
    
    def close_session(self):
        """End the current scroll session. Safe to call when none is open."""
        if self._active is not None:
            logger.debug(
                f"Scroll session closed after {self._active.pages_fetched} pages, "
                f"{self._active.records_fetched} records"
            )
        self._active = None
    
    def fetch_all(self) -> List[Dict[str, Any]]:
        """
        Drive open -> continue* -> close and return every record.
        
        Not restartable: any failure aborts the whole fetch. The session is
        closed on success, failure and interruption alike.
        """
        all_records: List[Dict[str, Any]] = []
        
        # Raises SessionAlreadyOpen without touching a session opened elsewhere
        page = self.open_session()
        try:
            all_records.extend(page.records)
            logger.info(f"📡 Page 1: {len(page.records)} records")
            
            while not page.is_last:
                if self.page_delay:
                    self._sleep(self.page_delay)
                page = self.continue_session(page.session)
                all_records.extend(page.records)
                logger.info(
                    f"📡 Page {page.session.pages_fetched}: {len(page.records)} records "
                    f"({len(all_records)} total)"
                )
            
            return all_records
        finally:
            self.close_session()
    
    # =========================================================================
    # REFERENCE DATA
    # =========================================================================
    
    def get_brands(self) -> List[Brand]:
        """Get all brands."""
        payload = self._request("/brands")
        return [Brand(**item) for item in self._unwrap_list(payload, "brands")]
    
    def get_models(self, brand_id: int) -> List[VehicleModel]:
        """Get models for a specific brand."""
        payload = self._request(f"/models/{brand_id}")
        return [VehicleModel(**item) for item in self._unwrap_list(payload, "models")]
    
    # =========================================================================
    # HTTP
    # =========================================================================
    
    def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET with retry for retryable provider errors."""
        last_error = None
        
        for attempt in range(self.max_retries):
            try:
                return self._send(path, params or {})
            except ProviderError as e:
                last_error = e
                if not e.is_retryable:
                    logger.warning(f"⚠️ {e} (not retrying)")
                    raise
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.info(f"🔄 {e} - retrying in {delay}s (attempt {attempt + 2}/{self.max_retries})...")
                    self._sleep(delay)
        
        raise last_error
    
    def _send(self, path: str, params: Dict[str, Any]) -> Any:
        query = {"api_key": self.api_key, **params}
        try:
            response = self._client.get(path, params=query)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Request to {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderError(f"Network error calling {path}: {e}") from e
        
        if not response.is_success:
            message = f"HTTP {response.status_code}: {response.reason_phrase}"
            try:
                body = response.json()
                if isinstance(body, dict) and body.get("message"):
                    message = str(body["message"])
            except ValueError:
                pass
            raise ProviderError(message, status_code=response.status_code)
        
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                f"Provider returned invalid JSON for {path}", status_code=response.status_code
            ) from e
    
    @staticmethod
    def _parse_page(payload: Any) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        if not isinstance(payload, dict):
            raise ProviderError("Unexpected response shape: expected an object with 'data'")
        data = payload.get("data") or []
        if not isinstance(data, list):
            raise ProviderError("Unexpected response shape: 'data' is not a list")
        cursor = payload.get("scroll_id") or None
        return data, cursor
    
    @staticmethod
    def _unwrap_list(payload: Any, what: str) -> List[Dict[str, Any]]:
        if isinstance(payload, dict):
            payload = payload.get("data")
        if not isinstance(payload, list):
            raise ProviderError(f"Unexpected response shape for {what}")
        return payload
    
    def close(self):
        """Close HTTP client."""
        self.close_session()
        if self._owns_client:
            self._client.close()
    
    def __enter__(self):
        return self
    
    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
