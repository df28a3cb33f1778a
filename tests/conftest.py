"""
Auction Inventory Sync - Test Fixtures
Shared fixtures for pytest tests.
"""

import pytest
import tempfile
from pathlib import Path
from datetime import datetime, timezone

import httpx

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from auction_sync.database import InventoryDatabase
from auction_sync.models import InventoryRecord, SourceTag
from auction_sync.provider import AuctionsApiClient


NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

def raw_car(car_id: int, **overrides) -> dict:
    """Provider record in the nested export shape."""
    car = {
        "id": car_id,
        "api_id": f"A-{car_id}",
        "vin": f"KMHE341DBLA{car_id:06d}",
        "manufacturer": {"id": 1, "name": "Hyundai"},
        "model": {"id": 10, "name": "Sonata"},
        "year": 2019,
        "color": {"name": "white"},
        "fuel": {"name": "gasoline"},
        "transmission": {"name": "automatic"},
        "lots": [
            {
                "lot": f"L-{car_id}",
                "bid": 12000,
                "buy_now": 15000,
                "odometer": {"km": 45000},
                "images": {"normal": [f"https://img.test/{car_id}/1.jpg", f"https://img.test/{car_id}/2.jpg"]},
                "condition": {"name": "Excellent"},
                "status": {"name": "sale"},
                "sale_date": "2026-10-20",
            }
        ],
    }
    car.update(overrides)
    return car


@pytest.fixture
def sample_raw_car() -> dict:
    """Single raw provider record (nested shape)."""
    return raw_car(101)


@pytest.fixture
def sample_raw_flat() -> dict:
    """Raw record in the flat shape, without a provider id."""
    return {
        "lot_number": "LOT-77",
        "brand": "Kia",
        "model": "Sorento",
        "year": "2018",
        "price": "21000",
        "mileage": "88000",
    }


@pytest.fixture
def make_records():
    """Factory for InventoryRecord lists."""
    def _make(count: int, source=SourceTag.AUCTIONS_API, prefix: str = None, synced_at=NOW, **fields):
        prefix = prefix or source.value
        return [
            InventoryRecord(
                id=f"{prefix}-{i}",
                external_id=str(i),
                source_api=source,
                make=fields.get("make", "Hyundai"),
                model=fields.get("model", "Sonata"),
                year=2019,
                price=15000 + i,
                last_synced_at=synced_at,
            )
            for i in range(1, count + 1)
        ]
    return _make


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def temp_database():
    """Create a temporary SQLite database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    db = InventoryDatabase(db_path)
    yield db

    # Cleanup
    db.close()
    try:
        db_path.unlink()
    except OSError:
        pass


@pytest.fixture
def populated_database(temp_database, make_records):
    """Database with 5 merged auctions_api records synced at NOW."""
    db = temp_database
    db.stage_records(make_records(5), SourceTag.AUCTIONS_API.value)
    db.merge_staging(SourceTag.AUCTIONS_API.value)
    return db


# =============================================================================
# PROVIDER FIXTURES
# =============================================================================

class FakeProvider:
    """
    In-memory provider served through httpx.MockTransport.

    `pages` is a list of (records, scroll_id) tuples, or ready-made
    httpx.Response objects, returned in order by /cars; `failures` are
    responses returned before any page is served.
    """

    def __init__(self, pages=None, failures=None, brands=None, models=None):
        self.pages = list(pages or [])
        self.failures = list(failures or [])
        self.brands = brands or []
        self.models = models or {}
        self.requests = []
        self.sleeps = []

    @property
    def cars_calls(self) -> int:
        return sum(1 for r in self.requests if r.url.path == "/cars")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            return self.failures.pop(0)

        path = request.url.path
        if path == "/cars":
            page = self.pages.pop(0) if self.pages else ([], None)
            if isinstance(page, httpx.Response):
                return page
            records, cursor = page
            return httpx.Response(200, json={"data": records, "scroll_id": cursor})
        if path == "/brands":
            return httpx.Response(200, json={"data": self.brands})
        if path.startswith("/models/"):
            brand_id = int(path.rsplit("/", 1)[1])
            return httpx.Response(200, json={"data": self.models.get(brand_id, [])})
        return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture
def make_client():
    """Factory: AuctionsApiClient wired to a FakeProvider, with recorded sleeps."""
    clients = []

    def _make(provider: FakeProvider, **kwargs) -> AuctionsApiClient:
        http = httpx.Client(
            base_url="https://provider.test",
            transport=httpx.MockTransport(provider.handler),
        )
        kwargs.setdefault("page_delay", 0.5)
        client = AuctionsApiClient(
            api_key="test-key",
            client=http,
            sleep=provider.sleeps.append,
            **kwargs,
        )
        clients.append(http)
        return client

    yield _make

    for http in clients:
        http.close()
