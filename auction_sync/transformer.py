"""
Auction Inventory Sync - Record Transformer
Maps loosely-typed provider records into the canonical InventoryRecord schema.
"""

import hashlib
import json
import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .exceptions import TransformError
from .models import InventoryRecord, SourceTag, utcnow

logger = logging.getLogger(__name__)


UNKNOWN = "Unknown"
DEFAULT_YEAR = 2020
MIN_VALID_YEAR = 1900

KNOWN_CONDITIONS = {
    'excellent': 'excellent',
    'good': 'good',
    'fair': 'fair',
    'poor': 'poor',
    'salvage': 'salvage',
}
DEFAULT_CONDITION = 'good'

# Provider keys in priority order; the first present one is the external id
PROVIDER_KEY_FIELDS = ("id", "api_id", "external_id", "lot_number", "vin")


def _name_of(value: Any) -> Optional[str]:
    """Provider nests names as {"name": ...} but sometimes sends bare strings."""
    if isinstance(value, dict):
        value = value.get("name")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, dict):
        value = value.get("km")
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    # NaN and Infinity parse from provider JSON
    return number if math.isfinite(number) else default


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class RecordTransformer:
    """
    Transforms raw provider records for one source.
    
    Never raises on missing optional fields; every gap has an explicit
    default. Identifiers are derived only from record content and the
    source tag, so transforming the same record twice yields the same id.
    """
    
    def __init__(self, source: SourceTag):
        self.source = SourceTag(source)
    
    def transform(
        self,
        raw: Dict[str, Any],
        synced_at: Optional[datetime] = None,
    ) -> InventoryRecord:
        """
        Transform a single provider record.
        
        Args:
            raw: Provider record (nested lots/manufacturer shape or flat)
            synced_at: Timestamp to stamp; defaults to now
            
        Returns:
            InventoryRecord stamped with last_synced_at and source_api
        """
        if not isinstance(raw, dict):
            raise TransformError(f"Provider record is not an object: {type(raw).__name__}")
        
        lot = self._primary_lot(raw)
        
        make = _name_of(raw.get("manufacturer")) or _name_of(raw.get("make")) or _name_of(raw.get("brand")) or UNKNOWN
        model = _name_of(raw.get("model")) or UNKNOWN
        year = self._year(raw.get("year"))
        
        buy_now = _number(lot.get("buy_now", raw.get("buy_now")))
        current_bid = _number(lot.get("bid", raw.get("bid")))
        price = max(buy_now, current_bid, _number(raw.get("price")), 0)
        
        final_bid = lot.get("final_bid", raw.get("final_bid"))
        images = self._images(lot, raw)
        external_id = self._external_id(raw, lot)
        
        fields = {
            "id": self._stable_id(raw, external_id),
            "external_id": external_id or "",
            "source_api": self.source,
            "make": make,
            "model": model,
            "year": year,
            "title": _text(raw.get("title")) or f"{make} {model} {year}",
            "price": price,
            "mileage": _number(lot.get("odometer", raw.get("mileage"))),
            "vin": _text(raw.get("vin")),
            "color": _name_of(raw.get("color")),
            "fuel": _name_of(raw.get("fuel")),
            "transmission": _name_of(raw.get("transmission")),
            "condition": self._condition(lot.get("condition", raw.get("condition"))),
            "images": images,
            "lot_number": _text(lot.get("lot", raw.get("lot_number"))),
            "current_bid": current_bid,
            "buy_now_price": buy_now,
            "final_bid": _number(final_bid) if final_bid not in (None, "") else None,
            "sale_date": _text(lot.get("sale_date", raw.get("sale_date"))),
            "is_live": _name_of(lot.get("status")) == "sale",
            "is_active": True,
            "is_archived": False,
            "last_synced_at": synced_at or utcnow(),
        }
        
        try:
            return InventoryRecord(**fields)
        except ValidationError as e:
            raise TransformError(f"Record failed canonical validation: {e}", record_id=fields["id"]) from e
    
    def transform_many(
        self,
        raw_records: Iterable[Dict[str, Any]],
        synced_at: Optional[datetime] = None,
    ) -> List[InventoryRecord]:
        """Transform a batch with one shared timestamp."""
        stamp = synced_at or utcnow()
        return [self.transform(raw, stamp) for raw in raw_records]
    
    @staticmethod
    def _primary_lot(raw: Dict[str, Any]) -> Dict[str, Any]:
        lots = raw.get("lots")
        if isinstance(lots, list) and lots and isinstance(lots[0], dict):
            return lots[0]
        return {}
    
    @staticmethod
    def _year(value: Any) -> int:
        year = int(_number(value, DEFAULT_YEAR))
        return year if year > MIN_VALID_YEAR else DEFAULT_YEAR
    
    @staticmethod
    def _condition(value: Any) -> str:
        name = _name_of(value)
        return KNOWN_CONDITIONS.get(name.lower(), DEFAULT_CONDITION) if name else DEFAULT_CONDITION
    
    @staticmethod
    def _images(lot: Dict[str, Any], raw: Dict[str, Any]) -> List[str]:
        images = lot.get("images")
        if isinstance(images, dict):
            images = images.get("normal") or images.get("big")
        if images is None:
            images = raw.get("images")
        if not isinstance(images, list):
            return []
        return [str(url) for url in images if url]
    
    @staticmethod
    def _external_id(raw: Dict[str, Any], lot: Dict[str, Any]) -> Optional[str]:
        candidates = {
            "id": raw.get("id"),
            "api_id": raw.get("api_id"),
            "external_id": raw.get("external_id"),
            "lot_number": lot.get("lot", raw.get("lot_number")),
            "vin": raw.get("vin"),
        }
        for field in PROVIDER_KEY_FIELDS:
            key = _text(candidates[field])
            if key:
                return key
        return None

    def _stable_id(self, raw: Dict[str, Any], external_id: Optional[str]) -> str:
        natural = _text(raw.get("id"))
        if natural:
            return natural
        if external_id:
            return f"{self.source.value}-{external_id}"

        # Last resort: content hash, still independent of wall-clock time
        content = json.dumps(raw, sort_keys=True, default=str)
        digest = hashlib.sha1(f"{self.source.value}|{content}".encode()).hexdigest()[:16]
        return f"{self.source.value}-{digest}"


def transform_record(
    raw: Dict[str, Any],
    source: SourceTag,
    synced_at: Optional[datetime] = None,
) -> InventoryRecord:
    """Functional shortcut for RecordTransformer(source).transform(raw)."""
    return RecordTransformer(source).transform(raw, synced_at)


def transform_records(
    raw_records: Iterable[Dict[str, Any]],
    source: SourceTag,
    synced_at: Optional[datetime] = None,
) -> List[InventoryRecord]:
    """Transform a batch for `source`; every record shares one timestamp."""
    return RecordTransformer(source).transform_many(raw_records, synced_at)
