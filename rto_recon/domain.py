"""Value objects shared by the cache, the matching engine and the API."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from rto_recon.errors import InvalidScanRequest

UNKNOWN_PRODUCT = "Unknown Product"


def parse_day(value: Any) -> date:
    """Accept a ``YYYY-MM-DD`` string (or a ``date``) and return a ``date``.

    Timestamps are rejected on purpose: a day boundary is the caller's local
    calendar day and must not shift with timezones.
    """
    if isinstance(value, datetime):
        raise InvalidScanRequest("expected a YYYY-MM-DD date, got a timestamp")
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value.strip()) != 10:
        raise InvalidScanRequest(f"invalid date {value!r}, expected YYYY-MM-DD")
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise InvalidScanRequest(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def normalize_barcode(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def build_index(items) -> dict[str, int]:
    index: dict[str, int] = {}
    for position, item in enumerate(items):
        key = normalize_barcode(item.get("barcode"))
        if key:
            # later duplicates win
            index[key] = position
    return index


class ItemStatus(str, enum.Enum):
    PENDING = "pending"
    MATCHED = "matched"


class ScanStatus(str, enum.Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    DUPLICATE = "duplicate"
    SCANNED_ON_OTHER_DATE = "scanned_on_other_date"


@dataclass(frozen=True)
class ReconciliationSummary:
    total_scanned: int = 0
    matched: int = 0
    unmatched: int = 0

    def to_dict(self) -> dict:
        return {
            "total_scanned": self.total_scanned,
            "matched": self.matched,
            "unmatched": self.unmatched,
        }


@dataclass(frozen=True)
class ProductSnapshot:
    name: str = UNKNOWN_PRODUCT
    quantity: int = 1
    price: float = 0.0

    @classmethod
    def from_item(cls, item: dict) -> "ProductSnapshot":
        quantity = item.get("quantity")
        price = item.get("price")
        return cls(
            name=item.get("product_name") or UNKNOWN_PRODUCT,
            quantity=1 if quantity is None else int(quantity),
            price=0.0 if price is None else float(price),
        )

    @classmethod
    def from_record(cls, record) -> "ProductSnapshot":
        return cls(
            name=record.product_name or UNKNOWN_PRODUCT,
            quantity=record.quantity,
            price=float(record.price or 0),
        )

    def to_dict(self) -> dict:
        return {"name": self.name, "quantity": self.quantity, "price": self.price}


@dataclass(frozen=True)
class ManifestSnapshot:
    id: int
    date: date
    items: tuple
    upload_meta: dict
    summary: ReconciliationSummary
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    index: dict = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "index", build_index(self.items))

    @classmethod
    def from_row(cls, row) -> "ManifestSnapshot":
        return cls(
            id=row.id,
            date=row.date,
            items=tuple(copy.deepcopy(row.items or [])),
            upload_meta=copy.deepcopy(row.upload_meta or {}),
            summary=ReconciliationSummary(
                total_scanned=row.summary_total_scanned,
                matched=row.summary_matched,
                unmatched=row.summary_unmatched,
            ),
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def lookup(self, barcode_key: str) -> Optional[int]:
        return self.index.get(barcode_key)

    def to_dict(self) -> dict:
        return {
            "manifest_id": self.id,
            "date": self.date.isoformat(),
            "items": [dict(item) for item in self.items],
            "upload_meta": dict(self.upload_meta),
            "summary": self.summary.to_dict(),
            "version": self.version,
        }


@dataclass(frozen=True)
class ScanOutcome:
    status: ScanStatus
    date: date
    barcode: str
    product: ProductSnapshot
    message: str
    timestamp: datetime
    cross_date: bool = False
    original_date: Optional[date] = None
    previous_date: Optional[date] = None

    @property
    def match(self) -> bool:
        return self.status == ScanStatus.MATCHED

    @property
    def rejected(self) -> bool:
        return self.status in (ScanStatus.DUPLICATE, ScanStatus.SCANNED_ON_OTHER_DATE)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "match": self.match,
            "date": self.date.isoformat(),
            "barcode": self.barcode,
            "product": self.product.to_dict(),
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "cross_date": self.cross_date,
            "original_date": self.original_date.isoformat() if self.original_date else None,
            "previous_date": self.previous_date.isoformat() if self.previous_date else None,
        }


@dataclass(frozen=True)
class AggregateSummary:
    total_records: int = 0
    scanned: int = 0
    matched: int = 0
    unmatched: int = 0
    computed_at: Optional[datetime] = None
    stale: bool = False

    def to_dict(self) -> dict:
        return {
            "total_records": self.total_records,
            "scanned": self.scanned,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
            "stale": self.stale,
        }


@dataclass(frozen=True)
class CourierCount:
    courier: str
    count: int

    def to_dict(self) -> dict:
        return {"courier": self.courier, "count": self.count}


@dataclass(frozen=True)
class ReconcilableScan:
    scan_id: int
    barcode: str
    scanned_date: date
    target_date: date
    product: ProductSnapshot
    scanned_at: datetime

    def to_dict(self) -> dict:
        return {
            "scan_id": self.scan_id,
            "barcode": self.barcode,
            "scanned_date": self.scanned_date.isoformat(),
            "target_date": self.target_date.isoformat(),
            "product": self.product.to_dict(),
            "scanned_at": self.scanned_at.isoformat(),
        }
