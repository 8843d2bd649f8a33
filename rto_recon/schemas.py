from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from rto_recon.couriers import normalize_courier
from rto_recon.domain import ItemStatus


class ManifestItem(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "barcode": "WB1001",
                "product_name": "Cotton Kurta",
                "quantity": 2,
                "price": 500,
                "courier": "Delhivery Surface",
                "rts_date_raw": "14/01/2025",
            }
        }
    }
    barcode: str
    product_name: str = "Unknown Product"
    quantity: int = Field(default=1, ge=0)
    price: float = 0.0
    courier: Optional[str] = None
    status: ItemStatus = ItemStatus.PENDING
    rts_date_raw: Optional[str] = None
    origin_date: Optional[str] = None
    scanned_at: Optional[datetime] = None

    @field_validator("barcode", mode="before")
    @classmethod
    def _barcode_text(cls, value: Any) -> str:
        text = "" if value is None else str(value).strip()
        if not text:
            raise ValueError("barcode must not be empty")
        return text

    @field_validator("courier", mode="before")
    @classmethod
    def _courier_label(cls, value: Any) -> Optional[str]:
        return normalize_courier(value)

    @field_validator("rts_date_raw", "origin_date", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class UploadMeta(BaseModel):
    source_file_name: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    unique_barcode_count: Optional[int] = Field(default=None, ge=0)
    item_count: Optional[int] = Field(default=None, ge=0)


class ManifestUpload(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "items": [{"barcode": "WB1001", "product_name": "Cotton Kurta", "quantity": 2, "price": 500}],
                "upload_meta": {"source_file_name": "returns-2025-01-14.xlsx"},
                "auto_reconcile": False,
            }
        }
    }
    items: list[ManifestItem]
    upload_meta: UploadMeta = Field(default_factory=UploadMeta)
    auto_reconcile: bool = False


class ScanRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {"date": "2025-01-14", "barcode": "WB1001"}}}
    date: str
    barcode: str


class ReconcileRequest(BaseModel):
    scan_id: int
    target_date: str
