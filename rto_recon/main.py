from __future__ import annotations

import logging
from datetime import date
from functools import lru_cache
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from rto_recon.config import settings
from rto_recon.db import Base, build_engine, build_session_factory
from rto_recon.domain import ManifestSnapshot
from rto_recon.errors import ReconciliationError
from rto_recon.schemas import ManifestUpload, ReconcileRequest, ScanRequest
from rto_recon.service import ReconciliationService

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="RTO Scan Reconciliation")


class Meta(BaseModel):
    request_id: str
    warnings: list[str]


class Envelope(BaseModel):
    data: Any
    meta: Meta


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


@lru_cache(maxsize=1)
def get_service() -> ReconciliationService:
    engine = build_engine()
    Base.metadata.create_all(bind=engine)
    return ReconciliationService(build_session_factory(engine))


@app.exception_handler(ReconciliationError)
def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def _manifest_data(snapshot: ManifestSnapshot) -> dict:
    data = snapshot.to_dict()
    data["created_at"] = snapshot.created_at.isoformat() if snapshot.created_at else None
    data["updated_at"] = snapshot.updated_at.isoformat() if snapshot.updated_at else None
    return data


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.put("/api/v1/manifests/{day}", response_model=Envelope, tags=["Manifests"])
def upsert_manifest(
    day: str,
    payload: ManifestUpload,
    service: ReconciliationService = Depends(get_service),
) -> dict:
    result = service.upsert_manifest(
        day,
        payload.items,
        payload.upload_meta,
        auto_reconcile=payload.auto_reconcile,
    )
    warnings = []
    if result["invalidated_scans"]:
        warnings.append(f"{result['invalidated_scans']} matched scan(s) no longer on the manifest")
    return {
        "data": {
            "date": result["date"].isoformat(),
            "item_count": result["item_count"],
            "unique_barcode_count": result["unique_barcode_count"],
            "invalidated_scans": result["invalidated_scans"],
            "auto_reconciled": [outcome.to_dict() for outcome in result["auto_reconciled"]],
            "summary": result["summary"].to_dict(),
        },
        "meta": _meta(warnings=warnings),
    }


@app.get("/api/v1/manifests/{day}", response_model=Envelope, tags=["Manifests"])
def get_manifest(day: str, service: ReconciliationService = Depends(get_service)) -> dict:
    return {"data": _manifest_data(service.get_manifest(day)), "meta": _meta()}


@app.get("/api/v1/manifests", response_model=Envelope, tags=["Manifests"])
def list_manifests(service: ReconciliationService = Depends(get_service)) -> dict:
    return {"data": service.list_uploads(), "meta": _meta()}


@app.delete("/api/v1/manifests/{day}", response_model=Envelope, tags=["Manifests"])
def delete_manifest(day: str, service: ReconciliationService = Depends(get_service)) -> dict:
    result = service.delete_manifest(day)
    result["date"] = result["date"].isoformat()
    return {"data": result, "meta": _meta()}


@app.delete("/api/v1/manifests", response_model=Envelope, tags=["Manifests"])
def delete_all_manifests(service: ReconciliationService = Depends(get_service)) -> dict:
    return {"data": service.delete_all(), "meta": _meta()}


@app.post("/api/v1/manifests/{day}/recompute-summary", response_model=Envelope, tags=["Manifests"])
def recompute_summary(day: str, service: ReconciliationService = Depends(get_service)) -> dict:
    return {"data": service.recompute_summary(day).to_dict(), "meta": _meta()}


@app.get("/api/v1/calendar", response_model=Envelope, tags=["Manifests"])
def get_calendar(
    year: Optional[int] = Query(default=None),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    service: ReconciliationService = Depends(get_service),
) -> dict:
    today = date.today()
    return {
        "data": service.calendar(year or today.year, month or today.month),
        "meta": _meta(),
    }


@app.post("/api/v1/scans", response_model=Envelope, tags=["Scans"])
def scan_barcode(payload: ScanRequest, service: ReconciliationService = Depends(get_service)) -> dict:
    outcome = service.scan(payload.date, payload.barcode)
    warnings = [outcome.message] if outcome.rejected else []
    return {"data": outcome.to_dict(), "meta": _meta(warnings=warnings)}


@app.get("/api/v1/scans/{day}", response_model=Envelope, tags=["Scans"])
def list_scans(
    day: str,
    limit: Optional[int] = Query(default=None, ge=1, le=5000),
    service: ReconciliationService = Depends(get_service),
) -> dict:
    return {"data": service.scans_for_date(day, limit), "meta": _meta()}


@app.delete("/api/v1/scans/unmatched", response_model=Envelope, tags=["Scans"])
def delete_unmatched_scan(
    day: str = Query(..., alias="date"),
    barcode: str = Query(...),
    service: ReconciliationService = Depends(get_service),
) -> dict:
    deleted = service.delete_scan_record(day, barcode)
    return {"data": {"date": day, "barcode": barcode, "deleted": deleted}, "meta": _meta()}


@app.get("/api/v1/scans/{day}/reconcilable", response_model=Envelope, tags=["Scans"])
def list_reconcilable_scans(day: str, service: ReconciliationService = Depends(get_service)) -> dict:
    return {"data": [scan.to_dict() for scan in service.reconcilable_scans(day)], "meta": _meta()}


@app.post("/api/v1/scans/reconcile", response_model=Envelope, tags=["Scans"])
def reconcile_scan(payload: ReconcileRequest, service: ReconciliationService = Depends(get_service)) -> dict:
    outcome = service.reconcile_unmatched(payload.scan_id, payload.target_date)
    return {"data": outcome.to_dict(), "meta": _meta()}


@app.get("/api/v1/summary", response_model=Envelope, tags=["Reports"])
def get_summary(
    force: bool = Query(default=False),
    service: ReconciliationService = Depends(get_service),
) -> dict:
    summary = service.get_summary(force_refresh=force)
    warnings = ["summary is served from the last successful computation"] if summary.stale else []
    return {"data": summary.to_dict(), "meta": _meta(warnings=warnings)}


@app.get("/api/v1/courier-counts/{day}", response_model=Envelope, tags=["Reports"])
def get_courier_counts(day: str, service: ReconciliationService = Depends(get_service)) -> dict:
    snapshot = service.get_manifest(day)
    counts = service.courier_counts(day)
    return {
        "data": {
            "date": snapshot.date.isoformat(),
            "total_items": len(snapshot.items),
            "courier_counts": [count.to_dict() for count in counts],
        },
        "meta": _meta(),
    }


@app.get("/api/v1/reports/{day}", response_model=Envelope, tags=["Reports"])
def get_report(day: str, service: ReconciliationService = Depends(get_service)) -> dict:
    return {"data": service.report(day), "meta": _meta()}
