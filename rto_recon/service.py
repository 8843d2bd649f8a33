"""Entry point used by the API layer and by the manifest ingester."""

from __future__ import annotations

import calendar
import logging
import time
from datetime import date, datetime, timezone
from typing import Callable, Iterable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from rto_recon.cache import ManifestCache, TTLCache
from rto_recon.config import settings
from rto_recon.couriers import count_couriers
from rto_recon.db import session_scope
from rto_recon.domain import (
    AggregateSummary,
    CourierCount,
    ItemStatus,
    ManifestSnapshot,
    ReconcilableScan,
    ReconciliationSummary,
    ScanOutcome,
    build_index,
    normalize_barcode,
    parse_day,
)
from rto_recon.engine import MatchingEngine
from rto_recon.errors import InvalidScanRequest, PersistenceError
from rto_recon.models import ScanRecord
from rto_recon.schemas import ManifestItem, UploadMeta
from rto_recon.store import ManifestStore, ScanLedger
from rto_recon.summary import AggregateSummaryService, SummaryFallback

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def scan_record_to_dict(record: ScanRecord) -> dict:
    return {
        "scan_id": record.id,
        "date": record.date.isoformat(),
        "barcode": record.barcode,
        "match": record.matched,
        "product_name": record.product_name,
        "quantity": record.quantity,
        "price": float(record.price or 0),
        "message": record.message,
        "timestamp": record.scanned_at.isoformat(),
        "cross_date": record.cross_date,
        "original_date": record.original_date.isoformat() if record.original_date else None,
    }


class ReconciliationService:
    def __init__(
        self,
        session_factory: sessionmaker,
        ttl_seconds: Optional[float] = None,
        summary_fallback_path: Optional[str] = None,
        reject_cross_date_rescans: Optional[bool] = None,
        scan_history_limit: Optional[int] = None,
        clock: Callable[[], datetime] = _now,
        cache_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        ttl = settings.cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        if reject_cross_date_rescans is None:
            reject_cross_date_rescans = settings.reject_cross_date_rescans
        self.session_factory = session_factory
        self._clock = clock
        self.scan_history_limit = scan_history_limit or settings.scan_history_limit
        self.manifests = ManifestStore()
        self.ledger = ScanLedger()
        self.manifest_cache = ManifestCache(TTLCache(ttl, cache_clock), self._load_snapshot)
        self.report_cache = TTLCache(ttl, cache_clock)
        self.summary = AggregateSummaryService(
            session_factory,
            TTLCache(ttl, cache_clock),
            SummaryFallback(summary_fallback_path or settings.summary_fallback_path),
            manifests=self.manifests,
            ledger=self.ledger,
            clock=clock,
        )
        self.engine = MatchingEngine(
            session_factory,
            self.manifest_cache,
            self.report_cache,
            on_ledger_change=self.summary.invalidate,
            manifests=self.manifests,
            ledger=self.ledger,
            clock=clock,
            reject_cross_date_rescans=reject_cross_date_rescans,
        )

    def _load_snapshot(self, day: date) -> Optional[ManifestSnapshot]:
        with session_scope(self.session_factory) as session:
            return self.manifests.load_snapshot(session, day)

    # -- ingestion ----------------------------------------------------------

    def upsert_manifest(
        self,
        day,
        items: Iterable[Union[ManifestItem, dict]],
        upload_meta: Union[UploadMeta, dict, None] = None,
        auto_reconcile: bool = False,
    ) -> dict:
        """Create or replace the manifest of ``day``.

        Items that already have a successful scan keep their matched status,
        matches whose barcode vanished from the upload are turned back into
        unmatched scans, and the counters are rebuilt from the ledger.
        """
        day = parse_day(day)
        rows = [
            (item if isinstance(item, ManifestItem) else ManifestItem.model_validate(item)).model_dump(mode="json")
            for item in items
        ]
        if upload_meta is None:
            meta = UploadMeta()
        elif isinstance(upload_meta, UploadMeta):
            meta = upload_meta
        else:
            meta = UploadMeta.model_validate(upload_meta)
        index = build_index(rows)
        meta = meta.model_copy(
            update={
                "uploaded_at": meta.uploaded_at or self._clock(),
                "unique_barcode_count": meta.unique_barcode_count
                if meta.unique_barcode_count is not None
                else len(index),
                "item_count": len(rows),
            }
        )

        with self.engine.locks.hold(day):
            try:
                with session_scope(self.session_factory) as session:
                    matched = {
                        record.barcode_key: record
                        for record in self.ledger.matched_for_date(session, day)
                    }
                    for row in rows:
                        record = matched.get(normalize_barcode(row["barcode"]))
                        if record is not None:
                            row["status"] = ItemStatus.MATCHED.value
                            row["scanned_at"] = record.scanned_at.isoformat()
                        else:
                            row["status"] = ItemStatus.PENDING.value
                            row["scanned_at"] = None
                    self.manifests.upsert(session, day, rows, meta.model_dump(mode="json"))
                    invalidated = self.engine.invalidate_orphaned_matches(session, day, index)
                    summary = self.engine.recompute_in(session, day)
            except SQLAlchemyError as exc:
                logger.error("Manifest upload for %s rolled back: %s", day, exc)
                raise PersistenceError(f"could not store manifest for {day}") from exc
            self.engine.invalidate(day)

        logger.info("Stored manifest for %s: %d items, %d unique barcodes", day, len(rows), len(index))
        reconciled: list[ScanOutcome] = []
        if auto_reconcile:
            reconciled = self.engine.auto_reconcile(day)
        return {
            "date": day,
            "item_count": len(rows),
            "unique_barcode_count": meta.unique_barcode_count,
            "invalidated_scans": invalidated,
            "auto_reconciled": reconciled,
            "summary": summary if not reconciled else self.get_manifest(day).summary,
        }

    # -- reads --------------------------------------------------------------

    def get_manifest(self, day) -> ManifestSnapshot:
        return self.manifest_cache.get(parse_day(day))

    def get_summary(self, force_refresh: bool = False) -> AggregateSummary:
        return self.summary.get_summary(force_refresh=force_refresh)

    def ledger_counts(self, start=None, end=None) -> ReconciliationSummary:
        return self.summary.ledger_counts(
            parse_day(start) if start is not None else None,
            parse_day(end) if end is not None else None,
        )

    def courier_counts(self, day) -> list[CourierCount]:
        day = parse_day(day)
        return self.report_cache.get_or_load(
            ("courier_counts", day), lambda: count_couriers(self.get_manifest(day).items)
        )

    def scans_for_date(self, day, limit: Optional[int] = None) -> list[dict]:
        day = parse_day(day)
        limit = limit or self.scan_history_limit

        def load() -> list[dict]:
            try:
                with session_scope(self.session_factory) as session:
                    return [scan_record_to_dict(r) for r in self.ledger.for_date(session, day, limit)]
            except SQLAlchemyError as exc:
                raise PersistenceError(f"could not read scans for {day}") from exc

        return self.report_cache.get_or_load(("scans", day, limit), load)

    def report(self, day) -> dict:
        day = parse_day(day)

        def load() -> dict:
            snapshot = self.get_manifest(day)
            matched = [item for item in snapshot.items if item.get("status") == ItemStatus.MATCHED.value]
            pending = [item for item in snapshot.items if item.get("status") != ItemStatus.MATCHED.value]
            return {
                "date": day.isoformat(),
                "upload_meta": dict(snapshot.upload_meta),
                "summary": snapshot.summary.to_dict(),
                "matched_items": matched,
                "pending_items": pending,
            }

        return self.report_cache.get_or_load(("report", day), load)

    def calendar(self, year: int, month: int) -> list[dict]:
        if not 1 <= month <= 12:
            raise InvalidScanRequest(f"invalid month {month}")
        start = date(year, month, 1)
        end = date(year, month, calendar.monthrange(year, month)[1])
        try:
            with session_scope(self.session_factory) as session:
                rows = self.manifests.between(session, start, end)
                return [
                    {
                        "date": row.date.isoformat(),
                        "upload_meta": row.upload_meta or {},
                        "summary": self.manifests.summary_of(row).to_dict(),
                    }
                    for row in rows
                ]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not read calendar for {year}-{month:02d}") from exc

    def list_uploads(self) -> list[dict]:
        try:
            with session_scope(self.session_factory) as session:
                return [
                    {
                        "date": row.date.isoformat(),
                        "upload_meta": row.upload_meta or {},
                        "created_at": row.created_at.isoformat(),
                        "updated_at": row.updated_at.isoformat(),
                    }
                    for row in self.manifests.all(session)
                ]
        except SQLAlchemyError as exc:
            raise PersistenceError("could not list uploads") from exc

    # -- writes -------------------------------------------------------------

    def scan(self, day, barcode) -> ScanOutcome:
        return self.engine.scan(day, barcode)

    def delete_scan_record(self, day, barcode) -> int:
        return self.engine.delete_scan_record(day, barcode)

    def recompute_summary(self, day) -> ReconciliationSummary:
        return self.engine.recompute_summary(day)

    def reconcilable_scans(self, day) -> list[ReconcilableScan]:
        return self.engine.reconcilable_scans(day)

    def reconcile_unmatched(self, scan_id: int, target_day) -> ScanOutcome:
        return self.engine.reconcile_unmatched(scan_id, target_day)

    def delete_manifest(self, day) -> dict:
        day = parse_day(day)
        with self.engine.locks.hold(day):
            try:
                with session_scope(self.session_factory) as session:
                    scans = self.ledger.delete_for_date(session, day)
                    manifests = self.manifests.delete(session, day)
            except SQLAlchemyError as exc:
                logger.error("Deleting data for %s failed: %s", day, exc)
                raise PersistenceError(f"could not delete data for {day}") from exc
            self.engine.invalidate(day)
        logger.info("Deleted manifest for %s (%d manifest rows, %d scans)", day, manifests, scans)
        return {"date": day, "deleted_manifests": manifests, "deleted_scans": scans}

    def delete_all(self) -> dict:
        try:
            with session_scope(self.session_factory) as session:
                days = [row.date for row in self.manifests.all(session)]
        except SQLAlchemyError as exc:
            raise PersistenceError("could not list manifests") from exc

        with self.engine.locks.hold_many(days):
            try:
                with session_scope(self.session_factory) as session:
                    # manifests first: their row locks queue this behind in-flight scans
                    manifests = self.manifests.delete_all(session)
                    scans = self.ledger.delete_all(session)
            except SQLAlchemyError as exc:
                logger.error("Deleting all data failed: %s", exc)
                raise PersistenceError("could not delete all data") from exc
            self.manifest_cache.clear()
            self.report_cache.clear()
            self.summary.invalidate()
        logger.info("Deleted all data (%d manifest rows, %d scans)", manifests, scans)
        return {"deleted_manifests": manifests, "deleted_scans": scans}
