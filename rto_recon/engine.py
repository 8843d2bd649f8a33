"""Barcode matching against the per-date manifest.

A scan is a check-then-act sequence (look for an earlier scan, then write the
new one) spread over several statements. It is closed three ways:

* an in-process lock per date, so scans of the same date run one at a time
  while other dates proceed in parallel;
* ``SELECT ... FOR UPDATE`` on the manifest row plus the row's version
  counter, which catches writers in other processes;
* the partial unique index on ``scan_record (date, barcode_key) WHERE
  matched``, which turns a second successful match into an IntegrityError
  that is reported back as a duplicate.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from rto_recon.cache import Cache, ManifestCache, date_keys
from rto_recon.db import session_scope
from rto_recon.domain import (
    ItemStatus,
    ManifestSnapshot,
    ProductSnapshot,
    ReconcilableScan,
    ReconciliationSummary,
    ScanOutcome,
    ScanStatus,
    build_index,
    normalize_barcode,
    parse_day,
)
from rto_recon.errors import (
    BarcodeNotInManifest,
    InvalidScanRequest,
    ManifestNotFound,
    PersistenceError,
    ScanRecordNotFound,
)
from rto_recon.locks import KeyedLocks
from rto_recon.models import Manifest, ScanRecord
from rto_recon.store import ManifestStore, ScanLedger

logger = logging.getLogger(__name__)

MSG_MATCHED = "Barcode matched in manifest"
MSG_NOT_FOUND = "Barcode not found in manifest"
MSG_DUPLICATE = "This barcode has already been scanned for this date"
MSG_ORPHANED = "Barcode not found in current upload data"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _origin_of(item: dict) -> Optional[date]:
    raw = item.get("origin_date")
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError:
        logger.warning("Ignoring unparseable origin date %r on %s", raw, item.get("barcode"))
        return None


class MatchingEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        manifest_cache: ManifestCache,
        report_cache: Cache,
        on_ledger_change: Optional[Callable[[], None]] = None,
        manifests: Optional[ManifestStore] = None,
        ledger: Optional[ScanLedger] = None,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], datetime] = _now,
        reject_cross_date_rescans: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._manifest_cache = manifest_cache
        self._report_cache = report_cache
        self._on_ledger_change = on_ledger_change
        self._manifests = manifests or ManifestStore()
        self._ledger = ledger or ScanLedger()
        self.locks = locks or KeyedLocks()
        self._clock = clock
        self.reject_cross_date_rescans = reject_cross_date_rescans

    # -- scanning ---------------------------------------------------------

    def scan(self, day, barcode) -> ScanOutcome:
        day = parse_day(day)
        barcode = "" if barcode is None else str(barcode).strip()
        key = normalize_barcode(barcode)
        if not key:
            raise InvalidScanRequest("barcode is required")

        snapshot = self._manifest_cache.get(day)
        with self.locks.hold(day):
            try:
                with session_scope(self._session_factory) as session:
                    outcome = self._apply_scan(session, day, barcode, key, snapshot)
            except IntegrityError as exc:
                logger.warning("Concurrent match detected for %s on %s", barcode, day)
                return self._duplicate_after_conflict(day, barcode, key, exc)
            except SQLAlchemyError as exc:
                logger.error("Scan of %s on %s rolled back: %s", barcode, day, exc)
                raise PersistenceError(f"scan of {barcode} on {day} failed") from exc
            if not outcome.rejected:
                self.invalidate(day)

        logger.info("Scan %s on %s -> %s", barcode, day, outcome.status.value)
        return outcome

    def _apply_scan(
        self,
        session: Session,
        day: date,
        barcode: str,
        key: str,
        snapshot: ManifestSnapshot,
    ) -> ScanOutcome:
        row = self._manifests.get(session, day, for_update=True)
        if row is None:
            self._manifest_cache.invalidate(day)
            raise ManifestNotFound(day)
        if row.version != snapshot.version:
            snapshot = ManifestSnapshot.from_row(row)

        existing = self._ledger.find(session, day, key)
        if existing is not None and existing.matched:
            return self._duplicate(day, barcode, existing)

        if self.reject_cross_date_rescans:
            earlier = self._ledger.find_on_other_dates(session, day, key)
            if earlier is not None:
                return ScanOutcome(
                    status=ScanStatus.SCANNED_ON_OTHER_DATE,
                    date=day,
                    barcode=barcode,
                    product=ProductSnapshot.from_record(earlier),
                    message=f"This barcode has already been scanned on {earlier.date.isoformat()}",
                    timestamp=earlier.scanned_at,
                    cross_date=True,
                    original_date=earlier.original_date,
                    previous_date=earlier.date,
                )

        summary = self._manifests.summary_of(row)
        if existing is not None:
            # a failed attempt may be retried; its counters go with it
            removed = self._ledger.delete_unmatched(session, day, key)
            summary = ReconciliationSummary(
                total_scanned=max(0, summary.total_scanned - removed),
                matched=summary.matched,
                unmatched=max(0, summary.unmatched - removed),
            )

        now = self._clock()
        position = snapshot.lookup(key)
        if position is not None:
            items = [dict(item) for item in row.items]
            item = items[position]
            origin = _origin_of(item)
            cross_date = origin is not None and origin != day
            item["status"] = ItemStatus.MATCHED.value
            item["scanned_at"] = now.isoformat()
            self._manifests.save_items(row, items)
            summary = ReconciliationSummary(
                total_scanned=summary.total_scanned + 1,
                matched=summary.matched + 1,
                unmatched=summary.unmatched,
            )
            product = ProductSnapshot.from_item(item)
            message = f"{MSG_MATCHED} (from {origin.isoformat()})" if cross_date else MSG_MATCHED
            original_date = origin if cross_date else None
            status = ScanStatus.MATCHED
        else:
            hint = self._locate_elsewhere(session, day, key)
            summary = ReconciliationSummary(
                total_scanned=summary.total_scanned + 1,
                matched=summary.matched,
                unmatched=summary.unmatched + 1,
            )
            if hint is not None:
                other_day, other_item = hint
                product = ProductSnapshot.from_item(other_item)
                message = f"Barcode belongs to date {other_day.isoformat()}. Please scan on the correct date."
                cross_date = True
                original_date = other_day
            else:
                product = ProductSnapshot()
                message = MSG_NOT_FOUND
                cross_date = False
                original_date = None
            status = ScanStatus.UNMATCHED

        self._manifests.apply_summary(row, summary)
        self._ledger.add(
            session,
            ScanRecord(
                date=day,
                barcode=barcode,
                barcode_key=key,
                matched=status == ScanStatus.MATCHED,
                product_name=product.name,
                quantity=product.quantity,
                price=product.price,
                message=message,
                scanned_at=now,
                cross_date=cross_date,
                original_date=original_date,
            ),
        )
        return ScanOutcome(
            status=status,
            date=day,
            barcode=barcode,
            product=product,
            message=message,
            timestamp=now,
            cross_date=cross_date,
            original_date=original_date,
        )

    def _duplicate(self, day: date, barcode: str, record: ScanRecord) -> ScanOutcome:
        return ScanOutcome(
            status=ScanStatus.DUPLICATE,
            date=day,
            barcode=barcode,
            product=ProductSnapshot.from_record(record),
            message=MSG_DUPLICATE,
            timestamp=record.scanned_at,
            cross_date=record.cross_date,
            original_date=record.original_date,
            previous_date=record.date,
        )

    def _duplicate_after_conflict(self, day: date, barcode: str, key: str, exc: IntegrityError) -> ScanOutcome:
        try:
            with session_scope(self._session_factory) as session:
                record = self._ledger.find_matched(session, day, key)
                if record is not None:
                    return self._duplicate(day, barcode, record)
        except SQLAlchemyError as read_exc:
            raise PersistenceError(f"scan of {barcode} on {day} failed") from read_exc
        raise PersistenceError(f"scan of {barcode} on {day} failed") from exc

    def _locate_elsewhere(self, session: Session, day: date, key: str) -> Optional[tuple[date, dict]]:
        for other in self._manifests.others(session, day):
            position = build_index(other.items or []).get(key)
            if position is not None:
                return other.date, other.items[position]
        return None

    # -- ledger maintenance -------------------------------------------------

    def delete_scan_record(self, day, barcode) -> int:
        """Remove the unmatched record for ``(day, barcode)`` and roll its counters back."""
        day = parse_day(day)
        key = normalize_barcode(barcode)
        if not key:
            raise InvalidScanRequest("barcode is required")
        with self.locks.hold(day):
            try:
                with session_scope(self._session_factory) as session:
                    removed = self._ledger.delete_unmatched(session, day, key)
                    if removed == 0:
                        raise ScanRecordNotFound(f"no unmatched scan of {barcode} on {day}")
                    row = self._manifests.get(session, day, for_update=True)
                    if row is not None:
                        summary = self._manifests.summary_of(row)
                        self._manifests.apply_summary(
                            row,
                            ReconciliationSummary(
                                total_scanned=max(0, summary.total_scanned - removed),
                                matched=summary.matched,
                                unmatched=max(0, summary.unmatched - removed),
                            ),
                        )
            except SQLAlchemyError as exc:
                logger.error("Deleting unmatched scan %s on %s failed: %s", barcode, day, exc)
                raise PersistenceError(f"could not delete scan of {barcode} on {day}") from exc
            self.invalidate(day)
        logger.info("Deleted %d unmatched scan(s) of %s on %s", removed, barcode, day)
        return removed

    def recompute_summary(self, day) -> ReconciliationSummary:
        day = parse_day(day)
        with self.locks.hold(day):
            try:
                with session_scope(self._session_factory) as session:
                    if self._manifests.get(session, day) is None:
                        raise ManifestNotFound(day)
                    summary = self.recompute_in(session, day)
            except SQLAlchemyError as exc:
                raise PersistenceError(f"could not recompute summary for {day}") from exc
            self.invalidate(day)
        return summary

    def recompute_in(self, session: Session, day: date) -> ReconciliationSummary:
        """Rebuild the counters of ``day`` from the ledger inside ``session``."""
        summary = self._ledger.counts(session, day=day)
        row = self._manifests.get(session, day, for_update=True)
        if row is not None and self._manifests.summary_of(row) != summary:
            logger.info("Summary for %s corrected from ledger: %s", day, summary)
            self._manifests.apply_summary(row, summary)
        return summary

    def invalidate_orphaned_matches(self, session: Session, day: date, snapshot_index: dict) -> int:
        orphaned = [
            record.id
            for record in self._ledger.matched_for_date(session, day)
            if record.barcode_key not in snapshot_index
        ]
        count = self._ledger.unmatch(session, orphaned, MSG_ORPHANED)
        if count:
            logger.info("Invalidated %d orphaned matched scan(s) on %s", count, day)
        return count

    # -- cross-date reconciliation -----------------------------------------

    def reconcilable_scans(self, day) -> list[ReconcilableScan]:
        day = parse_day(day)
        try:
            with session_scope(self._session_factory) as session:
                unmatched = self._ledger.unmatched(session, day)
                if not unmatched:
                    return []
                elsewhere: dict[str, tuple[date, dict]] = {}
                for other in self._manifests.others(session, day):
                    for item in other.items or []:
                        elsewhere.setdefault(normalize_barcode(item.get("barcode")), (other.date, item))
                results = []
                for record in unmatched:
                    found = elsewhere.get(record.barcode_key)
                    if found is None:
                        continue
                    target_day, item = found
                    results.append(
                        ReconcilableScan(
                            scan_id=record.id,
                            barcode=record.barcode,
                            scanned_date=record.date,
                            target_date=target_day,
                            product=ProductSnapshot.from_item(item),
                            scanned_at=record.scanned_at,
                        )
                    )
                return results
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not list reconcilable scans for {day}") from exc

    def reconcile_unmatched(self, scan_id: int, target_day) -> ScanOutcome:
        """Move an unmatched scan onto the manifest of ``target_day`` as a match."""
        target_day = parse_day(target_day)
        try:
            with session_scope(self._session_factory) as session:
                record = self._ledger.get(session, scan_id)
                scanned_day = record.date if record is not None and not record.matched else None
                barcode, key = (record.barcode, record.barcode_key) if record is not None else (None, None)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not load scan {scan_id}") from exc
        if scanned_day is None:
            raise ScanRecordNotFound(f"no unmatched scan with id {scan_id}")

        with self.locks.hold_many([scanned_day, target_day]):
            try:
                with session_scope(self._session_factory) as session:
                    outcome = self._reconcile(session, scan_id, target_day)
            except IntegrityError as exc:
                logger.warning("Concurrent match detected for %s on %s", barcode, target_day)
                return self._duplicate_after_conflict(target_day, barcode, key, exc)
            except SQLAlchemyError as exc:
                logger.error("Reconciling scan %s onto %s failed: %s", scan_id, target_day, exc)
                raise PersistenceError(f"could not reconcile scan {scan_id}") from exc
            if not outcome.rejected:
                self.invalidate(scanned_day, target_day)
        return outcome

    def _reconcile(self, session: Session, scan_id: int, target_day: date) -> ScanOutcome:
        record = self._ledger.get(session, scan_id)
        if record is None or record.matched:
            raise ScanRecordNotFound(f"no unmatched scan with id {scan_id}")
        target = self._manifests.get(session, target_day, for_update=True)
        if target is None:
            raise ManifestNotFound(target_day)
        items = [dict(item) for item in target.items or []]
        position = build_index(items).get(record.barcode_key)
        if position is None:
            raise BarcodeNotInManifest(f"{record.barcode} is not on the manifest for {target_day}")
        existing = self._ledger.find_matched(session, target_day, record.barcode_key)
        if existing is not None:
            return self._duplicate(target_day, record.barcode, existing)

        outcome = self._move_to_match(session, record, target, items, position)
        self._manifests.save_items(target, items)
        self.recompute_in(session, target_day)
        if outcome.original_date is not None:
            self.recompute_in(session, outcome.original_date)
        return outcome

    def _move_to_match(
        self,
        session: Session,
        record: ScanRecord,
        target: Manifest,
        items: list[dict],
        position: int,
        message: Optional[str] = None,
    ) -> ScanOutcome:
        item = items[position]
        item["status"] = ItemStatus.MATCHED.value
        item["scanned_at"] = self._clock().isoformat()
        scanned_day = record.date
        cross_date = scanned_day != target.date
        if message is None:
            message = f"Reconciled from {scanned_day.isoformat()}"
        product = ProductSnapshot.from_item(item)
        replacement = ScanRecord(
            date=target.date,
            barcode=record.barcode,
            barcode_key=record.barcode_key,
            matched=True,
            product_name=product.name,
            quantity=product.quantity,
            price=product.price,
            message=message,
            scanned_at=record.scanned_at,
            cross_date=cross_date,
            original_date=scanned_day if cross_date else None,
        )
        self._ledger.remove(session, record)
        self._ledger.add(session, replacement)
        return ScanOutcome(
            status=ScanStatus.MATCHED,
            date=target.date,
            barcode=record.barcode,
            product=product,
            message=message,
            timestamp=record.scanned_at,
            cross_date=cross_date,
            original_date=scanned_day if cross_date else None,
        )

    def auto_reconcile(self, day) -> list[ScanOutcome]:
        """Turn unmatched scans from any date into matches on a freshly uploaded ``day``."""
        day = parse_day(day)
        try:
            with session_scope(self._session_factory) as session:
                snapshot = self._manifests.load_snapshot(session, day)
                if snapshot is None:
                    raise ManifestNotFound(day)
                candidates = [
                    (record.id, record.date)
                    for record in self._ledger.unmatched(session)
                    if snapshot.lookup(record.barcode_key) is not None
                ]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not look up unmatched scans for {day}") from exc
        if not candidates:
            return []

        affected = {day} | {scanned_day for _, scanned_day in candidates}
        with self.locks.hold_many(affected):
            try:
                with session_scope(self._session_factory) as session:
                    outcomes = self._auto_reconcile(session, day, [scan_id for scan_id, _ in candidates])
                    for affected_day in affected:
                        self.recompute_in(session, affected_day)
            except SQLAlchemyError as exc:
                logger.error("Auto-reconciliation for %s rolled back: %s", day, exc)
                raise PersistenceError(f"auto-reconciliation for {day} failed") from exc
            if outcomes:
                self.invalidate(*affected)
        logger.info("Auto-reconciled %d unmatched scan(s) onto %s", len(outcomes), day)
        return outcomes

    def _auto_reconcile(self, session: Session, day: date, scan_ids: Iterable[int]) -> list[ScanOutcome]:
        target = self._manifests.get(session, day, for_update=True)
        if target is None:
            raise ManifestNotFound(day)
        items = [dict(item) for item in target.items or []]
        index = build_index(items)
        outcomes = []
        for scan_id in scan_ids:
            record = self._ledger.get(session, scan_id)
            if record is None or record.matched:
                continue
            position = index.get(record.barcode_key)
            if position is None or self._ledger.find_matched(session, day, record.barcode_key):
                continue
            message = (
                f"Auto-reconciled from {record.date.isoformat()}"
                if record.date != day
                else "Auto-reconciled (data uploaded after scan)"
            )
            outcomes.append(self._move_to_match(session, record, target, items, position, message))
        if outcomes:
            self._manifests.save_items(target, items)
        return outcomes

    # -- cache coherence ----------------------------------------------------

    def invalidate(self, *days: date) -> None:
        for day in days:
            self._manifest_cache.invalidate(day)
            self._report_cache.invalidate_where(date_keys(day))
        if self._on_ledger_change is not None:
            self._on_ledger_change()
