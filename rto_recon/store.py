"""Repositories for the manifest store and the scan ledger.

Both take the caller's ``Session`` so a single transaction can span them.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session

from rto_recon.domain import ManifestSnapshot, ReconciliationSummary
from rto_recon.models import Manifest, ScanRecord


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ManifestStore:
    def get(self, session: Session, day: date, for_update: bool = False) -> Optional[Manifest]:
        query = select(Manifest).where(Manifest.date == day)
        if for_update:
            query = query.with_for_update()
        return session.scalars(query).first()

    def load_snapshot(self, session: Session, day: date) -> Optional[ManifestSnapshot]:
        row = self.get(session, day)
        return ManifestSnapshot.from_row(row) if row else None

    def upsert(self, session: Session, day: date, items: list[dict], upload_meta: dict) -> Manifest:
        """Insert the manifest for ``day`` or replace its items and upload metadata.

        The summary counters are left alone; they are corrected from the ledger
        by the caller.
        """
        row = self.get(session, day, for_update=True)
        now = _now()
        if row is None:
            row = Manifest(
                date=day,
                items=items,
                upload_meta=upload_meta,
                summary_total_scanned=0,
                summary_matched=0,
                summary_unmatched=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
        else:
            row.items = items
            row.upload_meta = upload_meta
            row.updated_at = now
        session.flush()
        return row

    def save_items(self, row: Manifest, items: list[dict]) -> None:
        # assign a new list so the JSON column is flagged dirty
        row.items = items
        row.updated_at = _now()

    def apply_summary(self, row: Manifest, summary: ReconciliationSummary) -> None:
        row.summary_total_scanned = summary.total_scanned
        row.summary_matched = summary.matched
        row.summary_unmatched = summary.unmatched
        row.updated_at = _now()

    def summary_of(self, row: Manifest) -> ReconciliationSummary:
        return ReconciliationSummary(
            total_scanned=row.summary_total_scanned,
            matched=row.summary_matched,
            unmatched=row.summary_unmatched,
        )

    def others(self, session: Session, day: date) -> list[Manifest]:
        query = select(Manifest).where(Manifest.date != day).order_by(Manifest.date)
        return list(session.scalars(query))

    def between(self, session: Session, start: date, end: date) -> list[Manifest]:
        query = (
            select(Manifest)
            .where(Manifest.date >= start, Manifest.date <= end)
            .order_by(Manifest.date)
        )
        return list(session.scalars(query))

    def all(self, session: Session) -> list[Manifest]:
        return list(session.scalars(select(Manifest).order_by(Manifest.date.desc())))

    def upload_metas(self, session: Session) -> list[dict]:
        return [meta or {} for meta in session.scalars(select(Manifest.upload_meta))]

    def delete(self, session: Session, day: date) -> int:
        return session.execute(delete(Manifest).where(Manifest.date == day)).rowcount

    def delete_all(self, session: Session) -> int:
        return session.execute(delete(Manifest)).rowcount


class ScanLedger:
    def find(self, session: Session, day: date, barcode_key: str) -> Optional[ScanRecord]:
        """Return the record for ``(day, barcode_key)``, preferring a matched one."""
        query = (
            select(ScanRecord)
            .where(ScanRecord.date == day, ScanRecord.barcode_key == barcode_key)
            .order_by(ScanRecord.matched.desc(), ScanRecord.scanned_at.desc())
        )
        return session.scalars(query).first()

    def find_matched(self, session: Session, day: date, barcode_key: str) -> Optional[ScanRecord]:
        query = select(ScanRecord).where(
            ScanRecord.date == day,
            ScanRecord.barcode_key == barcode_key,
            ScanRecord.matched.is_(True),
        )
        return session.scalars(query).first()

    def find_on_other_dates(self, session: Session, day: date, barcode_key: str) -> Optional[ScanRecord]:
        query = (
            select(ScanRecord)
            .where(ScanRecord.date != day, ScanRecord.barcode_key == barcode_key)
            .order_by(ScanRecord.scanned_at.desc())
        )
        return session.scalars(query).first()

    def get(self, session: Session, scan_id: int) -> Optional[ScanRecord]:
        return session.get(ScanRecord, scan_id)

    def add(self, session: Session, record: ScanRecord) -> ScanRecord:
        session.add(record)
        session.flush()
        return record

    def remove(self, session: Session, record: ScanRecord) -> None:
        session.delete(record)
        session.flush()

    def delete_unmatched(self, session: Session, day: date, barcode_key: str) -> int:
        result = session.execute(
            delete(ScanRecord).where(
                ScanRecord.date == day,
                ScanRecord.barcode_key == barcode_key,
                ScanRecord.matched.is_(False),
            )
        )
        return result.rowcount

    def for_date(self, session: Session, day: date, limit: Optional[int] = None) -> list[ScanRecord]:
        query = (
            select(ScanRecord)
            .where(ScanRecord.date == day)
            .order_by(ScanRecord.scanned_at.desc(), ScanRecord.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        return list(session.scalars(query))

    def matched_for_date(self, session: Session, day: date) -> list[ScanRecord]:
        query = select(ScanRecord).where(ScanRecord.date == day, ScanRecord.matched.is_(True))
        return list(session.scalars(query))

    def unmatched(self, session: Session, day: Optional[date] = None) -> list[ScanRecord]:
        query = select(ScanRecord).where(ScanRecord.matched.is_(False))
        if day is not None:
            query = query.where(ScanRecord.date == day)
        return list(session.scalars(query.order_by(ScanRecord.id)))

    def unmatch(self, session: Session, record_ids: list[int], message: str) -> int:
        if not record_ids:
            return 0
        result = session.execute(
            update(ScanRecord)
            .where(ScanRecord.id.in_(record_ids))
            .values(matched=False, message=message)
        )
        return result.rowcount

    def counts(
        self,
        session: Session,
        day: Optional[date] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> ReconciliationSummary:
        query = select(
            func.count(ScanRecord.id),
            func.coalesce(func.sum(case((ScanRecord.matched.is_(True), 1), else_=0)), 0),
        )
        if day is not None:
            query = query.where(ScanRecord.date == day)
        if start is not None:
            query = query.where(ScanRecord.date >= start)
        if end is not None:
            query = query.where(ScanRecord.date <= end)
        total, matched = session.execute(query).one()
        total = int(total or 0)
        matched = int(matched or 0)
        return ReconciliationSummary(total_scanned=total, matched=matched, unmatched=total - matched)

    def delete_for_date(self, session: Session, day: date) -> int:
        return session.execute(delete(ScanRecord).where(ScanRecord.date == day)).rowcount

    def delete_all(self, session: Session) -> int:
        return session.execute(delete(ScanRecord)).rowcount
