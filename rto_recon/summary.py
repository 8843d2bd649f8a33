"""Dashboard totals across every uploaded date.

Scan counts always come from the scan ledger, never from the per-date
counters on the manifest rows. A failed read degrades to the last value that
was computed successfully, which is also kept in a JSON file so a restarted
process still has something to show.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import tempfile
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from rto_recon.cache import Cache
from rto_recon.db import session_scope
from rto_recon.domain import AggregateSummary, ReconciliationSummary
from rto_recon.store import ManifestStore, ScanLedger

logger = logging.getLogger(__name__)

SUMMARY_KEY = ("aggregate_summary",)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SummaryFallback:
    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)

    def load(self) -> Optional[AggregateSummary]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable summary fallback %s: %s", self.path, exc)
            return None
        computed_at = data.get("computed_at")
        return AggregateSummary(
            total_records=int(data.get("total_records", 0)),
            scanned=int(data.get("scanned", 0)),
            matched=int(data.get("matched", 0)),
            unmatched=int(data.get("unmatched", 0)),
            computed_at=datetime.fromisoformat(computed_at) if computed_at else None,
        )

    def save(self, summary: AggregateSummary) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".summary-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(summary.to_dict(), handle)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise


class AggregateSummaryService:
    def __init__(
        self,
        session_factory: sessionmaker,
        cache: Cache,
        fallback: SummaryFallback,
        manifests: Optional[ManifestStore] = None,
        ledger: Optional[ScanLedger] = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._fallback = fallback
        self._manifests = manifests or ManifestStore()
        self._ledger = ledger or ScanLedger()
        self._clock = clock
        self._last_good: Optional[AggregateSummary] = None
        self._last_good_lock = threading.Lock()

    def get_summary(self, force_refresh: bool = False) -> AggregateSummary:
        if force_refresh:
            self._cache.invalidate(SUMMARY_KEY)
        try:
            return self._cache.get_or_load(SUMMARY_KEY, self._compute_and_record)
        except SQLAlchemyError as exc:
            logger.warning("Aggregate summary read failed, serving last known value: %s", exc)
            return self._last_known_good()

    def compute(self) -> AggregateSummary:
        with session_scope(self._session_factory) as session:
            total_records = sum(
                int(meta.get("unique_barcode_count") or 0)
                for meta in self._manifests.upload_metas(session)
            )
            counts = self._ledger.counts(session)
        return AggregateSummary(
            total_records=total_records,
            scanned=counts.total_scanned,
            matched=counts.matched,
            unmatched=counts.unmatched,
            computed_at=self._clock(),
        )

    def ledger_counts(self, start: Optional[date] = None, end: Optional[date] = None) -> ReconciliationSummary:
        with session_scope(self._session_factory) as session:
            return self._ledger.counts(session, start=start, end=end)

    def invalidate(self) -> None:
        self._cache.invalidate(SUMMARY_KEY)

    def _compute_and_record(self) -> AggregateSummary:
        summary = self.compute()
        with self._last_good_lock:
            self._last_good = summary
        try:
            self._fallback.save(summary)
        except OSError as exc:
            logger.warning("Could not persist summary fallback to %s: %s", self._fallback.path, exc)
        logger.info(
            "Aggregate summary: records=%d scanned=%d matched=%d unmatched=%d",
            summary.total_records,
            summary.scanned,
            summary.matched,
            summary.unmatched,
        )
        return summary

    def _last_known_good(self) -> AggregateSummary:
        with self._last_good_lock:
            last = self._last_good
        if last is None:
            last = self._fallback.load()
        if last is None:
            return AggregateSummary(stale=True)
        return dataclasses.replace(last, stale=True)
