import json

from sqlalchemy.exc import OperationalError

from rto_recon.db import Base, build_engine, build_session_factory
from rto_recon.service import ReconciliationService
from rto_recon.summary import SummaryFallback

DAY = "2025-01-14"


def _make_service(tmp_path, **kwargs) -> ReconciliationService:
    engine = build_engine(f"sqlite:///{tmp_path / 'recon.db'}")
    Base.metadata.create_all(bind=engine)
    kwargs.setdefault("summary_fallback_path", str(tmp_path / "summary.json"))
    return ReconciliationService(build_session_factory(engine), **kwargs)


def _seed(service: ReconciliationService) -> None:
    service.upsert_manifest(DAY, [{"barcode": "WB1001"}, {"barcode": "WB1002"}, {"barcode": "wb1002"}])
    service.upsert_manifest("2025-01-15", [{"barcode": "WB2001"}])
    service.scan(DAY, "WB1001")
    service.scan(DAY, "WB9999")
    service.scan("2025-01-15", "WB2001")


def test_summary_counts_come_from_ledger(tmp_path) -> None:
    service = _make_service(tmp_path)
    _seed(service)

    summary = service.get_summary()
    assert summary.total_records == 3
    assert summary.scanned == 3
    assert summary.matched == 2
    assert summary.unmatched == 1
    assert summary.scanned == summary.matched + summary.unmatched
    assert summary.stale is False


def test_summary_follows_writes_without_force(tmp_path) -> None:
    service = _make_service(tmp_path, ttl_seconds=3600)
    _seed(service)
    assert service.get_summary().matched == 2

    service.scan(DAY, "WB1002")
    assert service.get_summary().matched == 3


def test_ledger_counts_for_date_range(tmp_path) -> None:
    service = _make_service(tmp_path)
    _seed(service)

    counts = service.ledger_counts(DAY, DAY)
    assert counts.to_dict() == {"total_scanned": 2, "matched": 1, "unmatched": 1}
    assert service.ledger_counts(start="2025-01-15").matched == 1


def test_failed_refresh_serves_last_known_value(tmp_path, monkeypatch) -> None:
    service = _make_service(tmp_path)
    _seed(service)
    good = service.get_summary()

    def broken():
        raise OperationalError("SELECT count(*)", {}, Exception("server closed the connection"))

    monkeypatch.setattr(service.summary, "compute", broken)
    fallback = service.get_summary(force_refresh=True)
    assert fallback.stale is True
    assert (fallback.scanned, fallback.matched, fallback.unmatched) == (good.scanned, good.matched, good.unmatched)


def test_fallback_file_survives_restart(tmp_path, monkeypatch) -> None:
    service = _make_service(tmp_path)
    _seed(service)
    service.get_summary()

    saved = json.loads((tmp_path / "summary.json").read_text(encoding="utf-8"))
    assert saved["matched"] == 2

    restarted = _make_service(tmp_path)

    def broken():
        raise OperationalError("SELECT count(*)", {}, Exception("server closed the connection"))

    monkeypatch.setattr(restarted.summary, "compute", broken)
    summary = restarted.get_summary()
    assert summary.stale is True
    assert summary.matched == 2
    assert summary.total_records == 3


def test_fallback_without_history_is_zero(tmp_path) -> None:
    fallback = SummaryFallback(tmp_path / "missing" / "summary.json")
    assert fallback.load() is None

    (tmp_path / "garbled.json").write_text("{not json", encoding="utf-8")
    assert SummaryFallback(tmp_path / "garbled.json").load() is None
