from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from rto_recon.db import Base, build_session_factory
from rto_recon.main import app, get_service
from rto_recon.service import ReconciliationService


def _make_client(tmp_path) -> TestClient:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    service = ReconciliationService(
        build_session_factory(engine),
        summary_fallback_path=str(tmp_path / "summary.json"),
    )

    app.dependency_overrides[get_service] = lambda: service
    return TestClient(app)


def _upload(client: TestClient, day: str, *barcodes: str, **extra):
    items = [
        {"barcode": barcode, "product_name": "Cotton Kurta", "quantity": 2, "price": 500, "courier": "Delhivery"}
        for barcode in barcodes
    ]
    return client.put(f"/api/v1/manifests/{day}", json={"items": items, **extra})


def test_upload_scan_and_summary_flow(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        upload_resp = _upload(client, "2025-01-14", "WB1001", upload_meta={"source_file_name": "jan14.xlsx"})
        assert upload_resp.status_code == 200
        assert upload_resp.json()["data"]["unique_barcode_count"] == 1

        scan_resp = client.post("/api/v1/scans", json={"date": "2025-01-14", "barcode": "WB1001"})
        assert scan_resp.status_code == 200
        scan_data = scan_resp.json()["data"]
        assert scan_data["status"] == "matched"
        assert scan_data["product"] == {"name": "Cotton Kurta", "quantity": 2, "price": 500.0}

        repeat_resp = client.post("/api/v1/scans", json={"date": "2025-01-14", "barcode": "WB1001"})
        assert repeat_resp.status_code == 200
        repeat = repeat_resp.json()
        assert repeat["data"]["status"] == "duplicate"
        assert repeat["data"]["previous_date"] == "2025-01-14"
        assert repeat["data"]["timestamp"][:19] == scan_data["timestamp"][:19]
        assert repeat["meta"]["warnings"]

        miss_resp = client.post("/api/v1/scans", json={"date": "2025-01-14", "barcode": "WB9999"})
        assert miss_resp.json()["data"]["status"] == "unmatched"

        manifest_resp = client.get("/api/v1/manifests/2025-01-14")
        assert manifest_resp.status_code == 200
        assert manifest_resp.json()["data"]["summary"] == {"total_scanned": 2, "matched": 1, "unmatched": 1}

        summary_resp = client.get("/api/v1/summary", params={"force": True})
        summary = summary_resp.json()["data"]
        assert summary["total_records"] == 1
        assert (summary["scanned"], summary["matched"], summary["unmatched"]) == (2, 1, 1)

        scans_resp = client.get("/api/v1/scans/2025-01-14")
        assert len(scans_resp.json()["data"]) == 2
    app.dependency_overrides.clear()


def test_errors_map_to_status_codes(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        missing_resp = client.post("/api/v1/scans", json={"date": "2025-01-20", "barcode": "WB1001"})
        assert missing_resp.status_code == 404

        bad_date_resp = client.post("/api/v1/scans", json={"date": "20-01-2025", "barcode": "WB1001"})
        assert bad_date_resp.status_code == 422
        assert bad_date_resp.json()["error"] == "InvalidScanRequest"

        _upload(client, "2025-01-20", "WB1001")
        blank_resp = client.post("/api/v1/scans", json={"date": "2025-01-20", "barcode": "  "})
        assert blank_resp.status_code == 422

        delete_resp = client.delete("/api/v1/scans/unmatched", params={"date": "2025-01-20", "barcode": "WB7777"})
        assert delete_resp.status_code == 404
    app.dependency_overrides.clear()


def test_delete_unmatched_scan_rolls_counters_back(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        _upload(client, "2025-01-14", "WB1001")
        client.post("/api/v1/scans", json={"date": "2025-01-14", "barcode": "WB5555"})

        delete_resp = client.delete("/api/v1/scans/unmatched", params={"date": "2025-01-14", "barcode": "WB5555"})
        assert delete_resp.status_code == 200
        assert delete_resp.json()["data"]["deleted"] == 1

        summary = client.get("/api/v1/manifests/2025-01-14").json()["data"]["summary"]
        assert summary == {"total_scanned": 0, "matched": 0, "unmatched": 0}
    app.dependency_overrides.clear()


def test_courier_counts_calendar_and_report(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        _upload(client, "2025-01-14", "WB1001", "WB1002")
        _upload(client, "2025-01-16", "WB3001")
        client.post("/api/v1/scans", json={"date": "2025-01-14", "barcode": "WB1002"})

        courier_resp = client.get("/api/v1/courier-counts/2025-01-14")
        assert courier_resp.json()["data"]["courier_counts"] == [{"courier": "Delhivery", "count": 2}]

        calendar_resp = client.get("/api/v1/calendar", params={"year": 2025, "month": 1})
        assert [entry["date"] for entry in calendar_resp.json()["data"]] == ["2025-01-14", "2025-01-16"]

        report = client.get("/api/v1/reports/2025-01-14").json()["data"]
        assert [item["barcode"] for item in report["matched_items"]] == ["WB1002"]
        assert [item["barcode"] for item in report["pending_items"]] == ["WB1001"]
    app.dependency_overrides.clear()


def test_reconcile_endpoint_moves_scan(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        _upload(client, "2025-01-14", "WB1001")
        _upload(client, "2025-01-13", "WB3003")
        client.post("/api/v1/scans", json={"date": "2025-01-14", "barcode": "WB3003"})

        candidates = client.get("/api/v1/scans/2025-01-14/reconcilable").json()["data"]
        assert len(candidates) == 1
        assert candidates[0]["target_date"] == "2025-01-13"

        reconcile_resp = client.post(
            "/api/v1/scans/reconcile",
            json={"scan_id": candidates[0]["scan_id"], "target_date": "2025-01-13"},
        )
        assert reconcile_resp.status_code == 200
        assert reconcile_resp.json()["data"]["message"] == "Reconciled from 2025-01-14"
    app.dependency_overrides.clear()


def test_delete_manifest_removes_scans(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        _upload(client, "2025-01-14", "WB1001")
        client.post("/api/v1/scans", json={"date": "2025-01-14", "barcode": "WB1001"})

        delete_resp = client.delete("/api/v1/manifests/2025-01-14")
        assert delete_resp.json()["data"] == {"date": "2025-01-14", "deleted_manifests": 1, "deleted_scans": 1}
        assert client.get("/api/v1/manifests/2025-01-14").status_code == 404

        summary = client.get("/api/v1/summary").json()["data"]
        assert summary["scanned"] == 0
    app.dependency_overrides.clear()


def test_delete_all_manifests_endpoint(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        _upload(client, "2025-01-14", "WB1001")
        _upload(client, "2025-01-15", "WB2001")
        client.post("/api/v1/scans", json={"date": "2025-01-14", "barcode": "WB1001"})
        assert client.get("/api/v1/courier-counts/2025-01-14").status_code == 200
        assert client.get("/api/v1/summary").json()["data"]["scanned"] == 1

        delete_resp = client.delete("/api/v1/manifests")
        assert delete_resp.status_code == 200
        assert delete_resp.json()["data"] == {"deleted_manifests": 2, "deleted_scans": 1}

        assert client.get("/api/v1/manifests/2025-01-14").status_code == 404
        assert client.get("/api/v1/courier-counts/2025-01-14").status_code == 404
        assert client.get("/api/v1/manifests").json()["data"] == []
        summary = client.get("/api/v1/summary").json()["data"]
        assert (summary["total_records"], summary["scanned"], summary["matched"]) == (0, 0, 0)
    app.dependency_overrides.clear()
