"""
HTTP API Tests.

Exercises the FastAPI routes in-process with TestClient. The export
service is swapped for one backed by the in-memory order source, so no
Oracle connection is needed.
"""

import io
import time

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

from conftest import InMemoryOrderDataSource
from order_export.api.endpoints import get_service
from order_export.core.metrics import ExportMetrics
from order_export.main import app
from order_export.services.export_service import ExportService
from order_export.services.worker_pool import ExportWorkerPool

XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@pytest.fixture
def build_client(tmp_path):
    services = []

    def factory(data_source, **overrides):
        options = dict(
            export_dir=str(tmp_path / "exports"),
            chunk_size=50,
            max_rows_per_sheet=100,
            sync_threshold=1000,
            metrics=ExportMetrics(),
        )
        options.update(overrides)
        service = ExportService(data_source, **options)
        services.append(service)
        app.dependency_overrides[get_service] = lambda: service
        return TestClient(app), service

    yield factory
    app.dependency_overrides.clear()
    for service in services:
        service.shutdown(wait=True)


@pytest.fixture
def client(build_client, data_source):
    client, _ = build_client(data_source)
    return client


def poll_until_finished(client, job_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/v1/orders/export/status/{job_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.02)
    raise AssertionError(f"Job {job_id} did not finish within {timeout}s")


def _workbook(content):
    return load_workbook(io.BytesIO(content))


class TestSyncExport:
    def test_small_export_streams_workbook(self, client):
        res = client.get("/api/v1/orders/export")

        assert res.status_code == 200
        assert res.headers["content-type"] == XLSX
        assert res.headers["content-disposition"].startswith("attachment; filename=orders_")
        workbook = _workbook(res.content)
        assert workbook.sheetnames == ["Orders", "Orders_2", "Orders_3"]

    def test_sync_route_ignores_threshold(self, build_client, data_source):
        client, service = build_client(data_source, sync_threshold=0)
        res = client.get("/api/v1/orders/export/sync")
        assert res.status_code == 200
        assert len(service.jobs) == 0

    def test_column_projection(self, client):
        res = client.get("/api/v1/orders/export/sync", params={"columns": "id,status"})
        assert res.status_code == 200
        sheet = _workbook(res.content).worksheets[0]
        assert [cell.value for cell in sheet[1]] == ["ID", "Status"]

    def test_status_filter(self, client, data_source):
        res = client.get("/api/v1/orders/export/sync", params={"status": "SHIPPED"})
        workbook = _workbook(res.content)
        rows = sum(sheet.max_row - 1 for sheet in workbook.worksheets)
        assert rows == sum(1 for o in data_source.orders if o.status == "SHIPPED")

    def test_unknown_column_is_bad_request(self, client):
        res = client.get("/api/v1/orders/export", params={"columns": "id,salary"})
        assert res.status_code == 400
        assert "salary" in res.json()["detail"]

    def test_inverted_date_range_rejected(self, client):
        res = client.get(
            "/api/v1/orders/export",
            params={"from_date": "2024-02-01T00:00:00", "to_date": "2024-01-01T00:00:00"},
        )
        assert res.status_code == 422

    def test_data_source_failure_is_server_error(self, build_client, orders):
        client, _ = build_client(InMemoryOrderDataSource(orders, fail_on_fetch=2))
        client = TestClient(app, raise_server_exceptions=False)
        res = client.get("/api/v1/orders/export/sync")
        assert res.status_code == 500


class TestAsyncExport:
    def test_async_flag_returns_job(self, client):
        res = client.get("/api/v1/orders/export", params={"async": "true"})

        assert res.status_code == 202
        body = res.json()
        assert body["status"] == "pending"
        assert body["total_rows"] == 250
        assert body["download_url"] is None

        final = poll_until_finished(client, body["job_id"])
        assert final["status"] == "completed"
        assert final["processed_rows"] == 250
        assert final["completed_at"] is not None
        assert final["download_url"] == f"/api/v1/orders/export/download/{body['job_id']}"

        download = client.get(final["download_url"])
        assert download.status_code == 200
        assert download.headers["content-type"] == XLSX
        assert _workbook(download.content).sheetnames == ["Orders", "Orders_2", "Orders_3"]

    def test_threshold_routes_to_async(self, build_client, data_source):
        client, _ = build_client(data_source, sync_threshold=100)
        res = client.get("/api/v1/orders/export")
        assert res.status_code == 202
        assert res.json()["total_rows"] == 250
        poll_until_finished(client, res.json()["job_id"])

    def test_post_async(self, client):
        res = client.post(
            "/api/v1/orders/export/async",
            json={"filter": {"status": "SHIPPED"}, "async": True},
        )
        assert res.status_code == 202
        assert res.json()["total_rows"] == 125
        final = poll_until_finished(client, res.json()["job_id"])
        assert final["status"] == "completed"

    def test_failed_job_reports_error_and_blocks_download(self, build_client, orders):
        client, _ = build_client(InMemoryOrderDataSource(orders, fail_on_fetch=3))
        job_id = client.get("/api/v1/orders/export", params={"async": "true"}).json()["job_id"]

        final = poll_until_finished(client, job_id)
        assert final["status"] == "failed"
        assert final["error_message"]
        assert final["processed_rows"] == 100

        res = client.get(f"/api/v1/orders/export/download/{job_id}")
        assert res.status_code == 409
        assert res.json()["status"] == "failed"

    def test_saturated_pool_returns_503(self, build_client, orders):
        from test_export_service import GatedOrderDataSource

        source = GatedOrderDataSource(orders)
        client, _ = build_client(source, worker_pool=ExportWorkerPool(max_workers=1, queue_max=0))

        first = client.get("/api/v1/orders/export", params={"async": "true"})
        assert first.status_code == 202
        second = client.get("/api/v1/orders/export", params={"async": "true"})
        assert second.status_code == 503
        assert second.headers["retry-after"] == "5"

        source.gate.set()
        poll_until_finished(client, first.json()["job_id"])


class TestStatusAndDownload:
    def test_unknown_job_status(self, client):
        res = client.get("/api/v1/orders/export/status/does-not-exist")
        assert res.status_code == 404

    def test_unknown_job_download(self, client):
        res = client.get("/api/v1/orders/export/download/does-not-exist")
        assert res.status_code == 404

    def test_removed_file_is_gone(self, build_client, data_source):
        client, service = build_client(data_source)
        job_id = client.get("/api/v1/orders/export", params={"async": "true"}).json()["job_id"]
        poll_until_finished(client, job_id)

        service.get_download_path(job_id).unlink()
        res = client.get(f"/api/v1/orders/export/download/{job_id}")
        assert res.status_code == 410


class TestOperational:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_metrics_exposition(self, client):
        res = client.get("/metrics")
        assert res.status_code == 200
        assert res.headers["content-type"].startswith("text/plain")

    def test_metrics_reflect_exports(self, client):
        client.get("/api/v1/orders/export/sync")
        body = client.get("/metrics").text
        assert 'export_rows_total{mode="sync"} 250.0' in body

    def test_metrics_include_pool_gauges(self, build_client, orders):
        class PooledSource(InMemoryOrderDataSource):
            def pool_stats(self):
                return {"busy": 1, "open": 2, "min": 2, "max": 10}

        client, _ = build_client(PooledSource(orders))
        body = client.get("/metrics").text
        assert 'export_db_pool_connections{state="busy"} 1.0' in body
        assert 'export_db_pool_connections{state="max"} 10.0' in body
