# bulk_export/tests/test_router.py

import asyncio
import csv
import io
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from bulk_export.core.config import Settings
from bulk_export.exports.models import ProgressEvent, ProgressPhase
from bulk_export.exports.progress import ProgressBroadcaster
from bulk_export.exports.router import export_progress
from bulk_export.main import create_app


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'collections.db'}",
        export_page_size=2,
        export_channel_buffer=2,
    )


@pytest.fixture
def app(settings, sqlite_engine):
    return create_app(settings=settings, engine=sqlite_engine)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


class TestCountEndpoint:
    """GET /api/collections/{name}/count"""

    def test_count(self, client):
        response = client.get("/api/collections/products/count")
        assert response.status_code == 200
        assert response.json() == {"collection_name": "products", "row_count": 5}

    def test_missing_collection(self, client):
        response = client.get("/api/collections/missing/count")
        assert response.status_code == 404


class TestExportEndpoint:
    """GET /api/collections/{name}/export"""

    def test_json_download(self, client):
        response = client.get(
            "/api/collections/products/export",
            params={"outputFields": ["id", "name"], "filename": "products.json"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/json")
        assert response.headers["content-disposition"] == "attachment; filename=products.json"
        assert response.json() == [
            {"id": 1, "name": "a"},
            {"id": 2, "name": "b"},
            {"id": 3, "name": "c"},
            {"id": 7, "name": "d"},
            {"id": 9, "name": "e, f"},
        ]

    def test_csv_download_flattens_arrays(self, client):
        response = client.get(
            "/api/collections/labels/export",
            params={"outputFields": ["pk", "tag"], "filename": "labels.csv"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text == 'pk,tag\na,"[1,2]"\nb,[3]\no\'neil,[]\n'

    def test_key_field_left_out_when_not_requested(self, client):
        response = client.get(
            "/api/collections/products/export",
            params={"outputFields": ["name", "tags"], "filename": "products.csv"},
        )

        rows = list(csv.DictReader(io.StringIO(response.text)))
        assert [list(r) for r in rows] == [["name", "tags"]] * 5
        assert rows[0] == {"name": "a", "tags": '["x","y"]'}

    def test_filter_expression(self, client):
        response = client.get(
            "/api/collections/products/export",
            params={"outputFields": ["id"], "filename": "cheap.json", "expr": "price < 30"},
        )

        assert response.json() == [{"id": 1}, {"id": 2}, {"id": 3}]

    def test_missing_collection(self, client):
        response = client.get(
            "/api/collections/missing/export",
            params={"outputFields": ["id"], "filename": "x.json"},
        )
        assert response.status_code == 404

    def test_output_fields_required(self, client):
        response = client.get("/api/collections/products/export", params={"filename": "x.json"})
        assert response.status_code == 422

    def test_blank_output_fields_rejected(self, client):
        response = client.get(
            "/api/collections/products/export",
            params={"outputFields": [" "], "filename": "x.json"},
        )
        assert response.status_code == 422

    def test_filename_with_path_rejected(self, client):
        response = client.get(
            "/api/collections/products/export",
            params={"outputFields": ["id"], "filename": "../x.json"},
        )
        assert response.status_code == 422

    def test_bad_filter_truncates_download(self, client):
        response = client.get(
            "/api/collections/products/export",
            params={"outputFields": ["id"], "filename": "x.json", "expr": "nope >"},
        )

        # Headers are already sent when the count fails
        assert response.status_code == 200
        assert response.text == ""


class TestProgressWebsocket:
    """WS /api/collections/export/progress"""

    def test_receives_export_progress(self, client):
        with client.websocket_connect("/api/collections/export/progress?filename=products.json") as ws:
            response = client.get(
                "/api/collections/products/export",
                params={"outputFields": ["id"], "filename": "products.json"},
            )
            assert response.status_code == 200

            messages = [ws.receive_json() for _ in range(5)]

        assert [m["phase"] for m in messages] == ["started", "progress", "progress", "progress", "completed"]
        assert [m["rows_emitted"] for m in messages] == [0, 2, 4, 5, 5]
        assert all(m["filename"] == "products.json" and m["total_target"] == 5 for m in messages)


class _IdleWebSocket:
    """Client that never sends and hangs up when told to."""

    def __init__(self, broadcaster):
        self.app = SimpleNamespace(state=SimpleNamespace(progress=broadcaster))
        self.sent = []
        self.hang_up = asyncio.Event()

    async def accept(self):
        pass

    async def receive(self):
        await self.hang_up.wait()
        return {"type": "websocket.disconnect", "code": 1000}

    async def send_json(self, data):
        self.sent.append(data)


class TestProgressHandler:
    """Progress handler without a transport in between"""

    def test_disconnect_ends_subscription_with_no_events_due(self):
        broadcaster = ProgressBroadcaster()
        websocket = _IdleWebSocket(broadcaster)

        async def scenario():
            handler = asyncio.create_task(export_progress(websocket, filename="never.json"))
            await asyncio.sleep(0.01)
            assert broadcaster.subscriber_count == 1
            websocket.hang_up.set()
            await asyncio.wait_for(handler, timeout=1)

        asyncio.run(scenario())
        assert broadcaster.subscriber_count == 0
        assert websocket.sent == []

    def test_events_are_forwarded_until_disconnect(self):
        broadcaster = ProgressBroadcaster()
        websocket = _IdleWebSocket(broadcaster)

        async def scenario():
            handler = asyncio.create_task(export_progress(websocket, filename="a.json"))
            await asyncio.sleep(0.01)
            broadcaster.publish(ProgressEvent(ProgressPhase.STARTED, "a.json", 0, 3))
            broadcaster.publish(ProgressEvent(ProgressPhase.STARTED, "b.json", 0, 9))
            await asyncio.sleep(0.01)
            websocket.hang_up.set()
            await asyncio.wait_for(handler, timeout=1)

        asyncio.run(scenario())
        assert websocket.sent == [
            {"phase": "started", "filename": "a.json", "rows_emitted": 0, "total_target": 3}
        ]
