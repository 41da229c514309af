"""
HTTP smoke tests for the upload endpoint and the workbench API router.
"""

import json
import uuid

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from core.storage import PreferenceStore, drop_session
from main import app
from server import api
from server.orchestrator import Workbench

CSV = b"Region,Segment,Sales,Profit\nWest,A,20,-5.5\nEast,A,10,3.0\nEast,B,15,1.0\n"


@pytest.fixture
def session(monkeypatch):
    monkeypatch.setattr(api, "_new_workbench", lambda: Workbench(prefs_store=PreferenceStore(None)))
    sid = uuid.uuid4().hex
    with TestClient(app) as client:
        client.headers.update({"X-Session-Id": sid})
        yield client
    drop_session(sid)


def upload(client, content=CSV, name="sales.csv"):
    return client.post("/upload", files={"file": (name, content, "text/csv")})


class TestUpload:
    """Tests for the upload and session endpoints."""

    def test_csv(self, session):
        """A CSV upload loads records and reports the field split."""
        resp = upload(session)
        assert resp.status_code == 200
        body = resp.json()
        assert body["rows"] == 3
        assert body["dimensions"] == ["Region", "Segment"]
        assert body["measures"] == ["Sales", "Profit"]

    def test_missing_session_header(self):
        """Requests without X-Session-Id are rejected."""
        with TestClient(app) as client:
            assert client.get("/api/state").status_code == 400

    def test_malformed_workspace(self, session):
        """A broken workspace file is a 400 naming the workspace."""
        resp = upload(session, b"{oops", "broken.datacanvas")
        assert resp.status_code == 400
        assert "workspace" in resp.json()["detail"].lower()

    def test_end_session(self, session):
        """Ending a session discards its data."""
        upload(session)
        assert session.delete("/session").json() == {"ok": True}
        assert session.get("/api/state").json()["recordCount"] == 0


def serve(monkeypatch, handler):
    monkeypatch.setattr(
        main, "_http_client", lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestLoadFromUrl:
    """Tests for loading a CSV from a URL."""

    def test_loads_csv(self, session, monkeypatch):
        """A fetched CSV is parsed and loaded under the URL's last path segment."""
        serve(monkeypatch, lambda request: httpx.Response(200, content=CSV))
        body = session.post("/api/data/url", json={"url": "https://example.com/data/sales.csv?v=2"}).json()
        assert body["file"] == "sales.csv"
        assert body["rows"] == 3
        assert body["measures"] == ["Sales", "Profit"]
        assert session.get("/api/state").json()["recordCount"] == 3

    def test_http_error_status(self, session, monkeypatch):
        """A non-2xx response is an input error carrying the status code."""
        serve(monkeypatch, lambda request: httpx.Response(404))
        resp = session.post("/api/data/url", json={"url": "https://example.com/missing.csv"})
        assert resp.status_code == 400
        assert "(404)" in resp.json()["detail"]

    def test_connection_failure(self, session, monkeypatch):
        """Transport failures are reported as 400 and leave the session empty."""
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        serve(monkeypatch, refuse)
        resp = session.post("/api/data/url", json={"url": "https://example.com/sales.csv"})
        assert resp.status_code == 400
        assert "connection refused" in resp.json()["detail"]
        assert session.get("/api/state").json()["recordCount"] == 0

    def test_blank_url(self, session):
        """An empty URL is rejected before any fetch."""
        resp = session.post("/api/data/url", json={"url": "  "})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Please enter a URL."


class TestWorkbenchRoutes:
    """Tests for the workbench API router."""

    def test_shelves_and_suggestions(self, session):
        """Shelf edits update the worksheet, chart type and suggestions."""
        upload(session)
        state = session.put("/api/shelves", json={
            "shelf": "columns", "fields": [{"name": "Region", "type": "dimension"}],
        }).json()
        state = session.put("/api/shelves", json={
            "shelf": "rows", "fields": [{"name": "Sales", "type": "measure"}],
        }).json()
        shelves = state["worksheets"][0]["shelves"]
        assert [f["name"] for f in shelves["columns"]] == ["Region"]
        assert state["worksheets"][0]["activeChartType"] == "bar"
        assert state["canUndo"] is True

        types = [s["type"] for s in session.get("/api/suggestions").json()["suggestions"]]
        assert types[:2] == ["table", "bar"]
        assert "pie" in types

    def test_sort_cycle(self, session):
        """Repeated sort requests cycle desc, asc, none."""
        upload(session)
        session.put("/api/shelves", json={"shelf": "rows", "fields": [{"name": "Sales", "type": "measure"}]})
        assert session.post("/api/sort", json={"name": "Sales"}).json()["sort"] == "desc"
        assert session.post("/api/sort", json={"name": "Sales"}).json()["sort"] == "asc"
        assert session.post("/api/sort", json={"name": "Sales"}).json()["sort"] is None

    def test_worksheets(self, session):
        """Worksheets can be added, renamed, activated and removed."""
        body = session.post("/api/worksheets").json()
        assert body["worksheet"]["name"] == "Sheet 2"
        assert body["state"]["activeWorksheetId"] == 2
        state = session.patch("/api/worksheets/2", json={"name": "Profit view"}).json()
        assert state["worksheets"][1]["name"] == "Profit view"
        assert session.post("/api/worksheets/9/activate").status_code == 404
        state = session.delete("/api/worksheets/2").json()
        assert [w["id"] for w in state["worksheets"]] == [1]

    def test_filters(self, session):
        """Filters open with all values and accept updates."""
        upload(session)
        body = session.post("/api/filters", json={"name": "Region"}).json()
        assert body["filter"]["uniqueValues"] == ["East", "West"]
        assert body["state"]["activeFilter"]["field"] == "Region"
        body = session.patch("/api/filters", json={"field": "Region", "values": ["East"]}).json()
        assert body["filter"]["values"] == ["East"]
        assert session.post("/api/filters/close").json()["activeFilter"] is None

    def test_field_errors(self, session):
        """Bad formulas and unknown fields are 400s."""
        upload(session)
        resp = session.post("/api/fields/calculated", json={"name": "Bad", "formula": "[Sales] * 2"})
        assert resp.status_code == 400
        resp = session.post("/api/fields/calculated", json={"name": "Margin", "formula": "SUM([Profit]) / SUM([Sales])"})
        assert resp.json()["field"]["isCalculated"] is True
        resp = session.post("/api/fields/convert", json={"name": "Nope"})
        assert resp.status_code == 400

    def test_analysis_param_errors(self, session):
        """Missing analysis parameters are 400s with the message."""
        upload(session)
        resp = session.post("/api/analysis", json={"testType": "correlation", "params": {"measure1": "Sales"}})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Please select two measures."

    def test_dashboard(self, session):
        """Dashboard items are added once and removed once."""
        body = session.post("/api/dashboard").json()
        assert body["item"]["worksheetId"] == 1
        assert body["state"]["viewMode"] == "dashboard"
        assert body["state"]["dashboardLayout"][0]["style"] == {"gridColumn": "1 / span 6", "gridRow": "1 / span 5"}
        assert session.post("/api/dashboard").status_code == 400
        assert session.delete("/api/dashboard/1").json()["dashboardLayout"] == []
        assert session.delete("/api/dashboard/1").status_code == 404

    def test_dashboard_gesture(self, session):
        """A drag gesture over HTTP moves the item by whole cells."""
        session.post("/api/dashboard")
        started = session.post("/api/dashboard/interaction", json={
            "worksheetId": 1, "kind": "drag", "x": 0, "y": 0, "gridWidth": 710,
        }).json()
        assert started == {"started": True}
        session.post("/api/dashboard/interaction/move", json={"x": 120, "y": 65})
        state = session.post("/api/dashboard/interaction/end").json()
        assert (state["dashboardLayout"][0]["x"], state["dashboardLayout"][0]["y"]) == (2, 1)

    def test_workspace_download_and_restore(self, session):
        """A downloaded workspace restores the same worksheets."""
        upload(session)
        session.post("/api/worksheets")
        resp = session.get("/api/workspace")
        assert "workspace.datacanvas" in resp.headers["content-disposition"]
        saved = resp.json()
        assert len(saved["worksheets"]) == 2

        session.post("/api/reset")
        state = session.post(
            "/api/workspace", files={"file": ("workspace.datacanvas", json.dumps(saved).encode(), "application/json")},
        ).json()
        assert [w["name"] for w in state["worksheets"]] == ["Sheet 1", "Sheet 2"]

    def test_exports_need_data(self, session):
        """Exports without chart data are 400s."""
        assert session.get("/api/export/csv").status_code == 400
        assert session.get("/api/export/chart").status_code == 400

    def test_preferences(self, session):
        """Preferences are read, updated and validated."""
        assert session.get("/api/preferences").json()["theme"] == "light"
        prefs = session.patch("/api/preferences", json={"activePalette": "forest", "theme": "dark"}).json()
        assert prefs["activePalette"] == "forest"
        assert prefs["theme"] == "dark"
        assert session.patch("/api/preferences", json={"activeNumberFormat": "roman"}).status_code == 400

    def test_undo(self, session):
        """Undo reverts the last edit and enables redo."""
        session.post("/api/worksheets")
        state = session.post("/api/undo").json()
        assert [w["id"] for w in state["worksheets"]] == [1]
        assert state["canRedo"] is True
