"""
Tests for the browser-facing pages: portal, viewer page and /static.
"""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from vidi_server import __version__
from vidi_server.api.main import app
from vidi_server.api.services import services


@pytest.fixture
def static_dir(fake_toolchain):
    path = fake_toolchain.root / "static"
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def client(fake_toolchain):
    services.reset()
    services.configure(fake_toolchain.config())
    with TestClient(app) as client:
        yield client
    services.reset()


class TestPortal:
    def test_portal_page(self, client, static_dir):
        (static_dir / "portal.html").write_text("<h1>Vidi portal</h1>", encoding="utf-8")
        resp = client.get("/")
        assert resp.status_code == 200
        assert "Vidi portal" in resp.text
        assert resp.headers["cache-control"].startswith("no-store")

    def test_portal_fallback_without_pages(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.json() == {
            "name": "Vidi Dashboard Server",
            "version": __version__,
            "status": "operational",
        }


class TestViewerPage:
    def test_viewer_page(self, client, static_dir):
        (static_dir / "dashboard.html").write_text("<div id='dashboard'></div>", encoding="utf-8")
        resp = client.get(f"/d/{uuid4()}")
        assert resp.status_code == 200
        assert "id='dashboard'" in resp.text

    def test_invalid_id(self, client, static_dir):
        (static_dir / "dashboard.html").write_text("<div></div>", encoding="utf-8")
        resp = client.get("/d/not-a-uuid")
        assert resp.status_code == 404
        assert "Dashboard not found" in resp.text

    def test_viewer_fallback_without_pages(self, client):
        dashboard_id = str(uuid4())
        body = client.get(f"/d/{dashboard_id}").json()
        assert body["renderer"] == f"/wasm/{dashboard_id}/vidi.js"
        assert body["stream"] == f"/ws/v1/dashboards/{dashboard_id}"


class TestStaticFiles:
    def test_serves_static_dir(self, client, static_dir):
        (static_dir / "dashboard.js").write_text("const API_BASE = '/api/v1';", encoding="utf-8")
        resp = client.get("/static/dashboard.js")
        assert resp.status_code == 200
        assert "API_BASE" in resp.text

    def test_missing_file(self, client, static_dir):
        assert client.get("/static/nope.js").status_code == 404

    def test_missing_directory(self, client):
        assert client.get("/static/dashboard.js").status_code == 404

