"""
Service endpoint tests: health, version and cache maintenance
"""
from fastapi.testclient import TestClient
from app.main import APP_VERSION, app


def test_health_endpoint_returns_200():
    """Test that /health returns HTTP 200"""
    with TestClient(app) as client:
        response = client.get("/health")
    assert response.status_code == 200


def test_health_endpoint_returns_ok_status():
    """Test that /health returns status: ok"""
    with TestClient(app) as client:
        data = client.get("/health").json()
    assert data["status"] == "ok"
    assert data["mode"] == "live"


def test_version_endpoint():
    with TestClient(app) as client:
        data = client.get("/version").json()
    assert data["version"] == APP_VERSION
    assert data["name"] == "MarketDesk"


def test_cache_stats_lists_resources():
    """Every resource cache is registered at startup"""
    with TestClient(app) as client:
        data = client.get("/cache/stats").json()
    for name in ("news", "calendar_feed", "calendar", "macro_data", "macro_desk", "day_overview", "reddit", "instruments"):
        assert name in data


def test_cache_clear_on_empty_cache():
    with TestClient(app) as client:
        response = client.post("/cache/clear")
    assert response.status_code == 200
    assert response.json() == {"cleared": 0}
