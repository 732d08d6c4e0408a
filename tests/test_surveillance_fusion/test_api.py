"""
Tests for the FastAPI application
"""

import pytest
from fastapi.testclient import TestClient

from surveillance_fusion import api
from surveillance_fusion.pipeline import SurveillanceEngine
from surveillance_fusion.sources import InMemorySourceAdapter


@pytest.fixture
def client(config, clock):
    records = [
        {"region": "US-CA", "disease": "flu", "week": "2025-W03", "value": 120.0, "confidence": 0.95},
        {"region": "US-CA", "disease": "flu", "week": "2025-W04", "value": 140.0, "confidence": 0.95},
    ]
    engine = SurveillanceEngine(
        config, [InMemorySourceAdapter("who", records)], clock=clock, sleep=lambda _: None
    )
    api.set_engine(engine)
    with TestClient(api.app) as test_client:
        yield test_client
    api.ENGINE_CACHE.clear()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["sources_registered"] == ["who"]


def test_aggregate_then_read_series(client):
    response = client.post("/aggregate", json={
        "sources": ["who"],
        "regions": ["US-CA"],
        "diseases": ["flu"],
        "timeframe": "2025-W03/2025-W04",
    })
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["US-CA"]["influenza"]["timeBucket"] == "2025-W04"
    assert body["sourcesSuccessful"] == 1

    series = client.get("/series/US-CA/flu")
    assert series.status_code == 200
    assert [e["mean"] for e in series.json()["series"]] == [120.0, 140.0]


def test_unknown_series_is_404(client):
    assert client.get("/series/US-NY/measles").status_code == 404


def test_unknown_fusion_method_is_400(client):
    response = client.post("/fuse", json={
        "sources": ["who"],
        "regions": ["US-CA"],
        "diseases": ["flu"],
        "timeframe": "2025-W03",
        "fusion_method": "majority_vote",
    })
    assert response.status_code == 400
    assert "majority_vote" in response.json()["detail"]


def test_bad_timeframe_is_400(client):
    response = client.post("/aggregate", json={
        "regions": ["US-CA"],
        "diseases": ["flu"],
        "timeframe": "2025-W04/2025-W01",
    })
    assert response.status_code == 400


def test_invalid_sensitivity_is_422(client):
    response = client.post("/detect-outbreaks", json={"sensitivity": "extreme"})
    assert response.status_code == 422


def test_detect_outbreaks_on_empty_store(client):
    response = client.post("/detect-outbreaks", json={"detection_methods": ["cusum", "ewma"]})
    assert response.status_code == 200
    body = response.json()
    assert body["alertsGenerated"] == 0
    assert body["monitoringRecommendations"] == ["Continue routine surveillance"]


def test_unknown_detection_method_is_400(client):
    response = client.post("/detect-outbreaks", json={"detection_methods": ["crystal_ball"]})
    assert response.status_code == 400
