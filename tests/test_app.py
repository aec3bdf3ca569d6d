"""Tests for the HTTP adapter, driven through FastAPI's TestClient."""

from fastapi.testclient import TestClient

from app import create_app
from pricing_engine.errors import ConfigurationError
from tests.helpers.fake_provider import FakeProvider, make_engine, make_record


def client_for(engine) -> TestClient:
    return TestClient(create_app(engine, start_scheduler=False))


def test_health_and_single_price():
    engine = make_engine([make_record("sv4-23", age_s=60, price=52.5)],
                         FakeProvider(prices={"base1-4": 300.0}))
    with client_for(engine) as client:
        health = client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["store"] == "memory"

        stored = client.get("/api/price/sv4-23", params={"priority": "speed"}).json()
        assert stored["state"] == "fresh"
        assert stored["source_tier"] == "store"
        assert stored["record"]["raw_price"] == 52.5
        assert stored["record"]["fetched_at_iso"]

        fetched = client.get("/api/price/base1-4").json()
        assert fetched["source_tier"] == "upstream"
        assert fetched["record"]["raw_price"] == 300.0


def test_invalid_priority_is_a_bad_request():
    with client_for(make_engine()) as client:
        r = client.get("/api/price/sv4-23", params={"priority": "turbo"})
        assert r.status_code == 400
        r = client.get("/api/prices", params={"keys": "a", "priority": "turbo"})
        assert r.status_code == 400


def test_bulk_prices_and_key_limit():
    with client_for(make_engine()) as client:
        body = client.get("/api/prices", params={"keys": "a, b,a", "priority": "balanced"}).json()
        assert body["keys"] == ["a", "b"]
        assert body["count"] == 2
        assert set(body["data"]) == {"a", "b"}

        too_many = ",".join(f"k{i}" for i in range(51))
        assert client.get("/api/prices", params={"keys": too_many}).status_code == 400
        assert client.get("/api/prices", params={"keys": " , "}).status_code == 400


def test_configuration_error_maps_to_503():
    engine = make_engine(provider=FakeProvider(error=ConfigurationError("credentials rejected")))
    with client_for(engine) as client:
        r = client.get("/api/price/sv4-23")
        assert r.status_code == 503
        assert "credentials rejected" in r.json()["detail"]


def test_admin_endpoints():
    engine = make_engine(cached=[make_record("a"), make_record("b")])
    with client_for(engine) as client:
        stats = client.get("/api/pricing/stats").json()
        assert stats["cache"]["size"] == 2
        assert "scheduler" in stats

        status = client.get("/api/pricing/scheduler").json()
        assert status["state"] == "idle"
        assert status["running"] is False

        assert client.delete("/api/pricing/cache/a").json()["invalidated"] is True
        assert client.delete("/api/pricing/cache/a").json()["invalidated"] is False
        assert client.delete("/api/pricing/cache").json()["cleared"] == 1
        assert len(engine.cache) == 0

        assert client.post("/api/pricing/sync").json()["triggered"] is True
