import pytest

from app.core import health as health_module


@pytest.fixture(autouse=True)
def _mock_env(monkeypatch):
    monkeypatch.setattr(health_module.settings, "environment", "test")
    yield


def test_health_live_returns_ok(client) -> None:
    response = client.get("/api/v1/health/live")
    assert response.status_code == 200
    payload = response.json()["data"]
    assert payload.get("status") == "ok"
    assert "timestamp" in payload


def test_health_ready_ok_with_memory_backends(client) -> None:
    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    payload = response.json()["data"]
    assert payload.get("status") == "ok"
    assert payload.get("ready") is True
    assert payload["checks"]["storage"] == {"status": "ok", "backend": "memory"}
    assert payload["checks"]["redis"]["status"] == "ok"


def test_health_ready_degraded(client, monkeypatch) -> None:
    async def bad_storage(service):
        return {"status": "error", "backend": "database", "error": "OperationalError"}

    monkeypatch.setattr(health_module, "_check_storage", bad_storage)

    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    payload = response.json()["data"]
    assert payload.get("status") == "degraded"
    assert payload.get("ready") is False
    assert payload["checks"]["storage"]["status"] == "error"


def test_health_ready_checks_redis_when_configured(client, monkeypatch) -> None:
    from conftest import FakeRedis

    redis = FakeRedis()
    redis.fail = True
    monkeypatch.setattr(health_module.settings, "rate_limit_backend", "redis")
    monkeypatch.setattr(health_module, "get_redis_client", lambda: redis)

    payload = client.get("/api/v1/health/ready").json()["data"]

    assert payload["ready"] is False
    assert payload["checks"]["redis"]["status"] == "error"
