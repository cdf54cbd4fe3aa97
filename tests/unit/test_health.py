def test_healthz_endpoint(client):
    """Test basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "zapninja-orchestrator"}


def test_readyz_reports_broker_and_sessions(client):
    response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["broker"]["ok"] is True
    assert data["checks"]["database"] == {"ok": True, "configured": False}
    assert data["checks"]["sessions"]["count"] == 0
    assert data["checks"]["sessions"]["ports"]["free_ports"] == 10
    assert "timestamp" in data


def test_readyz_fails_when_broker_is_down(client, fake_broker):
    fake_broker.initialized = False

    response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["broker"]["ok"] is False


def test_startup_initializes_queues_and_shutdown_closes_them(
    service_container, fake_broker, monkeypatch
):
    from fastapi.testclient import TestClient

    from zapninja.config import settings
    from zapninja.main import create_app

    monkeypatch.setattr(settings, "DATABASE_URL", None)
    app = create_app(lambda: service_container)

    with TestClient(app):
        assert fake_broker.initialized is True
        assert all(queue.running for queue in service_container.orchestrator.queues.values())

    assert fake_broker.closed is True
    assert not any(queue.running for queue in service_container.orchestrator.queues.values())
