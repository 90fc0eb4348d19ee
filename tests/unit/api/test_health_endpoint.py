import pytest
from fastapi.testclient import TestClient

from usage_guard.shared.db.session import reset_db_runtime


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("THRESHOLD_SWEEP_ENABLED", "false")
    reset_db_runtime()
    from usage_guard.main import app

    with TestClient(app) as c:
        yield c
    reset_db_runtime()


def test_health_reports_database_and_monitor(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"]["status"] == "up"
    assert body["threshold_monitor"]["started"] is True
    assert body["threshold_monitor"]["sweep"]["running"] is False


def test_metrics_are_exposed(client):
    response = client.get("/metrics/")
    assert response.status_code == 200
    assert "usage_guard_threshold_sweep_duration_seconds" in response.text


def test_monitor_is_on_app_state(client):
    from usage_guard.modules.notifications.domain.monitor import ThresholdMonitor

    assert isinstance(client.app.state.threshold_monitor, ThresholdMonitor)
