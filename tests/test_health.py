"""Tests for health check endpoints."""

from fastapi.testclient import TestClient

from carecue.errors import NetworkUnavailable


def test_health_check(client: TestClient):
    """Test basic health check."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_db_health_check(client: TestClient):
    """Test offline cache database health check."""
    response = client.get("/health/db")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "connected"}


def test_sync_health_check(client: TestClient, remote):
    """Test the sync state is reported, including degraded mode."""
    response = client.get("/health/sync")
    assert response.status_code == 200
    assert response.json()["state"] == "ready"

    remote.failures["list_reminders"] = NetworkUnavailable("offline")
    client.post("/api/v1/reminders/refresh")

    body = client.get("/health/sync").json()
    assert body["status"] == "degraded"
    assert body["last_error"] == "offline"
