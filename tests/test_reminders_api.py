"""Tests for reminder endpoints."""

from datetime import datetime, timedelta

from conftest import NOW
from fastapi.testclient import TestClient

from carecue.errors import ServerError

IRON = {"label": "Iron", "kind": "medication", "cadence": {"times": ["08:00", "20:00"]}}


def parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def create(client: TestClient, payload: dict = IRON) -> dict:
    response = client.post("/api/v1/reminders/", json=payload)
    assert response.status_code == 201
    return response.json()


def test_root(client: TestClient):
    """Test the root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["name"] == "CareCue API"


def test_create_and_list_reminders(client: TestClient):
    """Test creating a reminder and seeing it listed."""
    data = create(client)
    assert not data["id"].startswith("tmp-")
    assert data["label"] == "Iron"
    assert data["cadence"]["times"] == ["08:00", "20:00"]

    response = client.get("/api/v1/reminders/")
    assert response.status_code == 200
    assert [r["id"] for r in response.json()] == [data["id"]]


def test_create_accepts_legacy_fields(client: TestClient):
    """Test older payloads with name/type/times at the top level."""
    data = create(client, {"name": "Water", "type": "water", "interval_minutes": 90})
    assert data["label"] == "Water"
    assert data["kind"] == "hydration"
    assert data["cadence"]["interval_minutes"] == 90


def test_create_invalid_cadence(client: TestClient):
    """Test a cadence that can never fire is rejected."""
    response = client.post(
        "/api/v1/reminders/",
        json={"label": "Iron", "cadence": {"frequency": "weekly", "times": ["08:00"]}},
    )
    assert response.status_code == 422
    assert response.json()["detail"]["kind"] == "ValidationError"


def test_create_missing_label(client: TestClient):
    """Test request validation of the body."""
    response = client.post("/api/v1/reminders/", json={"cadence": {"times": ["08:00"]}})
    assert response.status_code == 422


def test_update_reminder(client: TestClient):
    """Test updating a reminder's label."""
    data = create(client)
    response = client.put(f"/api/v1/reminders/{data['id']}", json={"label": "Iron 50mg"})
    assert response.status_code == 200
    assert response.json()["label"] == "Iron 50mg"


def test_update_reminder_not_found(client: TestClient):
    """Test updating a reminder that does not exist."""
    response = client.put("/api/v1/reminders/99999", json={"label": "Nope"})
    assert response.status_code == 404


def test_delete_reminder(client: TestClient):
    """Test deleting a reminder."""
    data = create(client)
    response = client.delete(f"/api/v1/reminders/{data['id']}")
    assert response.status_code == 204
    assert client.get("/api/v1/reminders/").json() == []


def test_failed_delete_offers_retry(client: TestClient, remote):
    """Test a server failure rolls back and returns a retry token."""
    data = create(client)
    remote.failures[f"delete_reminder:{data['id']}"] = ServerError("boom", status_code=500)

    response = client.delete(f"/api/v1/reminders/{data['id']}")
    assert response.status_code == 502
    token = response.json()["detail"]["retry_token"]
    assert [r["id"] for r in client.get("/api/v1/reminders/").json()] == [data["id"]]

    del remote.failures[f"delete_reminder:{data['id']}"]
    response = client.post(f"/api/v1/reminders/retry/{token}")
    assert response.status_code == 200
    assert client.get("/api/v1/reminders/").json() == []


def test_mark_taken_twice(client: TestClient):
    """Test the second taken within the dedup window is a 409."""
    data = create(client)

    first = client.post(f"/api/v1/reminders/{data['id']}/taken")
    assert first.status_code == 200
    assert parse_time(first.json()["occurrence"]["scheduled_time"]) == NOW - timedelta(hours=1)

    second = client.post(f"/api/v1/reminders/{data['id']}/taken")
    assert second.status_code == 409
    assert second.json()["detail"]["informational"] is True


def test_snooze_reminder(client: TestClient):
    """Test snoozing a reminder."""
    data = create(client)
    response = client.post(f"/api/v1/reminders/{data['id']}/snooze", json={"minutes": 30})
    assert response.status_code == 200
    snooze_until = response.json()["reminder"]["snooze_until"]
    assert parse_time(snooze_until) == NOW + timedelta(minutes=30)


def test_snooze_out_of_range(client: TestClient):
    """Test snooze minutes are bounded."""
    data = create(client)
    response = client.post(f"/api/v1/reminders/{data['id']}/snooze", json={"minutes": 500})
    assert response.status_code == 422


def test_mark_missed(client: TestClient):
    """Test reporting a missed dose."""
    data = create(client)
    response = client.post(f"/api/v1/reminders/{data['id']}/missed")
    assert response.status_code == 200
    body = response.json()
    assert body["reminder"]["missed_count"] == 1
    assert body["occurrence"]["status"] == "missed"


def test_next_due(client: TestClient):
    """Test the next alert time."""
    data = create(client)
    response = client.get(f"/api/v1/reminders/{data['id']}/next")
    assert response.status_code == 200
    assert parse_time(response.json()["next_due"]) == NOW + timedelta(hours=11)


def test_history(client: TestClient):
    """Test a reminder's history lists recorded occurrences."""
    data = create(client)
    client.post(f"/api/v1/reminders/{data['id']}/taken")

    response = client.get(f"/api/v1/reminders/{data['id']}/history")
    assert response.status_code == 200
    assert [o["status"] for o in response.json()] == ["completed"]

    assert client.get("/api/v1/reminders/99999/history").status_code == 404


def test_alert_actions(client: TestClient):
    """Test simulated alert actions."""
    data = create(client)

    response = client.post(f"/api/v1/reminders/{data['id']}/alerts/complete")
    assert response.status_code == 200
    assert response.json()["occurrence"]["status"] == "completed"

    response = client.post(f"/api/v1/reminders/{data['id']}/alerts/fired")
    assert response.status_code == 200

    response = client.post(f"/api/v1/reminders/{data['id']}/alerts/dance")
    assert response.status_code == 422


def test_export_requires_premium(client: TestClient, controller):
    """Test history export is gated on the subscription."""
    data = create(client)
    client.post(f"/api/v1/reminders/{data['id']}/taken")

    assert client.get("/api/v1/reminders/history/export").status_code == 403

    controller.premium = True
    response = client.get("/api/v1/reminders/history/export")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.strip().splitlines()
    assert lines[0] == "reminder_id,reminder,scheduled_time,status,recorded_time"
    assert ",Iron," in lines[1]


def test_refresh(client: TestClient, remote):
    """Test reloading picks up reminders added elsewhere."""
    remote.add("Zinc", cadence={"times": ["20:00"]})
    response = client.post("/api/v1/reminders/refresh")
    assert response.status_code == 200
    assert response.json()["state"] == "ready"
    assert response.json()["reminders"] == 1


def test_admin_stats(client: TestClient):
    """Test the stats endpoint."""
    create(client)
    response = client.get("/api/v1/admin/stats")
    assert response.status_code == 200
    body = response.json()
    assert body["sync_state"] == "ready"
    assert body["reminders"] == 1
