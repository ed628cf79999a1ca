"""Tests for the local alert adapter."""

from datetime import datetime, timezone

import pytest

from carecue.services.alerts import AlertAction, LocalAlertAdapter, parse_action
from carecue.services.offline_cache import ALERT_HANDLES_KEY

WHEN = datetime(2026, 3, 10, 20, 0, tzinfo=timezone.utc)
LATER = datetime(2026, 3, 11, 8, 0, tzinfo=timezone.utc)


def test_schedule_replaces_outstanding_alert(alerts: LocalAlertAdapter, backend):
    """Test at most one alert is outstanding per reminder."""
    first = alerts.schedule("1", WHEN, {"title": "Iron"})
    second = alerts.schedule("1", LATER, {"title": "Iron"})

    assert first.alert_id in backend.cancelled
    assert list(backend.scheduled) == [second.alert_id]
    assert alerts.outstanding("1") == second


def test_cancel_all(alerts: LocalAlertAdapter, backend):
    """Test cancelling removes the alert from the backend and the cache."""
    handle = alerts.schedule("1", WHEN, {})
    alerts.schedule("2", WHEN, {})
    alerts.cancel_all("1")

    assert handle.alert_id in backend.cancelled
    assert alerts.outstanding_ids() == {"2"}
    assert set(alerts.cache.get(ALERT_HANDLES_KEY)) == {"2"}


def test_fire_queues_event(alerts: LocalAlertAdapter, backend):
    """Test a fired alert is queued with the instant it was scheduled for."""
    handle = alerts.schedule("1", WHEN, {})
    backend.fire(handle.alert_id)

    event = alerts.events.get_nowait()
    assert event.reminder_id == "1"
    assert event.action == AlertAction.FIRED
    assert event.scheduled_for == WHEN
    assert alerts.outstanding("1") is None


def test_stale_fire_is_ignored(alerts: LocalAlertAdapter, backend):
    """Test an alert replaced after the backend queued it does not fire."""
    first = alerts.schedule("1", WHEN, {})
    _, _, on_fire = backend.scheduled[first.alert_id]
    alerts.schedule("1", LATER, {})

    on_fire()
    assert alerts.events.empty()
    assert alerts.outstanding("1") is not None


def test_restore_cancels_previous_session_alerts(cache, backend):
    """Test alerts left registered by a previous session are cancelled."""
    previous = LocalAlertAdapter(backend=backend, cache=cache)
    handle = previous.schedule("1", WHEN, {})

    restored = LocalAlertAdapter(backend=backend, cache=cache)
    assert restored.restore() == 1
    assert handle.alert_id in backend.cancelled
    assert cache.get(ALERT_HANDLES_KEY) == {}


def test_deliver_action_defaults_snooze(alerts: LocalAlertAdapter):
    """Test a snooze without minutes uses the default preset."""
    event = alerts.deliver_action("1", AlertAction.SNOOZE)
    assert event.snooze_minutes == 15
    assert alerts.events.get_nowait() == event


@pytest.mark.parametrize(
    "identifier,expected",
    [
        ("complete", (AlertAction.COMPLETE, None)),
        ("missed", (AlertAction.MISSED, None)),
        ("snooze", (AlertAction.SNOOZE, 15)),
        ("snooze30", (AlertAction.SNOOZE, 30)),
        ("snooze-60", (AlertAction.SNOOZE, 60)),
    ],
)
def test_parse_action(identifier, expected):
    """Test alert action identifiers."""
    assert parse_action(identifier) == expected


def test_parse_unknown_action():
    """Test unknown identifiers are rejected."""
    with pytest.raises(ValueError):
        parse_action("dance")


@pytest.mark.parametrize("identifier", ["snooze45", "snooze0", "snooze-120"])
def test_parse_snooze_outside_presets(identifier):
    """Test only the snooze lengths offered on the alert are accepted."""
    with pytest.raises(ValueError):
        parse_action(identifier)
