"""Local alert adapter.

Wraps whatever actually raises device-local alerts (an ``AlertBackend``) behind the
two operations the reconciliation controller needs: ``schedule`` and ``cancel_all``.
At most one alert is outstanding per reminder; scheduling again replaces it.

When an alert fires, or the user taps one of its actions, an ``AlertFired`` event
is put on ``events``. The controller drains that queue in a single loop, so events
for a reminder are handled in the order they arrived.
"""

import asyncio
import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from carecue.services.offline_cache import ALERT_HANDLES_KEY, OfflineCache

logger = logging.getLogger(__name__)

# Snooze buttons offered on a reminder alert
SNOOZE_PRESETS = (15, 30, 60)
DEFAULT_SNOOZE_MINUTES = 15


class AlertAction(str, Enum):
    """What happened to an alert."""

    FIRED = "fired"
    COMPLETE = "complete"
    SNOOZE = "snooze"
    MISSED = "missed"


@dataclass(frozen=True)
class AlertHandle:
    """An outstanding alert for a reminder."""

    reminder_id: str
    alert_id: str
    when: datetime


@dataclass(frozen=True)
class AlertFired:
    """An alert went off, possibly with a user action attached."""

    reminder_id: str
    action: AlertAction
    snooze_minutes: int | None = None
    scheduled_for: datetime | None = None
    fired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def parse_action(identifier: str) -> tuple[AlertAction, int | None]:
    """Parse an action identifier such as ``complete``, ``missed`` or ``snooze30``."""
    match = re.fullmatch(r"snooze[-_]?(\d+)?", identifier.strip().lower())
    if match:
        minutes = int(match.group(1)) if match.group(1) else DEFAULT_SNOOZE_MINUTES
        if minutes not in SNOOZE_PRESETS:
            raise ValueError(f"Unsupported snooze length: {minutes} minutes")
        return AlertAction.SNOOZE, minutes
    try:
        return AlertAction(identifier.strip().lower()), None
    except ValueError:
        raise ValueError(f"Unknown alert action: {identifier}") from None


class AlertBackend(Protocol):
    """Something that can raise a local alert at a point in time."""

    def schedule(
        self, alert_id: str, when: datetime, payload: dict[str, Any], on_fire: Callable[[], None]
    ) -> None: ...

    def cancel(self, alert_id: str) -> None: ...


class AsyncioAlertBackend:
    """In-process backend firing alerts from the running event loop's timers."""

    def __init__(self) -> None:
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def schedule(
        self, alert_id: str, when: datetime, payload: dict[str, Any], on_fire: Callable[[], None]
    ) -> None:
        loop = asyncio.get_running_loop()
        delay = max(0.0, (when - datetime.now(timezone.utc)).total_seconds())

        def fire() -> None:
            self._timers.pop(alert_id, None)
            on_fire()

        self._timers[alert_id] = loop.call_later(delay, fire)

    def cancel(self, alert_id: str) -> None:
        timer = self._timers.pop(alert_id, None)
        if timer is not None:
            timer.cancel()


class LocalAlertAdapter:
    """Idempotent per-reminder alert scheduling on top of an ``AlertBackend``."""

    def __init__(
        self,
        backend: AlertBackend | None = None,
        cache: OfflineCache | None = None,
    ) -> None:
        self.backend = backend or AsyncioAlertBackend()
        self.cache = cache
        self.events: asyncio.Queue[AlertFired] = asyncio.Queue()
        self._handles: dict[str, AlertHandle] = {}

    def schedule(self, reminder_id: str, when_utc: datetime, payload: dict[str, Any]) -> AlertHandle:
        """Schedule the alert for a reminder, replacing any outstanding one."""
        self._cancel(reminder_id)

        alert_id = f"{reminder_id}:{uuid.uuid4().hex[:12]}"
        handle = AlertHandle(reminder_id=reminder_id, alert_id=alert_id, when=when_utc)
        self.backend.schedule(
            alert_id, when_utc, payload, lambda: self._on_fire(reminder_id, alert_id)
        )
        self._handles[reminder_id] = handle
        self._persist()
        logger.debug(f"Scheduled alert for reminder {reminder_id} at {when_utc.isoformat()}")
        return handle

    def cancel_all(self, reminder_id: str) -> None:
        """Cancel every outstanding alert for a reminder. Synchronous."""
        if self._cancel(reminder_id):
            self._persist()
            logger.debug(f"Cancelled alerts for reminder {reminder_id}")

    def clear(self) -> None:
        """Cancel every outstanding alert."""
        for reminder_id in list(self._handles):
            self._cancel(reminder_id)
        self._persist()

    def outstanding(self, reminder_id: str) -> AlertHandle | None:
        return self._handles.get(reminder_id)

    def outstanding_ids(self) -> set[str]:
        return set(self._handles)

    def deliver_action(
        self, reminder_id: str, action: AlertAction, snooze_minutes: int | None = None
    ) -> AlertFired:
        """Queue a user action taken on a reminder's alert."""
        if action == AlertAction.SNOOZE and snooze_minutes is None:
            snooze_minutes = DEFAULT_SNOOZE_MINUTES
        event = AlertFired(reminder_id=reminder_id, action=action, snooze_minutes=snooze_minutes)
        self.events.put_nowait(event)
        return event

    def restore(self) -> int:
        """Cancel alerts a previous session left registered with the backend."""
        if self.cache is None:
            return 0
        stale = self.cache.get(ALERT_HANDLES_KEY, {}) or {}
        for entry in stale.values():
            alert_id = entry.get("alert_id") if isinstance(entry, dict) else None
            if alert_id:
                self.backend.cancel(alert_id)
        if stale:
            logger.info(f"Cancelled {len(stale)} alerts left over from a previous session")
        self._handles.clear()
        self._persist()
        return len(stale)

    def _cancel(self, reminder_id: str) -> bool:
        handle = self._handles.pop(reminder_id, None)
        if handle is None:
            return False
        self.backend.cancel(handle.alert_id)
        return True

    def _on_fire(self, reminder_id: str, alert_id: str) -> None:
        handle = self._handles.get(reminder_id)
        if handle is None or handle.alert_id != alert_id:
            # Replaced or cancelled after the backend queued it
            return
        del self._handles[reminder_id]
        self._persist()
        self.events.put_nowait(
            AlertFired(reminder_id=reminder_id, action=AlertAction.FIRED, scheduled_for=handle.when)
        )

    def _persist(self) -> None:
        if self.cache is None:
            return
        self.cache.put(
            ALERT_HANDLES_KEY,
            {
                rid: {"alert_id": h.alert_id, "when": h.when.isoformat()}
                for rid, h in self._handles.items()
            },
        )
