"""Offline cache: last-known reminders and occurrence history.

The cache is a plain key-value store of JSON blobs. The reminder list and the
occurrence history are each stored whole under their own key and overwritten
wholesale on every successful sync or persisted rollback.

Reads and writes use synchronous sessions and run on the caller's thread, so a
write has landed by the time the controller moves on (a rollback is on disk before
its error is reported). That is fine for the local SQLite file; a store reached over
the network would need these calls moved off the event loop, e.g. with
``loop.run_in_executor``, with the controller awaiting them.
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from carecue.database import SessionLocal
from carecue.models.cache_entry import CacheEntry
from carecue.schemas.occurrence import Occurrence
from carecue.schemas.reminder import Reminder

logger = logging.getLogger(__name__)

REMINDERS_KEY = "reminders"
HISTORY_KEY = "history"
ALERT_HANDLES_KEY = "alert_handles"


class OfflineCache:
    """Key-value store of JSON values backed by the ``cache_entries`` table."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self.session_factory = session_factory or SessionLocal

    def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value stored under ``key``."""
        with self.session_factory() as db:
            entry = db.get(CacheEntry, key)
            if entry is None:
                return default
            raw = entry.value

        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding corrupt cache entry '{key}': {e}")
            return default

    def put(self, key: str, value: Any) -> None:
        """Overwrite the value stored under ``key`` (last write wins)."""
        encoded = json.dumps(value)
        with self.session_factory() as db:
            entry = db.get(CacheEntry, key)
            if entry is None:
                db.add(CacheEntry(key=key, value=encoded))
            else:
                entry.value = encoded
                entry.updated_at = datetime.now(timezone.utc)
            db.commit()

    def delete(self, key: str) -> None:
        with self.session_factory() as db:
            entry = db.get(CacheEntry, key)
            if entry is not None:
                db.delete(entry)
                db.commit()

    def load_reminders(self) -> list[Reminder]:
        """Last-known reminder list; entries that no longer parse are skipped."""
        return _parse_all(self.get(REMINDERS_KEY, []), Reminder, REMINDERS_KEY)

    def save_reminders(self, reminders: list[Reminder]) -> None:
        self.put(REMINDERS_KEY, [r.model_dump(mode="json") for r in reminders])
        logger.debug(f"Cached {len(reminders)} reminders")

    def load_history(self) -> list[Occurrence]:
        """Last-known occurrence history; entries that no longer parse are skipped."""
        return _parse_all(self.get(HISTORY_KEY, []), Occurrence, HISTORY_KEY)

    def save_history(self, history: list[Occurrence]) -> None:
        self.put(HISTORY_KEY, [o.model_dump(mode="json") for o in history])
        logger.debug(f"Cached {len(history)} history entries")


def _parse_all(items: Any, model: type, key: str) -> list:
    if not isinstance(items, list):
        logger.warning(f"Cache entry '{key}' is not a list, ignoring it")
        return []

    parsed = []
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except PydanticValidationError as e:
            logger.warning(f"Skipping unreadable cached {key} entry: {e.error_count()} errors")
    return parsed
