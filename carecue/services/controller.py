"""Reconciliation controller.

The controller is the single owner of reminder state for a session. Every change to
the in-memory reminder list goes through it. It:

- loads reminders and their history from the remote service, falling back to the
  offline cache slice by slice when calls fail or time out;
- applies user mutations optimistically, confirms them against the server and rolls
  them back (persisting the rollback) when the server refuses;
- keeps the local alert schedule in line with confirmed reminder data;
- runs the missed-dose sweep and proposes cadence adjustments;
- drains fired-alert events from the alert adapter in a single loop.

Missed doses are only ever *proposed* by the client. Nothing is shown as missed
locally until the server has accepted the report.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from carecue.config import get_app_config, get_settings
from carecue.errors import (
    CareCueError,
    DuplicateOccurrence,
    NotFound,
    RequestTimedOut,
    ServerError,
    Unauthorized,
    ValidationError,
)
from carecue.schemas.occurrence import LOCAL_ID_PREFIX, Occurrence, OccurrenceStatus
from carecue.schemas.reminder import (
    TEMP_ID_PREFIX,
    Reminder,
    ReminderCreate,
    ReminderKind,
    ReminderUpdate,
)
from carecue.services import scheduling
from carecue.services.alerts import DEFAULT_SNOOZE_MINUTES, AlertAction, AlertFired, LocalAlertAdapter
from carecue.services.mutations import (
    Creating,
    Deleting,
    MutationResult,
    PendingMutation,
    Phase,
    Snoozing,
    Updating,
    apply_patch,
    reduce_reminders,
)
from carecue.services.offline_cache import OfflineCache
from carecue.services.remote import RemoteReminderService
from carecue.services.reports import adherence_summary
from carecue.services.sweep import MissedSweep

logger = logging.getLogger(__name__)

MAX_RETRY_TOKENS = 50
MIN_SNOOZE_MINUTES = 1
MAX_SNOOZE_MINUTES = 120


class SyncState(str, Enum):
    """Where the reminder list came from."""

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    DEGRADED = "degraded"


StateListener = Callable[["ReconciliationController"], None]
AlertListener = Callable[[AlertFired, Reminder], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _first_error(e: PydanticValidationError) -> str:
    error = e.errors()[0]
    location = ".".join(str(p) for p in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


def alert_payload(reminder: Reminder) -> dict[str, Any]:
    """Content shown on a reminder's local alert."""
    if reminder.kind == ReminderKind.HYDRATION:
        title, body = "Time to hydrate", "Time to hydrate, 200ml suggested."
    elif reminder.kind == ReminderKind.MEDICATION:
        title, body = f"Medication: {reminder.label}", f"Take {reminder.label}"
    else:
        title, body = reminder.label, reminder.note or reminder.label
    return {
        "reminder_id": reminder.id,
        "kind": reminder.kind.value,
        "title": title,
        "body": body,
    }


class ReconciliationController:
    """Owns reminders, history and pending mutations for one session."""

    def __init__(
        self,
        remote: RemoteReminderService,
        cache: OfflineCache,
        alerts: LocalAlertAdapter | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        adjustment_policy: scheduling.AdjustmentPolicy | None = None,
        premium: bool | None = None,
        policy: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        app_config = get_app_config()
        policy = {**app_config.policy, **(policy or {})}

        self.remote = remote
        self.cache = cache
        self.alerts = alerts or LocalAlertAdapter(cache=cache)
        self.clock = clock or _utcnow
        self.timeout = timeout or settings.request_timeout_seconds
        self.premium = settings.premium if premium is None else premium
        self.default_timezone = settings.default_timezone

        self.grace = timedelta(minutes=policy["grace_minutes"])
        self.dedup_window = timedelta(hours=policy["dedup_window_hours"])
        self.missed_lookback = timedelta(hours=policy["missed_lookback_hours"])
        self.history_days = app_config.history["premium_days" if self.premium else "free_days"]
        self.adjustment_policy = adjustment_policy or scheduling.AdaptiveCadencePolicy.from_config(
            policy
        )
        self.sweep = MissedSweep(self.sweep_missed, policy["sweep_interval_minutes"] * 60)

        self.state = SyncState.IDLE
        self.reminders: list[Reminder] = []
        self.history: list[Occurrence] = []
        self.pending: dict[str, PendingMutation] = {}
        self.last_error: CareCueError | None = None

        self._load_task: asyncio.Future | None = None
        self._event_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        # Doses with a taken or missed report on its way to the server
        self._inflight: dict[str, list[tuple[OccurrenceStatus, datetime]]] = {}
        self._retries: OrderedDict[str, Callable[[], Awaitable[MutationResult]]] = OrderedDict()
        self._listeners: list[StateListener] = []
        self._alert_listeners: list[AlertListener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> SyncState:
        """Begin the session: load, then keep alerts and the sweep running."""
        self.alerts.restore()
        if self._event_task is None:
            self._event_task = asyncio.create_task(self._process_events())
        state = await self.load_all()
        self.sweep.start()
        return state

    async def stop(self) -> None:
        """End the session. Outstanding alerts are cancelled with it."""
        await self.sweep.stop()
        tasks = [t for t in (self._event_task, self._load_task) if t is not None]
        tasks.extend(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._event_task = None
        self._load_task = None
        self.alerts.clear()
        self._set_state(SyncState.IDLE)

    async def wait_idle(self) -> None:
        """Wait for background work (sweeps, resyncs) spawned so far to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` after every state change. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def subscribe_alerts(self, listener: AlertListener) -> Callable[[], None]:
        """Call ``listener`` whenever an alert fires for an enabled reminder."""
        self._alert_listeners.append(listener)
        return lambda: self._alert_listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"State listener failed: {e}")

    def _set_state(self, state: SyncState) -> None:
        if state != self.state:
            logger.info(f"Reminder sync state {self.state.value} -> {state.value}")
            self.state = state
        self._notify()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, reminder_id: str) -> Reminder | None:
        return next((r for r in self.reminders if r.id == reminder_id), None)

    def history_for(self, reminder_id: str) -> list[Occurrence]:
        entries = [o for o in self.history if o.reminder_id == reminder_id]
        return sorted(entries, key=lambda o: o.scheduled_time, reverse=True)

    def visible_history(self) -> list[Occurrence]:
        """History of reminders that still exist, newest first."""
        ids = {r.id for r in self.reminders}
        entries = [o for o in self.history if o.reminder_id in ids]
        return sorted(entries, key=lambda o: o.scheduled_time, reverse=True)

    def next_due(self, reminder_id: str) -> datetime | None:
        reminder = self.get(reminder_id)
        if reminder is None:
            return None
        return scheduling.next_alert_time(reminder, self.clock())

    def upcoming(self, limit: int = 10) -> list[tuple[Reminder, datetime]]:
        now = self.clock()
        items = []
        for reminder in self.reminders:
            when = scheduling.next_alert_time(reminder, now)
            if when is not None:
                items.append((reminder, when))
        items.sort(key=lambda item: item[1])
        return items[:limit]

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_all(self) -> SyncState:
        """Load reminders and history. Concurrent callers share one in-flight load."""
        if self._load_task is None or self._load_task.done():
            self._load_task = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._load_task)

    async def _bounded(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise RequestTimedOut(f"Remote call exceeded {self.timeout}s") from None

    async def _fetch_history(self, reminder_ids: list[str]) -> tuple[list[Occurrence], set[str]]:
        """Fetch each reminder's history in parallel; returns (entries, failed ids)."""
        if not reminder_ids:
            return [], set()

        results = await asyncio.gather(
            *(self._bounded(self.remote.list_history(rid)) for rid in reminder_ids),
            return_exceptions=True,
        )
        entries: list[Occurrence] = []
        failed: set[str] = set()
        for reminder_id, result in zip(reminder_ids, results):
            if isinstance(result, BaseException):
                logger.warning(f"History for reminder {reminder_id} unavailable: {result}")
                failed.add(reminder_id)
            else:
                entries.extend(result)
        return entries, failed

    async def _load(self) -> SyncState:
        self._set_state(SyncState.LOADING)
        cached_reminders = self.cache.load_reminders()
        cached_history = self.cache.load_history()
        known_ids = [r.id for r in (self.reminders or cached_reminders) if not r.is_local]

        reminders_outcome, history_outcome = await asyncio.gather(
            self._bounded(self.remote.list_reminders()),
            self._fetch_history(known_ids),
            return_exceptions=True,
        )

        if isinstance(history_outcome, BaseException):
            logger.error(f"History fetch failed unexpectedly: {history_outcome}")
            history_outcome = ([], set(known_ids))
        entries, failed = history_outcome
        requested = set(known_ids)

        if isinstance(reminders_outcome, BaseException):
            error = reminders_outcome
            if not isinstance(error, CareCueError):
                error = ServerError(str(error))
            self.last_error = error
            logger.warning(f"Reminder list unavailable, serving cached copy: {error.message}")
            fetched = None
            reminders = cached_reminders
        else:
            fetched = self._carry_over(reminders_outcome, cached_reminders)
            reminders = fetched
            new_ids = [r.id for r in fetched if r.id not in requested]
            if new_ids:
                more, more_failed = await self._fetch_history(new_ids)
                entries.extend(more)
                failed |= more_failed
                requested |= set(new_ids)

        history = self._merge_history(entries, failed, requested, cached_history)

        # Optimistic changes still in flight stay visible on top of the fetched list
        merged = reminders
        for mutation in self.pending.values():
            merged = reduce_reminders(merged, mutation, Phase.APPLY)
        self.reminders = merged
        self.history = history

        if fetched is not None:
            self.last_error = None
            self._persist_reminders()
        if requested - failed:
            self.cache.save_history(self.history)

        self._reschedule_all()
        self._set_state(SyncState.READY if fetched is not None else SyncState.DEGRADED)
        logger.info(
            f"Loaded {len(self.reminders)} reminders and {len(self.history)} history entries "
            f"({self.state.value})"
        )

        if not self.sweep.running:
            self._spawn(self.sweep.trigger())
        return self.state

    def _carry_over(self, fetched: list[Reminder], cached: list[Reminder]) -> list[Reminder]:
        """Keep local adjustment bookkeeping the server may not echo back."""
        previous = {r.id: r for r in (self.reminders or cached)}
        result = []
        for reminder in fetched:
            old = previous.get(reminder.id)
            if old is not None and old.cadence_adjusted_at_missed > reminder.cadence_adjusted_at_missed:
                reminder = reminder.model_copy(
                    update={"cadence_adjusted_at_missed": old.cadence_adjusted_at_missed}
                )
            result.append(reminder)
        return result

    def _merge_history(
        self,
        fetched: list[Occurrence],
        failed: set[str],
        requested: set[str],
        cached: list[Occurrence],
    ) -> list[Occurrence]:
        fallback_ids = failed | {rid for rid in (o.reminder_id for o in cached) if rid not in requested}
        merged = {o.id: o for o in fetched}

        # Slices whose fetch failed keep their last cached value
        for occ in cached:
            if occ.reminder_id in fallback_ids:
                merged.setdefault(occ.id, occ)

        # Locally recorded entries survive until the server echoes them back
        for occ in self.history or cached:
            if not occ.is_local or occ.reminder_id in fallback_ids:
                continue
            echoed = any(
                s.reminder_id == occ.reminder_id
                and s.status == occ.status
                and scheduling.occurrence_matches(s, occ.scheduled_time)
                for s in fetched
            )
            if not echoed:
                merged.setdefault(occ.id, occ)

        cutoff = self.clock() - timedelta(days=self.history_days)
        return [o for o in merged.values() if o.scheduled_time >= cutoff]

    # ------------------------------------------------------------------
    # Persistence and alert bookkeeping
    # ------------------------------------------------------------------

    def _cache_view(self) -> list[Reminder]:
        """Confirmed reminders, with pending deletions already applied."""
        view = self.reminders
        for mutation in self.pending.values():
            if not isinstance(mutation, Deleting):
                view = reduce_reminders(view, mutation, Phase.ROLLBACK)
        return [r for r in view if not r.is_local]

    def _persist_reminders(self) -> None:
        self.cache.save_reminders(self._cache_view())

    def _append_history(self, occurrence: Occurrence) -> None:
        self.history = [o for o in self.history if o.id != occurrence.id] + [occurrence]
        self.cache.save_history(self.history)

    def _reschedule(self, reminder: Reminder, after: datetime | None = None) -> None:
        if reminder.is_local or not reminder.enabled:
            self.alerts.cancel_all(reminder.id)
            return
        reference = self.clock()
        if after is not None and after > reference:
            reference = after
        when = scheduling.next_alert_time(reminder, reference)
        if when is None:
            self.alerts.cancel_all(reminder.id)
            return
        self.alerts.schedule(reminder.id, when, alert_payload(reminder))

    def _reschedule_all(self) -> None:
        present = {r.id for r in self.reminders}
        for reminder_id in self.alerts.outstanding_ids() - present:
            self.alerts.cancel_all(reminder_id)
        for reminder in self.reminders:
            # Reminders with a change in flight keep whatever alert state they have
            if reminder.id not in self.pending:
                self._reschedule(reminder)

    def _adopt(self, server: Reminder) -> Reminder:
        """Take the server's version of a reminder that has no change in flight."""
        existing = self.get(server.id)
        if existing is None or server.id in self.pending:
            return existing or server
        if existing.cadence_adjusted_at_missed > server.cadence_adjusted_at_missed:
            server = server.model_copy(
                update={"cadence_adjusted_at_missed": existing.cadence_adjusted_at_missed}
            )
        self.reminders = [server if r.id == server.id else r for r in self.reminders]
        self._reschedule(server)
        self._persist_reminders()
        self._notify()
        return server

    def _drop(self, reminder_id: str) -> None:
        """Forget a reminder the server no longer knows about."""
        self.reminders = [r for r in self.reminders if r.id != reminder_id]
        self.pending.pop(reminder_id, None)
        self.alerts.cancel_all(reminder_id)
        self._persist_reminders()
        self._notify()
        self._spawn(self.load_all())

    # ------------------------------------------------------------------
    # Optimistic mutation pipeline
    # ------------------------------------------------------------------

    def _begin(self, mutation: PendingMutation) -> None:
        self.reminders = reduce_reminders(self.reminders, mutation, Phase.APPLY)
        self.pending[mutation.reminder_id] = mutation
        current = self.get(mutation.reminder_id)
        if current is None or not current.enabled:
            self.alerts.cancel_all(mutation.reminder_id)
        if isinstance(mutation, Deleting):
            # A crash mid-flight must not bring the reminder back
            self._persist_reminders()
        self._notify()

    def _confirm(self, mutation: PendingMutation, server: Reminder | None) -> Reminder | None:
        self.reminders = reduce_reminders(self.reminders, mutation, Phase.CONFIRM, confirmed=server)
        self.pending.pop(mutation.reminder_id, None)
        confirmed = self.get(server.id) if server is not None else None
        if confirmed is not None:
            self._reschedule(confirmed)
        self._persist_reminders()
        self._notify()
        return confirmed

    def _fail(
        self,
        mutation: PendingMutation,
        error: CareCueError,
        retry: Callable[[], Awaitable[MutationResult]],
    ) -> MutationResult:
        if isinstance(error, NotFound) and not isinstance(mutation, Creating):
            logger.info(f"Reminder {mutation.reminder_id} is already gone on the server")
            self.pending.pop(mutation.reminder_id, None)
            self._drop(mutation.reminder_id)
            return MutationResult.success(message="Reminder was already removed")

        self.reminders = reduce_reminders(self.reminders, mutation, Phase.ROLLBACK)
        self.pending.pop(mutation.reminder_id, None)
        restored = self.get(mutation.reminder_id)
        if restored is not None:
            self._reschedule(restored)
        # The rollback is on disk before anyone hears about the failure
        self._persist_reminders()
        self.last_error = error
        self._notify()
        return self._failure(error, retry, f"{type(mutation).__name__} {mutation.reminder_id}")

    def _failure(
        self,
        error: CareCueError,
        retry: Callable[[], Awaitable[MutationResult]] | None,
        what: str,
        **kwargs: Any,
    ) -> MutationResult:
        if isinstance(error, (ValidationError, DuplicateOccurrence, Unauthorized)):
            retry = None
        if error.quiet:
            logger.warning(f"{what} failed, will retry later: {error.message}")
        else:
            logger.error(f"{what} failed: {error.message}")
        token = self._register_retry(retry) if retry is not None else None
        return MutationResult.failure(error, retry=retry, retry_token=token, **kwargs)

    def _register_retry(self, retry: Callable[[], Awaitable[MutationResult]]) -> str:
        token = uuid.uuid4().hex
        self._retries[token] = retry
        while len(self._retries) > MAX_RETRY_TOKENS:
            self._retries.popitem(last=False)
        return token

    async def retry(self, token: str) -> MutationResult:
        """Replay a failed operation by its retry token."""
        retry = self._retries.pop(token, None)
        if retry is None:
            return MutationResult.failure(NotFound("Nothing to retry for this token"))
        return await retry()

    def _editable(self, reminder_id: str, allow_pending: bool = False) -> Reminder | MutationResult:
        reminder = self.get(reminder_id)
        if reminder is None:
            return MutationResult.failure(NotFound(f"Reminder {reminder_id} not found"))
        if reminder.is_local or (reminder_id in self.pending and not allow_pending):
            return MutationResult.failure(
                ValidationError("This reminder is still syncing, try again in a moment")
            )
        return reminder

    # ------------------------------------------------------------------
    # UI operations
    # ------------------------------------------------------------------

    async def create(self, payload: ReminderCreate | dict[str, Any]) -> MutationResult:
        """Create a reminder."""
        try:
            data = (
                payload
                if isinstance(payload, ReminderCreate)
                else ReminderCreate.model_validate(payload)
            )
            scheduling.validate_reminder(data.label, data.cadence)
        except PydanticValidationError as e:
            return MutationResult.failure(ValidationError(_first_error(e)))
        except ValidationError as e:
            return MutationResult.failure(e)

        now = self.clock()
        cadence_defaults: dict[str, Any] = {}
        if "timezone" not in data.cadence.model_fields_set:
            cadence_defaults["timezone"] = self.default_timezone
        if data.cadence.is_interval and data.cadence.anchor is None:
            cadence_defaults["anchor"] = now
        if cadence_defaults:
            data = data.model_copy(
                update={"cadence": data.cadence.model_copy(update=cadence_defaults)}
            )
        temp = Reminder.model_validate(
            {**data.model_dump(), "id": f"{TEMP_ID_PREFIX}{uuid.uuid4().hex[:12]}", "created_at": now}
        )

        mutation = Creating(reminder=temp)
        self._begin(mutation)
        try:
            server = await self._bounded(self.remote.create_reminder(data))
        except CareCueError as e:
            return self._fail(mutation, e, lambda: self.create(payload))

        confirmed = self._confirm(mutation, server)
        logger.info(f"Created reminder {server.id} ({server.label})")
        return MutationResult.success(reminder=confirmed or server)

    async def update(self, reminder_id: str, patch: ReminderUpdate | dict[str, Any]) -> MutationResult:
        """Change fields of a reminder. Disabling cancels its alerts immediately."""
        current = self._editable(reminder_id)
        if isinstance(current, MutationResult):
            return current
        try:
            patch = patch if isinstance(patch, ReminderUpdate) else ReminderUpdate.model_validate(patch)
            patched = apply_patch(current, patch)
            scheduling.validate_reminder(patched.label, patched.cadence)
        except PydanticValidationError as e:
            return MutationResult.failure(ValidationError(_first_error(e)))
        except ValidationError as e:
            return MutationResult.failure(e)

        mutation = Updating(reminder_id=reminder_id, patch=patch, before=current.model_copy(deep=True))
        self._begin(mutation)
        try:
            server = await self._bounded(self.remote.update_reminder(reminder_id, patch))
        except CareCueError as e:
            return self._fail(mutation, e, lambda: self.update(reminder_id, patch))

        confirmed = self._confirm(mutation, server)
        return MutationResult.success(reminder=confirmed or server)

    async def remove(self, reminder_id: str) -> MutationResult:
        """Delete a reminder."""
        current = self._editable(reminder_id)
        if isinstance(current, MutationResult):
            return current

        index = self.reminders.index(current)
        mutation = Deleting(reminder_id=reminder_id, before=current.model_copy(deep=True), index=index)
        self._begin(mutation)
        try:
            await self._bounded(self.remote.delete_reminder(reminder_id))
        except CareCueError as e:
            return self._fail(mutation, e, lambda: self.remove(reminder_id))

        self._confirm(mutation, None)
        logger.info(f"Deleted reminder {reminder_id}")
        return MutationResult.success(message="Reminder deleted")

    async def snooze(self, reminder_id: str, minutes: int) -> MutationResult:
        """Defer a reminder's alert by ``minutes``."""
        if not MIN_SNOOZE_MINUTES <= minutes <= MAX_SNOOZE_MINUTES:
            return MutationResult.failure(
                ValidationError(
                    f"Snooze must be between {MIN_SNOOZE_MINUTES} and {MAX_SNOOZE_MINUTES} minutes"
                )
            )
        current = self._editable(reminder_id)
        if isinstance(current, MutationResult):
            return current

        now = self.clock()
        mutation = Snoozing(
            reminder_id=reminder_id,
            minutes=minutes,
            until=now + timedelta(minutes=minutes),
            before=current.model_copy(deep=True),
        )
        self._begin(mutation)
        try:
            server = await self._bounded(self.remote.snooze(reminder_id, minutes))
        except CareCueError as e:
            return self._fail(mutation, e, lambda: self.snooze(reminder_id, minutes))

        if server.snooze_until is None:
            server = server.model_copy(update={"snooze_until": mutation.until})
        confirmed = self._confirm(mutation, server)
        occurrence = await self._record_snooze(confirmed or server, now)
        return MutationResult.success(
            reminder=confirmed or server,
            occurrence=occurrence,
            message=f"Reminder snoozed by {minutes} minutes",
        )

    async def _record_snooze(self, reminder: Reminder, now: datetime) -> Occurrence | None:
        """Log the snooze against the dose it deferred, if one is currently due."""
        instant = scheduling.previous_due(reminder.cadence, now)
        if instant is None or now - instant > self.dedup_window:
            return None
        if scheduling.is_resolved(reminder.id, instant, self.history, statuses=OccurrenceStatus):
            return None
        try:
            occurrence = await self._bounded(
                self.remote.add_history(reminder.id, OccurrenceStatus.SNOOZED, instant)
            )
        except CareCueError as e:
            logger.warning(f"Could not log snooze for reminder {reminder.id}: {e.message}")
            return None
        self._append_history(occurrence)
        self._notify()
        return occurrence

    async def mark_missed(self, reminder_id: str) -> MutationResult:
        """Report the reminder's latest due dose as missed."""
        current = self._editable(reminder_id)
        if isinstance(current, MutationResult):
            return current

        instant = scheduling.resolve_taken_instant(current.cadence, self.clock())
        if self._dose_settled(reminder_id, instant):
            logger.info(f"Dose of reminder {reminder_id} at {instant.isoformat()} already recorded")
            return MutationResult.failure(DuplicateOccurrence("This dose is already recorded"))
        try:
            reminder, occurrence = await self._report_missed(current, instant)
        except NotFound:
            self._drop(reminder_id)
            return MutationResult.success(message="Reminder was already removed")
        except CareCueError as e:
            return self._failure(
                e, lambda: self.mark_missed(reminder_id), f"Marking reminder {reminder_id} missed"
            )
        return MutationResult.success(reminder=reminder, occurrence=occurrence)

    async def _report_missed(
        self, reminder: Reminder, instant: datetime
    ) -> tuple[Reminder, Occurrence]:
        """Tell the server about a missed dose and record it once accepted.

        The counter increment comes first; if logging the entry afterwards fails the
        entry is kept locally so the next sweep does not report the same dose again.
        Callers check ``_dose_settled`` first.
        """
        claim = self._claim(reminder.id, OccurrenceStatus.MISSED, instant)
        try:
            server = await self._bounded(self.remote.mark_missed(reminder.id))
            adopted = self._adopt(server)
            occurrence = await self._record_occurrence(
                adopted.id, OccurrenceStatus.MISSED, instant
            )
        finally:
            self._release(reminder.id, claim)
        return adopted, occurrence

    async def _record_occurrence(
        self, reminder_id: str, status: OccurrenceStatus, instant: datetime
    ) -> Occurrence:
        try:
            occurrence = await self._bounded(self.remote.add_history(reminder_id, status, instant))
        except CareCueError as e:
            if not isinstance(e, DuplicateOccurrence):
                logger.warning(
                    f"Could not log {status.value} entry for reminder {reminder_id}, keeping it "
                    f"locally: {e.message}"
                )
            occurrence = Occurrence(
                id=f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex[:12]}",
                reminder_id=reminder_id,
                scheduled_time=instant,
                status=status,
                recorded_time=self.clock(),
            )
        self._append_history(occurrence)
        self._notify()
        return occurrence

    async def mark_taken(
        self, reminder_id: str, occurrence_time: datetime | None = None
    ) -> MutationResult:
        """Record a dose as taken, at most once per dedup window."""
        current = self._editable(reminder_id, allow_pending=True)
        if isinstance(current, MutationResult):
            return current

        instant = scheduling.resolve_taken_instant(current.cadence, self.clock(), occurrence_time)
        duplicate = scheduling.find_duplicate_taken(
            reminder_id, instant, self.history, self.dedup_window
        )
        if duplicate is not None or self._claimed(
            reminder_id, instant, {OccurrenceStatus.COMPLETED}, self.dedup_window
        ):
            logger.info(f"Ignoring duplicate taken for reminder {reminder_id} at {instant.isoformat()}")
            return MutationResult.failure(
                DuplicateOccurrence("Already marked as taken for this dose"), occurrence=duplicate
            )

        claim = self._claim(reminder_id, OccurrenceStatus.COMPLETED, instant)
        try:
            occurrence = await self._bounded(
                self.remote.add_history(reminder_id, OccurrenceStatus.COMPLETED, instant)
            )
        except DuplicateOccurrence as e:
            logger.info(f"Server already has a taken entry for reminder {reminder_id}")
            return MutationResult.failure(e, message="Already marked as taken for this dose")
        except NotFound:
            self._drop(reminder_id)
            return MutationResult.success(message="Reminder was already removed")
        except CareCueError as e:
            return self._failure(
                e,
                lambda: self.mark_taken(reminder_id, occurrence_time),
                f"Marking reminder {reminder_id} taken",
            )
        finally:
            self._release(reminder_id, claim)

        self._append_history(occurrence)
        self._notify()
        return MutationResult.success(reminder=current, occurrence=occurrence)

    def _claim(
        self, reminder_id: str, status: OccurrenceStatus, instant: datetime
    ) -> tuple[OccurrenceStatus, datetime]:
        claim = (status, instant)
        self._inflight.setdefault(reminder_id, []).append(claim)
        return claim

    def _release(self, reminder_id: str, claim: tuple[OccurrenceStatus, datetime]) -> None:
        claims = self._inflight.get(reminder_id, [])
        claims.remove(claim)
        if not claims:
            self._inflight.pop(reminder_id, None)

    def _claimed(
        self,
        reminder_id: str,
        instant: datetime,
        statuses: set[OccurrenceStatus],
        window: timedelta = scheduling.MATCH_TOLERANCE,
    ) -> bool:
        return any(
            status in statuses and abs(other - instant) <= window
            for status, other in self._inflight.get(reminder_id, [])
        )

    def _dose_settled(self, reminder_id: str, instant: datetime) -> bool:
        """Whether the dose is taken, missed or skipped, on record or on its way there."""
        return scheduling.is_resolved(reminder_id, instant, self.history) or self._claimed(
            reminder_id, instant, {OccurrenceStatus.COMPLETED, OccurrenceStatus.MISSED}
        )

    # ------------------------------------------------------------------
    # Missed sweep and adaptive cadence
    # ------------------------------------------------------------------

    async def sweep_missed(self) -> int:
        """One missed-dose pass over every reminder. Returns how many were reported."""
        if self.state == SyncState.DEGRADED:
            await self.load_all()
            if self.state == SyncState.DEGRADED:
                return 0

        now = self.clock()
        reported = 0
        for reminder in list(self.reminders):
            if reminder.is_local or reminder.id in self.pending:
                continue

            instants = scheduling.find_missed_instants(
                reminder, self.history, now, self.grace, self.missed_lookback
            )
            for instant in instants:
                # Earlier reports in this pass awaited the server; the user may have
                # resolved this dose meanwhile
                if self._dose_settled(reminder.id, instant):
                    continue
                try:
                    reminder, _ = await self._report_missed(reminder, instant)
                except NotFound:
                    self._drop(reminder.id)
                    break
                except CareCueError as e:
                    logger.warning(
                        f"Could not report missed dose for reminder {reminder.id}, "
                        f"retrying next sweep: {e.message}"
                    )
                    break
                reported += 1

            current = self.get(reminder.id)
            if current is not None and current.id not in self.pending:
                await self._maybe_adjust(current)

        if reported:
            logger.info(f"Reported {reported} missed doses")
        return reported

    async def _maybe_adjust(self, reminder: Reminder) -> Reminder | None:
        """Propose a cadence change; apply it only if the server accepts it."""
        patch = self.adjustment_policy(reminder, self.history_for(reminder.id))
        if patch is None:
            return None

        logger.info(
            f"Proposing cadence change for reminder {reminder.id} after "
            f"{reminder.missed_count} missed doses"
        )
        try:
            server = await self._bounded(self.remote.update_reminder(reminder.id, patch))
        except CareCueError as e:
            logger.warning(f"Cadence change for reminder {reminder.id} not applied: {e.message}")
            return None

        if reminder.id in self.pending:
            # The user changed it meanwhile; the next load picks up the server copy
            return None
        adjusted = patch.cadence_adjusted_at_missed or 0
        if server.cadence_adjusted_at_missed < adjusted:
            server = server.model_copy(update={"cadence_adjusted_at_missed": adjusted})
        return self._adopt(server)

    # ------------------------------------------------------------------
    # Fired alerts
    # ------------------------------------------------------------------

    async def _process_events(self) -> None:
        while True:
            event = await self.alerts.events.get()
            try:
                await self.handle_alert(event)
            except Exception as e:
                logger.error(f"Failed to handle alert for reminder {event.reminder_id}: {e}")
            finally:
                self.alerts.events.task_done()

    async def handle_alert(self, event: AlertFired) -> MutationResult | None:
        """Map a fired alert or tapped action to the matching operation."""
        reminder = self.get(event.reminder_id)
        # The OS may deliver an alert queued before the user disabled the reminder
        if reminder is None or not reminder.enabled:
            logger.info(
                f"Ignoring {event.action.value} alert for removed or disabled reminder "
                f"{event.reminder_id}"
            )
            self.alerts.cancel_all(event.reminder_id)
            return None

        for listener in list(self._alert_listeners):
            try:
                listener(event, reminder)
            except Exception as e:
                logger.error(f"Alert listener failed: {e}")

        if event.action == AlertAction.FIRED:
            if reminder.id not in self.pending:
                self._reschedule(reminder, after=event.scheduled_for)
            return None
        if event.action == AlertAction.COMPLETE:
            return await self.mark_taken(reminder.id)
        if event.action == AlertAction.SNOOZE:
            return await self.snooze(reminder.id, event.snooze_minutes or DEFAULT_SNOOZE_MINUTES)
        return await self.mark_missed(reminder.id)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def admin_stats(self) -> dict[str, Any]:
        """Summary for the reporting panel: local adherence plus the server's stats."""
        stats, upcoming = await asyncio.gather(
            self._bounded(self.remote.stats()),
            self._bounded(self.remote.upcoming()),
            return_exceptions=True,
        )
        for name, outcome in (("stats", stats), ("upcoming", upcoming)):
            if isinstance(outcome, BaseException):
                logger.warning(f"Remote {name} unavailable: {outcome}")

        now = self.clock()
        return {
            "sync_state": self.state.value,
            "reminders": len(self.reminders),
            "enabled": sum(1 for r in self.reminders if r.enabled),
            "missed_total": sum(r.missed_count for r in self.reminders),
            "adherence_7d": adherence_summary(self.visible_history(), since=now - timedelta(days=7)),
            "next_alerts": [
                {"reminder_id": r.id, "label": r.label, "at": when.isoformat()}
                for r, when in self.upcoming(5)
            ],
            "remote_stats": None if isinstance(stats, BaseException) else stats,
            "remote_upcoming": [] if isinstance(upcoming, BaseException) else upcoming,
        }
