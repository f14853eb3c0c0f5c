from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, Protocol

from shiftsync.config_manager import ConfigManager
from shiftsync.errors import PersistenceError, SecurityRejection, SyncError
from shiftsync.events import ChangeBroadcaster, ChangeEvent
from shiftsync.ics_feed import FeedFetcher, is_data_url, parse_events, sync_window, validate_ics_content
from shiftsync.models import AppConfig, AttemptResult, DiffSummary, ExternalSync, Failed, Succeeded, utc_now
from shiftsync.reconciler import compute_diff
from shiftsync.state_store import StateStore
from shiftsync.url_classifier import log_rejection, rejection_message, validate_calendar_url

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class Fetcher(Protocol):
    def fetch(self, url: str, sync_type: str | None = None) -> str: ...


class SyncGate:
    """Tracks which sync records have an attempt in flight.

    Scheduler ticks and manual triggers share one gate, so a record is never
    reconciled by two attempts at once. The check-and-insert happens under a
    single mutex before any I/O starts.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[str] = set()

    def try_acquire(self, sync_id: str) -> bool:
        with self._lock:
            if sync_id in self._active:
                return False
            self._active.add(sync_id)
            return True

    def release(self, sync_id: str) -> None:
        with self._lock:
            self._active.discard(sync_id)

    def is_syncing(self, sync_id: str) -> bool:
        with self._lock:
            return sync_id in self._active

    def active(self) -> set[str]:
        with self._lock:
            return set(self._active)

    @contextmanager
    def holding(self, sync_id: str) -> Iterator[bool]:
        acquired = self.try_acquire(sync_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(sync_id)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        fetcher: Fetcher | None = None,
        broadcaster: ChangeBroadcaster | None = None,
        clock: Clock | None = None,
        gate: SyncGate | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.fetcher = fetcher
        self.broadcaster = broadcaster or ChangeBroadcaster()
        self.clock = clock or utc_now
        self.gate = gate or SyncGate()

    def run(self, sync_id: str, trigger: str = "manual") -> AttemptResult:
        with self.gate.holding(sync_id) as acquired:
            if not acquired:
                logger.info("Sync %s already in progress, skipping %s trigger", sync_id, trigger)
                return Failed(sync_id=sync_id, kind="busy", message="Sync already in progress", trigger=trigger)
            return self._run_locked(sync_id, trigger)

    def _run_locked(self, sync_id: str, trigger: str) -> AttemptResult:
        sync = self.state_store.get_external_sync(sync_id)
        if sync is None:
            return Failed(
                sync_id=sync_id,
                kind="not_found",
                message="External sync configuration not found",
                trigger=trigger,
            )

        try:
            summary = self._attempt(sync, trigger)
        except SyncError as exc:
            return self._fail(sync, exc.kind, str(exc), trigger, exc)
        except Exception as exc:
            return self._fail(sync, "error", f"Unknown sync error: {exc}", trigger, exc)

        logger.info(
            "Sync %s (%s) succeeded: created=%d updated=%d deleted=%d events=%d",
            sync.id,
            trigger,
            summary.created,
            summary.updated,
            summary.deleted,
            summary.total_events,
        )
        if not summary.is_empty:
            self._publish("shift", "update", sync.calendar_id, {"syncId": sync.id, **summary.to_dict()})
        self._publish("sync-log", "create", sync.calendar_id, {"syncId": sync.id, "status": "success"})
        return Succeeded(sync_id=sync.id, summary=summary, trigger=trigger, calendar_id=sync.calendar_id)

    def _attempt(self, sync: ExternalSync, trigger: str) -> DiffSummary:
        config = self.config_manager.load()
        if not is_data_url(sync.calendar_url):
            reason = validate_calendar_url(sync.calendar_url, sync.sync_type, config.security)
            if reason:
                log_rejection(sync.calendar_url, reason, sync.sync_type)
                raise SecurityRejection(rejection_message(reason, sync.sync_type), reason=reason)

        content = self._fetcher(config).fetch(sync.calendar_url, sync.sync_type)
        calendar_obj = validate_ics_content(content)
        now = self.clock()
        window_start, window_end = sync_window(now, config.sync)
        events = parse_events(calendar_obj, window_start, window_end, config.sync.timezone)
        existing = self.state_store.list_sync_shifts(sync.id)
        diff = compute_diff(sync=sync, remote_events=events, existing_shifts=existing, now=now)
        return self.state_store.apply_reconciliation(
            sync=sync,
            diff=diff,
            synced_at=now,
            trigger=trigger,
            total_events=len(events),
        )

    def _fetcher(self, config: AppConfig) -> Fetcher:
        if self.fetcher is not None:
            return self.fetcher
        return FeedFetcher(config.sync, config.security)

    def _fail(
        self,
        sync: ExternalSync,
        kind: str,
        message: str,
        trigger: str,
        exc: BaseException,
    ) -> Failed:
        if isinstance(exc, PersistenceError) or kind == "error":
            logger.error("Sync %s (%s) failed: %s", sync.id, trigger, message, exc_info=exc)
        else:
            logger.warning("Sync %s (%s) failed [%s]: %s", sync.id, trigger, kind, message)
        try:
            self.state_store.record_sync_failure(
                sync=sync,
                message=message,
                trigger=trigger,
                failed_at=self.clock(),
            )
        except Exception:
            logger.exception("Could not record failure for sync %s", sync.id)
        self._publish("sync-log", "create", sync.calendar_id, {"syncId": sync.id, "status": "error"})
        return Failed(sync_id=sync.id, kind=kind, message=message, trigger=trigger)

    def _publish(self, event_type: str, action: str, calendar_id: str, payload: dict[str, Any]) -> None:
        self.broadcaster.publish(ChangeEvent(event_type, action, calendar_id, payload))
