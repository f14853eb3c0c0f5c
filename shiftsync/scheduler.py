from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Optional

from shiftsync.config_manager import ConfigManager
from shiftsync.models import AttemptResult, ExternalSync
from shiftsync.state_store import StateStore
from shiftsync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


def is_due(record: ExternalSync, now: datetime) -> bool:
    if record.is_one_time_import or record.auto_sync_interval <= 0:
        return False
    if record.last_synced_at is None:
        return True
    return now - record.last_synced_at >= timedelta(minutes=record.auto_sync_interval)


class AutoSyncScheduler:
    def __init__(
        self,
        sync_engine: SyncEngine,
        state_store: StateStore,
        config_manager: ConfigManager,
    ) -> None:
        self.sync_engine = sync_engine
        self.state_store = state_store
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._queued: dict[Future, str] = {}
        self._queued_lock = threading.Lock()
        self._started = False

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        # One lifecycle per process: a stopped scheduler is not restarted.
        if self._started or self._stop_event.is_set():
            return
        self._started = True
        tick_seconds = self.config_manager.load().sync.tick_seconds
        self._ensure_executor()
        self._thread = threading.Thread(target=self._loop, name="shiftsync-auto-sync", daemon=True)
        self._thread.start()
        logger.info("Auto-sync scheduler started (tick=%ss)", tick_seconds)

    def stop(self) -> None:
        if self._stop_event.is_set():
            return
        grace = self.config_manager.load().sync.shutdown_grace_seconds
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        with self._queued_lock:
            pending = set(self._queued)
        if pending:
            logger.info("Waiting up to %ss for %d in-flight syncs", grace, len(pending))
            _, not_done = wait(pending, timeout=grace)
            if not_done:
                logger.warning("Abandoning %d in-flight syncs after shutdown grace period", len(not_done))
        if self._executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Auto-sync scheduler stopped")

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            max_workers = self.config_manager.load().sync.max_workers
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="shiftsync-sync")
        return self._executor

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Auto-sync tick failed")
            try:
                tick_seconds = self.config_manager.load().sync.tick_seconds
            except Exception:
                logger.exception("Could not reload config, using 60s tick")
                tick_seconds = 60
            self._stop_event.wait(timeout=tick_seconds)

    def queued_ids(self) -> set[str]:
        with self._queued_lock:
            return {sync_id for future, sync_id in self._queued.items() if not future.done()}

    def due_records(self, now: datetime | None = None) -> list[ExternalSync]:
        now = now or self.sync_engine.clock()
        queued = self.queued_ids()
        return [
            record
            for record in self.state_store.list_auto_sync_records()
            if is_due(record, now)
            and record.id not in queued
            and not self.sync_engine.gate.is_syncing(record.id)
        ]

    def tick(self) -> list[Future]:
        if self._stop_event.is_set():
            return []
        dispatched: list[Future] = []
        for record in self.due_records(self.sync_engine.clock()):
            future = self._submit(record.id)
            if future is not None:
                dispatched.append(future)
        if dispatched:
            logger.info("Dispatched %d due syncs", len(dispatched))
        return dispatched

    def _submit(self, sync_id: str) -> Future | None:
        try:
            future = self._ensure_executor().submit(self._run_auto, sync_id)
        except RuntimeError:
            logger.warning("Executor shut down, sync %s not dispatched", sync_id)
            return None
        with self._queued_lock:
            self._queued[future] = sync_id
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._queued_lock:
            self._queued.pop(future, None)

    def _run_auto(self, sync_id: str) -> AttemptResult | None:
        try:
            return self.sync_engine.run(sync_id, trigger="auto")
        except Exception:
            logger.exception("Auto-sync for %s raised unexpectedly", sync_id)
            return None

    def trigger_manual(self, sync_id: str) -> AttemptResult:
        logger.info("Manually triggering sync for %s", sync_id)
        return self.sync_engine.run(sync_id, trigger="manual")
