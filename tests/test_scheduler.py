import tempfile
import threading
import time
import unittest
from concurrent.futures import wait
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from shiftsync.config_manager import ConfigManager
from shiftsync.errors import TransientError
from shiftsync.models import AppConfig, ExternalSync
from shiftsync.reconciler import ShiftDiff
from shiftsync.scheduler import AutoSyncScheduler, is_due
from shiftsync.state_store import StateStore
from shiftsync.sync_engine import SyncEngine, SyncGate

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
FEED = (
    "BEGIN:VCALENDAR\nVERSION:2.0\nPRODID:-//Shiftsync Tests//EN\n"
    "BEGIN:VEVENT\nUID:a\nDTSTART:20260305T090000Z\nDTEND:20260305T170000Z\nSUMMARY:Early\nEND:VEVENT\n"
    "END:VCALENDAR\n"
)


def _record(sync_id: str, interval: int = 60, last_synced_at: datetime | None = None, **overrides) -> ExternalSync:
    values = {
        "id": sync_id,
        "calendar_id": "cal-1",
        "name": sync_id,
        "sync_type": "custom",
        "calendar_url": f"https://example.com/{sync_id}.ics",
        "auto_sync_interval": interval,
        "last_synced_at": last_synced_at,
        "created_at": T0,
        "updated_at": T0,
    }
    values.update(overrides)
    return ExternalSync(**values)


class RoutingFetcher:
    def __init__(self, failing: set[str]) -> None:
        self.failing = failing

    def fetch(self, url: str, sync_type: str | None = None) -> str:
        if any(name in url for name in self.failing):
            raise TransientError("Failed to fetch calendar: HTTP 503 Service Unavailable")
        return FEED


class IsDueTests(unittest.TestCase):
    def test_zero_interval_never_due(self) -> None:
        self.assertFalse(is_due(_record("manual", interval=0), T0 + timedelta(days=30)))

    def test_one_time_import_never_due(self) -> None:
        self.assertFalse(is_due(_record("import", is_one_time_import=True), T0))

    def test_never_synced_is_due(self) -> None:
        self.assertTrue(is_due(_record("fresh"), T0))

    def test_interval_boundary(self) -> None:
        record = _record("hourly", last_synced_at=T0)
        self.assertFalse(is_due(record, T0 + timedelta(minutes=59)))
        self.assertTrue(is_due(record, T0 + timedelta(minutes=60)))
        self.assertTrue(is_due(record, T0 + timedelta(minutes=61)))


class AutoSyncSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        resolver = mock.patch("shiftsync.url_classifier.resolve_host", return_value=[])
        resolver.start()
        self.addCleanup(resolver.stop)
        self.temp_dir = tempfile.TemporaryDirectory()
        base = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(str(base / "config.yaml"))
        self.config_manager.save(
            AppConfig.from_dict({"sync": {"max_workers": 2, "shutdown_grace_seconds": 1}})
        )
        self.store = StateStore(str(base / "state.db"))
        self.now = T0
        self.fetcher = RoutingFetcher(failing=set())
        self.engine = SyncEngine(
            self.config_manager,
            self.store,
            fetcher=self.fetcher,
            clock=lambda: self.now,
            gate=SyncGate(),
        )
        self.scheduler = AutoSyncScheduler(self.engine, self.store, self.config_manager)

    def tearDown(self) -> None:
        self.scheduler.stop()
        self.temp_dir.cleanup()

    def test_tick_dispatches_only_after_interval_elapses(self) -> None:
        self.store.create_external_sync(_record("hourly"))
        self.store.apply_reconciliation(
            sync=self.store.get_external_sync("hourly"),
            diff=ShiftDiff(),
            synced_at=T0,
            trigger="auto",
        )

        self.now = T0 + timedelta(minutes=59)
        self.assertEqual(self.scheduler.tick(), [])

        self.now = T0 + timedelta(minutes=61)
        futures = self.scheduler.tick()
        self.assertEqual(len(futures), 1)
        wait(futures, timeout=10)
        self.assertTrue(futures[0].result().ok)
        self.assertEqual(self.store.get_external_sync("hourly").last_synced_at, self.now)

    def test_manual_and_one_time_records_never_dispatched(self) -> None:
        self.store.create_external_sync(_record("manual", interval=0))
        self.store.create_external_sync(_record("import", interval=0, is_one_time_import=True))
        self.now = T0 + timedelta(days=7)

        self.assertEqual(self.scheduler.tick(), [])

    def test_failing_record_does_not_block_others(self) -> None:
        self.fetcher.failing = {"broken"}
        self.store.create_external_sync(_record("broken"))
        self.store.create_external_sync(_record("healthy"))

        futures = self.scheduler.tick()
        wait(futures, timeout=10)

        results = {f.result().sync_id: f.result() for f in futures}
        self.assertEqual(results["broken"].kind, "transient")
        self.assertTrue(results["healthy"].ok)
        self.assertIsNone(self.store.get_external_sync("broken").last_synced_at)
        self.assertEqual(self.store.get_external_sync("healthy").last_synced_at, T0)

        # broken is retried on the next tick, healthy is not yet due again
        futures = self.scheduler.tick()
        wait(futures, timeout=10)
        self.assertEqual([f.result().sync_id for f in futures], ["broken"])

    def test_record_held_by_gate_is_skipped(self) -> None:
        self.store.create_external_sync(_record("busy"))
        self.engine.gate.try_acquire("busy")
        try:
            self.assertEqual(self.scheduler.due_records(), [])
        finally:
            self.engine.gate.release("busy")
        self.assertEqual([r.id for r in self.scheduler.due_records()], ["busy"])

    def test_queued_record_not_dispatched_twice(self) -> None:
        self.store.create_external_sync(_record("slow"))
        release = threading.Event()
        engine = mock.Mock()
        engine.clock = lambda: self.now
        engine.gate = SyncGate()
        engine.run.side_effect = lambda sync_id, trigger: release.wait(5)
        scheduler = AutoSyncScheduler(engine, self.store, self.config_manager)
        try:
            first = scheduler.tick()
            second = scheduler.tick()
            self.assertEqual(len(first), 1)
            self.assertEqual(second, [])
            self.assertEqual(scheduler.queued_ids(), {"slow"})
        finally:
            release.set()
            scheduler.stop()
        self.assertEqual(engine.run.call_count, 1)

    def _blocking_engine(self, started: threading.Event, release: threading.Event) -> mock.Mock:
        engine = mock.Mock()
        engine.clock = lambda: self.now
        engine.gate = SyncGate()

        def _run(sync_id, trigger):
            started.set()
            release.wait(10)

        engine.run.side_effect = _run
        return engine

    def test_stop_abandons_hung_sync_after_grace_period(self) -> None:
        self.store.create_external_sync(_record("stuck"))
        started, release = threading.Event(), threading.Event()
        scheduler = AutoSyncScheduler(self._blocking_engine(started, release), self.store, self.config_manager)
        try:
            self.assertEqual(len(scheduler.tick()), 1)
            self.assertTrue(started.wait(5))
            begin = time.monotonic()
            with self.assertLogs("shiftsync.scheduler", level="WARNING") as captured:
                scheduler.stop()
            elapsed = time.monotonic() - begin
        finally:
            release.set()

        self.assertGreaterEqual(elapsed, 0.9)
        self.assertLess(elapsed, 3)
        self.assertIn("Abandoning 1 in-flight syncs", "\n".join(captured.output))

    def test_stop_waits_for_sync_finishing_within_grace(self) -> None:
        self.store.create_external_sync(_record("quick"))
        started, release = threading.Event(), threading.Event()
        scheduler = AutoSyncScheduler(self._blocking_engine(started, release), self.store, self.config_manager)
        futures = scheduler.tick()
        self.assertTrue(started.wait(5))
        threading.Timer(0.2, release.set).start()

        scheduler.stop()

        self.assertTrue(futures[0].done())
        self.assertEqual(scheduler.queued_ids(), set())

    def test_unexpected_engine_error_is_contained(self) -> None:
        self.store.create_external_sync(_record("explodes"))
        with mock.patch.object(self.engine, "run", side_effect=RuntimeError("boom")):
            with self.assertLogs("shiftsync.scheduler", level="ERROR"):
                futures = self.scheduler.tick()
                wait(futures, timeout=10)
        self.assertIsNone(futures[0].result())

    def test_start_and_stop_lifecycle(self) -> None:
        self.scheduler.start()
        self.assertTrue(self.scheduler.running)
        self.scheduler.stop()
        self.assertFalse(self.scheduler.running)
        self.scheduler.start()
        self.assertFalse(self.scheduler.running)
        self.assertEqual(self.scheduler.tick(), [])

    def test_trigger_manual_runs_through_engine(self) -> None:
        self.store.create_external_sync(_record("hourly"))
        result = self.scheduler.trigger_manual("hourly")
        self.assertTrue(result.ok)
        self.assertEqual(result.trigger, "manual")
        self.assertEqual(self.store.list_sync_logs("cal-1")[0]["syncType"], "manual")


if __name__ == "__main__":
    unittest.main()
