import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from shiftsync.config_manager import ConfigManager
from shiftsync.errors import TransientError
from shiftsync.events import ChangeBroadcaster
from shiftsync.ics_feed import encode_data_url
from shiftsync.models import ExternalSync, Failed, Succeeded
from shiftsync.state_store import StateStore
from shiftsync.sync_engine import SyncEngine, SyncGate

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def feed(*events: tuple[str, str, str]) -> str:
    blocks = [
        f"BEGIN:VEVENT\nUID:{uid}\nDTSTART:{start}\nDTEND:{start[:9]}170000Z\nSUMMARY:{title}\nEND:VEVENT"
        for uid, start, title in events
    ]
    return "BEGIN:VCALENDAR\nVERSION:2.0\nPRODID:-//Shiftsync Tests//EN\n" + "\n".join(blocks) + "\nEND:VCALENDAR\n"


class FakeFetcher:
    def __init__(self, content: str = "") -> None:
        self.content = content
        self.error: Exception | None = None
        self.calls: list[str] = []

    def fetch(self, url: str, sync_type: str | None = None) -> str:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.content


class SyncEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        resolver = mock.patch("shiftsync.url_classifier.resolve_host", return_value=[])
        resolver.start()
        self.addCleanup(resolver.stop)
        self.temp_dir = tempfile.TemporaryDirectory()
        base = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(str(base / "config.yaml"))
        self.store = StateStore(str(base / "state.db"))
        self.broadcaster = ChangeBroadcaster()
        self.fetcher = FakeFetcher(
            feed(("a", "20260305T090000Z", "Early"), ("b", "20260306T090000Z", "Late"))
        )
        self.now = START
        self.gate = SyncGate()
        self.engine = SyncEngine(
            self.config_manager,
            self.store,
            fetcher=self.fetcher,
            broadcaster=self.broadcaster,
            clock=lambda: self.now,
            gate=self.gate,
        )
        self.record = self.store.create_external_sync(
            ExternalSync(
                id="sync-1",
                calendar_id="cal-1",
                name="Team roster",
                sync_type="custom",
                calendar_url="https://example.com/roster.ics",
                auto_sync_interval=60,
                created_at=START,
                updated_at=START,
            )
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _drain(self, subscriber) -> list[tuple[str, str]]:
        events = []
        while not subscriber.empty():
            event = subscriber.get_nowait()
            events.append((event.type, event.action))
        return events

    def test_successful_sync_creates_shifts(self) -> None:
        subscriber = self.broadcaster.subscribe("cal-1")

        result = self.engine.run("sync-1", trigger="manual")

        self.assertIsInstance(result, Succeeded)
        self.assertEqual((result.summary.created, result.summary.total_events), (2, 2))
        shifts = self.store.list_sync_shifts("sync-1")
        self.assertEqual([s.title for s in shifts], ["Early", "Late"])
        stored = self.store.get_external_sync("sync-1")
        self.assertEqual(stored.last_synced_at, START)
        self.assertEqual(stored.last_sync_status, "success")
        self.assertEqual(self._drain(subscriber), [("shift", "update"), ("sync-log", "create")])
        self.assertFalse(self.gate.is_syncing("sync-1"))

    def test_second_run_on_unchanged_feed_is_a_no_op(self) -> None:
        self.engine.run("sync-1")
        before = {s.id for s in self.store.list_sync_shifts("sync-1")}
        subscriber = self.broadcaster.subscribe("cal-1")
        self.now = START + timedelta(hours=1)

        result = self.engine.run("sync-1")

        self.assertTrue(result.ok)
        self.assertTrue(result.summary.is_empty)
        self.assertEqual({s.id for s in self.store.list_sync_shifts("sync-1")}, before)
        self.assertEqual(self._drain(subscriber), [("sync-log", "create")])
        self.assertEqual(self.store.get_external_sync("sync-1").last_synced_at, self.now)

    def test_feed_changes_update_and_delete(self) -> None:
        self.engine.run("sync-1")
        original_ids = {s.external_event_id: s.id for s in self.store.list_sync_shifts("sync-1")}
        self.fetcher.content = feed(("a", "20260305T100000Z", "Early (moved)"), ("c", "20260307T090000Z", "New"))

        result = self.engine.run("sync-1")

        summary = result.summary
        self.assertEqual((summary.created, summary.updated, summary.deleted), (1, 1, 1))
        shifts = {s.external_event_id: s for s in self.store.list_sync_shifts("sync-1")}
        self.assertEqual(set(shifts), {"a", "c"})
        self.assertEqual(shifts["a"].id, original_ids["a"])
        self.assertEqual(shifts["a"].start_time, "10:00")

    def test_transient_failure_keeps_last_synced_at(self) -> None:
        self.engine.run("sync-1")
        self.fetcher.error = TransientError("Request timed out after 10 seconds")
        self.now = START + timedelta(hours=2)

        result = self.engine.run("sync-1", trigger="auto")

        self.assertIsInstance(result, Failed)
        self.assertEqual(result.kind, "transient")
        stored = self.store.get_external_sync("sync-1")
        self.assertEqual(stored.last_synced_at, START)
        self.assertEqual(stored.last_sync_status, "error")
        self.assertIn("timed out", stored.last_sync_error)
        self.assertEqual(len(self.store.list_sync_shifts("sync-1")), 2)
        self.assertEqual(self.store.list_sync_logs("cal-1")[0]["status"], "error")

    def test_invalid_content_fails_without_touching_shifts(self) -> None:
        self.engine.run("sync-1")
        self.fetcher.content = "<html>Service unavailable</html>"

        result = self.engine.run("sync-1")

        self.assertEqual(result.kind, "content")
        self.assertEqual(len(self.store.list_sync_shifts("sync-1")), 2)

    def test_concurrent_attempt_reports_busy(self) -> None:
        self.assertTrue(self.gate.try_acquire("sync-1"))
        try:
            result = self.engine.run("sync-1")
        finally:
            self.gate.release("sync-1")

        self.assertEqual(result.kind, "busy")
        self.assertEqual(self.fetcher.calls, [])
        self.assertIsNone(self.store.get_external_sync("sync-1").last_sync_status)

    def test_missing_record_reports_not_found(self) -> None:
        result = self.engine.run("missing")
        self.assertEqual(result.kind, "not_found")

    def test_stored_url_revalidated_before_fetch(self) -> None:
        self.store.create_external_sync(
            ExternalSync(
                id="sync-2",
                calendar_id="cal-1",
                name="Internal",
                sync_type="custom",
                calendar_url="http://169.254.169.254/latest/meta-data",
                created_at=START,
                updated_at=START,
            )
        )

        result = self.engine.run("sync-2")

        self.assertEqual(result.kind, "security")
        self.assertEqual(self.fetcher.calls, [])

    def test_persistence_failure_is_atomic(self) -> None:
        with mock.patch("shiftsync.state_store._update_shifts", side_effect=RuntimeError("disk full")):
            result = self.engine.run("sync-1")

        self.assertEqual(result.kind, "persistence")
        self.assertEqual(self.store.list_sync_shifts("sync-1"), [])
        stored = self.store.get_external_sync("sync-1")
        self.assertIsNone(stored.last_synced_at)
        self.assertEqual(stored.last_sync_status, "error")

    def test_unexpected_error_is_reported_not_raised(self) -> None:
        self.fetcher.error = RuntimeError("boom")
        result = self.engine.run("sync-1")
        self.assertEqual(result.kind, "error")
        self.assertIn("boom", result.message)
        self.assertFalse(self.gate.is_syncing("sync-1"))

    def test_uploaded_import_decoded_without_network(self) -> None:
        engine = SyncEngine(self.config_manager, self.store, clock=lambda: self.now)
        self.store.create_external_sync(
            ExternalSync(
                id="import-1",
                calendar_id="cal-1",
                name="Upload",
                sync_type="custom",
                calendar_url=encode_data_url(feed(("x", "20260310T090000Z", "Imported"))),
                is_one_time_import=True,
                created_at=START,
                updated_at=START,
            )
        )

        with mock.patch("shiftsync.ics_feed.requests.get") as get:
            result = engine.run("import-1", trigger="import")

        self.assertTrue(result.ok)
        get.assert_not_called()
        self.assertEqual([s.title for s in self.store.list_sync_shifts("import-1")], ["Imported"])


class SyncGateTests(unittest.TestCase):
    def test_holding_releases_only_when_acquired(self) -> None:
        gate = SyncGate()
        with gate.holding("a") as first:
            self.assertTrue(first)
            with gate.holding("a") as second:
                self.assertFalse(second)
            self.assertTrue(gate.is_syncing("a"))
        self.assertEqual(gate.active(), set())


if __name__ == "__main__":
    unittest.main()
