import unittest
from datetime import datetime, timedelta, timezone

from bbms.alerts import (
    AlertRecord,
    TransitionKind,
    evaluate,
    latest_alerts,
    newest,
    severity_for,
)
from bbms.ledger import LedgerDocument
from bbms.reconcile import DeviceReading

BASE = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _reading(temperature, minutes=0, device_id="d1"):
    return DeviceReading(
        device_id=device_id,
        temperature=temperature,
        location="Server Room",
        name="Rack Sensor",
        observed_at=BASE + timedelta(minutes=minutes),
    )


def _as_document(record, doc_id):
    return LedgerDocument(id=doc_id, collection_id="alerts", fields=record.to_fields())


class EvaluateTests(unittest.TestCase):
    def test_trigger_then_resolve(self):
        triggered = evaluate(_reading(45.5, 0), 40.0, None)
        self.assertEqual(triggered.kind, TransitionKind.TRIGGERED)
        self.assertFalse(triggered.record.resolved)
        self.assertEqual(triggered.record.current_value, 45.5)
        self.assertEqual(triggered.record.limit, 40.0)

        resolved = evaluate(_reading(38.0, 1), 40.0, triggered.record)
        self.assertEqual(resolved.kind, TransitionKind.RESOLVED)
        self.assertTrue(resolved.record.resolved)
        self.assertEqual(resolved.record.resolves, triggered.record.timestamp)
        self.assertGreater(resolved.record.timestamp, triggered.record.timestamp)

    def test_repeated_over_limit_readings_trigger_once(self):
        first = evaluate(_reading(45.5, 0), 40.0, None)
        second = evaluate(_reading(47.0, 1), 40.0, first.record)
        self.assertEqual(first.kind, TransitionKind.TRIGGERED)
        self.assertEqual(second.kind, TransitionKind.NONE)
        self.assertFalse(second.emitted)

    def test_no_resolution_without_active_alert(self):
        self.assertEqual(evaluate(_reading(30.0), 40.0, None).kind, TransitionKind.NONE)

        triggered = evaluate(_reading(45.0, 0), 40.0, None).record
        resolved = evaluate(_reading(30.0, 1), 40.0, triggered).record
        again = evaluate(_reading(29.0, 2), 40.0, resolved)
        self.assertEqual(again.kind, TransitionKind.NONE)

    def test_retrigger_after_resolution(self):
        triggered = evaluate(_reading(45.0, 0), 40.0, None).record
        resolved = evaluate(_reading(30.0, 1), 40.0, triggered).record
        retriggered = evaluate(_reading(41.0, 2), 40.0, resolved)
        self.assertEqual(retriggered.kind, TransitionKind.TRIGGERED)

    def test_reading_at_limit_is_normal(self):
        self.assertEqual(evaluate(_reading(40.0), 40.0, None).kind, TransitionKind.NONE)

    def test_stale_reading_never_transitions(self):
        triggered = evaluate(_reading(45.0, 5), 40.0, None).record
        stale = evaluate(_reading(30.0, 1), 40.0, triggered)
        self.assertEqual(stale.kind, TransitionKind.NONE)

    def test_severity(self):
        self.assertEqual(severity_for(45.0, 40.0), "high")
        self.assertEqual(severity_for(50.0, 40.0), "critical")
        record = evaluate(_reading(55.0), 40.0, None).record
        self.assertEqual(record.severity, "critical")


class LatestAlertsTests(unittest.TestCase):
    def _records(self):
        triggered = evaluate(_reading(45.0, 0), 40.0, None).record
        resolved = evaluate(_reading(30.0, 1), 40.0, triggered).record
        return triggered, resolved

    def test_record_roundtrips_through_ledger_fields(self):
        triggered, _ = self._records()
        rebuilt = AlertRecord.from_document(_as_document(triggered, "t1"))
        self.assertEqual(rebuilt.device_id, "d1")
        self.assertEqual(rebuilt.timestamp, triggered.timestamp)
        self.assertFalse(rebuilt.resolved)
        self.assertEqual(rebuilt.severity, triggered.severity)

    def test_active_until_matching_resolution(self):
        triggered, resolved = self._records()
        state = latest_alerts([_as_document(triggered, "t1")])
        self.assertFalse(state["d1"].resolved)

        state = latest_alerts(
            [_as_document(resolved, "r1"), _as_document(triggered, "t1")]
        )
        self.assertTrue(state["d1"].resolved)

    def test_old_resolution_does_not_close_newer_trigger(self):
        triggered, resolved = self._records()
        newer = evaluate(_reading(46.0, 5), 40.0, resolved).record
        state = latest_alerts(
            [
                _as_document(triggered, "t1"),
                _as_document(resolved, "r1"),
                _as_document(newer, "t2"),
            ]
        )
        self.assertFalse(state["d1"].resolved)
        self.assertEqual(state["d1"].timestamp, newer.timestamp)

    def test_unresolved_wins_timestamp_tie(self):
        triggered, _ = self._records()
        legacy = LedgerDocument(
            id="r-legacy",
            collection_id="alerts",
            fields={
                "coreid": "d1",
                "device_type": "alert",
                "resolved": True,
                "timestamp": triggered.timestamp,
            },
        )
        state = latest_alerts([legacy, _as_document(triggered, "t1")])
        self.assertFalse(state["d1"].resolved)

    def test_malformed_alert_documents_are_skipped(self):
        broken = LedgerDocument(
            id="b", collection_id="alerts", fields={"device_type": "alert"}
        )
        self.assertEqual(latest_alerts([broken]), {})

    def test_string_resolved_flag(self):
        triggered, _ = self._records()
        fields = dict(triggered.to_fields(), resolved="true", timestamp=triggered.timestamp + 5)
        fields.pop("resolves", None)
        closing = LedgerDocument(id="r", collection_id="alerts", fields=fields)
        state = latest_alerts([_as_document(triggered, "t1"), closing])
        self.assertTrue(state["d1"].resolved)

    def test_newest(self):
        triggered, resolved = self._records()
        self.assertIs(newest(triggered, resolved), resolved)
        self.assertIs(newest(None, triggered), triggered)
        self.assertIs(newest(triggered, None), triggered)


if __name__ == "__main__":
    unittest.main()
