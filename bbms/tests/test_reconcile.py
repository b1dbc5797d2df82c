import itertools
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from bbms.errors import LedgerUnavailable, ReconciliationUnavailable
from bbms.ledger import LedgerDocument
from bbms.reconcile import (
    device_history,
    load_snapshot,
    parse_temperature,
    reconcile,
)


def _doc(doc_id, coreid, data, updated, device_type="temperature_sensor", **extra):
    fields = {"coreid": coreid, "data": data, **extra}
    if device_type is not None:
        fields["device_type"] = device_type
    return LedgerDocument.from_payload(
        {"id": doc_id, "fields": fields, "updateDate": updated}
    )


T1 = "2025-01-01T10:00:00Z"
T2 = "2025-01-01T10:05:00Z"
T3 = "2025-01-01T10:10:00Z"


class ReconcileTests(unittest.TestCase):
    def test_latest_update_wins(self):
        documents = [_doc("a", "d1", "72.5", T1), _doc("b", "d1", "75.0", T2)]
        readings = reconcile(documents)

        self.assertEqual(list(readings), ["d1"])
        self.assertEqual(readings["d1"].temperature, 75.0)
        self.assertEqual(
            readings["d1"].observed_at, datetime(2025, 1, 1, 10, 5, tzinfo=timezone.utc)
        )

    def test_order_does_not_matter(self):
        documents = [
            _doc("a", "d1", "72.5", T1),
            _doc("b", "d1", "75.0", T2),
            _doc("c", "d2", "20.0", T3),
            _doc("d", "d2", "19.0", T1),
            _doc("e", "d3", "abc", T2),
        ]
        expected = reconcile(documents)
        for permutation in itertools.permutations(documents):
            self.assertEqual(reconcile(list(permutation)), expected)
        self.assertEqual(reconcile(documents), expected)

    def test_identical_timestamps_later_document_wins(self):
        first = _doc("a", "d1", "10.0", T1)
        second = _doc("b", "d1", "11.0", T1)
        self.assertEqual(reconcile([first, second])["d1"].temperature, 11.0)
        self.assertEqual(reconcile([second, first])["d1"].temperature, 10.0)

    def test_malformed_data_reads_as_zero_without_affecting_others(self):
        documents = [_doc("a", "d1", "not-a-number", T1), _doc("b", "d2", "21.5", T1)]
        readings = reconcile(documents)
        self.assertEqual(readings["d1"].temperature, 0.0)
        self.assertEqual(readings["d2"].temperature, 21.5)

    def test_documents_without_coreid_are_skipped(self):
        broken = LedgerDocument.from_payload(
            {"id": "x", "fields": {"data": "30", "device_type": "temperature_sensor"}}
        )
        readings = reconcile([broken, _doc("a", "d1", "22", T1)])
        self.assertEqual(list(readings), ["d1"])

    def test_other_document_types_are_ignored(self):
        documents = [
            _doc("a", "d1", "22", T1),
            _doc("b", "d1", "{}", T3, device_type="device_config"),
            _doc("c", "d1", "99", T3, device_type="alert"),
        ]
        self.assertEqual(reconcile(documents)["d1"].temperature, 22.0)

    def test_untyped_documents_need_the_flag(self):
        documents = [_doc("a", "d1", "22", T1, device_type=None)]
        self.assertEqual(reconcile(documents), {})
        self.assertEqual(
            reconcile(documents, include_untyped=True)["d1"].temperature, 22.0
        )

    def test_reading_carries_metadata(self):
        reading = reconcile(
            [_doc("a", "d1", "22", T1, location="Lobby", name="Sensor", alert_limit=30)]
        )["d1"]
        self.assertEqual(reading.location, "Lobby")
        self.assertEqual(reading.name, "Sensor")
        self.assertEqual(reading.alert_limit, 30.0)
        self.assertEqual(reading.document_id, "a")


class ParseTemperatureTests(unittest.TestCase):
    def test_values(self):
        self.assertEqual(parse_temperature("72.5"), 72.5)
        self.assertEqual(parse_temperature("72.5°C"), 72.5)
        self.assertEqual(parse_temperature(" -3"), -3.0)
        self.assertEqual(parse_temperature(18), 18.0)
        self.assertEqual(parse_temperature("NaN"), 0.0)
        self.assertEqual(parse_temperature("inf"), 0.0)
        self.assertEqual(parse_temperature(None), 0.0)
        self.assertEqual(parse_temperature(True), 0.0)
        self.assertEqual(parse_temperature("warm"), 0.0)


class HistoryTests(unittest.TestCase):
    def test_history_is_sorted_and_windowed(self):
        documents = [
            _doc("c", "d1", "3", T3),
            _doc("a", "d1", "1", T1),
            _doc("b", "d1", "2", T2),
            _doc("z", "d2", "9", T2),
        ]
        since = datetime(2025, 1, 1, 10, 1, tzinfo=timezone.utc)
        history = device_history(documents, "d1", since=since)
        self.assertEqual([r.temperature for r in history], [2.0, 3.0])


class LoadSnapshotTests(unittest.TestCase):
    def test_fetch_failure_becomes_reconciliation_unavailable(self):
        store = MagicMock()
        store.fetch_all.side_effect = LedgerUnavailable("down", upstream_status=502)
        with self.assertRaises(ReconciliationUnavailable) as ctx:
            load_snapshot(store, "readings")
        self.assertIsInstance(ctx.exception.cause, LedgerUnavailable)
        store.fetch_all.assert_called_once_with("readings")


if __name__ == "__main__":
    unittest.main()
