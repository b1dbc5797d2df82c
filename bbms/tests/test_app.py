import os
import time
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from bbms.app import create_app
from bbms.config import get_settings
from bbms.dependencies import (
    get_audit_log,
    get_document_store,
    get_identity_client,
    get_registry,
    reset_dependencies,
)

TEST_ENV = {
    "USE_IN_MEMORY_BACKENDS": "true",
    "REDIS_URL": "",
    "RUBIDEX_COLLECTION_ID": "readings",
    "RUBIDEX_TEMP_ALERT_COLLECTION_ID": "",
    "MONITOR_ENABLED": "false",
}

AUTH = {"Authorization": "Bearer tok"}


class BackendApiTests(unittest.TestCase):
    def setUp(self):
        env = patch.dict(os.environ, TEST_ENV)
        env.start()
        self.addCleanup(env.stop)
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)
        reset_dependencies()
        self.addCleanup(reset_dependencies)

        self.client = TestClient(create_app())
        get_identity_client().add_token("tok", "user-1", "basic")

    def _post_reading(self, device_id="d1", temperature=22.5, **extra):
        response = self.client.post(
            "/api/temperature/reading",
            json={"deviceId": device_id, "temperature": temperature, **extra},
            headers=AUTH,
        )
        self.assertEqual(response.status_code, 200)
        return response.json()

    def test_health_needs_no_token(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "OK")

    def test_missing_and_invalid_tokens(self):
        response = self.client.get("/api/devices")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["kind"], "MissingToken")

        response = self.client.get(
            "/api/devices", headers={"Authorization": "Bearer forged"}
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["kind"], "InvalidToken")

    def test_reading_shows_up_in_current_temperatures(self):
        saved = self._post_reading(location="Lobby", deviceName="Lobby Sensor")
        self.assertTrue(saved["success"])
        self.assertEqual(saved["data"]["fields"]["data"], "22.5")

        response = self.client.get("/api/temperature/current", headers=AUTH)
        self.assertEqual(response.status_code, 200)
        [current] = response.json()
        self.assertEqual(current["deviceId"], "d1")
        self.assertEqual(current["temperature"], 22.5)
        self.assertEqual(current["location"], "Lobby")

        devices = self.client.get("/api/devices", headers=AUTH).json()
        self.assertEqual(devices[0]["status"], "Online")
        self.assertEqual(devices[0]["name"], "Lobby Sensor")

    def test_reading_omits_fields_that_were_not_sent(self):
        self._post_reading(temperature=21.0)

        [document] = get_document_store().fetch_all("readings")
        self.assertNotIn("location", document.fields)
        self.assertNotIn("alert_limit", document.fields)
        self.assertEqual(document.fields["data"], "21.0")

        self._post_reading("d2", location="Lab", alertLimit=30.0)
        stored = {doc.fields["coreid"]: doc.fields for doc in get_document_store().fetch_all("readings")}
        self.assertEqual(stored["d2"]["location"], "Lab")
        self.assertEqual(stored["d2"]["alert_limit"], 30.0)

    def test_unknown_device_is_404(self):
        response = self.client.get("/api/devices/nope", headers=AUTH)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["kind"], "NotFound")

    def test_device_detail_and_history(self):
        self._post_reading(temperature=20.0)
        self._post_reading(temperature=37.0)

        device = self.client.get("/api/devices/d1", headers=AUTH).json()
        self.assertEqual(device["status"], "Warning")

        history = self.client.get(
            "/api/devices/d1/history", params={"timeRange": "day"}, headers=AUTH
        ).json()
        self.assertEqual([point["value"] for point in history], [20.0, 37.0])

    def test_alert_is_written_to_ledger(self):
        response = self.client.post(
            "/api/temperature/alert",
            json={"deviceId": "d1", "temperature": 55.0, "limit": 40.0},
            headers=AUTH,
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["documentId"])

        [document] = get_document_store().fetch_all("readings")
        self.assertEqual(document.fields["device_type"], "alert")
        self.assertEqual(document.fields["severity"], "critical")

    def test_documents_endpoints(self):
        self._post_reading("d1")
        self._post_reading("d2")

        listing = self.client.get("/api/documents/all", headers=AUTH).json()
        self.assertEqual(len(listing["result"]), 2)
        self.assertIsNotNone(listing["latestDocument"])

        per_device = self.client.get("/api/documents/device/d2", headers=AUTH).json()
        self.assertEqual(per_device["count"], 1)

        check = self.client.get("/api/documents/test", headers=AUTH).json()
        self.assertEqual(check["documentsCount"], 2)


class RealtimeChannelTests(unittest.TestCase):
    def setUp(self):
        env = patch.dict(os.environ, TEST_ENV)
        env.start()
        self.addCleanup(env.stop)
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)
        reset_dependencies()
        self.addCleanup(reset_dependencies)

        self.client = TestClient(create_app())
        get_identity_client().add_token("tok", "user-1", "basic")
        get_identity_client().add_token("low", "user-2", "basic")

    def _subscribe(self, websocket, device_id="d1"):
        websocket.send_json({"event": "subscribe_temperature", "deviceId": device_id})
        return websocket.receive_json()

    def test_subscribe_without_token_is_rejected(self):
        with self.client.websocket_connect("/ws") as websocket:
            reply = self._subscribe(websocket)
        self.assertEqual(reply["event"], "subscription_rejected")
        self.assertEqual(reply["kind"], "MissingToken")
        self.assertEqual(get_registry().subscribers("d1"), ())

    def test_subscribe_with_invalid_token_is_rejected(self):
        with self.client.websocket_connect("/ws?token=forged") as websocket:
            reply = self._subscribe(websocket)
        self.assertEqual(reply["kind"], "InvalidToken")

    def test_insufficient_access_level_is_rejected(self):
        get_registry().device_access_levels["vault"] = "admin"
        with self.client.websocket_connect("/ws?token=low") as websocket:
            reply = self._subscribe(websocket, "vault")
        self.assertEqual(reply["kind"], "InsufficientAccessLevel")

    def test_invalid_frames_get_error_events(self):
        with self.client.websocket_connect("/ws", headers=AUTH) as websocket:
            websocket.send_text("not json")
            self.assertEqual(websocket.receive_json()["event"], "error")
            websocket.send_json({"event": "subscribe_temperature"})
            self.assertEqual(websocket.receive_json()["event"], "error")

    def test_subscriber_receives_updates_until_disconnect(self):
        with self.client.websocket_connect("/ws", headers=AUTH) as websocket:
            reply = self._subscribe(websocket)
            self.assertEqual(reply, {"event": "subscribed", "deviceId": "d1"})
            self.assertEqual(len(get_audit_log().events), 1)

            self.client.post(
                "/api/temperature/reading",
                json={"deviceId": "d1", "temperature": 23.0},
                headers=AUTH,
            )
            self.client.get("/api/temperature/current", headers=AUTH)

            update = websocket.receive_json()
            self.assertEqual(update["event"], "temperature_update")
            self.assertEqual(update["deviceId"], "d1")
            self.assertEqual(update["temperature"], 23.0)

            websocket.send_json({"event": "unsubscribe_temperature", "deviceId": "d1"})
            self.assertEqual(websocket.receive_json()["event"], "unsubscribed")
            self._subscribe(websocket)

        deadline = time.time() + 2.0
        while get_registry().subscribers("d1") and time.time() < deadline:
            time.sleep(0.01)
        self.assertEqual(get_registry().subscribers("d1"), ())


if __name__ == "__main__":
    unittest.main()
