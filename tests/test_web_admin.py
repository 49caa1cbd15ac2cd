import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from calmirror.models import MappingRecord
from calmirror.state_store import LAST_RUN_STATUS
from calmirror.web_admin import create_app


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        self.app = create_app(self.config_path, self.state_path, start_scheduler=False)
        self.client = TestClient(self.app)

        # Seed non-empty secrets for masking/preserve tests.
        seed_payload = {
            "sync": {"interval_seconds": 300, "timezone": "UTC"},
            "destination": {"kind": "google", "calendar_id": "mirror@example.com", "access_token": "dest-secret"},
            "subscriptions": [
                {"id": "team", "source": {"kind": "ics", "url": "https://example.com/team.ics"}},
                {"id": "work", "source": {"kind": "microsoft", "access_token": "graph-secret"}, "enabled": False},
            ],
        }
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok", "scheduler_running": False, "sync_busy": False})

    def test_get_config_is_masked(self) -> None:
        data = self.client.get("/api/config").json()
        self.assertEqual(data["destination"]["access_token"], "***")
        self.assertEqual(data["subscriptions"][1]["source"]["access_token"], "***")
        self.assertEqual(data["subscriptions"][0]["source"]["url"], "https://example.com/team.ics")

    def test_put_config_empty_secret_does_not_override(self) -> None:
        update = {"destination": {"calendar_id": "other@example.com", "access_token": ""}}
        resp = self.client.put("/api/config", json={"payload": update})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["destination"]["calendar_id"], "other@example.com")
        config = self.app.state.context.config_manager.load()
        self.assertEqual(config.destination.access_token, "dest-secret")

    def test_put_config_masked_secrets_do_not_override(self) -> None:
        masked = self.client.get("/api/config").json()
        masked["subscriptions"][1]["enabled"] = True
        resp = self.client.put("/api/config", json={"payload": masked})
        self.assertEqual(resp.status_code, 200)

        config = self.app.state.context.config_manager.load()
        self.assertEqual(config.destination.access_token, "dest-secret")
        self.assertEqual(config.subscriptions[1].source.access_token, "graph-secret")
        self.assertTrue(config.subscriptions[1].enabled)

    def test_put_config_rejects_unknown_source_kind(self) -> None:
        update = {"subscriptions": [{"id": "bad", "source": {"kind": "carrier-pigeon"}}]}
        resp = self.client.put("/api/config", json={"payload": update})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("carrier-pigeon", resp.json()["detail"])

    def test_sync_run_wait_without_enabled_subscriptions(self) -> None:
        self.client.put(
            "/api/config",
            json={"payload": {"subscriptions": [{"id": "team", "source": {"kind": "ics"}, "enabled": False}]}},
        )
        resp = self.client.post("/api/sync/run", json={"wait": True})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["status"], "skipped")

        runs = self.client.get("/api/sync/status").json()["runs"]
        self.assertEqual(runs[0]["status"], "skipped")

    def test_sync_run_in_background(self) -> None:
        with mock.patch.object(self.app.state.context.scheduler, "trigger_manual", return_value=True) as trigger:
            resp = self.client.post("/api/sync/run")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"message": "sync triggered", "accepted": True})
        trigger.assert_called_once_with()

    def test_sync_run_conflict_while_busy(self) -> None:
        with mock.patch.object(type(self.app.state.context.scheduler), "is_busy", new_callable=mock.PropertyMock) as busy:
            busy.return_value = True
            resp = self.client.post("/api/sync/run", json={"wait": True})
        self.assertEqual(resp.status_code, 409)

    def test_subscription_status(self) -> None:
        context = self.app.state.context
        context.state_store.set_state("team", LAST_RUN_STATUS, "success")
        context.state_store.upsert_mapping(
            MappingRecord(subscription_id="team", source_event_id="evt-1", destination_event_id="g-1")
        )

        subscriptions = self.client.get("/api/subscriptions/status").json()["subscriptions"]

        self.assertEqual([item["id"] for item in subscriptions], ["team", "work"])
        self.assertEqual(subscriptions[0]["last_run_status"], "success")
        self.assertEqual(subscriptions[0]["mapped_events"], 1)
        self.assertEqual(subscriptions[0]["target_calendar_id"], "mirror@example.com")
        self.assertIsNone(subscriptions[1]["last_run_status"])
        self.assertFalse(subscriptions[1]["enabled"])

    def test_debug_run_and_audit_events(self) -> None:
        store = self.app.state.context.state_store
        run_id = store.start_sync_run(trigger="manual")
        store.record_audit_event(
            subscription_id="team", source_event_id="evt-1", action="create", details={"title": "A"}, run_id=run_id
        )

        resp = self.client.get(f"/api/debug/runs/{run_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["run"]["status"], "running")
        self.assertEqual(resp.json()["events"][0]["action"], "create")

        self.assertEqual(self.client.get("/api/debug/runs/9999").status_code, 404)
        events = self.client.get("/api/audit/events", params={"run_id": run_id}).json()["events"]
        self.assertEqual(len(events), 1)


if __name__ == "__main__":
    unittest.main()
