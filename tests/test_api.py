import json
import os
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from discovery.models import Peer
from settings import SettingsStore
from transfer import errors
from transfer.errors import TransferError
from transfer.models import TransferTask


class FakeDiscovery:
    def __init__(self):
        self.device_name = "box"
        self.shared_dir = ""
        self.announced = 0

    async def get_peers(self):
        return [Peer(id="10.0.0.7", display_name="laptop", last_seen_at=1.0)]

    def announce_now(self):
        self.announced += 1
        return 3


class FakeManager:
    def __init__(self):
        self.receiver = SimpleNamespace(receive_dir="")
        self.tasks = {}
        self.fail_with = None

    async def start_transfer(self, source_path, target_address):
        if self.fail_with:
            raise self.fail_with
        task = TransferTask(
            id="42", source_path=source_path, file_name="a.txt",
            target_address=target_address, target_name=target_address, total_bytes=3,
        )
        self.tasks[task.id] = task
        return task.id

    def get_transfer(self, transfer_id):
        return self.tasks.get(transfer_id)

    def get_transfers(self):
        return list(self.tasks.values())

    def cancel_transfer(self, transfer_id):
        return transfer_id in self.tasks


class RoutesTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.discovery = FakeDiscovery()
        self.manager = FakeManager()
        self.store = SettingsStore(Path(self.tmp.name) / "settings.json")
        init_routes(self.discovery, self.manager, self.store)

        app = FastAPI()
        app.include_router(router)
        self.client = TestClient(app)

    def test_list_devices(self):
        response = self.client.get("/api/devices")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["devices"][0]["status"], "online")

    def test_refresh_announces(self):
        response = self.client.post("/api/devices/refresh")
        self.assertEqual(response.json()["destinations"], 3)
        self.assertEqual(self.discovery.announced, 1)

    def test_create_transfer(self):
        response = self.client.post(
            "/api/transfers", json={"source_path": "/tmp/a.txt", "target_address": "10.0.0.7"}
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["status"], "pending")
        self.assertEqual(len(self.client.get("/api/transfers").json()["transfers"]), 1)

    def test_validation_error_is_400(self):
        self.manager.fail_with = TransferError(errors.SELF_TRANSFER, "Cannot send a file to this device")
        response = self.client.post(
            "/api/transfers", json={"source_path": "/tmp/a.txt", "target_address": "127.0.0.1"}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["code"], errors.SELF_TRANSFER)

    def test_connectivity_error_is_502(self):
        self.manager.fail_with = TransferError(errors.ECONNREFUSED, "refused")
        response = self.client.post(
            "/api/transfers", json={"source_path": "/tmp/a.txt", "target_address": "10.0.0.9"}
        )
        self.assertEqual(response.status_code, 502)

    def test_cancel_unknown_is_404(self):
        self.assertEqual(self.client.post("/api/transfers/nope/cancel").status_code, 404)
        self.assertEqual(self.client.get("/api/transfers/nope").status_code, 404)

    def test_update_settings(self):
        response = self.client.put(
            "/api/settings",
            json={"device_name": "den", "shared_dir": self.tmp.name, "receive_dir": "/x/inbox"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.discovery.device_name, "den")
        self.assertEqual(self.manager.receiver.receive_dir, "/x/inbox")
        self.assertEqual(SettingsStore(self.store.path).settings.device_name, "den")

    def test_missing_shared_dir_is_rejected(self):
        response = self.client.put(
            "/api/settings", json={"shared_dir": os.path.join(self.tmp.name, "missing")}
        )
        self.assertEqual(response.status_code, 400)


class FakeSocket:
    def __init__(self, broken=False):
        self.broken = broken
        self.accepted = False
        self.messages = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.broken:
            raise RuntimeError("socket is closed")
        self.messages.append(json.loads(text))


class ConnectionManagerTests(unittest.IsolatedAsyncioTestCase):
    async def test_events_reach_clients_and_broken_ones_are_dropped(self):
        manager = ConnectionManager()
        healthy, broken = FakeSocket(), FakeSocket(broken=True)
        await manager.connect(healthy)
        await manager.connect(broken)
        self.assertTrue(healthy.accepted)
        self.assertEqual(manager.connection_count, 2)

        await manager.handle_event("peer-discovered", {"id": "10.0.0.7"})

        self.assertEqual(healthy.messages, [{"event": "peer-discovered", "data": {"id": "10.0.0.7"}}])
        self.assertEqual(manager.connection_count, 1)

        await manager.disconnect(healthy)
        await manager.handle_event("peer-expired", {"id": "10.0.0.7"})
        self.assertEqual(len(healthy.messages), 1)


if __name__ == "__main__":
    unittest.main()
