import json
import tempfile
import unittest
from pathlib import Path

from config import DEFAULT_RECEIVE_DIR, DEFAULT_SHARED_DIR
from settings import SettingsStore


class SettingsStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = Path(self.tmp.name) / "conf" / "settings.json"

    def test_defaults_when_file_is_missing(self):
        store = SettingsStore(self.path)
        self.assertEqual(store.settings.shared_dir, DEFAULT_SHARED_DIR)
        self.assertEqual(store.settings.receive_dir, DEFAULT_RECEIVE_DIR)
        self.assertFalse(self.path.exists())

    def test_update_persists(self):
        store = SettingsStore(self.path)
        store.update(receive_dir="/srv/inbox", shared_dir=None)

        self.assertEqual(json.loads(self.path.read_text())["receive_dir"], "/srv/inbox")
        reloaded = SettingsStore(self.path)
        self.assertEqual(reloaded.settings.receive_dir, "/srv/inbox")
        self.assertEqual(reloaded.settings.shared_dir, DEFAULT_SHARED_DIR)

    def test_corrupt_file_falls_back_to_defaults(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{broken")
        store = SettingsStore(self.path)
        self.assertEqual(store.settings.receive_dir, DEFAULT_RECEIVE_DIR)


if __name__ == "__main__":
    unittest.main()
