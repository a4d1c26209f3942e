"""Persisted user settings (device name, shared and receive directories)."""

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ValidationError

from config import DEFAULT_RECEIVE_DIR, DEFAULT_SHARED_DIR, DEVICE_NAME, SETTINGS_FILE

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    device_name: str = DEVICE_NAME
    shared_dir: str = DEFAULT_SHARED_DIR
    receive_dir: str = DEFAULT_RECEIVE_DIR


class SettingsStore:
    """Loads and saves ``Settings`` as JSON; missing or broken files fall back to defaults."""

    def __init__(self, path: Path = SETTINGS_FILE):
        self._path = Path(path)
        self.settings = Settings()
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            self.settings = Settings(**data)
            logger.info(f"Loaded settings from {self._path}")
        except (OSError, ValueError, TypeError, ValidationError) as e:
            logger.error(f"Failed to load settings, using defaults: {e}")

    def save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps(self.settings.model_dump(), indent=2), encoding="utf-8"
            )
        except OSError as e:
            logger.error(f"Failed to save settings: {e}")

    def update(self, **changes) -> Settings:
        """Apply non-None changes and persist them."""
        values = {k: v for k, v in changes.items() if v is not None}
        if values:
            self.settings = self.settings.model_copy(update=values)
            self.save()
        return self.settings
