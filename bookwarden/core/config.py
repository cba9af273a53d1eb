"""Settings store backed by a JSON file with environment variable overrides."""

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from bookwarden.config import env
from bookwarden.core.logger import setup_logger

logger = setup_logger(__name__)

DEFAULTS: Dict[str, Any] = {
    "BOOKSHELF_URL": "",
    "BOOKSHELF_API_KEY": "",
    "BOOKSHELF_TIMEOUT": 30,
    "BOOKSHELF_METADATA_PROFILE_ID": 1,
    "BOOKSHELF_LIBRARY_CACHE_TTL": 60,
    "POLL_MAX_WORKERS": 1,
    "ADMIN_NOTIFICATION_ROUTES": [],
}


def _coerce_env_value(raw: str, default: Any) -> Any:
    """Interpret an environment string using the type of the default value."""
    if isinstance(default, bool):
        return env.string_to_bool(raw)
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Ignoring non-integer environment value: {raw!r}")
            return default
    if isinstance(default, (list, dict)):
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring non-JSON environment value: {raw!r}")
            return default
    return raw


class Config:
    """Thread-safe settings store.

    Resolution order for ``get``: environment variable, then the persisted
    settings file, then the built-in default.
    """

    def __init__(self, settings_path: Optional[Path] = None):
        self._settings_path = Path(settings_path or env.SETTINGS_FILE)
        self._lock = threading.Lock()
        self._values: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._values is not None:
            return self._values
        values: Dict[str, Any] = {}
        if self._settings_path.exists():
            try:
                with open(self._settings_path, "r") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    values = loaded
                else:
                    logger.warning(f"Settings file {self._settings_path} is not an object; ignoring")
            except (json.JSONDecodeError, OSError) as e:
                logger.error(f"Failed to read settings file {self._settings_path}: {e}")
        self._values = values
        return values

    def get(self, key: str, default: Any = None) -> Any:
        fallback = DEFAULTS.get(key) if default is None else default
        raw_env = os.environ.get(key)
        if raw_env is not None:
            return _coerce_env_value(raw_env, fallback)
        with self._lock:
            values = self._load()
            if key in values:
                return values[key]
        return fallback

    def set(self, values: Dict[str, Any]) -> None:
        """Merge values into the settings file. ``None`` clears a key."""
        with self._lock:
            current = dict(self._load())
            current.update(values)
            current = {k: v for k, v in current.items() if v is not None}
            self._settings_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._settings_path.with_suffix(".tmp")
            with open(tmp_path, "w") as f:
                json.dump(current, f, indent=2)
            os.replace(tmp_path, self._settings_path)
            self._values = current
        logger.info(f"Saved settings: {', '.join(sorted(values))}")

    def reload(self) -> None:
        with self._lock:
            self._values = None

    def is_bookshelf_configured(self) -> bool:
        return bool(str(self.get("BOOKSHELF_URL") or "").strip()) and bool(
            str(self.get("BOOKSHELF_API_KEY") or "").strip()
        )


config = Config()
