"""Bootstrap environment variables. No local dependencies - import first."""

import json
import os
from pathlib import Path


def string_to_bool(s: str) -> bool:
    """Convert string to boolean."""
    return s.lower() in ["true", "yes", "1", "y"]


def _read_debug_from_config() -> bool:
    """Read DEBUG from env var or settings file (import-time safe)."""
    env_debug = os.environ.get("DEBUG")
    if env_debug is not None:
        return string_to_bool(env_debug)

    config_file = Path(os.getenv("CONFIG_DIR", "/config")) / "settings.json"
    if config_file.exists():
        try:
            with open(config_file, "r") as f:
                config = json.load(f)
                if "DEBUG" in config:
                    return bool(config["DEBUG"])
        except (json.JSONDecodeError, OSError):
            pass

    return False


# =============================================================================
# Bootstrap paths - needed before the settings store is available
# =============================================================================

CONFIG_DIR = Path(os.getenv("CONFIG_DIR", "/config"))
SETTINGS_FILE = CONFIG_DIR / "settings.json"
LOG_ROOT = Path(os.getenv("LOG_ROOT", "/var/log/"))
LOG_DIR = LOG_ROOT / "bookwarden"
LOG_FILE = LOG_DIR / "bookwarden.log"


# =============================================================================
# Logger configuration
# =============================================================================

DEBUG = _read_debug_from_config()
LOG_LEVEL = "DEBUG" if DEBUG else "INFO"
ENABLE_LOGGING = string_to_bool(os.getenv("ENABLE_LOGGING", "true"))

