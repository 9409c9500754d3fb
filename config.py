import json
import os
from typing import Any, Dict

from spotify_remote.credential_store import DEFAULT_AUTH_PROFILES_PATH, DEFAULT_PROFILE_ID

CONFIG_PATH = "config.json"

# Default configuration values
DEFAULT_CONFIG = {
    # Spotify app credentials. SPOTIFY_CLIENT_ID / SPOTIFY_CLIENT_SECRET take precedence.
    "spotify_client_id": "",
    "spotify_client_secret": "",

    # Where OAuth credentials are stored (shared with the command scripts).
    "auth_profiles_path": DEFAULT_AUTH_PROFILES_PATH,
    "spotify_profile_id": DEFAULT_PROFILE_ID,

    # Local (non-VPS) login opens the authorize URL in the default browser.
    "open_browser": True,

    "log_level": "INFO",
    "log_file": "",
}

# Validation rules for config fields
CONFIG_SCHEMA = {
    "spotify_client_id": {"type": str, "required": False},
    "spotify_client_secret": {"type": str, "required": False},
    "auth_profiles_path": {"type": str, "required": True},
    "spotify_profile_id": {"type": str, "required": True},
    "open_browser": {"type": bool, "required": False},
    "log_level": {"type": str, "required": False, "choices": ["DEBUG", "INFO", "WARNING", "ERROR"]},
    "log_file": {"type": str, "required": False},
}


def load_config(path: str = CONFIG_PATH) -> Dict[str, Any]:
    """Load configuration from file, applying defaults for missing fields.

    The file is optional: without it the defaults (plus environment
    variables for the Spotify app credentials) are enough to log in.
    """
    config: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            config = json.load(f)
        if not isinstance(config, dict):
            raise ValueError(f"Config file {path} must contain a JSON object.")

    # Apply defaults for missing fields
    for key, value in DEFAULT_CONFIG.items():
        if key not in config:
            config[key] = value

    if config.get("auth_profiles_path"):
        config["auth_profiles_path"] = os.path.expanduser(str(config["auth_profiles_path"]))

    return config


def validate_config(config: Dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate configuration against schema.
    Returns (is_valid, list_of_errors).
    """
    errors = []

    for key, rules in CONFIG_SCHEMA.items():
        if rules.get("required", False) and not config.get(key):
            errors.append(f"Missing required field: {key}")
            continue

        if key not in config:
            continue

        value = config[key]

        expected_type = rules.get("type")
        if expected_type and not isinstance(value, expected_type):
            errors.append(f"Field '{key}' must be {expected_type.__name__}, got {type(value).__name__}")
            continue

        if "choices" in rules and value not in rules["choices"]:
            errors.append(f"Field '{key}' must be one of {rules['choices']}, got '{value}'")

    return len(errors) == 0, errors
