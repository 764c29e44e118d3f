"""Constants used across the lumina-bridge package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "lumina-bridge"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_DEVICE_PORT = 80

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 8883
DEFAULT_TOPIC_NAMESPACE = "lumina"

DEFAULT_FIRESTORE_BASE_URL = "https://firestore.googleapis.com/v1"
DEFAULT_AUTH_BASE_URL = "https://identitytoolkit.googleapis.com/v1"
DEFAULT_TOKEN_BASE_URL = "https://securetoken.googleapis.com/v1"
DEFAULT_COMMANDS_COLLECTION = "commands"

MODE_PULL = "pull"
MODE_PUSH = "push"
