"""Translation of command intents into WLED JSON API requests."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .typed_values import TypedValue, to_plain_json

STATE_PATH = "/json/state"
INFO_PATH = "/json/info"
CONFIG_PATH = "/json/cfg"


class CommandIntent(str, Enum):
    """Intents understood by the bridge."""

    GET_STATE = "getState"
    GET_INFO = "getInfo"
    SET_STATE = "setState"
    APPLY_JSON = "applyJson"
    RENAME_SEGMENT = "renameSegment"
    APPLY_TO_SEGMENTS = "applyToSegments"
    APPLY_CONFIG = "applyConfig"
    SET_CONFIG = "setConfig"
    CONFIGURE_SYNC_RECEIVER = "configureSyncReceiver"
    CONFIGURE_SYNC_SENDER = "configureSyncSender"

    @classmethod
    def parse(cls, name: Any) -> Optional["CommandIntent"]:
        """Return the matching intent, or ``None`` when it is not known."""
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(slots=True, frozen=True)
class DeviceRequest:
    method: str
    path: str
    body: Optional[Any] = None


_READ_ROUTES: dict[CommandIntent, str] = {
    CommandIntent.GET_STATE: STATE_PATH,
    CommandIntent.GET_INFO: INFO_PATH,
}

_WRITE_ROUTES: dict[CommandIntent, str] = {
    CommandIntent.SET_STATE: STATE_PATH,
    CommandIntent.APPLY_JSON: STATE_PATH,
    CommandIntent.RENAME_SEGMENT: STATE_PATH,
    CommandIntent.APPLY_TO_SEGMENTS: STATE_PATH,
    CommandIntent.APPLY_CONFIG: CONFIG_PATH,
    CommandIntent.SET_CONFIG: CONFIG_PATH,
    CommandIntent.CONFIGURE_SYNC_RECEIVER: CONFIG_PATH,
    CommandIntent.CONFIGURE_SYNC_SENDER: CONFIG_PATH,
}


def map_intent(
    intent: CommandIntent | str, payload: Optional[TypedValue] = None
) -> DeviceRequest:
    """Map an intent and its payload onto a device request.

    Unknown intents are treated as a state update, so this never fails.
    """

    resolved = intent if isinstance(intent, CommandIntent) else CommandIntent.parse(intent)

    if resolved in _READ_ROUTES:
        return DeviceRequest("GET", _READ_ROUTES[resolved])

    path = _WRITE_ROUTES.get(resolved, STATE_PATH) if resolved else STATE_PATH
    return DeviceRequest("POST", path, _plain_body(payload))


def _plain_body(payload: Optional[TypedValue]) -> Any:
    if payload is None:
        return {}
    body = to_plain_json(payload)
    return {} if body is None else body
