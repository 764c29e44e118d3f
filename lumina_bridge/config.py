"""Configuration loader for lumina-bridge."""

from __future__ import annotations

import logging
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants

LOGGER = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when the configuration cannot be used."""


@dataclass(slots=True)
class BridgeSettings:
    mode: str = constants.MODE_PULL
    device_id: str = ""
    poll_interval_seconds: float = 2.0
    batch_limit: int = 5
    heartbeat_interval_seconds: float = 5.0
    state_publish_interval_seconds: float = 30.0  # push mode only, 0 disables
    mailbox_size: int = 32


@dataclass(slots=True)
class FirestoreConfig:
    project_id: str = ""
    api_key: str = ""
    user_uid: str = ""
    email: Optional[str] = None  # anonymous sign-in when absent
    password: Optional[str] = None
    collection: str = constants.DEFAULT_COMMANDS_COLLECTION
    base_url: str = constants.DEFAULT_FIRESTORE_BASE_URL
    auth_url: str = constants.DEFAULT_AUTH_BASE_URL
    token_url: str = constants.DEFAULT_TOKEN_BASE_URL
    request_timeout_seconds: float = 15.0


@dataclass(slots=True)
class MQTTConfig:
    broker_host: str = constants.DEFAULT_BROKER_HOST
    broker_port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    tls: bool = True
    keepalive: int = 60
    namespace: str = constants.DEFAULT_TOPIC_NAMESPACE
    client_id: Optional[str] = None


@dataclass(slots=True)
class DeviceConfig:
    host: str = ""  # default target for push-mode commands
    port: int = constants.DEFAULT_DEVICE_PORT
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    backoff: str = "fixed"
    reconnect_interval_seconds: float = 5.0
    reconnect_max_seconds: float = 60.0
    reconnect_jitter_ratio: float = 0.0
    attempt_timeout_seconds: float = 30.0
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(slots=True)
class BridgeConfig:
    bridge: BridgeSettings
    firestore: FirestoreConfig
    mqtt: MQTTConfig
    device: DeviceConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    raw: ConfigParser
    path: Path

    @property
    def is_push(self) -> bool:
        return self.bridge.mode == constants.MODE_PUSH

    def device_target(self) -> str:
        """Configured device address as ``host[:port]``."""
        host = self.device.host.strip()
        if not host or self.device.port == constants.DEFAULT_DEVICE_PORT:
            return host
        return f"{host}:{self.device.port}"


def _optional(parser: ConfigParser, section: str, option: str) -> Optional[str]:
    value = parser.get(section, option, fallback="").strip()
    return value or None


def load_config(path: Optional[Path] = None) -> BridgeConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "bridge": {
                "mode": constants.MODE_PULL,
                "device_id": "",
                "poll_interval_seconds": "2.0",
                "batch_limit": "5",
                "heartbeat_interval_seconds": "5.0",
                "state_publish_interval_seconds": "30.0",
                "mailbox_size": "32",
            },
            "firestore": {
                "project_id": "",
                "api_key": "",
                "user_uid": "",
                "collection": constants.DEFAULT_COMMANDS_COLLECTION,
                "base_url": constants.DEFAULT_FIRESTORE_BASE_URL,
                "auth_url": constants.DEFAULT_AUTH_BASE_URL,
                "token_url": constants.DEFAULT_TOKEN_BASE_URL,
                "request_timeout_seconds": "15.0",
            },
            "mqtt": {
                "broker_host": constants.DEFAULT_BROKER_HOST,
                "broker_port": str(constants.DEFAULT_BROKER_PORT),
                "tls": "true",
                "keepalive": "60",
                "namespace": constants.DEFAULT_TOPIC_NAMESPACE,
            },
            "device": {
                "host": "",
                "port": str(constants.DEFAULT_DEVICE_PORT),
                "timeout_seconds": "10.0",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "resilience": {
                "backoff": "fixed",
                "reconnect_interval_seconds": "5.0",
                "reconnect_max_seconds": "60.0",
                "reconnect_jitter_ratio": "0.0",
                "attempt_timeout_seconds": "30.0",
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    mode = parser.get("bridge", "mode").strip().lower()
    if mode not in (constants.MODE_PULL, constants.MODE_PUSH):
        raise ConfigurationError(
            f"Unsupported bridge mode {mode!r}; expected 'pull' or 'push'"
        )

    bridge = BridgeSettings(
        mode=mode,
        device_id=parser.get("bridge", "device_id").strip(),
        poll_interval_seconds=max(
            0.1, parser.getfloat("bridge", "poll_interval_seconds", fallback=2.0)
        ),
        batch_limit=max(1, parser.getint("bridge", "batch_limit", fallback=5)),
        heartbeat_interval_seconds=max(
            1.0, parser.getfloat("bridge", "heartbeat_interval_seconds", fallback=5.0)
        ),
        state_publish_interval_seconds=max(
            0.0,
            parser.getfloat("bridge", "state_publish_interval_seconds", fallback=30.0),
        ),
        mailbox_size=max(1, parser.getint("bridge", "mailbox_size", fallback=32)),
    )

    firestore = FirestoreConfig(
        project_id=parser.get("firestore", "project_id").strip(),
        api_key=parser.get("firestore", "api_key").strip(),
        user_uid=parser.get("firestore", "user_uid").strip(),
        email=_optional(parser, "firestore", "email"),
        password=_optional(parser, "firestore", "password"),
        collection=parser.get("firestore", "collection").strip()
        or constants.DEFAULT_COMMANDS_COLLECTION,
        base_url=parser.get("firestore", "base_url").rstrip("/"),
        auth_url=parser.get("firestore", "auth_url").rstrip("/"),
        token_url=parser.get("firestore", "token_url").rstrip("/"),
        request_timeout_seconds=max(
            1.0,
            parser.getfloat("firestore", "request_timeout_seconds", fallback=15.0),
        ),
    )

    broker_host_value = parser.get("mqtt", "broker_host")
    broker_port_value = parser.getint(
        "mqtt", "broker_port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("mqtt", "broker_host", host_part)
            parser.set("mqtt", "broker_port", str(parsed_port))

    mqtt = MQTTConfig(
        broker_host=broker_host_value,
        broker_port=broker_port_value,
        username=_optional(parser, "mqtt", "username"),
        password=_optional(parser, "mqtt", "password"),
        tls=parser.getboolean("mqtt", "tls", fallback=True),
        keepalive=max(5, parser.getint("mqtt", "keepalive", fallback=60)),
        namespace=parser.get("mqtt", "namespace").strip("/ ")
        or constants.DEFAULT_TOPIC_NAMESPACE,
        client_id=_optional(parser, "mqtt", "client_id"),
    )

    device = DeviceConfig(
        host=parser.get("device", "host").strip(),
        port=parser.getint("device", "port", fallback=constants.DEFAULT_DEVICE_PORT),
        timeout_seconds=max(
            0.5, parser.getfloat("device", "timeout_seconds", fallback=10.0)
        ),
    )

    if mode == constants.MODE_PUSH and device.timeout_seconds >= mqtt.keepalive / 2:
        LOGGER.warning(
            "Device timeout %.1fs is long relative to the MQTT keepalive (%ds)",
            device.timeout_seconds,
            mqtt.keepalive,
        )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    backoff = parser.get("resilience", "backoff", fallback="fixed").strip().lower()
    if backoff not in ("fixed", "exponential"):
        raise ConfigurationError(
            f"Unsupported backoff policy {backoff!r}; expected 'fixed' or 'exponential'"
        )

    resilience = ResilienceConfig(
        backoff=backoff,
        reconnect_interval_seconds=max(
            0.1,
            parser.getfloat("resilience", "reconnect_interval_seconds", fallback=5.0),
        ),
        reconnect_max_seconds=max(
            0.1, parser.getfloat("resilience", "reconnect_max_seconds", fallback=60.0)
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat("resilience", "reconnect_jitter_ratio", fallback=0.0),
            ),
        ),
        attempt_timeout_seconds=max(
            1.0,
            parser.getfloat("resilience", "attempt_timeout_seconds", fallback=30.0),
        ),
        health_enabled=parser.getboolean(
            "resilience", "health_enabled", fallback=False
        ),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    return BridgeConfig(
        bridge=bridge,
        firestore=firestore,
        mqtt=mqtt,
        device=device,
        logging=logging_config,
        resilience=resilience,
        raw=parser,
        path=config_path,
    )

