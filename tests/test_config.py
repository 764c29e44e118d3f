"""Tests for configuration loading."""

import logging
from pathlib import Path

import pytest

from lumina_bridge import constants
from lumina_bridge.config import ConfigurationError, load_config


def write_config(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "lumina-bridge.cfg"
    path.write_text(content)
    return path


def test_defaults_when_file_missing(tmp_path):
    config = load_config(tmp_path / "missing.cfg")

    assert config.bridge.mode == constants.MODE_PULL
    assert config.bridge.poll_interval_seconds == 2.0
    assert config.bridge.batch_limit == 5
    assert config.device.timeout_seconds == 10.0
    assert config.mqtt.keepalive == 60
    assert config.mqtt.tls is True
    assert config.resilience.backoff == "fixed"
    assert config.resilience.reconnect_interval_seconds == 5.0
    assert config.firestore.base_url == constants.DEFAULT_FIRESTORE_BASE_URL
    assert config.firestore.email is None
    assert not config.is_push


def test_push_mode_with_broker_host_port(tmp_path):
    path = write_config(
        tmp_path,
        """
[bridge]
mode = push
device_id = a1b2c3

[mqtt]
broker_host = broker.example.com:1884
username = a1b2c3
password = hunter2
tls = false

[device]
host = 192.168.1.40
""",
    )

    config = load_config(path)

    assert config.is_push
    assert config.bridge.device_id == "a1b2c3"
    assert config.mqtt.broker_host == "broker.example.com"
    assert config.mqtt.broker_port == 1884
    assert config.mqtt.tls is False
    assert config.mqtt.password == "hunter2"
    assert config.device_target() == "192.168.1.40"
    assert config.raw.get("mqtt", "broker_port") == "1884"


def test_device_target_includes_custom_port(tmp_path):
    path = write_config(tmp_path, "[device]\nhost = wled.local\nport = 8080\n")

    assert load_config(path).device_target() == "wled.local:8080"


def test_values_are_clamped(tmp_path):
    path = write_config(
        tmp_path,
        """
[bridge]
poll_interval_seconds = 0
batch_limit = 0

[resilience]
reconnect_jitter_ratio = 3
""",
    )

    config = load_config(path)

    assert config.bridge.poll_interval_seconds == 0.1
    assert config.bridge.batch_limit == 1
    assert config.resilience.reconnect_jitter_ratio == 1.0


def test_unknown_mode_is_rejected(tmp_path):
    path = write_config(tmp_path, "[bridge]\nmode = broadcast\n")

    with pytest.raises(ConfigurationError):
        load_config(path)


def test_unknown_backoff_is_rejected(tmp_path):
    path = write_config(tmp_path, "[resilience]\nbackoff = random\n")

    with pytest.raises(ConfigurationError):
        load_config(path)


def test_empty_log_path_disables_file_logging(tmp_path):
    path = write_config(tmp_path, "[logging]\npath =\nlevel = DEBUG\n")

    config = load_config(path)

    assert config.logging.path is None
    assert config.logging.level == "DEBUG"


def test_long_device_timeout_warns_in_push_mode(tmp_path, caplog):
    path = write_config(
        tmp_path,
        "[bridge]\nmode = push\n\n[mqtt]\nkeepalive = 10\n\n[device]\ntimeout_seconds = 8\n",
    )

    with caplog.at_level(logging.WARNING, logger="lumina_bridge.config"):
        load_config(path)

    assert "keepalive" in caplog.text
