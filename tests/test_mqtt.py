"""Tests for the MQTT adapter."""

import asyncio
from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest
import pytest_asyncio

from lumina_bridge.adapters import MQTTClient, MQTTConnectionError
from lumina_bridge.config import MQTTConfig


class FakeMqttClient:
    """Minimal fake paho-mqtt client speaking the VERSION2 callback API."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        events: dict,
        *,
        rc_connect: int = 0,
        publish_rc: int = mqtt.MQTT_ERR_SUCCESS,
        subscribe_rc: int = mqtt.MQTT_ERR_SUCCESS,
    ):
        self._loop = loop
        self._events = events
        self._rc_connect = rc_connect
        self._publish_rc = publish_rc
        self._subscribe_rc = subscribe_rc

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

    def enable_logger(self, logger):
        self._events["logger"] = logger.name

    def username_pw_set(self, username, password=None):
        self._events["auth"] = (username, password)

    def tls_set(self, **kwargs):
        self._events["tls"] = True

    def connect_async(self, host, port, keepalive):
        self._events["connect_args"] = (host, port, keepalive)
        if self.on_connect:
            self._loop.call_soon(
                self.on_connect, self, None, None, self._rc_connect, None
            )

    def loop_start(self):
        self._events["loop_start"] = self._events.get("loop_start", 0) + 1

    def loop_stop(self):
        self._events["loop_stop"] = self._events.get("loop_stop", 0) + 1

    def disconnect(self):
        self._events["disconnect_called"] = True
        if self.on_disconnect:
            self._loop.call_soon(self.on_disconnect, self, None, None, 0, None)

    def publish(self, topic, payload, qos=0, retain=False):
        self._events.setdefault("published", []).append((topic, payload, qos, retain))
        return SimpleNamespace(rc=self._publish_rc)

    def subscribe(self, topic, qos=0):
        self._events.setdefault("subscribed", []).append((topic, qos))
        return self._subscribe_rc, 1


def install_fake(monkeypatch, **options):
    loop = asyncio.get_running_loop()
    events: dict = {}

    def factory(*args, **kwargs):
        events["client_args"] = (args, kwargs)
        return FakeMqttClient(loop, events, **options)

    monkeypatch.setattr("lumina_bridge.adapters.mqtt.mqtt.Client", factory)
    return events


def make_config(**overrides) -> MQTTConfig:
    values = dict(
        broker_host="broker.lumina.dev",
        broker_port=1883,
        username="bridge-01",
        password="secret",
        tls=False,
    )
    values.update(overrides)
    return MQTTConfig(**values)


@pytest_asyncio.fixture
async def mqtt_client(monkeypatch):
    events = install_fake(monkeypatch)
    client = MQTTClient(make_config(), client_id="lumina-bridge-01")
    await client.connect()

    yield client, events

    await client.disconnect()


@pytest.mark.asyncio
async def test_connect_configures_client(mqtt_client):
    client, events = mqtt_client

    args, kwargs = events["client_args"]
    assert args == (mqtt.CallbackAPIVersion.VERSION2,)
    assert kwargs == {"client_id": "lumina-bridge-01"}
    assert events["connect_args"] == ("broker.lumina.dev", 1883, 60)
    assert events["auth"] == ("bridge-01", "secret")
    assert events["logger"] == "lumina_bridge.adapters.mqtt.paho"
    assert "tls" not in events
    assert client.is_connected()


@pytest.mark.asyncio
async def test_tls_is_enabled_from_config(monkeypatch):
    events = install_fake(monkeypatch)
    client = MQTTClient(make_config(tls=True), client_id="c")

    await client.connect()
    await client.disconnect()

    assert events["tls"] is True


@pytest.mark.asyncio
async def test_rejected_connection_raises(monkeypatch):
    install_fake(monkeypatch, rc_connect=5)
    client = MQTTClient(make_config(), client_id="c")

    with pytest.raises(MQTTConnectionError):
        await client.connect()

    assert not client.is_connected()


@pytest.mark.asyncio
async def test_publish_and_subscribe_delegate(mqtt_client):
    client, events = mqtt_client

    client.subscribe("lumina/bridge-01/command", qos=1)
    client.publish("lumina/bridge-01/status", b"{}", qos=1)

    assert events["subscribed"] == [("lumina/bridge-01/command", 1)]
    assert events["published"] == [("lumina/bridge-01/status", b"{}", 1, False)]


@pytest.mark.asyncio
async def test_publish_failure_raises(monkeypatch):
    install_fake(monkeypatch, publish_rc=mqtt.MQTT_ERR_NO_CONN)
    client = MQTTClient(make_config(), client_id="c")
    await client.connect()

    try:
        with pytest.raises(MQTTConnectionError):
            client.publish("t", b"x")
    finally:
        await client.disconnect()


@pytest.mark.asyncio
async def test_publish_without_connection_raises():
    client = MQTTClient(make_config(), client_id="c")

    with pytest.raises(MQTTConnectionError):
        client.publish("t", b"x")


@pytest.mark.asyncio
async def test_message_handler_runs_on_the_loop(mqtt_client):
    client, _ = mqtt_client
    received: list[tuple[str, bytes]] = []

    client.set_message_handler(lambda topic, payload: received.append((topic, payload)))
    message = SimpleNamespace(topic="lumina/bridge-01/command", payload=b"{}")
    client._on_message(client._client, None, message)  # type: ignore[arg-type]
    await asyncio.sleep(0)

    assert received == [("lumina/bridge-01/command", b"{}")]


@pytest.mark.asyncio
async def test_async_message_handler_is_scheduled(mqtt_client):
    client, _ = mqtt_client
    done = asyncio.Event()

    async def handler(topic: str, payload: bytes) -> None:
        done.set()

    client.set_message_handler(handler)
    client._on_message(client._client, None, SimpleNamespace(topic="t", payload=b""))  # type: ignore[arg-type]

    await asyncio.wait_for(done.wait(), timeout=1.0)


@pytest.mark.asyncio
async def test_connect_and_disconnect_handlers_receive_codes(mqtt_client):
    client, _ = mqtt_client
    connects: list[int] = []
    disconnects: list[int] = []
    client.register_connect_handler(connects.append)
    client.register_disconnect_handler(disconnects.append)

    client._on_connect(client._client, None, None, 0, None)  # type: ignore[arg-type]
    client._on_disconnect(client._client, None, None, 7, None)  # type: ignore[arg-type]
    await asyncio.sleep(0)

    assert connects == [0]
    assert disconnects == [7]
    assert not client.is_connected()
