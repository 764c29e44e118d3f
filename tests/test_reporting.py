"""Tests for status write-back."""

import json
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from lumina_bridge.adapters import FirestoreClient
from lumina_bridge.connection import LinkError
from lumina_bridge.core import Command, ErrorKind
from lumina_bridge.reporting import (
    FirestoreStatusReporter,
    MQTTStatusReporter,
    StatusReportError,
    status_fields,
)

FINISHED = datetime(2024, 5, 1, 10, 0, 3, tzinfo=timezone.utc)


def _completed(result) -> Command:
    command = Command(id="c1", intent="getState", target="10.0.0.5")
    command.mark_executing()
    command.complete(result, at=FINISHED)
    return command


def _failed(error: str, kind: ErrorKind) -> Command:
    command = Command(id="c1", intent="setState", target="10.0.0.5")
    command.mark_executing()
    command.fail(error, kind=kind, at=FINISHED)
    return command


class FakeMQTT:
    def __init__(self) -> None:
        self.published: list[tuple[str, bytes]] = []
        self.connected = True

    def publish(self, topic, payload, qos=1, retain=False):
        if not self.connected:
            raise LinkError("MQTT client not connected")
        self.published.append((topic, payload))


@pytest_asyncio.fixture
async def firestore(firestore_server):
    client = FirestoreClient(firestore_server.config())
    await client.connect()
    try:
        yield client
    finally:
        await client.disconnect()


def test_status_fields_for_completed_command():
    fields = status_fields(_completed({"on": True, "bri": 128}))

    assert fields == {
        "status": {"stringValue": "completed"},
        "completedAt": {"timestampValue": "2024-05-01T10:00:03Z"},
        "result": {
            "mapValue": {
                "fields": {
                    "on": {"booleanValue": True},
                    "bri": {"integerValue": "128"},
                }
            }
        },
    }


def test_status_fields_for_timeout():
    fields = status_fields(_failed("timeout after 10.0s", ErrorKind.TIMEOUT))

    assert fields["status"] == {"stringValue": "timeout"}
    assert fields["error"] == {"stringValue": "timeout after 10.0s"}
    assert "result" not in fields


def test_status_fields_for_executing_command():
    command = Command(id="c1", intent="getState", target="10.0.0.5")
    command.mark_executing()

    assert status_fields(command) == {"status": {"stringValue": "executing"}}


@pytest.mark.asyncio
async def test_firestore_report_masks_only_written_fields(firestore_server, firestore):
    name = firestore_server.add_command("c1", controller_ip="10.0.0.5")
    reporter = FirestoreStatusReporter(firestore)

    await reporter.report(_failed("HTTP 500", ErrorKind.HTTP_STATUS))

    path, mask, fields = firestore_server.patches[-1]
    assert path == name
    assert mask == ["status", "completedAt", "error"]
    assert set(fields) == set(mask)
    assert firestore_server.status_of("c1") == "failed"
    assert firestore_server.documents[name]["controllerIp"] == {"stringValue": "10.0.0.5"}


@pytest.mark.asyncio
async def test_firestore_progress_writes_status_only(firestore_server, firestore):
    firestore_server.add_command("c1")
    command = Command(id="c1", intent="getState", target="10.0.0.5")
    command.mark_executing()

    await FirestoreStatusReporter(firestore).report_progress(command)

    assert firestore_server.patches[-1][1] == ["status"]
    assert firestore_server.status_of("c1") == "executing"


@pytest.mark.asyncio
async def test_firestore_failure_becomes_report_error(firestore_server, firestore):
    firestore_server.patch_status = 500

    with pytest.raises(StatusReportError) as excinfo:
        await FirestoreStatusReporter(firestore).report(_completed({"on": True}))

    assert excinfo.value.command_id == "c1"


@pytest.mark.asyncio
async def test_mqtt_success_publishes_device_response():
    mqtt = FakeMQTT()
    reporter = MQTTStatusReporter(mqtt, status_topic="lumina/abc/status")

    await reporter.report(_completed({"on": True, "bri": 128}))

    topic, payload = mqtt.published[0]
    assert topic == "lumina/abc/status"
    assert json.loads(payload) == {"on": True, "bri": 128}


@pytest.mark.asyncio
async def test_mqtt_failure_publishes_error_and_action():
    mqtt = FakeMQTT()
    reporter = MQTTStatusReporter(mqtt, status_topic="lumina/abc/status")

    await reporter.report(_failed("connection refused", ErrorKind.CONNECTION_REFUSED))

    assert json.loads(mqtt.published[0][1]) == {
        "error": "connection refused",
        "action": "setState",
    }


@pytest.mark.asyncio
async def test_mqtt_progress_is_silent():
    mqtt = FakeMQTT()
    command = Command(id="c1", intent="getState", target="x")
    command.mark_executing()

    await MQTTStatusReporter(mqtt, status_topic="t").report_progress(command)

    assert mqtt.published == []


@pytest.mark.asyncio
async def test_mqtt_publish_failure_becomes_report_error():
    mqtt = FakeMQTT()
    mqtt.connected = False

    with pytest.raises(StatusReportError):
        await MQTTStatusReporter(mqtt, status_topic="t").report(_completed({}))
