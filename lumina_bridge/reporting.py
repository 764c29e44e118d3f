"""Status write-back to the remote queue."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict

from .adapters.firestore import FirestoreQueryError
from .connection import LinkError
from .core import Command, CommandStatus
from .typed_values import encode

if TYPE_CHECKING:
    from .adapters.firestore import FirestoreClient
    from .adapters.mqtt import MQTTClient

LOGGER = logging.getLogger(__name__)


class StatusReportError(RuntimeError):
    """Raised when a status update could not be delivered."""

    def __init__(self, message: str, *, command_id: str) -> None:
        super().__init__(message)
        self.command_id = command_id


def _timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def status_fields(command: Command) -> Dict[str, Any]:
    """Encoded document fields describing the command's current status.

    Only fields that carry a value are included, so the update mask never
    clears anything the bridge did not set.
    """

    fields: Dict[str, Any] = {"status": encode(command.wire_status)}
    if command.completed_at is not None:
        fields["completedAt"] = {"timestampValue": _timestamp(command.completed_at)}
    if command.error is not None:
        fields["error"] = encode(command.error)
    if command.status is CommandStatus.COMPLETED and command.result is not None:
        fields["result"] = encode(command.result)
    return fields


class FirestoreStatusReporter:
    """PATCHes ``users/{uid}/commands/{id}`` with the command status."""

    def __init__(self, firestore: FirestoreClient) -> None:
        self._firestore = firestore

    async def report_progress(self, command: Command) -> None:
        await self._patch(command, {"status": encode(command.wire_status)})

    async def report(self, command: Command) -> None:
        await self._patch(command, status_fields(command))
        LOGGER.info("Reported command %s as %s", command.id, command.wire_status)

    async def _patch(self, command: Command, fields: Dict[str, Any]) -> None:
        path = self._firestore.document_path(command.id)
        try:
            await self._firestore.patch_document(path, fields, update_mask=fields.keys())
        except (FirestoreQueryError, LinkError) as exc:
            raise StatusReportError(
                f"Failed to report {command.wire_status} for {command.id}: {exc}",
                command_id=command.id,
            ) from exc
        except TypeError as exc:
            raise StatusReportError(
                f"Result of {command.id} cannot be encoded: {exc}",
                command_id=command.id,
            ) from exc


class MQTTStatusReporter:
    """Publishes the outcome of pushed commands to the status topic.

    Successful commands publish the device response unchanged; failures
    publish ``{"error": ..., "action": ...}``.
    """

    def __init__(self, mqtt: MQTTClient, *, status_topic: str) -> None:
        self._mqtt = mqtt
        self._status_topic = status_topic

    async def report_progress(self, command: Command) -> None:
        return None

    async def report(self, command: Command) -> None:
        if command.status is CommandStatus.COMPLETED:
            payload = _encode_result(command.result)
        else:
            payload = json.dumps(
                {"error": command.error or command.wire_status, "action": command.intent}
            ).encode("utf-8")

        try:
            self._mqtt.publish(self._status_topic, payload, qos=1)
        except LinkError as exc:
            raise StatusReportError(
                f"Failed to publish status for {command.id}: {exc}",
                command_id=command.id,
            ) from exc


def _encode_result(result: Any) -> bytes:
    if result is None:
        return b"{}"
    if isinstance(result, str):
        return result.encode("utf-8")
    return json.dumps(result).encode("utf-8")
