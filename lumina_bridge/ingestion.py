"""Sources of pending commands: Firestore polling and MQTT delivery."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping

from . import constants
from .connection import LinkError
from .core import Command
from .typed_values import UnknownValueTagError

if TYPE_CHECKING:
    from .adapters.firestore import FirestoreClient
    from .adapters.mqtt import MQTTClient

LOGGER = logging.getLogger(__name__)

PENDING_STATUS = "pending"


def command_topic(device_id: str, namespace: str = constants.DEFAULT_TOPIC_NAMESPACE) -> str:
    return f"{namespace}/{device_id}/command"


def status_topic(device_id: str, namespace: str = constants.DEFAULT_TOPIC_NAMESPACE) -> str:
    return f"{namespace}/{device_id}/status"


def build_pending_query(collection: str, limit: int) -> Dict[str, Any]:
    """Structured query selecting the oldest ``limit`` pending commands."""

    return {
        "from": [{"collectionId": collection}],
        "where": {
            "fieldFilter": {
                "field": {"fieldPath": "status"},
                "op": "EQUAL",
                "value": {"stringValue": PENDING_STATUS},
            }
        },
        "orderBy": [{"field": {"fieldPath": "createdAt"}, "direction": "ASCENDING"}],
        "limit": limit,
    }


class PullIngestion:
    """Polls the commands collection for ``pending`` documents."""

    def __init__(
        self,
        firestore: FirestoreClient,
        *,
        collection: str = constants.DEFAULT_COMMANDS_COLLECTION,
        batch_limit: int = 5,
    ) -> None:
        self._firestore = firestore
        self._collection = collection
        self._batch_limit = max(1, batch_limit)

    @property
    def batch_limit(self) -> int:
        return self._batch_limit

    async def fetch_pending(self) -> List[Command]:
        """Return at most ``batch_limit`` commands, oldest first.

        Raises:
            FirestoreQueryError: When the query is answered with an error.
            LinkError: When the store is unreachable.
        """

        rows = await self._firestore.run_query(
            build_pending_query(self._collection, self._batch_limit)
        )

        commands: List[Command] = []
        for row in rows:
            document = row.get("document")
            # rows without a document only carry readTime
            if not isinstance(document, Mapping):
                continue
            name = str(document.get("name", ""))
            if not name:
                continue
            try:
                command = Command.from_document(name, document.get("fields") or {})
            except UnknownValueTagError as exc:
                LOGGER.warning("Skipping unreadable command %s: %s", name, exc)
                continue
            commands.append(command)
            if len(commands) >= self._batch_limit:
                break

        if commands:
            LOGGER.debug("Fetched %d pending command(s)", len(commands))
        return commands


class PushIngestion:
    """Receives commands published to ``<namespace>/<deviceId>/command``.

    Delivery happens on the MQTT client's callback path; messages are parsed
    there and parked in a bounded mailbox that the engine drains between
    device calls.
    """

    def __init__(
        self,
        mqtt: MQTTClient,
        *,
        device_id: str,
        target: str,
        namespace: str = constants.DEFAULT_TOPIC_NAMESPACE,
        mailbox_size: int = 32,
        batch_limit: int = 5,
    ) -> None:
        self._mqtt = mqtt
        self._device_id = device_id
        self._target = target
        self._batch_limit = max(1, batch_limit)
        self._mailbox: asyncio.Queue[Command] = asyncio.Queue(maxsize=max(1, mailbox_size))
        self.command_topic = command_topic(device_id, namespace)
        self.status_topic = status_topic(device_id, namespace)
        self.dropped = 0
        self._started = False

    @property
    def pending_count(self) -> int:
        return self._mailbox.qsize()

    def start(self) -> None:
        """Attach to the MQTT client; subscription follows every connect."""

        if self._started:
            raise RuntimeError("PushIngestion already started")
        self._mqtt.set_message_handler(self.on_command)
        self._mqtt.register_connect_handler(self._on_link_up)
        self._started = True
        if self._mqtt.is_connected():
            self._on_link_up(0)

    def stop(self) -> None:
        if not self._started:
            return
        self._mqtt.set_message_handler(None)
        self._started = False

    def on_command(self, topic: str, payload: bytes) -> None:
        """Parse one delivered message and enqueue it; never touches the device."""

        if topic != self.command_topic:
            LOGGER.debug("Ignoring message on unexpected topic %s", topic)
            return

        try:
            body = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            LOGGER.warning("Received unparsable command payload (%d bytes)", len(payload))
            self._publish_status({"error": "JSON parse error"})
            return

        if not isinstance(body, Mapping):
            LOGGER.warning("Command payload is not a JSON object")
            self._publish_status({"error": "JSON parse error"})
            return

        command = Command.from_message(body, target=self._target)
        try:
            self._mailbox.put_nowait(command)
        except asyncio.QueueFull:
            self.dropped += 1
            LOGGER.warning(
                "Command mailbox full (%d); dropping %s command %s",
                self._mailbox.maxsize,
                command.intent,
                command.id,
            )
            return

        LOGGER.info("Queued %s command %s", command.intent, command.id)

    async def fetch_pending(self) -> List[Command]:
        commands: List[Command] = []
        while len(commands) < self._batch_limit:
            try:
                commands.append(self._mailbox.get_nowait())
            except asyncio.QueueEmpty:
                break
        return commands

    def announce_online(self) -> None:
        self._publish_status({"online": True, "bridge": constants.APP_NAME})

    def _on_link_up(self, rc: int) -> None:
        try:
            self._mqtt.subscribe(self.command_topic, qos=1)
        except LinkError as exc:
            LOGGER.warning("Failed to subscribe to %s: %s", self.command_topic, exc)
            return
        LOGGER.info("Subscribed to %s", self.command_topic)
        self.announce_online()

    def _publish_status(self, document: Mapping[str, Any]) -> bool:
        try:
            self._mqtt.publish(
                self.status_topic, json.dumps(document).encode("utf-8"), qos=1
            )
        except LinkError as exc:
            LOGGER.warning("Failed to publish to %s: %s", self.status_topic, exc)
            return False
        return True
