"""Main application entry-point for lumina-bridge."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from . import __version__, constants
from .adapters import FirestoreClient, MQTTClient, WledClient
from .adapters.device import DeviceRequestError
from .config import BridgeConfig, ConfigurationError, load_config
from .connection import (
    ConnectivitySupervisor,
    LinkError,
    LinkLossReason,
    LinkState,
    build_backoff,
)
from .core import BridgeState, CommandSource, DeviceClient, StatusReporter
from .device_requests import CommandIntent, map_intent
from .engine import CommandEngine
from .health import HealthReporter, HealthServer, LivenessMonitor
from .ingestion import PullIngestion, PushIngestion
from .logging import configure_logging
from .reporting import FirestoreStatusReporter, MQTTStatusReporter

LOGGER = logging.getLogger(__name__)

# CONNACK "not authorised" for MQTT 3.1.1 and 5
_MQTT_AUTH_FAILURES = (5, 135)


@dataclass
class AppContext:
    config: BridgeConfig
    state: BridgeState


class BridgeStatus(str, Enum):
    COLD_START = "cold_start"
    AWAITING_LINK = "awaiting_link"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


class BridgeApp:
    """Coordinates startup, the polling loop and shutdown.

    One cooperative loop owns everything: heartbeat, link maintenance,
    one engine cycle and, in push mode, the periodic device-state
    publication. The device client can be injected for testing.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        device: Optional[DeviceClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or load_config()
        self._context = AppContext(config=self._config, state=BridgeState())
        self._device: DeviceClient = device or WledClient(
            default_port=self._config.device.port
        )
        self._clock = clock

        self._firestore: Optional[FirestoreClient] = None
        self._mqtt_client: Optional[MQTTClient] = None
        self._push: Optional[PushIngestion] = None
        self._supervisor: Optional[ConnectivitySupervisor] = None
        self._engine: Optional[CommandEngine] = None
        self._liveness: Optional[LivenessMonitor] = None

        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._status = BridgeStatus.COLD_START
        self._status_detail: Optional[str] = None
        self._ever_ready = False
        self._next_state_publish: Optional[float] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending_tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> BridgeState:
        return self._context.state

    @property
    def status(self) -> BridgeStatus:
        return self._status

    @property
    def supervisor(self) -> Optional[ConnectivitySupervisor]:
        return self._supervisor

    @property
    def engine(self) -> Optional[CommandEngine]:
        return self._engine

    async def run(self) -> None:
        """Run until :meth:`request_shutdown` is called or the task is cancelled."""

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()

        LOGGER.info(
            "%s %s starting in %s mode with config: %s",
            constants.APP_NAME,
            __version__,
            self._config.bridge.mode,
            self._config.path,
        )
        await self.setup()

        try:
            await self._main_loop()
        except asyncio.CancelledError:
            LOGGER.info("%s received shutdown signal", constants.APP_NAME)
            raise
        finally:
            await self.shutdown()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[BridgeConfig] = None) -> None:
        config = config or load_config()
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        instance = cls(config=config)
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("%s received shutdown signal", constants.APP_NAME)

    # ------------------------------------------------------------------
    # Setup and teardown
    # ------------------------------------------------------------------
    async def setup(self) -> None:
        """Build the mode-specific components; does not connect."""

        self._loop = asyncio.get_running_loop()
        await self._transition_state(BridgeStatus.COLD_START, detail="initialising")

        if self._config.is_push:
            source, reporter, link, name = self._build_push()
        else:
            source, reporter, link, name = self._build_pull()

        resilience = self._config.resilience
        supervisor = ConnectivitySupervisor(
            link,
            backoff=build_backoff(resilience),
            attempt_timeout=resilience.attempt_timeout_seconds,
            clock=self._clock,
            name=name,
        )
        supervisor.add_listener(self._on_link_state)
        self._supervisor = supervisor

        if self._mqtt_client is not None:
            self._mqtt_client.register_disconnect_handler(self._on_mqtt_disconnect)

        self._engine = CommandEngine(
            source,
            supervisor,
            self._device,
            reporter,
            self._context.state,
            device_timeout=self._config.device.timeout_seconds,
        )
        self._liveness = LivenessMonitor(
            supervisor,
            self._health,
            interval=self._config.bridge.heartbeat_interval_seconds,
        )

        await self._health.update(name, False, "initialising")
        await self._start_health_server()
        await self._transition_state(BridgeStatus.AWAITING_LINK, detail=name)

    def _build_pull(
        self,
    ) -> tuple[CommandSource, StatusReporter, FirestoreClient, str]:
        firestore_config = self._config.firestore
        if not firestore_config.project_id or not firestore_config.user_uid:
            raise ConfigurationError(
                "Pull mode requires firestore.project_id and firestore.user_uid"
            )

        firestore = FirestoreClient(firestore_config)
        self._firestore = firestore
        source = PullIngestion(
            firestore,
            collection=firestore_config.collection,
            batch_limit=self._config.bridge.batch_limit,
        )
        return source, FirestoreStatusReporter(firestore), firestore, "firestore"

    def _build_push(self) -> tuple[CommandSource, StatusReporter, MQTTClient, str]:
        device_id = _resolve_device_id(self._config)
        if not device_id:
            raise ConfigurationError("Push mode requires bridge.device_id")

        mqtt_client = MQTTClient(
            self._config.mqtt, client_id=_build_client_id(self._config, device_id)
        )
        self._mqtt_client = mqtt_client

        push = PushIngestion(
            mqtt_client,
            device_id=device_id,
            target=self._config.device_target(),
            namespace=self._config.mqtt.namespace,
            mailbox_size=self._config.bridge.mailbox_size,
            batch_limit=self._config.bridge.batch_limit,
        )
        push.start()
        self._push = push

        interval = self._config.bridge.state_publish_interval_seconds
        self._next_state_publish = self._clock() + interval if interval > 0 else None

        reporter = MQTTStatusReporter(mqtt_client, status_topic=push.status_topic)
        return push, reporter, mqtt_client, "mqtt"

    async def shutdown(self) -> None:
        await self._transition_state(BridgeStatus.STOPPING, detail="shutdown requested")

        if self._push is not None:
            self._push.stop()
        if self._supervisor is not None:
            await self._supervisor.shutdown()
        if isinstance(self._device, WledClient):
            await self._device.aclose()
        await self._stop_health_server()

        if self._pending_tasks:
            await asyncio.gather(*self._pending_tasks, return_exceptions=True)

        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def _start_health_server(self) -> None:
        resilience = self._config.resilience
        if not resilience.health_enabled or resilience.health_port <= 0:
            return

        server = HealthServer(
            self._health,
            resilience.health_host,
            resilience.health_port,
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _stop_health_server(self) -> None:
        if self._health_server is None:
            return
        await self._health_server.stop()
        self._health_server = None

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    async def _main_loop(self) -> None:
        assert self._shutdown_event is not None
        interval = self._config.bridge.poll_interval_seconds

        while not self._shutdown_event.is_set():
            await self.run_once()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)

    async def run_once(self) -> int:
        """One pass of heartbeat, link maintenance and command processing."""

        if self._supervisor is None or self._engine is None:
            raise RuntimeError("BridgeApp.setup() must run before run_once()")

        if self._liveness is not None:
            await self._liveness.heartbeat()

        await self._supervisor.maintain()
        handled = await self._engine.run_cycle()

        if self._push is not None and self._supervisor.is_ready:
            await self._maybe_publish_device_state()

        return handled

    async def _maybe_publish_device_state(self) -> None:
        if self._next_state_publish is None:
            return
        now = self._clock()
        if now < self._next_state_publish:
            return
        self._next_state_publish = now + self._config.bridge.state_publish_interval_seconds
        await self.publish_device_state()

    async def publish_device_state(self) -> bool:
        """Publish the device's current state, tagged with bridge counters."""

        push, mqtt_client = self._push, self._mqtt_client
        target = self._config.device_target()
        if push is None or mqtt_client is None or not target:
            return False

        try:
            device_state = await self._device.execute(
                target,
                map_intent(CommandIntent.GET_STATE),
                timeout=self._config.device.timeout_seconds,
            )
        except DeviceRequestError as exc:
            LOGGER.debug("Device state unavailable: %s", exc)
            return False

        document: dict[str, Any] = (
            dict(device_state) if isinstance(device_state, dict) else {"state": device_state}
        )
        state = self._context.state
        document["_bridge"] = constants.APP_NAME
        document["_uptime"] = state.uptime_seconds()
        document["_commands"] = state.commands_processed
        document["_errors"] = state.commands_failed

        try:
            mqtt_client.publish(
                push.status_topic, json.dumps(document).encode("utf-8"), qos=0
            )
        except LinkError as exc:
            LOGGER.warning("Failed to publish device state: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------
    async def _transition_state(
        self, state: BridgeStatus, *, detail: Optional[str] = None
    ) -> None:
        if state == self._status and detail == self._status_detail:
            return
        if self._status is BridgeStatus.STOPPING:
            return

        previous = self._status
        self._status = state
        self._status_detail = detail

        message_detail = detail or state.value
        LOGGER.info(
            "Bridge state transition %s -> %s (%s)",
            previous.value,
            state.value,
            message_detail,
        )
        await self._health.set_bridge_state(
            state.value,
            healthy=state == BridgeStatus.ACTIVE,
            detail=message_detail,
        )

    def _schedule_state_transition(
        self, state: BridgeStatus, *, detail: Optional[str] = None
    ) -> None:
        loop = self._loop
        if loop is None:
            return
        task = loop.create_task(self._transition_state(state, detail=detail))
        self._pending_tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._pending_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Bridge state update failed", exc_info=exc)

    def _on_link_state(self, previous: LinkState, current: LinkState) -> None:
        supervisor = self._supervisor
        name = supervisor.name if supervisor else "link"
        if current is LinkState.READY:
            self._ever_ready = True
            self._schedule_state_transition(BridgeStatus.ACTIVE, detail=f"{name} ready")
        elif current is LinkState.DISCONNECTED:
            detail = (supervisor.last_error if supervisor else None) or f"{name} down"
            status = BridgeStatus.DEGRADED if self._ever_ready else BridgeStatus.AWAITING_LINK
            self._schedule_state_transition(status, detail=detail)

    def _on_mqtt_disconnect(self, rc: int) -> None:
        # runs on the event loop, scheduled by the MQTT client
        if self._supervisor is None or self._status is BridgeStatus.STOPPING:
            return
        reason = (
            LinkLossReason.AUTH_FAILURE
            if rc in _MQTT_AUTH_FAILURES
            else LinkLossReason.CONNECTION_LOST
        )
        self._supervisor.mark_lost(reason, f"disconnected (rc={rc})")


def _resolve_device_id(config: BridgeConfig) -> Optional[str]:
    device_id = config.bridge.device_id
    if device_id:
        return device_id

    username = (config.mqtt.username or "").strip()
    return username or None


def _build_client_id(config: BridgeConfig, device_id: Optional[str]) -> str:
    if config.mqtt.client_id:
        return config.mqtt.client_id
    suffix = device_id or str(os.getpid())
    return f"{constants.APP_NAME}-{suffix}"
