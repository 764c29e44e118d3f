"""Health reporting and liveness signalling for lumina-bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional

from aiohttp import web

from .connection import LinkState

if TYPE_CHECKING:
    from .connection import ConnectivitySupervisor

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks component statuses for the running bridge."""

    _BRIDGE_KEY = "__bridge_state__"

    def __init__(self) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def set_bridge_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        await self.update(self._BRIDGE_KEY, healthy, detail if detail is not None else state)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            entries = list(self._status.values())

        bridge_state: Optional[ComponentStatus] = None
        components: list[Dict[str, object]] = []
        for status in entries:
            if status.name == self._BRIDGE_KEY:
                bridge_state = status
                continue
            components.append(status.as_dict())

        overall = "ok" if all(item["healthy"] for item in components) else "degraded"
        if bridge_state is not None and not bridge_state.healthy:
            overall = "degraded"

        payload: Dict[str, object] = {"status": overall, "components": components}
        if bridge_state is not None:
            payload["bridgeState"] = {
                "state": bridge_state.detail,
                "healthy": bridge_state.healthy,
                "updatedAt": bridge_state.updated_at.isoformat(timespec="seconds"),
            }

        return payload


class HealthServer:
    """Minimal HTTP server exposing `/healthz` for status checks."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)


class LivenessSignal(str, Enum):
    """Coarse bridge condition, one level per indicator pattern."""

    OK = "ok"
    LINK_DEGRADED = "link_degraded"
    OFFLINE = "offline"


def liveness_for(
    state: LinkState, failed_attempts: int, *, offline_after: int = 3
) -> LivenessSignal:
    """Derive the liveness level from the ingestion link.

    A link that is up reports ``ok``. A link that is down but still being
    re-established reports ``link_degraded`` until ``offline_after``
    consecutive attempts have failed.
    """

    if state is LinkState.READY:
        return LivenessSignal.OK
    if failed_attempts >= offline_after:
        return LivenessSignal.OFFLINE
    return LivenessSignal.LINK_DEGRADED


class LivenessMonitor:
    """Publishes the liveness signal into the health reporter on each heartbeat."""

    def __init__(
        self,
        supervisor: ConnectivitySupervisor,
        health: HealthReporter,
        *,
        interval: float = 5.0,
        offline_after: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._supervisor = supervisor
        self._health = health
        self._interval = interval
        self._offline_after = offline_after
        self._clock = clock
        self._signal: Optional[LivenessSignal] = None
        self._last_beat: Optional[float] = None

    @property
    def signal(self) -> Optional[LivenessSignal]:
        return self._signal

    async def heartbeat(self) -> LivenessSignal:
        signal = liveness_for(
            self._supervisor.state,
            self._supervisor.failed_attempts,
            offline_after=self._offline_after,
        )
        now = self._clock()

        if signal is not self._signal:
            LOGGER.info(
                "Liveness %s -> %s",
                self._signal.value if self._signal else "unknown",
                signal.value,
            )
            self._signal = signal
            await self._health.update(
                self._supervisor.name,
                signal is LivenessSignal.OK,
                self._supervisor.last_error or signal.value,
            )
            self._last_beat = now
        elif self._last_beat is None or now - self._last_beat >= self._interval:
            LOGGER.debug("Heartbeat: %s", signal.value)
            self._last_beat = now

        return signal
