import aiohttp
import pytest

from lumina_bridge.connection import LinkState
from lumina_bridge.health import (
    HealthReporter,
    HealthServer,
    LivenessMonitor,
    LivenessSignal,
    liveness_for,
)


class FakeSupervisor:
    name = "firestore"

    def __init__(self) -> None:
        self.state = LinkState.DISCONNECTED
        self.failed_attempts = 0
        self.last_error = None


@pytest.mark.asyncio
async def test_health_reporter_snapshot():
    reporter = HealthReporter()

    await reporter.update("mqtt", True)
    await reporter.update("device", False, "connection refused")

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["mqtt"]["healthy"] is True
    assert components["device"]["detail"] == "connection refused"


@pytest.mark.asyncio
async def test_bridge_state_affects_status():
    reporter = HealthReporter()

    await reporter.update("mqtt", True)
    await reporter.set_bridge_state("awaiting_link", healthy=False)

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    assert snapshot["bridgeState"]["state"] == "awaiting_link"


@pytest.mark.asyncio
async def test_health_server_serves_snapshot(unused_tcp_port):
    reporter = HealthReporter()
    await reporter.update("firestore", True)

    server = HealthServer(reporter, "127.0.0.1", unused_tcp_port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://127.0.0.1:{unused_tcp_port}/healthz") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["status"] == "ok"

            await reporter.update("firestore", False, "auth_failure")
            async with session.get(f"http://127.0.0.1:{unused_tcp_port}/healthz") as response:
                assert response.status == 503
    finally:
        await server.stop()


def test_liveness_levels():
    assert liveness_for(LinkState.READY, 0) is LivenessSignal.OK
    assert liveness_for(LinkState.CONNECTING, 0) is LivenessSignal.LINK_DEGRADED
    assert liveness_for(LinkState.DISCONNECTED, 2) is LivenessSignal.LINK_DEGRADED
    assert liveness_for(LinkState.DISCONNECTED, 3) is LivenessSignal.OFFLINE


@pytest.mark.asyncio
async def test_liveness_monitor_tracks_supervisor():
    supervisor = FakeSupervisor()
    reporter = HealthReporter()
    monitor = LivenessMonitor(supervisor, reporter, clock=lambda: 0.0)

    assert await monitor.heartbeat() is LivenessSignal.LINK_DEGRADED
    supervisor.state = LinkState.READY
    assert await monitor.heartbeat() is LivenessSignal.OK

    snapshot = await reporter.snapshot()
    assert snapshot["status"] == "ok"

    supervisor.state = LinkState.DISCONNECTED
    supervisor.failed_attempts = 5
    supervisor.last_error = "broker unreachable"
    assert await monitor.heartbeat() is LivenessSignal.OFFLINE
    assert monitor.signal is LivenessSignal.OFFLINE

    snapshot = await reporter.snapshot()
    assert snapshot["components"][0]["detail"] == "broker unreachable"
