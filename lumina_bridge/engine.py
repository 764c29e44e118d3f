"""Command lifecycle: fetch, execute against the device, report."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

from .adapters.device import DeviceRequestError
from .adapters.firestore import FirestoreQueryError
from .connection import LinkError, LinkLossReason
from .core import (
    BridgeState,
    Command,
    CommandIdempotencyGuard,
    CommandSource,
    DeviceClient,
    ErrorKind,
    StatusReporter,
)
from .device_requests import CommandIntent, map_intent
from .reporting import StatusReportError
from .token_manager import FirebaseAuthError

if TYPE_CHECKING:
    from .connection import ConnectivitySupervisor

LOGGER = logging.getLogger(__name__)


class CommandEngine:
    """Drives each command from ``pending`` to a terminal status.

    Commands are executed one at a time; a batch is fully drained before the
    next fetch. Each terminal transition produces exactly one status report.
    """

    def __init__(
        self,
        source: CommandSource,
        supervisor: ConnectivitySupervisor,
        device: DeviceClient,
        reporter: StatusReporter,
        state: Optional[BridgeState] = None,
        *,
        device_timeout: float = 10.0,
        guard: Optional[CommandIdempotencyGuard] = None,
    ) -> None:
        self._source = source
        self._supervisor = supervisor
        self._device = device
        self._reporter = reporter
        self._state = state or BridgeState()
        self._device_timeout = device_timeout
        self._guard = guard or CommandIdempotencyGuard()

    @property
    def state(self) -> BridgeState:
        return self._state

    async def run_cycle(self) -> int:
        """Fetch one batch and process it; returns the number of commands handled."""

        if not self._supervisor.is_ready:
            return 0

        try:
            commands = await self._source.fetch_pending()
        except FirestoreQueryError as exc:
            LOGGER.warning("Command query failed: %s", exc)
            self._state.last_error = str(exc)
            return 0
        except LinkError as exc:
            reason = (
                LinkLossReason.AUTH_FAILURE
                if isinstance(exc, FirebaseAuthError)
                else LinkLossReason.QUERY_TRANSPORT
            )
            self._state.last_error = str(exc)
            self._supervisor.mark_lost(reason, str(exc))
            return 0
        except Exception as exc:
            LOGGER.exception("Unexpected error fetching commands")
            self._state.last_error = str(exc)
            return 0

        handled: List[Command] = []
        for command in commands:
            if await self.process(command) is not None:
                handled.append(command)

        self._state.record_cycle()
        return len(handled)

    async def process(self, command: Command) -> Optional[Command]:
        """Execute one command; ``None`` when it was already handled in this run."""

        previous = self._guard.previous_outcome(command.id)
        if previous is not None:
            LOGGER.info(
                "Skipping %s: already %s in this run%s",
                command.id,
                previous.status,
                f" ({previous.error})" if previous.error else "",
            )
            return None

        LOGGER.info(
            "Processing command %s (%s -> %s)",
            command.id,
            command.intent,
            command.target or "<none>",
        )

        if not command.target:
            command.fail("missing target", kind=ErrorKind.VALIDATION)
            await self._finish(command)
            return command

        command.mark_executing()
        try:
            await self._reporter.report_progress(command)
        except StatusReportError as exc:
            LOGGER.debug("Progress update for %s not delivered: %s", command.id, exc)

        if CommandIntent.parse(command.intent) is None:
            LOGGER.info(
                "Unknown intent %r for %s; sending as a state update",
                command.intent,
                command.id,
            )

        try:
            request = map_intent(command.intent, command.payload)
            result = await self._device.execute(
                command.target, request, timeout=self._device_timeout
            )
        except DeviceRequestError as exc:
            command.fail(str(exc), kind=exc.kind)
        except Exception as exc:
            LOGGER.exception("Unexpected error executing %s", command.id)
            command.fail(f"internal error: {exc}", kind=ErrorKind.TRANSPORT)
        else:
            command.complete(result)

        await self._finish(command)
        return command

    async def _finish(self, command: Command) -> None:
        self._state.record(command)
        self._guard.mark_processed(
            command.id, status=command.wire_status, error_message=command.error
        )

        if command.error:
            LOGGER.warning("Command %s %s: %s", command.id, command.wire_status, command.error)
        else:
            LOGGER.info("Command %s %s", command.id, command.wire_status)

        try:
            await self._reporter.report(command)
        except StatusReportError as exc:
            LOGGER.error("Status report for %s failed: %s", command.id, exc)
