"""Protocol definitions for the collaborators of the command engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, Sequence

if TYPE_CHECKING:
    from ..device_requests import DeviceRequest
    from .models import Command


class Link(Protocol):
    """A remote session owned by the connectivity supervisor."""

    async def connect(self) -> None:
        """Establish the session, raising ``LinkError`` on failure."""
        ...

    async def disconnect(self) -> None:
        ...

    def is_connected(self) -> bool:
        ...


class CommandSource(Protocol):
    """Yields commands awaiting execution, oldest first."""

    async def fetch_pending(self) -> Sequence[Command]:
        ...


class DeviceClient(Protocol):
    """Issues a mapped request to the local device."""

    async def execute(
        self, target: str, request: DeviceRequest, *, timeout: float
    ) -> Any:
        """Return the parsed response body.

        Raises:
            DeviceRequestError: On non-2xx status, timeout or connection failure.
        """
        ...


class StatusReporter(Protocol):
    """Writes command status back to the remote queue."""

    async def report_progress(self, command: Command) -> None:
        """Best-effort intermediate update (``executing``)."""
        ...

    async def report(self, command: Command) -> None:
        """Report a terminal status.

        Raises:
            StatusReportError: If the write-back fails.
        """
        ...
