"""Core primitives for lumina-bridge."""

from .idempotency import CommandIdempotencyGuard, TerminalOutcome
from .models import (
    BridgeState,
    Command,
    CommandStatus,
    ErrorKind,
    InvalidTransitionError,
)
from .protocols import CommandSource, DeviceClient, Link, StatusReporter

__all__ = [
    "BridgeState",
    "Command",
    "CommandIdempotencyGuard",
    "CommandSource",
    "CommandStatus",
    "DeviceClient",
    "ErrorKind",
    "InvalidTransitionError",
    "Link",
    "StatusReporter",
    "TerminalOutcome",
]
