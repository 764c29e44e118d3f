"""Domain models for queued commands and bridge bookkeeping."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from ..typed_values import EMPTY_MAP, TypedValue, decode_fields, from_plain


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommandStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CommandStatus.COMPLETED, CommandStatus.FAILED)


class ErrorKind(str, Enum):
    """Why a command ended up ``failed``."""

    VALIDATION = "validation"
    HTTP_STATUS = "http_status"
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    TRANSPORT = "transport"
    INVALID_PAYLOAD = "invalid_payload"


_ALLOWED_TRANSITIONS: dict[CommandStatus, frozenset[CommandStatus]] = {
    CommandStatus.PENDING: frozenset({CommandStatus.EXECUTING, CommandStatus.FAILED}),
    CommandStatus.EXECUTING: frozenset(
        {CommandStatus.COMPLETED, CommandStatus.FAILED}
    ),
    CommandStatus.COMPLETED: frozenset(),
    CommandStatus.FAILED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a command is moved against its state machine."""

    def __init__(self, command_id: str, current: CommandStatus, target: CommandStatus) -> None:
        super().__init__(
            f"Command {command_id}: illegal transition {current.value} -> {target.value}"
        )
        self.command_id = command_id
        self.current = current
        self.target = target


@dataclass(slots=True)
class Command:
    """A unit of work fetched from the remote queue.

    Status only moves forward (``pending -> executing -> completed|failed``,
    or ``pending -> failed`` for commands that fail validation) and the
    terminal fields are written once, by the transition that sets them.
    """

    id: str
    intent: str
    target: str = ""
    payload: TypedValue = EMPTY_MAP
    status: CommandStatus = CommandStatus.PENDING
    created_at: Optional[datetime] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    result: Any = None
    completed_at: Optional[datetime] = None
    history: list[CommandStatus] = field(
        default_factory=lambda: [CommandStatus.PENDING]
    )

    @classmethod
    def from_document(cls, name: str, fields: Mapping[str, Any]) -> "Command":
        """Build a command from a Firestore document ``name`` and ``fields``."""

        command_id = name.rstrip("/").rsplit("/", 1)[-1]
        decoded = decode_fields(fields)

        payload = decoded.get("payload")
        if payload is None or not payload.is_map:
            payload = EMPTY_MAP

        created = decoded.get("createdAt")
        return cls(
            id=command_id,
            intent=_field_str(decoded, "type"),
            target=_field_str(decoded, "controllerIp").strip(),
            payload=payload,
            created_at=_parse_timestamp(created.as_str() if created else ""),
        )

    @classmethod
    def from_message(cls, body: Mapping[str, Any], *, target: str) -> "Command":
        """Build a command from a push message body.

        The action defaults to ``setState`` when missing, and an ``id`` is
        generated unless the sender supplied one.
        """

        action = body.get("action") or "setState"
        raw_payload = body.get("payload")
        payload = from_plain(raw_payload) if isinstance(raw_payload, Mapping) else EMPTY_MAP
        command_id = body.get("id") or uuid.uuid4().hex
        return cls(
            id=str(command_id),
            intent=str(action),
            target=target.strip(),
            payload=payload,
            created_at=_utcnow(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def wire_status(self) -> str:
        """Status string written back to the remote queue."""
        if self.status is CommandStatus.FAILED and self.error_kind is ErrorKind.TIMEOUT:
            return "timeout"
        return self.status.value

    def mark_executing(self) -> None:
        self._transition(CommandStatus.EXECUTING)

    def complete(self, result: Any, *, at: Optional[datetime] = None) -> None:
        self._transition(CommandStatus.COMPLETED)
        self.result = result
        self.completed_at = at or _utcnow()

    def fail(
        self,
        error: str,
        *,
        kind: ErrorKind = ErrorKind.TRANSPORT,
        at: Optional[datetime] = None,
    ) -> None:
        self._transition(CommandStatus.FAILED)
        self.error = error
        self.error_kind = kind
        self.completed_at = at or _utcnow()

    def _transition(self, target: CommandStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status, target)
        self.status = target
        self.history.append(target)


@dataclass(slots=True)
class BridgeState:
    """Counters and timestamps describing the running bridge."""

    started_at: datetime = field(default_factory=_utcnow)
    commands_processed: int = 0
    commands_failed: int = 0
    cycles: int = 0
    last_cycle_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def record(self, command: Command) -> None:
        if command.status is CommandStatus.COMPLETED:
            self.commands_processed += 1
        elif command.status is CommandStatus.FAILED:
            self.commands_failed += 1
            self.last_error = command.error

    def record_cycle(self, *, at: Optional[datetime] = None) -> None:
        self.cycles += 1
        self.last_cycle_at = at or _utcnow()

    def uptime_seconds(self, now: Optional[datetime] = None) -> int:
        current = now or _utcnow()
        return max(0, int((current - self.started_at).total_seconds()))


def _field_str(fields: TypedValue, key: str) -> str:
    value = fields.get(key)
    return value.as_str() if value is not None else ""


def _parse_timestamp(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
