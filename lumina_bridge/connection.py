"""Link supervision for the ingestion channel.

The supervisor owns the single remote session (Firestore auth session or MQTT
connection) and exposes whether it is ready. It never loops on its own:
:meth:`ConnectivitySupervisor.maintain` performs at most one bounded connect
attempt per call and otherwise returns immediately, leaving scheduling to the
application loop.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional, Protocol

if TYPE_CHECKING:
    from .config import ResilienceConfig
    from .core import Link

LOGGER = logging.getLogger(__name__)


class LinkError(RuntimeError):
    """Transport-level failure of the remote session."""


class LinkState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"


class LinkLossReason(str, Enum):
    CONNECTION_LOST = "connection_lost"
    AUTH_FAILURE = "auth_failure"
    SESSION_LOST = "session_lost"
    QUERY_TRANSPORT = "query_transport"


StateListener = Callable[[LinkState, LinkState], None]


class BackoffPolicy(Protocol):
    def next_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        ...

    def reset(self) -> None:
        ...


class FixedBackoff:
    """Constant delay between attempts."""

    def __init__(self, interval: float = 5.0) -> None:
        self.interval = max(0.0, interval)

    def next_delay(self, attempt: int) -> float:
        return self.interval

    def reset(self) -> None:
        pass


class ExponentialBackoff:
    """Doubling delay with optional jitter, capped at ``maximum``."""

    def __init__(
        self, initial: float = 1.0, maximum: float = 60.0, jitter_ratio: float = 0.0
    ) -> None:
        self.initial = max(0.1, initial)
        self.maximum = max(self.initial, maximum)
        self.jitter_ratio = max(0.0, min(1.0, jitter_ratio))

    def next_delay(self, attempt: int) -> float:
        delay = min(self.initial * (2 ** max(0, attempt - 1)), self.maximum)
        if self.jitter_ratio > 0.0:
            jitter = delay * self.jitter_ratio
            delay = random.uniform(max(0.1, delay - jitter), delay + jitter)
        return delay

    def reset(self) -> None:
        pass


def build_backoff(config: ResilienceConfig) -> BackoffPolicy:
    if config.backoff == "exponential":
        return ExponentialBackoff(
            config.reconnect_interval_seconds,
            config.reconnect_max_seconds,
            config.reconnect_jitter_ratio,
        )
    return FixedBackoff(config.reconnect_interval_seconds)


class ConnectivitySupervisor:
    """Drives ``disconnected -> connecting -> ready`` for one link.

    Any transport failure reported through :meth:`mark_lost` (or detected via
    ``link.is_connected()``) drops the state back to ``disconnected``; the next
    attempt is scheduled by the backoff policy.
    """

    def __init__(
        self,
        link: Link,
        *,
        backoff: Optional[BackoffPolicy] = None,
        attempt_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "link",
    ) -> None:
        self._link = link
        self._backoff = backoff or FixedBackoff()
        self._attempt_timeout = attempt_timeout
        self._clock = clock
        self.name = name

        self._state = LinkState.DISCONNECTED
        self._failed_attempts = 0
        self._next_attempt_at = 0.0
        self._last_error: Optional[str] = None
        self._listeners: List[StateListener] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is LinkState.READY

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def failed_attempts(self) -> int:
        return self._failed_attempts

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def seconds_until_attempt(self) -> float:
        if self._state is not LinkState.DISCONNECTED:
            return 0.0
        return max(0.0, self._next_attempt_at - self._clock())

    async def maintain(self) -> LinkState:
        """Advance the link by at most one connect attempt."""

        self._loop = asyncio.get_running_loop()

        if self._state is LinkState.READY:
            if not self._link.is_connected():
                self.mark_lost(LinkLossReason.SESSION_LOST)
            return self._state

        if self._state is LinkState.CONNECTING:
            return self._state

        if self._clock() < self._next_attempt_at:
            return self._state

        await self._attempt()
        return self._state

    def mark_lost(
        self, reason: LinkLossReason, detail: Optional[str] = None
    ) -> None:
        """Drop to ``disconnected``; must run on the event loop thread."""

        if self._state is LinkState.DISCONNECTED:
            return

        self._last_error = detail or reason.value
        LOGGER.warning(
            "%s lost (reason=%s%s)",
            self.name,
            reason.value,
            f": {detail}" if detail else "",
        )
        self._backoff.reset()
        self._failed_attempts = 0
        # first reconnect attempt is immediate
        self._next_attempt_at = self._clock()
        self._set_state(LinkState.DISCONNECTED)

    def notify_lost(
        self, reason: LinkLossReason, detail: Optional[str] = None
    ) -> None:
        """Thread-safe variant of :meth:`mark_lost` for transport callbacks."""

        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.mark_lost, reason, detail)

    async def shutdown(self) -> None:
        try:
            await self._link.disconnect()
        except Exception as exc:  # pragma: no cover - cleanup path
            LOGGER.debug("Error while disconnecting %s: %s", self.name, exc)
        self._set_state(LinkState.DISCONNECTED)

    async def _attempt(self) -> None:
        self._set_state(LinkState.CONNECTING)
        LOGGER.info("Connecting %s", self.name)

        try:
            await asyncio.wait_for(self._link.connect(), timeout=self._attempt_timeout)
        except asyncio.TimeoutError:
            self._register_failure(
                f"connect timed out after {self._attempt_timeout:.1f}s"
            )
        except LinkError as exc:
            self._register_failure(str(exc))
        except Exception as exc:
            LOGGER.exception("Unexpected error connecting %s", self.name)
            self._register_failure(f"unexpected error: {exc}")
        else:
            self._failed_attempts = 0
            self._last_error = None
            self._backoff.reset()
            LOGGER.info("%s ready", self.name)
            self._set_state(LinkState.READY)

    def _register_failure(self, detail: str) -> None:
        self._failed_attempts += 1
        self._last_error = detail
        delay = self._backoff.next_delay(self._failed_attempts)
        self._next_attempt_at = self._clock() + delay
        LOGGER.warning(
            "%s connection attempt %d failed: %s, retrying in %.1fs",
            self.name,
            self._failed_attempts,
            detail,
            delay,
        )
        self._set_state(LinkState.DISCONNECTED)

    def _set_state(self, state: LinkState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        for listener in self._listeners:
            try:
                listener(previous, state)
            except Exception:
                LOGGER.exception("Link state listener failed")
