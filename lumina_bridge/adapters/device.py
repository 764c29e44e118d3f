"""HTTP client for the WLED JSON API on the local network."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import aiohttp

from ..constants import DEFAULT_DEVICE_PORT
from ..core import ErrorKind
from ..device_requests import DeviceRequest

LOGGER = logging.getLogger(__name__)

_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


class DeviceRequestError(RuntimeError):
    """Raised when the device does not answer a request with a 2xx status."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status


class WledClient:
    """Non-blocking client issuing mapped requests to a WLED controller."""

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        default_port: int = DEFAULT_DEVICE_PORT,
    ) -> None:
        self.default_port = default_port
        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None

    def build_url(self, target: str, path: str) -> str:
        target = target.strip()
        if target.startswith(("http://", "https://")):
            base = target.rstrip("/")
        else:
            host = target.rstrip("/")
            if ":" not in host and self.default_port != DEFAULT_DEVICE_PORT:
                host = f"{host}:{self.default_port}"
            base = f"http://{host}"
        return f"{base}{path}"

    async def execute(
        self, target: str, request: DeviceRequest, *, timeout: float = 10.0
    ) -> Any:
        """Send ``request`` to ``target`` and return the parsed response body.

        JSON responses are decoded; anything else is returned as text.

        Raises:
            DeviceRequestError: On a non-2xx status, timeout, refused
                connection or any other transport failure.
        """

        session = await self._ensure_session()
        url = self.build_url(target, request.path)
        data = None if request.method == "GET" else json.dumps(request.body or {})

        LOGGER.debug("Device request %s %s", request.method, url)

        try:
            async with asyncio.timeout(timeout):
                async with session.request(
                    request.method, url, data=data, headers=_HEADERS
                ) as response:
                    raw = await response.read()
                    if not 200 <= response.status < 300:
                        raise DeviceRequestError(
                            f"HTTP {response.status}",
                            kind=ErrorKind.HTTP_STATUS,
                            status=response.status,
                        )
        except asyncio.TimeoutError as exc:
            raise DeviceRequestError(
                f"timeout after {timeout:.1f}s", kind=ErrorKind.TIMEOUT
            ) from exc
        except aiohttp.ClientConnectorError as exc:
            raise DeviceRequestError(
                "connection refused", kind=ErrorKind.CONNECTION_REFUSED
            ) from exc
        except aiohttp.ClientError as exc:
            raise DeviceRequestError(
                f"transport error: {exc}", kind=ErrorKind.TRANSPORT
            ) from exc

        return _parse_body(raw)

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session


def _parse_body(raw: bytes) -> Any:
    if not raw:
        return None
    # non-UTF-8 replies are kept as opaque text
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text
