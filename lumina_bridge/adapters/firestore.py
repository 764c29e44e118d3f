"""Minimal Cloud Firestore REST client used by the pull path."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import quote

import aiohttp

from ..config import FirestoreConfig
from ..connection import LinkError
from ..token_manager import FirebaseAuthError, FirebaseTokenManager

LOGGER = logging.getLogger(__name__)


class FirestoreQueryError(RuntimeError):
    """The store answered, but with an error or a malformed body."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class FirestoreTransportError(LinkError):
    """The store could not be reached."""


class FirestoreClient:
    """Authenticated session against ``projects/<id>/databases/(default)``.

    ``connect`` signs in through Firebase Auth; afterwards the client acts as
    the ingestion link for the supervisor.
    """

    def __init__(
        self,
        config: FirestoreConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        token_manager: Optional[FirebaseTokenManager] = None,
    ) -> None:
        self.config = config
        self._session = session
        self._owns_session = session is None
        self._token_manager = token_manager
        self._connected = False

    @property
    def database_path(self) -> str:
        return f"projects/{self.config.project_id}/databases/(default)/documents"

    @property
    def user_path(self) -> str:
        """Parent document holding the commands collection."""
        return f"{self.database_path}/users/{self.config.user_uid}"

    def document_path(self, command_id: str) -> str:
        return f"{self.user_path}/{self.config.collection}/{command_id}"

    # ------------------------------------------------------------------
    # Link protocol
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        tokens = self._ensure_token_manager()
        tokens.invalidate()
        await tokens.get_token()
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False
        if self._token_manager is not None:
            self._token_manager.invalidate()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._token_manager = None

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    async def run_query(
        self, structured_query: Mapping[str, Any], *, parent: Optional[str] = None
    ) -> list[dict[str, Any]]:
        """Run a structured query and return the raw result rows.

        Raises:
            FirestoreQueryError: On an error status, an error row or a body
                that is not a list.
            LinkError: When the store is unreachable or rejects credentials.
        """

        url = f"{self.config.base_url}/{parent or self.user_path}:runQuery"
        body = await self._request(
            "POST", url, json_body={"structuredQuery": dict(structured_query)}
        )

        if not isinstance(body, list):
            raise FirestoreQueryError("runQuery response was not a list")

        for row in body:
            if not isinstance(row, Mapping):
                raise FirestoreQueryError("runQuery row was not an object")
            if "error" in row:
                raise FirestoreQueryError(f"runQuery returned an error: {row['error']}")
        return body

    async def patch_document(
        self,
        path: str,
        fields: Mapping[str, Any],
        *,
        update_mask: Iterable[str],
    ) -> dict[str, Any]:
        """Partially update a document; fields outside ``update_mask`` are untouched."""

        mask = list(update_mask)
        params = [("updateMask.fieldPaths", name) for name in mask]
        url = f"{self.config.base_url}/{quote(path, safe='/()')}"
        body = await self._request(
            "PATCH", url, json_body={"fields": dict(fields)}, params=params
        )
        if not isinstance(body, dict):
            raise FirestoreQueryError("patch response was not an object")
        return body

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_body: Any = None,
        params: Optional[list[tuple[str, str]]] = None,
    ) -> Any:
        tokens = self._ensure_token_manager()
        token = await tokens.get_token()
        session = self._ensure_session()
        headers = {"Authorization": f"Bearer {token}"}

        try:
            async with session.request(
                method,
                url,
                json=json_body,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
            ) as response:
                if response.status in (401, 403):
                    tokens.invalidate()
                    self._connected = False
                    detail = await response.text()
                    raise FirebaseAuthError(
                        f"Firestore rejected credentials ({response.status}): {detail.strip()[:200]}"
                    )
                if response.status >= 400:
                    detail = await response.text()
                    raise FirestoreQueryError(
                        f"Firestore {method} failed with status {response.status}: {detail.strip()[:200]}",
                        status=response.status,
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError as exc:
                    raise FirestoreQueryError("Firestore returned malformed JSON") from exc
        except aiohttp.ClientError as exc:
            self._connected = False
            raise FirestoreTransportError(f"Firestore unreachable: {exc}") from exc
        except TimeoutError as exc:
            self._connected = False
            raise FirestoreTransportError("Firestore request timed out") from exc

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _ensure_token_manager(self) -> FirebaseTokenManager:
        if self._token_manager is None:
            self._token_manager = FirebaseTokenManager(
                self.config, session=self._ensure_session()
            )
        return self._token_manager
