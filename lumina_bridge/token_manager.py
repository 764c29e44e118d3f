"""Firebase Authentication ID tokens for the Firestore REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import aiohttp

from .config import FirestoreConfig
from .connection import LinkError

LOGGER = logging.getLogger(__name__)


class FirebaseAuthError(LinkError):
    """Raised when Firebase rejects a sign-in or refresh request."""


@dataclass(slots=True)
class TokenCredentials:
    """Firebase ID token with metadata."""

    id_token: str
    refresh_token: str
    user_id: str
    issued_at: datetime
    expires_at: datetime


class FirebaseTokenManager:
    """Signs in once and refreshes the ID token ahead of expiry.

    Email/password credentials are used when configured, otherwise the bridge
    signs in anonymously.
    """

    def __init__(
        self,
        config: FirestoreConfig,
        *,
        session: aiohttp.ClientSession,
        renewal_ratio: float = 0.85,  # refresh at 85% of token lifetime
        safety_buffer_seconds: int = 60,
    ) -> None:
        self.config = config
        self.renewal_ratio = renewal_ratio
        self.safety_buffer_seconds = safety_buffer_seconds
        self._session = session
        self._current: Optional[TokenCredentials] = None

    @property
    def credentials(self) -> Optional[TokenCredentials]:
        return self._current

    def invalidate(self) -> None:
        self._current = None

    async def get_token(self) -> str:
        """Return a valid ID token, signing in or refreshing when needed."""

        if self._current is None:
            self._current = await self.sign_in()
        elif self._needs_refresh():
            try:
                self._current = await self.refresh(self._current.refresh_token)
            except FirebaseAuthError as exc:
                LOGGER.warning("Token refresh rejected (%s); signing in again", exc)
                self._current = await self.sign_in()
        return self._current.id_token

    async def sign_in(self) -> TokenCredentials:
        if self.config.email and self.config.password:
            endpoint = "accounts:signInWithPassword"
            payload: dict[str, Any] = {
                "email": self.config.email,
                "password": self.config.password,
                "returnSecureToken": True,
            }
        else:
            endpoint = "accounts:signUp"
            payload = {"returnSecureToken": True}

        url = f"{self.config.auth_url}/{endpoint}"
        LOGGER.debug("Requesting Firebase ID token from %s", url)
        data = await self._post(url, json_body=payload)

        credentials = _credentials_from(
            data.get("idToken"),
            data.get("refreshToken"),
            data.get("localId"),
            data.get("expiresIn"),
        )
        LOGGER.info(
            "Signed in to Firebase as %s, token expires at %s",
            credentials.user_id,
            credentials.expires_at.isoformat(timespec="seconds"),
        )
        return credentials

    async def refresh(self, refresh_token: str) -> TokenCredentials:
        url = f"{self.config.token_url}/token"
        data = await self._post(
            url,
            form={"grant_type": "refresh_token", "refresh_token": refresh_token},
        )
        credentials = _credentials_from(
            data.get("id_token"),
            data.get("refresh_token"),
            data.get("user_id"),
            data.get("expires_in"),
        )
        LOGGER.debug(
            "Firebase token refreshed, expires at %s", credentials.expires_at
        )
        return credentials

    def _needs_refresh(self, now: Optional[datetime] = None) -> bool:
        current = self._current
        if current is None:
            return True
        now = now or datetime.now(timezone.utc)
        lifetime = (current.expires_at - current.issued_at).total_seconds()
        renew_at = current.issued_at + timedelta(
            seconds=max(0.0, lifetime * self.renewal_ratio - self.safety_buffer_seconds)
        )
        return now >= renew_at

    async def _post(
        self,
        url: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
        form: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        params = {"key": self.config.api_key} if self.config.api_key else None
        try:
            async with self._session.post(
                url,
                params=params,
                json=json_body,
                data=form,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
            ) as response:
                if response.status != 200:
                    text = await response.text()
                    raise FirebaseAuthError(
                        f"Firebase auth request failed with status {response.status}: {text.strip()}"
                    )
                data = await response.json()
        except aiohttp.ClientError as exc:
            raise FirebaseAuthError(f"Firebase auth request failed: {exc}") from exc
        except TimeoutError as exc:
            raise FirebaseAuthError("Firebase auth request timed out") from exc
        except ValueError as exc:
            raise FirebaseAuthError(f"Firebase auth response is not JSON: {exc}") from exc

        if not isinstance(data, dict):
            raise FirebaseAuthError("Firebase auth response is not a JSON object")
        return data


def _credentials_from(
    id_token: Any, refresh_token: Any, user_id: Any, expires_in: Any
) -> TokenCredentials:
    if not id_token:
        raise FirebaseAuthError("Firebase auth response did not include a token")
    try:
        lifetime = int(expires_in or 3600)
    except (TypeError, ValueError):
        lifetime = 3600
    issued_at = datetime.now(timezone.utc)
    return TokenCredentials(
        id_token=str(id_token),
        refresh_token=str(refresh_token or ""),
        user_id=str(user_id or ""),
        issued_at=issued_at,
        expires_at=issued_at + timedelta(seconds=lifetime),
    )
