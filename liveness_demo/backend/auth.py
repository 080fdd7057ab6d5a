"""OAuth client-credentials exchange with a single-slot token cache."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlencode

from ..config import Settings
from ..errors import AuthError, TransportError
from .http_client import HttpTransport

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class Credential:
    access_token: str
    token_type: str
    expires_in: int
    issued_at: float


class TokenCache:
    """Holds at most one credential and decides when it must be refreshed."""

    def __init__(self, margin_seconds: int = 60, clock: Clock = time.time) -> None:
        self.margin_seconds = margin_seconds
        self._clock = clock
        self._credential: Optional[Credential] = None

    def get(self) -> Optional[Credential]:
        return self._credential

    def set(self, credential: Credential) -> None:
        self._credential = credential

    def clear(self) -> None:
        self._credential = None

    def is_expired(self, credential: Credential) -> bool:
        # The boundary instant itself counts as expired
        safe_lifetime = max(credential.expires_in - self.margin_seconds, 0)
        return self._clock() >= credential.issued_at + safe_lifetime


class AuthClient:
    """Exchanges the static API key for a bearer credential, refreshing on demand.

    Refreshes are single-flight: concurrent callers share one in-flight token
    request and all observe its credential (or its ``AuthError``).
    """

    def __init__(
        self,
        settings: Settings,
        transport: HttpTransport,
        cache: Optional[TokenCache] = None,
        clock: Clock = time.time,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._clock = clock
        self.cache = cache or TokenCache(settings.token_expiry_margin_seconds, clock=clock)
        self._refresh_task: Optional[asyncio.Task[Credential]] = None

    @property
    def token_url(self) -> str:
        query = urlencode({"grant_type": "client_credentials", "scope": self.settings.oauth_scope}, safe=":/")
        return f"{self.settings.auth_base_url}/oauth2/token?{query}"

    async def get_valid_credential(self) -> Credential:
        credential = self.cache.get()
        if credential is not None and not self.cache.is_expired(credential):
            return credential

        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh(), name="auth-token-refresh")
            self._refresh_task.add_done_callback(self._on_refresh_done)
        return await asyncio.shield(self._refresh_task)

    def _on_refresh_done(self, task: asyncio.Task[Credential]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark retrieved so an unobserved failure is not reported twice
            task.exception()

    async def _refresh(self) -> Credential:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Authorization": f"Basic {self.settings.api_key.get_secret_value()}",
        }
        logger.info("auth.refresh: requesting new access token")
        try:
            response = await self._transport.post(self.token_url, {}, headers=headers)
        except TransportError as exc:
            raise AuthError("Could not reach the token service", log_message=str(exc)) from exc

        if not 200 <= response.status < 300:
            logger.error("auth.refresh: HTTP %d - %s", response.status, response.data)
            raise AuthError(
                "Token exchange was rejected",
                log_message=f"token endpoint returned {response.status}: {response.data}",
            )

        data = response.data
        try:
            credential = Credential(
                access_token=str(data["access_token"]),
                token_type=str(data["token_type"]),
                expires_in=int(data["expires_in"]),
                issued_at=self._clock(),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("auth.refresh: malformed token response %s", data)
            raise AuthError("Token exchange returned a malformed body", log_message=f"bad token body: {data}") from exc

        self.cache.set(credential)
        logger.info(
            "auth.refresh: token issued %s... (%s, expires in %ss)",
            credential.access_token[:8],
            credential.token_type,
            credential.expires_in,
        )
        return credential


__all__ = ["AuthClient", "Credential", "TokenCache"]
