"""Liveness session creation against the streaming REST API."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from ..config import Settings
from ..errors import SessionError
from .auth import AuthClient
from .http_client import HttpTransport, json_headers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    session_id: str
    transaction_id: str

    def auth_payload(self) -> dict[str, str]:
        return {"session_id": self.session_id, "tx_id": self.transaction_id}


class SessionClient:
    def __init__(self, settings: Settings, transport: HttpTransport, auth: AuthClient) -> None:
        self.settings = settings
        self._transport = transport
        self._auth = auth

    @property
    def session_url(self) -> str:
        return f"{self.settings.streaming_api_url}/v1/session"

    async def create_session(self) -> Session:
        """Create a remote session tied to a freshly generated transaction id."""
        credential = await self._auth.get_valid_credential()
        transaction_id = str(uuid.uuid4())
        path = self.session_url

        logger.info("session.create: tx_id=%s", transaction_id)
        response = await self._transport.post_checked(
            path,
            {"tx_id": transaction_id},
            expected_status=200,
            headers=json_headers({"Authorization": f"Bearer {credential.access_token}"}),
            acceptable_errors=self.settings.liveness.acceptable_session_errors,
            error_cls=SessionError,
        )

        data = response.data
        session_id = data.get("session_id") if isinstance(data, dict) else None
        if not session_id:
            # tolerated error codes also land here, with their real status
            raise SessionError(method="POST", path=path, expected=200, actual=response.status, body=data)

        logger.info("session.create: session_id=%s tx_id=%s", session_id, transaction_id)
        return Session(session_id=str(session_id), transaction_id=transaction_id)


__all__ = ["Session", "SessionClient"]
