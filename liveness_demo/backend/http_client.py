"""HTTP transport shared by the auth and session clients."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence

import httpx

from ..config import Settings
from ..errors import ExpectedStatus, MalformedResponseError, ResourceError, TransportError

logger = logging.getLogger(__name__)

_EMPTY_BODY_STATUSES = frozenset({204, 205})


@dataclass(frozen=True)
class HttpResponse:
    status: int
    data: Any


class HttpTransport:
    """Thin wrapper around ``httpx.AsyncClient`` with status-aware JSON decoding."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._client = client or httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)

    async def send(
        self,
        route: str,
        method: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[str] = None,
    ) -> HttpResponse:
        """Send a request and decode its body; 204/205 bodies are never parsed."""
        try:
            response = await self._client.request(method, route, headers=dict(headers or {}), content=body)
        except httpx.TimeoutException as exc:
            logger.error("http.send: %s %s timed out", method, route)
            raise TransportError("Request timed out", log_message=f"{method} {route} timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("http.send: %s %s network error - %s", method, route, exc)
            raise TransportError("Network error", log_message=f"{method} {route}: {exc}") from exc

        if not response.is_success:
            logger.error("http.send: %s %s -> %d %s", method, route, response.status_code, response.reason_phrase)

        if response.status_code in _EMPTY_BODY_STATUSES:
            return HttpResponse(status=response.status_code, data=None)

        try:
            data = json.loads(response.text)
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(
                method=method, path=route, status=response.status_code, text=response.text
            ) from exc
        return HttpResponse(status=response.status_code, data=data)

    async def post(
        self,
        route: str,
        json_body: Mapping[str, Any],
        headers: Optional[Mapping[str, str]] = None,
    ) -> HttpResponse:
        return await self.send(route, "POST", headers=headers, body=json.dumps(dict(json_body)))

    async def post_checked(
        self,
        path: str,
        json_body: Mapping[str, Any],
        *,
        expected_status: ExpectedStatus,
        headers: Optional[Mapping[str, str]] = None,
        acceptable_errors: Optional[Sequence[str]] = None,
        error_cls: type[ResourceError] = ResourceError,
    ) -> HttpResponse:
        """POST and validate the status, returning the whole response.

        An unexpected status is tolerated only when the body carries an ``error``
        code listed in ``acceptable_errors``. A body that is not JSON raises
        ``error_cls`` with the raw text, whatever the status.
        """
        try:
            response = await self.post(path, json_body, headers=headers)
        except MalformedResponseError as exc:
            raise error_cls(
                method="POST",
                path=path,
                expected=expected_status,
                actual=exc.status,
                body=exc.text,
            ) from exc

        expected = (expected_status,) if isinstance(expected_status, int) else tuple(expected_status)
        data = response.data
        error_code = data.get("error") if isinstance(data, dict) else None

        if response.status not in expected and not (acceptable_errors and error_code in acceptable_errors):
            raise error_cls(
                method="POST",
                path=path,
                expected=expected_status,
                actual=response.status,
                body=data,
            )
        return response

    async def post_resource(
        self,
        path: str,
        json_body: Mapping[str, Any],
        *,
        expected_status: ExpectedStatus,
        headers: Optional[Mapping[str, str]] = None,
        acceptable_errors: Optional[Sequence[str]] = None,
        error_cls: type[ResourceError] = ResourceError,
    ) -> Any:
        """Like ``post_checked`` but returns the tolerated ``error`` code, or the body."""
        response = await self.post_checked(
            path,
            json_body,
            expected_status=expected_status,
            headers=headers,
            acceptable_errors=acceptable_errors,
            error_cls=error_cls,
        )
        data = response.data
        error_code = data.get("error") if isinstance(data, dict) else None
        return error_code if error_code else data

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)


def json_headers(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if extra:
        headers.update(extra)
    return headers


__all__ = ["HttpResponse", "HttpTransport", "json_headers"]
