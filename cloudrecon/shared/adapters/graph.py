from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
import structlog

from cloudrecon.shared.core.exceptions import AuthenticationError, TransportError

logger = structlog.get_logger()

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
_USER_SELECT = "id,userPrincipalName,displayName,mailNickname,accountEnabled"


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "")
    return response.text[:200]


class GraphClient:
    """
    Minimal Microsoft Graph client for directory users.
    Tokens come from the run's Azure credential (any object with async ``get_token``).
    """

    def __init__(
        self,
        credential: Any,
        base_url: str = "https://graph.microsoft.com/v1.0",
        timeout: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._credential = credential
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def _headers(self) -> dict[str, str]:
        try:
            token = await self._credential.get_token(GRAPH_SCOPE)
        except Exception as e:
            raise AuthenticationError(f"Could not acquire Microsoft Graph token: {e}") from e
        return {
            "Authorization": f"Bearer {token.token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = await self._headers()
        try:
            return await self._client.request(
                method, f"{self._base_url}{path}", headers=headers, **kwargs
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Microsoft Graph {method} {path} failed: {e}") from e

    async def get_user(self, user_principal_name: str) -> dict[str, Any] | None:
        path = f"/users/{quote(user_principal_name, safe='@')}"
        response = await self._request("GET", path, params={"$select": _USER_SELECT})
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise TransportError(
                f"Microsoft Graph user lookup failed ({response.status_code}): {_error_detail(response)}"
            )
        payload = response.json()
        return payload if isinstance(payload, dict) else None

    async def create_user(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", "/users", json=payload)
        if response.status_code >= 400:
            raise TransportError(
                f"Microsoft Graph user create failed ({response.status_code}): {_error_detail(response)}"
            )
        body = response.json()
        logger.debug("graph_user_created", user_id=body.get("id") if isinstance(body, dict) else None)
        return body if isinstance(body, dict) else {}

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "GraphClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
