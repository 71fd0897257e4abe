from __future__ import annotations

import logging
from typing import Any

import httpx

from .settings import AUTH_BASIC, AUTH_TOKEN, AuthConfig

_LOGGER = logging.getLogger("knx_bridge.client")

HTTP_SERVICE_UNAVAILABLE = 503


class BridgeClientError(Exception):
    """REST surface returned an error or could not be reached."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class BridgeNotReady(BridgeClientError):
    """Registry is still empty (503)."""


class BridgeClient:
    """Async client for the bridge's own REST surface."""

    def __init__(
        self,
        base_url: str,
        *,
        auth: AuthConfig | None = None,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers: dict[str, str] = {"accept": "application/json"}
        client_auth: httpx.Auth | None = None
        if auth is not None and auth.mode == AUTH_TOKEN:
            headers["authorization"] = f"Bearer {auth.token}"
        elif auth is not None and auth.mode == AUTH_BASIC:
            client_auth = httpx.BasicAuth(auth.username, auth.password)

        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            auth=client_auth,
            timeout=timeout_s,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> Any:
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise BridgeClientError(f"{method} {path} failed: {e}") from e

        if resp.status_code == HTTP_SERVICE_UNAVAILABLE:
            raise BridgeNotReady(_detail(resp), status=resp.status_code)
        if resp.is_error:
            raise BridgeClientError(f"{method} {path}: {resp.status_code} {_detail(resp)}", status=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise BridgeClientError(f"{method} {path}: response is not JSON", status=resp.status_code) from e

    async def list_devices(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/devices")
        devices = data.get("devices") if isinstance(data, dict) else None
        if not isinstance(devices, list):
            raise BridgeClientError("Malformed /devices response")
        return devices

    async def get_state(self, key: str) -> dict[str, Any]:
        data = await self._request("GET", f"/device/{key}/state")
        if not isinstance(data, dict):
            raise BridgeClientError(f"Malformed state response for {key}")
        return data

    async def toggle(self, key: str, on: bool) -> dict[str, Any]:
        _LOGGER.debug("Toggle %s -> %s", key, on)
        return await self._request("POST", f"/device/{key}/toggle", json={"on": on})

    async def set_position(self, key: str, position: int) -> dict[str, Any]:
        _LOGGER.debug("Position %s -> %s", key, position)
        return await self._request("POST", f"/device/{key}/position", json={"position": position})

    async def trigger_scene(self, key: str) -> dict[str, Any]:
        return await self._request("POST", f"/device/{key}/scene")


def _detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text
    if isinstance(data, dict) and "detail" in data:
        return str(data["detail"])
    return resp.text
