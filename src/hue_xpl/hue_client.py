from __future__ import annotations

from typing import Any

import httpx

from hue_xpl.models import (
    BrightnessCommand,
    DeviceSnapshot,
    GroupSnapshot,
    HsbCommand,
    NormalizedCommand,
    OffCommand,
    OnCommand,
    RgbCommand,
    WhiteCommand,
)
from hue_xpl.units import degrees_to_hue, kelvin_to_mired, percent_to_bits, rgb_to_xy


CONNECTION_RESET = "connection-reset"
TIMEOUT = "timeout"
UNREACHABLE = "unreachable"
TRANSPORT = "transport"

# Hue v1 error types
ERROR_UNAUTHORIZED = 1
ERROR_LINK_BUTTON = 101


class HueTransportError(Exception):
    def __init__(self, message: str, *, code: str = TRANSPORT) -> None:
        super().__init__(message)
        self.code = code

    @property
    def retryable(self) -> bool:
        return self.code == CONNECTION_RESET


class HueUpstreamError(Exception):
    def __init__(self, *, status_code: int, body: Any, error_type: int | None = None, description: str | None = None) -> None:
        super().__init__(f"Hue upstream error: {description or status_code}")
        self.status_code = status_code
        self.body = body
        self.error_type = error_type
        self.description = description


class HueUnauthorizedError(HueUpstreamError):
    pass


def is_connection_reset(exc: BaseException) -> bool:
    return isinstance(exc, HueTransportError) and exc.retryable


def _classify(exc: httpx.TransportError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return TIMEOUT
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return CONNECTION_RESET
    if "reset" in str(exc).lower():
        return CONNECTION_RESET
    if isinstance(exc, httpx.ConnectError):
        return UNREACHABLE
    return TRANSPORT


def _first_error(body: Any) -> dict[str, Any] | None:
    if not isinstance(body, list):
        return None
    for item in body:
        if isinstance(item, dict) and isinstance(item.get("error"), dict):
            return item["error"]
    return None


def _scalars(values: Any, *, keep_xy: bool = False) -> dict[str, Any]:
    if not isinstance(values, dict):
        return {}
    out: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, (str, int, float, bool)):
            out[key] = value
        elif keep_xy and isinstance(value, list) and key == "xy":
            out[key] = tuple(value)
    return out


def build_state_body(command: NormalizedCommand) -> dict[str, Any]:
    if isinstance(command, OnCommand):
        return {"on": True}
    if isinstance(command, OffCommand):
        return {"on": False}
    if isinstance(command, BrightnessCommand):
        if command.brightness is None:
            return {"on": True}
        if command.brightness <= 0:
            return {"on": False}
        return {"on": True, "bri": max(1, percent_to_bits(command.brightness))}

    body: dict[str, Any] = {"on": True}
    if isinstance(command, WhiteCommand):
        if command.color_temp_k is not None:
            body["ct"] = kelvin_to_mired(command.color_temp_k)
        if command.brightness is not None:
            body["bri"] = max(1, percent_to_bits(command.brightness))
    elif isinstance(command, HsbCommand):
        if command.hue is not None:
            body["hue"] = degrees_to_hue(command.hue)
        if command.saturation is not None:
            body["sat"] = percent_to_bits(command.saturation)
        if command.brightness is not None:
            body["bri"] = max(1, percent_to_bits(command.brightness))
    elif isinstance(command, RgbCommand):
        x, y, bri = rgb_to_xy(command.red, command.green, command.blue)
        body["xy"] = [x, y]
        body["bri"] = max(1, bri)
    return body


class HueClient:
    def __init__(
        self,
        *,
        bridge_host: str | None,
        username: str | None,
        bridge_port: int | None = None,
        timeout_ms: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._bridge_host = bridge_host
        self._bridge_port = bridge_port
        self._username = username
        self._timeout = timeout_ms / 1000.0
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def bridge_host(self) -> str | None:
        return self._bridge_host

    @property
    def username(self) -> str | None:
        return self._username

    def _base_url(self) -> str:
        if not self._bridge_host:
            raise HueTransportError("bridge_host not configured", code=UNREACHABLE)
        if self._bridge_port:
            return f"http://{self._bridge_host}:{self._bridge_port}"
        return f"http://{self._bridge_host}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client:
            return self._client
        self._client = httpx.AsyncClient(
            base_url=self._base_url(),
            timeout=httpx.Timeout(self._timeout, connect=3.0),
            transport=self._transport,
        )
        return self._client

    def _user_path(self, suffix: str) -> str:
        if not self._username:
            raise HueUnauthorizedError(status_code=0, body=None, error_type=ERROR_UNAUTHORIZED, description="no username")
        return f"/api/{self._username}{suffix}"

    async def request_json(self, *, method: str, path: str, json_body: Any | None = None) -> Any:
        client = await self._get_client()
        try:
            resp = await client.request(method, path, json=json_body)
        except httpx.TransportError as exc:
            raise HueTransportError(str(exc) or exc.__class__.__name__, code=_classify(exc)) from exc

        try:
            body: Any = resp.json()
        except ValueError:
            body = resp.text

        if resp.status_code >= 400:
            raise HueUpstreamError(status_code=resp.status_code, body=body)

        error = _first_error(body)
        if error is not None:
            error_type = error.get("type")
            description = error.get("description") if isinstance(error.get("description"), str) else None
            kwargs = dict(status_code=resp.status_code, body=body, error_type=error_type, description=description)
            if error_type == ERROR_UNAUTHORIZED:
                raise HueUnauthorizedError(**kwargs)
            raise HueUpstreamError(**kwargs)
        return body

    async def get_json(self, path: str) -> Any:
        return await self.request_json(method="GET", path=path)

    async def list_lights(self) -> list[DeviceSnapshot]:
        payload = await self.get_json(self._user_path("/lights"))
        snapshots: list[DeviceSnapshot] = []
        if not isinstance(payload, dict):
            return snapshots
        for light_id, device in payload.items():
            if not isinstance(device, dict):
                continue
            snapshots.append(
                DeviceSnapshot(
                    id=str(light_id),
                    unique_id=device.get("uniqueid") if isinstance(device.get("uniqueid"), str) else None,
                    kind="light",
                    attributes=_scalars(device.get("state"), keep_xy=True),
                    name=device.get("name") if isinstance(device.get("name"), str) else None,
                )
            )
        return snapshots

    async def list_sensors(self) -> list[DeviceSnapshot]:
        payload = await self.get_json(self._user_path("/sensors"))
        snapshots: list[DeviceSnapshot] = []
        if not isinstance(payload, dict):
            return snapshots
        for sensor_id, device in payload.items():
            if not isinstance(device, dict):
                continue
            attributes = _scalars(device.get("config"))
            attributes.update(_scalars(device.get("state")))
            snapshots.append(
                DeviceSnapshot(
                    id=str(sensor_id),
                    unique_id=device.get("uniqueid") if isinstance(device.get("uniqueid"), str) else None,
                    kind="sensor",
                    attributes=attributes,
                    name=device.get("name") if isinstance(device.get("name"), str) else None,
                )
            )
        return snapshots

    async def list_groups(self) -> list[GroupSnapshot]:
        payload = await self.get_json(self._user_path("/groups"))
        groups: list[GroupSnapshot] = []
        if not isinstance(payload, dict):
            return groups
        for group_id, group in payload.items():
            if not isinstance(group, dict):
                continue
            members = group.get("lights")
            if not isinstance(members, list):
                members = []
            groups.append(
                GroupSnapshot(
                    id=str(group_id),
                    member_device_ids=tuple(str(m) for m in members),
                    name=group.get("name") if isinstance(group.get("name"), str) else None,
                )
            )
        return groups

    async def apply_state(self, target_id: str, is_group: bool, command: NormalizedCommand) -> Any:
        suffix = f"/groups/{target_id}/action" if is_group else f"/lights/{target_id}/state"
        return await self.request_json(method="PUT", path=self._user_path(suffix), json_body=build_state_body(command))
