from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Literal

AUTH_NONE = "none"
AUTH_TOKEN = "token"
AUTH_BASIC = "basic"

AuthMode = Literal["none", "token", "basic"]


@dataclass(frozen=True)
class AuthConfig:
    mode: AuthMode
    token: str
    username: str
    password: str


@dataclass(frozen=True)
class PortalConfig:
    base_url: str
    username: str
    password: str
    login_timeout_s: float
    request_timeout_s: float
    verify_tls: bool


@dataclass(frozen=True)
class DiscoveryConfig:
    max_pages: int
    timeout_s: float
    interval_s: float


@dataclass(frozen=True)
class RetryConfig:
    base_delay_s: float
    max_delay_s: float


@dataclass(frozen=True)
class ControlConfig:
    command_timeout_s: float
    scene_reset_s: float


@dataclass(frozen=True)
class ApiConfig:
    host: str
    port: int
    auth: AuthConfig


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    username: str
    password: str
    base_topic: str
    discovery_prefix: str
    client_id: str


@dataclass(frozen=True)
class SyncConfig:
    enabled: bool
    bridge_url: str
    fast_poll_s: float
    cover_poll_s: float
    slow_poll_s: float


@dataclass(frozen=True)
class Settings:
    portal: PortalConfig
    discovery: DiscoveryConfig
    retry: RetryConfig
    control: ControlConfig
    api: ApiConfig
    store_path: str
    mqtt: MqttConfig
    sync: SyncConfig
    debug: bool


def read_options() -> dict[str, Any]:
    path = os.environ.get("KNX_BRIDGE_OPTIONS", "/data/options.json")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}


def _read_float(raw: dict[str, Any], key: str, default: float) -> float:
    try:
        v = raw.get(key)
        if v is None:
            return float(default)
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _read_int(raw: dict[str, Any], key: str, default: int) -> int:
    try:
        v = raw.get(key)
        if v is None:
            return int(default)
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _read_bool(raw: dict[str, Any], key: str, default: bool) -> bool:
    v = raw.get(key)
    if v is None:
        return default
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def _load_auth(raw: dict[str, Any]) -> AuthConfig:
    mode = (raw.get("mode") or AUTH_NONE).strip().lower()
    if mode not in (AUTH_NONE, AUTH_TOKEN, AUTH_BASIC):
        mode = AUTH_NONE

    # fallback to none if credentials missing
    if mode == AUTH_TOKEN and not str(raw.get("token") or ""):
        mode = AUTH_NONE
    if mode == AUTH_BASIC and (not str(raw.get("username") or "") or not str(raw.get("password") or "")):
        mode = AUTH_NONE
    return AuthConfig(
        mode=mode,  # type: ignore[arg-type]
        token=str(raw.get("token") or ""),
        username=str(raw.get("username") or ""),
        password=str(raw.get("password") or ""),
    )


def load_settings(options: dict[str, Any], env: dict[str, str] | None = None) -> Settings:
    env = dict(os.environ) if env is None else env

    portal_raw = options.get("portal") or {}
    # Secrets usually come from the environment (.env / container secrets).
    portal = PortalConfig(
        base_url=str(env.get("SMARTHOME_BASE_URL") or portal_raw.get("base_url") or "").rstrip("/"),
        username=str(env.get("SMARTHOME_USERNAME") or portal_raw.get("username") or ""),
        password=str(env.get("SMARTHOME_PASSWORD") or portal_raw.get("password") or ""),
        login_timeout_s=max(1.0, _read_float(portal_raw, "login_timeout_s", 30.0)),
        request_timeout_s=max(1.0, _read_float(portal_raw, "request_timeout_s", 15.0)),
        verify_tls=_read_bool(portal_raw, "verify_tls", False),
    )

    discovery_raw = options.get("discovery") or {}
    discovery = DiscoveryConfig(
        max_pages=max(1, min(99, _read_int(discovery_raw, "max_pages", 99))),
        timeout_s=max(1.0, _read_float(discovery_raw, "timeout_s", 300.0)),
        interval_s=max(0.0, _read_float(discovery_raw, "interval_s", 0.0)),
    )

    retry_raw = options.get("retry") or {}
    base_delay_s = max(0.0, _read_float(retry_raw, "base_delay_s", 2.0))
    retry = RetryConfig(
        base_delay_s=base_delay_s,
        max_delay_s=max(base_delay_s, _read_float(retry_raw, "max_delay_s", 300.0)),
    )

    control_raw = options.get("control") or {}
    control = ControlConfig(
        command_timeout_s=max(0.5, _read_float(control_raw, "command_timeout_s", 20.0)),
        scene_reset_s=max(0.0, _read_float(control_raw, "scene_reset_s", 1.0)),
    )

    api_raw = options.get("api") or {}
    api = ApiConfig(
        host=str(api_raw.get("host") or "0.0.0.0"),
        port=_read_int(api_raw, "port", 8080),
        auth=_load_auth(api_raw.get("auth") or {}),
    )

    mqtt_raw = options.get("mqtt") or {}
    mqtt = MqttConfig(
        host=str(mqtt_raw.get("host") or "core-mosquitto"),
        port=int(mqtt_raw.get("port") or 1883),
        username=str(mqtt_raw.get("username") or ""),
        password=str(mqtt_raw.get("password") or ""),
        base_topic=str(mqtt_raw.get("base_topic") or "knx_bridge").rstrip("/"),
        discovery_prefix=str(mqtt_raw.get("discovery_prefix") or "homeassistant").rstrip("/"),
        client_id=str(mqtt_raw.get("client_id") or "knx-portal-bridge"),
    )

    sync_raw = options.get("sync") or {}
    sync = SyncConfig(
        enabled=_read_bool(sync_raw, "enabled", False),
        bridge_url=str(sync_raw.get("bridge_url") or f"http://127.0.0.1:{api.port}").rstrip("/"),
        fast_poll_s=max(0.5, _read_float(sync_raw, "fast_poll_s", 5.0)),
        cover_poll_s=max(0.5, _read_float(sync_raw, "cover_poll_s", 10.0)),
        slow_poll_s=max(0.5, _read_float(sync_raw, "slow_poll_s", 30.0)),
    )

    return Settings(
        portal=portal,
        discovery=discovery,
        retry=retry,
        control=control,
        api=api,
        store_path=str(options.get("store_path") or "/data/registry.json"),
        mqtt=mqtt,
        sync=sync,
        debug=bool(options.get("debug") or False),
    )
