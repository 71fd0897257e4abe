from __future__ import annotations

import argparse
import asyncio
import base64
import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse

from .accessory_sync import AccessorySync, build_sync
from .control import ControlPlane
from .discovery import DiscoveryEngine
from .errors import (
    AuthError,
    BridgeError,
    DiscoveryError,
    DispatchError,
    NotFound,
    OperationTimeout,
    PortalError,
    TypeMismatch,
    ValidationError,
)
from .models import Device
from .portal import Credentials, HttpPortalBrowser, PortalBrowser
from .realtime import RealtimeHub
from .registry import DeviceRegistry
from .session import SessionManager
from .settings import AUTH_BASIC, AUTH_NONE, AUTH_TOKEN, AuthConfig, Settings, load_settings, read_options
from .store import RegistryStore

_LOGGER = logging.getLogger("knx_bridge")
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

BRIDGE_VERSION = "1.0.0"

OPEN_PATHS = ("/health",)


def _configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    for name in (
        "knx_bridge",
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ):
        logging.getLogger(name).setLevel(level)

    # paho and httpx are chatty at debug; only follow along when asked.
    lib_level = logging.DEBUG if debug else logging.WARNING
    logging.getLogger("paho").setLevel(lib_level)
    logging.getLogger("httpx").setLevel(lib_level)


def _unauthorized(mode: str) -> Response:
    headers: dict[str, str] = {}
    if mode == AUTH_BASIC:
        headers["WWW-Authenticate"] = 'Basic realm="knx-bridge"'
    return Response(status_code=401, headers=headers)


def _check_auth_headers(headers: dict[str, str], query: dict[str, str], auth: AuthConfig) -> bool:
    if auth.mode == AUTH_NONE:
        return True

    header = headers.get("authorization")

    if auth.mode == AUTH_TOKEN:
        if not auth.token:
            return False
        if header and header.lower().startswith("bearer "):
            return header[7:].strip() == auth.token
        token_q = query.get("token")
        return bool(token_q) and token_q == auth.token

    if auth.mode == AUTH_BASIC:
        if not auth.username or not auth.password:
            return False
        if not header or not header.lower().startswith("basic "):
            return False
        try:
            raw = base64.b64decode(header[6:].strip()).decode("utf-8")
            user, pw = raw.split(":", 1)
        except (ValueError, UnicodeDecodeError):
            return False
        return user == auth.username and pw == auth.password

    return False


def _status_for(err: BridgeError) -> int:
    if isinstance(err, NotFound):
        return 404
    if isinstance(err, ValidationError):
        return 400
    if isinstance(err, TypeMismatch):
        return 409
    if isinstance(err, OperationTimeout):
        return 504
    if isinstance(err, (DispatchError, AuthError, PortalError, DiscoveryError)):
        return 502
    return 500


def _http_error(err: BridgeError) -> HTTPException:
    status = _status_for(err)
    if status >= 500:
        _LOGGER.warning("API: %s: %s", type(err).__name__, err)
    return HTTPException(status_code=status, detail=str(err))


def create_app(settings: Settings | None = None, browser: PortalBrowser | None = None) -> FastAPI:
    if settings is None:
        settings = load_settings(read_options())
    _configure_logging(settings.debug)

    api = FastAPI(title="KNX Portal Bridge", version=BRIDGE_VERSION)

    if browser is None:
        browser = HttpPortalBrowser(
            base_url=settings.portal.base_url,
            request_timeout_s=settings.portal.request_timeout_s,
            verify_tls=settings.portal.verify_tls,
        )
    sessions = SessionManager(
        browser,
        Credentials(username=settings.portal.username, password=settings.portal.password),
        login_timeout_s=settings.portal.login_timeout_s,
    )
    store = RegistryStore(settings.store_path)
    registry = DeviceRegistry(store)
    discovery = DiscoveryEngine(
        sessions=sessions,
        browser=browser,
        max_pages=settings.discovery.max_pages,
        timeout_s=settings.discovery.timeout_s,
    )
    control = ControlPlane(
        registry=registry,
        sessions=sessions,
        browser=browser,
        command_timeout_s=settings.control.command_timeout_s,
        scene_reset_s=settings.control.scene_reset_s,
    )
    hub = RealtimeHub()

    api.state.settings = settings
    api.state.browser = browser
    api.state.sessions = sessions
    api.state.registry = registry
    api.state.discovery = discovery
    api.state.control = control
    api.state.hub = hub
    api.state.discovery_task = None
    api.state.sync = None

    registry.add_listener(lambda dev: hub.notify("device", dev.to_dict()))

    @api.middleware("http")
    async def auth_middleware(request: Request, call_next):
        if request.url.path in OPEN_PATHS:
            return await call_next(request)
        auth = settings.api.auth
        headers = {k.lower(): v for k, v in request.headers.items()}
        if not _check_auth_headers(headers, dict(request.query_params), auth):
            return _unauthorized(auth.mode)
        return await call_next(request)

    @api.on_event("startup")
    async def _startup() -> None:
        loop = asyncio.get_running_loop()
        hub.attach_loop(loop)

        try:
            registry.load_snapshot()
        except OSError:
            _LOGGER.exception("Could not read registry snapshot")

        if not settings.portal.base_url:
            _LOGGER.error("SMARTHOME_BASE_URL is not set; discovery disabled")
        else:
            api.state.discovery_task = asyncio.create_task(
                discovery.run_forever(
                    registry,
                    base_delay_s=settings.retry.base_delay_s,
                    max_delay_s=settings.retry.max_delay_s,
                    interval_s=settings.discovery.interval_s,
                )
            )

        if settings.sync.enabled:
            sync = build_sync(settings)
            api.state.sync = sync
            sync.start_background(loop)

        _LOGGER.info("KNX portal bridge %s ready on port %s", BRIDGE_VERSION, settings.api.port)

    @api.on_event("shutdown")
    async def _shutdown() -> None:
        sync: AccessorySync | None = api.state.sync
        if sync is not None:
            await sync.stop()

        task = api.state.discovery_task
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        control.cancel_pending()
        registry.flush()
        await hub.close_all()

        aclose = getattr(browser, "aclose", None)
        if aclose is not None:
            await aclose()

    @api.get("/", response_class=PlainTextResponse)
    async def root():
        return f"KNX Portal Bridge API v{BRIDGE_VERSION}"

    @api.get("/health")
    async def health():
        return {
            "status": "ok",
            "session": sessions.status(),
            "devices": len(registry),
            "discovery": discovery.status.to_dict(),
        }

    @api.get("/devices")
    async def list_devices():
        devices = control.list_devices()
        if not registry.initialized or not devices:
            raise HTTPException(status_code=503, detail="Device registry not initialized")
        return {"total": len(devices), "devices": [d.to_dict() for d in devices]}

    @api.get("/device/{key}")
    async def get_device(key: str):
        try:
            return control.get_device(key).to_dict()
        except BridgeError as e:
            raise _http_error(e) from e

    @api.get("/device/{key}/state")
    async def get_device_state(key: str):
        try:
            return control.get_device_state(key).to_dict()
        except BridgeError as e:
            raise _http_error(e) from e

    @api.post("/device/{key}/toggle")
    async def toggle_device(key: str, payload: dict[str, Any]):
        on = payload.get("on")
        if not isinstance(on, bool):
            raise HTTPException(status_code=400, detail="'on' must be a boolean")
        _LOGGER.info("API: Toggle request for %s to %s", key, on)
        try:
            state = await control.toggle(key, on)
        except BridgeError as e:
            raise _http_error(e) from e
        return {"status": "ok", "device": key, "on": on, "state": state.to_dict()}

    @api.post("/device/{key}/position")
    async def set_position(key: str, payload: dict[str, Any]):
        position = payload.get("position")
        if isinstance(position, float) and position.is_integer():
            position = int(position)
        if isinstance(position, bool) or not isinstance(position, int):
            raise HTTPException(status_code=400, detail="'position' must be an integer 0..100")
        _LOGGER.info("API: Position request for %s to %s%%", key, position)
        try:
            state = await control.set_position(key, position)
        except BridgeError as e:
            raise _http_error(e) from e
        return {"status": "ok", "device": key, "position": position, "state": state.to_dict()}

    @api.post("/device/{key}/scene")
    async def trigger_scene(key: str):
        _LOGGER.info("API: Scene activation for %s", key)
        try:
            state = await control.trigger_scene(key)
        except BridgeError as e:
            raise _http_error(e) from e
        return {"status": "ok", "device": key, "state": state.to_dict()}

    @api.get("/discovery")
    async def discovery_status():
        return discovery.status.to_dict()

    @api.post("/discovery")
    async def run_discovery():
        if not settings.portal.base_url:
            raise HTTPException(status_code=503, detail="Portal base URL not configured")
        try:
            devices = await discovery.refresh(registry)
        except BridgeError as e:
            raise _http_error(e) from e
        return {"status": "ok", "total": len(devices)}

    @api.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        headers = {k.lower(): v for k, v in ws.headers.items()}
        if not _check_auth_headers(headers, dict(ws.query_params), settings.api.auth):
            await ws.close(code=1008)
            return

        await hub.connect(ws)
        try:
            await ws.send_json({"type": "snapshot", "data": {"devices": [d.to_dict() for d in registry.list()]}})
            while True:
                msg = await ws.receive_text()
                if msg.strip().lower() == "ping":
                    await ws.send_text("pong")
        except WebSocketDisconnect:
            pass
        finally:
            await hub.disconnect(ws)

    return api


def _print_devices(devices: list[Device]) -> None:
    for dev in devices:
        _LOGGER.info(
            "  - %s (%s) type=%s page=%s index=%s commands=%s",
            dev.name,
            dev.key,
            dev.device_type.value,
            dev.page,
            dev.index,
            ",".join(sorted(dev.commands)) or "-",
        )


async def _discover_once(settings: Settings) -> int:
    browser = HttpPortalBrowser(
        base_url=settings.portal.base_url,
        request_timeout_s=settings.portal.request_timeout_s,
        verify_tls=settings.portal.verify_tls,
    )
    sessions = SessionManager(
        browser,
        Credentials(username=settings.portal.username, password=settings.portal.password),
        login_timeout_s=settings.portal.login_timeout_s,
    )
    engine = DiscoveryEngine(
        sessions=sessions,
        browser=browser,
        max_pages=settings.discovery.max_pages,
        timeout_s=settings.discovery.timeout_s,
    )
    registry = DeviceRegistry(RegistryStore(settings.store_path))
    try:
        devices = await engine.refresh(registry)
    except BridgeError as e:
        _LOGGER.error("Discovery failed: %s", e)
        return 1
    finally:
        await browser.aclose()
    _print_devices(devices)
    _LOGGER.info("Discovery complete: %d devices written to %s", len(devices), settings.store_path)
    return 0


def main(argv: list[str] | None = None) -> None:
    import uvicorn

    parser = argparse.ArgumentParser(prog="knx-portal-bridge")
    parser.add_argument("--discover", action="store_true", help="run one discovery pass, save the snapshot and exit")
    args = parser.parse_args(argv)

    settings = load_settings(read_options())
    _configure_logging(settings.debug)

    if args.discover:
        raise SystemExit(asyncio.run(_discover_once(settings)))

    app = create_app(settings)
    cfg = uvicorn.Config(app, host=settings.api.host, port=settings.api.port, log_level="info")
    server = uvicorn.Server(cfg)
    asyncio.run(server.serve())


if __name__ == "__main__":
    main()
