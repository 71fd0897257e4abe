from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from . import codec
from .backoff import retry_with_backoff
from .errors import AuthError, DiscoveryError, OperationTimeout, PortalError, SessionExpired
from .models import (
    BrightnessState,
    Device,
    DeviceType,
    OnOffState,
    PositionState,
    SceneState,
    State,
    TemperatureState,
)
from .page_parser import DeviceDescriptor, classify, parse_page, parse_percent, parse_temperature
from .portal import PortalBrowser, SessionArtifacts, page_token
from .registry import DeviceRegistry
from .session import SessionManager

_LOGGER = logging.getLogger("knx_bridge.discovery")


def initial_state(device_type: DeviceType, desc: DeviceDescriptor) -> State:
    if device_type == DeviceType.DIMMER:
        return BrightnessState(on=desc.active, level=parse_percent(desc.value) or 0)
    if device_type == DeviceType.WINDOW_COVERING:
        return PositionState(position=parse_percent(desc.value) or 0)
    if device_type == DeviceType.TEMPERATURE_SENSOR:
        return TemperatureState(celsius=parse_temperature(desc.status_text) or 0.0)
    if device_type == DeviceType.SCENE:
        return SceneState(active=False)
    return OnOffState(on=desc.active)


def build_device(desc: DeviceDescriptor) -> Device:
    device_type = classify(desc)
    return Device(
        id=desc.id,
        name=desc.name,
        device_type=device_type,
        page=desc.page,
        index=desc.index,
        commands=codec.learn(device_type, desc.index, desc.page),
        state=initial_state(device_type, desc),
    )


@dataclass
class DiscoveryStatus:
    running: bool = False
    last_started: float | None = None
    last_finished: float | None = None
    last_total: int | None = None
    last_pages: int | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "last_started": self.last_started,
            "last_finished": self.last_finished,
            "last_total": self.last_total,
            "last_pages": self.last_pages,
            "last_error": self.last_error,
        }


class DiscoveryEngine:
    def __init__(
        self,
        *,
        sessions: SessionManager,
        browser: PortalBrowser,
        max_pages: int = 99,
        timeout_s: float = 300.0,
    ):
        self._sessions = sessions
        self._browser = browser
        self._max_pages = max(1, int(max_pages))
        self._timeout_s = float(timeout_s)
        self._lock = asyncio.Lock()
        self.status = DiscoveryStatus()

    async def discover_all(self) -> list[Device]:
        try:
            return await asyncio.wait_for(self._scan(), self._timeout_s)
        except asyncio.TimeoutError as e:
            raise OperationTimeout(f"Discovery exceeded {self._timeout_s:.0f}s") from e

    async def _fetch_page(self, page: int) -> str:
        async def _op(artifacts: SessionArtifacts) -> str:
            return await self._browser.fetch(artifacts, page)

        return await self._sessions.execute(_op)

    async def _scan(self) -> list[Device]:
        devices: list[Device] = []
        seen: set[str] = set()
        pages = 0

        _LOGGER.info("Auto-detecting pages...")
        for page in range(1, self._max_pages + 1):
            token = page_token(page)
            try:
                html = await self._fetch_page(page)
            except AuthError:
                raise
            except (SessionExpired, PortalError) as e:
                raise DiscoveryError(f"Page {token} failed: {e}") from e

            page_devices = [build_device(d) for d in parse_page(html, token)]
            if not page_devices:
                _LOGGER.info("Page %s is empty, stopping auto-detection", token)
                break

            pages += 1
            for dev in page_devices:
                if dev.key in seen:
                    raise DiscoveryError(f"Duplicate device key {dev.key} on page {token}")
                seen.add(dev.key)
                _LOGGER.debug(
                    "Found device: key=%s name=%s type=%s index=%s",
                    dev.key,
                    dev.name,
                    dev.device_type.value,
                    dev.index,
                )
            _LOGGER.info("Found %d devices on page %s", len(page_devices), token)
            devices.extend(page_devices)

        self.status.last_pages = pages
        _LOGGER.info("Total devices discovered: %d", len(devices))
        return devices

    async def refresh(self, registry: DeviceRegistry) -> list[Device]:
        # One pass at a time; a second caller waits and then runs its own pass.
        async with self._lock:
            self.status.running = True
            self.status.last_started = time.time()
            try:
                devices = await self.discover_all()
            except Exception as e:
                self.status.last_error = str(e) or type(e).__name__
                _LOGGER.error("Discovery failed, keeping previous registry: %s", self.status.last_error)
                raise
            finally:
                self.status.running = False
                self.status.last_finished = time.time()
            registry.replace(devices)
            self.status.last_total = len(devices)
            self.status.last_error = None
            return devices

    async def run_forever(
        self,
        registry: DeviceRegistry,
        *,
        base_delay_s: float,
        max_delay_s: float,
        interval_s: float = 0.0,
    ) -> None:
        retry_on = (AuthError, DiscoveryError, OperationTimeout)
        while True:
            await retry_with_backoff(
                lambda: self.refresh(registry),
                retry_on=retry_on,
                base_delay_s=base_delay_s,
                max_delay_s=max_delay_s,
                what="Discovery",
            )
            if interval_s <= 0:
                return
            await asyncio.sleep(interval_s)
