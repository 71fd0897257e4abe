"""Pytest configuration and fixtures for the KNX portal bridge tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from knx_portal_bridge.app import codec
from knx_portal_bridge.app.errors import PortalError, SessionExpired
from knx_portal_bridge.app.models import (
    BrightnessState,
    Device,
    DeviceType,
    OnOffState,
    PositionState,
    SceneState,
    State,
    TemperatureState,
)
from knx_portal_bridge.app.portal import Credentials, SessionArtifacts
from knx_portal_bridge.app.registry import DeviceRegistry
from knx_portal_bridge.app.session import SessionManager
from knx_portal_bridge.app.settings import Settings, load_settings

EMPTY_PAGE = "<html><body><div class='visu-page'></div></body></html>"


def visu_element(
    element_id: str,
    name: str,
    index: str,
    *,
    icon: bool = True,
    active: bool = False,
    slider: bool = False,
    shifter: bool = False,
    speeds: int = 0,
    status: str | None = None,
    value: str | None = None,
) -> str:
    """Render one device tile the way the portal's visu pages do."""
    attrs = f'class="visu-element" id="{element_id}" data-index="{index}"'
    if value is not None:
        attrs += f' data-value="{value}"'
    parts = [f'<div {attrs}>', f'<span class="visu-element-name">{name}</span>']
    if icon:
        cls = "visu-icon icon-bulb btn-active" if active else "visu-icon icon-bulb"
        parts.append(f'<i class="{cls}"></i>')
    if slider:
        parts.append('<div class="visu-slider"><input type="range"></div>')
    if shifter:
        parts.append('<div class="visu-shifter"><button>up</button><button>down</button></div>')
    for _ in range(speeds):
        parts.append('<button class="visu-speed"></button>')
    if status is not None:
        parts.append(f'<span class="visu-status-text">{status}</span>')
    parts.append("</div>")
    return "".join(parts)


def page_html(*elements: str) -> str:
    return "<html><body><div class='visu-page'>" + "".join(elements) + "</div></body></html>"


class FakePortalBrowser:
    """In-memory portal: serves canned pages and records every call."""

    def __init__(self, pages: dict[int, str] | None = None):
        self.pages: dict[int, str] = dict(pages or {})
        self.logins = 0
        self.fetches: list[int] = []
        self.sent: list[str] = []
        self.expired: set[str] = set()
        self.fail_pages: set[int] = set()
        self.send_error: Exception | None = None
        self.login_error: Exception | None = None
        self.login_delay = 0.0
        self.fetch_delay = 0.0
        self.send_delay = 0.0

    async def login(self, credentials: Credentials) -> SessionArtifacts:
        self.logins += 1
        if self.login_delay:
            await asyncio.sleep(self.login_delay)
        if self.login_error is not None:
            raise self.login_error
        return SessionArtifacts(session_id=f"sid-{self.logins}")

    async def fetch(self, artifacts: SessionArtifacts, page: int) -> str:
        self.fetches.append(page)
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if artifacts.session_id in self.expired:
            raise SessionExpired(f"Page {page:02d}: 401")
        if page in self.fail_pages:
            raise PortalError(f"Page {page:02d} fetch failed: HTTP 500")
        return self.pages.get(page, EMPTY_PAGE)

    async def send(self, artifacts: SessionArtifacts, payload: str) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if artifacts.session_id in self.expired:
            raise SessionExpired("Command rejected: 401")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(payload)

    async def aclose(self) -> None:
        return None


def make_device(
    device_id: str,
    device_type: DeviceType,
    *,
    index: str = "1",
    page: str = "01",
    name: str | None = None,
    state: State | None = None,
    stale: bool = False,
) -> Device:
    defaults: dict[DeviceType, Any] = {
        DeviceType.LIGHT: OnOffState(on=False),
        DeviceType.FAN: OnOffState(on=False),
        DeviceType.UNKNOWN: OnOffState(on=False),
        DeviceType.DIMMER: BrightnessState(on=False, level=40),
        DeviceType.WINDOW_COVERING: PositionState(position=50),
        DeviceType.TEMPERATURE_SENSOR: TemperatureState(celsius=21.5),
        DeviceType.SCENE: SceneState(active=False),
    }
    return Device(
        id=device_id,
        name=name or device_id,
        device_type=device_type,
        page=page,
        index=index,
        commands=codec.learn(device_type, index, page),
        state=state if state is not None else defaults[device_type],
        stale=stale,
    )


@pytest.fixture
def browser() -> FakePortalBrowser:
    return FakePortalBrowser()


@pytest.fixture
def sessions(browser: FakePortalBrowser) -> SessionManager:
    return SessionManager(browser, Credentials(username="user@example.com", password="secret"), login_timeout_s=1.0)


@pytest.fixture
def sample_devices() -> list[Device]:
    return [
        make_device("light1", DeviceType.LIGHT, index="5"),
        make_device("dim1", DeviceType.DIMMER, index="6"),
        make_device("blind1", DeviceType.WINDOW_COVERING, index="7"),
        make_device("temp1", DeviceType.TEMPERATURE_SENSOR, index="8"),
        make_device("scene1", DeviceType.SCENE, index="9"),
        make_device("fan1", DeviceType.FAN, index="10"),
        make_device("odd1", DeviceType.UNKNOWN, index="11"),
    ]


@pytest.fixture
def registry(sample_devices: list[Device]) -> DeviceRegistry:
    reg = DeviceRegistry()
    reg.replace(sample_devices)
    return reg


@pytest.fixture
def sample_pages() -> dict[int, str]:
    return {
        1: page_html(
            visu_element("light1", "Licht Küche", "5", active=True),
            visu_element("dim1", "Licht Esstisch", "6", slider=True, value="40"),
        ),
        2: page_html(
            visu_element("blind1", "Rollo Wohnzimmer", "7", shifter=True, value="30"),
            visu_element("temp1", "Temperatur Wohnzimmer", "8", icon=False, status="21,5 °C"),
        ),
        3: page_html(
            visu_element("scene1", "Szene Abend", "9"),
            visu_element("fan1", "Lüftung Bad", "10", speeds=3),
            visu_element("clock", "Datum / Uhrzeit", "11", icon=False, status="12:00"),
        ),
    }


def make_settings(tmp_path, **sections: Any) -> Settings:
    options: dict[str, Any] = {
        "portal": {"base_url": "http://portal.test", "username": "user@example.com", "password": "secret"},
        "store_path": str(tmp_path / "registry.json"),
        "retry": {"base_delay_s": 0.01, "max_delay_s": 0.05},
        "control": {"scene_reset_s": 0.05},
    }
    options.update(sections)
    return load_settings(options, env={})

