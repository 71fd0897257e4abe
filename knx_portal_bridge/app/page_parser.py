from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from html.parser import HTMLParser

from .models import DeviceType

_LOGGER = logging.getLogger("knx_bridge.page_parser")

AFF_TOGGLE = "toggle"
AFF_SLIDER = "slider"
AFF_POSITION = "position"
AFF_SPEED = "speed"
AFF_READOUT = "readout"

FAN_SPEED_STEPS = 3

TEMPERATURE_HINTS = ("temperatur", "temp.")
SCENE_HINTS = ("szene", "scene")
VENTILATION_HINTS = ("lüftung", "lueftung", "ventilation")
# Clock/date tiles are rendered like devices but carry nothing controllable.
INFORMATIONAL_HINTS = ("Datum", "Uhrzeit")

_VOID_TAGS = frozenset(
    ("area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "source", "track", "wbr")
)
_NUMBER_RE = re.compile(r"-?\d+(?:[.,]\d+)?")


@dataclass(frozen=True)
class DeviceDescriptor:
    id: str
    name: str
    index: str
    page: str
    css_classes: tuple[str, ...]
    affordances: frozenset[str]
    speed_controls: int
    active: bool
    status_text: str | None
    icon: str
    value: str | None


@dataclass
class _Pending:
    depth: int
    id: str
    index: str
    page: str
    classes: list[str]
    value: str | None
    name_parts: list[str]
    status_parts: list[str]
    affordances: set[str]
    speed_controls: int = 0
    active: bool = False
    icon: str = ""
    has_status: bool = False
    name_depth: int | None = None
    status_depth: int | None = None


class _VisuPageParser(HTMLParser):
    def __init__(self, page: str) -> None:
        super().__init__(convert_charrefs=True)
        self._page = page
        self._stack: list[str] = []
        self._cur: _Pending | None = None
        self.found: list[_Pending] = []

    def handle_starttag(self, tag, attrs):
        a = {k: (v or "") for k, v in attrs}
        classes = a.get("class", "").split()

        if tag not in _VOID_TAGS:
            self._stack.append(tag)
        depth = len(self._stack)

        cur = self._cur
        if cur is None:
            if "visu-element" in classes and a.get("id"):
                self._cur = _Pending(
                    depth=depth,
                    id=a["id"].strip(),
                    index=a.get("data-index", "").strip(),
                    page=a.get("data-page", "").strip() or self._page,
                    classes=classes,
                    value=a.get("data-value"),
                    name_parts=[],
                    status_parts=[],
                    affordances=set(),
                )
                self._note_affordances(self._cur, classes)
            return

        self._note_affordances(cur, classes)
        if "visu-element-name" in classes and cur.name_depth is None:
            cur.name_depth = depth
        if "visu-status-text" in classes and cur.status_depth is None:
            cur.status_depth = depth
            cur.has_status = True
        if "visu-icon" in classes:
            cur.affordances.add(AFF_TOGGLE)
            if "btn-active" in classes:
                cur.active = True
            if not cur.icon:
                cur.icon = next((c for c in classes if c.startswith("icon-")), "")

    @staticmethod
    def _note_affordances(cur: _Pending, classes: list[str]) -> None:
        if "visu-slider" in classes:
            cur.affordances.add(AFF_SLIDER)
        if "visu-shifter" in classes:
            cur.affordances.add(AFF_POSITION)
        if "visu-speed" in classes:
            cur.affordances.add(AFF_SPEED)
            cur.speed_controls += 1

    def handle_endtag(self, tag):
        if tag in _VOID_TAGS or tag not in self._stack:
            return
        # Pop up to the matching tag; tolerates unclosed children.
        while self._stack:
            depth = len(self._stack)
            popped = self._stack.pop()
            self._close_depth(depth)
            if popped == tag:
                break

    def _close_depth(self, depth: int) -> None:
        cur = self._cur
        if cur is None:
            return
        if cur.name_depth == depth:
            cur.name_depth = -1
        if cur.status_depth == depth:
            cur.status_depth = -1
        if cur.depth == depth:
            self.found.append(cur)
            self._cur = None

    def handle_data(self, data):
        cur = self._cur
        if cur is None:
            return
        if cur.name_depth is not None and cur.name_depth > 0:
            cur.name_parts.append(data)
        if cur.status_depth is not None and cur.status_depth > 0:
            cur.status_parts.append(data)

    def close(self):
        super().close()
        if self._cur is not None:
            self.found.append(self._cur)
            self._cur = None


def _clean(parts: list[str]) -> str:
    return " ".join(" ".join(parts).split())


def parse_page(html: str, page: str) -> list[DeviceDescriptor]:
    parser = _VisuPageParser(page)
    parser.feed(html)
    parser.close()

    out: list[DeviceDescriptor] = []
    for p in parser.found:
        name = _clean(p.name_parts) or p.id
        if not name:
            continue
        if any(h in name for h in INFORMATIONAL_HINTS):
            _LOGGER.debug("Skipping informational element: %s", name)
            continue
        affordances = set(p.affordances)
        if p.has_status:
            affordances.add(AFF_READOUT)
        status = _clean(p.status_parts) or None
        out.append(
            DeviceDescriptor(
                id=p.id,
                name=name,
                index=p.index,
                page=p.page,
                css_classes=tuple(p.classes),
                affordances=frozenset(affordances),
                speed_controls=p.speed_controls,
                active=p.active,
                status_text=status,
                icon=p.icon,
                value=p.value,
            )
        )
    return out


def parse_temperature(text: str | None) -> float | None:
    if not text:
        return None
    m = _NUMBER_RE.search(text)
    if not m:
        return None
    return float(m.group(0).replace(",", "."))


def parse_percent(text: str | None) -> int | None:
    if text is None:
        return None
    m = _NUMBER_RE.search(str(text))
    if not m:
        return None
    return max(0, min(100, int(round(float(m.group(0).replace(",", "."))))))


def classify(desc: DeviceDescriptor) -> DeviceType:
    name = desc.name.lower()
    aff = desc.affordances
    controls = aff & {AFF_TOGGLE, AFF_SLIDER, AFF_POSITION, AFF_SPEED}

    if any(h in name for h in TEMPERATURE_HINTS):
        return DeviceType.TEMPERATURE_SENSOR
    if AFF_READOUT in aff and not controls and parse_temperature(desc.status_text) is not None:
        return DeviceType.TEMPERATURE_SENSOR
    if AFF_POSITION in aff:
        return DeviceType.WINDOW_COVERING
    if desc.speed_controls == FAN_SPEED_STEPS:
        return DeviceType.FAN
    if AFF_SLIDER in aff:
        return DeviceType.DIMMER
    if AFF_TOGGLE in aff and any(h in name for h in SCENE_HINTS):
        return DeviceType.SCENE
    if AFF_TOGGLE in aff and any(h in name for h in VENTILATION_HINTS):
        return DeviceType.FAN
    if AFF_TOGGLE in aff and not (aff & {AFF_SPEED}):
        return DeviceType.LIGHT
    return DeviceType.UNKNOWN
