from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from .errors import TypeMismatch


class DeviceType(str, Enum):
    LIGHT = "Light"
    DIMMER = "Dimmer"
    WINDOW_COVERING = "WindowCovering"
    FAN = "Fan"
    TEMPERATURE_SENSOR = "TemperatureSensor"
    SCENE = "Scene"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> "DeviceType":
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class OnOffState:
    kind: ClassVar[str] = "onoff"
    on: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "on": self.on}


@dataclass(frozen=True)
class BrightnessState:
    kind: ClassVar[str] = "brightness"
    on: bool = False
    level: int = 0  # 0-100

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "on": self.on, "level": self.level}


@dataclass(frozen=True)
class PositionState:
    kind: ClassVar[str] = "windowcovering"
    position: int = 0  # 0 closed, 100 open

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "position": self.position}


@dataclass(frozen=True)
class TemperatureState:
    kind: ClassVar[str] = "temperature"
    celsius: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "celsius": self.celsius}


@dataclass(frozen=True)
class SceneState:
    # Transient: set on trigger, reset shortly after.
    kind: ClassVar[str] = "scene"
    active: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "active": self.active}


State = Union[OnOffState, BrightnessState, PositionState, TemperatureState, SceneState]

STATE_TYPES: dict[DeviceType, type] = {
    DeviceType.LIGHT: OnOffState,
    DeviceType.DIMMER: BrightnessState,
    DeviceType.WINDOW_COVERING: PositionState,
    DeviceType.FAN: OnOffState,
    DeviceType.TEMPERATURE_SENSOR: TemperatureState,
    DeviceType.SCENE: SceneState,
    DeviceType.UNKNOWN: OnOffState,
}

_STATES_BY_KIND: dict[str, type] = {
    cls.kind: cls for cls in (OnOffState, BrightnessState, PositionState, TemperatureState, SceneState)
}


def default_state(device_type: DeviceType) -> State:
    return STATE_TYPES[device_type]()


def state_matches(device_type: DeviceType, state: Any) -> bool:
    return type(state) is STATE_TYPES[device_type]


def check_state(device_type: DeviceType, state: Any) -> None:
    if not state_matches(device_type, state):
        kind = getattr(state, "kind", type(state).__name__)
        raise TypeMismatch(f"{kind} state does not fit device type {device_type.value}")


def clamp_percent(value: Any) -> int:
    return max(0, min(100, int(value)))


def state_from_dict(data: dict[str, Any]) -> State:
    kind = str(data.get("type") or "")
    cls = _STATES_BY_KIND.get(kind)
    if cls is None:
        raise ValueError(f"unknown state type: {kind!r}")
    if cls is OnOffState:
        return OnOffState(on=bool(data.get("on")))
    if cls is BrightnessState:
        return BrightnessState(on=bool(data.get("on")), level=clamp_percent(data.get("level") or 0))
    if cls is PositionState:
        return PositionState(position=clamp_percent(data.get("position") or 0))
    if cls is TemperatureState:
        return TemperatureState(celsius=float(data.get("celsius") or 0.0))
    return SceneState(active=bool(data.get("active")))


def device_key(device_id: str, page: str) -> str:
    # Ids coming back from an older snapshot may already carry this page's suffix.
    if device_id.endswith(f"_page{page}"):
        return device_id
    return f"{device_id}_page{page}"


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    device_type: DeviceType
    page: str
    index: str = ""
    commands: dict[str, str] = field(default_factory=dict)
    state: State = field(default_factory=OnOffState)
    stale: bool = False

    def __post_init__(self) -> None:
        check_state(self.device_type, self.state)

    @property
    def key(self) -> str:
        return device_key(self.id, self.page)

    @property
    def controllable(self) -> bool:
        return self.device_type not in (DeviceType.UNKNOWN, DeviceType.TEMPERATURE_SENSOR) and not self.stale

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "id": self.id,
            "name": self.name,
            "device_type": self.device_type.value,
            "page": self.page,
            "state": self.state.to_dict(),
            "stale": self.stale,
        }

    def to_record(self) -> dict[str, Any]:
        rec = self.to_dict()
        rec["index"] = self.index
        rec["commands"] = dict(self.commands)
        return rec

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> "Device":
        device_type = DeviceType.parse(rec.get("device_type"))
        raw_state = rec.get("state")
        try:
            state = state_from_dict(raw_state) if isinstance(raw_state, dict) else default_state(device_type)
        except ValueError:
            state = default_state(device_type)
        if not state_matches(device_type, state):
            state = default_state(device_type)
        return cls(
            id=str(rec["id"]),
            name=str(rec.get("name") or rec["id"]),
            device_type=device_type,
            page=str(rec.get("page") or ""),
            index=str(rec.get("index") or ""),
            commands={str(k): str(v) for k, v in (rec.get("commands") or {}).items()},
            state=state,
            stale=bool(rec.get("stale") or False),
        )
