"""Per-device command descriptors.

The portal drives every control through an opaque query string learned from
the page markup. Descriptors are stored as data on each device; this module
only knows which descriptor a given operation needs for a given device type.
"""

from __future__ import annotations

from typing import Any, Callable

from .errors import CommandMissing, UnsupportedOperation
from .models import Device, DeviceType

ACTION_TOGGLE = "toggle"
ACTION_UP = "up"
ACTION_STOP = "stop"
ACTION_DOWN = "down"

OP_TOGGLE = "toggle"
OP_POSITION = "position"
OP_TRIGGER = "trigger"

# Portal covers only know open/stop/close; positions snap to these bands.
COVER_CLOSE_MAX = 10
COVER_OPEN_MIN = 90


def command_string(index: str, action_code: int, page: str) -> str:
    return f"{index}+{action_code:02d}+00+{page}"


def learn(device_type: DeviceType, index: str, page: str) -> dict[str, str]:
    if not index:
        return {}
    if device_type == DeviceType.WINDOW_COVERING:
        return {
            ACTION_UP: command_string(index, 1, page),
            ACTION_STOP: command_string(index, 2, page),
            ACTION_DOWN: command_string(index, 3, page),
        }
    if device_type in (DeviceType.TEMPERATURE_SENSOR, DeviceType.UNKNOWN):
        return {}
    return {ACTION_TOGGLE: command_string(index, 1, page)}


def cover_action(percent: int) -> str:
    if percent <= COVER_CLOSE_MAX:
        return ACTION_DOWN
    if percent >= COVER_OPEN_MIN:
        return ACTION_UP
    return ACTION_STOP


def _descriptor(device: Device, action: str) -> str:
    payload = device.commands.get(action)
    if not payload:
        raise CommandMissing(f"No '{action}' command stored for device {device.key}")
    return payload


def _toggle(device: Device, **_: Any) -> str:
    return _descriptor(device, ACTION_TOGGLE)


def _position(device: Device, *, percent: int, **_: Any) -> str:
    return _descriptor(device, cover_action(int(percent)))


Builder = Callable[..., str]

TEMPLATES: dict[DeviceType, dict[str, Builder]] = {
    DeviceType.LIGHT: {OP_TOGGLE: _toggle},
    DeviceType.DIMMER: {OP_TOGGLE: _toggle},
    DeviceType.FAN: {OP_TOGGLE: _toggle},
    DeviceType.SCENE: {OP_TRIGGER: _toggle},
    DeviceType.WINDOW_COVERING: {OP_POSITION: _position},
    DeviceType.TEMPERATURE_SENSOR: {},
    DeviceType.UNKNOWN: {},
}


def supports(device_type: DeviceType, operation: str) -> bool:
    return operation in TEMPLATES[device_type]


def build(device: Device, operation: str, **args: Any) -> str:
    builder = TEMPLATES[device.device_type].get(operation)
    if builder is None:
        raise UnsupportedOperation(f"{device.device_type.value} devices do not support '{operation}'")
    return builder(device, **args)
