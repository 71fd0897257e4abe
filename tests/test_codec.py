"""Tests for command descriptors and the device model."""

from __future__ import annotations

import pytest
from conftest import make_device

from knx_portal_bridge.app import codec
from knx_portal_bridge.app.errors import CommandMissing, TypeMismatch, UnsupportedOperation
from knx_portal_bridge.app.models import (
    BrightnessState,
    Device,
    DeviceType,
    OnOffState,
    PositionState,
    TemperatureState,
    device_key,
    state_from_dict,
)


class TestLearn:
    def test_toggle_command(self) -> None:
        assert codec.learn(DeviceType.LIGHT, "5", "01") == {"toggle": "5+01+00+01"}

    def test_cover_commands(self) -> None:
        assert codec.learn(DeviceType.WINDOW_COVERING, "7", "02") == {
            "up": "7+01+00+02",
            "stop": "7+02+00+02",
            "down": "7+03+00+02",
        }

    def test_sensor_and_unknown_have_no_commands(self) -> None:
        assert codec.learn(DeviceType.TEMPERATURE_SENSOR, "8", "01") == {}
        assert codec.learn(DeviceType.UNKNOWN, "9", "01") == {}

    def test_missing_index(self) -> None:
        assert codec.learn(DeviceType.LIGHT, "", "01") == {}


class TestBuild:
    @pytest.mark.parametrize(
        ("percent", "expected"),
        [(0, "7+03+00+01"), (10, "7+03+00+01"), (11, "7+02+00+01"), (89, "7+02+00+01"), (90, "7+01+00+01"), (100, "7+01+00+01")],
    )
    def test_position_bands(self, percent: int, expected: str) -> None:
        blind = make_device("blind1", DeviceType.WINDOW_COVERING, index="7")
        assert codec.build(blind, codec.OP_POSITION, percent=percent) == expected

    def test_scene_trigger_uses_toggle_descriptor(self) -> None:
        scene = make_device("scene1", DeviceType.SCENE, index="9")
        assert codec.build(scene, codec.OP_TRIGGER) == "9+01+00+01"

    def test_unsupported_operation(self) -> None:
        light = make_device("light1", DeviceType.LIGHT, index="5")
        with pytest.raises(UnsupportedOperation):
            codec.build(light, codec.OP_POSITION, percent=50)
        assert not codec.supports(DeviceType.TEMPERATURE_SENSOR, codec.OP_TOGGLE)

    def test_missing_descriptor(self) -> None:
        light = make_device("light1", DeviceType.LIGHT, index="")
        with pytest.raises(CommandMissing):
            codec.build(light, codec.OP_TOGGLE)


class TestDeviceModel:
    def test_key_combines_id_and_page(self) -> None:
        assert device_key("light1", "03") == "light1_page03"
        assert device_key("light1_page03", "03") == "light1_page03"
        assert device_key("btn_pager", "01") == "btn_pager_page01"
        assert device_key("light1_page03", "04") == "light1_page03_page04"

    @pytest.mark.parametrize(
        ("device_type", "state"),
        [
            (DeviceType.LIGHT, BrightnessState(on=True, level=10)),
            (DeviceType.DIMMER, OnOffState(on=True)),
            (DeviceType.WINDOW_COVERING, TemperatureState(celsius=1.0)),
            (DeviceType.TEMPERATURE_SENSOR, PositionState(position=3)),
        ],
    )
    def test_state_must_fit_type(self, device_type: DeviceType, state) -> None:
        with pytest.raises(TypeMismatch):
            Device(id="x", name="x", device_type=device_type, page="01", state=state)

    def test_record_roundtrip_keeps_commands(self) -> None:
        blind = make_device("blind1", DeviceType.WINDOW_COVERING, index="7")
        restored = Device.from_record(blind.to_record())
        assert restored == blind

    def test_record_with_mismatched_state_falls_back_to_default(self) -> None:
        rec = {"id": "d1", "name": "Dimmer", "device_type": "Dimmer", "page": "01", "state": {"type": "onoff", "on": True}}
        dev = Device.from_record(rec)
        assert dev.state == BrightnessState()

    def test_unknown_type_string(self) -> None:
        assert DeviceType.parse("Thermostat") == DeviceType.UNKNOWN

    def test_state_from_dict_clamps(self) -> None:
        assert state_from_dict({"type": "windowcovering", "position": 180}) == PositionState(position=100)
        with pytest.raises(ValueError):
            state_from_dict({"type": "rgb"})
