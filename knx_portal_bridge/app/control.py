from __future__ import annotations

import asyncio
import logging

from . import codec
from .errors import (
    DispatchError,
    NotFound,
    OperationTimeout,
    PortalError,
    SessionExpired,
    TypeMismatch,
    UnsupportedDevice,
    ValidationError,
)
from .models import (
    BrightnessState,
    Device,
    DeviceType,
    OnOffState,
    PositionState,
    SceneState,
    State,
)
from .portal import PortalBrowser, SessionArtifacts
from .registry import DeviceRegistry
from .session import SessionManager

_LOGGER = logging.getLogger("knx_bridge.control")


class ControlPlane:
    def __init__(
        self,
        *,
        registry: DeviceRegistry,
        sessions: SessionManager,
        browser: PortalBrowser,
        command_timeout_s: float = 20.0,
        scene_reset_s: float = 1.0,
    ):
        self._registry = registry
        self._sessions = sessions
        self._browser = browser
        self._command_timeout_s = float(command_timeout_s)
        self._scene_reset_s = float(scene_reset_s)
        self._device_locks: dict[str, asyncio.Lock] = {}
        self._scene_resets: dict[str, asyncio.TimerHandle] = {}

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    def list_devices(self) -> list[Device]:
        return self._registry.list()

    def get_device(self, key: str) -> Device:
        dev = self._registry.get(key)
        if dev is None:
            raise NotFound(key)
        return dev

    def get_device_state(self, key: str) -> State:
        return self.get_device(key).state

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._device_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._device_locks[key] = lock
        return lock

    def _controllable(self, key: str) -> Device:
        dev = self.get_device(key)
        if dev.stale:
            raise UnsupportedDevice(f"Device {key} is no longer present on the portal")
        if dev.device_type == DeviceType.UNKNOWN:
            raise UnsupportedDevice(f"Device {key} has an unrecognized control set")
        return dev

    async def _dispatch(self, payload: str) -> None:
        async def _op(artifacts: SessionArtifacts) -> None:
            await self._browser.send(artifacts, payload)

        try:
            await asyncio.wait_for(self._sessions.execute(_op), self._command_timeout_s)
        except asyncio.TimeoutError as e:
            raise OperationTimeout(f"Command dispatch exceeded {self._command_timeout_s:.0f}s") from e
        except (PortalError, SessionExpired) as e:
            raise DispatchError(f"Command failed: {e}") from e

    async def toggle(self, key: str, on: bool) -> State:
        dev = self._controllable(key)
        if dev.device_type == DeviceType.SCENE:
            if on:
                return await self.trigger_scene(key)
            return dev.state
        if dev.device_type not in (DeviceType.LIGHT, DeviceType.DIMMER, DeviceType.FAN):
            raise TypeMismatch(f"{dev.device_type.value} devices cannot be toggled")

        async with self._lock_for(key):
            dev = self._controllable(key)
            current_on = bool(getattr(dev.state, "on", False))
            if current_on == on:
                # Portal commands flip the output; sending now would invert it.
                _LOGGER.debug("Device %s already %s", key, "on" if on else "off")
                return dev.state

            payload = codec.build(dev, codec.OP_TOGGLE)
            _LOGGER.info("Toggling device %s from %s to %s", key, current_on, on)
            await self._dispatch(payload)

            if isinstance(dev.state, BrightnessState):
                new_state: State = BrightnessState(on=on, level=dev.state.level)
            else:
                new_state = OnOffState(on=on)
            return self._registry.update_state(key, new_state).state

    async def set_position(self, key: str, percent: int) -> State:
        if isinstance(percent, bool) or not isinstance(percent, int):
            raise ValidationError("position must be an integer")
        if percent < 0 or percent > 100:
            raise ValidationError(f"position {percent} out of range 0..100")

        dev = self._controllable(key)
        if dev.device_type != DeviceType.WINDOW_COVERING:
            raise TypeMismatch(f"{dev.device_type.value} devices have no position")

        async with self._lock_for(key):
            dev = self._controllable(key)
            payload = codec.build(dev, codec.OP_POSITION, percent=percent)
            _LOGGER.info("Setting cover %s to %d%% (%s)", key, percent, codec.cover_action(percent))
            await self._dispatch(payload)
            return self._registry.update_state(key, PositionState(position=percent)).state

    async def trigger_scene(self, key: str) -> State:
        dev = self._controllable(key)
        if dev.device_type != DeviceType.SCENE:
            raise TypeMismatch(f"{dev.device_type.value} devices are not scenes")

        async with self._lock_for(key):
            payload = codec.build(dev, codec.OP_TRIGGER)
            _LOGGER.info("Activating scene %s", key)
            await self._dispatch(payload)
            state = self._registry.update_state(key, SceneState(active=True)).state
            self._schedule_scene_reset(key)
            return state

    def _schedule_scene_reset(self, key: str) -> None:
        prev = self._scene_resets.pop(key, None)
        if prev is not None:
            prev.cancel()
        loop = asyncio.get_running_loop()
        self._scene_resets[key] = loop.call_later(self._scene_reset_s, self._reset_scene, key)

    def _reset_scene(self, key: str) -> None:
        self._scene_resets.pop(key, None)
        try:
            self._registry.update_state(key, SceneState(active=False))
        except (NotFound, TypeMismatch):
            # registry was replaced in the meantime
            _LOGGER.debug("Scene %s vanished before reset", key)

    def cancel_pending(self) -> None:
        for handle in self._scene_resets.values():
            handle.cancel()
        self._scene_resets.clear()
