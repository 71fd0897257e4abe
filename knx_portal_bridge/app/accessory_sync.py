from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, ClassVar

from . import ha_discovery
from .backoff import retry_with_backoff
from .bridge_client import BridgeClient, BridgeClientError
from .models import DeviceType
from .mqtt_client import MqttClient
from .settings import MqttConfig, RetryConfig, Settings, SyncConfig, load_settings, read_options

_LOGGER = logging.getLogger("knx_bridge.sync")

POLL_FAST = "fast"
POLL_COVER = "cover"
POLL_SLOW = "slow"


class Accessory:
    """Consumer-side mirror of one bridge device."""

    device_type: ClassVar[DeviceType]
    poll: ClassVar[str | None] = None

    def __init__(self, device: dict[str, Any], *, discovery_prefix: str, base_topic: str):
        self.device = device
        self.discovery_prefix = discovery_prefix
        self.base_topic = base_topic
        self.last_state: dict[str, Any] | None = None

    @property
    def key(self) -> str:
        return str(self.device["key"])

    @property
    def name(self) -> str:
        return str(self.device.get("name") or self.key)

    def discovery(self) -> tuple[str, dict[str, Any]]:
        raise NotImplementedError

    def command_topics(self) -> list[str]:
        return [ha_discovery.command_topic(self.base_topic, self.key)]

    def render(self, state: dict[str, Any]) -> list[tuple[str, Any]]:
        return []

    async def handle_command(self, client: BridgeClient, topic: str, payload: str) -> dict[str, Any] | None:
        raise NotImplementedError


class LightAccessory(Accessory):
    device_type = DeviceType.LIGHT
    poll = POLL_FAST

    def discovery(self) -> tuple[str, dict[str, Any]]:
        return ha_discovery.light_discovery(
            discovery_prefix=self.discovery_prefix,
            base_topic=self.base_topic,
            device=self.device,
        )

    def render(self, state: dict[str, Any]) -> list[tuple[str, Any]]:
        payload = {"state": "ON" if state.get("on") else "OFF"}
        return [(ha_discovery.state_topic(self.base_topic, self.key), payload)]

    async def handle_command(self, client: BridgeClient, topic: str, payload: str) -> dict[str, Any] | None:
        on = _parse_json_switch(payload)
        if on is None:
            _LOGGER.warning("Ignoring malformed light command for %s: %r", self.key, payload)
            return None
        resp = await client.toggle(self.key, on)
        return resp.get("state")


class DimmerAccessory(LightAccessory):
    device_type = DeviceType.DIMMER

    def discovery(self) -> tuple[str, dict[str, Any]]:
        return ha_discovery.light_discovery(
            discovery_prefix=self.discovery_prefix,
            base_topic=self.base_topic,
            device=self.device,
            dimmable=True,
        )

    def render(self, state: dict[str, Any]) -> list[tuple[str, Any]]:
        payload: dict[str, Any] = {"state": "ON" if state.get("on") else "OFF"}
        if "level" in state:
            payload["brightness"] = int(state["level"])
        return [(ha_discovery.state_topic(self.base_topic, self.key), payload)]


class FanAccessory(Accessory):
    device_type = DeviceType.FAN
    poll = POLL_FAST

    def discovery(self) -> tuple[str, dict[str, Any]]:
        return ha_discovery.fan_discovery(
            discovery_prefix=self.discovery_prefix,
            base_topic=self.base_topic,
            device=self.device,
        )

    def render(self, state: dict[str, Any]) -> list[tuple[str, Any]]:
        return [(ha_discovery.state_topic(self.base_topic, self.key), "ON" if state.get("on") else "OFF")]

    async def handle_command(self, client: BridgeClient, topic: str, payload: str) -> dict[str, Any] | None:
        cmd = payload.strip().upper()
        if cmd not in ("ON", "OFF"):
            _LOGGER.warning("Ignoring fan command for %s: %r", self.key, payload)
            return None
        resp = await client.toggle(self.key, cmd == "ON")
        return resp.get("state")


class WindowCoveringAccessory(Accessory):
    device_type = DeviceType.WINDOW_COVERING
    poll = POLL_COVER

    # Portal blinds only move fully or stop; STOP lands in the stop band.
    _MOVE_TARGETS = {"OPEN": 100, "CLOSE": 0, "STOP": 50}

    def discovery(self) -> tuple[str, dict[str, Any]]:
        return ha_discovery.cover_discovery(
            discovery_prefix=self.discovery_prefix,
            base_topic=self.base_topic,
            device=self.device,
        )

    def command_topics(self) -> list[str]:
        return [
            ha_discovery.command_topic(self.base_topic, self.key),
            ha_discovery.set_position_topic(self.base_topic, self.key),
        ]

    def render(self, state: dict[str, Any]) -> list[tuple[str, Any]]:
        return [(ha_discovery.position_topic(self.base_topic, self.key), int(state.get("position", 0)))]

    async def handle_command(self, client: BridgeClient, topic: str, payload: str) -> dict[str, Any] | None:
        raw = payload.strip()
        if topic == ha_discovery.set_position_topic(self.base_topic, self.key):
            try:
                position = int(float(raw))
            except (ValueError, OverflowError):
                _LOGGER.warning("Ignoring cover position for %s: %r", self.key, payload)
                return None
        else:
            target = self._MOVE_TARGETS.get(raw.upper())
            if target is None:
                _LOGGER.warning("Ignoring cover command for %s: %r", self.key, payload)
                return None
            position = target
        position = max(0, min(100, position))
        resp = await client.set_position(self.key, position)
        return resp.get("state")


class TemperatureSensorAccessory(Accessory):
    device_type = DeviceType.TEMPERATURE_SENSOR
    poll = POLL_SLOW

    def discovery(self) -> tuple[str, dict[str, Any]]:
        return ha_discovery.temperature_discovery(
            discovery_prefix=self.discovery_prefix,
            base_topic=self.base_topic,
            device=self.device,
        )

    def command_topics(self) -> list[str]:
        return []

    def render(self, state: dict[str, Any]) -> list[tuple[str, Any]]:
        return [(ha_discovery.state_topic(self.base_topic, self.key), state.get("celsius", 0.0))]


class SceneAccessory(Accessory):
    device_type = DeviceType.SCENE

    def discovery(self) -> tuple[str, dict[str, Any]]:
        return ha_discovery.scene_discovery(
            discovery_prefix=self.discovery_prefix,
            base_topic=self.base_topic,
            device=self.device,
        )

    async def handle_command(self, client: BridgeClient, topic: str, payload: str) -> dict[str, Any] | None:
        if payload.strip().upper() != "ON":
            return None
        resp = await client.trigger_scene(self.key)
        return resp.get("state")


ACCESSORY_CLASSES: dict[DeviceType, type[Accessory]] = {
    cls.device_type: cls
    for cls in (
        LightAccessory,
        DimmerAccessory,
        FanAccessory,
        WindowCoveringAccessory,
        TemperatureSensorAccessory,
        SceneAccessory,
    )
}


def _parse_json_switch(payload: str) -> bool | None:
    raw = payload.strip()
    try:
        data = json.loads(raw)
    except ValueError:
        data = raw
    if isinstance(data, dict):
        data = data.get("state")
    if not isinstance(data, str):
        return None
    if data.upper() == "ON":
        return True
    if data.upper() == "OFF":
        return False
    return None


class AccessorySync:
    def __init__(
        self,
        *,
        client: BridgeClient,
        mqtt: MqttClient,
        mqtt_config: MqttConfig,
        sync_config: SyncConfig,
        retry: RetryConfig,
    ):
        self._client = client
        self._mqtt = mqtt
        self._mqtt_config = mqtt_config
        self._sync_config = sync_config
        self._retry = retry
        self._loop: asyncio.AbstractEventLoop | None = None
        self._accessories: dict[str, Accessory] = {}
        self._poll_tasks: dict[str, asyncio.Task] = {}
        self._start_task: asyncio.Task | None = None
        self._mqtt_started = False

    @property
    def accessories(self) -> dict[str, Accessory]:
        return dict(self._accessories)

    def _interval_for(self, acc: Accessory) -> float | None:
        if acc.poll == POLL_FAST:
            return self._sync_config.fast_poll_s
        if acc.poll == POLL_COVER:
            return self._sync_config.cover_poll_s
        if acc.poll == POLL_SLOW:
            return self._sync_config.slow_poll_s
        return None

    def start_background(self, loop: asyncio.AbstractEventLoop) -> None:
        self._start_task = loop.create_task(self.start())

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        if not self._mqtt_started:
            self._mqtt.set_availability(ha_discovery.availability_topic(self._mqtt_config.base_topic))
            self._mqtt.set_connect_handler(self._on_mqtt_connect)
            self._mqtt.connect()
            self._mqtt_started = True

        devices = await retry_with_backoff(
            self._client.list_devices,
            retry_on=(BridgeClientError,),
            base_delay_s=self._retry.base_delay_s,
            max_delay_s=self._retry.max_delay_s,
            what="Accessory sync",
        )
        self.sync_devices(devices)

    def sync_devices(self, devices: list[dict[str, Any]]) -> int:
        created = 0
        for dev in devices:
            key = dev.get("key")
            if not key:
                continue
            device_type = DeviceType.parse(dev.get("device_type"))
            cls = ACCESSORY_CLASSES.get(device_type)
            if cls is None:
                _LOGGER.warning("Skipping %s (%s): unsupported device type %r", dev.get("name"), key, dev.get("device_type"))
                continue

            acc = self._accessories.get(key)
            if acc is not None and type(acc) is cls:
                acc.device = dev
            else:
                acc = cls(
                    dev,
                    discovery_prefix=self._mqtt_config.discovery_prefix,
                    base_topic=self._mqtt_config.base_topic,
                )
                self._accessories[key] = acc
                created += 1
                for topic in acc.command_topics():
                    self._mqtt.subscribe(topic, self._on_command)
                _LOGGER.info("Added accessory %s (%s) as %s", acc.name, key, type(acc).__name__)

            self._publish_config(acc)
            state = dev.get("state")
            if isinstance(state, dict):
                self._publish_state(acc, state)
            self._ensure_poll(acc)
        _LOGGER.info("Accessory sync: %d accessories (%d new)", len(self._accessories), created)
        return created

    def _publish_config(self, acc: Accessory) -> None:
        topic, payload = acc.discovery()
        self._mqtt.publish(topic, payload, retain=True, qos=1)

    def _publish_state(self, acc: Accessory, state: dict[str, Any]) -> None:
        acc.last_state = state
        for topic, payload in acc.render(state):
            self._mqtt.publish(topic, payload, retain=True)

    def _ensure_poll(self, acc: Accessory) -> None:
        interval = self._interval_for(acc)
        if interval is None:
            return
        task = self._poll_tasks.get(acc.key)
        if task is not None and not task.done():
            return
        self._poll_tasks[acc.key] = asyncio.get_running_loop().create_task(self._poll_loop(acc, interval))

    async def _poll_loop(self, acc: Accessory, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.poll_once(acc)

    async def poll_once(self, acc: Accessory) -> None:
        try:
            state = await self._client.get_state(acc.key)
        except BridgeClientError as e:
            _LOGGER.warning("Polling %s failed, skipping cycle: %s", acc.key, e)
            return
        if state != acc.last_state:
            _LOGGER.debug("State change for %s: %s", acc.key, state)
        self._publish_state(acc, state)

    def _on_mqtt_connect(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._republish_all)

    def _republish_all(self) -> None:
        for acc in list(self._accessories.values()):
            self._publish_config(acc)
            if acc.last_state is not None:
                self._publish_state(acc, acc.last_state)

    def _on_command(self, topic: str, payload: str) -> None:
        # paho network thread
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        acc = self._accessory_for_topic(topic)
        if acc is None:
            return
        asyncio.run_coroutine_threadsafe(self.handle_command(acc, topic, payload), loop)

    def _accessory_for_topic(self, topic: str) -> Accessory | None:
        for acc in self._accessories.values():
            if topic in acc.command_topics():
                return acc
        return None

    async def handle_command(self, acc: Accessory, topic: str, payload: str) -> None:
        _LOGGER.info("Command for %s on %s: %s", acc.key, topic, payload)
        try:
            state = await acc.handle_command(self._client, topic, payload)
        except BridgeClientError as e:
            _LOGGER.error("Command for %s failed: %s", acc.key, e)
            if acc.last_state is not None:
                self._publish_state(acc, acc.last_state)
            return
        if isinstance(state, dict):
            self._publish_state(acc, state)

    async def stop(self) -> None:
        tasks = list(self._poll_tasks.values())
        if self._start_task is not None:
            tasks.append(self._start_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_tasks.clear()
        self._start_task = None
        if self._mqtt_started:
            self._mqtt.disconnect()
            self._mqtt_started = False
        await self._client.aclose()


def build_sync(settings: Settings) -> AccessorySync:
    mqtt = MqttClient(
        host=settings.mqtt.host,
        port=settings.mqtt.port,
        username=settings.mqtt.username,
        password=settings.mqtt.password,
        client_id=f"{settings.mqtt.client_id}-sync",
    )
    return AccessorySync(
        client=BridgeClient(settings.sync.bridge_url, auth=settings.api.auth),
        mqtt=mqtt,
        mqtt_config=settings.mqtt,
        sync_config=settings.sync,
        retry=settings.retry,
    )


async def _run(settings: Settings) -> None:
    sync = build_sync(settings)
    try:
        await sync.start()
        await asyncio.Event().wait()
    finally:
        await sync.stop()


def main() -> None:
    from .main import _configure_logging

    settings = load_settings(read_options())
    _configure_logging(settings.debug)
    _LOGGER.info("Starting accessory sync against %s", settings.sync.bridge_url)
    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
