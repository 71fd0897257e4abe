from __future__ import annotations

import re
import uuid
from typing import Any

NODE_ID = "knx_portal"

# Fixed namespace so the same device key maps to the same id on every host.
_UID_NAMESPACE = uuid.UUID("6f1c2a4e-8b0d-5e3f-9a71-4c2d8e6b1f05")


def slugify(text: str) -> str:
    s = text.strip().lower()
    s = re.sub(r"[^a-z0-9_\- ]+", "", s)
    s = re.sub(r"[\s\-]+", "_", s)
    return s or "device"


def object_id(key: str) -> str:
    # slugify folds case and punctuation, the hash suffix keeps distinct keys apart
    return f"{slugify(key)}_{uuid.uuid5(_UID_NAMESPACE, key).hex[:8]}"


def unique_id(key: str) -> str:
    return f"{NODE_ID}_{uuid.uuid5(_UID_NAMESPACE, key).hex}"


def state_topic(base_topic: str, key: str) -> str:
    return f"{base_topic}/state/{object_id(key)}"


def command_topic(base_topic: str, key: str) -> str:
    return f"{base_topic}/cmd/{object_id(key)}"


def position_topic(base_topic: str, key: str) -> str:
    return f"{base_topic}/state/{object_id(key)}/position"


def set_position_topic(base_topic: str, key: str) -> str:
    return f"{base_topic}/cmd/{object_id(key)}/position"


def availability_topic(base_topic: str) -> str:
    return f"{base_topic}/availability"


def _base_payload(base_topic: str, device: dict[str, Any], fallback_name: str) -> dict[str, Any]:
    key = str(device["key"])
    page = str(device.get("page") or "")
    return {
        "name": str(device.get("name") or fallback_name),
        "unique_id": unique_id(key),
        "availability_topic": availability_topic(base_topic),
        "payload_available": "online",
        "payload_not_available": "offline",
        "device": {
            # one consumer-side device per portal page
            "identifiers": [f"knx_portal:page:{page or 'none'}"],
            "name": f"KNX Page {page}" if page else "KNX Portal",
            "manufacturer": "KNX",
            "model": "Visu Portal",
        },
    }


def light_discovery(
    *,
    discovery_prefix: str,
    base_topic: str,
    device: dict[str, Any],
    dimmable: bool = False,
) -> tuple[str, dict[str, Any]]:
    key = str(device["key"])
    payload = _base_payload(base_topic, device, f"Light {key}")
    payload.update(
        {
            "schema": "json",
            "state_topic": state_topic(base_topic, key),
            "command_topic": command_topic(base_topic, key),
        }
    )
    if dimmable:
        payload["brightness"] = True
        payload["brightness_scale"] = 100

    topic = f"{discovery_prefix}/light/{NODE_ID}/{object_id(key)}/config"
    return topic, payload


def fan_discovery(
    *,
    discovery_prefix: str,
    base_topic: str,
    device: dict[str, Any],
) -> tuple[str, dict[str, Any]]:
    key = str(device["key"])
    payload = _base_payload(base_topic, device, f"Fan {key}")
    payload.update(
        {
            "state_topic": state_topic(base_topic, key),
            "command_topic": command_topic(base_topic, key),
            "payload_on": "ON",
            "payload_off": "OFF",
        }
    )
    topic = f"{discovery_prefix}/fan/{NODE_ID}/{object_id(key)}/config"
    return topic, payload


def cover_discovery(
    *,
    discovery_prefix: str,
    base_topic: str,
    device: dict[str, Any],
) -> tuple[str, dict[str, Any]]:
    """Position cover. The portal only knows up/stop/down, so OPEN/CLOSE map to 100/0."""
    key = str(device["key"])
    payload = _base_payload(base_topic, device, f"Cover {key}")
    payload.update(
        {
            "command_topic": command_topic(base_topic, key),
            "position_topic": position_topic(base_topic, key),
            "set_position_topic": set_position_topic(base_topic, key),
            "payload_open": "OPEN",
            "payload_close": "CLOSE",
            "payload_stop": "STOP",
            "position_open": 100,
            "position_closed": 0,
        }
    )
    topic = f"{discovery_prefix}/cover/{NODE_ID}/{object_id(key)}/config"
    return topic, payload


def temperature_discovery(
    *,
    discovery_prefix: str,
    base_topic: str,
    device: dict[str, Any],
) -> tuple[str, dict[str, Any]]:
    key = str(device["key"])
    payload = _base_payload(base_topic, device, f"Temperature {key}")
    payload.update(
        {
            "state_topic": state_topic(base_topic, key),
            "device_class": "temperature",
            "state_class": "measurement",
            "unit_of_measurement": "°C",
        }
    )
    topic = f"{discovery_prefix}/sensor/{NODE_ID}/{object_id(key)}/config"
    return topic, payload


def scene_discovery(
    *,
    discovery_prefix: str,
    base_topic: str,
    device: dict[str, Any],
) -> tuple[str, dict[str, Any]]:
    key = str(device["key"])
    payload = _base_payload(base_topic, device, f"Scene {key}")
    payload.update(
        {
            "command_topic": command_topic(base_topic, key),
            "payload_on": "ON",
        }
    )
    topic = f"{discovery_prefix}/scene/{NODE_ID}/{object_id(key)}/config"
    return topic, payload
