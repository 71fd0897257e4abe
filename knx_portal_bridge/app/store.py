from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

from .models import Device

_LOGGER = logging.getLogger("knx_bridge.store")

SNAPSHOT_VERSION = 1


class RegistryStore:
    def __init__(self, path: str = "/data/registry.json"):
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def read_raw(self) -> dict[str, Any]:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            raw = {"version": SNAPSHOT_VERSION, "devices": []}
        except (json.JSONDecodeError, ValueError):
            # Corrupt file: keep it aside for debugging and start empty.
            ts = time.strftime("%Y%m%d-%H%M%S")
            try:
                os.replace(self._path, f"{self._path}.corrupt.{ts}")
            except OSError:
                _LOGGER.warning("Could not move corrupt snapshot %s aside", self._path)
            raw = {"version": SNAPSHOT_VERSION, "devices": []}

        if not isinstance(raw, dict):
            raw = {"version": SNAPSHOT_VERSION, "devices": []}
        raw.setdefault("version", SNAPSHOT_VERSION)
        if not isinstance(raw.get("devices"), list):
            raw["devices"] = []
        return raw

    def write_raw(self, state: dict[str, Any]) -> None:
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = self._path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self._path)

    def load_devices(self) -> list[Device]:
        out: list[Device] = []
        seen: set[str] = set()
        for rec in self.read_raw().get("devices", []):
            if not isinstance(rec, dict):
                continue
            try:
                dev = Device.from_record(rec)
            except (KeyError, TypeError, ValueError):
                _LOGGER.warning("Skipping malformed device record in snapshot: %r", rec)
                continue
            if dev.key in seen:
                continue
            seen.add(dev.key)
            out.append(dev)
        return out

    def save_devices(self, devices: list[Device]) -> None:
        self.write_raw(
            {
                "version": SNAPSHOT_VERSION,
                "saved_at": time.time(),
                "devices": [d.to_record() for d in devices],
            }
        )
