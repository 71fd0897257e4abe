from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import replace as dc_replace
from typing import Callable

from .errors import NotFound
from .models import Device, State, check_state
from .store import RegistryStore

_LOGGER = logging.getLogger("knx_bridge.registry")

Listener = Callable[[Device], None]


class DeviceRegistry:
    """Canonical device set.

    The mapping is never mutated in place: every write builds a new dict and
    swaps the reference under the writer lock, so readers always see one
    complete generation.

    Snapshots are written outside the writer lock. `replace` writes at once;
    state changes made on an event loop are coalesced into one write per
    `persist_delay_s` window. `flush` forces any pending write.
    """

    def __init__(self, store: RegistryStore | None = None, *, persist_delay_s: float = 2.0):
        self._store = store
        self._persist_delay_s = max(0.0, float(persist_delay_s))
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._dirty = False
        self._flush_handle: asyncio.TimerHandle | None = None
        self._devices: dict[str, Device] = {}
        self._initialized = False
        self._listeners: list[Listener] = []

    @property
    def initialized(self) -> bool:
        return self._initialized

    def __len__(self) -> int:
        return len(self._devices)

    def add_listener(self, cb: Listener) -> None:
        self._listeners.append(cb)

    def _emit(self, devices: list[Device]) -> None:
        for cb in list(self._listeners):
            for dev in devices:
                try:
                    cb(dev)
                except Exception:
                    _LOGGER.exception("Registry listener failed")

    def flush(self) -> None:
        """Write pending changes to the snapshot now."""
        with self._write_lock:
            with self._lock:
                handle, self._flush_handle = self._flush_handle, None
                dirty, self._dirty = self._dirty, False
                devices = list(self._devices.values())
            if handle is not None:
                handle.cancel()
            if not dirty or self._store is None:
                return
            try:
                self._store.save_devices(devices)
            except OSError:
                _LOGGER.exception("Failed to write registry snapshot to %s", self._store.path)

    def _schedule_flush(self) -> None:
        if self._store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        with self._lock:
            if self._flush_handle is None:
                self._flush_handle = loop.call_later(self._persist_delay_s, self.flush)

    def load_snapshot(self) -> int:
        if self._store is None:
            return 0
        devices = self._store.load_devices()
        with self._lock:
            self._devices = {d.key: d for d in devices}
            self._initialized = bool(devices)
        _LOGGER.info("Loaded %d devices from snapshot %s", len(devices), self._store.path)
        return len(devices)

    def get(self, key: str) -> Device | None:
        return self._devices.get(key)

    def list(self) -> list[Device]:
        return list(self._devices.values())

    def update_state(self, key: str, state: State) -> Device:
        with self._lock:
            current = self._devices.get(key)
            if current is None:
                raise NotFound(key)
            check_state(current.device_type, state)
            if current.state == state:
                return current
            updated = dc_replace(current, state=state)
            devices = dict(self._devices)
            devices[key] = updated
            self._devices = devices
            self._dirty = True
        self._schedule_flush()
        self._emit([updated])
        return updated

    def replace(self, new_devices: list[Device]) -> None:
        fresh: dict[str, Device] = {}
        for dev in new_devices:
            if dev.key in fresh:
                raise ValueError(f"duplicate device key: {dev.key}")
            fresh[dev.key] = dev

        with self._lock:
            # Devices the portal no longer shows are kept, flagged stale.
            for key, old in self._devices.items():
                if key not in fresh:
                    fresh[key] = old if old.stale else dc_replace(old, stale=True)
            self._devices = fresh
            self._initialized = True
            self._dirty = True
        self.flush()
        stale = sum(1 for d in fresh.values() if d.stale)
        _LOGGER.info("Registry replaced: %d devices (%d stale)", len(fresh), stale)
        self._emit(list(fresh.values()))
