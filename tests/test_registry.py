"""Tests for the device registry and its snapshot store."""

from __future__ import annotations

import asyncio
import json
import random

import pytest
from conftest import make_device

from knx_portal_bridge.app.errors import NotFound, TypeMismatch
from knx_portal_bridge.app.models import (
    BrightnessState,
    DeviceType,
    OnOffState,
    PositionState,
    SceneState,
    TemperatureState,
    state_matches,
)
from knx_portal_bridge.app.registry import DeviceRegistry
from knx_portal_bridge.app.store import RegistryStore


class TestRegistry:
    def test_starts_uninitialized(self) -> None:
        registry = DeviceRegistry()
        assert not registry.initialized
        assert registry.list() == []
        assert registry.get("light1_page01") is None

    def test_replace_and_lookup(self, registry) -> None:
        assert registry.initialized
        assert registry.get("light1_page01").device_type == DeviceType.LIGHT
        assert len(registry) == 7

    def test_update_state(self, registry) -> None:
        updated = registry.update_state("light1_page01", OnOffState(on=True))
        assert updated.state == OnOffState(on=True)
        assert registry.get("light1_page01").state == OnOffState(on=True)

    def test_update_state_rejects_wrong_variant(self, registry) -> None:
        with pytest.raises(TypeMismatch):
            registry.update_state("dim1_page01", OnOffState(on=True))
        assert registry.get("dim1_page01").state == BrightnessState(on=False, level=40)

    def test_update_state_missing_key(self, registry) -> None:
        with pytest.raises(NotFound) as exc:
            registry.update_state("nope_page01", OnOffState(on=True))
        assert exc.value.key == "nope_page01"

    def test_replace_rejects_duplicate_keys(self, registry, sample_devices) -> None:
        before = registry.list()
        dup = [make_device("x", DeviceType.LIGHT), make_device("x", DeviceType.LIGHT)]
        with pytest.raises(ValueError):
            registry.replace(dup)
        assert registry.list() == before

    def test_replace_keeps_missing_devices_as_stale(self, registry) -> None:
        registry.replace([make_device("light1", DeviceType.LIGHT, index="5")])

        assert registry.get("light1_page01").stale is False
        assert registry.get("blind1_page01").stale is True
        assert len(registry) == 7

    def test_reappearing_device_is_no_longer_stale(self, registry) -> None:
        registry.replace([make_device("light1", DeviceType.LIGHT, index="5")])
        registry.replace([make_device("blind1", DeviceType.WINDOW_COVERING, index="7")])
        assert registry.get("blind1_page01").stale is False
        assert registry.get("light1_page01").stale is True

    def test_readers_keep_their_generation(self, registry) -> None:
        snapshot = registry.list()
        registry.update_state("blind1_page01", PositionState(position=100))
        assert next(d for d in snapshot if d.key == "blind1_page01").state == PositionState(position=50)

    def test_listeners_receive_changes(self, registry) -> None:
        seen = []
        registry.add_listener(seen.append)
        registry.update_state("light1_page01", OnOffState(on=True))
        registry.update_state("light1_page01", OnOffState(on=True))
        assert [d.key for d in seen] == ["light1_page01"]

    def test_failing_listener_does_not_break_writes(self, registry) -> None:
        def boom(_dev) -> None:
            raise RuntimeError("listener bug")

        registry.add_listener(boom)
        updated = registry.update_state("light1_page01", OnOffState(on=True))
        assert updated.state.on is True


class TestSnapshot:
    def test_snapshot_survives_restart(self, tmp_path, sample_devices) -> None:
        store = RegistryStore(str(tmp_path / "registry.json"))
        registry = DeviceRegistry(store)
        registry.replace(sample_devices)
        registry.update_state("blind1_page01", PositionState(position=80))

        restored = DeviceRegistry(store)
        assert restored.load_snapshot() == 7
        assert restored.initialized
        assert restored.get("blind1_page01").state == PositionState(position=80)
        assert restored.get("blind1_page01").commands == {
            "up": "7+01+00+01",
            "stop": "7+02+00+01",
            "down": "7+03+00+01",
        }

    @pytest.mark.asyncio
    async def test_state_writes_are_coalesced(self, tmp_path, sample_devices, monkeypatch) -> None:
        store = RegistryStore(str(tmp_path / "registry.json"))
        registry = DeviceRegistry(store, persist_delay_s=0.05)
        registry.replace(sample_devices)

        writes: list[int] = []
        save = store.save_devices

        def counting_save(devices):
            writes.append(len(devices))
            save(devices)

        monkeypatch.setattr(store, "save_devices", counting_save)
        for position in (10, 20, 30):
            registry.update_state("blind1_page01", PositionState(position=position))
        assert writes == []

        await asyncio.sleep(0.2)

        assert writes == [7]
        restored = DeviceRegistry(store)
        restored.load_snapshot()
        assert restored.get("blind1_page01").state == PositionState(position=30)

    @pytest.mark.asyncio
    async def test_flush_writes_pending_changes_once(self, tmp_path, sample_devices, monkeypatch) -> None:
        store = RegistryStore(str(tmp_path / "registry.json"))
        registry = DeviceRegistry(store, persist_delay_s=60.0)
        registry.replace(sample_devices)

        writes: list[int] = []
        monkeypatch.setattr(store, "save_devices", lambda devices: writes.append(len(devices)))
        registry.update_state("light1_page01", OnOffState(on=True))

        registry.flush()
        registry.flush()

        assert writes == [7]

    def test_missing_snapshot_loads_nothing(self, tmp_path) -> None:
        registry = DeviceRegistry(RegistryStore(str(tmp_path / "none.json")))
        assert registry.load_snapshot() == 0
        assert not registry.initialized

    def test_corrupt_snapshot_is_moved_aside(self, tmp_path) -> None:
        path = tmp_path / "registry.json"
        path.write_text("{not json", encoding="utf-8")

        assert RegistryStore(str(path)).load_devices() == []
        assert not path.exists()
        assert any(p.name.startswith("registry.json.corrupt.") for p in tmp_path.iterdir())

    def test_malformed_records_are_skipped(self, tmp_path) -> None:
        path = tmp_path / "registry.json"
        good = make_device("light1", DeviceType.LIGHT, index="5").to_record()
        path.write_text(json.dumps({"version": 1, "devices": [{"name": "no id"}, "junk", good, good]}), encoding="utf-8")

        devices = RegistryStore(str(path)).load_devices()
        assert [d.key for d in devices] == ["light1_page01"]

    def test_write_is_atomic(self, tmp_path, sample_devices) -> None:
        path = tmp_path / "nested" / "registry.json"
        RegistryStore(str(path)).save_devices(sample_devices)
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["version"] == 1
        assert len(data["devices"]) == 7
        assert not (tmp_path / "nested" / "registry.json.tmp").exists()


STATE_FACTORIES = [
    lambda rng: OnOffState(on=rng.random() < 0.5),
    lambda rng: BrightnessState(on=rng.random() < 0.5, level=rng.randint(0, 100)),
    lambda rng: PositionState(position=rng.randint(0, 100)),
    lambda rng: TemperatureState(celsius=round(rng.uniform(-20.0, 40.0), 1)),
    lambda rng: SceneState(active=rng.random() < 0.5),
]


class TestStateTypeSweep:
    @pytest.mark.parametrize("seed", range(25))
    def test_random_registries_keep_state_matching_type(self, seed: int) -> None:
        rng = random.Random(seed)
        types = list(DeviceType)
        devices = [
            make_device(f"dev{i}", rng.choice(types), index=str(i + 1), page=f"{rng.randint(1, 5):02d}")
            for i in range(rng.randint(1, 30))
        ]
        registry = DeviceRegistry()
        registry.replace(devices)

        for _ in range(100):
            dev = rng.choice(registry.list())
            state = rng.choice(STATE_FACTORIES)(rng)
            if state_matches(dev.device_type, state):
                assert registry.update_state(dev.key, state).state == state
            else:
                with pytest.raises(TypeMismatch):
                    registry.update_state(dev.key, state)
                assert registry.get(dev.key) == dev

        assert all(state_matches(d.device_type, d.state) for d in registry.list())

    @pytest.mark.parametrize("seed", range(10))
    def test_devices_cannot_be_built_with_a_foreign_state(self, seed: int) -> None:
        rng = random.Random(seed)
        for device_type in DeviceType:
            for factory in STATE_FACTORIES:
                state = factory(rng)
                if state_matches(device_type, state):
                    assert make_device("dev", device_type, state=state).state == state
                else:
                    with pytest.raises(TypeMismatch):
                        make_device("dev", device_type, state=state)
