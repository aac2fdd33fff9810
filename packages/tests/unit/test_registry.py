"""Unit tests for myhome._registry — lookup, matching and fan-out.

Test Techniques Used:
    - Specification-based Testing: identifier resolution order
    - Equivalence Partitioning: plain identifiers vs. glob patterns
    - State-based Testing: upsert merge rules, write-through to storage
    - Concurrency Testing: foreach isolates per-device failures and
      propagates cancellation to every child
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from myhome._device import Device, Dispatcher
from myhome._discovery import SHELLY_SERVICE, DeviceCandidate
from myhome._errors import BadRequestError, NotFoundError, UnreachableError
from myhome._methods import MethodRegistry
from myhome._registry import DeviceOutcome, DeviceRegistry, is_pattern, jsonable
from myhome._storage import Storage


@pytest.fixture
async def registry(method_registry: MethodRegistry) -> AsyncIterator[DeviceRegistry]:
    async with Storage(":memory:") as storage:
        registry = DeviceRegistry(storage, Dispatcher(methods=method_registry))
        await registry.import_devices(
            [
                {
                    "id": "shelly1minig3-aaa111",
                    "name": "Kitchen",
                    "host": "10.0.0.11",
                    "mac": "aa:aa:aa:aa:aa:01",
                },
                {
                    "id": "shelly1minig3-bbb222",
                    "name": "Hall",
                    "host": "10.0.0.12",
                    "mac": "AAAAAAAAAA02",
                },
                {"id": "shellyblugw-ccc333", "name": "Gateway"},
            ],
        )
        yield registry


class TestIsPattern:
    """Technique: Equivalence Partitioning."""

    @pytest.mark.parametrize(("value", "expected"), [("*", True), ("a?c", True), ("[ab]x", True), ("kitchen", False)])
    def test_detection(self, value: str, expected: bool) -> None:
        assert is_pattern(value) is expected


class TestLookup:
    """Technique: Specification-based Testing."""

    @pytest.mark.parametrize(
        "identifier",
        ["shelly1minig3-aaa111", "Kitchen", "kitchen", "10.0.0.11", "AA:AA:AA:AA:AA:01", "aaaaaaaaaa01"],
    )
    def test_get_by_every_key(self, registry: DeviceRegistry, identifier: str) -> None:
        assert registry.get(identifier).id == "shelly1minig3-aaa111"

    def test_get_unknown(self, registry: DeviceRegistry) -> None:
        with pytest.raises(NotFoundError, match="Nowhere"):
            registry.get("Nowhere")

    def test_id_wins_over_name(self, registry: DeviceRegistry) -> None:
        assert registry.find("shellyblugw-ccc333") is registry.find("Gateway")

    def test_devices_sorted(self, registry: DeviceRegistry) -> None:
        assert [d.id for d in registry.devices()] == [
            "shelly1minig3-aaa111",
            "shelly1minig3-bbb222",
            "shellyblugw-ccc333",
        ]
        assert len(registry) == 3


class TestMatch:
    """Technique: Equivalence Partitioning."""

    def test_star_matches_all(self, registry: DeviceRegistry) -> None:
        assert len(registry.match("*")) == len(registry)

    def test_prefix(self, registry: DeviceRegistry) -> None:
        assert [d.id for d in registry.match("shelly1minig3-*")] == [
            "shelly1minig3-aaa111",
            "shelly1minig3-bbb222",
        ]

    def test_case_insensitive_on_name(self, registry: DeviceRegistry) -> None:
        assert [d.id for d in registry.match("KIT*")] == ["shelly1minig3-aaa111"]

    def test_host_glob(self, registry: DeviceRegistry) -> None:
        assert len(registry.match("10.0.0.1?")) == 2

    def test_no_match(self, registry: DeviceRegistry) -> None:
        assert registry.match("plug*") == []

    def test_resolve_plain_and_glob(self, registry: DeviceRegistry) -> None:
        assert [d.id for d in registry.resolve("Hall")] == ["shelly1minig3-bbb222"]
        assert len(registry.resolve("shelly*")) == 3
        with pytest.raises(NotFoundError):
            registry.resolve("plug*")


class TestForeach:
    """Technique: Concurrency Testing."""

    async def test_runs_every_match(self, registry: DeviceRegistry) -> None:
        async def name_of(device: Device, suffix: str) -> str:
            return f"{device.name}{suffix}"

        outcomes = await registry.foreach("shelly1minig3-*", name_of, "!")

        assert {k: o.result for k, o in outcomes.items()} == {
            "shelly1minig3-aaa111": "Kitchen!",
            "shelly1minig3-bbb222": "Hall!",
        }
        assert all(o.ok for o in outcomes.values())

    async def test_failure_isolated(self, registry: DeviceRegistry) -> None:
        async def flaky(device: Device) -> str:
            if device.name == "Hall":
                msg = "offline"
                raise UnreachableError(msg)
            if device.name == "Gateway":
                msg = "bug"
                raise ValueError(msg)
            return "ok"

        outcomes = await registry.foreach("*", flaky)

        assert outcomes["shelly1minig3-aaa111"].result == "ok"
        assert isinstance(outcomes["shelly1minig3-bbb222"].error, UnreachableError)
        assert isinstance(outcomes["shellyblugw-ccc333"].error, ValueError)

    async def test_runs_in_parallel(self, registry: DeviceRegistry) -> None:
        running = 0
        peak = 0

        async def slow(device: Device) -> None:  # noqa: ARG001
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        await registry.foreach("*", slow)
        assert peak == 3

    async def test_cancelling_caller_cancels_children(self, registry: DeviceRegistry) -> None:
        started: list[str] = []
        cancelled: list[str] = []
        finished: list[str] = []

        async def slow(device: Device) -> None:
            started.append(device.id)
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled.append(device.id)
                raise
            finished.append(device.id)

        caller = asyncio.create_task(registry.foreach("*", slow))
        while len(started) < 3:
            await asyncio.sleep(0)
        caller.cancel()

        with pytest.raises(asyncio.CancelledError):
            await caller

        assert sorted(cancelled) == sorted(started)
        assert finished == []
        assert not [t for t in asyncio.all_tasks() if t.get_name().startswith("foreach-")]

    async def test_plain_identifier_falls_back_to_lookup(self, registry: DeviceRegistry) -> None:
        async def ident(device: Device) -> str:
            return device.id

        outcomes = await registry.foreach("Kitchen", ident)
        assert list(outcomes) == ["shelly1minig3-aaa111"]

    async def test_nothing_matches(self, registry: DeviceRegistry) -> None:
        async def never(device: Device) -> None: ...

        with pytest.raises(NotFoundError):
            await registry.foreach("plug*", never)

    def test_outcome_rendering(self) -> None:
        ok = DeviceOutcome("d1", "Hall", result={"was_on": True})
        failed = DeviceOutcome("d2", None, error=UnreachableError("offline"))
        assert ok.to_dict() == {"device_id": "d1", "device_name": "Hall", "result": {"was_on": True}}
        assert failed.to_dict()["error"]["kind"] == "unreachable"


class TestUpsert:
    """Technique: State-based Testing."""

    async def test_merge_keeps_name_and_room(self, registry: DeviceRegistry) -> None:
        await registry.set_room("Kitchen", "kitchen")
        merged = await registry.upsert(
            Device(
                id="shelly1minig3-aaa111",
                name="Other",
                host="10.0.0.99",
                model="S3SW-001X8EU",
                room_id="garage",
                capabilities={"switch"},
            ),
        )
        assert merged.name == "Kitchen"
        assert merged.room_id == "kitchen"
        assert merged.host == "10.0.0.99"
        assert merged.model == "S3SW-001X8EU"
        assert merged.capabilities == {"switch"}

    async def test_merge_without_host_keeps_host(self, registry: DeviceRegistry) -> None:
        merged = await registry.upsert(Device(id="shelly1minig3-aaa111"))
        assert merged.host == "10.0.0.11"

    async def test_writes_through(self, registry: DeviceRegistry) -> None:
        await registry.upsert(Device(id="new-dev", host="10.0.0.50"))
        stored = {d.id for d in await registry.storage.load_devices()}
        assert "new-dev" in stored

    async def test_new_device_bound(self, registry: DeviceRegistry) -> None:
        device = await registry.upsert(Device(id="new-dev"))
        assert device._dispatcher is registry.dispatcher  # noqa: SLF001

    async def test_name_unique_case_insensitive(self, registry: DeviceRegistry) -> None:
        with pytest.raises(BadRequestError, match="already used"):
            await registry.upsert(Device(id="new-dev", name="KITCHEN"))

    async def test_observe_refreshes_host(self, registry: DeviceRegistry) -> None:
        registry.get("Hall").clear_host()
        candidate = DeviceCandidate(
            service=SHELLY_SERVICE,
            name="shelly1minig3-bbb222",
            host="10.0.0.77",
            port=80,
            generation=3,
            app="Mini1G3",
        )
        device = await registry.observe(candidate)
        assert device.host == "10.0.0.77"
        assert device.http_ready()
        assert device.last_seen is not None
        assert device.generation == 3
        assert device.info == {"app": "Mini1G3"}

    async def test_observe_keeps_refreshed_facts(self, registry: DeviceRegistry) -> None:
        hall = registry.get("Hall")
        hall.model = "S3SW-001X8EU"
        hall.generation = 3
        hall.info = {"model": "S3SW-001X8EU", "gen": 3, "ver": "1.4.4", "app": "Mini1PMG3"}
        candidate = DeviceCandidate(
            service=SHELLY_SERVICE,
            name="shelly1minig3-bbb222",
            host="10.0.0.78",
            port=80,
            model="shelly1minig3",
            generation=2,
            app="Mini1G3",
            version="1.0.0",
        )

        device = await registry.observe(candidate)

        assert device is hall
        assert device.host == "10.0.0.78"
        assert device.model == "S3SW-001X8EU"
        assert device.generation == 3
        assert device.info["app"] == "Mini1PMG3"
        assert device.info["ver"] == "1.4.4"
        (stored,) = [d for d in await registry.storage.load_devices() if d.id == hall.id]
        assert stored.model == "S3SW-001X8EU"
        assert stored.host == "10.0.0.78"

    async def test_observe_registers_unknown(self, registry: DeviceRegistry) -> None:
        candidate = DeviceCandidate(service=SHELLY_SERVICE, name="ShellyPlugSG3-dd4444", host="10.0.0.80", port=80)
        device = await registry.observe(candidate)
        assert registry.get("shellyplugsg3-dd4444") is device
        assert device.host == "10.0.0.80"


class TestUpdate:
    """Technique: Equivalence Partitioning."""

    async def test_rename(self, registry: DeviceRegistry) -> None:
        device = await registry.update("Kitchen", {"name": "Pantry"})
        assert registry.get("Pantry") is device

    async def test_unknown_field(self, registry: DeviceRegistry) -> None:
        with pytest.raises(BadRequestError, match="groups"):
            await registry.update("Kitchen", {"groups": ["x"]})

    async def test_invalid_value(self, registry: DeviceRegistry) -> None:
        with pytest.raises(BadRequestError):
            await registry.update("Kitchen", {"generation": "three"})

    async def test_name_taken(self, registry: DeviceRegistry) -> None:
        with pytest.raises(BadRequestError):
            await registry.update("Kitchen", {"name": "hall"})

    async def test_mac_normalised(self, registry: DeviceRegistry) -> None:
        device = await registry.update("Gateway", {"mac": "de:ad:be:ef:00:01"})
        assert device.mac == "DEADBEEF0001"


class TestImportExport:
    """Technique: Round-trip Testing."""

    async def test_export_lists_every_device(self, registry: DeviceRegistry) -> None:
        exported = registry.export()
        assert [d["id"] for d in exported] == [d.id for d in registry.devices()]
        assert exported[0]["mac"] == "AAAAAAAAAA01"

    async def test_invalid_import(self, registry: DeviceRegistry) -> None:
        with pytest.raises(BadRequestError):
            await registry.import_devices([{"name": "no id"}])

    async def test_name_clash_writes_nothing(self, registry: DeviceRegistry) -> None:
        before = [d.id for d in await registry.storage.load_devices()]

        with pytest.raises(BadRequestError, match="already used"):
            await registry.import_devices(
                [{"id": "shellyblugw-ddd444"}, {"id": "shellyblugw-eee555", "name": "kitchen"}],
            )

        assert registry.find("shellyblugw-ddd444") is None
        assert [d.id for d in await registry.storage.load_devices()] == before

    async def test_name_clash_inside_batch(self, registry: DeviceRegistry) -> None:
        with pytest.raises(BadRequestError, match="used by both"):
            await registry.import_devices(
                [{"id": "shellyblugw-ddd444", "name": "Porch"}, {"id": "shellyblugw-eee555", "name": "PORCH"}],
            )
        assert len(registry) == 3

    async def test_reimport_keeps_names(self, registry: DeviceRegistry) -> None:
        devices = await registry.import_devices(registry.export())
        assert [d.name for d in devices] == ["Kitchen", "Hall", "Gateway"]

    async def test_forget(self, registry: DeviceRegistry) -> None:
        await registry.forget("Hall")
        assert registry.find("Hall") is None
        assert len(await registry.storage.load_devices()) == 2

    async def test_reload_from_storage(self, registry: DeviceRegistry) -> None:
        other = DeviceRegistry(registry.storage, registry.dispatcher)
        assert await other.load() == 3
        assert other.get("Kitchen").host == "10.0.0.11"


class TestJsonable:
    """Technique: Specification-based Testing."""

    def test_models_sets_and_nesting(self) -> None:
        data: dict[str, Any] = {"device": Device(id="d", capabilities={"switch"}), "tags": {"a"}}
        assert jsonable(data)["device"]["capabilities"] == ["switch"]
        assert jsonable(data)["tags"] == ["a"]
