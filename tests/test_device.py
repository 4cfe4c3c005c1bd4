from __future__ import annotations

import asyncio
import logging

import pytest

from gattsync.core.device import Device
from gattsync.core.errors import TransportSendError
from gattsync.core.model import DeviceSpec, Parameters, ProtocolIdentity, StatusSnapshot
from gattsync.transports.base import Advertisement

from fakes import BATTERY_UUID, SWITCH_UUID, FakeCharacteristic, FakePeripheral, FakeService, FakeSession, make_property

FAST = Parameters(sync_interval=0.01, timeout=1.0, observation_window=0)


def _peripheral() -> FakePeripheral:
    return FakePeripheral(
        services=[FakeService("0000180f-0000-1000-8000-00805f9b34fb", [FakeCharacteristic(BATTERY_UUID)])],
        reads={BATTERY_UUID: [b"\x61"]},
    )


def _spec(prop_name: str = "battery") -> DeviceSpec:
    return DeviceSpec(protocol=ProtocolIdentity(), properties=(make_property(prop_name, BATTERY_UUID),))


class Recorder:
    def __init__(self, device_ref: list[Device], stop_after: int = 1) -> None:
        self.device_ref = device_ref
        self.stop_after = stop_after
        self.published: list[tuple[str, StatusSnapshot]] = []

    def __call__(self, name: str, snapshot: StatusSnapshot) -> None:
        self.published.append((name, snapshot))
        if len(self.published) >= self.stop_after:
            self.device_ref[0].shutdown()


def _run(device: Device, spec: DeviceSpec, status=()) -> None:
    async def _scenario() -> None:
        device.configure(spec, status)
        await asyncio.wait_for(device.wait(), timeout=5)

    asyncio.run(_scenario())


def test_cycle_publishes_status_after_processing() -> None:
    ref: list[Device] = []
    recorder = Recorder(ref)
    session = FakeSession([(_peripheral(), Advertisement(), -50)])
    device = Device("thermo", recorder, FAST, session)
    ref.append(device)

    _run(device, _spec())

    assert len(recorder.published) == 1
    name, snapshot = recorder.published[0]
    assert name == "thermo"
    assert [(e.name, e.reported) for e in snapshot] == [("battery", "97.000000")]
    assert session.calls[-1] == "close"
    assert not device.running


def test_loop_runs_until_shutdown() -> None:
    ref: list[Device] = []
    recorder = Recorder(ref, stop_after=3)
    session = FakeSession([(_peripheral(), Advertisement(), -50)])
    device = Device("thermo", recorder, FAST, session)
    ref.append(device)

    _run(device, _spec())

    assert session.cycles == 3
    assert session.calls.count("close") == 3
    assert len(recorder.published) == 3


def test_cycle_timeout_aborts_and_still_publishes() -> None:
    ref: list[Device] = []
    recorder = Recorder(ref)
    session = FakeSession([])
    params = Parameters(sync_interval=0.01, timeout=0.05, observation_window=0)
    device = Device("thermo", recorder, params, session)
    ref.append(device)

    _run(device, _spec())

    assert recorder.published[0][1] == ()
    assert session.calls == ["init", "scan", "stop_scanning", "close"]


def test_each_cycle_starts_from_configured_status() -> None:
    ref: list[Device] = []
    peripheral = _peripheral()
    published: list[StatusSnapshot] = []

    def handler(name: str, snapshot: StatusSnapshot) -> None:
        published.append(snapshot)
        peripheral.errors[("read", BATTERY_UUID)] = TransportSendError("out of range")
        if len(published) == 2:
            ref[0].shutdown()

    device = Device("thermo", handler, FAST, FakeSession([(peripheral, Advertisement(), -50)]))
    ref.append(device)

    _run(device, _spec())

    assert [e.name for e in published[0]] == ["battery"]
    assert published[1] == ()


def test_carry_status_keeps_previous_cycle_entries() -> None:
    ref: list[Device] = []
    peripheral = _peripheral()
    published: list[StatusSnapshot] = []

    def handler(name: str, snapshot: StatusSnapshot) -> None:
        published.append(snapshot)
        peripheral.errors[("read", BATTERY_UUID)] = TransportSendError("out of range")
        if len(published) == 2:
            ref[0].shutdown()

    params = Parameters(sync_interval=0.01, timeout=1.0, observation_window=0, carry_status=True)
    device = Device("thermo", handler, params, FakeSession([(peripheral, Advertisement(), -50)]))
    ref.append(device)

    _run(device, _spec())

    assert published[1] == published[0]


def test_handler_failure_does_not_stop_loop() -> None:
    ref: list[Device] = []
    calls: list[int] = []

    def handler(name: str, snapshot: StatusSnapshot) -> None:
        calls.append(len(snapshot))
        if len(calls) == 1:
            raise RuntimeError("storage offline")
        ref[0].shutdown()

    device = Device("thermo", handler, FAST, FakeSession([(_peripheral(), Advertisement(), -50)]))
    ref.append(device)

    _run(device, _spec())

    assert calls == [1, 1]


def test_configure_replaces_running_loop() -> None:
    ref: list[Device] = []
    names: list[str] = []

    def handler(name: str, snapshot: StatusSnapshot) -> None:
        names.extend(entry.name for entry in snapshot)
        if names[-1] == "level":
            ref[0].shutdown()

    session = FakeSession([(_peripheral(), Advertisement(), -50)])
    device = Device("thermo", handler, FAST, session)
    ref.append(device)

    async def _scenario() -> None:
        first = device.configure(_spec("battery"))
        second = device.configure(_spec("level"))
        await asyncio.wait_for(second, timeout=5)
        assert first.done()

    asyncio.run(_scenario())

    # The old loop finishes its in-flight cycle, then never runs again.
    assert names == ["battery", "level"]


def test_shutdown_before_configure_is_harmless() -> None:
    device = Device("thermo", lambda name, snapshot: None, FAST, FakeSession())
    device.shutdown()
    assert not device.running
    asyncio.run(device.wait())


def test_unreachable_switch_property_is_absent_from_status() -> None:
    ref: list[Device] = []
    recorder = Recorder(ref)
    device = Device("thermo", recorder, FAST, FakeSession([(_peripheral(), Advertisement(), -50)]))
    ref.append(device)
    spec = DeviceSpec(
        protocol=ProtocolIdentity(),
        properties=(make_property("battery", BATTERY_UUID), make_property("switch", SWITCH_UUID)),
    )

    _run(device, spec)

    assert [e.name for e in recorder.published[0][1]] == ["battery"]


class BrokenScanSession(FakeSession):
    async def scan(self, service_uuids=()) -> None:
        self.calls.append("scan")
        raise FileNotFoundError(2, "No such file or directory", "/run/dbus/system_bus_socket")


def test_unexpected_cycle_error_is_logged_and_loop_continues(caplog: pytest.LogCaptureFixture) -> None:
    ref: list[Device] = []
    recorder = Recorder(ref, stop_after=2)
    session = BrokenScanSession([])
    device = Device("thermo", recorder, FAST, session)
    ref.append(device)

    with caplog.at_level(logging.ERROR, logger="gattsync.core.device"):
        _run(device, _spec())

    assert [snapshot for _, snapshot in recorder.published] == [(), ()]
    assert session.calls.count("close") == 2
    assert "failed unexpectedly" in caplog.text


def test_shutdown_stops_a_scan_that_never_finds_the_peripheral() -> None:
    published: list[StatusSnapshot] = []
    session = FakeSession([])
    params = Parameters(sync_interval=0.01, timeout=None, observation_window=0)
    device = Device("thermo", lambda name, snapshot: published.append(snapshot), params, session)

    async def _scenario() -> None:
        device.configure(_spec())
        await asyncio.sleep(0.05)
        assert device.running
        device.shutdown()
        await asyncio.wait_for(device.wait(), timeout=2)

    asyncio.run(_scenario())

    assert published == [()]
    assert session.calls == ["init", "scan", "stop_scanning", "close"]
    assert not device.running


def test_configure_takes_over_from_a_loop_stuck_scanning() -> None:
    ref: list[Device] = []
    names: list[str] = []
    idle = FakeSession([])
    params = Parameters(sync_interval=0.01, timeout=None, observation_window=0)

    def handler(name: str, snapshot: StatusSnapshot) -> None:
        names.extend(entry.name for entry in snapshot)
        if names:
            ref[0].shutdown()

    device = Device("thermo", handler, params, idle)
    ref.append(device)

    async def _scenario() -> None:
        first = device.configure(_spec("battery"))
        await asyncio.sleep(0.05)
        idle.advertisements.append((_peripheral(), Advertisement(), -50))
        second = device.configure(_spec("level"))
        await asyncio.wait_for(second, timeout=2)
        assert first.done()

    asyncio.run(_scenario())

    assert names == ["level"]
