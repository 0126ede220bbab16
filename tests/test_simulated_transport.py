import asyncio

import pytest

from evogate.config.schema import Config, TransportConfig
from evogate.core import InstanceRegistry, InstanceState, InvalidStateError
from evogate.core.registry import new_qr_token
from evogate.transport import SimulatedTransport, build_transport


def _make(reconnect_delay_ms: int = 10, auto_connect_ms: int = 0, **registry_kwargs) -> tuple[
    InstanceRegistry, SimulatedTransport
]:
    registry = InstanceRegistry(**registry_kwargs)
    config = TransportConfig(reconnect_delay_ms=reconnect_delay_ms, auto_connect_ms=auto_connect_ms)
    return registry, SimulatedTransport(config, registry)


async def _wait_for_state(
    registry: InstanceRegistry, name: str, state: InstanceState, timeout: float = 1.0
) -> None:
    async def _poll() -> None:
        while registry.get(name).state is not state:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


def _pair(transport: SimulatedTransport, name: str) -> None:
    transport.registry.create(name)
    transport.registry.request_qr(name)
    transport.scan(name)
    transport.open(name)


def test_build_transport_binds_local_token_factory() -> None:
    config = Config()
    registry = InstanceRegistry(token_factory=None)
    transport = build_transport(config, registry)

    assert isinstance(transport, SimulatedTransport)
    assert transport.token_factory is new_qr_token
    assert registry.token_factory is new_qr_token


def test_injection_drives_full_lifecycle() -> None:
    registry, transport = _make()
    registry.create("demo")
    qr = registry.request_qr("demo")

    assert transport.scan("demo", qr.token).state is InstanceState.CONNECTING
    assert transport.open("demo").state is InstanceState.CONNECTED
    assert transport.drop("demo").state is InstanceState.CONNECTING
    assert transport.open("demo").state is InstanceState.CONNECTED
    assert transport.drop("demo", logged_out=True).state is InstanceState.DISCONNECTED
    assert "demo" not in registry


def test_fail_during_pairing() -> None:
    registry, transport = _make()
    registry.create("demo")
    registry.request_qr("demo")
    transport.scan("demo")

    instance = transport.fail("demo", "phone offline")
    assert instance.state is InstanceState.DISCONNECTED
    assert instance.disconnect_reason == "phone offline"


def test_injection_on_unknown_instance_is_noop() -> None:
    _, transport = _make()
    assert transport.scan("ghost") is None
    assert transport.open("ghost") is None
    assert transport.drop("ghost") is None
    assert transport.fail("ghost") is None


async def test_send_text_records_outbox() -> None:
    registry, transport = _make()
    _pair(transport, "demo")
    message = registry.send_message("demo", "5511999999999", "hi")

    await transport.send_text(message)
    assert transport.outbox == [message]


async def test_reconnect_eligible_drop_is_retried() -> None:
    registry, transport = _make(reconnect_delay_ms=10)
    await transport.start()
    try:
        _pair(transport, "demo")
        transport.drop("demo", reason="network blip")
        assert registry.get("demo").state is InstanceState.CONNECTING

        await _wait_for_state(registry, "demo", InstanceState.CONNECTED)
        assert transport._retry_tasks == {}
    finally:
        await transport.stop()


async def test_failed_pairing_retry_issues_fresh_qr() -> None:
    registry, transport = _make(reconnect_delay_ms=10)
    await transport.start()
    try:
        registry.create("demo")
        first = registry.request_qr("demo")
        transport.scan("demo")
        transport.fail("demo")

        await _wait_for_state(registry, "demo", InstanceState.QR_READY)
        assert registry.request_qr("demo").token != first.token
    finally:
        await transport.stop()


async def test_logged_out_drop_is_not_retried() -> None:
    registry, transport = _make(reconnect_delay_ms=10, logged_out_policy="mark")
    await transport.start()
    try:
        _pair(transport, "demo")
        transport.drop("demo", logged_out=True)
        await asyncio.sleep(0.05)

        assert registry.get("demo").state is InstanceState.DISCONNECTED
        assert transport._retry_tasks == {}
    finally:
        await transport.stop()


async def test_retry_skipped_when_instance_deleted() -> None:
    registry, transport = _make(reconnect_delay_ms=20)
    await transport.start()
    try:
        _pair(transport, "demo")
        transport.drop("demo")
        registry.delete("demo")
        await asyncio.sleep(0.06)

        assert "demo" not in registry
        assert transport._retry_tasks == {}
    finally:
        await transport.stop()


async def test_retry_cancelled_when_name_is_recreated() -> None:
    registry, transport = _make(reconnect_delay_ms=20)
    await transport.start()
    try:
        registry.create("demo")
        registry.request_qr("demo")
        transport.fail("demo")
        registry.delete("demo")
        registry.create("demo")
        await asyncio.sleep(0)
        assert transport._retry_tasks == {}

        await asyncio.sleep(0.06)

        assert registry.get("demo").state is InstanceState.CREATED
        assert transport._retry_tasks == {}
    finally:
        await transport.stop()


async def test_stop_cancels_pending_retries() -> None:
    registry, transport = _make(reconnect_delay_ms=5000)
    await transport.start()
    _pair(transport, "demo")
    transport.drop("demo")
    await asyncio.sleep(0)
    assert "demo" in transport._retry_tasks

    await transport.stop()
    assert transport._retry_tasks == {}
    assert not transport.is_running
    assert registry.get("demo").state is InstanceState.CONNECTING


async def test_no_retry_scheduled_before_start() -> None:
    registry, transport = _make(reconnect_delay_ms=10)
    _pair(transport, "demo")
    transport.drop("demo")
    await asyncio.sleep(0.03)

    assert transport._retry_tasks == {}
    assert registry.get("demo").state is InstanceState.CONNECTING


async def test_auto_connect_walks_through_pairing() -> None:
    registry, transport = _make(auto_connect_ms=10)
    await transport.start()
    try:
        registry.create("demo")
        await transport.connect("demo")
        registry.request_qr("demo")

        await _wait_for_state(registry, "demo", InstanceState.CONNECTED)
    finally:
        await transport.stop()


async def test_auto_connect_stops_when_no_qr_was_issued() -> None:
    registry, transport = _make(auto_connect_ms=5)
    await transport.start()
    try:
        registry.create("demo")
        await transport.connect("demo")
        await asyncio.sleep(0.05)

        assert registry.get("demo").state is InstanceState.CREATED
        assert transport._auto_tasks == {}
    finally:
        await transport.stop()


async def test_auto_connect_restarts_for_recreated_name() -> None:
    registry, transport = _make(auto_connect_ms=20)
    await transport.start()
    try:
        registry.create("demo")
        registry.request_qr("demo")
        await transport.connect("demo")
        first = transport._auto_tasks["demo"]
        registry.delete("demo")
        assert transport._auto_tasks == {}

        registry.create("demo")
        registry.request_qr("demo")
        await transport.connect("demo")
        second = transport._auto_tasks["demo"]
        await asyncio.sleep(0)
        assert first.cancelled()
        assert transport._auto_tasks["demo"] is second
        await _wait_for_state(registry, "demo", InstanceState.CONNECTED)
    finally:
        await transport.stop()


async def test_connect_without_auto_connect_is_noop() -> None:
    registry, transport = _make()
    registry.create("demo")
    await transport.connect("demo")
    assert transport._auto_tasks == {}
    assert registry.get("demo").state is InstanceState.CREATED


async def test_logout_close_removes_instance() -> None:
    registry, transport = _make()
    _pair(transport, "demo")

    await transport.close("demo", logout=True)
    assert "demo" not in registry


async def test_close_without_logout_keeps_state() -> None:
    registry, transport = _make()
    _pair(transport, "demo")

    await transport.close("demo")
    assert registry.get("demo").state is InstanceState.CONNECTED


def test_scan_in_wrong_state_raises() -> None:
    registry, transport = _make()
    registry.create("demo")
    with pytest.raises(InvalidStateError):
        transport.scan("demo")
