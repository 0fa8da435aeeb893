"""Tests for the connection state machine and the session registry."""

from __future__ import annotations

import asyncio

import pytest

from tests.fakes import FakeTransportFactory, text_message, wait_until
from waworker.session.connection import ConnectionState, classify_close
from waworker.storage.base import InstanceStatus
from waworker.storage.memory import MemoryStore
from waworker.transport.base import (
    ConnectionClosed,
    ConnectionOpened,
    CredsUpdated,
    MessagesUpsert,
    QrEvent,
    TransportOptions,
)

SENDER = "15550100@s.whatsapp.net"


class TestClassifyClose:
    """Tests for the close-code policy."""

    @pytest.mark.parametrize("code", [None, 408, 428, 500, 503, 515])
    def test_transient_codes_reconnect(self, code) -> None:
        """Test non-terminal codes schedule a reconnect without touching status."""
        decision = classify_close(code)
        assert decision.reconnect
        assert decision.state == ConnectionState.RECONNECTING
        assert decision.status is None

    def test_logged_out_is_terminal_and_resets(self) -> None:
        """Test an explicit logout never reconnects and wipes credentials."""
        decision = classify_close(401)
        assert not decision.reconnect
        assert decision.state == ConnectionState.ERRORED
        assert decision.status == InstanceStatus.ERROR_401
        assert decision.reset_credentials

    @pytest.mark.parametrize("code", [403, 411])
    def test_rejected_credentials_are_terminal(self, code: int) -> None:
        """Test auth failure codes stop without reconnecting."""
        decision = classify_close(code)
        assert not decision.reconnect
        assert decision.status == InstanceStatus.ERROR_401

    def test_replaced_connection_is_terminal(self) -> None:
        """Test a connection taken over by another client is not fought for."""
        decision = classify_close(440)
        assert not decision.reconnect
        assert decision.state == ConnectionState.DISCONNECTED
        assert decision.status == InstanceStatus.DISCONNECTED


class TestConnectionFlow:
    """End-to-end connection flows through the registry."""

    @pytest.mark.asyncio
    async def test_qr_then_open(self, make_registry, store: MemoryStore) -> None:
        """Test QR issuance is persisted, then cleared when the connection opens."""
        registry, factory = make_registry()
        try:
            await registry.start("t1")
            assert store.instances["t1"].status == InstanceStatus.INITIALIZING.value

            factory.last.emit(QrEvent(qr="Q1"))
            await wait_until(lambda: store.instances["t1"].status == "scanning")
            assert store.instances["t1"].qr_code == "Q1"

            factory.last.emit(QrEvent(qr="Q2"))
            await wait_until(lambda: store.instances["t1"].qr_code == "Q2")

            factory.last.emit(ConnectionOpened())
            await wait_until(lambda: store.instances["t1"].status == "connected")
            assert store.instances["t1"].qr_code is None
            assert registry.get("t1").connection.state == ConnectionState.CONNECTED
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_pairing_code_for_cleaned_number(self, make_registry, store: MemoryStore) -> None:
        """Test a phone number start requests one code for the digits-only number."""
        registry, factory = make_registry()
        try:
            await registry.start("t2", "+1 555-0100")
            transport = factory.last
            transport.emit(QrEvent(qr="ignored"))

            await wait_until(lambda: store.instances["t2"].status == "pairing_code")
            assert store.instances["t2"].qr_code == "ABC-123"
            assert transport.pairing_requests == ["15550100"]

            await asyncio.sleep(0.05)
            assert transport.pairing_requests == ["15550100"]
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_registered_credentials_skip_pairing(self, make_registry, store: MemoryStore) -> None:
        """Test no pairing code is requested when stored creds are already registered."""
        store.keys[("t2", "creds")] = {"registered": True}
        registry, factory = make_registry()
        try:
            await registry.start("t2", "15550100")
            await asyncio.sleep(0.05)
            assert factory.last.pairing_requests == []
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_creds_update_is_persisted(self, make_registry, store: MemoryStore) -> None:
        """Test credential updates are written through immediately."""
        registry, factory = make_registry()
        try:
            await registry.start("t1")
            creds = factory.last.auth.creds
            creds.update({"registered": True, "noiseKey": {"private": b"\x01"}})
            factory.last.emit(CredsUpdated(creds=creds))

            await wait_until(lambda: store.keys[("t1", "creds")].get("registered"))
            persisted = store.keys[("t1", "creds")]
            assert persisted["registered"] is True
            assert persisted["noiseKey"]["private"]["type"] == "Buffer"
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_notify_messages_are_answered(self, make_registry, store: MemoryStore) -> None:
        """Test live messages are routed and replied to over the same transport."""
        registry, factory = make_registry()
        try:
            await registry.start("t1")
            transport = factory.last
            transport.emit(ConnectionOpened())
            transport.emit(MessagesUpsert(messages=[text_message(SENDER, "history")], kind="append"))
            transport.emit(MessagesUpsert(messages=[text_message(SENDER, "hi")]))

            await wait_until(lambda: transport.sent)
            assert transport.sent == [(SENDER, "AI reply")]
            contents = [e.content for e in await store.recent_messages("t1", SENDER, 10)]
            assert contents == ["hi", "AI reply"]
        finally:
            await registry.shutdown()


class TestReconnectPolicy:
    """Tests for reconnect and terminal close handling."""

    @pytest.mark.asyncio
    async def test_transient_close_reconnects_exactly_once(self, make_registry) -> None:
        """Test one new attempt with the same phone mode after a transient close."""
        registry, factory = make_registry(FakeTransportFactory(scripts=[[ConnectionClosed(status_code=428)]]))
        try:
            await registry.start("t2", "+1 555-0100")

            await wait_until(lambda: len(factory.transports) == 2)
            await asyncio.sleep(0.05)
            assert len(factory.transports) == 2
            assert factory.transports[0].closed
            assert registry.is_active("t2")
            assert registry.get("t2").phone_number == "+1 555-0100"
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("behavior", ["fail", "hang"])
    async def test_connect_failure_reconnects_exactly_once(self, make_registry, store: MemoryStore, behavior: str) -> None:
        """Test a failing or timed-out connect is retried once in the same phone mode."""
        registry, factory = make_registry(
            FakeTransportFactory(connects=[behavior]),
            TransportOptions(connect_timeout_s=0.05, request_timeout_s=1.0),
        )
        try:
            await registry.start("t2", "+1 555-0100")

            await wait_until(lambda: len(factory.transports) == 2)
            first, second = factory.transports
            await wait_until(lambda: second.pairing_requests == ["15550100"])
            await asyncio.sleep(0.1)

            assert len(factory.transports) == 2
            assert first.closed and not first.connected
            assert second.connected
            assert first.pairing_requests == []
            assert registry.is_active("t2")
            assert registry.get("t2").phone_number == "+1 555-0100"
            assert store.instances["t2"].status == "pairing_code"
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_reuses_persisted_credentials(self, make_registry) -> None:
        """Test the retried attempt resumes from the same credential identity."""
        registry, factory = make_registry(FakeTransportFactory(scripts=[[ConnectionClosed(status_code=515)]]))
        try:
            await registry.start("t1")
            await wait_until(lambda: len(factory.transports) == 2)
            first, second = factory.transports
            assert first.auth.keys is second.auth.keys
            assert second.auth.creds["registrationId"] == first.auth.creds["registrationId"]
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_logout_is_terminal_and_clears_credentials(self, make_registry, store: MemoryStore) -> None:
        """Test a 401 close never reconnects, flags the instance and wipes its keys."""
        store.keys[("t1", "creds")] = {"registered": True}
        store.keys[("t1", "pre-key-1")] = {"k": 1}
        registry, factory = make_registry()
        try:
            await registry.start("t1")
            factory.last.emit(ConnectionClosed(status_code=401))

            await wait_until(lambda: store.instances["t1"].status == "error_401")
            await asyncio.sleep(0.05)
            assert len(factory.transports) == 1
            assert not registry.is_active("t1")
            assert store.instances["t1"].qr_code is None
            assert [k for k in store.keys if k[0] == "t1"] == []
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_replaced_connection_is_not_retried(self, make_registry, store: MemoryStore) -> None:
        """Test a 440 close ends disconnected without a new attempt."""
        registry, factory = make_registry()
        try:
            await registry.start("t1")
            factory.last.emit(ConnectionClosed(status_code=440))

            await wait_until(lambda: not registry.is_active("t1"))
            await asyncio.sleep(0.05)
            assert len(factory.transports) == 1
            assert store.instances["t1"].status == "disconnected"
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reconnect(self, make_registry, store: MemoryStore) -> None:
        """Test a stop between close and the reconnect timer keeps the session stopped."""
        registry, factory = make_registry()
        registry.config.reconnect_delay_s = 0.1
        try:
            await registry.start("t1")
            factory.last.emit(ConnectionClosed(status_code=428))
            await wait_until(lambda: not registry.is_active("t1"))

            await registry.stop("t1")
            await asyncio.sleep(0.2)

            assert len(factory.transports) == 1
            assert not registry.is_active("t1")
            assert store.instances["t1"].status == "disconnected"
        finally:
            await registry.shutdown()


class TestSessionRegistry:
    """Tests for registry ownership and lifecycle."""

    @pytest.mark.asyncio
    async def test_concurrent_starts_leave_one_handle(self, make_registry) -> None:
        """Test a burst of starts for one instance ends with a single live transport."""
        registry, factory = make_registry()
        try:
            tasks = [registry.start("t1") for _ in range(5)]
            await asyncio.gather(*tasks)

            assert registry.active_count == 1
            live = [t for t in factory.transports if not t.closed]
            assert len(live) == 1
            assert registry.get("t1").connection.transport is live[0]
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_restart_evicts_previous_connection(self, make_registry) -> None:
        """Test starting an active instance terminates the old transport first."""
        registry, factory = make_registry()
        try:
            await registry.start("t1")
            await registry.start("t1")

            assert len(factory.transports) == 2
            assert factory.transports[0].closed
            assert not factory.transports[1].closed
            assert registry.active_count == 1
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_construction_failure_leaves_no_entry(self, make_registry) -> None:
        """Test a failing transport factory is logged and not registered."""
        registry, _ = make_registry(FakeTransportFactory(fail=True))
        try:
            await registry.start("t1")
            assert not registry.is_active("t1")
            assert registry.active_count == 0
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_stop_without_handle_persists_disconnected(self, make_registry, store: MemoryStore) -> None:
        """Test stop writes the disconnected status even if nothing was running."""
        store.instances["t2"].status = "scanning"
        store.instances["t2"].qr_code = "Q9"
        registry, _ = make_registry()
        try:
            await registry.stop("t2")
            assert store.instances["t2"].status == "disconnected"
            assert store.instances["t2"].qr_code is None
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_stop_terminates_and_optionally_resets(self, make_registry, store: MemoryStore) -> None:
        """Test stop closes the transport and reset wipes the instance credentials."""
        store.keys[("t1", "creds")] = {"registered": True}
        registry, factory = make_registry()
        try:
            await registry.start("t1")
            await registry.stop("t1", reset=True)

            assert factory.last.closed
            assert not registry.is_active("t1")
            assert ("t1", "creds") not in store.keys
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_keeps_persisted_status(self, make_registry, store: MemoryStore) -> None:
        """Test process shutdown terminates sessions without marking them disconnected."""
        registry, factory = make_registry()
        await registry.start("t1")
        factory.last.emit(ConnectionOpened())
        await wait_until(lambda: store.instances["t1"].status == "connected")

        await registry.shutdown()

        assert factory.last.closed
        assert registry.active_count == 0
        assert store.instances["t1"].status == "connected"

    @pytest.mark.asyncio
    async def test_resume_restarts_connected_instances(self, make_registry, store: MemoryStore) -> None:
        """Test resume starts only instances persisted as connected."""
        store.instances["t1"].status = "connected"
        registry, factory = make_registry()
        try:
            assert await registry.resume() == ["t1"]
            await wait_until(lambda: registry.is_active("t1"))
            assert not registry.is_active("t2")
        finally:
            await registry.shutdown()
