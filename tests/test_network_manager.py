"""
Tests for the join and host orchestrators.

The registry is mocked; tunnels, bridges and the tunneled service are real
sockets on 127.0.0.1.
"""

import time
import socket
import threading
from concurrent.futures import Future
from unittest.mock import MagicMock

import pytest

from directlink import network_manager
from directlink.config import TunnelConfig
from directlink.errors import AlreadyActiveError, HostNotFoundError, InvalidShareCodeError
from directlink.network_manager import HostManager, HostState, JoinManager, JoinState, StatusFeed
from directlink.protocol import Endpoint, EndpointKind, PunchRequest, is_valid_share_code
from directlink.transport import ReliableChannel


def _completed(value):
    future = Future()
    future.set_result(value)
    return future


@pytest.fixture(autouse=True)
def no_stun(monkeypatch):
    monkeypatch.setattr(network_manager, "get_local_ip", lambda: "127.0.0.1")
    monkeypatch.setattr(network_manager, "get_public_address", lambda *args, **kwargs: None)


@pytest.fixture
def host_signaling():
    signaling = MagicMock()
    signaling.is_connected = False
    signaling.register.return_value = _completed(True)
    return signaling


@pytest.fixture
def host(host_signaling, echo_server, free_udp_port):
    config = TunnelConfig(udp_port=free_udp_port, share_code="happy-llama-42")
    manager = HostManager(config, signaling=host_signaling, service_port=echo_server)
    yield manager
    manager.close()


class TestStatusFeed:

    def test_publish_and_unsubscribe(self):
        feed = StatusFeed("Idle")
        seen = []
        unsubscribe = feed.subscribe(seen.append)

        feed.publish("one")
        unsubscribe()
        feed.publish("two")

        assert seen == ["one"]
        assert feed.latest == "two"

    def test_failing_subscriber_does_not_block_others(self):
        feed = StatusFeed()
        seen = []

        def broken(text):
            raise RuntimeError("boom")

        feed.subscribe(broken)
        feed.subscribe(seen.append)
        feed.publish("still delivered")
        assert seen == ["still delivered"]


class TestHostManager:

    def test_start_registers_and_hosts(self, host, host_signaling, free_udp_port):
        assert host.start().result(timeout=5) is True

        assert host.state == HostState.HOSTING
        assert host.is_hosting
        assert host.channel.is_running
        assert host.channel.local_port == free_udp_port
        assert host.full_uri == "p2p://happy-llama-42"
        assert host.status.latest == "Hosting: p2p://happy-llama-42"

        host_signaling.register.assert_called_once_with(
            "127.0.0.1", free_udp_port, "happy-llama-42", None, free_udp_port
        )

    def test_second_start_fails_without_disturbing_first(self, host, host_signaling):
        assert host.start().result(timeout=5) is True
        channel = host.channel

        second = host.start()
        assert second.done()
        assert second.result() is False

        assert host.state == HostState.HOSTING
        assert host.channel is channel
        assert channel.is_running
        assert host_signaling.register.call_count == 1

    def test_registration_failure_tears_down(self, host, host_signaling):
        host_signaling.register.return_value = _completed(False)

        assert host.start().result(timeout=5) is False
        assert host.state == HostState.STOPPED
        assert host.channel is None
        assert host.status.latest == "Registration failed"

    def test_port_in_use_fails_start(self, host, free_udp_port):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        blocker.bind(("0.0.0.0", free_udp_port))
        try:
            assert host.start().result(timeout=5) is False
            assert host.state == HostState.STOPPED
        finally:
            blocker.close()

    def test_stop_is_idempotent_and_restartable(self, host, host_signaling):
        assert host.start().result(timeout=5)
        channel = host.channel

        host.stop()
        host.stop()
        assert host.state == HostState.STOPPED
        assert not channel.is_running
        assert host.status.latest == "Not hosting"
        host_signaling.disconnect.assert_called()

        assert host.start().result(timeout=5) is True

    def test_regenerate_locally_when_offline(self, host):
        new = host.regenerate_code()
        assert is_valid_share_code(new)
        assert host.share_code == new
        assert not host.signaling.request_regenerate.called

    def test_regenerate_via_registry_when_connected(self, host, host_signaling):
        host_signaling.is_connected = True
        host_signaling.request_regenerate.return_value = True

        assert host.regenerate_code() == "happy-llama-42"
        host_signaling.request_regenerate.assert_called_once()

    def test_code_assigned_persists(self, host):
        assert host.start().result(timeout=5)
        host._on_code_assigned("wild-fox-88")
        assert host.share_code == "wild-fox-88"
        assert host.status.latest == "Hosting: p2p://wild-fox-88"

    def test_punch_request_probes_client(self, host):
        assert host.start().result(timeout=5)
        client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        client.bind(("127.0.0.1", 0))
        client.settimeout(2)
        try:
            host._on_punch_request(PunchRequest("127.0.0.1", client.getsockname()[1]))
            senders = set()
            for _ in range(10):
                data, addr = client.recvfrom(64)
                assert data == b"\x00"
                senders.add(addr[1])
            # From the punch socket and from the listening channel
            assert host.channel.local_port in senders
            assert len(senders) == 2
        finally:
            client.close()


class TestJoinManager:

    @pytest.fixture
    def join_signaling(self):
        return MagicMock()

    @pytest.fixture
    def joiner(self, join_signaling):
        manager = JoinManager(TunnelConfig(connection_timeout=3.0), signaling=join_signaling)
        yield manager
        manager.close()

    def test_invalid_address_raises_without_lookup(self, joiner, join_signaling):
        with pytest.raises(InvalidShareCodeError):
            joiner.join("http://not-a-code")
        join_signaling.lookup.assert_not_called()
        assert joiner.state == JoinState.IDLE

    def test_host_not_found(self, joiner, join_signaling):
        join_signaling.lookup.return_value = []

        future = joiner.join("p2p://happy-llama-42")
        with pytest.raises(HostNotFoundError):
            future.result(timeout=3)
        assert joiner.state == JoinState.FAILED
        assert joiner.status.latest == "Host not found"
        assert joiner.proxy_port is None

        # FAILED allows a fresh join
        second = joiner.join("happy-llama-42")
        with pytest.raises(HostNotFoundError):
            second.result(timeout=3)

    def test_join_while_active_rejected(self, joiner, join_signaling):
        release = threading.Event()
        join_signaling.lookup.side_effect = lambda code, port: release.wait(3) and []

        joiner.join("happy-llama-42")
        try:
            with pytest.raises(AlreadyActiveError):
                joiner.join("happy-llama-42")
        finally:
            release.set()
            joiner.disconnect()
        assert joiner.state == JoinState.IDLE

    def test_lookup_uses_reserved_udp_port(self, joiner, join_signaling, wait_for):
        join_signaling.lookup.return_value = []
        joiner.join("P2P.Happy-Llama-42")

        assert wait_for(lambda: join_signaling.lookup.called)
        code, port = join_signaling.lookup.call_args[0]
        assert code == "happy-llama-42"
        assert 0 < port < 65536


class TestEndToEnd:

    def test_lan_endpoint_wins_and_bridges(self, host, wait_for):
        assert host.start().result(timeout=5)
        host_port = host.channel.local_port

        # A WAN candidate that never answers, and the host's LAN address
        silent = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        silent.bind(("127.0.0.1", 0))
        signaling = MagicMock()
        signaling.lookup.return_value = [
            Endpoint("127.0.0.1", silent.getsockname()[1], EndpointKind.WAN),
            Endpoint("127.0.0.1", host_port, EndpointKind.LAN),
        ]
        joiner = JoinManager(TunnelConfig(connection_timeout=5.0), signaling=signaling)

        try:
            proxy_port = joiner.join("p2p://happy-llama-42").result(timeout=6)
            assert joiner.state == JoinState.CONNECTED
            assert joiner.channel.remote_address == ("127.0.0.1", host_port)
            assert wait_for(lambda: host.bridge_count == 1)

            app = socket.create_connection(("127.0.0.1", proxy_port), timeout=3)
            try:
                app.sendall(b"hello through the tunnel")
                received = b""
                while len(received) < len(b"hello through the tunnel"):
                    chunk = app.recv(4096)
                    assert chunk
                    received += chunk
                assert received == b"hello through the tunnel"
            finally:
                app.close()

            # Local client leaving ends the session on both sides
            assert wait_for(lambda: joiner.state == JoinState.IDLE)
            assert wait_for(lambda: host.bridge_count == 0)
            assert host.state == HostState.HOSTING
        finally:
            joiner.close()
            silent.close()

    def test_host_stop_ends_join(self, host, wait_for):
        assert host.start().result(timeout=5)

        signaling = MagicMock()
        signaling.lookup.return_value = [Endpoint("127.0.0.1", host.channel.local_port, EndpointKind.LAN)]
        joiner = JoinManager(TunnelConfig(connection_timeout=5.0), signaling=signaling)

        try:
            joiner.join("happy-llama-42").result(timeout=6)
            assert wait_for(lambda: host.bridge_count == 1)

            host.stop()
            assert wait_for(lambda: joiner.state == JoinState.IDLE)
            assert joiner.status.latest == "Disconnected"
        finally:
            joiner.close()
    def test_many_peers_each_get_a_working_bridge(self, host, wait_for):
        assert host.start().result(timeout=5)
        host_port = host.channel.local_port

        peers = []
        for _ in range(12):
            received = []
            channel = ReliableChannel(on_data=lambda sender, payload, received=received: received.append(payload))
            peers.append((channel, received))
        try:
            for channel, _ in peers:
                assert channel.connect("127.0.0.1", host_port)
            assert wait_for(lambda: all(c.is_connected for c, _ in peers))
            assert wait_for(lambda: host.bridge_count == len(peers))

            for i, (channel, _) in enumerate(peers):
                assert channel.send(f"ping {i}".encode())

            assert wait_for(
                lambda: all(received == [f"ping {i}".encode()] for i, (_, received) in enumerate(peers)),
                timeout=5.0
            )
        finally:
            for channel, _ in peers:
                channel.stop()
        assert wait_for(lambda: host.bridge_count == 0)

    def test_two_reachable_paths_leave_one_bridge(self, host, wait_for):
        assert host.start().result(timeout=5)
        host_port = host.channel.local_port

        # Both candidates reach the same host, as with hairpin NAT
        signaling = MagicMock()
        signaling.lookup.return_value = [
            Endpoint("127.0.0.1", host_port, EndpointKind.LAN),
            Endpoint("127.0.0.2", host_port, EndpointKind.WAN),
        ]
        joiner = JoinManager(TunnelConfig(connection_timeout=5.0), signaling=signaling)
        try:
            joiner.join("happy-llama-42").result(timeout=6)
            assert wait_for(lambda: host.bridge_count == 1)
            time.sleep(1.0)
            assert host.bridge_count == 1
            assert len(host.channel.connected_peers()) == 1
        finally:
            joiner.close()

