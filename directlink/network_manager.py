"""
DirectLink Network Manager
Join and host orchestration on top of the registry client, the endpoint race
and the reliable transport.

    JoinManager: share code -> lookup -> race -> local TCP proxy port
    HostManager: UDP listener + registry registration -> one bridge per peer
"""

import time
import socket
import logging
import itertools
import threading
from enum import Enum
from functools import partial
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

from .config import TunnelConfig
from .errors import (
    AlreadyActiveError, ConnectionFailedError, ConnectionTimeoutError,
    HostNotFoundError, InvalidShareCodeError, RaceCancelledError
)
from .protocol import PUNCH_PROBE, PunchRequest, normalize_share_code, share_uri
from .race import EndpointRace, RaceResult
from .signaling import SignalingClient
from .stun import get_local_ip, get_public_address
from .transport import Address, BridgeMap, ReliableChannel, TcpUdpBridge, PUNCH_PROBE_COUNT, PUNCH_PROBE_INTERVAL

logger = logging.getLogger(__name__)

LOCAL_HOST = "127.0.0.1"
ACCEPT_POLL_INTERVAL = 0.5
SERVICE_CONNECT_TIMEOUT = 5.0
MAX_WORKERS = 16


class StatusFeed:
    """
    User-visible status text.

    Subscribers are called synchronously on whichever thread publishes, and
    must not block.
    """

    def __init__(self, initial: str = ""):
        self._latest = initial
        self._subscribers: List[Callable[[str], None]] = []
        self._lock = threading.Lock()

    @property
    def latest(self) -> str:
        return self._latest

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, text: str):
        logger.info(text)
        with self._lock:
            self._latest = text
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(text)
            except Exception as e:
                logger.exception(f"Status subscriber failed: {e}")


def _reserve_udp_port() -> int:
    """Pick a free UDP port for the client side of the tunnel."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind(("0.0.0.0", 0))
        return sock.getsockname()[1]
    finally:
        sock.close()


def _close_quietly(sock: Optional[socket.socket]):
    if sock is None:
        return
    try:
        sock.close()
    except OSError as e:
        logger.debug(f"Error closing socket: {e}")


# ============================================================================
# Join
# ============================================================================

class JoinState(Enum):
    IDLE = "idle"
    LOOKING_UP = "looking_up"
    RACING = "racing"
    CONNECTED = "connected"
    FAILED = "failed"


class _JoinSession:
    """Everything one join owns; torn down as a unit."""

    def __init__(self, code: str):
        self.code = code
        self.result: Future = Future()
        self.active = True
        self.listener: Optional[socket.socket] = None
        self.client: Optional[socket.socket] = None
        self.race: Optional[EndpointRace] = None
        self.channel: Optional[ReliableChannel] = None
        self.bridge: Optional[TcpUdpBridge] = None


class JoinManager:
    """
    Connects to a host by share code and exposes it as a local TCP port.

    ``join`` returns a future resolving to that port once a tunnel is up;
    the first local TCP connection to it is pumped through the tunnel.
    """

    ACTIVE_STATES = (JoinState.LOOKING_UP, JoinState.RACING, JoinState.CONNECTED)

    def __init__(
        self,
        config: TunnelConfig,
        signaling: Optional[SignalingClient] = None,
        channel_factory: Callable[..., ReliableChannel] = ReliableChannel,
        executor: Optional[ThreadPoolExecutor] = None,
        status: Optional[StatusFeed] = None
    ):
        self.config = config
        self.signaling = signaling or SignalingClient(
            config.registry_url,
            heartbeat_interval=config.heartbeat_interval
        )
        self.channel_factory = channel_factory
        self.status = status or StatusFeed("Idle")

        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=MAX_WORKERS, thread_name_prefix="JoinManager")

        self._state = JoinState.IDLE
        self._session: Optional[_JoinSession] = None
        self._proxy_port: Optional[int] = None
        self._lock = threading.RLock()

    @property
    def state(self) -> JoinState:
        return self._state

    @property
    def proxy_port(self) -> Optional[int]:
        """Local port the tunneled service is reachable on, once listening."""
        return self._proxy_port

    @property
    def channel(self) -> Optional[ReliableChannel]:
        session = self._session
        return session.channel if session else None

    def join(self, address: str) -> 'Future[int]':
        """
        Start joining the host behind ``address`` (p2p://code, p2p.code or code).

        Raises:
            InvalidShareCodeError: address holds no valid share code.
            AlreadyActiveError: a join is already in progress or connected.
        """
        code = normalize_share_code(address)
        if code is None:
            raise InvalidShareCodeError(f"Invalid share code: {address!r}")

        with self._lock:
            if self._state in self.ACTIVE_STATES:
                raise AlreadyActiveError(f"Already joining ({self._state.value})")
            session = _JoinSession(code)
            self._session = session
            self._state = JoinState.LOOKING_UP
            self._proxy_port = None

        self.status.publish("Looking up host...")

        listener = None
        try:
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((LOCAL_HOST, 0))
            listener.listen(1)
            listener.settimeout(ACCEPT_POLL_INTERVAL)
        except OSError as e:
            _close_quietly(listener)
            self._fail(session, ConnectionFailedError(f"Cannot open local proxy: {e}"), "Local proxy failed")
            return session.result

        session.listener = listener
        self._proxy_port = listener.getsockname()[1]
        logger.info(f"Local proxy listening on {LOCAL_HOST}:{self._proxy_port}")

        self.executor.submit(self._accept_loop, session)
        self.executor.submit(self._lookup_and_race, session)
        return session.result

    def disconnect(self):
        """End the current join (any state) and return to IDLE."""
        with self._lock:
            session = self._session
            self._session = None
            was = self._state
            self._state = JoinState.IDLE
            self._proxy_port = None

        if session is None:
            return

        self._teardown(session)
        session.result.cancel()
        if was != JoinState.FAILED:
            self.status.publish("Disconnected")

    def close(self):
        """Disconnect and release the worker pool (if this manager created it)."""
        self.disconnect()
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    # --- Session steps ---

    def _current(self, session: _JoinSession) -> bool:
        return self._session is session and session.active

    def _lookup_and_race(self, session: _JoinSession):
        try:
            udp_port = _reserve_udp_port()
            endpoints = self.signaling.lookup(session.code, udp_port)
        except Exception as e:
            logger.exception(f"Lookup failed: {e}")
            self._fail(session, ConnectionFailedError(f"Registry lookup failed: {e}"), "Lookup failed")
            return

        if not endpoints:
            self._fail(session, HostNotFoundError(f"No host registered as {session.code}"), "Host not found")
            return

        factory = partial(
            self.channel_factory,
            on_data=partial(self._on_tunnel_data, session),
            on_disconnect=partial(self._on_tunnel_disconnect, session)
        )
        race = EndpointRace(
            endpoints,
            channel_factory=factory,
            timeout=self.config.connection_timeout,
            local_port=udp_port,
            executor=self.executor
        )

        with self._lock:
            if not self._current(session):
                return
            session.race = race
            self._state = JoinState.RACING

        self.status.publish("Connecting to host...")
        # Registered before run() so the bridge exists before the winner's next datagram
        race.future.add_done_callback(partial(self._on_race_done, session))
        race.run()

    def _on_race_done(self, session: _JoinSession, future: Future):
        try:
            result: RaceResult = future.result()
        except RaceCancelledError:
            return
        except ConnectionTimeoutError as e:
            self._fail(session, e, "Connection timeout")
            return
        except ConnectionFailedError as e:
            self._fail(session, e, "Connection failed")
            return

        channel = result.channel
        bridge = TcpUdpBridge(
            bridge_id=1,
            channel=channel,
            remote_address=channel.remote_address,
            on_closed=partial(self._on_bridge_closed, session)
        )

        with self._lock:
            current = self._current(session)
            if current:
                session.channel = channel
                session.bridge = bridge
                self._state = JoinState.CONNECTED

        if not current:
            channel.stop()
            return

        self.status.publish(f"Connected to {result.endpoint}")
        self._attach_if_ready(session)
        if not session.result.done():
            session.result.set_result(self._proxy_port)

    def _accept_loop(self, session: _JoinSession):
        listener = session.listener
        while session.active:
            try:
                conn, addr = listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if session.active:
                    logger.warning(f"Local proxy accept failed: {e}")
                return

            logger.info(f"Local client connected from {addr[0]}:{addr[1]}")
            with self._lock:
                if not session.active:
                    conn.close()
                    return
                session.client = conn
                session.listener = None
            # One local connection per tunnel
            _close_quietly(listener)
            self._attach_if_ready(session)
            return

    def _attach_if_ready(self, session: _JoinSession):
        with self._lock:
            bridge, client = session.bridge, session.client
            if bridge is None or client is None or bridge.attached:
                return
            attached = bridge.attach(client)
        if attached:
            bridge.start()

    # --- Callbacks ---

    def _on_tunnel_data(self, session: _JoinSession, sender: Address, payload: bytes):
        bridge = session.bridge
        if bridge is None or sender != bridge.remote_address:
            return
        bridge.deliver(payload)

    def _on_tunnel_disconnect(self, session: _JoinSession, sender: Address):
        channel = session.channel
        if channel is None or sender != channel.remote_address:
            return
        logger.info("Host closed the tunnel")
        if self._current(session):
            self.disconnect()

    def _on_bridge_closed(self, session: _JoinSession, bridge: TcpUdpBridge):
        if self._current(session):
            self.disconnect()

    # --- Teardown ---

    def _fail(self, session: _JoinSession, error: Exception, text: str):
        with self._lock:
            if not self._current(session):
                return
            self._state = JoinState.FAILED
            self._proxy_port = None

        logger.error(f"Join failed: {error}")
        self._teardown(session)
        self.status.publish(text)
        if not session.result.done():
            session.result.set_exception(error)

    def _teardown(self, session: _JoinSession):
        with self._lock:
            session.active = False
            race, bridge, channel = session.race, session.bridge, session.channel
            listener, client = session.listener, session.client
            session.listener = None

        if race is not None:
            race.cancel()
        if bridge is not None:
            bridge.close()
        if bridge is None or not bridge.attached:
            _close_quietly(client)
        _close_quietly(listener)
        if channel is not None:
            channel.stop()


# ============================================================================
# Host
# ============================================================================

class HostState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    HOSTING = "hosting"


class HostManager:
    """
    Makes a local TCP service reachable by share code.

    One listening ReliableChannel serves every joiner; each connected peer
    gets its own TcpUdpBridge to the local service, keyed by its address.
    """

    def __init__(
        self,
        config: TunnelConfig,
        signaling: Optional[SignalingClient] = None,
        channel_factory: Callable[..., ReliableChannel] = ReliableChannel,
        executor: Optional[ThreadPoolExecutor] = None,
        status: Optional[StatusFeed] = None,
        service_host: str = LOCAL_HOST,
        service_port: Optional[int] = None,
        stun_servers=None
    ):
        """
        Args:
            config: Settings; supplies the UDP port and share code.
            signaling: Registry client; built from the config when omitted.
            channel_factory: Builds the listening channel.
            executor: Worker pool for punching and service connects. Bridge
                pumps run on their own threads, two per peer.
            status: Feed that receives user-visible status text.
            service_host: Host of the tunneled TCP service.
            service_port: Port of that service (config.local_service_port by default).
            stun_servers: Override for STUN discovery.
        """
        self.config = config
        self.signaling = signaling or SignalingClient(
            config.registry_url,
            heartbeat_interval=config.heartbeat_interval
        )
        self.signaling.on_punch_request = self._on_punch_request
        self.signaling.on_code_assigned = self._on_code_assigned
        self.signaling.on_disconnect = self._on_registry_disconnect

        self.channel_factory = channel_factory
        self.status = status or StatusFeed("Not hosting")
        self.service_host = service_host
        self.service_port = service_port or config.local_service_port
        self.stun_servers = stun_servers

        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=MAX_WORKERS, thread_name_prefix="HostManager")

        self.bridges = BridgeMap()
        self._bridge_ids = itertools.count(1)

        self._state = HostState.STOPPED
        self._generation = 0
        self._channel: Optional[ReliableChannel] = None
        self._punch_sock: Optional[socket.socket] = None
        self._lock = threading.RLock()

    # --- Properties ---

    @property
    def state(self) -> HostState:
        return self._state

    @property
    def is_hosting(self) -> bool:
        return self._state == HostState.HOSTING

    @property
    def share_code(self) -> str:
        return self.config.get_share_code()

    @property
    def full_uri(self) -> str:
        return self.config.full_share_uri

    @property
    def bridge_count(self) -> int:
        return len(self.bridges)

    @property
    def channel(self) -> Optional[ReliableChannel]:
        return self._channel

    # --- Lifecycle ---

    def start(self) -> 'Future[bool]':
        """
        Start hosting. The future resolves True once the registry accepted the
        registration, False on any failure (everything is then torn down).

        Calling while starting or hosting returns a completed False future and
        leaves the running session alone.
        """
        result: Future = Future()

        with self._lock:
            if self._state != HostState.STOPPED:
                logger.warning("Already hosting")
                result.set_result(False)
                return result
            self._state = HostState.STARTING
            self._generation += 1
            generation = self._generation

        self.status.publish("Starting...")
        self.executor.submit(self._start_sequence, generation, result)
        return result

    def stop(self):
        """Tear everything down and return to STOPPED. Idempotent."""
        with self._lock:
            if self._state == HostState.STOPPED and self._channel is None and self._punch_sock is None:
                return
            self._state = HostState.STOPPED
            self._generation += 1
            channel, punch_sock = self._channel, self._punch_sock
            self._channel = None
            self._punch_sock = None

        logger.info("Stopping host...")

        for bridge in self.bridges.clear():
            bridge.close()

        if channel is not None:
            channel.stop()
        _close_quietly(punch_sock)
        self.signaling.disconnect()

        self.status.publish("Not hosting")

    def close(self):
        """Stop and release the worker pool (if this manager created it)."""
        self.stop()
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    def regenerate_code(self) -> str:
        """
        New share code. While registered the registry picks it (the current
        code is returned and the new one arrives asynchronously); otherwise it
        is generated locally.
        """
        if self.signaling.is_connected and self.signaling.request_regenerate():
            return self.config.get_share_code()
        return self.config.regenerate_share_code()

    def _start_sequence(self, generation: int, result: Future):
        try:
            port = self.config.get_udp_port()

            punch_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            if not self._claim(generation, "_punch_sock", punch_sock):
                result.set_result(False)
                return
            punch_sock.bind(("0.0.0.0", 0))
            logger.info(f"Punch socket on port {punch_sock.getsockname()[1]}")

            channel = self.channel_factory(
                on_data=self._on_peer_data,
                on_connect=self._on_peer_connected,
                on_disconnect=self._on_peer_disconnected
            )
            if not self._claim(generation, "_channel", channel):
                result.set_result(False)
                return
            channel.listen(port)

            local_ip = get_local_ip()
            public = get_public_address(punch_sock, stun_servers=self.stun_servers)
            if public is not None:
                wan_ip, wan_port = public.public_ip, public.public_port
                logger.info(f"STUN detected WAN: {wan_ip}:{wan_port}")
            else:
                wan_ip, wan_port = None, port
                logger.warning("STUN failed, using local IP only")

            if self._generation != generation:
                result.set_result(False)
                return

            registration = self.signaling.register(
                local_ip, port, self.config.get_share_code(), wan_ip, wan_port
            )
        except Exception as e:
            logger.exception(f"Failed to start hosting: {e}")
            self._abort(generation, f"Failed to start: {e}")
            result.set_result(False)
            return

        registration.add_done_callback(partial(self._on_registered, generation, result))

    def _claim(self, generation: int, attr: str, resource) -> bool:
        """Hand a freshly created resource to the session unless it was stopped meanwhile."""
        with self._lock:
            if self._generation == generation:
                setattr(self, attr, resource)
                return True
        if isinstance(resource, ReliableChannel):
            resource.stop()
        else:
            _close_quietly(resource)
        return False

    def _on_registered(self, generation: int, result: Future, registration: Future):
        success = registration.result()

        with self._lock:
            current = self._generation == generation and self._state == HostState.STARTING
            if current and success:
                self._state = HostState.HOSTING

        if not current:
            # Stopped while registering
            if success:
                self.signaling.disconnect()
            result.set_result(False)
            return

        if not success:
            logger.error("Failed to register with registry")
            self._abort(generation, "Registration failed")
            result.set_result(False)
            return

        self.status.publish(f"Hosting: {self.full_uri}")
        result.set_result(True)

    def _abort(self, generation: int, text: str):
        if self._generation == generation:
            self.stop()
        self.status.publish(text)

    # --- Registry callbacks ---

    def _on_code_assigned(self, code: str):
        self.config.set_share_code(code)
        if self._state == HostState.HOSTING:
            self.status.publish(f"Hosting: {share_uri(code)}")

    def _on_registry_disconnect(self, reason: str):
        logger.warning(f"Registry disconnected: {reason}")
        self.status.publish("Registry disconnected")

    def _on_punch_request(self, punch: PunchRequest):
        if not punch.client_port:
            logger.warning(f"Punch request from {punch.client_ip} without a port, ignoring")
            return
        if self._punch_sock is None:
            return
        self.executor.submit(self._punch, punch)

    def _punch(self, punch: PunchRequest):
        address = (punch.client_ip, punch.client_port)
        sock = self._punch_sock
        try:
            for i in range(PUNCH_PROBE_COUNT):
                if sock is None:
                    break
                sock.sendto(PUNCH_PROBE, address)
                if i < PUNCH_PROBE_COUNT - 1:
                    time.sleep(PUNCH_PROBE_INTERVAL)
            logger.debug(f"Sent {PUNCH_PROBE_COUNT} punch packets to {address[0]}:{address[1]}")
        except OSError as e:
            logger.error(f"Hole punch failed: {e}")

        channel = self._channel
        if channel is not None:
            channel.send_probe(address)

    # --- Peer callbacks (run on the channel's receive worker) ---

    def _on_peer_connected(self, address: Address):
        channel = self._channel
        if channel is None:
            return

        bridge = TcpUdpBridge(
            bridge_id=next(self._bridge_ids),
            channel=channel,
            remote_address=address,
            on_closed=self._on_bridge_closed
        )
        previous = self.bridges.put(address, bridge)
        if previous is not None:
            previous.close()

        self.status.publish(f"Client connected: {address[0]}:{address[1]}")
        self.executor.submit(self._connect_service, bridge)

    def _connect_service(self, bridge: TcpUdpBridge):
        target = (self.service_host, self.service_port)
        try:
            sock = socket.create_connection(target, timeout=SERVICE_CONNECT_TIMEOUT)
        except OSError as e:
            logger.warning(f"[Bridge {bridge.bridge_id}] Could not connect to {target[0]}:{target[1]}: {e}")
            bridge.close()
            return

        if bridge.attach(sock):
            bridge.start()

    def _on_peer_data(self, address: Address, payload: bytes):
        bridge = self.bridges.get(address)
        if bridge is None:
            logger.debug(f"No bridge for {address}, dropping {len(payload)} bytes")
            return
        bridge.deliver(payload)

    def _on_peer_disconnected(self, address: Address):
        bridge = self.bridges.remove(address)
        if bridge is not None:
            bridge.close()
            self.status.publish(f"Client disconnected: {address[0]}:{address[1]}")

    def _on_bridge_closed(self, bridge: TcpUdpBridge):
        # Only the bridge still mapped to its peer ends that peer's session
        if self.bridges.remove(bridge.remote_address, bridge) is None:
            return
        channel = self._channel
        if channel is not None:
            channel.close_peer(bridge.remote_address)
