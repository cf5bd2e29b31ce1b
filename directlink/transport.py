"""
DirectLink Reliable Transport Layer
Handshake, acknowledgment and fixed-interval retransmission over one UDP
socket, plus the TCP <-> tunnel byte pump that rides on it.

Delivery is at-least-once and unordered: every DATA frame is acknowledged
(duplicates included) and handed to the application as it arrives.
"""

import time
import queue
import socket
import logging
import threading
from enum import Enum
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .protocol import (
    Frame, MessageType, MAX_DATAGRAM_SIZE, PUNCH_PROBE,
    create_ack_frame, create_control_frame, create_data_frame
)

logger = logging.getLogger(__name__)

Address = Tuple[str, int]

# Transport Constants
RETRY_INTERVAL = 0.2       # Seconds between retransmissions
MAX_RETRIES = 5            # Retransmissions before a message is dropped
HELLO_INTERVAL = 0.5       # Seconds between handshake attempts
MAX_HELLO_ATTEMPTS = 20    # HELLOs sent before the client gives up resending
RECV_POLL_INTERVAL = 0.2   # Receive loop wakes this often to check the running flag
PUNCH_PROBE_COUNT = 5
PUNCH_PROBE_INTERVAL = 0.05

# Bridge Constants
BRIDGE_CHUNK_SIZE = 4096
BRIDGE_QUEUE_DEPTH = 256
BRIDGE_POLL_INTERVAL = 0.5


class PeerState(Enum):
    """Connection state of one remote address."""
    IDLE = "idle"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class PendingMessage:
    """DATA frame waiting for acknowledgment."""
    sequence: int
    payload: bytes
    destination: Address
    retries: int = 0
    timer: Optional[threading.Timer] = field(default=None, repr=False, compare=False)

    def frame(self) -> bytes:
        return create_data_frame(self.sequence, self.payload)

    def cancel(self):
        if self.timer:
            self.timer.cancel()


class ReliableChannel:
    """
    Message-oriented transport over a single UDP socket.

    Client role (``connect``): one remote, connected once its HELLO_ACK arrives.
    Server role (``listen``): any number of remotes, each connected by its
    first HELLO and keyed by sender address.

    Callbacks run on the receive worker and must not block for long:
        on_data(sender, payload), on_connect(sender), on_disconnect(sender),
        on_drop(sequence, destination).
    """

    def __init__(
        self,
        on_data: Optional[Callable[[Address, bytes], None]] = None,
        on_connect: Optional[Callable[[Address], None]] = None,
        on_disconnect: Optional[Callable[[Address], None]] = None,
        on_drop: Optional[Callable[[int, Address], None]] = None,
        retry_interval: float = RETRY_INTERVAL,
        max_retries: int = MAX_RETRIES
    ):
        self.on_data = on_data
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self.on_drop = on_drop
        self.retry_interval = retry_interval
        self.max_retries = max_retries

        # Socket
        self.sock: Optional[socket.socket] = None
        self.local_addr: Optional[Address] = None
        self.remote_address: Optional[Address] = None
        self.is_server = False

        # Peers and reliability
        self._peers: Dict[Address, PeerState] = {}
        self._pending: Dict[int, PendingMessage] = {}
        self._sequence = 0
        self._hello_timer: Optional[threading.Timer] = None
        self._hello_attempts = 0

        # Threading
        self._running = False
        self._recv_thread: Optional[threading.Thread] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def listen(self, port: int, host: str = "0.0.0.0") -> Address:
        """
        Start in server role.
        Returns: Local (ip, port) tuple.
        Raises: OSError if the port cannot be bound.
        """
        self.is_server = True
        self._open(host, port)
        self._start_worker()
        logger.info(f"Reliable channel listening on {self.local_addr[0]}:{self.local_addr[1]}")
        return self.local_addr

    def connect(self, host: str, port: int, local_port: int = 0) -> bool:
        """
        Start in client role and begin the handshake with host:port.

        Does not wait for the handshake; ``on_connect`` fires when the
        HELLO_ACK arrives. Returns False if the socket could not be set up.
        """
        self.is_server = False
        try:
            target = (socket.gethostbyname(host), port)
            self._open("0.0.0.0", local_port)
        except OSError as e:
            logger.error(f"Failed to connect to {host}:{port}: {e}")
            self.stop()
            return False

        with self._lock:
            self.remote_address = target
            self._peers[target] = PeerState.HANDSHAKING

        self._start_worker()
        logger.info(f"Connecting to {target[0]}:{target[1]} from port {self.local_port}")
        self._send_hello()
        return True

    def stop(self):
        """Close every peer, cancel retries and release the socket. Idempotent."""
        with self._lock:
            if self.sock is None and not self._running:
                return
            self._running = False

            # A handshaking client may already be connected on the far side
            closing = [
                a for a, s in self._peers.items()
                if s == PeerState.CONNECTED or (s == PeerState.HANDSHAKING and not self.is_server)
            ]
            self._peers.clear()

            for pending in self._pending.values():
                pending.cancel()
            self._pending.clear()

            if self._hello_timer:
                self._hello_timer.cancel()
                self._hello_timer = None

            sock = self.sock
            self.sock = None

        if sock:
            close_frame = create_control_frame(MessageType.CLOSE)
            for addr in closing:
                try:
                    sock.sendto(close_frame, addr)
                except OSError:
                    pass
            sock.close()

        if self._recv_thread and self._recv_thread is not threading.current_thread():
            self._recv_thread.join(timeout=1)

        logger.info("Reliable channel stopped")

    def _open(self, host: str, port: int):
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((host, port))
        except OSError:
            sock.close()
            raise
        sock.settimeout(RECV_POLL_INTERVAL)
        self.sock = sock
        self.local_addr = sock.getsockname()

    def _start_worker(self):
        self._running = True
        self._recv_thread = threading.Thread(
            target=self._recv_loop,
            name=f"ReliableChannel-{self.local_port}",
            daemon=True
        )
        self._recv_thread.start()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def local_port(self) -> int:
        return self.local_addr[1] if self.local_addr else -1

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        """Client role: handshake done. Server role: socket is up."""
        with self._lock:
            if self.is_server:
                return self._running
            return self._peers.get(self.remote_address) == PeerState.CONNECTED

    def peer_state(self, address: Address) -> PeerState:
        with self._lock:
            return self._peers.get(address, PeerState.IDLE)

    def connected_peers(self) -> List[Address]:
        with self._lock:
            return [a for a, s in self._peers.items() if s == PeerState.CONNECTED]

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send(self, payload: bytes) -> bool:
        """Send reliably to the connected remote (client role)."""
        if self.remote_address is None:
            return False
        return self.send_to(self.remote_address, payload)

    def send_to(self, address: Address, payload: bytes) -> bool:
        """
        Send reliably to a specific address.

        Returns False if the channel is not running. A message that exhausts
        its retries is dropped with a warning; the caller is not told.
        """
        with self._lock:
            if not self._running or self.sock is None:
                return False

            self._sequence = (self._sequence + 1) & 0xFFFFFFFF
            pending = PendingMessage(
                sequence=self._sequence,
                payload=bytes(payload),
                destination=address
            )
            # Track before transmitting so an immediate ACK finds it
            self._pending[pending.sequence] = pending
            self._schedule_retry(pending)

        self._send_raw(pending.frame(), address)
        return True

    def close_peer(self, address: Address):
        """Tell one remote the connection is over and forget it."""
        with self._lock:
            self._peers.pop(address, None)
            self._discard_pending_for(address)
            if address == self.remote_address:
                self._peers[address] = PeerState.CLOSED

        self._send_raw(create_control_frame(MessageType.CLOSE), address)
        logger.info(f"Closed peer {address[0]}:{address[1]}")

    def send_probe(
        self,
        address: Address,
        count: int = PUNCH_PROBE_COUNT,
        interval: float = PUNCH_PROBE_INTERVAL
    ):
        """Fire hole-punching probes from this channel's socket (blocking)."""
        for i in range(count):
            if not self._running:
                break
            self._send_raw(PUNCH_PROBE, address)
            if i < count - 1:
                time.sleep(interval)

    def _send_raw(self, data: bytes, addr: Address) -> bool:
        sock = self.sock
        if sock is None:
            return False
        try:
            sock.sendto(data, addr)
            return True
        except OSError as e:
            logger.warning(f"Send error to {addr}: {e}")
            return False

    def _schedule_retry(self, pending: PendingMessage):
        timer = threading.Timer(self.retry_interval, self._retry, args=(pending,))
        timer.daemon = True
        pending.timer = timer
        timer.start()

    def _retry(self, pending: PendingMessage):
        """Timer callback: retransmit, or drop once the ceiling is reached."""
        with self._lock:
            # Already acknowledged, dropped or stopped
            if not self._running or self._pending.get(pending.sequence) is not pending:
                return

            if pending.retries >= self.max_retries:
                del self._pending[pending.sequence]
                dropped = True
            else:
                pending.retries += 1
                self._schedule_retry(pending)
                dropped = False

        if dropped:
            logger.warning(
                f"Message {pending.sequence} to {pending.destination} dropped "
                f"after {self.max_retries} retries"
            )
            if self.on_drop:
                self.on_drop(pending.sequence, pending.destination)
            return

        logger.debug(f"Retransmit seq {pending.sequence} (attempt {pending.retries})")
        self._send_raw(pending.frame(), pending.destination)

    def _discard_pending_for(self, address: Address):
        for seq, pending in list(self._pending.items()):
            if pending.destination == address:
                pending.cancel()
                del self._pending[seq]

    def _send_hello(self):
        with self._lock:
            target = self.remote_address
            if not self._running or self._peers.get(target) != PeerState.HANDSHAKING:
                return
            self._hello_attempts += 1
            if self._hello_attempts < MAX_HELLO_ATTEMPTS:
                self._hello_timer = threading.Timer(HELLO_INTERVAL, self._send_hello)
                self._hello_timer.daemon = True
                self._hello_timer.start()

        self._send_raw(create_control_frame(MessageType.HELLO), target)

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def _recv_loop(self):
        """Receive loop running on the channel's worker thread."""
        while self._running:
            sock = self.sock
            if sock is None:
                break
            try:
                data, addr = sock.recvfrom(MAX_DATAGRAM_SIZE)
            except socket.timeout:
                continue
            except ConnectionResetError:
                # ICMP port unreachable surfaced on the next read (Windows)
                continue
            except OSError as e:
                if self._running:
                    logger.error(f"Receive error: {e}")
                    self._fail()
                break

            try:
                self._handle_datagram(data, addr)
            except Exception as e:
                logger.exception(f"Error handling datagram from {addr}: {e}")

    def _fail(self):
        """Fatal socket error: every connected peer is lost."""
        lost = self.connected_peers()
        self.stop()
        if self.on_disconnect:
            for addr in lost:
                self.on_disconnect(addr)

    def _handle_datagram(self, data: bytes, addr: Address):
        frame = Frame.unpack(data)
        if frame is None:
            logger.debug(f"Ignoring {len(data)} byte datagram from {addr}")
            return

        mtype = frame.message_type
        if mtype == MessageType.DATA:
            self._handle_data(frame, addr)
        elif mtype == MessageType.ACK:
            self._handle_ack(frame)
        elif mtype == MessageType.HELLO:
            self._handle_hello(addr)
        elif mtype == MessageType.HELLO_ACK:
            self._handle_hello_ack(addr)
        elif mtype == MessageType.CLOSE:
            self._handle_close(addr)

    def _handle_hello(self, addr: Address):
        self._send_raw(create_control_frame(MessageType.HELLO_ACK), addr)

        if not self.is_server:
            return

        with self._lock:
            first = self._peers.get(addr) != PeerState.CONNECTED
            if first:
                self._peers[addr] = PeerState.CONNECTED

        if first:
            logger.info(f"Peer connected from {addr[0]}:{addr[1]}")
            if self.on_connect:
                self.on_connect(addr)

    def _handle_hello_ack(self, addr: Address):
        with self._lock:
            if self.is_server or addr != self.remote_address:
                return
            if self._peers.get(addr) != PeerState.HANDSHAKING:
                return
            self._peers[addr] = PeerState.CONNECTED
            if self._hello_timer:
                self._hello_timer.cancel()
                self._hello_timer = None

        logger.info(f"Connected to {addr[0]}:{addr[1]}")
        if self.on_connect:
            self.on_connect(addr)

    def _handle_data(self, frame: Frame, addr: Address):
        # Acknowledge first, duplicates included
        self._send_raw(create_ack_frame(frame.sequence), addr)

        with self._lock:
            connected = self._peers.get(addr) == PeerState.CONNECTED

        if not connected:
            logger.debug(f"DATA from unconnected {addr} ignored")
            return

        if self.on_data:
            self.on_data(addr, frame.payload)

    def _handle_ack(self, frame: Frame):
        with self._lock:
            pending = self._pending.pop(frame.sequence, None)
        if pending:
            pending.cancel()
            logger.debug(f"ACK for seq {frame.sequence} after {pending.retries} retries")

    def _handle_close(self, addr: Address):
        with self._lock:
            state = self._peers.pop(addr, None)
            self._discard_pending_for(addr)
            if addr == self.remote_address:
                self._peers[addr] = PeerState.CLOSED

        if state is None:
            return

        logger.info(f"Remote closed connection: {addr[0]}:{addr[1]}")
        if self.on_disconnect:
            self.on_disconnect(addr)


class TcpUdpBridge:
    """
    Pumps one TCP connection through a ReliableChannel peer.

    TCP -> tunnel: each non-empty read becomes one ``send_to``.
    Tunnel -> TCP: each delivered payload becomes one ``sendall``.

    The TCP socket may be attached after construction; payloads delivered
    before that wait in a bounded queue.
    """

    def __init__(
        self,
        bridge_id: int,
        channel: ReliableChannel,
        remote_address: Address,
        tcp_sock: Optional[socket.socket] = None,
        on_closed: Optional[Callable[['TcpUdpBridge'], None]] = None,
        chunk_size: int = BRIDGE_CHUNK_SIZE
    ):
        self.bridge_id = bridge_id
        self.channel = channel
        self.remote_address = remote_address
        self.on_closed = on_closed
        self.chunk_size = chunk_size

        self.tcp_sock: Optional[socket.socket] = None
        self.bytes_to_tunnel = 0
        self.bytes_to_tcp = 0

        self._queue: queue.Queue = queue.Queue(maxsize=BRIDGE_QUEUE_DEPTH)
        self._active = True
        self._started = False
        self._lock = threading.Lock()

        if tcp_sock is not None:
            self.attach(tcp_sock)

    def __repr__(self) -> str:
        return f"TcpUdpBridge(id={self.bridge_id}, remote={self.remote_address})"

    @property
    def active(self) -> bool:
        return self._active

    @property
    def attached(self) -> bool:
        return self.tcp_sock is not None

    def attach(self, tcp_sock: socket.socket) -> bool:
        """Bind the TCP side. Returns False (and closes the socket) if torn down."""
        with self._lock:
            if not self._active or self.tcp_sock is not None:
                tcp_sock.close()
                return False
            try:
                tcp_sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            except OSError:
                pass
            tcp_sock.settimeout(None)
            self.tcp_sock = tcp_sock
        return True

    def start(self):
        """Launch both pump loops, each on its own daemon thread."""
        with self._lock:
            if self._started or self.tcp_sock is None or not self._active:
                return
            self._started = True

        for loop in (self._tcp_to_tunnel, self._tunnel_to_tcp):
            threading.Thread(
                target=loop,
                name=f"Bridge-{self.bridge_id}-{loop.__name__}",
                daemon=True
            ).start()

        logger.info(f"[Bridge {self.bridge_id}] Pumping {self.remote_address[0]}:{self.remote_address[1]}")

    def deliver(self, payload: bytes) -> bool:
        """
        Queue a tunnel payload for the TCP side without blocking.

        Runs on the channel's receive worker; when the queue is full the
        payload is dropped so other peers keep being served.
        """
        if not self._active:
            return False
        try:
            self._queue.put_nowait(payload)
            return True
        except queue.Full:
            logger.warning(f"[Bridge {self.bridge_id}] Queue full, dropping {len(payload)} bytes")
            return False

    def close(self):
        """Tear down once: stop both loops, close TCP, notify the owner."""
        with self._lock:
            if not self._active:
                return
            self._active = False
            sock = self.tcp_sock

        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()

        # Wake the tunnel -> TCP loop
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass

        logger.info(
            f"[Bridge {self.bridge_id}] Closed "
            f"(to tunnel: {self.bytes_to_tunnel} bytes, to TCP: {self.bytes_to_tcp} bytes)"
        )

        if self.on_closed:
            self.on_closed(self)

    def _tcp_to_tunnel(self):
        sock = self.tcp_sock
        try:
            while self._active:
                try:
                    data = sock.recv(self.chunk_size)
                except OSError as e:
                    if self._active:
                        logger.debug(f"[Bridge {self.bridge_id}] TCP read error: {e}")
                    break

                if not data:
                    logger.info(f"[Bridge {self.bridge_id}] TCP side closed the connection")
                    break

                if not self.channel.send_to(self.remote_address, data):
                    logger.warning(f"[Bridge {self.bridge_id}] Tunnel is down, stopping")
                    break
                self.bytes_to_tunnel += len(data)
        except Exception as e:
            logger.exception(f"[Bridge {self.bridge_id}] TCP -> tunnel failed: {e}")
        finally:
            self.close()

    def _tunnel_to_tcp(self):
        sock = self.tcp_sock
        try:
            while self._active:
                try:
                    payload = self._queue.get(timeout=BRIDGE_POLL_INTERVAL)
                except queue.Empty:
                    continue
                if payload is None or not self._active:
                    break
                try:
                    sock.sendall(payload)
                except OSError as e:
                    if self._active:
                        logger.debug(f"[Bridge {self.bridge_id}] TCP write error: {e}")
                    break
                self.bytes_to_tcp += len(payload)
        except Exception as e:
            logger.exception(f"[Bridge {self.bridge_id}] tunnel -> TCP failed: {e}")
        finally:
            self.close()


class BridgeMap:
    """Thread-safe remote address -> bridge map (insert, remove, snapshot)."""

    def __init__(self):
        self._bridges: Dict[Address, TcpUdpBridge] = {}
        self._lock = threading.Lock()

    def put(self, address: Address, bridge: TcpUdpBridge) -> Optional[TcpUdpBridge]:
        """Insert, returning any bridge previously held for the address."""
        with self._lock:
            previous = self._bridges.get(address)
            self._bridges[address] = bridge
            return previous

    def get(self, address: Address) -> Optional[TcpUdpBridge]:
        with self._lock:
            return self._bridges.get(address)

    def remove(self, address: Address, bridge: Optional[TcpUdpBridge] = None) -> Optional[TcpUdpBridge]:
        """Remove the entry; with ``bridge`` given, only if it is still that one."""
        with self._lock:
            current = self._bridges.get(address)
            if current is None or (bridge is not None and current is not bridge):
                return None
            del self._bridges[address]
            return current

    def snapshot(self) -> List[TcpUdpBridge]:
        with self._lock:
            return list(self._bridges.values())

    def clear(self) -> List[TcpUdpBridge]:
        with self._lock:
            bridges = list(self._bridges.values())
            self._bridges.clear()
            return bridges

    def __len__(self) -> int:
        with self._lock:
            return len(self._bridges)

    def __contains__(self, address: Address) -> bool:
        with self._lock:
            return address in self._bridges
