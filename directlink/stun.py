"""
STUN Client Implementation (RFC 5389 binding subset)
Discovers the LAN address of this machine and the public IP/port a NAT
maps a local UDP socket to.
"""

import time
import socket
import struct
import secrets
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple

import psutil

logger = logging.getLogger(__name__)

# STUN Message Types
STUN_BINDING_REQUEST = 0x0001
STUN_BINDING_RESPONSE = 0x0101
STUN_BINDING_ERROR = 0x0111

# STUN Attribute Types
ATTR_MAPPED_ADDRESS = 0x0001
ATTR_XOR_MAPPED_ADDRESS = 0x0020

FAMILY_IPV4 = 0x01

# Magic Cookie (RFC 5389)
MAGIC_COOKIE = 0x2112A442

HEADER_SIZE = 20
DEFAULT_TIMEOUT = 3.0

# Public resolution servers, tried in order
DEFAULT_STUN_SERVERS = [
    ("stun.l.google.com", 19302),
    ("stun1.l.google.com", 19302),
    ("stun2.l.google.com", 19302),
    ("stun.cloudflare.com", 3478),
]

# Route-table probe target; nothing is ever sent to it
ROUTE_PROBE_ADDR = ("8.8.8.8", 80)


@dataclass
class STUNResult:
    """Result of a STUN binding request."""
    public_ip: str
    public_port: int
    local_ip: str
    local_port: int


class STUNError(Exception):
    """STUN response could not be used."""
    pass


# ============================================================================
# Local addresses
# ============================================================================

def _route_local_ip() -> Optional[str]:
    """
    The source address the OS would pick for internet traffic.
    Connecting a UDP socket only consults the routing table, no packet leaves.
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(ROUTE_PROBE_ADDR)
        ip = s.getsockname()[0]
    except OSError as e:
        logger.debug(f"Route probe failed: {e}")
        return None
    finally:
        s.close()

    if ip.startswith("127.") or ip == "0.0.0.0":
        return None
    return ip


def _interface_ips() -> List[str]:
    """Non-loopback IPv4 addresses of interfaces that are up."""
    ips = []
    try:
        stats = psutil.net_if_stats()
        for name, addrs in psutil.net_if_addrs().items():
            if name in stats and not stats[name].isup:
                continue
            for addr in addrs:
                if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                    ips.append(addr.address)
    except (OSError, psutil.Error) as e:
        logger.warning(f"Interface enumeration failed: {e}")
    return ips


def get_local_ips() -> Set[str]:
    """All LAN IPv4 addresses of this machine (may be empty)."""
    ips = set(_interface_ips())
    primary = _route_local_ip()
    if primary:
        ips.add(primary)
    return ips


def get_local_ip() -> str:
    """
    Get the local IP address of this machine.
    This returns the IP that would be used to connect to the internet,
    not 0.0.0.0 or 127.0.0.1, unless nothing better exists.
    """
    ip = _route_local_ip()
    if ip:
        logger.debug(f"Local IP (via route): {ip}")
        return ip

    for ip in _interface_ips():
        logger.debug(f"Local IP (via interface): {ip}")
        return ip

    return "127.0.0.1"


# ============================================================================
# Binding request / response
# ============================================================================

def create_binding_request() -> Tuple[bytes, bytes]:
    """
    Create a STUN Binding Request message.
    Returns: (message_bytes, transaction_id)
    """
    # Transaction ID: 96 bits (12 bytes) of random data
    transaction_id = secrets.token_bytes(12)

    header = struct.pack(
        ">HHI",
        STUN_BINDING_REQUEST,  # Message Type (2 bytes)
        0,                     # Message Length (2 bytes)
        MAGIC_COOKIE           # Magic Cookie (4 bytes)
    )

    return header + transaction_id, transaction_id


def _parse_binding_response(data: bytes, expected_txn_id: Optional[bytes]) -> Tuple[str, int]:
    if len(data) < HEADER_SIZE:
        raise STUNError("Response too short")

    msg_type, msg_len, magic = struct.unpack(">HHI", data[:8])
    txn_id = data[8:HEADER_SIZE]

    if msg_type == STUN_BINDING_ERROR:
        raise STUNError("STUN server returned error")

    if msg_type != STUN_BINDING_RESPONSE:
        raise STUNError(f"Unexpected message type: {msg_type:#06x}")

    if magic != MAGIC_COOKIE:
        raise STUNError("Invalid magic cookie")

    if expected_txn_id is not None and txn_id != expected_txn_id:
        raise STUNError("Transaction ID mismatch")

    offset = HEADER_SIZE
    end = min(HEADER_SIZE + msg_len, len(data))
    mapped = None
    xor_mapped = None

    while offset + 4 <= end:
        attr_type, attr_len = struct.unpack(">HH", data[offset:offset + 4])
        offset += 4
        attr_data = data[offset:offset + attr_len]

        if attr_type == ATTR_XOR_MAPPED_ADDRESS:
            xor_mapped = _parse_address(attr_data, xor=True) or xor_mapped
        elif attr_type == ATTR_MAPPED_ADDRESS:
            mapped = _parse_address(attr_data, xor=False) or mapped

        # Attributes are padded to a 4-byte boundary
        offset += attr_len + (4 - attr_len % 4) % 4

    result = xor_mapped or mapped
    if result is None:
        raise STUNError("No mapped address in response")
    return result


def _parse_address(data: bytes, xor: bool) -> Optional[Tuple[str, int]]:
    """Decode a (XOR-)MAPPED-ADDRESS value; None for non-IPv4 or short values."""
    if len(data) < 8:
        return None

    _, family, port = struct.unpack(">BBH", data[:4])
    if family != FAMILY_IPV4:
        logger.debug(f"Ignoring address family {family:#04x}")
        return None

    raw_ip = struct.unpack(">I", data[4:8])[0]
    if xor:
        port ^= MAGIC_COOKIE >> 16
        raw_ip ^= MAGIC_COOKIE

    return socket.inet_ntoa(struct.pack(">I", raw_ip)), port


def parse_binding_response(
    data: bytes,
    expected_txn_id: Optional[bytes] = None
) -> Optional[Tuple[str, int]]:
    """
    Parse a STUN Binding Response.

    Returns (public_ip, public_port), or None if the datagram is an error
    response, malformed, for another transaction, or carries no IPv4 address.
    """
    try:
        return _parse_binding_response(data, expected_txn_id)
    except STUNError as e:
        logger.debug(f"Unusable STUN response: {e}")
        return None


# ============================================================================
# Discovery
# ============================================================================

def _query_server(
    sock: socket.socket,
    server: Tuple[str, int],
    timeout: float
) -> Optional[Tuple[str, int]]:
    server_host, server_port = server
    server_ip = socket.gethostbyname(server_host)

    request, txn_id = create_binding_request()
    sock.sendto(request, (server_ip, server_port))

    # The socket may see unrelated datagrams; the deadline is wall-clock
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise socket.timeout("STUN response timed out")
        sock.settimeout(remaining)
        data, addr = sock.recvfrom(2048)
        if addr[0] != server_ip:
            continue
        result = parse_binding_response(data, txn_id)
        if result is not None:
            return result


def get_public_address(
    sock: Optional[socket.socket] = None,
    stun_servers: Optional[Iterable[Tuple[str, int]]] = None,
    timeout: float = DEFAULT_TIMEOUT
) -> Optional[STUNResult]:
    """
    Discover the public mapping of a UDP socket.

    Args:
        sock: A bound UDP socket nobody else is reading from. A temporary
            socket is used when omitted.
        stun_servers: (host, port) tuples tried in order.
        timeout: Per-server wait in seconds.

    Returns:
        STUNResult, or None when every server failed.
    """
    if stun_servers is None:
        stun_servers = DEFAULT_STUN_SERVERS

    own_socket = sock is None
    if own_socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind(("0.0.0.0", 0))

    old_timeout = sock.gettimeout()
    local_addr = sock.getsockname()

    try:
        for server in stun_servers:
            try:
                logger.debug(f"Trying STUN server: {server[0]}:{server[1]}")
                public_ip, public_port = _query_server(sock, server, timeout)
            except (socket.timeout, OSError) as e:
                logger.warning(f"STUN server {server[0]} failed: {e}")
                continue

            logger.info(f"STUN success: {public_ip}:{public_port}")
            local_ip = get_local_ip() if local_addr[0] in ('0.0.0.0', '') else local_addr[0]
            return STUNResult(
                public_ip=public_ip,
                public_port=public_port,
                local_ip=local_ip,
                local_port=local_addr[1]
            )

        logger.warning("All STUN servers failed")
        return None

    finally:
        if own_socket:
            sock.close()
        else:
            sock.settimeout(old_timeout)
