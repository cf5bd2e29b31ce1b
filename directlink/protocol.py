"""
DirectLink Protocol Definition
Binary tunnel framing, share codes and the value types exchanged with the registry.
"""

import re
import random
import struct
from enum import Enum, IntEnum
from dataclasses import dataclass
from typing import Optional, Tuple

# Maximum datagram we ever read (tunnel frames are far smaller)
MAX_DATAGRAM_SIZE = 65535

# Hole punching probe: a single byte no frame type uses
PUNCH_PROBE = b'\x00'

SHARE_CODE_PATTERN = re.compile(r"^[a-z]+-[a-z]+-\d{2,3}$")
SHARE_CODE_PREFIXES = ("p2p://", "p2p.")

ADJECTIVES = (
    "happy", "bouncy", "sleepy", "noisy", "shiny", "fluffy",
    "brave", "clever", "gentle", "mighty", "swift", "calm",
    "wild", "proud", "quiet", "eager", "jolly", "witty",
)

ANIMALS = (
    "llama", "cat", "dog", "eagle", "panda", "tiger",
    "wolf", "bear", "fox", "owl", "hawk", "deer",
    "lion", "otter", "raven", "koala", "lynx", "seal",
)


class MessageType(IntEnum):
    """Tunnel frame type identifiers (first byte of every datagram)."""
    DATA = 0x01       # [type][seq:4][payload]
    ACK = 0x02        # [type][seq:4]
    HELLO = 0x03      # Handshake request (client -> host)
    HELLO_ACK = 0x04  # Handshake response (host -> client)
    CLOSE = 0x05      # Connection close


class EndpointKind(Enum):
    """Where a candidate address was observed."""
    LAN = "LAN"
    WAN = "WAN"


@dataclass(frozen=True)
class Endpoint:
    """One candidate address at which a host may be reachable."""
    ip: str
    port: int
    kind: EndpointKind = EndpointKind.WAN

    @property
    def address(self) -> Tuple[str, int]:
        return (self.ip, self.port)

    @classmethod
    def from_dict(cls, data: dict) -> 'Endpoint':
        """Build from a registry lookup entry ({ip, port, type})."""
        kind = str(data.get("type", "WAN")).upper()
        return cls(
            ip=str(data["ip"]),
            port=int(data["port"]),
            kind=EndpointKind(kind)
        )

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.ip}:{self.port}"


@dataclass(frozen=True)
class PunchRequest:
    """A client asking (through the registry) for the host to open its NAT."""
    client_ip: str
    client_port: int


# ============================================================================
# Frames
# ============================================================================

@dataclass
class Frame:
    """
    A decoded tunnel datagram.

    Only DATA and ACK carry a sequence number; only DATA carries a payload.
    """
    message_type: MessageType
    sequence: int = 0
    payload: bytes = b''

    SEQUENCE_SIZE = 4

    def pack(self) -> bytes:
        """Serialize frame to bytes."""
        if self.message_type == MessageType.DATA:
            return struct.pack(">BI", self.message_type, self.sequence) + self.payload
        if self.message_type == MessageType.ACK:
            return struct.pack(">BI", self.message_type, self.sequence)
        return struct.pack(">B", self.message_type)

    @classmethod
    def unpack(cls, data: bytes) -> Optional['Frame']:
        """
        Deserialize a datagram.

        Returns None for empty datagrams, unknown type bytes (hole punching
        probes included) and DATA/ACK frames too short to hold a sequence.
        """
        if not data:
            return None

        try:
            message_type = MessageType(data[0])
        except ValueError:
            return None

        if message_type in (MessageType.DATA, MessageType.ACK):
            if len(data) < 1 + cls.SEQUENCE_SIZE:
                return None
            sequence = struct.unpack(">I", data[1:1 + cls.SEQUENCE_SIZE])[0]
            payload = data[1 + cls.SEQUENCE_SIZE:] if message_type == MessageType.DATA else b''
            return cls(message_type, sequence, payload)

        return cls(message_type)


def create_data_frame(sequence: int, payload: bytes) -> bytes:
    return Frame(MessageType.DATA, sequence, payload).pack()


def create_ack_frame(sequence: int) -> bytes:
    return Frame(MessageType.ACK, sequence).pack()


def create_control_frame(message_type: MessageType) -> bytes:
    """HELLO, HELLO_ACK or CLOSE."""
    return Frame(message_type).pack()


# ============================================================================
# Share Codes
# ============================================================================

def generate_share_code(rng: Optional[random.Random] = None) -> str:
    """Generate a share code in the form adjective-animal-NN."""
    rng = rng or random.SystemRandom()
    adjective = rng.choice(ADJECTIVES)
    animal = rng.choice(ANIMALS)
    number = rng.randint(10, 99)
    return f"{adjective}-{animal}-{number}"


def is_valid_share_code(code: Optional[str]) -> bool:
    if not code:
        return False
    return SHARE_CODE_PATTERN.match(code) is not None


def strip_share_prefix(address: str) -> str:
    """Lowercase, trim and drop a leading p2p:// or p2p. prefix."""
    code = address.strip().lower()
    for prefix in SHARE_CODE_PREFIXES:
        if code.startswith(prefix):
            return code[len(prefix):]
    return code


def normalize_share_code(address: Optional[str]) -> Optional[str]:
    """
    Reduce user input ("p2p.happy-llama-42", "P2P://happy-llama-42", ...)
    to a bare share code.

    Returns None if what remains is not a valid share code.
    """
    if address is None:
        return None

    code = strip_share_prefix(address)
    return code if is_valid_share_code(code) else None


def share_uri(code: str) -> str:
    return f"p2p://{code}"
