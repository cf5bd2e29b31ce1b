"""
DirectLink
Share a local TCP service by code and reach it over a direct (hole-punched) UDP tunnel.
"""

__version__ = '0.1.0'

from .stun import get_public_address, get_local_ip, STUNResult
from .protocol import (
    Endpoint,
    EndpointKind,
    Frame,
    MessageType,
    PunchRequest,
    generate_share_code,
    normalize_share_code
)
from .errors import (
    DirectLinkError,
    InvalidShareCodeError,
    AlreadyActiveError,
    HostNotFoundError,
    ConnectionFailedError,
    ConnectionTimeoutError,
    RaceCancelledError
)
from .transport import ReliableChannel, TcpUdpBridge, BridgeMap
from .signaling import SignalingClient
from .race import EndpointRace, RaceResult
from .config import TunnelConfig
from .network_manager import HostManager, JoinManager, StatusFeed, HostState, JoinState

__all__ = [
    # STUN
    'get_public_address',
    'get_local_ip',
    'STUNResult',

    # Protocol
    'Endpoint',
    'EndpointKind',
    'Frame',
    'MessageType',
    'PunchRequest',
    'generate_share_code',
    'normalize_share_code',

    # Errors
    'DirectLinkError',
    'InvalidShareCodeError',
    'AlreadyActiveError',
    'HostNotFoundError',
    'ConnectionFailedError',
    'ConnectionTimeoutError',
    'RaceCancelledError',

    # Transport
    'ReliableChannel',
    'TcpUdpBridge',
    'BridgeMap',
    'SignalingClient',
    'EndpointRace',
    'RaceResult',

    # Managers
    'TunnelConfig',
    'HostManager',
    'JoinManager',
    'StatusFeed',
    'HostState',
    'JoinState',
]
