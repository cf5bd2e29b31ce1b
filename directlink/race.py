"""
DirectLink Endpoint Racing
Handshakes with every candidate endpoint at once and keeps the first
channel that completes.
"""

import logging
import threading
from dataclasses import dataclass
from concurrent.futures import Executor, Future
from typing import Callable, List, Optional, Sequence

from .errors import ConnectionFailedError, ConnectionTimeoutError, RaceCancelledError
from .protocol import Endpoint, EndpointKind
from .transport import Address, ReliableChannel

logger = logging.getLogger(__name__)

DEFAULT_RACE_TIMEOUT = 10.0

ChannelFactory = Callable[..., ReliableChannel]


@dataclass
class RaceResult:
    """The endpoint that answered first and its connected channel."""
    endpoint: Endpoint
    channel: ReliableChannel


class _Attempt:
    def __init__(self, endpoint: Endpoint):
        self.endpoint = endpoint
        self.channel: Optional[ReliableChannel] = None


class EndpointRace:
    """
    One concurrent client-role handshake per endpoint; first HELLO_ACK wins.

    ``channel_factory`` is called with ``on_connect=`` and must return an
    unstarted ReliableChannel (extra callbacks such as on_data can be bound
    into the factory by the caller).
    """

    def __init__(
        self,
        endpoints: Sequence[Endpoint],
        channel_factory: ChannelFactory = ReliableChannel,
        timeout: float = DEFAULT_RACE_TIMEOUT,
        local_port: int = 0,
        executor: Optional[Executor] = None
    ):
        """
        Args:
            endpoints: Candidates; duplicates are raced once.
            channel_factory: Builds one channel per attempt.
            timeout: Wall-clock limit for the whole race, in seconds.
            local_port: UDP port announced to the registry; the first WAN
                attempt binds it so the host's punch probes line up.
            executor: Runs the attempts; daemon threads when omitted.
        """
        unique = list(dict.fromkeys(endpoints))
        if not unique:
            raise ValueError("EndpointRace needs at least one endpoint")

        self.endpoints: List[Endpoint] = unique
        self.channel_factory = channel_factory
        self.timeout = timeout
        self.local_port = local_port
        self.executor = executor

        self.future: Future = Future()
        self._attempts = [_Attempt(e) for e in unique]
        self._remaining = len(unique)
        self._winner: Optional[_Attempt] = None
        self._decided = False
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    @property
    def winner(self) -> Optional[Endpoint]:
        return self._winner.endpoint if self._winner else None

    def run(self) -> 'Future[RaceResult]':
        """Launch every attempt and the timeout. Returns the race future."""
        logger.info(f"Racing {len(self._attempts)} endpoint(s)")

        self._timer = threading.Timer(self.timeout, self._on_timeout)
        self._timer.daemon = True
        self._timer.start()

        wan_port_used = False
        for attempt in self._attempts:
            local_port = 0
            if self.local_port and not wan_port_used and attempt.endpoint.kind == EndpointKind.WAN:
                local_port = self.local_port
                wan_port_used = True
            self._submit(self._launch, attempt, local_port)

        return self.future

    def cancel(self):
        """Stop every attempt; an undecided race fails with RaceCancelledError."""
        if self._decide(None):
            self._fail(RaceCancelledError("Endpoint race cancelled"))

    def _submit(self, fn, *args):
        if self.executor is not None:
            self.executor.submit(fn, *args)
        else:
            threading.Thread(target=fn, args=args, name="EndpointRace", daemon=True).start()

    def _launch(self, attempt: _Attempt, local_port: int):
        logger.debug(f"Trying endpoint: {attempt.endpoint}")

        def on_connect(sender: Address):
            self._on_connected(attempt)

        started = self._start(attempt, on_connect, local_port)
        if not started and local_port:
            logger.info(f"Port {local_port} unavailable, retrying {attempt.endpoint} from an ephemeral port")
            started = self._start(attempt, on_connect, 0)
        if started:
            return

        logger.warning(f"Endpoint {attempt.endpoint} could not be attempted")
        with self._lock:
            self._remaining -= 1
            exhausted = self._remaining == 0 and not self._decided

        if exhausted and self._decide(None):
            self._fail(ConnectionFailedError("Failed to connect to any endpoint"))

    def _start(self, attempt: _Attempt, on_connect, local_port: int) -> bool:
        """Open one attempt's channel. False only if its socket could not be set up."""
        channel = self.channel_factory(on_connect=on_connect)
        with self._lock:
            attempt.channel = channel
            if self._decided:
                return True

        started = channel.connect(attempt.endpoint.ip, attempt.endpoint.port, local_port=local_port)

        # The race may have been decided while the socket was opening
        with self._lock:
            lost = self._decided and self._winner is not attempt
        if lost:
            channel.stop()
        return started

    def _on_connected(self, attempt: _Attempt):
        if not self._decide(attempt):
            # Lost the race (or arrived after the timeout)
            logger.debug(f"Late handshake from {attempt.endpoint}, discarding")
            if attempt.channel:
                attempt.channel.stop()
            return

        logger.info(f"Connected via {attempt.endpoint}")
        self._stop_others(attempt)
        self.future.set_result(RaceResult(endpoint=attempt.endpoint, channel=attempt.channel))

    def _on_timeout(self):
        if self._decide(None):
            logger.warning(f"No endpoint answered within {self.timeout:.1f}s")
            self._fail(ConnectionTimeoutError("Connection timed out - host may have strict NAT"))

    def _decide(self, winner: Optional[_Attempt]) -> bool:
        """Compare-and-set on the race outcome; only the first caller gets True."""
        with self._lock:
            if self._decided:
                return False
            self._decided = True
            self._winner = winner

        if self._timer:
            self._timer.cancel()
        return True

    def _fail(self, error: Exception):
        self._stop_others(None)
        self.future.set_exception(error)

    def _stop_others(self, keep: Optional[_Attempt]):
        with self._lock:
            channels = [a.channel for a in self._attempts if a is not keep and a.channel]
        for channel in channels:
            channel.stop()
