"""
DirectLink Registry Client
HTTP lookup of share codes and the long-lived WebSocket a host keeps open
with the registry (registration, keep-alive, relayed punch requests).
"""

import json
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional

import requests
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.sync.client import connect

from .protocol import Endpoint, PunchRequest, strip_share_prefix

logger = logging.getLogger(__name__)

LOOKUP_TIMEOUT = 10.0
CONNECT_TIMEOUT = 10.0
CLOSE_NORMAL = 1000

# Server -> host message types
MSG_REGISTERED = "REGISTERED"
MSG_CODE_CONFLICT = "CODE_CONFLICT"
MSG_PUNCH_REQUEST = "PUNCH_REQUEST"
MSG_PING = "PING"
MSG_CODE_REGENERATED = "CODE_REGENERATED"

# Host -> server message types
MSG_PONG = "PONG"
MSG_REGENERATE = "REGENERATE"


def registry_ws_url(registry_url: str) -> str:
    """http(s)://registry -> ws(s)://registry/ws/register"""
    base = registry_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return base + "/ws/register"


class SignalingClient:
    """
    Client for the DirectLink registry.

    ``lookup`` is a plain request/response. ``register`` opens a WebSocket
    that stays up for the whole hosting session; server messages are handled
    strictly in arrival order on one reader thread.
    """

    def __init__(
        self,
        registry_url: str,
        on_punch_request: Optional[Callable[[PunchRequest], None]] = None,
        on_code_assigned: Optional[Callable[[str], None]] = None,
        on_disconnect: Optional[Callable[[str], None]] = None,
        heartbeat_interval: float = 30.0,
        session: Optional[requests.Session] = None,
        connect_factory: Optional[Callable[..., Any]] = None
    ):
        """
        Args:
            registry_url: Base HTTP(S) URL of the registry.
            on_punch_request: Called for every relayed PUNCH_REQUEST.
            on_code_assigned: Called with every code the registry hands out.
            on_disconnect: Called with a reason when an established
                registration channel drops.
            heartbeat_interval: The registry is presumed gone after twice
                this long without any message. 0 disables the check.
            session: HTTP session (a fresh requests.Session by default).
            connect_factory: WebSocket opener, websockets' sync ``connect``
                by default.
        """
        self.registry_url = registry_url.rstrip("/")
        self.on_punch_request = on_punch_request
        self.on_code_assigned = on_code_assigned
        self.on_disconnect = on_disconnect
        self.heartbeat_interval = heartbeat_interval

        self._http = session or requests.Session()
        self._connect = connect_factory or connect

        self.share_code: Optional[str] = None

        self._ws = None
        self._connected = False
        self._closing = False
        self._reader: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, share_code: str, client_port: int) -> List[Endpoint]:
        """
        Ask the registry where the host behind a share code can be reached.

        Not found, any other error status and transport failures all come
        back as an empty list.
        """
        code = strip_share_prefix(share_code)
        try:
            response = self._http.post(
                f"{self.registry_url}/lookup",
                json={"share_code": code, "client_port": client_port},
                timeout=LOOKUP_TIMEOUT
            )
        except requests.RequestException as e:
            logger.error(f"Lookup error: {e}")
            return []

        if response.status_code == 404:
            logger.warning(f"Share code not found: {code}")
            return []

        if response.status_code != 200:
            logger.error(f"Lookup failed: {response.status_code} - {response.text}")
            return []

        return self._parse_endpoints(response)

    @staticmethod
    def _parse_endpoints(response: requests.Response) -> List[Endpoint]:
        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Failed to parse endpoints: {e}")
            return []

        entries = body.get("endpoints") if isinstance(body, dict) else None
        if not isinstance(entries, list):
            logger.error(f"Lookup response has no endpoint list: {body}")
            return []

        endpoints = []
        for entry in entries:
            try:
                endpoint = Endpoint.from_dict(entry)
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning(f"Skipping invalid endpoint: {entry}")
                continue
            if endpoint not in endpoints:
                endpoints.append(endpoint)

        logger.info(f"Lookup returned {len(endpoints)} endpoint(s): {', '.join(map(str, endpoints))}")
        return endpoints

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        local_ip: str,
        port: int,
        requested_code: Optional[str] = None,
        wan_ip: Optional[str] = None,
        wan_port: Optional[int] = None
    ) -> 'Future[bool]':
        """
        Register as a host.

        The returned future resolves True on the first REGISTERED or
        CODE_CONFLICT, False if the channel fails before that. It never
        raises.
        """
        future: Future = Future()

        with self._lock:
            if self._reader is not None and self._reader.is_alive():
                logger.warning("Registration already in progress")
                future.set_result(False)
                return future
            self._closing = False

        payload: Dict[str, Any] = {"local_ip": local_ip, "port": port}
        if requested_code:
            payload["requested_code"] = requested_code
        if wan_ip:
            payload["wan_ip"] = wan_ip
            payload["wan_port"] = wan_port if wan_port else port

        self._reader = threading.Thread(
            target=self._run,
            args=(payload, future),
            name="SignalingClient",
            daemon=True
        )
        self._reader.start()
        return future

    def request_regenerate(self) -> bool:
        """Ask the registry for a new code. No-op (False) when disconnected."""
        if not self._send_json({"type": MSG_REGENERATE}):
            return False
        logger.info("Requested code regeneration")
        return True

    def disconnect(self):
        """Close the registration channel normally. Idempotent."""
        with self._lock:
            self._closing = True
            ws = self._ws

        if ws is not None:
            try:
                ws.close(code=CLOSE_NORMAL, reason="Client closing")
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Error closing registry channel: {e}")

        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=2)

    def _run(self, payload: Dict[str, Any], future: 'Future[bool]'):
        url = registry_ws_url(self.registry_url)
        logger.info(f"Connecting to registry: {url}")

        try:
            ws = self._connect(url, open_timeout=CONNECT_TIMEOUT)
        except (OSError, InvalidURI, InvalidHandshake) as e:
            logger.error(f"Failed to connect to registry: {e}")
            self._resolve(future, False)
            return

        with self._lock:
            self._ws = ws
            self._connected = True
            closing = self._closing

        reason = "Registry connection closed"
        try:
            if closing:
                # disconnect() ran while the socket was opening
                ws.close(code=CLOSE_NORMAL, reason="Client closing")
                return
            ws.send(json.dumps(payload))
            logger.info(f"Sent registration: {payload['local_ip']}:{payload['port']}")

            idle_timeout = self.heartbeat_interval * 2 if self.heartbeat_interval > 0 else None
            while True:
                try:
                    message = ws.recv(timeout=idle_timeout)
                except TimeoutError:
                    reason = "Registry heartbeat timed out"
                    logger.warning(reason)
                    ws.close(code=CLOSE_NORMAL, reason="Heartbeat timeout")
                    break
                self._handle_message(message, future)

        except ConnectionClosed as e:
            if e.rcvd is not None and e.rcvd.reason:
                reason = e.rcvd.reason
            logger.info(f"Registry connection closed: {reason}")
        except OSError as e:
            reason = f"Registry error: {e}"
            logger.error(reason)
        finally:
            with self._lock:
                self._ws = None
                self._connected = False
                closing = self._closing

            if not future.done():
                logger.error("Registry channel closed before registration completed")
                self._resolve(future, False)
            elif not closing and self.on_disconnect:
                self.on_disconnect(reason)

    def _handle_message(self, raw, future: 'Future[bool]'):
        try:
            msg = json.loads(raw)
            msg_type = msg["type"]
        except (ValueError, KeyError, TypeError) as e:
            logger.debug(f"Unparseable registry message {raw!r}: {e}")
            return

        try:
            if msg_type == MSG_REGISTERED:
                self._assign_code(msg["code"])
                logger.info(f"Registered with code: {self.share_code}")
                self._resolve(future, True)

            elif msg_type == MSG_CODE_CONFLICT:
                self._assign_code(msg["assigned"])
                logger.warning(f"Code conflict, assigned: {self.share_code}")
                self._resolve(future, True)

            elif msg_type == MSG_PUNCH_REQUEST:
                punch = PunchRequest(
                    client_ip=str(msg["client_ip"]),
                    client_port=int(msg.get("client_port") or 0)
                )
                logger.info(f"Punch request from: {punch.client_ip}:{punch.client_port}")
                if self.on_punch_request:
                    self.on_punch_request(punch)

            elif msg_type == MSG_PING:
                self._send_json({"type": MSG_PONG})

            elif msg_type == MSG_CODE_REGENERATED:
                self._assign_code(msg["new_code"])
                logger.info(f"Code regenerated: {self.share_code}")

            else:
                logger.debug(f"Unknown message type: {msg_type}")

        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed {msg_type} message: {e}")

    def _assign_code(self, code: str):
        self.share_code = str(code)
        if self.on_code_assigned:
            self.on_code_assigned(self.share_code)

    def _resolve(self, future: 'Future[bool]', value: bool):
        with self._lock:
            if not future.done():
                future.set_result(value)

    def _send_json(self, message: Dict[str, Any]) -> bool:
        with self._lock:
            ws = self._ws if self._connected else None
        if ws is None:
            return False
        try:
            ws.send(json.dumps(message))
            return True
        except (ConnectionClosed, OSError) as e:
            logger.warning(f"Failed to send {message.get('type')}: {e}")
            return False
