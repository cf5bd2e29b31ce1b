"""
DirectLink Configuration
Persistent settings (registry URL, share code, ports, timeouts) stored as JSON.
"""

import os
import json
import random
import logging
import threading
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import Optional

from .protocol import generate_share_code, share_uri

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
DEFAULT_CONFIG_DIR = Path.home() / ".directlink"

# Range a host UDP port is picked from on first use
UDP_PORT_RANGE = (51900, 51999)

ENV_REGISTRY_URL = "DIRECTLINK_REGISTRY_URL"
ENV_CONFIG_DIR = "DIRECTLINK_CONFIG_DIR"


def default_config_path() -> Path:
    config_dir = os.environ.get(ENV_CONFIG_DIR)
    return (Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR) / CONFIG_FILE


@dataclass
class TunnelConfig:
    """Tunnel settings saved to disk."""
    registry_url: str = "http://localhost:8000"
    share_code: str = ""
    udp_port: int = 0                  # 0 means pick one on first use
    connection_timeout: float = 10.0   # Endpoint race limit, seconds
    heartbeat_interval: float = 30.0   # Registry keep-alive period, seconds
    local_service_port: int = 25565    # Tunneled TCP service on 127.0.0.1
    debug: bool = False

    path: Optional[Path] = field(default=None, repr=False, compare=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name not in ("path", "_lock")}

    def save(self, path: Optional[Path] = None):
        """Save config to JSON file (no-op without a path)."""
        path = Path(path) if path else self.path
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w') as f:
                json.dump(self.to_dict(), f, indent=2)
            logger.debug(f"Saved config to {path}")
        except OSError as e:
            logger.error(f"Failed to save config: {e}")

    @classmethod
    def load(cls, path: Optional[Path] = None) -> 'TunnelConfig':
        """Load config from JSON file; defaults if missing or unreadable."""
        path = Path(path) if path else default_config_path()
        config = cls(path=path)

        if path.exists():
            try:
                with open(path, 'r') as f:
                    data = json.load(f)
                known = set(cls().to_dict())
                config = cls(path=path, **{k: v for k, v in data.items() if k in known})
                logger.info(f"Loaded config from {path}")
            except (OSError, ValueError, TypeError) as e:
                logger.warning(f"Failed to load config: {e}")

        registry_url = os.environ.get(ENV_REGISTRY_URL)
        if registry_url:
            config.registry_url = registry_url

        return config

    # --- Share Code Management ---

    def get_share_code(self) -> str:
        """The share code, generating (and persisting) one if unset."""
        with self._lock:
            if not self.share_code:
                self.share_code = generate_share_code()
                self.save()
            return self.share_code

    def set_share_code(self, code: str):
        with self._lock:
            self.share_code = code
            self.save()

    def regenerate_share_code(self) -> str:
        with self._lock:
            self.share_code = generate_share_code()
            self.save()
            logger.info(f"Regenerated share code: {self.share_code}")
            return self.share_code

    @property
    def full_share_uri(self) -> str:
        return share_uri(self.get_share_code())

    # --- Ports ---

    def get_udp_port(self) -> int:
        """The host UDP port, picking (and persisting) one if unset."""
        with self._lock:
            if not self.udp_port:
                self.udp_port = random.randint(*UDP_PORT_RANGE)
                self.save()
            return self.udp_port
