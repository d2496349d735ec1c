"""How to reach the container daemon."""

import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit

from boxrun.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/var/run/docker.sock"
DEFAULT_ADDRESS = "http://localhost"


@dataclass(frozen=True)
class ConnectionConfig:
    """Immutable description of a daemon endpoint.

    ``transport_options`` are handed as-is to ``httpx.HTTPTransport`` (or
    its async twin), e.g. ``{"uds": "/var/run/docker.sock"}`` to route every
    request over a unix socket instead of TCP.
    """

    address: str = DEFAULT_ADDRESS
    transport_options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(
            self, "transport_options", MappingProxyType(dict(self.transport_options))
        )

    @classmethod
    def from_socket(cls, path: Optional[str] = None) -> "ConnectionConfig":
        """Connect over a local unix socket, by default DEFAULT_SOCKET_PATH.

        Only existence is checked; the path may still not be a socket.
        """
        if path is None:
            path = DEFAULT_SOCKET_PATH
        if not os.path.exists(path):
            raise ConfigurationError(f"socket not found at {path}")
        return cls(DEFAULT_ADDRESS, {"uds": path})

    @classmethod
    def from_url(cls, url: str) -> "ConnectionConfig":
        """Connect to a daemon listening on plain HTTP."""
        return cls(url.rstrip("/"))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ConnectionConfig":
        """Build from ``DOCKER_HOST``, falling back to the default socket."""
        if environ is None:
            environ = os.environ
        host = environ.get("DOCKER_HOST")
        if not host:
            return cls.from_socket()

        logger.debug(f"Using DOCKER_HOST={host}")
        parts = urlsplit(host)
        if parts.scheme == "unix":
            # unix:///var/run/docker.sock -> /var/run/docker.sock
            return cls.from_socket(parts.netloc + parts.path)
        if parts.scheme in ("tcp", "http"):
            if not parts.netloc:
                raise ConfigurationError(f"DOCKER_HOST has no address: {host}")
            return cls.from_url(f"http://{parts.netloc}")
        raise ConfigurationError(f"Unsupported DOCKER_HOST: {host}")

    def client_config(self) -> dict[str, Any]:
        """Settings for building an httpx client."""
        config: dict[str, Any] = {
            "base_url": self.address,
            "headers": {},
        }
        if self.transport_options:
            config["transport"] = dict(self.transport_options)
        return config
