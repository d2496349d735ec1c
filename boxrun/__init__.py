# boxrun - run untrusted snippets in throwaway containers
"""
boxrun - Sandboxed snippet execution over the Docker Engine API.

Each call gets its own network-less, memory-capped container that is
removed as soon as its output has been collected.
"""

from boxrun.connection import ConnectionConfig
from boxrun.errors import (
    BoxrunError,
    ConfigurationError,
    Conflict,
    DaemonConnectionError,
    DaemonError,
    ExecutionTimeout,
    ImageNotFound,
    MalformedResponseError,
    NotFound,
    TransportError,
)
from boxrun.logs import DemuxedLogs, LogDemuxer
from boxrun.models import ContainerSettings, ContainerState, ExecResponse
from boxrun.runner import AsyncDockerRunner, DockerRunner

__all__ = [
    "DockerRunner",
    "AsyncDockerRunner",
    "ConnectionConfig",
    "ContainerSettings",
    "ContainerState",
    "ExecResponse",
    "LogDemuxer",
    "DemuxedLogs",
    "BoxrunError",
    "ConfigurationError",
    "TransportError",
    "DaemonConnectionError",
    "DaemonError",
    "NotFound",
    "ImageNotFound",
    "Conflict",
    "MalformedResponseError",
    "ExecutionTimeout",
]

__version__ = "0.1.0"
