"""Internal models for the container runner."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


@dataclass
class ExecResponse:
    """Result of running one snippet."""
    output: str
    stdout: str
    stderr: str
    exit_code: Optional[int]
    container_id: str
    truncated: bool = False


class ContainerState(str, Enum):
    """Lifecycle of a container owned by one execution."""
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    REMOVED = "removed"


_STATE_ORDER = list(ContainerState)


@dataclass
class ContainerHandle:
    """Daemon-side container referenced by its id."""

    container_id: str
    state: ContainerState = ContainerState.CREATED

    @property
    def short_id(self) -> str:
        return self.container_id[:12]

    def advance(self, to: ContainerState) -> None:
        """Move exactly one state forward."""
        current = _STATE_ORDER.index(self.state)
        if _STATE_ORDER.index(to) != current + 1:
            raise RuntimeError(
                f"Container {self.short_id} cannot go from {self.state.value} to {to.value}"
            )
        self.state = to

    def discard(self) -> None:
        """Mark the container removed after a forced cleanup."""
        self.state = ContainerState.REMOVED


@dataclass(frozen=True)
class ContainerSettings:
    """How snippets are laid out and run inside the container.

    The defaults run the snippet with the PHP CLI, mounted read-only at
    /code.php, with no network and a 128 MiB memory ceiling.
    """

    command: tuple[str, ...] = ("php", "/code.php")
    code_path: str = "/code.php"
    memory_limit: int = 128 * 1024 * 1024
    network_mode: str = "none"
    api_version: str = "v1.41"
    labels: Mapping[str, str] = field(default_factory=lambda: {"boxrun": "true"})
    file_prefix: str = "boxrun-"

    def __post_init__(self):
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))

    def api_path(self, path: str) -> str:
        return f"/{self.api_version}{path}"

    def create_payload(self, image: str, host_path: str) -> dict[str, Any]:
        """Body for POST /containers/create."""
        return {
            "Image": image,
            "Cmd": list(self.command),
            "Labels": dict(self.labels),
            "HostConfig": {
                # Removal is explicit so logs can be read after exit
                "AutoRemove": False,
                "Binds": [f"{host_path}:{self.code_path}:ro"],
                "NetworkMode": self.network_mode,
                "Memory": self.memory_limit,
            },
        }
