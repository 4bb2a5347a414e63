"""
Runtime - abstract container runtime capability.

The orchestration core never talks to a container engine directly; it uses
a Runtime. DockerRuntime is the production implementation; tests use an
in-memory fake.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


@dataclass(frozen=True)
class ContainerState:
    """
    Runtime-reported state of a container.

    Attributes:
        running: Whether the container is running
        exit_code: Last exit code (None while it has never exited)
        health: "starting", "healthy", "unhealthy", or None if the container
                has no healthcheck
        status: Raw status string ("created", "running", "exited", ...)
    """
    running: bool
    exit_code: Optional[int] = None
    health: Optional[str] = None
    status: str = ""


@dataclass(frozen=True)
class ExecResult:
    """Result of a command run inside a container."""
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class ContainerSpec:
    """
    Everything needed to create a container.

    Attributes:
        name: Container name
        image: Image reference or tag
        command / entrypoint: Override argv (None = image default)
        env: Environment variables
        user: User the main process runs as
        working_dir: Working directory
        labels: Container labels
        ports: Container port -> host port
        mounts: Host path -> container path bind mounts
        volumes: Raw Compose volume strings, passed through
        network: Network to join
        network_aliases: Aliases on that network
        healthcheck: Raw Compose healthcheck mapping
    """
    name: str
    image: str
    command: Optional[list[str]] = None
    entrypoint: Optional[list[str]] = None
    env: dict[str, str] = field(default_factory=dict)
    user: Optional[str] = None
    working_dir: Optional[str] = None
    labels: dict[str, str] = field(default_factory=dict)
    ports: dict[int, int] = field(default_factory=dict)
    mounts: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)
    network: Optional[str] = None
    network_aliases: list[str] = field(default_factory=list)
    privileged: bool = False
    cap_add: list[str] = field(default_factory=list)
    tty: bool = False
    stdin_open: bool = False
    healthcheck: Optional[dict[str, Any]] = None


class AttachSession(ABC):
    """A host terminal attached to a container's TTY."""

    @abstractmethod
    def wait(self) -> None:
        """Block until the container side of the session ends."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Restore the host terminal and release the connection."""
        ...


class Runtime(ABC):
    """
    Container runtime capability.

    Implementations raise RuntimeOperationError for engine failures.
    """

    @abstractmethod
    def pull_image(self, image: str) -> None:
        ...

    @abstractmethod
    def build_image(
        self,
        context: Path,
        dockerfile: str,
        tag: str,
        args: Optional[dict[str, str]] = None,
        target: Optional[str] = None,
    ) -> str:
        """Build an image and return its tag."""
        ...

    @abstractmethod
    def image_user(self, image: str) -> Optional[str]:
        """The USER an image runs as, or None if unset."""
        ...

    @abstractmethod
    def create_container(self, spec: ContainerSpec) -> str:
        """Create a container and return its ID."""
        ...

    @abstractmethod
    def start_container(self, container_id: str) -> None:
        ...

    @abstractmethod
    def stop_container(self, container_id: str) -> None:
        ...

    @abstractmethod
    def remove_container(self, container_id: str) -> None:
        ...

    @abstractmethod
    def inspect_container(self, container_id: str) -> ContainerState:
        ...

    @abstractmethod
    def wait_container(self, container_id: str) -> int:
        """
        Block until the container next exits; return its exit code.

        A container that is already stopped returns its last exit code
        immediately, so a caller that saw it running never blocks on an
        exit that already happened.
        """
        ...

    @abstractmethod
    def exec(
        self,
        container_id: str,
        argv: list[str],
        user: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        workdir: Optional[str] = None,
    ) -> ExecResult:
        ...

    @abstractmethod
    def copy_to_container(self, container_id: str, source: Path, destination: str) -> None:
        """Copy the contents of a host directory into the container."""
        ...

    @abstractmethod
    def create_network(self, name: str) -> None:
        ...

    @abstractmethod
    def remove_network(self, name: str) -> None:
        ...

    @abstractmethod
    def attach_terminal(self, container_id: str) -> AttachSession:
        """Connect the host terminal to the container's TTY."""
        ...

    def close(self) -> None:
        """Release client resources."""
        pass
