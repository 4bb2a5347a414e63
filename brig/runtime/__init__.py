"""
brig.runtime - Container runtime capability.

- Runtime: abstract engine interface the orchestration core uses
- DockerRuntime: Docker SDK implementation (Docker or Podman socket)
"""

from .base import (
    AttachSession,
    ContainerSpec,
    ContainerState,
    ExecResult,
    Runtime,
)
from .docker import DockerRuntime, SocketNotFound, resolve_socket

__all__ = [
    "AttachSession",
    "ContainerSpec",
    "ContainerState",
    "ExecResult",
    "Runtime",
    "DockerRuntime",
    "SocketNotFound",
    "resolve_socket",
]
