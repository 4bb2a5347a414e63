"""
DockerRuntime - Runtime implementation over the Docker SDK.

Talks to any Docker-API compatible engine (Docker, rootless Podman) through
the socket resolved by resolve_socket():
1. --socket / config.yaml socket
2. $DOCKER_HOST
3. the rootless Podman socket, unix:///run/user/<uid>/podman/podman.sock
"""

import io
import logging
import os
import re
import select
import shutil
import sys
import tarfile
import threading
from pathlib import Path
from typing import Any, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag

from brig.errors import RuntimeOperationError
from brig.runtime.base import AttachSession, ContainerSpec, ContainerState, ExecResult, Runtime

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 10
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|ms|s|m|h)")
_DURATION_NS = {"ns": 1, "us": 10**3, "ms": 10**6, "s": 10**9, "m": 60 * 10**9, "h": 3600 * 10**9}


class SocketNotFound(RuntimeOperationError):
    """No usable container engine socket."""
    pass


def resolve_socket(explicit: Optional[str] = None) -> str:
    """
    Return the engine socket address.

    Raises:
        SocketNotFound: If a unix socket was chosen but does not exist
    """
    address = explicit or os.environ.get("DOCKER_HOST")
    if not address:
        address = f"unix:///run/user/{os.getuid()}/podman/podman.sock"

    if address.startswith("unix://"):
        path = address[len("unix://"):]
        if not Path(path).exists():
            raise SocketNotFound(f"Container engine socket not found: {path}")
    elif "://" not in address:
        # Bare paths are accepted as unix sockets
        if not Path(address).exists():
            raise SocketNotFound(f"Container engine socket not found: {address}")
        address = f"unix://{address}"

    logger.debug(f"Using container engine socket: {address}")
    return address


def _duration_ns(value: Any) -> Optional[int]:
    """Compose duration ("1m30s", "500ms") -> nanoseconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value * 10**9)
    total = sum(float(num) * _DURATION_NS[unit] for num, unit in _DURATION_PART.findall(str(value)))
    return int(total)


def _healthcheck(raw: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not raw:
        return None
    if raw.get("disable"):
        return {"test": ["NONE"]}
    test = raw.get("test")
    if isinstance(test, str):
        test = ["CMD-SHELL", test]
    check = {
        "test": test,
        "interval": _duration_ns(raw.get("interval")),
        "timeout": _duration_ns(raw.get("timeout")),
        "retries": raw.get("retries"),
        "start_period": _duration_ns(raw.get("start_period")),
    }
    return {k: v for k, v in check.items() if v is not None}


def _tar_directory(source: Path) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for entry in sorted(Path(source).iterdir()):
            archive.add(entry, arcname=entry.name)
    return buffer.getvalue()


class DockerRuntime(Runtime):
    """
    Runtime backed by docker.DockerClient.

    Usage:
        runtime = DockerRuntime(resolve_socket(config.socket), platform="linux/amd64")
        runtime.pull_image("mcr.microsoft.com/devcontainers/base:ubuntu")
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[docker.DockerClient] = None,
        platform: Optional[str] = None,
    ):
        self.base_url = base_url
        self.platform = platform
        try:
            self._client = client or docker.DockerClient(base_url=base_url)
        except DockerException as e:
            raise SocketNotFound(f"Could not connect to {base_url}: {e}") from e

    def close(self) -> None:
        self._client.close()

    def _container(self, container_id: str):
        try:
            return self._client.containers.get(container_id)
        except NotFound as e:
            raise RuntimeOperationError(f"No such container: {container_id}") from e

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    def pull_image(self, image: str) -> None:
        repository, tag = parse_repository_tag(image)
        logger.info(f"Pulling image: {image}")
        try:
            self._client.images.pull(repository, tag=tag or "latest", platform=self.platform)
        except APIError as e:
            raise RuntimeOperationError(f"Failed to pull {image}: {e}") from e

    def build_image(
        self,
        context: Path,
        dockerfile: str,
        tag: str,
        args: Optional[dict[str, str]] = None,
        target: Optional[str] = None,
    ) -> str:
        logger.info(f"Building image {tag} from {context}/{dockerfile}")
        try:
            _, build_log = self._client.images.build(
                path=str(context),
                dockerfile=dockerfile,
                tag=tag,
                buildargs=args or {},
                target=target,
                rm=True,
            )
        except (APIError, DockerException) as e:
            raise RuntimeOperationError(f"Failed to build {tag}: {e}") from e
        for chunk in build_log:
            line = chunk.get("stream", "").rstrip()
            if line:
                logger.debug(f"  [build] {line}")
        return tag

    def image_user(self, image: str) -> Optional[str]:
        try:
            attrs = self._client.images.get(image).attrs
        except ImageNotFound as e:
            raise RuntimeOperationError(f"No such image: {image}") from e
        return (attrs.get("Config") or {}).get("User") or None

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    def create_container(self, spec: ContainerSpec) -> str:
        volumes = [f"{host}:{target}" for host, target in spec.mounts.items()]
        volumes.extend(spec.volumes)
        try:
            container = self._client.containers.create(
                spec.image,
                name=spec.name,
                command=spec.command,
                entrypoint=spec.entrypoint,
                environment=spec.env,
                user=spec.user or "",
                working_dir=spec.working_dir,
                labels=spec.labels,
                ports={f"{c}/tcp": h for c, h in spec.ports.items()},
                volumes=volumes,
                privileged=spec.privileged,
                cap_add=spec.cap_add or None,
                tty=spec.tty,
                stdin_open=spec.stdin_open,
                healthcheck=_healthcheck(spec.healthcheck),
            )
            if spec.network:
                network = self._client.networks.get(spec.network)
                network.connect(container, aliases=spec.network_aliases or None)
        except APIError as e:
            raise RuntimeOperationError(f"Failed to create container {spec.name}: {e}") from e
        logger.debug(f"Created container {spec.name} ({container.id[:12]})")
        return container.id

    def start_container(self, container_id: str) -> None:
        try:
            self._container(container_id).start()
        except APIError as e:
            raise RuntimeOperationError(f"Failed to start {container_id}: {e}") from e

    def stop_container(self, container_id: str) -> None:
        try:
            self._container(container_id).stop(timeout=STOP_TIMEOUT)
        except APIError as e:
            raise RuntimeOperationError(f"Failed to stop {container_id}: {e}") from e

    def remove_container(self, container_id: str) -> None:
        try:
            self._container(container_id).remove()
        except APIError as e:
            raise RuntimeOperationError(f"Failed to remove {container_id}: {e}") from e

    def inspect_container(self, container_id: str) -> ContainerState:
        container = self._container(container_id)
        state = container.attrs.get("State") or {}
        health = state.get("Health")
        return ContainerState(
            running=bool(state.get("Running")),
            exit_code=state.get("ExitCode"),
            health=health.get("Status") if health else None,
            status=state.get("Status", ""),
        )

    def wait_container(self, container_id: str) -> int:
        # not-running returns at once if the container exited after the last inspect
        try:
            result = self._container(container_id).wait(condition="not-running")
        except APIError as e:
            raise RuntimeOperationError(f"Failed to wait for {container_id}: {e}") from e
        return int(result.get("StatusCode", -1))

    def exec(
        self,
        container_id: str,
        argv: list[str],
        user: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        workdir: Optional[str] = None,
    ) -> ExecResult:
        try:
            exit_code, output = self._container(container_id).exec_run(
                argv, user=user or "", environment=env, workdir=workdir
            )
        except APIError as e:
            raise RuntimeOperationError(f"Failed to exec in {container_id}: {e}") from e
        return ExecResult(exit_code=exit_code, output=(output or b"").decode(errors="replace"))

    def copy_to_container(self, container_id: str, source: Path, destination: str) -> None:
        container = self._container(container_id)
        result = container.exec_run(["mkdir", "-p", destination], user="root")
        if result.exit_code != 0:
            raise RuntimeOperationError(f"Could not create {destination} in {container_id}")
        if not container.put_archive(destination, _tar_directory(source)):
            raise RuntimeOperationError(f"Could not copy {source} to {container_id}:{destination}")

    # -------------------------------------------------------------------------
    # Networks
    # -------------------------------------------------------------------------

    def create_network(self, name: str) -> None:
        try:
            self._client.networks.get(name)
            logger.debug(f"Network already exists: {name}")
        except NotFound:
            self._client.networks.create(name, driver="bridge")
            logger.debug(f"Created network: {name}")

    def remove_network(self, name: str) -> None:
        try:
            self._client.networks.get(name).remove()
        except NotFound:
            logger.debug(f"Network already gone: {name}")
        except APIError as e:
            raise RuntimeOperationError(f"Failed to remove network {name}: {e}") from e

    # -------------------------------------------------------------------------
    # Terminal
    # -------------------------------------------------------------------------

    def attach_terminal(self, container_id: str) -> AttachSession:
        if not sys.stdin.isatty():
            raise RuntimeOperationError("stdin is not a terminal")
        if not sys.stdout.isatty():
            raise RuntimeOperationError("stdout is not a terminal")
        sock = self._client.api.attach_socket(
            container_id, params={"stdin": 1, "stdout": 1, "stderr": 1, "stream": 1}
        )
        session = DockerAttachSession(self._client.api, container_id, sock)
        session.start()
        return session


class DockerAttachSession(AttachSession):
    """
    Raw-mode host terminal wired to a container TTY.

    Output is pumped until the container closes the stream; input is pumped
    until close(). The container TTY is resized whenever the host terminal
    size changes.
    """

    RESIZE_POLL = 0.5

    def __init__(self, api, container_id: str, sock):
        self._api = api
        self._container_id = container_id
        self._sock = getattr(sock, "_sock", sock)
        self._closed = threading.Event()
        self._saved_attrs = None
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        import termios
        import tty

        stdin_fd = sys.stdin.fileno()
        self._saved_attrs = termios.tcgetattr(stdin_fd)
        self._resize()
        tty.setraw(stdin_fd)

        self._output = threading.Thread(target=self._pump_output, name="brig-attach-out", daemon=True)
        self._threads = [
            self._output,
            threading.Thread(target=self._pump_input, name="brig-attach-in", daemon=True),
            threading.Thread(target=self._watch_size, name="brig-attach-resize", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def _resize(self) -> None:
        size = shutil.get_terminal_size()
        try:
            self._api.resize(self._container_id, height=size.lines, width=size.columns)
        except APIError as e:
            logger.debug(f"Could not resize container TTY: {e}")

    def _watch_size(self) -> None:
        last = shutil.get_terminal_size()
        while not self._closed.wait(self.RESIZE_POLL):
            current = shutil.get_terminal_size()
            if current != last:
                last = current
                self._resize()

    def _pump_output(self) -> None:
        stdout_fd = sys.stdout.fileno()
        while not self._closed.is_set():
            try:
                data = self._sock.recv(4096)
            except OSError:
                break
            if not data:
                break
            os.write(stdout_fd, data)

    def _pump_input(self) -> None:
        stdin_fd = sys.stdin.fileno()
        while not self._closed.is_set():
            ready, _, _ = select.select([stdin_fd], [], [], 0.2)
            if not ready:
                continue
            data = os.read(stdin_fd, 1024)
            if not data:
                break
            try:
                self._sock.sendall(data)
            except OSError:
                break

    def wait(self) -> None:
        self._output.join()

    def close(self) -> None:
        import termios

        if self._closed.is_set():
            return
        self._closed.set()
        if self._saved_attrs is not None:
            termios.tcsetattr(sys.stdin.fileno(), termios.TCSADRAIN, self._saved_attrs)
        try:
            self._sock.close()
        except OSError:
            pass
        logger.debug(f"Detached from container {self._container_id[:12]}")
