"""
ComposeDeployer - bring a Compose project up and down.

Deploy:
1. Check the devcontainer service is defined in the project
2. Compile the service graph (depends_on edges)
3. Create the project network
4. Forward drain of a copy of the graph; per service:
   wait for its depends_on conditions, build or pull its image, then
   create and start it (the devcontainer service is handed to the
   session so the lifecycle phases run around it)

Teardown:
1. Reverse drain of a fresh copy of the graph: stop and remove each
   service container that was created
2. Remove the project network
"""

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional

from brig.compiler import compile_service_graph
from brig.errors import ConfigError
from brig.executor import DrainResult, LevelParallelExecutor
from brig.graph import DependencyGraph
from brig.runtime import ContainerSpec, Runtime
from brig.schemas import ComposeProject, ComposeService
from brig.utils import elevate_port
from brig.waiter import ServiceDependencyWaiter

logger = logging.getLogger(__name__)

IMAGE_TAG_PREFIX = "localhost/devc--"
PROJECT_LABEL = "dev.brig.project"
SERVICE_LABEL = "dev.brig.service"


def parse_port(entry: str, offset: int) -> tuple[int, int]:
    """
    Compose port entry -> (container port, host port).

    "8080:80" -> (80, 8080), "127.0.0.1:80:80" -> (80, 80 + offset),
    "3000" -> (3000, 3000). Host ports below 1024 are elevated by offset.
    """
    spec = str(entry).split("/", 1)[0]
    parts = spec.split(":")
    container_port = int(parts[-1])
    host_port = int(parts[-2]) if len(parts) >= 2 and parts[-2] else container_port
    return container_port, elevate_port(host_port, offset)


class ComposeDeployer:
    """
    Deploys and tears down a ComposeProject.

    Usage:
        deployer = ComposeDeployer(runtime, project, "app", waiter, start_devcontainer)
        try:
            deployer.deploy()
        finally:
            deployer.teardown()
    """

    def __init__(
        self,
        runtime: Runtime,
        project: ComposeProject,
        devcontainer_service: str,
        waiter: ServiceDependencyWaiter,
        start_devcontainer: Callable[[ContainerSpec, Callable[[str], None]], None],
        project_dir: Optional[Path] = None,
        port_offset: int = 8000,
        services: Optional[list[str]] = None,
        executor: Optional[LevelParallelExecutor] = None,
    ):
        """
        Initialize the deployer.

        Args:
            runtime: Container runtime
            project: Loaded Compose project
            devcontainer_service: Service the devcontainer runs in
            waiter: Waiter for depends_on conditions
            start_devcontainer: Creates and starts the devcontainer service
                                container, driving the lifecycle; reports the
                                container ID through the callback it is given
            project_dir: Directory relative volume paths resolve against
            port_offset: Offset for privileged host ports
            services: Services to start (default: all)
            executor: Drain executor
        """
        self.runtime = runtime
        self.project = project
        self.devcontainer_service = devcontainer_service
        self.waiter = waiter
        self.start_devcontainer = start_devcontainer
        self.project_dir = Path(project_dir) if project_dir else None
        self.port_offset = port_offset
        self.services = services
        self.executor = executor or LevelParallelExecutor(name="compose")
        self.graph: Optional[DependencyGraph] = None
        self.containers: dict[str, str] = {}
        self._network_created = False
        self._lock = threading.Lock()

    def deploy(self) -> DrainResult:
        """
        Start every service in dependency order.

        Raises:
            ConfigError: If the devcontainer service is not in the project
            UnitExecutionFailed: If a service failed to come up
        """
        if self.devcontainer_service not in self.project.services:
            raise ConfigError(
                f"Service '{self.devcontainer_service}' from devcontainer.json "
                f"is not defined in the Compose project"
            )

        wanted = None
        if self.services:
            wanted = list(dict.fromkeys([*self.services, self.devcontainer_service]))
        self.graph = compile_service_graph(self.project, wanted)

        self.runtime.create_network(self.project.network_name)
        self._network_created = True

        logger.info(f"Deploying Compose project {self.project.name} ({len(self.graph)} services)")
        return self.executor.drain(self.graph.copy(), self._provision)

    def teardown(self) -> Optional[DrainResult]:
        """
        Stop and remove service containers in reverse dependency order,
        then remove the project network.
        """
        if self.graph is None:
            return None

        logger.info(f"Tearing down Compose project {self.project.name}")
        result = self.executor.drain(self.graph.copy(), self._stop, reverse=True)
        if self._network_created:
            self.runtime.remove_network(self.project.network_name)
            self._network_created = False
        return result

    def _provision(self, service: ComposeService) -> None:
        self.waiter.wait(service.depends_on)

        image = self._prepare_image(service)
        spec = self.service_spec(service, image)
        if service.name == self.devcontainer_service:
            self.start_devcontainer(spec, lambda container_id: self._record(service.name, container_id))
            return

        container_id = self.runtime.create_container(spec)
        self._record(service.name, container_id)
        self.runtime.start_container(container_id)
        logger.info(f"Started service {service.name}")

    def _record(self, service: str, container_id: str) -> None:
        with self._lock:
            self.containers[service] = container_id

    def _prepare_image(self, service: ComposeService) -> str:
        if service.build is not None:
            tag = service.image or f"{IMAGE_TAG_PREFIX}{self.project.container_name(service.name)}"
            return self.runtime.build_image(
                service.build.context,
                service.build.dockerfile,
                tag,
                args=service.build.args,
                target=service.build.target,
            )
        if service.image:
            self.runtime.pull_image(service.image)
            return service.image
        raise ConfigError(f"Service {service.name} has neither image nor build")

    def service_spec(self, service: ComposeService, image: str) -> ContainerSpec:
        """ContainerSpec for a service container."""
        return ContainerSpec(
            name=self.project.container_name(service.name),
            image=image,
            command=service.command,
            entrypoint=service.entrypoint,
            env={k: os.environ.get(k, "") if v is None else v for k, v in service.environment.items()},
            user=service.user,
            working_dir=service.working_dir,
            labels={
                **service.labels,
                PROJECT_LABEL: self.project.name,
                SERVICE_LABEL: service.name,
            },
            ports=dict(parse_port(p, self.port_offset) for p in service.ports),
            volumes=[self._resolve_volume(v) for v in service.volumes],
            network=self.project.network_name,
            network_aliases=[service.name],
            tty=service.tty,
            stdin_open=service.stdin_open,
            healthcheck=service.healthcheck,
        )

    def _resolve_volume(self, volume: str) -> str:
        source, sep, rest = volume.partition(":")
        if sep and self.project_dir is not None and source.startswith("."):
            return f"{(self.project_dir / source).resolve()}:{rest}"
        return volume

    def _stop(self, service: ComposeService) -> None:
        with self._lock:
            container_id = self.containers.get(service.name)
        if container_id is None:
            logger.debug(f"Service {service.name} was never created; skipping")
            return
        logger.info(f"Stopping and removing {self.project.container_name(service.name)}")
        self.runtime.stop_container(container_id)
        self.runtime.remove_container(container_id)
        with self._lock:
            self.containers.pop(service.name, None)
