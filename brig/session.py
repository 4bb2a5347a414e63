"""
ProvisioningSession - one `brig up` from devcontainer.json to teardown.

Execution flow:
1. Prepare Features (local, https, OCI cache) and compile the Feature graph
2. Start the lifecycle handler thread
3. Provision:
   - single image: build or pull, then start the devcontainer
   - Compose: deploy the project; the devcontainer service is started
     through the same devcontainer start path
   Starting the devcontainer sends initialize, creates and starts the
   container, then sends featureInstall, onCreate, updateContent,
   postCreate and postStart
4. finish() the coordinator: on success wait for the terminal session, on
   failure close immediately
5. Tear down (always) and save the digest index
"""

import logging
import re
import time
from dataclasses import replace
from typing import Callable, Optional

from brig.cache import ContentAddressedArtifactCache
from brig.compiler import compile_feature_graph
from brig.composer import IMAGE_TAG_PREFIX, ComposeDeployer
from brig.config import BrigConfig
from brig.errors import BrigError
from brig.features import FeatureInstaller, FeatureResolver, HttpsFeatureSource
from brig.graph import DependencyGraph
from brig.hooks import HookRunner
from brig.lifecycle import AttachTask, LifecycleCoordinator, LifecycleHandler
from brig.runtime import ContainerSpec, Runtime
from brig.schemas import (
    POST_START_SEQUENCE,
    DevcontainerConfig,
    FeatureConfig,
    LifecyclePhase,
    load_compose_project,
)
from brig.utils import elevate_port
from brig.waiter import ServiceDependencyWaiter

logger = logging.getLogger(__name__)

_NAME_CHARS = re.compile(r"[^a-z0-9_.-]+")


def container_safe_name(name: str) -> str:
    """Lower-case name usable as a container/image name component."""
    cleaned = _NAME_CHARS.sub("-", name.lower()).strip("-.")
    return cleaned or "devcontainer"


class ProvisioningSession:
    """
    Drives a devcontainer from configuration to teardown.

    Usage:
        session = ProvisioningSession(config, runtime, settings, cache=cache)
        session.run()
    """

    def __init__(
        self,
        config: DevcontainerConfig,
        runtime: Runtime,
        settings: Optional[BrigConfig] = None,
        cache: Optional[ContentAddressedArtifactCache] = None,
        https_source: Optional[HttpsFeatureSource] = None,
        attach: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the session.

        Args:
            config: Loaded devcontainer.json
            runtime: Container runtime
            settings: brig settings (default: BrigConfig())
            cache: OCI artifact cache for remote Features
            https_source: Tarball source for https:// Features
            attach: Attach the host terminal at waitFor
            sleep: Sleep function for dependency polling
        """
        self.config = config
        self.runtime = runtime
        self.settings = settings or BrigConfig()
        self.cache = cache
        self.coordinator = LifecycleCoordinator()
        self.hooks = HookRunner(runtime)
        self.resolver = FeatureResolver(cache, https_source)
        self.installer = FeatureInstaller(runtime)
        self.attach_task = AttachTask(runtime, self.coordinator) if attach else None
        self._sleep = sleep

        self.features: dict[str, FeatureConfig] = {}
        self.feature_graph: Optional[DependencyGraph] = None
        self.deployer: Optional[ComposeDeployer] = None
        self.container_id: Optional[str] = None
        self.container_user: Optional[str] = None
        self.remote_user: Optional[str] = None

    @property
    def name(self) -> str:
        return container_safe_name(self.config.name)

    def prepare_features(self) -> DependencyGraph:
        """Prepare every Feature and compile the install graph."""
        self.features = self.resolver.prepare(self.config.features, self.config.config_dir)
        self.feature_graph = compile_feature_graph(
            self.features.values(),
            self.config.override_feature_install_order,
        )
        return self.feature_graph

    def run(self) -> None:
        """
        Provision, hand over to the terminal, then tear down.

        Raises:
            BrigError: The first failure; teardown still runs
        """
        self.prepare_features()

        handler = LifecycleHandler(
            self.coordinator,
            self.run_phase,
            wait_for=self.config.wait_for,
            attach_task=self.attach_task,
        )
        handler_thread = handler.start()

        success = False
        try:
            if self.config.uses_compose:
                self._run_compose()
            else:
                self._run_single_image()
            success = True
        finally:
            try:
                self.coordinator.finish(success)
            finally:
                handler_thread.join()
                self.teardown()
                if self.cache is not None:
                    self.cache.save()

    # -------------------------------------------------------------------------
    # Lifecycle work (handler thread)
    # -------------------------------------------------------------------------

    def run_phase(self, phase: LifecyclePhase) -> None:
        """Work for one lifecycle phase. Raises on failure."""
        if phase is LifecyclePhase.FEATURE_INSTALL:
            if self.feature_graph is not None:
                self.installer.install(self.feature_graph.copy(), self.container_id)
            return

        command = self.config.command_for(phase)
        if command is None:
            logger.debug(f"No {phase.command_key} configured")
            return

        if phase.runs_on_host:
            self.hooks.run_host(command, cwd=self.config.project_dir)
            return

        if self.container_id is None:
            raise BrigError(f"{phase.command_key} needs a running devcontainer")
        self.hooks.run_container(
            self.container_id,
            command,
            user=self.remote_user,
            env=self.config.remote_env,
            workdir=self.config.workspace_path,
        )

    # -------------------------------------------------------------------------
    # Provisioning (orchestrator thread)
    # -------------------------------------------------------------------------

    def _resolve_users(self, image: str, service_user: Optional[str] = None) -> None:
        self.container_user = (
            self.config.container_user
            or service_user
            or self.runtime.image_user(image)
            or "root"
        )
        self.remote_user = self.config.remote_user or self.container_user
        logger.debug(f"containerUser={self.container_user} remoteUser={self.remote_user}")

    def _container_env(self) -> dict[str, str]:
        env: dict[str, str] = {}
        for feature in self.features.values():
            env.update(feature.container_env)
        env.update(self.config.container_env)
        return env

    def start_devcontainer(self, spec: ContainerSpec, record: Callable[[str], None]) -> None:
        """
        Create and start the devcontainer, driving the lifecycle around it.

        Raises:
            LifecycleHandlerFailed: If any phase fails
            RuntimeOperationError: If the runtime rejects the container
        """
        self._resolve_users(spec.image, spec.user)
        spec = replace(
            spec,
            env={**spec.env, **self._container_env()},
            user=self.container_user,
            working_dir=self.config.workspace_path,
            privileged=self.config.privileged or spec.privileged,
            cap_add=list(dict.fromkeys([*spec.cap_add, *self.config.cap_add])),
            tty=True,
            stdin_open=True,
        )

        self.coordinator.send(LifecyclePhase.INITIALIZE)

        self.container_id = self.runtime.create_container(spec)
        record(self.container_id)
        self.runtime.start_container(self.container_id)
        logger.info(f"Devcontainer started: {spec.name}")
        if self.attach_task is not None:
            self.attach_task.container_ready(self.container_id)

        for phase in POST_START_SEQUENCE:
            self.coordinator.send(phase)

    def _run_single_image(self) -> None:
        build = self.config.build
        if build is not None:
            image = self.runtime.build_image(
                build.context,
                build.dockerfile,
                f"{IMAGE_TAG_PREFIX}{self.name}",
                args=build.args,
                target=build.target,
            )
        else:
            self.runtime.pull_image(self.config.image)
            image = self.config.image

        spec = ContainerSpec(
            name=f"devc--{self.name}",
            image=image,
            mounts={str(self.config.project_dir): self.config.workspace_path},
            ports={
                port: elevate_port(port, self.settings.port_offset)
                for port in self.config.forward_ports
            },
        )
        self.start_devcontainer(spec, lambda container_id: None)

    def _run_compose(self) -> None:
        project = load_compose_project(
            list(self.config.compose_files),
            container_safe_name(self.config.project_dir.name),
        )
        waiter = ServiceDependencyWaiter(
            self.runtime,
            project.container_name,
            poll_interval=self.settings.poll_interval,
            sleep=self._sleep,
        )
        self.deployer = ComposeDeployer(
            self.runtime,
            project,
            self.config.service,
            waiter,
            self.start_devcontainer,
            project_dir=self.config.compose_files[0].parent,
            port_offset=self.settings.port_offset,
            services=list(self.config.run_services) or None,
        )
        self.deployer.deploy()

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def teardown(self) -> None:
        """Stop and remove whatever was provisioned. Errors are logged."""
        if self.deployer is not None:
            try:
                self.deployer.teardown()
            except BrigError as e:
                logger.error(f"Error tearing down the Compose project: {e}")
            return

        if self.container_id is None:
            return
        logger.info("Stopping and removing the devcontainer")
        try:
            self.runtime.stop_container(self.container_id)
            self.runtime.remove_container(self.container_id)
        except BrigError as e:
            logger.error(f"Error removing the devcontainer: {e}")
        self.container_id = None
