"""
ServiceDependencyWaiter - block a Compose service until its depends_on hold.

Conditions:
- service_started: running for SETTLE_POLLS consecutive polls; any
  not-running observation fails
- service_healthy: needs a healthcheck; healthy for HEALTHY_POLLS
  consecutive polls; more than UNHEALTHY_BUDGET unhealthy polls or more
  than STARTING_BUDGET starting polls times out
- service_completed_successfully: blocks on the runtime's wait-for-exit
  while running; exit code 0 succeeds

Every (service, condition) pair is checked on its own thread. All checks
run to completion; the first error in declaration order is raised.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, Optional

from brig.errors import (
    DependencyFailed,
    DependencyNotRunning,
    DependencyTimeout,
    MissingHealthcheck,
    UnknownCondition,
)
from brig.runtime import Runtime

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0
SETTLE_POLLS = 6
HEALTHY_POLLS = 6
UNHEALTHY_BUDGET = 10
STARTING_BUDGET = 60


class DependencyCondition(str, Enum):
    """Compose depends_on conditions."""
    STARTED = "service_started"
    HEALTHY = "service_healthy"
    COMPLETED_SUCCESSFULLY = "service_completed_successfully"


class ServiceDependencyWaiter:
    """
    Polls runtime state until dependency conditions hold.

    Usage:
        waiter = ServiceDependencyWaiter(runtime, project.container_name)
        waiter.wait({"db": "service_healthy", "migrate": "service_completed_successfully"})
    """

    def __init__(
        self,
        runtime: Runtime,
        container_for: Callable[[str], str],
        poll_interval: float = POLL_INTERVAL,
        settle_polls: int = SETTLE_POLLS,
        healthy_polls: int = HEALTHY_POLLS,
        unhealthy_budget: int = UNHEALTHY_BUDGET,
        starting_budget: int = STARTING_BUDGET,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the waiter.

        Args:
            runtime: Runtime used to inspect and wait on containers
            container_for: Maps a service name to its container name/ID
            poll_interval: Seconds between polls
            settle_polls: Consecutive running polls for service_started
            healthy_polls: Consecutive healthy polls for service_healthy
            unhealthy_budget: Unhealthy polls tolerated by service_healthy
            starting_budget: "starting" polls tolerated by service_healthy
            sleep: Sleep function (injectable for tests)
        """
        self.runtime = runtime
        self.container_for = container_for
        self.poll_interval = poll_interval
        self.settle_polls = settle_polls
        self.healthy_polls = healthy_polls
        self.unhealthy_budget = unhealthy_budget
        self.starting_budget = starting_budget
        self._sleep = sleep

    def wait(self, dependencies: dict[str, str]) -> None:
        """
        Block until every (service, condition) pair holds.

        Args:
            dependencies: Service name -> condition, in declaration order

        Raises:
            DependencyWaitError: The first failing check, after all finished
        """
        if not dependencies:
            return

        with ThreadPoolExecutor(
            max_workers=len(dependencies),
            thread_name_prefix="brig-waiter",
        ) as pool:
            futures = [
                pool.submit(self.check, service, condition)
                for service, condition in dependencies.items()
            ]
        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            raise errors[0]

    def check(self, service: str, condition: str) -> None:
        """Check a single pair. Raises on failure."""
        try:
            condition = DependencyCondition(condition)
        except ValueError:
            raise UnknownCondition(service, condition) from None

        logger.debug(f"Waiting for {service}: {condition.value}")
        if condition is DependencyCondition.STARTED:
            self._wait_started(service)
        elif condition is DependencyCondition.HEALTHY:
            self._wait_healthy(service)
        else:
            self._wait_completed(service)
        logger.info(f"Dependency satisfied: {service} ({condition.value})")

    def _poll(self, service: str):
        self._sleep(self.poll_interval)
        return self.runtime.inspect_container(self.container_for(service))

    def _wait_started(self, service: str) -> None:
        running_polls = 0
        while running_polls < self.settle_polls:
            state = self._poll(service)
            if not state.running:
                logger.error(f"Service {service} is not running (exit code {state.exit_code})")
                raise DependencyNotRunning(service, state.exit_code)
            running_polls += 1

    def _wait_healthy(self, service: str) -> None:
        healthy_streak = 0
        unhealthy_polls = 0
        starting_polls = 0
        while True:
            state = self._poll(service)
            if not state.running:
                logger.error(f"Service {service} is not running (exit code {state.exit_code})")
                raise DependencyNotRunning(service, state.exit_code)
            if state.health is None or state.health == "none":
                raise MissingHealthcheck(service)

            if state.health == "healthy":
                healthy_streak += 1
                if healthy_streak >= self.healthy_polls:
                    return
                continue

            healthy_streak = 0
            if state.health == "unhealthy":
                unhealthy_polls += 1
                logger.debug(f"Service {service} unhealthy ({unhealthy_polls}/{self.unhealthy_budget})")
                if unhealthy_polls > self.unhealthy_budget:
                    raise DependencyTimeout(service, unhealthy_polls)
                continue

            starting_polls += 1
            if starting_polls > self.starting_budget:
                logger.error(f"Service {service} still starting after {starting_polls} polls")
                raise DependencyTimeout(service, starting_polls)

    def _wait_completed(self, service: str) -> None:
        container = self.container_for(service)
        exit_code: Optional[int] = None
        while True:
            state = self._poll(service)
            if not state.running:
                exit_code = state.exit_code
                break
            logger.debug(f"Blocking until {service} exits")
            self.runtime.wait_container(container)

        if exit_code != 0:
            raise DependencyFailed(service, exit_code if exit_code is not None else -1)
