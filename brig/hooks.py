"""
HookRunner - runs lifecycle hook commands.

initializeCommand runs on the host through $SHELL -c (or /bin/sh -c).
Every other hook runs inside the devcontainer as the remote user with the
remote environment. Mapping-form commands run all entries concurrently and
raise the first failure in declaration order.
"""

import logging
import os
import subprocess
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from brig.errors import HookCommandFailed
from brig.runtime import Runtime
from brig.schemas import LifecycleCommand

logger = logging.getLogger(__name__)

CONTAINER_SHELL = "/bin/sh"


def host_shell() -> str:
    return os.environ.get("SHELL") or "/bin/sh"


class HookRunner:
    """Executes LifecycleCommands on the host or in a container."""

    def __init__(self, runtime: Optional[Runtime] = None):
        self.runtime = runtime

    def run_host(self, command: LifecycleCommand, cwd: Optional[Path] = None) -> None:
        """
        Run a command on the host.

        Raises:
            HookCommandFailed: If the command (or any parallel entry) fails
        """
        if command.parallel:
            self._run_parallel(command, lambda sub: self.run_host(sub, cwd))
            return

        argv = [host_shell(), "-c", command.shell] if command.shell is not None else list(command.args)
        logger.info(f"Running on host: {command.describe()}")
        try:
            result = subprocess.run(argv, cwd=cwd, capture_output=True, text=True)
        except OSError as e:
            raise HookCommandFailed(command.describe(), 127, str(e)) from e

        output = (result.stdout or "") + (result.stderr or "")
        self._log_output(output)
        if result.returncode != 0:
            raise HookCommandFailed(command.describe(), result.returncode, output)

    def run_container(
        self,
        container_id: str,
        command: LifecycleCommand,
        user: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        workdir: Optional[str] = None,
    ) -> None:
        """
        Run a command inside a container.

        Raises:
            HookCommandFailed: If the command (or any parallel entry) fails
        """
        if command.parallel:
            self._run_parallel(
                command,
                lambda sub: self.run_container(container_id, sub, user, env, workdir),
            )
            return

        argv = [CONTAINER_SHELL, "-c", command.shell] if command.shell is not None else list(command.args)
        logger.info(f"Running in container as {user or 'default user'}: {command.describe()}")
        result = self.runtime.exec(container_id, argv, user=user, env=env, workdir=workdir)
        self._log_output(result.output)
        if not result.ok:
            raise HookCommandFailed(command.describe(), result.exit_code, result.output)

    def _run_parallel(self, command: LifecycleCommand, run) -> None:
        with ThreadPoolExecutor(
            max_workers=len(command.parallel),
            thread_name_prefix="brig-hook",
        ) as pool:
            futures = {name: pool.submit(run, sub) for name, sub in command.parallel.items()}

        for name, future in futures.items():
            exc = future.exception()
            if exc is not None:
                logger.error(f"Parallel command '{name}' failed: {exc}")
                raise exc

    def _log_output(self, output: str) -> None:
        for line in output.splitlines():
            logger.info(f"  | {line}")
