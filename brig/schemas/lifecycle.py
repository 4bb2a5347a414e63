"""
Lifecycle schemas - phases and hook commands.

LifecyclePhase is the message type exchanged on the lifecycle coordinator.
LifecycleCommand is the hook bound to a phase in devcontainer.json:
- a string: run through a shell
- a list of strings: run directly, no shell
- a mapping of name -> string|list: every entry runs in parallel
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


class LifecyclePhase(str, Enum):
    """Named points in the provisioning timeline, in declaration order."""
    FEATURE_INSTALL = "featureInstall"
    INITIALIZE = "initialize"
    ON_CREATE = "onCreate"
    UPDATE_CONTENT = "updateContent"
    POST_CREATE = "postCreate"
    POST_START = "postStart"
    POST_ATTACH = "postAttach"

    @property
    def command_key(self) -> Optional[str]:
        """devcontainer.json key holding this phase's hook, if any."""
        if self is LifecyclePhase.FEATURE_INSTALL:
            return None
        return f"{self.value}Command"

    @property
    def runs_on_host(self) -> bool:
        """initializeCommand runs on the host; every other hook runs in the container."""
        return self is LifecyclePhase.INITIALIZE

    @classmethod
    def from_wait_for(cls, value: Optional[str]) -> Optional["LifecyclePhase"]:
        """
        Map a waitFor value (e.g. "updateContentCommand") to its phase.

        Raises:
            ValueError: If the value names no attachable phase
        """
        if value is None:
            return None
        for phase in WAIT_FOR_PHASES:
            if phase.command_key == value:
                return phase
        raise ValueError(f"Unsupported waitFor value: {value}")


# Phases a devcontainer.json waitFor may name
WAIT_FOR_PHASES = (
    LifecyclePhase.INITIALIZE,
    LifecyclePhase.ON_CREATE,
    LifecyclePhase.UPDATE_CONTENT,
    LifecyclePhase.POST_CREATE,
    LifecyclePhase.POST_START,
)

# Phases the orchestrator drives after the devcontainer has started
POST_START_SEQUENCE = (
    LifecyclePhase.FEATURE_INSTALL,
    LifecyclePhase.ON_CREATE,
    LifecyclePhase.UPDATE_CONTENT,
    LifecyclePhase.POST_CREATE,
    LifecyclePhase.POST_START,
)


CommandValue = Union[str, list[str]]


@dataclass(frozen=True)
class LifecycleCommand:
    """
    A hook command.

    Exactly one of shell, args or parallel is set.

    Attributes:
        shell: Command line run via a shell
        args: argv run without a shell
        parallel: Named sub-commands run concurrently
    """
    shell: Optional[str] = None
    args: tuple[str, ...] = ()
    parallel: dict[str, "LifecycleCommand"] = field(default_factory=dict)

    def __post_init__(self):
        set_fields = sum([self.shell is not None, bool(self.args), bool(self.parallel)])
        if set_fields != 1:
            raise ValueError("LifecycleCommand needs exactly one of shell, args or parallel")

    @classmethod
    def from_value(cls, value: Any) -> Optional["LifecycleCommand"]:
        """Build from a devcontainer.json value; None or empty yields None."""
        if value is None:
            return None
        if isinstance(value, str):
            return cls(shell=value) if value.strip() else None
        if isinstance(value, (list, tuple)):
            return cls(args=tuple(str(v) for v in value)) if value else None
        if isinstance(value, dict):
            parallel = {}
            for name, sub in value.items():
                if isinstance(sub, dict):
                    raise ValueError(f"Parallel command '{name}' cannot be nested")
                command = cls.from_value(sub)
                if command is not None:
                    parallel[name] = command
            return cls(parallel=parallel) if parallel else None
        raise ValueError(f"Unsupported lifecycle command value: {value!r}")

    def describe(self) -> str:
        if self.shell is not None:
            return self.shell
        if self.args:
            return " ".join(self.args)
        return ", ".join(f"{name}: {cmd.describe()}" for name, cmd in self.parallel.items())
