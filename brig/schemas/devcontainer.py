"""
DevcontainerConfig - the normalized devcontainer.json brig consumes.

Only the keys brig acts on are modelled; everything else in the document
is kept in `raw` and ignored. No schema validation happens here: the
loader decodes JSON (comments and trailing commas allowed), resolves paths
relative to the file, and builds the dataclass.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from brig.errors import ConfigError
from brig.schemas.lifecycle import LifecycleCommand, LifecyclePhase

logger = logging.getLogger(__name__)

DEFAULT_WAIT_FOR = "updateContentCommand"

# Standard locations, searched from the project root
DEVCONTAINER_JSON_PATTERNS = (
    ".devcontainer.json",
    ".devcontainer/devcontainer.json",
    ".devcontainer/*/devcontainer.json",
)

_LINE_COMMENT = re.compile(r'("(?:\\.|[^"\\])*")|//[^\n]*')
_BLOCK_COMMENT = re.compile(r'("(?:\\.|[^"\\])*")|/\*.*?\*/', re.DOTALL)
_TRAILING_COMMA = re.compile(r'("(?:\\.|[^"\\])*")|,(\s*[\]}])')


class TooManyDevcontainerFiles(ConfigError):
    """More than one devcontainer.json matched the standard locations."""

    def __init__(self, matches: list[Path]):
        self.matches = matches
        super().__init__(
            "Multiple devcontainer.json files found; pass one explicitly: "
            + ", ".join(str(m) for m in matches)
        )


class DevcontainerNotFound(ConfigError):
    """No devcontainer.json was found."""
    pass


@dataclass(frozen=True)
class BuildSection:
    """devcontainer.json build section (single-image path)."""
    dockerfile: str
    context: Path
    args: dict[str, str] = field(default_factory=dict)
    target: Optional[str] = None


@dataclass(frozen=True)
class DevcontainerConfig:
    """
    A loaded devcontainer.json.

    Attributes:
        path: The devcontainer.json file
        name: Display name (defaults to the project directory name)
        image: Image for the single-image path
        build: Build section for the single-image path
        compose_files: dockerComposeFile entries, resolved to paths
        service: Compose service that is the devcontainer
        run_services: Compose services to start (empty = all)
        features: Feature reference -> option values
        override_feature_install_order: Explicit Feature install order
        commands: Hook command per lifecycle phase
        wait_for: Phase whose completion triggers terminal attach
        remote_user: User hooks and the terminal run as
        container_user: User the container runs as
        remote_env / container_env: Environment for hooks / the container
        workspace_folder: Workspace path inside the container
        forward_ports: Host ports to publish
        privileged / cap_add / run_args: Container flags
    """
    path: Path
    name: str
    image: Optional[str] = None
    build: Optional[BuildSection] = None
    compose_files: tuple[Path, ...] = ()
    service: Optional[str] = None
    run_services: tuple[str, ...] = ()
    features: dict[str, dict[str, Any]] = field(default_factory=dict)
    override_feature_install_order: tuple[str, ...] = ()
    commands: dict[LifecyclePhase, LifecycleCommand] = field(default_factory=dict)
    wait_for: Optional[LifecyclePhase] = LifecyclePhase.UPDATE_CONTENT
    remote_user: Optional[str] = None
    container_user: Optional[str] = None
    remote_env: dict[str, str] = field(default_factory=dict)
    container_env: dict[str, str] = field(default_factory=dict)
    workspace_folder: Optional[str] = None
    forward_ports: tuple[int, ...] = ()
    privileged: bool = False
    cap_add: tuple[str, ...] = ()
    run_args: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def config_dir(self) -> Path:
        return self.path.parent

    @property
    def project_dir(self) -> Path:
        """Host directory mounted as the workspace."""
        if self.config_dir.name == ".devcontainer":
            return self.config_dir.parent
        if self.config_dir.parent.name == ".devcontainer":
            return self.config_dir.parent.parent
        return self.config_dir

    @property
    def uses_compose(self) -> bool:
        return bool(self.compose_files)

    @property
    def workspace_path(self) -> str:
        return self.workspace_folder or f"/workspaces/{self.project_dir.name}"

    def command_for(self, phase: LifecyclePhase) -> Optional[LifecycleCommand]:
        return self.commands.get(phase)

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Path) -> "DevcontainerConfig":
        """
        Build from a decoded devcontainer.json.

        Raises:
            ConfigError: If the document is not usable by brig
        """
        path = Path(path).resolve()
        config_dir = path.parent

        build = None
        raw_build = data.get("build") or {}
        dockerfile = raw_build.get("dockerfile") or data.get("dockerFile")
        if dockerfile:
            build = BuildSection(
                dockerfile=dockerfile,
                context=(config_dir / (raw_build.get("context") or data.get("context") or ".")).resolve(),
                args={k: str(v) for k, v in (raw_build.get("args") or {}).items()},
                target=raw_build.get("target"),
            )

        compose_value = data.get("dockerComposeFile")
        if isinstance(compose_value, str):
            compose_value = [compose_value]
        compose_files = tuple((config_dir / f).resolve() for f in (compose_value or ()))

        image = data.get("image")
        if compose_files:
            if not data.get("service"):
                raise ConfigError(f"{path}: dockerComposeFile requires 'service'")
        elif not image and build is None:
            raise ConfigError(f"{path}: one of image, build.dockerfile or dockerComposeFile is required")

        commands = {}
        for phase in LifecyclePhase:
            if phase.command_key is None or phase.command_key not in data:
                continue
            try:
                command = LifecycleCommand.from_value(data[phase.command_key])
            except ValueError as e:
                raise ConfigError(f"{path}: {phase.command_key}: {e}") from e
            if command is not None:
                commands[phase] = command

        try:
            wait_for = LifecyclePhase.from_wait_for(data.get("waitFor", DEFAULT_WAIT_FOR))
        except ValueError as e:
            raise ConfigError(f"{path}: {e}") from e

        return cls(
            path=path,
            name=data.get("name") or _default_name(config_dir),
            image=image,
            build=build,
            compose_files=compose_files,
            service=data.get("service"),
            run_services=tuple(data.get("runServices") or ()),
            features={ref: dict(opts or {}) for ref, opts in (data.get("features") or {}).items()},
            override_feature_install_order=tuple(data.get("overrideFeatureInstallOrder") or ()),
            commands=commands,
            wait_for=wait_for,
            remote_user=data.get("remoteUser"),
            container_user=data.get("containerUser"),
            remote_env={k: str(v) for k, v in (data.get("remoteEnv") or {}).items() if v is not None},
            container_env={k: str(v) for k, v in (data.get("containerEnv") or {}).items()},
            workspace_folder=data.get("workspaceFolder"),
            forward_ports=_parse_ports(data.get("forwardPorts"), data.get("appPort")),
            privileged=bool(data.get("privileged", False)),
            cap_add=tuple(data.get("capAdd") or ()),
            run_args=tuple(data.get("runArgs") or ()),
            raw=data,
        )


def _default_name(config_dir: Path) -> str:
    base = config_dir.parent if config_dir.name == ".devcontainer" else config_dir
    return base.name.lower()


def _parse_ports(*values: Any) -> tuple[int, ...]:
    ports = []
    for value in values:
        if value is None:
            continue
        if not isinstance(value, (list, tuple)):
            value = [value]
        for port in value:
            # "host:port" forwards are for other services; only bare ports are published
            if isinstance(port, str) and not port.isdigit():
                logger.warning(f"Ignoring unsupported port forward: {port}")
                continue
            ports.append(int(port))
    return tuple(ports)


def strip_jsonc(text: str) -> str:
    """Remove comments and trailing commas from JSON-with-comments text."""
    def keep_strings(match):
        return match.group(1) or ""

    text = _BLOCK_COMMENT.sub(keep_strings, text)
    text = _LINE_COMMENT.sub(keep_strings, text)
    return _TRAILING_COMMA.sub(lambda m: m.group(1) or m.group(2), text)


def load_devcontainer(path: Path) -> DevcontainerConfig:
    """
    Load a devcontainer.json file.

    Args:
        path: Path to the devcontainer.json

    Returns:
        DevcontainerConfig

    Raises:
        ConfigError: If the file is missing, not valid JSON, or unusable
    """
    path = Path(path)
    if not path.exists():
        raise DevcontainerNotFound(f"devcontainer.json not found: {path}")
    try:
        data = json.loads(strip_jsonc(path.read_text()))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be an object")
    return DevcontainerConfig.from_dict(data, path)


def find_devcontainer_json(root: Path) -> Path:
    """
    Locate the devcontainer.json for a project.

    A file path is returned as-is; a directory is searched with the
    standard patterns.

    Raises:
        DevcontainerNotFound: If nothing matches
        TooManyDevcontainerFiles: If more than one file matches
    """
    root = Path(root)
    if root.is_file():
        return root

    matches: list[Path] = []
    for pattern in DEVCONTAINER_JSON_PATTERNS:
        matches.extend(sorted(root.glob(pattern)))

    if not matches:
        raise DevcontainerNotFound(f"No devcontainer.json found under {root}")
    if len(matches) > 1:
        raise TooManyDevcontainerFiles(matches)
    return matches[0]
