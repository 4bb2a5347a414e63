"""
Compose schemas - the subset of a Compose project brig provisions.

Compose files are decoded with PyYAML and lightly normalized:
- depends_on lists become {service: {"condition": "service_started"}}
- environment lists ("KEY=VAL") become mappings
- later files override earlier ones per service key
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from brig.errors import ConfigError

DEFAULT_CONDITION = "service_started"


@dataclass(frozen=True)
class BuildConfig:
    """Compose build section."""
    context: Path
    dockerfile: str = "Dockerfile"
    args: dict[str, str] = field(default_factory=dict)
    target: Optional[str] = None


@dataclass(frozen=True)
class ComposeService:
    """
    A single Compose service.

    Attributes:
        name: Service name (unique within the project)
        image: Image to pull (or tag for a built image)
        build: Build configuration, if the service builds its own image
        depends_on: Dependency service name -> condition
        healthcheck: Raw healthcheck mapping; None or disabled means none
        environment: Environment variables (None values are read from the host)
    """
    name: str
    image: Optional[str] = None
    build: Optional[BuildConfig] = None
    command: Optional[list[str]] = None
    entrypoint: Optional[list[str]] = None
    depends_on: dict[str, str] = field(default_factory=dict)
    healthcheck: Optional[dict[str, Any]] = None
    environment: dict[str, Optional[str]] = field(default_factory=dict)
    user: Optional[str] = None
    working_dir: Optional[str] = None
    labels: dict[str, str] = field(default_factory=dict)
    ports: tuple[str, ...] = ()
    volumes: tuple[str, ...] = ()
    tty: bool = False
    stdin_open: bool = False

    @property
    def has_healthcheck(self) -> bool:
        return bool(self.healthcheck) and not self.healthcheck.get("disable", False)

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any], base_dir: Path) -> "ComposeService":
        build = None
        raw_build = data.get("build")
        if isinstance(raw_build, str):
            build = BuildConfig(context=(base_dir / raw_build).resolve())
        elif isinstance(raw_build, dict):
            build = BuildConfig(
                context=(base_dir / raw_build.get("context", ".")).resolve(),
                dockerfile=raw_build.get("dockerfile", "Dockerfile"),
                args={k: str(v) for k, v in _as_mapping(raw_build.get("args")).items()},
                target=raw_build.get("target"),
            )

        return cls(
            name=name,
            image=data.get("image"),
            build=build,
            command=_as_argv(data.get("command")),
            entrypoint=_as_argv(data.get("entrypoint")),
            depends_on=_normalize_depends_on(name, data.get("depends_on")),
            healthcheck=data.get("healthcheck"),
            environment=_as_mapping(data.get("environment")),
            user=data.get("user"),
            working_dir=data.get("working_dir"),
            labels={k: str(v) for k, v in _as_mapping(data.get("labels")).items()},
            ports=tuple(str(p) for p in data.get("ports", ())),
            volumes=tuple(str(v) for v in data.get("volumes", ())),
            tty=bool(data.get("tty", False)),
            stdin_open=bool(data.get("stdin_open", False)),
        )


@dataclass(frozen=True)
class ComposeProject:
    """A named set of services plus the files they came from."""
    name: str
    services: dict[str, ComposeService] = field(default_factory=dict)
    files: tuple[Path, ...] = ()

    def container_name(self, service: str) -> str:
        return f"{self.name}--{service}"

    @property
    def network_name(self) -> str:
        return f"{self.name}_default"


def _as_argv(value: Any) -> Optional[list[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return ["/bin/sh", "-c", value]
    return [str(v) for v in value]


def _as_mapping(value: Any) -> dict[str, Optional[str]]:
    if not value:
        return {}
    if isinstance(value, dict):
        return {k: (None if v is None else str(v)) for k, v in value.items()}
    mapping = {}
    for item in value:
        key, sep, val = str(item).partition("=")
        mapping[key] = val if sep else None
    return mapping


def _normalize_depends_on(service: str, value: Any) -> dict[str, str]:
    if not value:
        return {}
    if isinstance(value, (list, tuple)):
        return {str(dep): DEFAULT_CONDITION for dep in value}
    if isinstance(value, dict):
        return {
            dep: (cfg or {}).get("condition", DEFAULT_CONDITION)
            for dep, cfg in value.items()
        }
    raise ConfigError(f"Service {service}: depends_on must be a list or mapping")


def load_compose_project(files: list[Path], project_name: str) -> ComposeProject:
    """
    Load and merge Compose files into a ComposeProject.

    Args:
        files: Compose files, in override order
        project_name: Name used for container and network names

    Raises:
        ConfigError: If a file is missing, invalid, or has no services
    """
    merged: dict[str, dict[str, Any]] = {}
    base_dirs: dict[str, Path] = {}
    for file_path in files:
        file_path = Path(file_path)
        if not file_path.exists():
            raise ConfigError(f"Compose file not found: {file_path}")
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {file_path}: {e}")

        for name, service_data in (data.get("services") or {}).items():
            merged.setdefault(name, {}).update(service_data or {})
            base_dirs.setdefault(name, file_path.parent)

    if not merged:
        raise ConfigError(f"No services defined in {[str(f) for f in files]}")

    services = {
        name: ComposeService.from_dict(name, data, base_dirs[name])
        for name, data in merged.items()
    }
    return ComposeProject(name=project_name, services=services, files=tuple(Path(f) for f in files))
