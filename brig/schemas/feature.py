"""
Feature schemas - devcontainer-feature.json metadata.

A FeatureConfig is what a Feature directory declares about itself plus the
option values chosen by the devcontainer.json that referenced it.
"""

import json
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from brig.errors import FeatureError

FEATURE_METADATA_FILE = "devcontainer-feature.json"
INSTALL_SCRIPT = "install.sh"

_NON_WORD = re.compile(r"[^\w_]")
_LEADING_DIGITS = re.compile(r"^[\d_]+")


def option_env_name(option_name: str) -> str:
    """
    Environment variable name for a Feature option.

    "version" -> "VERSION", "install-tools" -> "INSTALL_TOOLS",
    "3rdParty" -> "_RDPARTY".
    """
    name = _NON_WORD.sub("_", option_name)
    name = _LEADING_DIGITS.sub("_", name)
    return name.upper()


@dataclass(frozen=True)
class FeatureOption:
    """
    A user-configurable Feature option.

    Attributes:
        type: "boolean" or "string"
        default: Value used when the referencing config does not set one
        value: Value set by the referencing config (None = use default)
        description: Human-readable description
        enum: Allowed values, if restricted
        proposals: Suggested values
    """
    type: str
    default: Any = None
    value: Any = None
    description: Optional[str] = None
    enum: tuple[str, ...] = ()
    proposals: tuple[str, ...] = ()

    @property
    def effective(self) -> Any:
        return self.default if self.value is None else self.value

    def env_value(self) -> Optional[str]:
        value = self.effective
        if value is None:
            return None
        if self.type == "boolean":
            if isinstance(value, str):
                value = value.strip().lower() == "true"
            return "true" if value else "false"
        return str(value)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeatureOption":
        return cls(
            type=data.get("type", "string"),
            default=data.get("default"),
            description=data.get("description"),
            enum=tuple(data.get("enum", ())),
            proposals=tuple(data.get("proposals", ())),
        )


@dataclass(frozen=True)
class FeatureConfig:
    """
    A Feature as declared by its devcontainer-feature.json.

    Attributes:
        id: Feature ID from the metadata file
        version: Feature version
        reference: How the devcontainer.json referenced it (e.g. "./alpha",
                   "ghcr.io/devcontainers/features/node:1")
        path: Local directory holding the Feature's files
        options: Declared options with the referencing config's values applied
        depends_on: Hard dependencies, reference -> option values
        installs_after: Soft ordering hints (Feature IDs/references)
        name: Display name
        container_env: Environment the Feature wants set in the container
    """
    id: str
    version: str = ""
    reference: str = ""
    path: Optional[Path] = None
    options: dict[str, FeatureOption] = field(default_factory=dict)
    depends_on: dict[str, dict[str, Any]] = field(default_factory=dict)
    installs_after: tuple[str, ...] = ()
    name: Optional[str] = None
    container_env: dict[str, str] = field(default_factory=dict)

    @property
    def install_script(self) -> Optional[Path]:
        if self.path is None:
            return None
        return self.path / INSTALL_SCRIPT

    def with_options(self, values: dict[str, Any]) -> "FeatureConfig":
        """
        Return a copy with option values from the referencing config applied.

        Raises:
            FeatureError: If an option is unknown or outside its enum
        """
        options = dict(self.options)
        for key, value in (values or {}).items():
            if key not in options:
                raise FeatureError(f"Feature {self.reference or self.id} has no option '{key}'")
            option = options[key]
            if option.enum and str(value) not in option.enum:
                raise FeatureError(
                    f"Feature {self.reference or self.id}: option '{key}' must be one of "
                    f"{list(option.enum)}, got {value!r}"
                )
            options[key] = replace(option, value=value)
        return replace(self, options=options)

    def option_env(self) -> dict[str, str]:
        """Options rendered as the environment install.sh expects."""
        env = {}
        for name, option in self.options.items():
            value = option.env_value()
            if value is not None:
                env[option_env_name(name)] = value
        return env

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        reference: str = "",
        path: Optional[Path] = None,
    ) -> "FeatureConfig":
        if "id" not in data:
            raise FeatureError(f"Feature metadata is missing 'id': {reference or path}")
        return cls(
            id=data["id"],
            version=str(data.get("version", "")),
            reference=reference,
            path=path,
            options={
                name: FeatureOption.from_dict(opt)
                for name, opt in (data.get("options") or {}).items()
            },
            depends_on={
                ref: dict(opts or {}) for ref, opts in (data.get("dependsOn") or {}).items()
            },
            installs_after=tuple(data.get("installsAfter") or ()),
            name=data.get("name"),
            container_env=dict(data.get("containerEnv") or {}),
        )


def load_feature_config(feature_dir: Path, reference: str = "") -> FeatureConfig:
    """
    Load the devcontainer-feature.json inside feature_dir.

    Raises:
        FeatureError: If the file is missing or not valid JSON
    """
    metadata_path = Path(feature_dir) / FEATURE_METADATA_FILE
    if not metadata_path.exists():
        raise FeatureError(f"Feature metadata not found: {metadata_path}")
    try:
        with open(metadata_path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise FeatureError(f"Invalid JSON in {metadata_path}: {e}") from e
    return FeatureConfig.from_dict(data, reference=reference, path=Path(feature_dir))
