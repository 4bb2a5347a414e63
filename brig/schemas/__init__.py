"""
brig.schemas - Configuration objects consumed by the orchestration core.

DevcontainerConfig -> FeatureConfig / ComposeProject -> DependencyGraph

- DevcontainerConfig: the loaded devcontainer.json (Features, hooks, waitFor)
- FeatureConfig: a prepared Feature's devcontainer-feature.json plus options
- ComposeProject / ComposeService: services and their depends_on conditions
- LifecyclePhase / LifecycleCommand: hook phases and the commands bound to them
"""

from .lifecycle import (
    LifecyclePhase,
    LifecycleCommand,
    POST_START_SEQUENCE,
    WAIT_FOR_PHASES,
)
from .feature import (
    FeatureConfig,
    FeatureOption,
    load_feature_config,
    option_env_name,
)
from .compose import (
    BuildConfig,
    ComposeProject,
    ComposeService,
    load_compose_project,
)
from .devcontainer import (
    DevcontainerConfig,
    DevcontainerNotFound,
    TooManyDevcontainerFiles,
    find_devcontainer_json,
    load_devcontainer,
)

__all__ = [
    # Lifecycle
    "LifecyclePhase",
    "LifecycleCommand",
    "POST_START_SEQUENCE",
    "WAIT_FOR_PHASES",
    # Features
    "FeatureConfig",
    "FeatureOption",
    "load_feature_config",
    "option_env_name",
    # Compose
    "BuildConfig",
    "ComposeProject",
    "ComposeService",
    "load_compose_project",
    # Devcontainer
    "DevcontainerConfig",
    "DevcontainerNotFound",
    "TooManyDevcontainerFiles",
    "find_devcontainer_json",
    "load_devcontainer",
]
