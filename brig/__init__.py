"""
brig - Lightweight devcontainer runner.

Core components:
- DependencyGraph: DAG over Features / Compose services
- LevelParallelExecutor: level-by-level concurrent drain of a graph
- ContentAddressedArtifactCache: digest-keyed cache for OCI Features
- ServiceDependencyWaiter: Compose depends_on condition polling
- LifecycleCoordinator: orchestrator/handler phase protocol
"""

__version__ = "0.1.0"

from brig.errors import BrigError, ConfigError
from brig.graph import DependencyGraph
from brig.executor import DrainResult, LevelParallelExecutor
from brig.cache import ContentAddressedArtifactCache, DigestIndex
from brig.waiter import ServiceDependencyWaiter
from brig.lifecycle import LifecycleCoordinator, LifecycleHandler

__all__ = [
    "__version__",
    "BrigError",
    "ConfigError",
    "DependencyGraph",
    "DrainResult",
    "LevelParallelExecutor",
    "ContentAddressedArtifactCache",
    "DigestIndex",
    "ServiceDependencyWaiter",
    "LifecycleCoordinator",
    "LifecycleHandler",
]
