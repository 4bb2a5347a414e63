"""
Features - prepare Feature files locally and install them in the container.

Preparation (FeatureResolver):
- "/..."       rejected: local Features must be referenced relatively
- "./..."      used in place, relative to the devcontainer.json directory
- "https://..." tarball downloaded with httpx, unpacked under the cache
- anything else resolved through the OCI artifact cache
dependsOn Features are prepared recursively, after the declared ones; a
Feature is prepared once per canonical ID.

Installation (FeatureInstaller):
- Forward drain of the Feature graph; Features in one level run concurrently
- Each Feature is copied to /tmp/brig-features/<n> and its install.sh runs
  as root with the options exported as environment variables
"""

import hashlib
import itertools
import logging
import shlex
import shutil
import threading
from pathlib import Path
from typing import Any, Optional

import httpx

from brig.cache import ContentAddressedArtifactCache, extract_tar
from brig.compiler import canonical_id
from brig.errors import FeatureError, UnresolvableReference
from brig.executor import DrainResult, LevelParallelExecutor
from brig.graph import DependencyGraph
from brig.runtime import Runtime
from brig.schemas import FeatureConfig, load_feature_config

logger = logging.getLogger(__name__)

CONTAINER_FEATURES_DIR = "/tmp/brig-features"


class HttpsFeatureSource:
    """Downloads Feature tarballs into <cache>/https/<sha256(url)[:16]>."""

    def __init__(self, cache_dir: Path, client: Optional[httpx.Client] = None, timeout: float = 30.0):
        self.cache_dir = Path(cache_dir) / "https"
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def cache_key(self, url: str) -> Path:
        return self.cache_dir / hashlib.sha256(url.encode()).hexdigest()[:16]

    def fetch(self, url: str) -> Path:
        """
        Download and unpack url, falling back to a cached copy.

        Raises:
            UnresolvableReference: If the download fails and nothing is cached
        """
        key = self.cache_key(url)
        logger.debug(f"Fetching Feature tarball: {url}")
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            if key.exists():
                logger.warning(f"Could not fetch {url} ({e}); using cached copy, which may be stale")
                return key
            raise UnresolvableReference(url, e) from e

        if key.exists():
            shutil.rmtree(key)
        extract_tar(response.content, key)
        return key

    def close(self) -> None:
        self._client.close()


class FeatureResolver:
    """
    Turns the devcontainer.json features map into prepared FeatureConfigs.

    Usage:
        resolver = FeatureResolver(cache, https_source)
        features = resolver.prepare(config.features, config.config_dir)
        graph = compile_feature_graph(features.values(), config.override_feature_install_order)
    """

    def __init__(
        self,
        cache: Optional[ContentAddressedArtifactCache] = None,
        https_source: Optional[HttpsFeatureSource] = None,
    ):
        self.cache = cache
        self.https_source = https_source

    def locate(self, reference: str, base_dir: Path) -> Path:
        """
        Return a local directory with the Feature's files.

        Raises:
            FeatureError: For absolute or missing local references
            CacheError: If a remote reference cannot be resolved
        """
        if reference.startswith("/"):
            raise FeatureError(
                f"Local Features may not be referenced by an absolute path: {reference}"
            )

        if reference.startswith("./") or reference.startswith("../"):
            path = (Path(base_dir) / reference).resolve()
            if not path.exists():
                raise FeatureError(f"Referenced a local Feature that doesn't exist: {path}")
            logger.debug(f"Using local Feature {reference}: {path}")
            return path

        if reference.startswith("https://"):
            if self.https_source is None:
                raise FeatureError(f"No HTTPS source configured for {reference}")
            return self.https_source.fetch(reference)

        if self.cache is None:
            raise FeatureError(f"No artifact cache configured for {reference}")
        return self.cache.resolve(reference)

    def prepare(
        self,
        features: dict[str, dict[str, Any]],
        base_dir: Path,
        prepared: Optional[dict[str, FeatureConfig]] = None,
    ) -> dict[str, FeatureConfig]:
        """
        Prepare every referenced Feature and its dependsOn closure.

        Args:
            features: Reference -> option values
            base_dir: Directory relative references are resolved against
            prepared: Accumulator for recursive calls

        Returns:
            Reference -> FeatureConfig with options applied, one entry per
            canonical ID
        """
        prepared = {} if prepared is None else prepared
        known = {canonical_id(reference) for reference in prepared}
        added: list[FeatureConfig] = []
        for reference, options in features.items():
            if canonical_id(reference) in known:
                logger.debug(f"Feature already prepared: {reference}")
                continue

            path = self.locate(reference, base_dir)
            feature = load_feature_config(path, reference).with_options(options or {})
            prepared[reference] = feature
            known.add(canonical_id(reference))
            added.append(feature)
            logger.info(f"Prepared Feature {feature.id} ({reference})")

        # Declared references win over dependsOn references to the same Feature
        for feature in added:
            if feature.depends_on:
                self.prepare(feature.depends_on, base_dir, prepared)

        return prepared


class FeatureInstaller:
    """Installs a compiled Feature graph into a running container."""

    def __init__(self, runtime: Runtime, executor: Optional[LevelParallelExecutor] = None):
        self.runtime = runtime
        self.executor = executor or LevelParallelExecutor(name="features")
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def _next_destination(self) -> str:
        with self._lock:
            return f"{CONTAINER_FEATURES_DIR}/{next(self._counter)}"

    def install(self, graph: DependencyGraph, container_id: str) -> DrainResult:
        """
        Drain graph, installing each Feature.

        Raises:
            UnitExecutionFailed: Wrapping the first FeatureError in a level
        """
        if len(graph) == 0:
            logger.debug("No Features to install")
            return DrainResult()
        return self.executor.drain(graph, lambda feature: self.install_one(feature, container_id))

    def install_one(self, feature: FeatureConfig, container_id: str) -> None:
        if feature.path is None or not feature.install_script.exists():
            raise FeatureError(f"Feature {feature.reference or feature.id} has no install.sh")

        destination = self._next_destination()
        logger.info(f"Installing Feature {feature.id}")
        self.runtime.copy_to_container(container_id, feature.path, destination)

        script = f"cd {shlex.quote(destination)} && chmod +x install.sh && ./install.sh"
        result = self.runtime.exec(
            container_id,
            ["/bin/sh", "-c", script],
            user="root",
            env=feature.option_env(),
        )
        for line in result.output.splitlines():
            logger.info(f"  [{feature.id}] {line}")
        if not result.ok:
            raise FeatureError(
                f"install.sh for Feature {feature.id} exited with code {result.exit_code}"
            )
