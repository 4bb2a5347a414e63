"""
Compiler - Turn Feature sets and Compose projects into DependencyGraphs.

Feature graph:
- One vertex per prepared Feature, keyed by its canonical ID
- Hard edges from dependsOn (missing dependency -> UnknownVertex)
- Soft edges from installsAfter (missing target -> skipped)
- Soft edges between consecutive overrideFeatureInstallOrder entries

Service graph:
- One vertex per Compose service, keyed by service name
- Hard edges from depends_on (missing dependency -> UnknownVertex)

Every edge points from the unit that must finish first to the unit that
waits on it, so roots() is always the next installable/startable level.
"""

import logging
from typing import Iterable, Optional

from brig.errors import UnknownVertex
from brig.graph import DependencyGraph
from brig.schemas import ComposeProject, FeatureConfig

logger = logging.getLogger(__name__)


def canonical_id(reference: str) -> str:
    """
    Strip the version tag or digest from a Feature reference.

    "ghcr.io/devcontainers/features/node:1" -> "ghcr.io/devcontainers/features/node"
    "registry:5000/feat@sha256:abc"         -> "registry:5000/feat"
    "./alpha"                               -> "./alpha"

    https:// references are returned verbatim.
    """
    if reference.startswith("https://"):
        return reference
    reference = reference.split("@", 1)[0]
    head, sep, last = reference.rpartition("/")
    last = last.split(":", 1)[0]
    return f"{head}{sep}{last}"


def compile_feature_graph(
    features: Iterable[FeatureConfig],
    override_order: Optional[Iterable[str]] = None,
) -> DependencyGraph:
    """
    Build the Feature installation graph.

    Args:
        features: Prepared Features (including dependsOn Features)
        override_order: overrideFeatureInstallOrder from devcontainer.json

    Returns:
        DependencyGraph keyed by canonical Feature ID

    Raises:
        DuplicateVertex: If two Features share a canonical ID
        UnknownVertex: If a dependsOn target was not prepared
        CycleDetected: If the declared ordering is cyclic
    """
    graph = DependencyGraph()
    features = list(features)
    for feature in features:
        graph.add_vertex(canonical_id(feature.reference or feature.id), feature)

    for feature in features:
        vertex_id = canonical_id(feature.reference or feature.id)
        for dependency in feature.depends_on:
            dependency_id = canonical_id(dependency)
            if dependency_id not in graph:
                raise UnknownVertex(dependency_id)
            graph.add_edge(dependency_id, vertex_id)

    # installsAfter entries are soft: absent Features are not installed at all
    for feature in features:
        vertex_id = canonical_id(feature.reference or feature.id)
        for dependency in feature.installs_after:
            dependency_id = _match_vertex(graph, dependency)
            if dependency_id is None:
                logger.debug(f"installsAfter {dependency} for {vertex_id} not present; skipping")
                continue
            graph.add_edge(dependency_id, vertex_id)

    ordered = [_match_vertex(graph, ref) for ref in (override_order or ())]
    ordered = [vertex_id for vertex_id in ordered if vertex_id is not None]
    for earlier, later in zip(ordered, ordered[1:]):
        graph.add_edge(earlier, later)

    logger.debug(f"Compiled Feature graph: {graph!r}")
    return graph


def _match_vertex(graph: DependencyGraph, reference: str) -> Optional[str]:
    """
    Find the vertex a soft reference points at.

    installsAfter entries name Feature IDs without a registry tag, and may
    also name a Feature by its bare metadata ID.
    """
    candidate = canonical_id(reference)
    if candidate in graph:
        return candidate
    for vertex_id, feature in graph.vertices().items():
        if feature is not None and feature.id == reference:
            return vertex_id
    return None


def compile_service_graph(
    project: ComposeProject,
    services: Optional[Iterable[str]] = None,
) -> DependencyGraph:
    """
    Build the Compose service startup graph.

    Args:
        project: Loaded Compose project
        services: Services to include (default: all); their depends_on
                  closure is always included

    Returns:
        DependencyGraph keyed by service name with ComposeService payloads

    Raises:
        UnknownVertex: If a service or depends_on target is not defined
    """
    wanted = _dependency_closure(project, services or project.services)

    graph = DependencyGraph()
    for name in project.services:
        if name in wanted:
            graph.add_vertex(name, project.services[name])

    for name in graph.vertices():
        for dependency in project.services[name].depends_on:
            graph.add_edge(dependency, name)

    logger.debug(f"Compiled service graph for {project.name}: {graph!r}")
    return graph


def _dependency_closure(project: ComposeProject, services: Iterable[str]) -> set[str]:
    wanted: set[str] = set()
    stack = list(services)
    while stack:
        name = stack.pop()
        if name in wanted:
            continue
        if name not in project.services:
            raise UnknownVertex(name)
        wanted.add(name)
        stack.extend(project.services[name].depends_on)
    return wanted
