"""
Error classes for brig provisioning.

Every orchestration algorithm raises one of these and stops at the first
failure. Nothing here retries or rolls back; compensating teardown is the
caller's job (see brig.session).

Error families:
- Graph faults: DuplicateVertex, UnknownVertex, CycleDetected, MalformedGraph
- Drain faults: UnitExecutionFailed (wraps the unit's own exception)
- Cache faults: UnresolvableReference, UnsupportedMediaType, NoUsableLayer
- Waiter faults: UnknownCondition, DependencyNotRunning, MissingHealthcheck,
  DependencyTimeout, DependencyFailed
- Lifecycle faults: LifecycleHandlerFailed, HookCommandFailed

Error handling contract:
- Errors are exceptions, not values
- The first error encountered is the one propagated
- The CLI is the only place errors are turned into exit codes
"""


class BrigError(Exception):
    """Base exception for brig."""
    pass


class ConfigError(BrigError):
    """Configuration could not be loaded or is unusable."""
    pass


# =============================================================================
# Graph
# =============================================================================


class GraphError(BrigError):
    """Base class for dependency graph faults."""
    pass


class DuplicateVertex(GraphError):
    """A vertex with the same ID is already in the graph."""

    def __init__(self, vertex_id: str):
        self.vertex_id = vertex_id
        super().__init__(f"Vertex already present: {vertex_id}")


class UnknownVertex(GraphError):
    """A vertex referenced by an operation is not in the graph."""

    def __init__(self, vertex_id: str):
        self.vertex_id = vertex_id
        super().__init__(f"Unknown vertex: {vertex_id}")


class CycleDetected(GraphError):
    """Adding an edge would make the graph cyclic."""

    def __init__(self, from_id: str, to_id: str):
        self.from_id = from_id
        self.to_id = to_id
        super().__init__(f"Edge {from_id} -> {to_id} would create a cycle")


class MalformedGraph(GraphError):
    """
    A drain found no ready vertex in a non-empty graph.

    Never expected with compiled inputs; indicates a bug upstream.
    """

    def __init__(self, remaining: list[str]):
        self.remaining = remaining
        super().__init__(
            f"No ready vertices but graph is not empty: {sorted(remaining)}"
        )


# =============================================================================
# Execution
# =============================================================================


class UnitExecutionFailed(BrigError):
    """A unit (Feature install, service provision/teardown) failed."""

    def __init__(self, unit_id: str, cause: BaseException):
        self.unit_id = unit_id
        self.cause = cause
        super().__init__(f"Unit '{unit_id}' failed: {cause}")


class RuntimeOperationError(BrigError):
    """The container runtime rejected or failed an operation."""
    pass


# =============================================================================
# Artifact cache
# =============================================================================


class CacheError(BrigError):
    """Base class for artifact cache faults."""

    def __init__(self, reference: str, message: str):
        self.reference = reference
        super().__init__(message)


class UnresolvableReference(CacheError):
    """The remote reference could not be resolved and nothing is cached."""

    def __init__(self, reference: str, cause: BaseException | None = None):
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(reference, f"Could not resolve {reference}{detail}")


class UnsupportedMediaType(CacheError):
    """The reference resolved to something other than an OCI image manifest."""

    def __init__(self, reference: str, media_type: str):
        self.media_type = media_type
        super().__init__(
            reference, f"{reference} resolved to unsupported media type: {media_type}"
        )


class NoUsableLayer(CacheError):
    """The artifact manifest has no devcontainer Feature layer."""

    def __init__(self, reference: str):
        super().__init__(
            reference, f"Referenced OCI artifact has no usable layer: {reference}"
        )


# =============================================================================
# Service dependency waiter
# =============================================================================


class DependencyWaitError(BrigError):
    """Base class for Compose dependency condition failures."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(message)


class UnknownCondition(DependencyWaitError):
    """The depends_on condition is not one brig understands."""

    def __init__(self, service: str, condition: str):
        self.condition = condition
        super().__init__(
            service, f"Unknown dependency condition for {service}: {condition}"
        )


class DependencyNotRunning(DependencyWaitError):
    """The dependency stopped running before its condition settled."""

    def __init__(self, service: str, exit_code: int | None = None):
        self.exit_code = exit_code
        super().__init__(
            service, f"Service {service} needed to be running but isn't (exit code {exit_code})"
        )


class MissingHealthcheck(DependencyWaitError):
    """service_healthy was requested for a service without a healthcheck."""

    def __init__(self, service: str):
        super().__init__(service, f"Service {service} lacks a healthcheck")


class DependencyTimeout(DependencyWaitError):
    """The dependency did not become healthy within its poll budgets."""

    def __init__(self, service: str, polls: int):
        self.polls = polls
        super().__init__(
            service,
            f"Timed out after {polls} polls waiting for {service} to become healthy",
        )


class DependencyFailed(DependencyWaitError):
    """service_completed_successfully was requested but the exit code was non-zero."""

    def __init__(self, service: str, exit_code: int):
        self.exit_code = exit_code
        super().__init__(
            service,
            f"Service {service} needed to complete successfully but had exit code {exit_code}",
        )


# =============================================================================
# Lifecycle
# =============================================================================


class LifecycleHandlerFailed(BrigError):
    """
    The lifecycle handler reported failure for a phase.

    Only a boolean crosses the coordinator; the underlying cause is logged
    by the handler.
    """

    def __init__(self, phase=None):
        self.phase = phase
        if phase is None:
            super().__init__("Lifecycle handler encountered an error")
        else:
            super().__init__(f"Lifecycle handler failed during {phase}")


class HookCommandFailed(BrigError):
    """A lifecycle hook command exited non-zero."""

    def __init__(self, command: str, exit_code: int, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"Command returned non-zero exit code {exit_code}: {command}")


class FeatureError(BrigError):
    """A Feature reference could not be prepared or installed."""
    pass
