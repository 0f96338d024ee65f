"""Exceptions for zae-reconciler."""

from collections.abc import Sequence

# ---------------------------------------------------------------------------
# Base Exception
# ---------------------------------------------------------------------------


class ReconcilerError(Exception):
    """
    Base exception for all zae-reconciler errors.

    All exceptions raised by this library inherit from this class,
    allowing callers to catch all library-specific errors with a single
    except clause.
    """

    pass


# ---------------------------------------------------------------------------
# Category Exceptions
# ---------------------------------------------------------------------------


class StructuralError(ReconcilerError):
    """
    Base exception for errors in the shape of the desired graph or plan.

    Structural errors are always raised before any provider call is made,
    so no remote resource and no persisted state is touched.
    """

    pass


class ProviderError(ReconcilerError):
    """
    Base exception for errors reported by a provider API client.

    Attributes:
        resource: Logical name of the resource being applied (if known)
        kind: Resource kind (if known)
    """

    def __init__(
        self,
        message: str,
        *,
        resource: str | None = None,
        kind: str | None = None,
        code: str | None = None,
    ) -> None:
        self.resource = resource
        self.kind = kind
        self.code = code
        super().__init__(self._format_message(message))

    def _format_message(self, message: str) -> str:
        context = []
        if self.resource:
            context.append(f"resource={self.resource}")
        if self.kind:
            context.append(f"kind={self.kind}")
        if self.code:
            context.append(f"code={self.code}")
        if context:
            return f"{message} [{', '.join(context)}]"
        return message


class StateError(ReconcilerError):
    """
    Base exception for state store errors.

    This includes lock contention, unreadable snapshots and snapshots
    written by an incompatible version.
    """

    pass


# ---------------------------------------------------------------------------
# Structural Exceptions
# ---------------------------------------------------------------------------


class CycleError(StructuralError):
    """Raised when the declared dependencies of a graph form a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class DanglingReferenceError(StructuralError):
    """Raised when a resource references a logical name that is not declared."""

    def __init__(self, resource: str, target: str) -> None:
        self.resource = resource
        self.target = target
        super().__init__(f"Resource '{resource}' references undeclared resource '{target}'")


class DuplicateResourceError(StructuralError):
    """Raised when the same logical name is declared more than once."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Resource declared more than once: {name}")


class UnschedulableError(StructuralError):
    """
    Raised when a plan cannot be ordered.

    This happens when the decomposition of Replace operations reintroduces
    a cycle between steps that the desired graph alone does not have.

    Attributes:
        steps: The step keys left in the residual cycle
    """

    def __init__(self, steps: Sequence[str]) -> None:
        self.steps = list(steps)
        super().__init__(f"Plan contains a residual cycle between steps: {', '.join(self.steps)}")


# ---------------------------------------------------------------------------
# Provider Exceptions
# ---------------------------------------------------------------------------


class TransientProviderError(ProviderError):
    """
    Raised for provider failures that may succeed when retried.

    Timeouts, throttling and server-side (5xx) errors fall in this class.
    The executor retries these with exponential backoff.
    """

    pass


class PermanentProviderError(ProviderError):
    """
    Raised for provider failures that will not succeed on retry.

    Validation rejections and conflicts fall in this class. The executor
    marks the node as failed immediately.
    """

    pass


class UnresolvedReferenceError(PermanentProviderError):
    """Raised when a reference points at an output the target never produced."""

    def __init__(self, resource: str, target: str, attribute: str | None) -> None:
        self.target = target
        self.attribute = attribute
        ref = f"{target}.{attribute}" if attribute else target
        super().__init__(f"Cannot resolve reference ${{{ref}}}", resource=resource)


# ---------------------------------------------------------------------------
# State Exceptions
# ---------------------------------------------------------------------------


class ConcurrentRunError(StateError):
    """
    Raised when another run holds the state lock.

    Attributes:
        owner: Owner recorded in the existing lock
        run_id: Run identifier recorded in the existing lock
    """

    def __init__(self, location: str, owner: str | None = None, run_id: str | None = None) -> None:
        self.location = location
        self.owner = owner
        self.run_id = run_id
        msg = f"State at {location} is locked by another run"
        if owner or run_id:
            msg += f" (owner={owner or 'unknown'}, run={run_id or 'unknown'})"
        msg += ". Wait for it to finish or run 'zae-reconciler state force-unlock'."
        super().__init__(msg)


class StateCorruptError(StateError):
    """Raised when a persisted snapshot cannot be parsed."""

    def __init__(self, location: str, reason: str) -> None:
        self.location = location
        self.reason = reason
        super().__init__(f"State at {location} is unreadable: {reason}")


class IncompatibleStateError(StateError):
    """Raised when a snapshot was written with a newer state format."""

    def __init__(self, found: int, supported: int) -> None:
        self.found = found
        self.supported = supported
        super().__init__(
            f"State format version {found} is newer than supported version {supported}. "
            "Upgrade zae-reconciler to read this state."
        )


# ---------------------------------------------------------------------------
# Input Exceptions
# ---------------------------------------------------------------------------


class ManifestError(ReconcilerError, ValueError):
    """Raised when a manifest is malformed."""

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        if path:
            message = f"{path}: {message}"
        super().__init__(message)


class ConfigurationError(ReconcilerError, ValueError):
    """Raised when an option has an invalid value."""

    def __init__(self, field: str, value: object, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}={value!r}: {reason}")


class LookupFailedError(ReconcilerError):
    """
    Raised when a lookup does not resolve to exactly one existing resource.

    Attributes:
        name: Logical name of the lookup
        kind: Resource kind searched, when known
        reason: What went wrong
    """

    def __init__(self, name: str, reason: str, kind: str | None = None) -> None:
        self.name = name
        self.kind = kind
        self.reason = reason
        label = f"'{name}' ({kind})" if kind else f"'{name}'"
        super().__init__(f"Lookup {label} failed: {reason}")
