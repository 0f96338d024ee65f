"""
zae-reconciler: declarative infrastructure reconciliation.

Given resource declarations and the snapshot of the last apply, this
library computes the minimal set of provider operations and executes
them with maximal safe parallelism:

- Dependency graph from explicit ``depends_on`` and ``${Name.Attr}`` references
- Diff classification (create / update / replace / delete / unchanged)
- Batched scheduling (deletes dependents-first, replaces split in two)
- Concurrent execution with retries, skip propagation and cancellation
- Atomic state snapshots in a local file or DynamoDB
- Read-only lookups of existing resources and stack outputs

Example:
    from zae_reconciler import (
        CloudControlProvider,
        LocalStateStore,
        ProviderRegistry,
        Reconciler,
        StackManifest,
    )

    manifest = StackManifest.from_file("stack.yaml")
    providers = ProviderRegistry().register("AWS::*", CloudControlProvider())
    reconciler = Reconciler(LocalStateStore("stack.state.json"), providers)

    planned = reconciler.plan(manifest.to_specs())
    result = await reconciler.apply(manifest.to_specs())
"""

from .catalog import default_registry
from .config import ExecutorOptions, RetryPolicy
from .differ import compute_diff
from .exceptions import (
    ConcurrentRunError,
    ConfigurationError,
    CycleError,
    DanglingReferenceError,
    DuplicateResourceError,
    IncompatibleStateError,
    LookupFailedError,
    ManifestError,
    PermanentProviderError,
    ProviderError,
    ReconcilerError,
    StateCorruptError,
    StateError,
    StructuralError,
    TransientProviderError,
    UnresolvedReferenceError,
    UnschedulableError,
)
from .executor import Executor
from .graph import ResourceGraph, build_graph
from .lookups import bind_lookups, bind_outputs, resolve_lookups
from .manifest import StackManifest
from .models import (
    Action,
    ApplyResult,
    Batch,
    DiffEntry,
    ExecutionResult,
    Interpolation,
    LookupSpec,
    Operation,
    Plan,
    PlanStep,
    Ref,
    ResourceNode,
    ResourceRecord,
    ResourceSpec,
    StateSnapshot,
    StepStatus,
)
from .providers import (
    CloudControlProvider,
    LookupProtocol,
    ProviderProtocol,
    ProviderRegistry,
    ProviderResult,
)
from .reconciler import PlanResult, Reconciler, resolve_outputs
from .resource_types import ResourceType, TypeRegistry
from .scheduler import schedule
from .state import DynamoDBStateStore, LocalStateStore, StateLock, StateStoreProtocol

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Pipeline
    "build_graph",
    "compute_diff",
    "schedule",
    "Executor",
    "Reconciler",
    "PlanResult",
    "resolve_lookups",
    "bind_lookups",
    "bind_outputs",
    "resolve_outputs",
    # Models
    "Action",
    "ApplyResult",
    "Batch",
    "DiffEntry",
    "ExecutionResult",
    "Interpolation",
    "LookupSpec",
    "Operation",
    "Plan",
    "PlanStep",
    "Ref",
    "ResourceGraph",
    "ResourceNode",
    "ResourceRecord",
    "ResourceSpec",
    "StateSnapshot",
    "StepStatus",
    # Configuration
    "ExecutorOptions",
    "RetryPolicy",
    "ResourceType",
    "TypeRegistry",
    "default_registry",
    "StackManifest",
    # Providers
    "CloudControlProvider",
    "LookupProtocol",
    "ProviderProtocol",
    "ProviderRegistry",
    "ProviderResult",
    # State
    "DynamoDBStateStore",
    "LocalStateStore",
    "StateLock",
    "StateStoreProtocol",
    # Exceptions
    "ReconcilerError",
    "StructuralError",
    "CycleError",
    "DanglingReferenceError",
    "DuplicateResourceError",
    "UnschedulableError",
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
    "UnresolvedReferenceError",
    "StateError",
    "ConcurrentRunError",
    "StateCorruptError",
    "IncompatibleStateError",
    "LookupFailedError",
    "ManifestError",
    "ConfigurationError",
]
