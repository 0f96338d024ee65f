"""Reconciler: the plan / apply / destroy pipeline.

Wires the pieces together in the fixed order

    declarations -> build_graph -> compute_diff -> schedule -> Executor

with the state store read once per run (after the lease is taken) and
written by the executor after every batch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any

from .catalog import default_registry
from .config import ExecutorOptions
from .differ import compute_diff
from .exceptions import DanglingReferenceError
from .executor import Executor
from .graph import ResourceGraph, build_graph
from .models import Action, ApplyResult, DiffEntry, Plan, Ref, ResourceSpec, StateSnapshot
from .providers.protocol import ProviderRegistry
from .refs import UNKNOWN, contains_unknown, iter_refs, resolve
from .resource_types import TypeRegistry
from .scheduler import schedule
from .state.protocol import StateStoreProtocol, default_owner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanResult:
    """Everything computed before execution."""

    graph: ResourceGraph
    snapshot: StateSnapshot
    diffs: tuple[DiffEntry, ...]
    plan: Plan

    @property
    def has_changes(self) -> bool:
        return not self.plan.is_empty


class Reconciler:
    """
    Drives desired declarations to applied state.

    Example:
        store = LocalStateStore("stack.state.json")
        providers = ProviderRegistry().register("AWS::*", CloudControlProvider())
        reconciler = Reconciler(store, providers)

        result = await reconciler.apply(StackManifest.from_file("stack.yaml").to_specs())
        if not result.ok:
            ...

    Args:
        store: Snapshot persistence and run lease
        providers: Provider lookup by resource kind
        types: Comparison policies per kind (default: built-in AWS catalog)
        options: Concurrency, retry and lease settings
        owner: Lock owner name (default: ``user@host``)
    """

    def __init__(
        self,
        store: StateStoreProtocol,
        providers: ProviderRegistry,
        types: TypeRegistry | None = None,
        options: ExecutorOptions | None = None,
        owner: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.providers = providers
        self.types = types if types is not None else default_registry()
        self.options = options or ExecutorOptions()
        self.owner = owner or default_owner()
        self._sleep = sleep

    def plan(self, specs: Iterable[ResourceSpec], destroy: bool = False) -> PlanResult:
        """
        Compute the plan for ``specs`` against the stored snapshot.

        With ``destroy=True`` the declarations are still validated, but the
        plan is computed against an empty desired graph.

        Raises:
            StructuralError: If the declarations or the plan are malformed
            StateError: If the snapshot cannot be read
        """
        graph = build_graph(specs)
        if destroy:
            graph = ResourceGraph()
        snapshot = self.store.load()
        return self._plan(graph, snapshot)

    def _plan(self, graph: ResourceGraph, snapshot: StateSnapshot) -> PlanResult:
        diffs = compute_diff(graph, snapshot, self.types)
        plan = schedule(diffs, graph, self.types)
        summary = plan.summary()
        logger.info(
            "Plan: %d to create, %d to update, %d to replace, %d to delete, %d unchanged",
            summary["create"],
            summary["update"],
            summary["replace"],
            summary["delete"],
            summary["unchanged"],
        )
        return PlanResult(graph=graph, snapshot=snapshot, diffs=tuple(diffs), plan=plan)

    async def apply(
        self,
        specs: Iterable[ResourceSpec],
        cancel: asyncio.Event | None = None,
        destroy: bool = False,
        outputs: Mapping[str, Any] | None = None,
    ) -> ApplyResult:
        """
        Plan and execute under the state lease.

        Args:
            specs: Desired declarations
            cancel: When set, no new step is started
            destroy: Delete everything recorded instead of applying ``specs``
            outputs: Stack outputs to resolve against the final snapshot and
                     store with it (None keeps the stored outputs)

        Raises:
            ConcurrentRunError: If another run holds the lease
            StructuralError: If the declarations, outputs or plan are malformed
        """
        specs = list(specs)
        # Validate before taking the lease
        graph = build_graph(specs)
        if outputs is not None:
            check_outputs(outputs, graph)
        if destroy:
            graph = ResourceGraph()
            outputs = {}

        lock = self.store.acquire_lock(self.owner, self.options.lock_ttl_seconds)
        try:
            planned = self._plan(graph, self.store.load())
            snapshot = self._refresh(planned)

            executor = Executor(self.providers, self.store, self.options, sleep=self._sleep)
            result = await executor.execute(planned.plan, snapshot, cancel)

            if destroy and result.ok and not result.snapshot.resources:
                self.store.delete()
                logger.info("Destroyed all resources; removed state at %s", self.store.location)
                return replace(result, snapshot=replace(result.snapshot, outputs={}))
            if outputs is not None:
                values = resolve_outputs(outputs, result.snapshot)
                if values != result.snapshot.outputs:
                    final = self.store.save(replace(result.snapshot, outputs=values))
                    result = replace(result, snapshot=final)
            return result
        finally:
            self.store.release_lock(lock)

    async def destroy(
        self,
        specs: Iterable[ResourceSpec] = (),
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Delete every resource recorded in the snapshot."""
        return await self.apply(specs, cancel, destroy=True)

    def _refresh(self, planned: PlanResult) -> StateSnapshot:
        """
        Bring recorded dependencies of unchanged resources up to date.

        A ``depends_on`` edit changes no property, so such resources never
        get a step, but later deletes are ordered by the recorded edges.
        """
        snapshot = planned.snapshot
        for entry in planned.diffs:
            if entry.action is not Action.UNCHANGED:
                continue
            assert entry.desired is not None and entry.prior is not None
            if entry.prior.dependencies != entry.desired.dependencies:
                record = replace(entry.prior, dependencies=entry.desired.dependencies)
                snapshot = snapshot.with_record(entry.name, record)

        if snapshot is planned.snapshot:
            return snapshot
        logger.debug("Refreshing recorded dependencies in %s", self.store.location)
        return self.store.save(snapshot)


def check_outputs(outputs: Mapping[str, Any], graph: ResourceGraph) -> None:
    """Raise DanglingReferenceError for an output naming an undeclared resource."""
    for name, value in outputs.items():
        for ref in iter_refs(value):
            if ref.target not in graph:
                raise DanglingReferenceError(f"outputs.{name}", ref.target)


def resolve_outputs(outputs: Mapping[str, Any], snapshot: StateSnapshot) -> dict[str, Any]:
    """
    Resolve stack outputs against applied resources.

    An output referencing a resource or attribute that is not in
    ``snapshot`` (for example because its create failed) is left out.
    """

    def lookup(ref: Ref) -> Any:
        record = snapshot.get(ref.target)
        if record is None:
            return UNKNOWN
        if ref.attribute is None:
            return record.provider_id
        return record.outputs.get(ref.attribute, UNKNOWN)

    values: dict[str, Any] = {}
    for name, value in outputs.items():
        resolved = resolve(value, lookup)
        if contains_unknown(resolved):
            logger.warning("Output %s references resources that were not applied", name)
            continue
        values[name] = resolved
    return values
