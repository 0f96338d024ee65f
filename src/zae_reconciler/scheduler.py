"""Plan scheduling.

Orders diff entries into batches of independent provider operations.
Creates and updates follow the desired graph (dependencies first);
deletes follow the prior graph in reverse (dependents first). A Replace
is split into a delete step and a create step.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from .exceptions import UnschedulableError
from .graph import ResourceGraph
from .models import Action, Batch, DiffEntry, Operation, Plan, PlanStep, step_key
from .resource_types import TypeRegistry

logger = logging.getLogger(__name__)


def schedule(
    diffs: Iterable[DiffEntry],
    graph: ResourceGraph,
    types: TypeRegistry | None = None,
) -> Plan:
    """
    Build a batched plan from diff entries.

    Args:
        diffs: Output of ``compute_diff``
        graph: The desired graph the diff was computed from
        types: Policies used to decide Replace ordering

    Returns:
        Plan whose batches are in execution order

    Raises:
        UnschedulableError: If the steps contain a residual cycle
    """
    types = types or TypeRegistry()
    entries = list(diffs)
    steps: dict[str, tuple[str, Operation, DiffEntry]] = {}
    apply_key: dict[str, str] = {}
    delete_key: dict[str, str] = {}

    for entry in entries:
        if entry.action in (Action.DELETE, Action.REPLACE):
            key = step_key(Operation.DELETE, entry.name)
            steps[key] = (entry.name, Operation.DELETE, entry)
            delete_key[entry.name] = key
        if entry.action in (Action.CREATE, Action.REPLACE):
            key = step_key(Operation.CREATE, entry.name)
            steps[key] = (entry.name, Operation.CREATE, entry)
            apply_key[entry.name] = key
        elif entry.action is Action.UPDATE:
            key = step_key(Operation.UPDATE, entry.name)
            steps[key] = (entry.name, Operation.UPDATE, entry)
            apply_key[entry.name] = key

    requires: dict[str, set[str]] = {key: set() for key in steps}

    # --- Creates and updates: dependency before dependent ---
    def desired_deps(name: str) -> tuple[str, ...]:
        return graph.dependencies(name) if name in graph else ()

    for name, key in apply_key.items():
        for dep in _nearest_with_step(name, desired_deps, apply_key):
            requires[key].add(apply_key[dep])

    # --- Deletes: dependent before dependency, using the prior graph ---
    prior_deps = {e.name: e.prior.dependencies for e in entries if e.prior is not None}

    def recorded_deps(name: str) -> tuple[str, ...]:
        return prior_deps.get(name, ())

    for name, key in delete_key.items():
        for dep in _nearest_with_step(name, recorded_deps, delete_key):
            requires[delete_key[dep]].add(key)

    # A removed resource goes only after surviving dependents stop referencing it
    updated = {e.name for e in entries if e.action is Action.UPDATE}
    removed = {e.name for e in entries if e.action is Action.DELETE}
    for dependent, deps in prior_deps.items():
        if dependent not in updated:
            continue
        for dep in deps:
            if dep in removed:
                requires[delete_key[dep]].add(apply_key[dependent])

    # --- Replace pairs ---
    for entry in entries:
        if entry.action is not Action.REPLACE:
            continue
        create = apply_key[entry.name]
        delete = delete_key[entry.name]
        if types.get(entry.kind).create_before_destroy:
            requires[delete].add(create)
            # Prior dependents must move to the new resource before the old one goes
            for dependent, deps in prior_deps.items():
                if entry.name in deps and dependent in apply_key and dependent != entry.name:
                    requires[delete].add(apply_key[dependent])
        else:
            requires[create].add(delete)

    position = {key: i for i, key in enumerate(steps)}
    batches = _layered_sort(requires, position.__getitem__)

    plan = Plan(
        batches=tuple(
            Batch(
                tuple(
                    PlanStep(
                        name=steps[key][0],
                        operation=steps[key][1],
                        entry=steps[key][2],
                        requires=frozenset(requires[key]),
                    )
                    for key in batch
                )
            )
            for batch in batches
        ),
        entries=tuple(entries),
    )
    logger.debug("Scheduled %d steps in %d batches", len(steps), len(plan.batches))
    return plan


def _nearest_with_step(
    name: str,
    deps_of: Callable[[str], Iterable[str]],
    has_step: dict[str, str],
) -> set[str]:
    """
    Find the closest dependencies of ``name`` that have a step.

    Walks through dependencies without a step (unchanged resources) so
    ordering constraints still hold transitively across them.
    """
    found: set[str] = set()
    seen: set[str] = set()
    pending = list(deps_of(name))
    while pending:
        dep = pending.pop()
        if dep in seen or dep == name:
            continue
        seen.add(dep)
        if dep in has_step:
            found.add(dep)
        else:
            pending.extend(deps_of(dep))
    return found


def _layered_sort(
    requires: dict[str, set[str]],
    sort_key: Callable[[str], int],
) -> list[list[str]]:
    """Kahn's algorithm, emitting every zero in-degree step as one batch."""
    indegree = {key: len(before) for key, before in requires.items()}
    successors: dict[str, list[str]] = {key: [] for key in requires}
    for key, before in requires.items():
        for prerequisite in before:
            successors[prerequisite].append(key)

    batches: list[list[str]] = []
    ready = sorted((k for k, d in indegree.items() if d == 0), key=sort_key)
    placed = 0
    while ready:
        batches.append(ready)
        placed += len(ready)
        next_ready: list[str] = []
        for key in ready:
            for successor in successors[key]:
                indegree[successor] -= 1
                if indegree[successor] == 0:
                    next_ready.append(successor)
        ready = sorted(next_ready, key=sort_key)

    if placed != len(requires):
        remaining = {k for k, d in indegree.items() if d > 0}
        raise UnschedulableError(sorted(_cycle_members(remaining, successors), key=sort_key))
    return batches


def _cycle_members(remaining: set[str], successors: dict[str, list[str]]) -> set[str]:
    """Strip steps that merely wait on a cycle, leaving the cycle itself."""
    members = set(remaining)
    changed = True
    while changed:
        changed = False
        for key in list(members):
            if not any(s in members for s in successors[key]):
                members.discard(key)
                changed = True
    return members
