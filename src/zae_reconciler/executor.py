"""Plan execution against provider APIs.

Batches run strictly in order; the steps of one batch run concurrently,
bounded by ``ExecutorOptions.max_concurrency``. After every batch the
working snapshot is saved, so an interrupted run leaves a snapshot that
describes exactly the steps that completed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from .config import ExecutorOptions
from .exceptions import (
    PermanentProviderError,
    TransientProviderError,
    UnresolvedReferenceError,
)
from .models import (
    Action,
    ApplyResult,
    ExecutionResult,
    Operation,
    Plan,
    PlanStep,
    Ref,
    ResourceRecord,
    StateSnapshot,
    StepStatus,
)
from .providers.protocol import ProviderRegistry
from .refs import resolve
from .state.protocol import StateStoreProtocol

logger = logging.getLogger(__name__)

DEPOSED_SUFFIX = "~deposed"
"""Suffix under which an old resource is kept while its replacement exists."""

CANCELED_REASON = "canceled"


def deposed_name(name: str) -> str:
    """Snapshot key of the old resource during a create-before-destroy replace."""
    return f"{name}{DEPOSED_SUFFIX}"


class _StepOutcome:
    """A step's result plus the snapshot change it implies."""

    def __init__(
        self,
        result: ExecutionResult,
        record: ResourceRecord | None = None,
    ) -> None:
        self.result = result
        self.record = record


class Executor:
    """
    Applies a plan batch by batch.

    Transient provider errors are retried with exponential backoff up to
    ``options.retry.max_attempts``; permanent errors fail the step at once.
    Steps whose prerequisites failed or were skipped are skipped.

    Args:
        providers: Provider lookup by resource kind
        store: Where to persist the snapshot after each batch (optional)
        options: Concurrency, retry and timeout settings
        sleep: Coroutine used for backoff delays (injectable for tests)
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        store: StateStoreProtocol | None = None,
        options: ExecutorOptions | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.providers = providers
        self.store = store
        self.options = options or ExecutorOptions()
        self._sleep = sleep

    async def execute(
        self,
        plan: Plan,
        snapshot: StateSnapshot,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """
        Execute every batch of ``plan``.

        Args:
            plan: The plan to apply
            snapshot: Snapshot the plan was computed against
            cancel: When set, no new step is started; in-flight steps finish

        Returns:
            ApplyResult with one ExecutionResult per step and the final snapshot
        """
        results: list[ExecutionResult] = []
        unsuccessful: dict[str, StepStatus] = {}
        semaphore = asyncio.Semaphore(self.options.max_concurrency)

        for index, batch in enumerate(plan.batches, start=1):
            logger.info(
                "Batch %d/%d: %s",
                index,
                len(plan.batches),
                ", ".join(step.key for step in batch),
            )

            pending: list[PlanStep] = []
            outcomes: list[_StepOutcome] = []
            for step in batch:
                if cancel is not None and cancel.is_set():
                    outcomes.append(_skipped(step, CANCELED_REASON))
                    continue
                blocked = sorted(step.requires & unsuccessful.keys())
                if blocked:
                    outcomes.append(_skipped(step, f"prerequisite {blocked[0]} did not apply"))
                    continue
                pending.append(step)

            # Resolve references against the snapshot as of the previous batch
            current = snapshot
            outcomes.extend(
                await asyncio.gather(
                    *(self._run_step(step, current, semaphore, cancel) for step in pending)
                )
            )

            for step, outcome in _in_batch_order(batch.steps, outcomes):
                results.append(outcome.result)
                if outcome.result.status is StepStatus.APPLIED:
                    snapshot = _apply_to_snapshot(snapshot, step, outcome.record)
                else:
                    unsuccessful[step.key] = outcome.result.status

            snapshot = self._persist(snapshot)

        canceled = cancel is not None and cancel.is_set()
        return ApplyResult(results=results, snapshot=snapshot, canceled=canceled)

    def _persist(self, snapshot: StateSnapshot) -> StateSnapshot:
        if self.store is None:
            return snapshot
        return self.store.save(snapshot)

    async def _run_step(
        self,
        step: PlanStep,
        snapshot: StateSnapshot,
        semaphore: asyncio.Semaphore,
        cancel: asyncio.Event | None,
    ) -> _StepOutcome:
        async with semaphore:
            if cancel is not None and cancel.is_set():
                return _skipped(step, CANCELED_REASON)

            started = time.monotonic()
            attempt = 0
            try:
                properties = _resolve_properties(step, snapshot)
            except UnresolvedReferenceError as e:
                logger.warning("%s failed: %s", step.key, e)
                return _failed(step, str(e), attempt, started)

            while True:
                attempt += 1
                logger.debug("%s attempt %d", step.key, attempt)
                try:
                    record = await self._call_with_timeout(step, properties)
                except (TransientProviderError, TimeoutError) as e:
                    cause = str(e) or "timed out"
                    if attempt >= self.options.retry.max_attempts:
                        logger.warning("%s failed after %d attempts: %s", step.key, attempt, cause)
                        cause = f"{cause} (gave up after {attempt} attempts)"
                        return _failed(step, cause, attempt, started)
                    if cancel is not None and cancel.is_set():
                        return _failed(step, f"{cause} (canceled before retry)", attempt, started)
                    delay = self.options.retry.delay(attempt)
                    logger.warning(
                        "%s transient failure: %s; retrying in %.2fs", step.key, cause, delay
                    )
                    await self._sleep(delay)
                    continue
                except PermanentProviderError as e:
                    logger.warning("%s failed: %s", step.key, e)
                    return _failed(step, str(e), attempt, started)
                except Exception as e:
                    logger.warning(
                        "%s failed with unexpected error: %s", step.key, e, exc_info=True
                    )
                    return _failed(step, f"{type(e).__name__}: {e}", attempt, started)

                logger.info("%s applied", step.key)
                result = ExecutionResult(
                    name=step.name,
                    operation=step.operation,
                    status=StepStatus.APPLIED,
                    attempts=attempt,
                    duration_seconds=time.monotonic() - started,
                )
                return _StepOutcome(result, record)

    async def _call_with_timeout(
        self,
        step: PlanStep,
        properties: dict[str, Any],
    ) -> ResourceRecord | None:
        call = self._call(step, properties)
        if self.options.step_timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout=self.options.step_timeout)

    async def _call(self, step: PlanStep, properties: dict[str, Any]) -> ResourceRecord | None:
        entry = step.entry

        if step.operation is Operation.DELETE:
            assert entry.prior is not None
            provider = self.providers.get(entry.prior.kind)
            await provider.delete(entry.prior.kind, entry.prior.provider_id)
            return None

        assert entry.desired is not None
        node = entry.desired
        provider = self.providers.get(node.kind)

        if step.operation is Operation.CREATE:
            created = await provider.create(node.kind, properties)
            return ResourceRecord(
                kind=node.kind,
                properties=properties,
                provider_id=created.provider_id,
                outputs=dict(created.outputs),
                dependencies=node.dependencies,
            )

        assert entry.prior is not None
        outputs = await provider.update(
            node.kind, entry.prior.provider_id, properties, entry.prior.properties
        )
        return ResourceRecord(
            kind=node.kind,
            properties=properties,
            provider_id=entry.prior.provider_id,
            outputs=dict(outputs) if outputs is not None else dict(entry.prior.outputs),
            dependencies=node.dependencies,
        )


def _resolve_properties(step: PlanStep, snapshot: StateSnapshot) -> dict[str, Any]:
    """Substitute references with applied outputs from ``snapshot``."""
    if step.operation is Operation.DELETE or step.entry.desired is None:
        return {}

    def lookup(ref: Ref) -> Any:
        record = snapshot.get(ref.target)
        if record is None:
            raise UnresolvedReferenceError(step.name, ref.target, ref.attribute)
        if ref.attribute is None:
            return record.provider_id
        if ref.attribute not in record.outputs:
            raise UnresolvedReferenceError(step.name, ref.target, ref.attribute)
        return record.outputs[ref.attribute]

    resolved: dict[str, Any] = resolve(step.entry.desired.properties, lookup)
    return resolved


def _apply_to_snapshot(
    snapshot: StateSnapshot,
    step: PlanStep,
    record: ResourceRecord | None,
) -> StateSnapshot:
    """Record the effect of an applied step."""
    name = step.name
    replacing = step.entry.action is Action.REPLACE

    if step.operation is Operation.DELETE:
        if replacing and deposed_name(name) in snapshot:
            return snapshot.without(deposed_name(name))
        return snapshot.without(name)

    assert record is not None
    if replacing and step.operation is Operation.CREATE and name in snapshot:
        # Old resource still exists (create before destroy): keep tracking it
        old = snapshot.resources[name]
        snapshot = snapshot.with_record(deposed_name(name), old)
    return snapshot.with_record(name, record)


def _in_batch_order(
    steps: tuple[PlanStep, ...],
    outcomes: list[_StepOutcome],
) -> list[tuple[PlanStep, _StepOutcome]]:
    by_key = {o.result.key: o for o in outcomes}
    return [(step, by_key[step.key]) for step in steps]


def _skipped(step: PlanStep, reason: str) -> _StepOutcome:
    logger.info("%s skipped: %s", step.key, reason)
    return _StepOutcome(
        ExecutionResult(
            name=step.name,
            operation=step.operation,
            status=StepStatus.SKIPPED,
            reason=reason,
        )
    )


def _failed(step: PlanStep, cause: str, attempts: int, started: float) -> _StepOutcome:
    return _StepOutcome(
        ExecutionResult(
            name=step.name,
            operation=step.operation,
            status=StepStatus.FAILED,
            cause=cause,
            attempts=attempts,
            duration_seconds=time.monotonic() - started,
        )
    )
