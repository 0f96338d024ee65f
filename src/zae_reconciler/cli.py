"""Command-line interface for zae-reconciler."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import signal
import sys
from collections.abc import Callable
from typing import Any, NoReturn

import click

from .catalog import default_registry
from .config import STATE_TABLE_ENV_VAR, ExecutorOptions, default_state_path
from .differ import compute_diff
from .exceptions import ReconcilerError
from .graph import build_graph
from .lookups import bind_lookups, bind_outputs, resolve_lookups
from .manifest import StackManifest
from .models import ApplyResult, ResourceSpec, StateSnapshot
from .providers import CloudControlProvider, ProviderRegistry
from .reconciler import Reconciler, check_outputs
from .render import (
    TableRenderer,
    outcome_to_dict,
    plan_to_dict,
    render_batches,
    render_graph,
    render_outcome,
    render_outputs,
    render_plan,
)
from .scheduler import schedule
from .state import DynamoDBStateStore, LocalStateStore, StateStoreProtocol

# Exit codes
EXIT_OK = 0
EXIT_INCOMPLETE = 1
EXIT_FATAL = 2


def _state_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Options selecting the state store."""
    f = click.option(
        "--state-key",
        default="default",
        show_default=True,
        help="State key within the DynamoDB table",
    )(f)
    f = click.option(
        "--state-table",
        envvar=STATE_TABLE_ENV_VAR,
        help="DynamoDB table holding the state (instead of a local file)",
    )(f)
    f = click.option(
        "--state",
        "state_path",
        type=click.Path(dir_okay=False),
        help="Local state file (default: $ZAER_STATE or zae-reconciler.state.json)",
    )(f)
    return f


def _aws_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Options for AWS API clients."""
    f = click.option(
        "--endpoint-url",
        help=(
            "AWS endpoint URL "
            "(e.g., http://localhost:4566 for LocalStack, or other AWS-compatible services)"
        ),
    )(f)
    f = click.option(
        "--region",
        help="AWS region (default: use boto3 defaults)",
    )(f)
    return f


def _manifest_option(required: bool = True) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    return click.option(
        "--file",
        "-f",
        "file_path",
        required=required,
        type=click.Path(exists=True, dir_okay=False),
        help="YAML stack manifest.",
    )


@click.group()
@click.version_option(package_name="zae-reconciler")
@click.option("--verbose", "-v", count=True, help="Increase log output (-v info, -vv debug).")
def cli(verbose: int) -> None:
    """zae-reconciler: declarative infrastructure reconciliation."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fail(message: str) -> NoReturn:
    click.echo(f"✗ {message}", err=True)
    sys.exit(EXIT_FATAL)


def _load(file_path: str | None) -> StackManifest:
    if file_path is None:
        return StackManifest()
    return StackManifest.from_file(file_path)


def _bind_offline(manifest: StackManifest) -> tuple[list[ResourceSpec], dict[str, Any]]:
    """Declarations and outputs with every lookup left unknown."""
    unresolved = dict.fromkeys(manifest.lookups)
    return (
        bind_lookups(manifest.to_specs(), unresolved),
        bind_outputs(manifest.to_outputs(), unresolved),
    )


async def _bind(
    manifest: StackManifest, providers: ProviderRegistry
) -> tuple[list[ResourceSpec], dict[str, Any]]:
    """Declarations and outputs with lookups resolved through ``providers``."""
    resolved = await resolve_lookups(manifest.to_lookups(), providers)
    return (
        bind_lookups(manifest.to_specs(), resolved),
        bind_outputs(manifest.to_outputs(), resolved),
    )


async def _bind_and_close(
    manifest: StackManifest, providers: ProviderRegistry
) -> list[ResourceSpec]:
    try:
        specs, _ = await _bind(manifest, providers)
        return specs
    finally:
        await providers.close()


def _build_store(
    state_path: str | None,
    state_table: str | None,
    state_key: str,
    region: str | None,
    endpoint_url: str | None,
) -> StateStoreProtocol:
    if state_table:
        return DynamoDBStateStore(
            state_table, key=state_key, region=region, endpoint_url=endpoint_url
        )
    return LocalStateStore(state_path or default_state_path())


def _build_providers(region: str | None, endpoint_url: str | None) -> ProviderRegistry:
    """Provider registry used by apply, destroy and lookups."""
    provider = CloudControlProvider(region=region, endpoint_url=endpoint_url)
    return ProviderRegistry().register("AWS::*", provider)


def _build_options(concurrency: int | None, max_attempts: int | None) -> ExecutorOptions:
    options = ExecutorOptions.from_env()
    if concurrency is not None:
        options = dataclasses.replace(options, max_concurrency=concurrency)
    if max_attempts is not None:
        retry = dataclasses.replace(options.retry, max_attempts=max_attempts)
        options = dataclasses.replace(options, retry=retry)
    return options


async def _run(
    store: StateStoreProtocol,
    providers: ProviderRegistry,
    options: ExecutorOptions,
    manifest: StackManifest,
    destroy: bool,
) -> ApplyResult:
    """Apply under SIGINT/SIGTERM handlers that cancel pending steps."""
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal() -> None:
        if not cancel.is_set():
            click.echo("Interrupt received: finishing in-flight steps...", err=True)
        cancel.set()

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(sig, _on_signal)
            installed.append(sig)

    try:
        reconciler = Reconciler(store, providers, options=options)
        if destroy:
            specs, _ = _bind_offline(manifest)
            return await reconciler.destroy(specs, cancel)
        specs, outputs = await _bind(manifest, providers)
        return await reconciler.apply(specs, cancel, outputs=outputs)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await providers.close()


def _execute(
    file_path: str | None,
    state_path: str | None,
    state_table: str | None,
    state_key: str,
    region: str | None,
    endpoint_url: str | None,
    concurrency: int | None,
    max_attempts: int | None,
    as_json: bool,
    destroy: bool,
) -> None:
    try:
        manifest = _load(file_path)
        options = _build_options(concurrency, max_attempts)
        store = _build_store(state_path, state_table, state_key, region, endpoint_url)
        providers = _build_providers(region, endpoint_url)
        result = asyncio.run(_run(store, providers, options, manifest, destroy))
    except ReconcilerError as e:
        _fail(str(e))

    if as_json:
        click.echo(json.dumps(outcome_to_dict(result), indent=2))
    else:
        if not result.results:
            click.echo("No changes. Infrastructure is up-to-date.")
        else:
            click.echo(render_outcome(result))
        if result.snapshot.outputs:
            click.echo()
            click.echo(render_outputs(result.snapshot.outputs))

    if not result.ok:
        sys.exit(EXIT_INCOMPLETE)


# ---------------------------------------------------------------------------
# Pipeline commands
# ---------------------------------------------------------------------------


@cli.command()
@_manifest_option()
@_state_options
@_aws_options
@click.option("--destroy", is_flag=True, help="Plan deletion of every recorded resource.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def plan(
    file_path: str,
    state_path: str | None,
    state_table: str | None,
    state_key: str,
    region: str | None,
    endpoint_url: str | None,
    destroy: bool,
    as_json: bool,
) -> None:
    """Preview changes without applying them."""
    try:
        manifest = _load(file_path)
        if manifest.lookups and not destroy:
            specs = asyncio.run(_bind_and_close(manifest, _build_providers(region, endpoint_url)))
        else:
            specs, _ = _bind_offline(manifest)
        store = _build_store(state_path, state_table, state_key, region, endpoint_url)
        reconciler = Reconciler(store, ProviderRegistry())
        planned = reconciler.plan(specs, destroy=destroy)
    except ReconcilerError as e:
        _fail(str(e))

    if as_json:
        click.echo(json.dumps(plan_to_dict(planned.plan), indent=2, default=str))
        return

    click.echo(render_plan(planned.plan))
    if planned.has_changes:
        click.echo()
        click.echo(render_batches(planned.plan))


@cli.command()
@_manifest_option()
@_state_options
@_aws_options
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    help="Maximum provider calls in flight per batch (default: $ZAER_MAX_CONCURRENCY or 8)",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    help="Attempts per step on transient errors (default: $ZAER_MAX_ATTEMPTS or 5)",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def apply(
    file_path: str,
    state_path: str | None,
    state_table: str | None,
    state_key: str,
    region: str | None,
    endpoint_url: str | None,
    concurrency: int | None,
    max_attempts: int | None,
    as_json: bool,
) -> None:
    """Apply the manifest: create, update, replace and delete resources."""
    _execute(
        file_path,
        state_path,
        state_table,
        state_key,
        region,
        endpoint_url,
        concurrency,
        max_attempts,
        as_json,
        destroy=False,
    )


@cli.command()
@_manifest_option(required=False)
@_state_options
@_aws_options
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    help="Maximum provider calls in flight per batch",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    help="Attempts per step on transient errors",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def destroy(
    file_path: str | None,
    state_path: str | None,
    state_table: str | None,
    state_key: str,
    region: str | None,
    endpoint_url: str | None,
    concurrency: int | None,
    max_attempts: int | None,
    as_json: bool,
    yes: bool,
) -> None:
    """Delete every resource recorded in the state."""
    if not yes:
        click.confirm("Are you sure you want to destroy all recorded resources?", abort=True)

    _execute(
        file_path,
        state_path,
        state_table,
        state_key,
        region,
        endpoint_url,
        concurrency,
        max_attempts,
        as_json,
        destroy=True,
    )


@cli.command()
@_manifest_option()
def graph(file_path: str) -> None:
    """Show build order and the batches of a fresh deployment."""
    try:
        specs, _ = _bind_offline(_load(file_path))
        resource_graph = build_graph(specs)
        types = default_registry()
        diffs = compute_diff(resource_graph, StateSnapshot.empty(), types)
        fresh = schedule(diffs, resource_graph, types)
    except ReconcilerError as e:
        _fail(str(e))

    click.echo(render_graph(resource_graph))
    click.echo()
    click.echo(render_batches(fresh))


@cli.command()
@_manifest_option()
def validate(file_path: str) -> None:
    """Check that the manifest forms a valid resource graph."""
    try:
        manifest = _load(file_path)
        specs, outputs = _bind_offline(manifest)
        resource_graph = build_graph(specs)
        check_outputs(outputs, resource_graph)
    except ReconcilerError as e:
        _fail(str(e))
    summary = f"{len(resource_graph)} resources"
    if manifest.lookups:
        summary += f", {len(manifest.lookups)} lookups"
    click.echo(f"✓ {file_path}: {summary}")


# ---------------------------------------------------------------------------
# State commands
# ---------------------------------------------------------------------------


@cli.group()
def state() -> None:
    """Inspect and manage stored state."""


@state.command("show")
@_state_options
@_aws_options
def state_show(
    state_path: str | None,
    state_table: str | None,
    state_key: str,
    region: str | None,
    endpoint_url: str | None,
) -> None:
    """Print the stored snapshot as JSON."""
    try:
        store = _build_store(state_path, state_table, state_key, region, endpoint_url)
        snapshot = store.load()
    except ReconcilerError as e:
        _fail(str(e))
    click.echo(json.dumps(snapshot.to_dict(), indent=2, sort_keys=True))


@state.command("list")
@_state_options
@_aws_options
def state_list(
    state_path: str | None,
    state_table: str | None,
    state_key: str,
    region: str | None,
    endpoint_url: str | None,
) -> None:
    """List recorded resources."""
    try:
        store = _build_store(state_path, state_table, state_key, region, endpoint_url)
        snapshot = store.load()
        lock = store.read_lock()
    except ReconcilerError as e:
        _fail(str(e))

    if not snapshot.resources:
        click.echo("No resources recorded.")
    else:
        rows = [
            [name, record.kind, record.provider_id]
            for name, record in sorted(snapshot.resources.items())
        ]
        click.echo(TableRenderer(["Resource", "Kind", "Provider ID"]).render(rows))
        click.echo(f"Serial: {snapshot.serial}  Lineage: {snapshot.lineage}")
        if snapshot.outputs:
            click.echo(render_outputs(snapshot.outputs))

    if lock is not None:
        click.echo(f"Locked by {lock.owner} (run {lock.run_id})")


@state.command("force-unlock")
@_state_options
@_aws_options
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def state_force_unlock(
    state_path: str | None,
    state_table: str | None,
    state_key: str,
    region: str | None,
    endpoint_url: str | None,
    yes: bool,
) -> None:
    """Remove a stale state lock."""
    try:
        store = _build_store(state_path, state_table, state_key, region, endpoint_url)
        lock = store.read_lock()
    except ReconcilerError as e:
        _fail(str(e))

    if lock is None:
        click.echo("State is not locked.")
        return
    if not yes:
        click.confirm(
            f"Remove lock held by {lock.owner} (run {lock.run_id})?",
            abort=True,
        )
    try:
        store.force_unlock()
    except ReconcilerError as e:
        _fail(str(e))
    click.echo(f"✓ Lock on {store.location} removed")


@state.command("init")
@_state_options
@_aws_options
def state_init(
    state_path: str | None,
    state_table: str | None,
    state_key: str,
    region: str | None,
    endpoint_url: str | None,
) -> None:
    """Create the DynamoDB state table."""
    if not state_table:
        _fail("state init requires --state-table (local state files need no setup)")

    store = DynamoDBStateStore(state_table, key=state_key, region=region, endpoint_url=endpoint_url)
    try:
        store.create_table()
    except Exception as e:
        _fail(f"Failed to create table: {e}")
    click.echo(f"✓ State table '{state_table}' ready")


if __name__ == "__main__":
    cli()
