"""Tests for the plan / apply / destroy pipeline."""

import asyncio
from unittest.mock import patch

import pytest

from tests.fixtures.providers import example_stack, spec
from zae_reconciler.exceptions import (
    ConcurrentRunError,
    CycleError,
    DanglingReferenceError,
    PermanentProviderError,
)
from zae_reconciler.manifest import StackManifest
from zae_reconciler.models import Interpolation, Ref, StepStatus
from zae_reconciler.reconciler import Reconciler
from zae_reconciler.resource_types import TypeRegistry


@pytest.fixture
def reconciler(store, providers, options, fake_sleep):
    return Reconciler(
        store,
        providers,
        types=TypeRegistry(),
        options=options,
        owner="tester@host",
        sleep=fake_sleep,
    )


class TestPlan:
    """Tests for Reconciler.plan."""

    def test_plan_against_empty_state(self, reconciler, provider):
        planned = reconciler.plan(example_stack())

        assert planned.has_changes
        assert planned.plan.summary()["create"] == 4
        assert len(planned.plan.batches) == 3
        assert provider.calls == []

    def test_plan_does_not_lock(self, reconciler, store):
        reconciler.plan(example_stack())

        assert store.read_lock() is None

    async def test_destroy_plan_deletes_everything(self, reconciler):
        await reconciler.apply(example_stack())

        planned = reconciler.plan(example_stack(), destroy=True)

        assert planned.plan.summary()["delete"] == 4
        assert planned.plan.batches[0].names == ["Service"]


class TestApply:
    """Tests for Reconciler.apply."""

    async def test_first_apply_creates_and_persists(self, reconciler, store):
        result = await reconciler.apply(example_stack())

        assert result.ok
        assert len(result.applied) == 4
        stored = store.load()
        assert set(stored.resources) == {"Network", "Cluster", "Balancer", "Service"}
        assert stored == result.snapshot
        assert store.read_lock() is None

    async def test_unquoted_yaml_date_is_recorded(self, reconciler, store, provider):
        manifest = StackManifest.from_yaml(
            "resources:\n"
            "  Role:\n"
            "    kind: AWS::IAM::Role\n"
            "    properties:\n"
            "      Name: Role\n"
            "      AssumeRolePolicyDocument:\n"
            "        Version: 2012-10-17\n"
        )

        result = await reconciler.apply(manifest.to_specs())

        assert result.ok
        assert provider.calls == [("create", "Role")]
        recorded = store.load().resources["Role"].properties
        assert recorded["AssumeRolePolicyDocument"] == {"Version": "2012-10-17"}

    async def test_second_apply_is_noop(self, reconciler, store, provider):
        await reconciler.apply(example_stack())
        calls = list(provider.calls)
        serial = store.load().serial

        result = await reconciler.apply(example_stack())

        assert result.results == []
        assert provider.calls == calls
        assert store.load().serial == serial
        assert not reconciler.plan(example_stack()).has_changes

    async def test_changed_property_updates_in_place(self, reconciler, provider):
        await reconciler.apply(example_stack())
        provider.calls.clear()
        specs = example_stack()
        specs[0] = spec("Network", Cidr="10.1.0.0/16")

        result = await reconciler.apply(specs)

        assert result.ok
        assert provider.calls == [("update", "Network")]

    async def test_removed_resource_deleted(self, reconciler, provider, store):
        await reconciler.apply(example_stack())
        provider.calls.clear()

        await reconciler.apply([s for s in example_stack() if s.name != "Service"])

        assert provider.calls == [("delete", "Service")]
        assert "Service" not in store.load()

    async def test_partial_failure_resumes(self, reconciler, provider, store):
        """A failed run leaves state that the next run completes from."""
        provider.fail("create", "Cluster", PermanentProviderError("quota exceeded"))

        first = await reconciler.apply(example_stack())

        assert not first.ok
        assert first.by_node()["Service"] is StepStatus.SKIPPED
        assert set(store.load().resources) == {"Network", "Balancer"}
        assert store.read_lock() is None

        provider.calls.clear()
        second = await reconciler.apply(example_stack())

        assert second.ok
        assert provider.calls == [("create", "Cluster"), ("create", "Service")]

    async def test_dependency_edit_refreshes_state(self, reconciler, provider, store):
        """A new depends_on is recorded even though no property changed."""
        await reconciler.apply(example_stack())
        provider.calls.clear()
        specs = example_stack()
        specs[1] = spec("Cluster", depends_on=("Balancer",), NetworkId=Ref("Network"))

        result = await reconciler.apply(specs)

        assert result.results == []
        assert provider.calls == []
        assert set(store.load().resources["Cluster"].dependencies) == {"Balancer", "Network"}

    async def test_cancel_before_start(self, reconciler, provider, store):
        cancel = asyncio.Event()
        cancel.set()

        result = await reconciler.apply(example_stack(), cancel)

        assert result.canceled
        assert provider.calls == []
        assert store.read_lock() is None


class TestApplyErrors:
    """Tests for errors raised before or around execution."""

    async def test_held_lock_fails_before_provider_calls(self, reconciler, store, provider):
        other = store.acquire_lock("someone@else", 60)

        with pytest.raises(ConcurrentRunError) as exc_info:
            await reconciler.apply(example_stack())

        assert exc_info.value.owner == "someone@else"
        assert provider.calls == []
        assert store.read_lock() == other

    async def test_structural_error_before_lock(self, reconciler, store):
        with (
            patch.object(store, "acquire_lock") as acquire_lock,
            pytest.raises(CycleError),
        ):
            await reconciler.apply([spec("A", depends_on=("B",)), spec("B", depends_on=("A",))])

        acquire_lock.assert_not_called()

    async def test_lock_released_when_execution_raises(self, reconciler, store):
        with (
            patch("zae_reconciler.reconciler.Executor.execute", side_effect=RuntimeError("boom")),
            pytest.raises(RuntimeError),
        ):
            await reconciler.apply(example_stack())

        assert store.read_lock() is None


class TestDestroy:
    """Tests for Reconciler.destroy."""

    async def test_destroy_deletes_in_reverse_and_removes_state(self, reconciler, provider, store):
        await reconciler.apply(example_stack())
        provider.calls.clear()

        result = await reconciler.destroy()

        assert result.ok
        assert provider.calls[0] == ("delete", "Service")
        assert provider.calls[-1] == ("delete", "Network")
        assert len(provider.calls) == 4
        assert not store.path.exists()

    async def test_failed_destroy_keeps_remaining_state(self, reconciler, provider, store):
        await reconciler.apply(example_stack())
        provider.fail("delete", "Network", PermanentProviderError("in use"))

        result = await reconciler.destroy()

        assert not result.ok
        assert set(store.load().resources) == {"Network"}

    async def test_destroy_validates_declarations(self, reconciler, store):
        await reconciler.apply(example_stack())

        with pytest.raises(CycleError):
            await reconciler.destroy([spec("A", depends_on=("A",))])

        assert len(store.load()) == 4


class TestOutputs:
    """Tests for stack outputs resolved after apply."""

    OUTPUTS = {
        "NetworkId": Ref("Network"),
        "ClusterArn": Ref("Cluster", "Arn"),
        "Health": Interpolation(("https://", Ref("Balancer"), "/health")),
    }

    async def test_resolved_and_stored(self, reconciler, store):
        result = await reconciler.apply(example_stack(), outputs=self.OUTPUTS)

        stored = store.load()
        network = stored.resources["Network"].provider_id
        assert stored.outputs == {
            "NetworkId": network,
            "ClusterArn": stored.resources["Cluster"].outputs["Arn"],
            "Health": f"https://{stored.resources['Balancer'].provider_id}/health",
        }
        assert result.snapshot.outputs == stored.outputs
        assert result.snapshot.serial == stored.serial

    async def test_unchanged_outputs_do_not_bump_serial(self, reconciler, store):
        await reconciler.apply(example_stack(), outputs=self.OUTPUTS)
        serial = store.load().serial

        result = await reconciler.apply(example_stack(), outputs=self.OUTPUTS)

        assert result.results == []
        assert store.load().serial == serial

    async def test_output_of_failed_resource_left_out(self, reconciler, provider, store):
        provider.fail("create", "Cluster", PermanentProviderError("denied"))

        result = await reconciler.apply(example_stack(), outputs=self.OUTPUTS)

        assert not result.ok
        assert set(store.load().outputs) == {"NetworkId", "Health"}

    async def test_none_keeps_stored_outputs(self, reconciler, store):
        await reconciler.apply(example_stack(), outputs=self.OUTPUTS)

        await reconciler.apply(example_stack())

        assert set(store.load().outputs) == set(self.OUTPUTS)

    async def test_removed_output_dropped(self, reconciler, store):
        await reconciler.apply(example_stack(), outputs=self.OUTPUTS)

        await reconciler.apply(example_stack(), outputs={"NetworkId": Ref("Network")})

        assert list(store.load().outputs) == ["NetworkId"]

    async def test_undeclared_target_rejected_before_lock(self, reconciler, provider, store):
        with pytest.raises(DanglingReferenceError, match="outputs.Db"):
            await reconciler.apply(example_stack(), outputs={"Db": Ref("Database", "Endpoint")})

        assert provider.calls == []
        assert store.read_lock() is None

    async def test_destroy_clears_outputs(self, reconciler, store):
        await reconciler.apply(example_stack(), outputs=self.OUTPUTS)

        result = await reconciler.destroy()

        assert result.ok
        assert result.snapshot.outputs == {}
        assert not store.path.exists()

    async def test_failed_destroy_clears_outputs(self, reconciler, provider, store):
        await reconciler.apply(example_stack(), outputs=self.OUTPUTS)
        provider.fail("delete", "Network", PermanentProviderError("in use"))

        await reconciler.destroy()

        assert set(store.load().resources) == {"Network"}
        assert store.load().outputs == {}
