"""Tests for per-kind comparison policies and the built-in catalog."""

from zae_reconciler.catalog import AWS_TYPES, default_registry
from zae_reconciler.resource_types import ResourceType, TypeRegistry


class TestResourceType:
    """Tests for ResourceType."""

    def test_is_immutable_matches_nested_paths(self):
        rtype = ResourceType("T", immutable=frozenset({"Network.Config"}))

        assert rtype.is_immutable("Network.Config")
        assert rtype.is_immutable("Network.Config.Subnet")
        assert rtype.is_immutable("Network")
        assert not rtype.is_immutable("NetworkName")
        assert not rtype.is_immutable("Other")

    def test_normalize_does_not_mutate_input(self):
        rtype = ResourceType(
            "T",
            set_properties=frozenset({"Net.Subnets"}),
            defaults={"Mode": "bridge"},
        )
        properties = {"Mode": "bridge", "Net": {"Subnets": ["b", "a"]}}

        normalized = rtype.normalize(properties)

        assert normalized == {"Net": {"Subnets": ["a", "b"]}}
        assert properties == {"Mode": "bridge", "Net": {"Subnets": ["b", "a"]}}

    def test_normalize_sorts_mappings_in_sets(self):
        rtype = ResourceType("T", set_properties=frozenset({"Rules"}))
        rules = [{"Port": 443}, {"Port": 80}]

        assert rtype.normalize({"Rules": rules}) == {"Rules": [{"Port": 443}, {"Port": 80}]}
        assert rtype.normalize({"Rules": list(reversed(rules))}) == rtype.normalize(
            {"Rules": rules}
        )


class TestTypeRegistry:
    """Tests for TypeRegistry lookup."""

    def test_exact_beats_pattern(self):
        registry = TypeRegistry(
            [
                ResourceType("AWS::EC2::*", immutable=frozenset({"VpcId"})),
                ResourceType("AWS::EC2::VPC", immutable=frozenset({"CidrBlock"})),
            ]
        )

        assert registry.get("AWS::EC2::VPC").immutable == frozenset({"CidrBlock"})
        assert registry.get("AWS::EC2::Subnet").immutable == frozenset({"VpcId"})

    def test_unknown_kind_is_permissive(self):
        rtype = TypeRegistry().get("Custom::Thing")

        assert rtype.kind == "Custom::Thing"
        assert rtype.immutable == frozenset()
        assert not rtype.create_before_destroy


class TestCatalog:
    """Tests for the built-in AWS catalog."""

    def test_default_registry_contains_catalog(self):
        registry = default_registry()

        assert len(registry) == len(AWS_TYPES)
        assert "AWS::ECS::Service" in registry

    def test_task_definition_created_before_destroy(self):
        rtype = default_registry().get("AWS::ECS::TaskDefinition")

        assert rtype.create_before_destroy
        assert rtype.is_immutable("ContainerDefinitions")

    def test_subnet_vpc_is_immutable(self):
        assert default_registry().get("AWS::EC2::Subnet").is_immutable("VpcId")
