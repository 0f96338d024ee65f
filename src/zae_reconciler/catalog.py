"""Built-in comparison policies for common AWS resource kinds.

Covers the kinds used by a typical containerized web stack: VPC
networking, ECS on Fargate behind an Application Load Balancer, a
CloudFront distribution and a Cognito user pool. Immutable properties
follow the CloudFormation "Update requires: Replacement" documentation.
"""

from .resource_types import ResourceType, TypeRegistry

_TAGS = "Tags"

AWS_TYPES: tuple[ResourceType, ...] = (
    # Networking
    ResourceType(
        kind="AWS::EC2::VPC",
        immutable=frozenset({"CidrBlock", "InstanceTenancy", "Ipv4IpamPoolId"}),
        set_properties=frozenset({_TAGS}),
        defaults={"EnableDnsSupport": True, "InstanceTenancy": "default"},
    ),
    ResourceType(
        kind="AWS::EC2::Subnet",
        immutable=frozenset({"VpcId", "CidrBlock", "AvailabilityZone", "AvailabilityZoneId"}),
        set_properties=frozenset({_TAGS}),
        defaults={"MapPublicIpOnLaunch": False},
    ),
    ResourceType(
        kind="AWS::EC2::SecurityGroup",
        immutable=frozenset({"GroupDescription", "GroupName", "VpcId"}),
        set_properties=frozenset({"SecurityGroupIngress", "SecurityGroupEgress", _TAGS}),
    ),
    ResourceType(
        kind="AWS::EC2::NatGateway",
        immutable=frozenset({"SubnetId", "AllocationId", "ConnectivityType"}),
        set_properties=frozenset({_TAGS}),
    ),
    # Container service
    ResourceType(
        kind="AWS::ECS::Cluster",
        immutable=frozenset({"ClusterName"}),
        set_properties=frozenset({_TAGS, "CapacityProviders"}),
    ),
    ResourceType(
        kind="AWS::ECS::TaskDefinition",
        immutable=frozenset(
            {
                "Family",
                "ContainerDefinitions",
                "Cpu",
                "Memory",
                "NetworkMode",
                "RequiresCompatibilities",
                "TaskRoleArn",
                "ExecutionRoleArn",
                "Volumes",
            }
        ),
        set_properties=frozenset({"RequiresCompatibilities"}),
        defaults={"NetworkMode": "bridge"},
        create_before_destroy=True,
    ),
    ResourceType(
        kind="AWS::ECS::Service",
        immutable=frozenset({"ServiceName", "Cluster", "LaunchType", "Role", "SchedulingStrategy"}),
        set_properties=frozenset(
            {
                "NetworkConfiguration.AwsvpcConfiguration.Subnets",
                "NetworkConfiguration.AwsvpcConfiguration.SecurityGroups",
                _TAGS,
            }
        ),
        defaults={"SchedulingStrategy": "REPLICA", "DesiredCount": 1},
    ),
    ResourceType(
        kind="AWS::IAM::Role",
        immutable=frozenset({"RoleName", "Path"}),
        set_properties=frozenset({"ManagedPolicyArns", _TAGS}),
        defaults={"Path": "/", "MaxSessionDuration": 3600},
    ),
    ResourceType(
        kind="AWS::Logs::LogGroup",
        immutable=frozenset({"LogGroupName", "LogGroupClass"}),
    ),
    # Load balancing
    ResourceType(
        kind="AWS::ElasticLoadBalancingV2::LoadBalancer",
        immutable=frozenset({"Name", "Scheme", "Type"}),
        set_properties=frozenset({"Subnets", "SecurityGroups", _TAGS}),
        defaults={"Scheme": "internet-facing", "Type": "application", "IpAddressType": "ipv4"},
    ),
    ResourceType(
        kind="AWS::ElasticLoadBalancingV2::TargetGroup",
        immutable=frozenset({"Name", "Port", "Protocol", "VpcId", "TargetType", "ProtocolVersion"}),
        set_properties=frozenset({_TAGS}),
        defaults={"TargetType": "instance"},
    ),
    ResourceType(
        kind="AWS::ElasticLoadBalancingV2::Listener",
        immutable=frozenset({"LoadBalancerArn"}),
    ),
    ResourceType(
        kind="AWS::ElasticLoadBalancingV2::ListenerRule",
        immutable=frozenset({"ListenerArn"}),
    ),
    ResourceType(
        kind="AWS::CertificateManager::Certificate",
        immutable=frozenset(
            {"DomainName", "SubjectAlternativeNames", "ValidationMethod", "KeyAlgorithm"}
        ),
        set_properties=frozenset({"SubjectAlternativeNames"}),
    ),
    # Edge
    ResourceType(
        kind="AWS::CloudFront::Distribution",
        set_properties=frozenset({_TAGS}),
    ),
    # Identity
    ResourceType(
        kind="AWS::Cognito::UserPool",
        immutable=frozenset({"AliasAttributes", "UsernameAttributes", "Schema"}),
        set_properties=frozenset(
            {"AliasAttributes", "UsernameAttributes", "AutoVerifiedAttributes"}
        ),
    ),
    ResourceType(
        kind="AWS::Cognito::UserPoolClient",
        immutable=frozenset({"UserPoolId", "GenerateSecret"}),
        set_properties=frozenset({"AllowedOAuthFlows", "AllowedOAuthScopes", "CallbackURLs"}),
        defaults={"GenerateSecret": False},
    ),
    ResourceType(
        kind="AWS::Cognito::UserPoolDomain",
        immutable=frozenset({"Domain", "UserPoolId"}),
    ),
)


def default_registry() -> TypeRegistry:
    """Return a registry preloaded with the built-in AWS policies."""
    return TypeRegistry(AWS_TYPES)
