"""Tests for the Cloud Control provider."""

import json
from unittest.mock import AsyncMock

import pytest
from botocore.exceptions import ClientError

from zae_reconciler.exceptions import PermanentProviderError, TransientProviderError
from zae_reconciler.providers import (
    CloudControlProvider,
    LookupProtocol,
    ProviderProtocol,
    ProviderResult,
)
from zae_reconciler.providers.cloudcontrol import build_patch

KIND = "AWS::EC2::VPC"


def _event(status, token="req-1", **extra):
    return {"ProgressEvent": {"OperationStatus": status, "RequestToken": token, **extra}}


def _client_error(code, status=400, operation="CreateResource"):
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


@pytest.fixture
def client():
    client = AsyncMock()
    client.create_resource.return_value = _event("IN_PROGRESS")
    client.update_resource.return_value = _event("IN_PROGRESS")
    client.delete_resource.return_value = _event("IN_PROGRESS")
    client.get_resource_request_status.return_value = _event("SUCCESS", Identifier="vpc-123")
    client.get_resource.return_value = {
        "ResourceDescription": {
            "Identifier": "vpc-123",
            "Properties": json.dumps({"VpcId": "vpc-123", "CidrBlock": "10.0.0.0/16"}),
        }
    }
    return client


@pytest.fixture
def cloudcontrol(client):
    provider = CloudControlProvider(region="us-east-1", poll_interval=0)
    provider._client = client
    return provider


class TestCreate:
    """Tests for create."""

    def test_satisfies_protocol(self, cloudcontrol):
        assert isinstance(cloudcontrol, ProviderProtocol)

    async def test_create_polls_until_success(self, cloudcontrol, client):
        result = await cloudcontrol.create(KIND, {"CidrBlock": "10.0.0.0/16"})

        assert result.provider_id == "vpc-123"
        assert result.outputs == {"VpcId": "vpc-123", "CidrBlock": "10.0.0.0/16"}

        kwargs = client.create_resource.call_args.kwargs
        assert kwargs["TypeName"] == KIND
        assert json.loads(kwargs["DesiredState"]) == {"CidrBlock": "10.0.0.0/16"}
        assert kwargs["ClientToken"]
        assert "RoleArn" not in kwargs
        client.get_resource_request_status.assert_awaited_once_with(RequestToken="req-1")

    async def test_role_arn_passed(self, client):
        provider = CloudControlProvider(role_arn="arn:aws:iam::123:role/deployer", poll_interval=0)
        provider._client = client

        await provider.create(KIND, {})

        role_arn = client.create_resource.call_args.kwargs["RoleArn"]
        assert role_arn == "arn:aws:iam::123:role/deployer"

    async def test_failed_request_is_permanent(self, cloudcontrol, client):
        client.get_resource_request_status.return_value = _event(
            "FAILED", ErrorCode="InvalidRequest", StatusMessage="CidrBlock is invalid"
        )

        with pytest.raises(PermanentProviderError, match="CidrBlock is invalid") as exc_info:
            await cloudcontrol.create(KIND, {"CidrBlock": "nope"})

        assert exc_info.value.code == "InvalidRequest"

    async def test_throttled_request_is_transient(self, cloudcontrol, client):
        client.get_resource_request_status.return_value = _event("FAILED", ErrorCode="Throttling")

        with pytest.raises(TransientProviderError):
            await cloudcontrol.create(KIND, {})

    async def test_wait_timeout_is_permanent(self, client):
        provider = CloudControlProvider(poll_interval=0, max_wait_seconds=-1)
        provider._client = client

        with pytest.raises(PermanentProviderError, match="Timed out"):
            await provider.create(KIND, {})

        client.get_resource_request_status.assert_not_awaited()


class TestErrorTranslation:
    """Tests for mapping of botocore errors."""

    @pytest.mark.parametrize(
        "code,status",
        [
            ("ThrottlingException", 400),
            ("ConcurrentOperationException", 400),
            ("InternalServerError", 500),
            ("ServiceUnavailable", 503),
        ],
    )
    async def test_transient(self, cloudcontrol, client, code, status):
        client.create_resource.side_effect = _client_error(code, status)

        with pytest.raises(TransientProviderError) as exc_info:
            await cloudcontrol.create(KIND, {})

        assert exc_info.value.code == code

    @pytest.mark.parametrize("code", ["AccessDeniedException", "ValidationException"])
    async def test_permanent(self, cloudcontrol, client, code):
        client.create_resource.side_effect = _client_error(code)

        with pytest.raises(PermanentProviderError) as exc_info:
            await cloudcontrol.create(KIND, {})

        assert exc_info.value.kind == KIND
        assert f"{code} happened" in str(exc_info.value)


class TestUpdate:
    """Tests for update."""

    async def test_update_sends_patch(self, cloudcontrol, client):
        outputs = await cloudcontrol.update(
            KIND,
            "vpc-123",
            {"CidrBlock": "10.0.0.0/16", "EnableDnsSupport": False},
            {"CidrBlock": "10.0.0.0/16", "EnableDnsSupport": True},
        )

        kwargs = client.update_resource.call_args.kwargs
        assert kwargs["Identifier"] == "vpc-123"
        assert json.loads(kwargs["PatchDocument"]) == [
            {"op": "replace", "path": "/EnableDnsSupport", "value": False}
        ]
        assert outputs["VpcId"] == "vpc-123"

    async def test_empty_patch_skips_request(self, cloudcontrol, client):
        outputs = await cloudcontrol.update(KIND, "vpc-123", {"A": 1}, {"A": 1})

        client.update_resource.assert_not_awaited()
        client.get_resource.assert_awaited_once_with(TypeName=KIND, Identifier="vpc-123")
        assert outputs["CidrBlock"] == "10.0.0.0/16"


class TestDelete:
    """Tests for delete."""

    async def test_delete(self, cloudcontrol, client):
        await cloudcontrol.delete(KIND, "vpc-123")

        assert client.delete_resource.call_args.kwargs["Identifier"] == "vpc-123"

    async def test_already_deleted_is_success(self, cloudcontrol, client):
        client.get_resource_request_status.return_value = _event("FAILED", ErrorCode="NotFound")

        await cloudcontrol.delete(KIND, "vpc-123")

    async def test_missing_resource_error_is_success(self, cloudcontrol, client):
        client.delete_resource.side_effect = _client_error(
            "ResourceNotFoundException", operation="DeleteResource"
        )

        await cloudcontrol.delete(KIND, "vpc-123")

    async def test_dependency_violation_raised(self, cloudcontrol, client):
        client.get_resource_request_status.return_value = _event(
            "FAILED", ErrorCode="ResourceConflict", StatusMessage="has dependencies"
        )

        with pytest.raises(PermanentProviderError, match="has dependencies"):
            await cloudcontrol.delete(KIND, "vpc-123")


class TestLookup:
    """Tests for read and list_resources."""

    def test_satisfies_protocol(self, cloudcontrol):
        assert isinstance(cloudcontrol, LookupProtocol)

    async def test_read(self, cloudcontrol, client):
        result = await cloudcontrol.read(KIND, "vpc-123")

        assert result == ProviderResult("vpc-123", {"VpcId": "vpc-123", "CidrBlock": "10.0.0.0/16"})
        client.get_resource.assert_awaited_once_with(TypeName=KIND, Identifier="vpc-123")

    async def test_read_missing_is_none(self, cloudcontrol, client):
        client.get_resource.side_effect = _client_error(
            "ResourceNotFoundException", operation="GetResource"
        )

        assert await cloudcontrol.read(KIND, "vpc-999") is None

    async def test_read_denied_raises(self, cloudcontrol, client):
        client.get_resource.side_effect = _client_error("AccessDeniedException")

        with pytest.raises(PermanentProviderError, match="AccessDeniedException happened"):
            await cloudcontrol.read(KIND, "vpc-123")

    async def test_list_follows_pages(self, cloudcontrol, client):
        client.list_resources.side_effect = [
            {
                "ResourceDescriptions": [
                    {"Identifier": "vpc-1", "Properties": json.dumps({"VpcId": "vpc-1"})}
                ],
                "NextToken": "page-2",
            },
            {"ResourceDescriptions": [{"Identifier": "vpc-2"}]},
        ]

        found = await cloudcontrol.list_resources(KIND)

        assert found == [ProviderResult("vpc-1", {"VpcId": "vpc-1"}), ProviderResult("vpc-2", {})]
        calls = client.list_resources.call_args_list
        assert calls[0].kwargs == {"TypeName": KIND}
        assert calls[1].kwargs == {"TypeName": KIND, "NextToken": "page-2"}

    async def test_list_throttled_is_transient(self, cloudcontrol, client):
        client.list_resources.side_effect = _client_error("ThrottlingException")

        with pytest.raises(TransientProviderError):
            await cloudcontrol.list_resources(KIND)


class TestLifecycle:
    """Tests for client lifecycle."""

    async def test_close_exits_client(self, cloudcontrol, client):
        await cloudcontrol.close()

        client.__aexit__.assert_awaited_once()
        assert cloudcontrol._client is None

    async def test_context_manager_closes(self, client):
        async with CloudControlProvider(poll_interval=0) as provider:
            provider._client = client

        client.__aexit__.assert_awaited_once()


class TestBuildPatch:
    """Tests for build_patch."""

    def test_add_replace_remove(self):
        patch = build_patch({"A": 1, "B": 2, "C": 3}, {"A": 1, "B": 5, "D": 4})

        assert patch == [
            {"op": "replace", "path": "/B", "value": 5},
            {"op": "add", "path": "/D", "value": 4},
            {"op": "remove", "path": "/C"},
        ]

    def test_pointer_escaping(self):
        assert build_patch({}, {"a/b~c": 1}) == [{"op": "add", "path": "/a~1b~0c", "value": 1}]

    def test_identical_is_empty(self):
        assert build_patch({"A": {"B": 1}}, {"A": {"B": 1}}) == []
