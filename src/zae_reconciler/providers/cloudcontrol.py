"""AWS Cloud Control API provider.

Cloud Control exposes create/read/update/delete for every CloudFormation
resource type behind one uniform API, which makes it a natural generic
backend for ``AWS::*`` kinds. Mutating calls are asynchronous on the AWS
side: each returns a request token that is polled until it settles.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import aioboto3  # type: ignore[import-untyped]
from botocore.exceptions import ClientError
from ulid import ULID

from ..exceptions import PermanentProviderError, TransientProviderError
from .protocol import ProviderResult

logger = logging.getLogger(__name__)

# ProgressEvent.ErrorCode values worth retrying
TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ServiceInternalError",
        "ServiceTimeout",
        "NetworkFailure",
        "InternalFailure",
    }
)

# botocore ClientError codes worth retrying
TRANSIENT_CLIENT_ERRORS = frozenset(
    {
        "ThrottlingException",
        "ServiceInternalErrorException",
        "ConcurrentOperationException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
    }
)

_TERMINAL_STATUSES = frozenset({"SUCCESS", "FAILED", "CANCEL_COMPLETE"})

# Error codes meaning the resource does not exist
NOT_FOUND_CODES = frozenset({"NotFound", "ResourceNotFoundException"})


class CloudControlProvider:
    """
    Provider backed by the AWS Cloud Control API.

    Supports both AWS and LocalStack environments. When endpoint_url is
    provided, API calls are made against that endpoint.
    """

    def __init__(
        self,
        region: str | None = None,
        endpoint_url: str | None = None,
        role_arn: str | None = None,
        poll_interval: float = 2.0,
        max_wait_seconds: float = 1800.0,
    ) -> None:
        """
        Initialize the provider.

        Args:
            region: AWS region (default: use boto3 defaults)
            endpoint_url: Optional endpoint URL (for LocalStack or other AWS-compatible services)
            role_arn: IAM role Cloud Control assumes for resource operations
            poll_interval: Seconds between request status polls
            max_wait_seconds: Give up waiting on a single request after this long
        """
        self.region = region
        self.endpoint_url = endpoint_url
        self.role_arn = role_arn
        self.poll_interval = poll_interval
        self.max_wait_seconds = max_wait_seconds
        self._session: aioboto3.Session | None = None
        self._client: Any = None

    async def _get_client(self) -> Any:
        """Get or create the Cloud Control client."""
        if self._client is not None:
            return self._client

        if self._session is None:
            self._session = aioboto3.Session()

        kwargs: dict[str, Any] = {}
        if self.region:
            kwargs["region_name"] = self.region
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url

        session = self._session
        self._client = await session.client("cloudcontrol", **kwargs).__aenter__()
        return self._client

    # -------------------------------------------------------------------------
    # ProviderProtocol
    # -------------------------------------------------------------------------

    async def create(self, kind: str, properties: dict[str, Any]) -> ProviderResult:
        """Create a resource and return its identifier and properties."""
        client = await self._get_client()
        kwargs = self._request_kwargs(kind)
        kwargs["DesiredState"] = json.dumps(properties)

        with _translate_errors(kind):
            response = await client.create_resource(**kwargs)
        event = await self._wait(client, kind, response["ProgressEvent"])
        identifier = event.get("Identifier")
        if not identifier:
            raise PermanentProviderError("Create succeeded without an identifier", kind=kind)

        outputs = await self._read_outputs(client, kind, identifier)
        logger.debug("Created %s %s", kind, identifier)
        return ProviderResult(provider_id=identifier, outputs=outputs)

    async def update(
        self,
        kind: str,
        provider_id: str,
        properties: dict[str, Any],
        previous: dict[str, Any],
    ) -> dict[str, Any]:
        """Update a resource with a JSON patch computed from its previous properties."""
        patch = build_patch(previous, properties)
        client = await self._get_client()
        if patch:
            kwargs = self._request_kwargs(kind)
            kwargs["Identifier"] = provider_id
            kwargs["PatchDocument"] = json.dumps(patch)
            with _translate_errors(kind):
                response = await client.update_resource(**kwargs)
            await self._wait(client, kind, response["ProgressEvent"])
            logger.debug("Updated %s %s (%d patch operations)", kind, provider_id, len(patch))
        return await self._read_outputs(client, kind, provider_id)

    async def delete(self, kind: str, provider_id: str) -> None:
        """Delete a resource. A resource that no longer exists counts as deleted."""
        client = await self._get_client()
        kwargs = self._request_kwargs(kind)
        kwargs["Identifier"] = provider_id
        try:
            with _translate_errors(kind):
                response = await client.delete_resource(**kwargs)
            await self._wait(client, kind, response["ProgressEvent"])
        except PermanentProviderError as e:
            if e.code in NOT_FOUND_CODES:
                logger.info("%s %s already deleted", kind, provider_id)
                return
            raise
        logger.debug("Deleted %s %s", kind, provider_id)

    # -------------------------------------------------------------------------
    # LookupProtocol
    # -------------------------------------------------------------------------

    async def read(self, kind: str, identifier: str) -> ProviderResult | None:
        """Fetch a resource by identifier; None if it does not exist."""
        client = await self._get_client()
        try:
            outputs = await self._read_outputs(client, kind, identifier)
        except PermanentProviderError as e:
            if e.code in NOT_FOUND_CODES:
                return None
            raise
        return ProviderResult(provider_id=identifier, outputs=outputs)

    async def list_resources(self, kind: str) -> list[ProviderResult]:
        """List every resource of ``kind``, following NextToken pagination."""
        client = await self._get_client()
        kwargs: dict[str, Any] = {"TypeName": kind}
        if self.role_arn:
            kwargs["RoleArn"] = self.role_arn

        found: list[ProviderResult] = []
        while True:
            with _translate_errors(kind):
                response = await client.list_resources(**kwargs)
            for description in response.get("ResourceDescriptions", []):
                properties = json.loads(description.get("Properties") or "{}")
                found.append(ProviderResult(description["Identifier"], properties))
            token = response.get("NextToken")
            if not token:
                return found
            kwargs["NextToken"] = token

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _request_kwargs(self, kind: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"TypeName": kind, "ClientToken": str(ULID())}
        if self.role_arn:
            kwargs["RoleArn"] = self.role_arn
        return kwargs

    async def _wait(self, client: Any, kind: str, event: dict[str, Any]) -> dict[str, Any]:
        """Poll a request until it reaches a terminal status."""
        start_time = time.monotonic()
        while event.get("OperationStatus") not in _TERMINAL_STATUSES:
            if time.monotonic() - start_time > self.max_wait_seconds:
                # Not retryable: the request may still complete on the AWS side
                raise PermanentProviderError(
                    f"Timed out waiting for request {event.get('RequestToken')}", kind=kind
                )
            await asyncio.sleep(self.poll_interval)
            with _translate_errors(kind):
                response = await client.get_resource_request_status(
                    RequestToken=event["RequestToken"]
                )
            event = response["ProgressEvent"]

        status = event["OperationStatus"]
        if status == "SUCCESS":
            return event

        code = event.get("ErrorCode")
        message = event.get("StatusMessage") or f"{event.get('Operation', 'request')} {status}"
        if code in TRANSIENT_ERROR_CODES:
            raise TransientProviderError(message, kind=kind, code=code)
        raise PermanentProviderError(message, kind=kind, code=code)

    async def _read_outputs(self, client: Any, kind: str, identifier: str) -> dict[str, Any]:
        with _translate_errors(kind):
            response = await client.get_resource(TypeName=kind, Identifier=identifier)
        raw = response.get("ResourceDescription", {}).get("Properties") or "{}"
        outputs: dict[str, Any] = json.loads(raw)
        return outputs

    async def close(self) -> None:
        """Close the underlying session and client."""
        if self._client is not None:
            try:
                await self._client.__aexit__(None, None, None)
            finally:
                self._client = None
        self._session = None

    async def __aenter__(self) -> CloudControlProvider:
        """Enter async context manager."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """Exit async context manager."""
        await self.close()


@contextmanager
def _translate_errors(kind: str) -> Iterator[None]:
    """Map botocore ClientError to provider errors."""
    try:
        yield
    except ClientError as e:
        error = e.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message") or str(e)
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if code in TRANSIENT_CLIENT_ERRORS or status >= 500:
            raise TransientProviderError(message, kind=kind, code=code) from e
        raise PermanentProviderError(message, kind=kind, code=code) from e


def build_patch(previous: dict[str, Any], desired: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Build an RFC 6902 patch turning ``previous`` into ``desired``.

    Operates on top-level properties only; nested values are replaced
    as a whole.
    """
    patch: list[dict[str, Any]] = []
    for key in sorted(desired):
        path = "/" + _escape_pointer(key)
        if key not in previous:
            patch.append({"op": "add", "path": path, "value": desired[key]})
        elif previous[key] != desired[key]:
            patch.append({"op": "replace", "path": path, "value": desired[key]})
    for key in sorted(set(previous) - set(desired)):
        patch.append({"op": "remove", "path": "/" + _escape_pointer(key)})
    return patch


def _escape_pointer(key: str) -> str:
    return key.replace("~", "~0").replace("/", "~1")
