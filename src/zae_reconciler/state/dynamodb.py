"""DynamoDB state store.

Uses boto3 (sync) directly: state reads and writes happen between
batches, never while provider calls are in flight.

Layout (one partition per state key):

    PK=STATE#<key>  SK=#SNAPSHOT   data, digest, serial
    PK=STATE#<key>  SK=#LOCK       owner, run_id, acquired_at, expires_at
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import boto3
from botocore.exceptions import ClientError

from ..exceptions import ConcurrentRunError, StateCorruptError, StateError
from ..models import StateSnapshot
from .protocol import StateLock, next_revision

logger = logging.getLogger(__name__)

STATE_PREFIX = "STATE#"
SK_SNAPSHOT = "#SNAPSHOT"
SK_LOCK = "#LOCK"


def pk_state(key: str) -> str:
    """Build partition key for a state key."""
    return f"{STATE_PREFIX}{key}"


def get_table_definition(table_name: str) -> dict[str, Any]:
    """Get the CreateTable arguments for a state table."""
    return {
        "TableName": table_name,
        "BillingMode": "PAY_PER_REQUEST",
        "AttributeDefinitions": [
            {"AttributeName": "PK", "AttributeType": "S"},
            {"AttributeName": "SK", "AttributeType": "S"},
        ],
        "KeySchema": [
            {"AttributeName": "PK", "KeyType": "HASH"},
            {"AttributeName": "SK", "KeyType": "RANGE"},
        ],
    }


class DynamoDBStateStore:
    """
    Stores the snapshot and lease as items in a DynamoDB table.

    A single-item PutItem is atomic, so readers see either the old or the
    new snapshot. Writes are conditional on the serial read just before,
    and the lease is a conditional put that succeeds only when no
    unexpired lock item exists.
    """

    def __init__(
        self,
        table_name: str,
        key: str = "default",
        region: str | None = None,
        endpoint_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.table_name = table_name
        self.key = key
        self.region = region
        self.endpoint_url = endpoint_url
        self._client = client

    @property
    def location(self) -> str:
        return f"dynamodb://{self.table_name}/{self.key}"

    @property
    def client(self) -> Any:
        if self._client is None:
            kwargs: dict[str, Any] = {}
            if self.region:
                kwargs["region_name"] = self.region
            if self.endpoint_url:
                kwargs["endpoint_url"] = self.endpoint_url
            self._client = boto3.client("dynamodb", **kwargs)
        return self._client

    def _key(self, sk: str) -> dict[str, Any]:
        return {"PK": {"S": pk_state(self.key)}, "SK": {"S": sk}}

    # -------------------------------------------------------------------------
    # Table operations
    # -------------------------------------------------------------------------

    def create_table(self) -> None:
        """Create the state table if it doesn't exist."""
        try:
            self.client.create_table(**get_table_definition(self.table_name))
            waiter = self.client.get_waiter("table_exists")
            waiter.wait(TableName=self.table_name)
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceInUseException":
                raise

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def load(self) -> StateSnapshot:
        item = self._get_item(SK_SNAPSHOT)
        if not item:
            return StateSnapshot.empty()

        try:
            data = json.loads(item["data"]["S"])
        except (KeyError, json.JSONDecodeError) as e:
            raise StateCorruptError(self.location, f"invalid snapshot item: {e}") from e
        if not isinstance(data, dict):
            raise StateCorruptError(self.location, "snapshot data must be an object")
        return StateSnapshot.from_dict(data, self.location)

    def save(self, snapshot: StateSnapshot) -> StateSnapshot:
        current = self.load()
        prepared = next_revision(current, snapshot)
        if prepared is current:
            return current

        item = self._key(SK_SNAPSHOT)
        item["data"] = {"S": json.dumps(prepared.to_dict(), sort_keys=True)}
        item["digest"] = {"S": prepared.digest}
        item["serial"] = {"N": str(prepared.serial)}
        try:
            self.client.put_item(
                TableName=self.table_name,
                Item=item,
                ConditionExpression="attribute_not_exists(PK) OR serial = :serial",
                ExpressionAttributeValues={":serial": {"N": str(current.serial)}},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                # Another writer moved the serial since our read
                lock = self.read_lock()
                raise ConcurrentRunError(
                    self.location,
                    lock.owner if lock else None,
                    lock.run_id if lock else None,
                ) from e
            raise
        logger.debug("Saved state serial %d to %s", prepared.serial, self.location)
        return prepared

    def delete(self) -> None:
        self.client.delete_item(TableName=self.table_name, Key=self._key(SK_SNAPSHOT))

    # -------------------------------------------------------------------------
    # Lease
    # -------------------------------------------------------------------------

    def acquire_lock(self, owner: str, ttl_seconds: int) -> StateLock:
        lock = StateLock.new(owner, ttl_seconds)
        item = self._key(SK_LOCK)
        item.update(
            {
                "owner": {"S": lock.owner},
                "run_id": {"S": lock.run_id},
                "acquired_at": {"N": repr(lock.acquired_at)},
                "expires_at": {"N": repr(lock.expires_at)},
            }
        )
        try:
            self.client.put_item(
                TableName=self.table_name,
                Item=item,
                ConditionExpression="attribute_not_exists(PK) OR expires_at < :now",
                ExpressionAttributeValues={":now": {"N": repr(lock.acquired_at)}},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                existing = self.read_lock()
                raise ConcurrentRunError(
                    self.location,
                    existing.owner if existing else None,
                    existing.run_id if existing else None,
                ) from e
            raise
        logger.info("Acquired state lock %s on %s", lock.run_id, self.location)
        return lock

    def release_lock(self, lock: StateLock) -> None:
        try:
            self.client.delete_item(
                TableName=self.table_name,
                Key=self._key(SK_LOCK),
                ConditionExpression="run_id = :run_id",
                ExpressionAttributeValues={":run_id": {"S": lock.run_id}},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.warning("State lock %s on %s is no longer held", lock.run_id, self.location)
                return
            raise
        logger.info("Released state lock %s on %s", lock.run_id, self.location)

    def read_lock(self) -> StateLock | None:
        item = self._get_item(SK_LOCK)
        if not item:
            return None
        return StateLock(
            owner=item.get("owner", {}).get("S", "unknown"),
            run_id=item.get("run_id", {}).get("S", "unknown"),
            acquired_at=float(item.get("acquired_at", {}).get("N", "0")),
            expires_at=float(item.get("expires_at", {}).get("N", str(time.time()))),
        )

    def force_unlock(self) -> None:
        self.client.delete_item(TableName=self.table_name, Key=self._key(SK_LOCK))

    def _get_item(self, sk: str) -> dict[str, Any] | None:
        try:
            result = self.client.get_item(
                TableName=self.table_name,
                Key=self._key(sk),
                ConsistentRead=True,
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ResourceNotFoundException":
                raise StateError(
                    f"State table '{self.table_name}' does not exist. "
                    "Run 'zae-reconciler state init' to create it."
                ) from e
            raise
        item: dict[str, Any] | None = result.get("Item")
        return item
