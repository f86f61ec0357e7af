"""Single-use nonce tracking for anti-replay."""

import asyncio

import structlog
from botocore.exceptions import BotoCoreError, ClientError

logger = structlog.get_logger()


class NonceStoreUnavailable(Exception):
    """The nonce store could not be consulted."""


class NonceStore:
    """Records nonces and reports whether one was already seen."""

    async def check_and_record(self, key: str, ttl_seconds: int, now_ms: int) -> bool:
        """
        Record a nonce unless an unexpired record already exists.

        Expired records are overwritten, never purged.

        Returns:
            True if the nonce was fresh and is now recorded,
            False if it is a replay

        Raises:
            NonceStoreUnavailable: Transient storage failure
        """
        raise NotImplementedError


class InMemoryNonceStore(NonceStore):
    """Process-local nonce store for local mode and tests."""

    def __init__(self) -> None:
        self._records: dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def check_and_record(self, key: str, ttl_seconds: int, now_ms: int) -> bool:
        async with self._lock:
            record = self._records.get(key)
            if record and now_ms < record["expiresAt"]:
                return False
            self._records[key] = {
                "key": key,
                "createdAt": now_ms,
                "expiresAt": now_ms + ttl_seconds * 1000,
            }
            return True


class DynamoNonceStore(NonceStore):
    """
    DynamoDB-backed nonce store.

    A single conditional put inserts the record when it is absent or
    expired, so two concurrent requests with the same nonce cannot both win.
    """

    def __init__(self, table) -> None:
        self._table = table

    def _put(self, key: str, ttl_seconds: int, now_ms: int) -> bool:
        try:
            self._table.put_item(
                Item={
                    "key": key,
                    "createdAt": now_ms,
                    "expiresAt": now_ms + ttl_seconds * 1000,
                },
                ConditionExpression="attribute_not_exists(#k) OR #e <= :now",
                ExpressionAttributeNames={"#k": "key", "#e": "expiresAt"},
                ExpressionAttributeValues={":now": now_ms},
            )
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise NonceStoreUnavailable(str(e)) from e
        except BotoCoreError as e:
            raise NonceStoreUnavailable(str(e)) from e

    async def check_and_record(self, key: str, ttl_seconds: int, now_ms: int) -> bool:
        return await asyncio.to_thread(self._put, key, ttl_seconds, now_ms)
