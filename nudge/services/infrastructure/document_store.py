"""
Document store used for tokens, quota counters, cooldown records and consent signals.

Documents are flat dicts addressed by a composite key such as ``quota:<owner>:<date>``.
Writes merge into the existing document. There is no multi-key transaction, and
every backend failure surfaces as StorageError so callers can apply their own
availability policy.
"""

import json
from abc import ABC, abstractmethod
from typing import Any

from redis.exceptions import RedisError

from nudge.infrastructure.observability.logging import get_logger
from nudge.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)

KEY_SEPARATOR = ":"


class StorageError(Exception):
    """Raised when the backing store cannot complete a read or write."""

    def __init__(self, message: str, key: str | None = None, operation: str | None = None):
        super().__init__(message)
        self.key = key
        self.operation = operation


def make_key(*parts: str) -> str:
    """Build a composite document key from identity parts."""
    return KEY_SEPARATOR.join(str(part).strip() for part in parts)


class DocumentStore(ABC):
    """Key-value document store with read, merge-write and atomic counter semantics."""

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the document at key, or None when absent."""

    @abstractmethod
    async def merge(self, key: str, fields: dict[str, Any], ttl_s: int | None = None) -> None:
        """Merge fields into the document, creating it if absent."""

    @abstractmethod
    async def increment(self, key: str, field: str, amount: int = 1) -> int:
        """Atomically add amount to an integer field and return the new value."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete the document. Returns True if something was removed."""

    @abstractmethod
    async def scan(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        """Return every (key, document) whose key starts with prefix."""


class RedisDocumentStore(DocumentStore):
    """Documents as Redis hashes with JSON-encoded field values."""

    def __init__(self, redis_client: RedisClient):
        self._redis = redis_client

    @staticmethod
    def _encode(fields: dict[str, Any]) -> dict[str, str]:
        return {name: json.dumps(value) for name, value in fields.items()}

    @staticmethod
    def _decode(raw: dict[str, str]) -> dict[str, Any]:
        document = {}
        for name, value in raw.items():
            try:
                document[name] = json.loads(value)
            except (TypeError, ValueError):
                document[name] = value
        return document

    def _fail(self, operation: str, key: str, error: Exception) -> StorageError:
        logger.error(
            "Redis document operation failed",
            operation=operation,
            key=key[:40],
            error=str(error),
            error_type=type(error).__name__,
        )
        return StorageError(f"{operation} failed for {key}: {error}", key=key, operation=operation)

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            client = await self._redis.connection()
            raw = await client.hgetall(key)
        except (RedisError, RuntimeError, OSError) as e:
            raise self._fail("get", key, e) from e
        return self._decode(raw) if raw else None

    async def merge(self, key: str, fields: dict[str, Any], ttl_s: int | None = None) -> None:
        if not fields:
            return
        try:
            client = await self._redis.connection()
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=self._encode(fields))
                if ttl_s:
                    pipe.expire(key, ttl_s)
                await pipe.execute()
        except (RedisError, RuntimeError, OSError) as e:
            raise self._fail("merge", key, e) from e

    async def increment(self, key: str, field: str, amount: int = 1) -> int:
        try:
            client = await self._redis.connection()
            return int(await client.hincrby(key, field, amount))
        except (RedisError, RuntimeError, OSError) as e:
            raise self._fail("increment", key, e) from e

    async def delete(self, key: str) -> bool:
        try:
            client = await self._redis.connection()
            return await client.delete(key) > 0
        except (RedisError, RuntimeError, OSError) as e:
            raise self._fail("delete", key, e) from e

    async def scan(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        try:
            client = await self._redis.connection()
            results = []
            async for key in client.scan_iter(match=f"{prefix}*", count=200):
                raw = await client.hgetall(key)
                if raw:
                    results.append((key, self._decode(raw)))
            return results
        except (RedisError, RuntimeError, OSError) as e:
            raise self._fail("scan", prefix, e) from e
