"""
Push channel for consent outcomes.

The landing step publishes one ConsentSignal per owner; the coordinator that is
waiting for that owner's consent listens. Redis pub/sub carries the events
across processes. Not every deployment has one, so the coordinator also polls.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from pydantic import ValidationError
from redis.exceptions import RedisError

from nudge.infrastructure.observability.logging import get_logger
from nudge.models.domain.nudge_domain import ConsentSignal
from nudge.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)

CHANNEL_PREFIX = "consent"
LISTEN_TIMEOUT_SECONDS = 1.0


class ConsentChannelError(Exception):
    """Raised when the push channel cannot be used."""

    pass


def channel_name(owner_id: str) -> str:
    return f"{CHANNEL_PREFIX}:{owner_id}"


class ConsentChannel(ABC):
    @abstractmethod
    async def publish(self, owner_id: str, signal: ConsentSignal) -> None:
        """Broadcast a consent outcome for owner_id."""

    @abstractmethod
    def subscribe(self, owner_id: str):
        """Async context manager yielding an async iterator of ConsentSignal."""


class RedisConsentChannel(ConsentChannel):
    def __init__(self, redis_client: RedisClient):
        self._redis = redis_client

    async def publish(self, owner_id: str, signal: ConsentSignal) -> None:
        try:
            client = await self._redis.connection()
            receivers = await client.publish(channel_name(owner_id), signal.model_dump_json())
        except (RedisError, RuntimeError, OSError) as e:
            raise ConsentChannelError(f"Publish failed: {e}") from e

        logger.info(
            "Consent signal published",
            owner_id=owner_id,
            status=signal.status,
            receivers=receivers,
        )

    @asynccontextmanager
    async def subscribe(self, owner_id: str):
        name = channel_name(owner_id)
        try:
            client = await self._redis.connection()
            pubsub = client.pubsub()
            await pubsub.subscribe(name)
        except (RedisError, RuntimeError, OSError) as e:
            raise ConsentChannelError(f"Subscribe failed: {e}") from e

        logger.debug("Subscribed to consent channel", owner_id=owner_id)
        try:
            yield self._iterate(pubsub)
        finally:
            try:
                await pubsub.unsubscribe(name)
                await pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.debug("Consent channel teardown error", owner_id=owner_id, error=str(e))

    async def _iterate(self, pubsub) -> AsyncIterator[ConsentSignal]:
        # listen() would trip the pool's socket timeout during a long consent wait
        try:
            while True:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=LISTEN_TIMEOUT_SECONDS
                )
                if message is None or message.get("type") != "message":
                    continue
                try:
                    yield ConsentSignal.model_validate_json(message["data"])
                except ValidationError as e:
                    logger.warning("Ignoring malformed consent signal", error=str(e))
        except (RedisError, OSError) as e:
            raise ConsentChannelError(f"Consent channel dropped: {e}") from e
