"""
Token Store: expiry-aware cache of the delegated Gmail access token.

One document per owner, encrypted at rest. A token within the expiry buffer
is treated as absent and purged.
"""

from datetime import UTC, datetime, timedelta

from nudge.config import settings
from nudge.infrastructure.observability.logging import get_logger
from nudge.models.domain.nudge_domain import AccessToken
from nudge.services.infrastructure.document_store import DocumentStore, StorageError, make_key
from nudge.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_token,
    encrypt_token,
)

logger = get_logger(__name__)

TOKEN_KEY_PREFIX = "gmail_token"


class TokenStore:
    def __init__(
        self,
        store: DocumentStore,
        buffer_seconds: int = settings.TOKEN_EXPIRY_BUFFER_SECONDS,
        clock=None,
    ):
        self._store = store
        self.buffer_seconds = buffer_seconds
        self._clock = clock or (lambda: datetime.now(UTC))

    def _key(self, owner_id: str) -> str:
        return make_key(TOKEN_KEY_PREFIX, owner_id)

    async def get(self, owner_id: str) -> AccessToken | None:
        """Return a usable token or None. Near-expiry tokens are purged."""
        try:
            document = await self._store.get(self._key(owner_id))
        except StorageError as e:
            logger.warning("Token read failed, treating as absent", owner_id=owner_id, error=str(e))
            return None

        if not document or not document.get("value"):
            return None

        try:
            expires_at = datetime.fromtimestamp(float(document.get("expires_at", 0)), tz=UTC)
            token = AccessToken(value=decrypt_token(document["value"]), expires_at=expires_at)
        except (EncryptionError, TypeError, ValueError) as e:
            logger.warning("Stored token unreadable, purging", owner_id=owner_id, error=str(e))
            await self.clear(owner_id)
            return None

        if token.expires_within(self.buffer_seconds, now=self._clock()):
            logger.info(
                "Token inside expiry buffer, purging",
                owner_id=owner_id,
                expires_at=expires_at.isoformat(),
            )
            await self.clear(owner_id)
            return None

        return token

    async def put(self, owner_id: str, value: str, ttl_seconds: int, strict: bool = False) -> AccessToken:
        """
        Persist a token expiring ttl_seconds from now.

        Write failures are logged and swallowed unless `strict`, in which case
        StorageError or EncryptionError propagates.
        """
        expires_at = self._clock() + timedelta(seconds=int(ttl_seconds))
        token = AccessToken(value=value, expires_at=expires_at)

        try:
            await self._store.merge(
                self._key(owner_id),
                {"value": encrypt_token(value), "expires_at": expires_at.timestamp()},
                ttl_s=int(ttl_seconds),
            )
            logger.info("Access token stored", owner_id=owner_id, expires_at=expires_at.isoformat())
        except (StorageError, EncryptionError) as e:
            logger.error("Failed to persist access token", owner_id=owner_id, error=str(e))
            if strict:
                raise

        return token

    async def clear(self, owner_id: str) -> None:
        try:
            await self._store.delete(self._key(owner_id))
            logger.info("Access token cleared", owner_id=owner_id)
        except StorageError as e:
            logger.error("Failed to clear access token", owner_id=owner_id, error=str(e))
