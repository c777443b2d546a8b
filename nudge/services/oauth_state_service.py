"""
OAuth State Service for consent flow CSRF protection.
Binds a random state parameter to the owner who started the consent flow.
"""

import secrets

from nudge.infrastructure.observability.logging import get_logger
from nudge.services.infrastructure.document_store import DocumentStore, StorageError, make_key

logger = get_logger(__name__)

STATE_TTL_SECONDS = 900  # 15 minutes
STATE_KEY_PREFIX = "oauth_state"
STATE_LENGTH = 32  # bytes for cryptographically secure state


class OAuthStateError(Exception):
    """Custom exception for OAuth state-related errors."""

    pass


class OAuthStateService:
    def __init__(self, store: DocumentStore, ttl_seconds: int = STATE_TTL_SECONDS):
        self._store = store
        self.ttl_seconds = ttl_seconds

    def _key(self, state: str) -> str:
        return make_key(STATE_KEY_PREFIX, state)

    async def generate_state(self, owner_id: str) -> str:
        """
        Generate a state parameter and store it against the owner.

        Raises:
            OAuthStateError: If state storage fails
        """
        state = secrets.token_urlsafe(STATE_LENGTH)
        try:
            await self._store.merge(self._key(state), {"owner_id": owner_id}, ttl_s=self.ttl_seconds)
        except StorageError as e:
            logger.error("Failed to store OAuth state", owner_id=owner_id, error=str(e))
            raise OAuthStateError(f"State generation failed: {e}") from e

        logger.info(
            "OAuth state generated",
            owner_id=owner_id,
            state_length=len(state),
            ttl_seconds=self.ttl_seconds,
        )
        return state

    async def consume_state(self, state: str) -> str | None:
        """
        Resolve and invalidate a state parameter. Single use.

        Returns:
            The owner id, or None if the state is unknown or expired
        """
        if not state:
            return None

        key = self._key(state)
        try:
            document = await self._store.get(key)
            if document:
                await self._store.delete(key)
        except StorageError as e:
            logger.error(
                "OAuth state lookup failed", state_preview=state[:8] + "...", error=str(e)
            )
            raise OAuthStateError(f"State validation failed: {e}") from e

        if not document:
            logger.warning("Unknown or expired OAuth state", state_preview=state[:8] + "...")
            return None

        return document.get("owner_id")
