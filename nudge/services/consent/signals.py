"""
Durable consent signal location.

The landing step writes the outcome here (the token itself goes to the token
store); the coordinator polls it. One short-lived document per owner.
"""

from datetime import UTC, datetime

from nudge.infrastructure.observability.logging import get_logger
from nudge.models.domain.nudge_domain import ConsentSignal
from nudge.services.infrastructure.document_store import DocumentStore, StorageError, make_key

logger = get_logger(__name__)

SIGNAL_KEY_PREFIX = "consent_signal"
SIGNAL_TTL_SECONDS = 600


class ConsentSignalStore:
    def __init__(self, store: DocumentStore, ttl_seconds: int = SIGNAL_TTL_SECONDS):
        self._store = store
        self.ttl_seconds = ttl_seconds

    def _key(self, owner_id: str) -> str:
        return make_key(SIGNAL_KEY_PREFIX, owner_id)

    async def read(self, owner_id: str) -> ConsentSignal | None:
        try:
            document = await self._store.get(self._key(owner_id))
        except StorageError as e:
            logger.debug("Consent signal read failed", owner_id=owner_id, error=str(e))
            return None

        if not document or document.get("status") not in ("success", "error"):
            return None
        expires_in = document.get("expires_in")
        return ConsentSignal(
            status=document["status"],
            error=document.get("error"),
            expires_in=int(expires_in) if expires_in is not None else None,
        )

    async def write(self, owner_id: str, signal: ConsentSignal) -> None:
        """Record the outcome. Never persists the token itself."""
        fields = {"status": signal.status, "ready_at": datetime.now(UTC).isoformat()}
        if signal.error:
            fields["error"] = signal.error
        if signal.expires_in is not None:
            fields["expires_in"] = signal.expires_in
        await self._store.merge(self._key(owner_id), fields, ttl_s=self.ttl_seconds)

    async def clear(self, owner_id: str) -> None:
        try:
            await self._store.delete(self._key(owner_id))
        except StorageError as e:
            logger.warning("Failed to clear consent signal", owner_id=owner_id, error=str(e))
