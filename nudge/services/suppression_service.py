"""
Suppression list: recipient addresses that opted out of nudges.
"""

from datetime import UTC, datetime

from nudge.infrastructure.observability.logging import get_logger
from nudge.services.infrastructure.document_store import DocumentStore, StorageError, make_key

logger = get_logger(__name__)

SUPPRESSION_KEY_PREFIX = "unsubscribed"


class SuppressionList:
    def __init__(self, store: DocumentStore):
        self._store = store

    def _key(self, address: str) -> str:
        return make_key(SUPPRESSION_KEY_PREFIX, address.strip().lower())

    async def is_unsubscribed(self, address: str) -> bool:
        """Fails open: an unreadable list never blocks a send."""
        try:
            return await self._store.get(self._key(address)) is not None
        except StorageError as e:
            logger.warning("Suppression check failed, assuming subscribed", error=str(e))
            return False

    async def unsubscribe(self, address: str, source: str = "recipient") -> None:
        await self._store.merge(
            self._key(address),
            {"address": address.strip().lower(), "source": source, "at": datetime.now(UTC).isoformat()},
        )
        logger.info("Address unsubscribed", source=source)
