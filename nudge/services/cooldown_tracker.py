"""
Cooldown Tracker: enforces a minimum gap between sends from one owner to one target.
Same fail-open policy as the quota ledger.
"""

from datetime import UTC, datetime, timedelta

from nudge.config import settings
from nudge.infrastructure.observability.logging import get_logger
from nudge.models.domain.nudge_domain import CooldownRecord, CooldownStatus, days_rounded_up
from nudge.services.infrastructure.document_store import (
    KEY_SEPARATOR,
    DocumentStore,
    StorageError,
    make_key,
)

logger = get_logger(__name__)

COOLDOWN_KEY_PREFIX = "nudges"


class CooldownTracker:
    def __init__(
        self,
        store: DocumentStore,
        window: timedelta = timedelta(days=settings.NUDGE_COOLDOWN_DAYS),
        clock=None,
    ):
        self._store = store
        self.window = window
        self._clock = clock or (lambda: datetime.now(UTC))

    def _key(self, owner_id: str, target_id: str) -> str:
        return make_key(COOLDOWN_KEY_PREFIX, owner_id, target_id)

    async def check(self, owner_id: str, target_id: str) -> CooldownStatus:
        try:
            document = await self._store.get(self._key(owner_id, target_id))
        except StorageError as e:
            logger.warning(
                "Cooldown check failed, allowing send",
                owner_id=owner_id,
                target_id=target_id,
                error=str(e),
            )
            return CooldownStatus(allowed=True)

        if not document or document.get("last_sent_at") is None:
            return CooldownStatus(allowed=True)

        last_sent_at = datetime.fromtimestamp(float(document["last_sent_at"]), tz=UTC)
        elapsed = self._clock() - last_sent_at

        if elapsed < self.window:
            retry_after = self.window - elapsed
            return CooldownStatus(
                allowed=False,
                retry_after=retry_after,
                retry_after_days=days_rounded_up(retry_after),
                last_sent_at=last_sent_at,
            )

        return CooldownStatus(allowed=True, last_sent_at=last_sent_at)

    async def record(
        self,
        owner_id: str,
        target_id: str,
        target_name: str | None = None,
        recipient: str | None = None,
    ) -> None:
        """Merge the send into the (owner, target) record."""
        key = self._key(owner_id, target_id)
        fields = {
            "owner_id": owner_id,
            "target_id": target_id,
            "last_sent_at": self._clock().timestamp(),
        }
        if target_name:
            fields["target_name"] = target_name
        if recipient:
            fields["recipient"] = recipient

        try:
            await self._store.merge(key, fields)
            send_count = await self._store.increment(key, "send_count")
        except StorageError as e:
            logger.warning(
                "Failed to record cooldown", owner_id=owner_id, target_id=target_id, error=str(e)
            )
            return

        logger.info(
            "Cooldown recorded", owner_id=owner_id, target_id=target_id, send_count=send_count
        )

    async def history(self, owner_id: str) -> list[CooldownRecord]:
        """All targets this owner has nudged, most recent first."""
        prefix = make_key(COOLDOWN_KEY_PREFIX, owner_id) + KEY_SEPARATOR
        try:
            documents = await self._store.scan(prefix)
        except StorageError as e:
            logger.warning("Nudge history unavailable", owner_id=owner_id, error=str(e))
            return []

        records = []
        for key, document in documents:
            if document.get("last_sent_at") is None:
                continue
            records.append(
                CooldownRecord(
                    owner_id=owner_id,
                    target_id=document.get("target_id") or key[len(prefix):],
                    target_name=document.get("target_name"),
                    recipient=document.get("recipient"),
                    last_sent_at=datetime.fromtimestamp(float(document["last_sent_at"]), tz=UTC),
                    send_count=int(document.get("send_count", 1)),
                )
            )

        return sorted(records, key=lambda record: record.last_sent_at, reverse=True)
