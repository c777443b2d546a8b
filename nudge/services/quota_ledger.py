"""
Quota Ledger: per-owner daily send counter against a fixed ceiling.

The day is part of the document key, so a new day starts from an absent
record (zero) without any reset job. Storage errors fail open: a broken
counter must not block a legitimate send.
"""

from datetime import UTC, datetime, timedelta

from nudge.config import settings
from nudge.infrastructure.observability.logging import get_logger
from nudge.models.domain.nudge_domain import QuotaRecord, QuotaStatus
from nudge.services.infrastructure.document_store import DocumentStore, StorageError, make_key

logger = get_logger(__name__)

QUOTA_KEY_PREFIX = "quota"


class QuotaLedger:
    def __init__(self, store: DocumentStore, daily_limit: int = settings.NUDGE_DAILY_LIMIT, clock=None):
        self._store = store
        self.daily_limit = daily_limit
        self._clock = clock or (lambda: datetime.now(UTC))

    def _date_key(self) -> str:
        return self._clock().date().isoformat()

    def _key(self, owner_id: str, date_key: str) -> str:
        return make_key(QUOTA_KEY_PREFIX, owner_id, date_key)

    async def _read(self, owner_id: str) -> QuotaRecord:
        date_key = self._date_key()
        document = await self._store.get(self._key(owner_id, date_key))
        count = int(document.get("count", 0)) if document else 0
        return QuotaRecord(owner_id=owner_id, date_key=date_key, count=max(0, count))

    async def can_send(self, owner_id: str) -> bool:
        try:
            record = await self._read(owner_id)
        except StorageError as e:
            logger.warning("Quota check failed, allowing send", owner_id=owner_id, error=str(e))
            return True
        return record.count < self.daily_limit

    async def remaining(self, owner_id: str) -> int:
        try:
            record = await self._read(owner_id)
        except StorageError as e:
            logger.warning("Quota read failed, reporting full quota", owner_id=owner_id, error=str(e))
            return self.daily_limit
        return max(0, self.daily_limit - record.count)

    async def record_send(self, owner_id: str) -> None:
        date_key = self._date_key()
        key = self._key(owner_id, date_key)
        try:
            new_count = await self._store.increment(key, "count")
            await self._store.merge(key, {"owner_id": owner_id, "date_key": date_key})
        except StorageError as e:
            logger.warning("Failed to record send against quota", owner_id=owner_id, error=str(e))
            return

        if new_count > self.daily_limit:
            logger.warning(
                "Quota ceiling exceeded after send",
                owner_id=owner_id,
                used=new_count,
                limit=self.daily_limit,
            )
        else:
            logger.info("Send recorded against quota", owner_id=owner_id, used=new_count)

    async def status(self, owner_id: str) -> QuotaStatus:
        """Usage summary for display, including when the counter rolls over."""
        now = self._clock()
        reset_at = now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
        try:
            used = (await self._read(owner_id)).count
        except StorageError as e:
            logger.warning("Quota status unavailable", owner_id=owner_id, error=str(e))
            used = 0

        return QuotaStatus(
            used=used,
            remaining=max(0, self.daily_limit - used),
            limit=self.daily_limit,
            can_send=used < self.daily_limit,
            reset_at=reset_at,
        )
