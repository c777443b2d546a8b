"""
Nudge Service: single-send entry point plus the read-side views callers
show before sending (quota, cooldown, history).
"""

import inspect

from nudge.infrastructure.observability.logging import get_logger
from nudge.models.domain.nudge_domain import (
    BatchProgress,
    CooldownRecord,
    CooldownStatus,
    DispatchRequest,
    Failed,
    FailureKind,
    NudgeTarget,
    OwnerProfile,
    QuotaStatus,
    SkipReason,
    Skipped,
)
from nudge.services.cooldown_tracker import CooldownTracker
from nudge.services.dispatch_service import DispatchEngine
from nudge.services.quota_ledger import QuotaLedger
from nudge.services.suppression_service import SuppressionList
from nudge.services.token_store import TokenStore

logger = get_logger(__name__)


async def report_progress(on_progress, progress: BatchProgress) -> None:
    """Invoke a sync or async progress callback."""
    if on_progress is None:
        return
    result = on_progress(progress)
    if inspect.isawaitable(result):
        await result


class NudgeService:
    def __init__(
        self,
        engine: DispatchEngine,
        quota: QuotaLedger,
        cooldowns: CooldownTracker,
        suppression: SuppressionList,
        token_store: TokenStore | None = None,
    ):
        self._engine = engine
        self._token_store = token_store
        self._quota = quota
        self._cooldowns = cooldowns
        self._suppression = suppression

    async def can_nudge(self, owner_id: str, target_id: str) -> CooldownStatus:
        return await self._cooldowns.check(owner_id, target_id)

    async def quota_status(self, owner_id: str) -> QuotaStatus:
        return await self._quota.status(owner_id)

    async def history(self, owner_id: str) -> list[CooldownRecord]:
        return await self._cooldowns.history(owner_id)

    async def unsubscribe(self, address: str, source: str = "recipient") -> None:
        await self._suppression.unsubscribe(address, source=source)

    async def send_single_nudge(
        self,
        owner: OwnerProfile,
        target: NudgeTarget,
        subject: str,
        body: str,
        on_progress=None,
    ):
        """
        Send one nudge, enforcing the daily quota first.

        An expired token gets exactly one retry, which re-runs consent.
        Consent errors propagate to the caller.
        """
        address = target.primary_address()
        if not address:
            return Skipped(reason=SkipReason.MISSING_ADDRESS)

        if not await self._quota.can_send(owner.owner_id):
            limit = self._quota.daily_limit
            logger.info("Daily quota exhausted", owner_id=owner.owner_id, limit=limit)
            return Failed(
                error=FailureKind.QUOTA_EXCEEDED,
                message=f"Daily sending limit reached ({limit} emails). Try again tomorrow.",
            )

        request = DispatchRequest(
            target_id=target.target_id,
            target_name=target.target_name,
            recipient_address=address,
            subject=subject,
            body=body,
            owner=owner,
        )
        if self._token_store is not None and await self._token_store.get(owner.owner_id) is None:
            # No cached token: the send starts with consent
            await report_progress(
                on_progress,
                BatchProgress(current=1, total=1, target_name=target.target_name, status="authenticating"),
            )
        await report_progress(
            on_progress, BatchProgress(current=1, total=1, target_name=target.target_name, status="sending")
        )

        outcome = await self._engine.send(request)
        if isinstance(outcome, Failed) and outcome.error == FailureKind.AUTH_EXPIRED:
            logger.info("Token expired during send, retrying once", owner_id=owner.owner_id)
            outcome = await self._engine.send(request)

        await report_progress(
            on_progress,
            BatchProgress(current=1, total=1, target_name=target.target_name, status=outcome.status),
        )
        return outcome
