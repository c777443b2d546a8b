"""
Batch Orchestrator: sends nudges to an ordered list of targets, one at a time.

Targets are processed strictly in input order with a fixed pause between items
that reached Gmail. Quota, suppression and cooldown are re-checked before each
send so progress can report the specific skip reason. Consent failures and
quota exhaustion end the batch; every other failure is recorded and the batch
moves on.
"""

import asyncio
import inspect

from nudge.config import settings
from nudge.infrastructure.observability.logging import get_logger
from nudge.models.domain.nudge_domain import (
    BatchError,
    BatchProgress,
    BatchResult,
    DispatchRequest,
    Failed,
    FailureKind,
    NudgeTarget,
    OwnerProfile,
    Sent,
)
from nudge.services.consent.coordinator import ConsentFlowError
from nudge.services.cooldown_tracker import CooldownTracker
from nudge.services.dispatch_service import DispatchEngine
from nudge.services.nudge_service import report_progress
from nudge.services.quota_ledger import QuotaLedger
from nudge.services.suppression_service import SuppressionList

logger = get_logger(__name__)

# Failures that mean Gmail was actually contacted
PROVIDER_FAILURES = {
    FailureKind.AUTH_EXPIRED,
    FailureKind.RATE_LIMITED,
    FailureKind.PROVIDER_ERROR,
    FailureKind.TIMEOUT,
}


class BatchOrchestrator:
    def __init__(
        self,
        engine: DispatchEngine,
        quota: QuotaLedger,
        cooldowns: CooldownTracker,
        suppression: SuppressionList,
        delay_s: float = settings.NUDGE_BATCH_DELAY_SECONDS,
        sleep=asyncio.sleep,
    ):
        self._engine = engine
        self._quota = quota
        self._cooldowns = cooldowns
        self._suppression = suppression
        self.delay_s = delay_s
        self._sleep = sleep

    async def run(
        self,
        owner: OwnerProfile,
        targets: list[NudgeTarget],
        compose,
        on_progress=None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """
        Run a batch.

        Args:
            owner: Sending candidate
            targets: Targets in priority order
            compose: Callable (sync or async) mapping a target to (subject, body)
            on_progress: Optional callback receiving BatchProgress after each item
            cancel_event: Set to stop before the next item; pending items stay unattempted

        Returns:
            BatchResult: Counts plus ordered errors for every item not sent
        """
        result = BatchResult(total=len(targets))
        logger.info("Batch started", owner_id=owner.owner_id, total=result.total)

        pause_before_next = False
        for index, target in enumerate(targets, start=1):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break
            if pause_before_next and await self._pause(cancel_event):
                result.cancelled = True
                break

            status, reached_provider, stop = await self._process(owner, target, result, compose)
            pause_before_next = reached_provider

            await report_progress(
                on_progress,
                BatchProgress(
                    current=index, total=result.total, target_name=target.target_name, status=status
                ),
            )
            if stop:
                break

        logger.info(
            "Batch finished",
            owner_id=owner.owner_id,
            total=result.total,
            sent=result.sent,
            failed=result.failed,
            skipped=result.skipped,
            cancelled=result.cancelled,
        )
        return result

    async def _pause(self, cancel_event: asyncio.Event | None) -> bool:
        """Wait the inter-item delay. True when cancelled during the wait."""
        if cancel_event is None:
            await self._sleep(self.delay_s)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.delay_s)
        except TimeoutError:
            return False
        return True

    async def _process(
        self, owner: OwnerProfile, target: NudgeTarget, result: BatchResult, compose
    ) -> tuple[str, bool, bool]:
        """Handle one target. Returns (status, reached_provider, stop_batch)."""
        name = target.target_name

        def skip(message: str) -> tuple[str, bool, bool]:
            result.skipped += 1
            result.errors.append(BatchError(target_name=name, error=message))
            return "skipped", False, False

        def fail(message: str, reached_provider: bool = False, stop: bool = False):
            result.failed += 1
            result.errors.append(BatchError(target_name=name, error=message))
            return "failed", reached_provider, stop

        address = target.primary_address()
        if not address:
            return skip("No email address")

        if not await self._quota.can_send(owner.owner_id):
            logger.info("Batch stopped on daily quota", owner_id=owner.owner_id, target_id=target.target_id)
            return fail(Failed(error=FailureKind.QUOTA_EXCEEDED).user_message, stop=True)

        if await self._suppression.is_unsubscribed(address):
            return skip("Unsubscribed")

        cooldown = await self._cooldowns.check(owner.owner_id, target.target_id)
        if not cooldown.allowed:
            return skip(cooldown.reason(name))

        try:
            composed = compose(target)
            if inspect.isawaitable(composed):
                composed = await composed
            subject, body = composed
        except Exception as e:
            logger.error(
                "Failed to compose nudge",
                owner_id=owner.owner_id,
                target_id=target.target_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return fail(f"Could not prepare message: {e}")

        request = DispatchRequest(
            target_id=target.target_id,
            target_name=name,
            recipient_address=address,
            subject=subject,
            body=body,
            owner=owner,
        )
        try:
            outcome = await self._engine.send(request)
        except ConsentFlowError as e:
            logger.warning(
                "Batch stopped on consent failure",
                owner_id=owner.owner_id,
                error_type=type(e).__name__,
            )
            return fail(str(e), stop=True)

        if isinstance(outcome, Sent):
            result.sent += 1
            return "sent", True, False
        if isinstance(outcome, Failed):
            return fail(outcome.user_message, reached_provider=outcome.error in PROVIDER_FAILURES)
        return skip(outcome.user_message)
