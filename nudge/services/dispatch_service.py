"""
Dispatch Engine: sends one prepared nudge through Gmail.

Order of checks: request validity, suppression, cooldown, token (consent if
needed), remote send. Quota is the caller's concern. Only a confirmed send
updates the cooldown tracker and quota ledger.
"""

import asyncio
import time

from nudge.infrastructure.observability.logging import get_logger
from nudge.models.domain.nudge_domain import (
    DispatchRequest,
    Failed,
    FailureKind,
    Sent,
    SkipReason,
    Skipped,
)
from nudge.services.consent.coordinator import ConsentFlowCoordinator
from nudge.services.cooldown_tracker import CooldownTracker
from nudge.services.dispatch_observer import DispatchObserver
from nudge.services.google_gmail_service import (
    GmailTimeoutError,
    GoogleGmailError,
    GoogleGmailService,
    build_raw_message,
)
from nudge.services.quota_ledger import QuotaLedger
from nudge.services.suppression_service import SuppressionList
from nudge.services.token_store import TokenStore

logger = get_logger(__name__)


class DispatchEngine:
    def __init__(
        self,
        token_store: TokenStore,
        coordinator: ConsentFlowCoordinator,
        quota: QuotaLedger,
        cooldowns: CooldownTracker,
        suppression: SuppressionList,
        gmail: GoogleGmailService,
        observer: DispatchObserver | None = None,
    ):
        self._token_store = token_store
        self._coordinator = coordinator
        self._quota = quota
        self._cooldowns = cooldowns
        self._suppression = suppression
        self._gmail = gmail
        self._observer = observer or DispatchObserver()
        self._observations: set[asyncio.Task] = set()

    async def send(self, request: DispatchRequest):
        """
        Dispatch one nudge and report a typed outcome.

        Returns:
            Sent | Skipped | Failed

        Raises:
            ConsentFlowError: If a token was needed and consent did not complete
        """
        start = time.perf_counter()
        outcome = await self._dispatch(request)
        self._notify(request, outcome, round((time.perf_counter() - start) * 1000, 2))
        return outcome

    async def _dispatch(self, request: DispatchRequest):
        owner_id = request.owner.owner_id
        address = (request.recipient_address or "").strip()

        if not address or not request.subject.strip() or not request.body.strip():
            return Skipped(reason=SkipReason.INVALID)

        if await self._suppression.is_unsubscribed(address):
            return Skipped(reason=SkipReason.UNSUBSCRIBED)

        cooldown = await self._cooldowns.check(owner_id, request.target_id)
        if not cooldown.allowed:
            return Skipped(
                reason=SkipReason.COOLDOWN,
                retry_after=cooldown.retry_after,
                detail=cooldown.reason(request.target_name),
            )

        token = await self._token_store.get(owner_id)
        if token is None:
            token = await self._coordinator.acquire_token(owner_id)

        raw_message = build_raw_message(address, request.subject, request.body)
        logger.info("Sending nudge", owner_id=owner_id, target_id=request.target_id)

        try:
            data = await self._gmail.send_message(token.value, raw_message)
        except GmailTimeoutError as e:
            return Failed(error=FailureKind.TIMEOUT, message=str(e))
        except GoogleGmailError as e:
            if e.status_code == 401:
                logger.warning("Gmail rejected token, clearing", owner_id=owner_id)
                await self._token_store.clear(owner_id)
                return Failed(error=FailureKind.AUTH_EXPIRED)
            if e.status_code == 429:
                return Failed(error=FailureKind.RATE_LIMITED)
            return Failed(error=FailureKind.PROVIDER_ERROR, message=str(e))

        await self._cooldowns.record(
            owner_id, request.target_id, target_name=request.target_name, recipient=address
        )
        await self._quota.record_send(owner_id)
        return Sent(message_id=data.get("id") or "", thread_id=data.get("threadId"))

    def _notify(self, request: DispatchRequest, outcome, duration_ms: float) -> None:
        task = asyncio.create_task(self._observer.on_outcome(request, outcome, duration_ms))
        self._observations.add(task)
        task.add_done_callback(self._observed)

    def _observed(self, task: asyncio.Task) -> None:
        self._observations.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Dispatch observer failed", error=str(task.exception()))
