"""
Observers notified after every dispatch outcome. Observation never affects
the outcome: the engine schedules it and moves on.
"""

from nudge.infrastructure.observability.logging import log_dispatch_outcome
from nudge.models.domain.nudge_domain import DispatchRequest, Failed, Skipped


class DispatchObserver:
    """No-op observer."""

    async def on_outcome(self, request: DispatchRequest, outcome, duration_ms: float) -> None:
        return None


class LoggingDispatchObserver(DispatchObserver):
    async def on_outcome(self, request: DispatchRequest, outcome, duration_ms: float) -> None:
        detail = None
        if isinstance(outcome, Skipped):
            detail = outcome.reason.value
        elif isinstance(outcome, Failed):
            detail = outcome.error.value

        log_dispatch_outcome(
            owner_id=request.owner.owner_id,
            target_id=request.target_id,
            status=outcome.status,
            detail=detail,
            duration_ms=duration_ms,
        )
