import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from nudge.models.domain.nudge_domain import (
    AccessToken,
    DispatchRequest,
    Failed,
    FailureKind,
    OwnerProfile,
    Sent,
    SkipReason,
    Skipped,
)
from nudge.services.consent.coordinator import AuthTimeout
from nudge.services.cooldown_tracker import CooldownTracker
from nudge.services.dispatch_service import DispatchEngine
from nudge.services.google_gmail_service import GoogleGmailService
from nudge.services.quota_ledger import QuotaLedger
from nudge.services.suppression_service import SuppressionList
from nudge.services.token_store import TokenStore


def _request(**overrides) -> DispatchRequest:
    params = {
        "target_id": "acme",
        "target_name": "Acme",
        "recipient_address": "hr@acme.example",
        "subject": "Following up",
        "body": "Hi Acme team, following up on my application.",
        "owner": OwnerProfile(owner_id="u1", email="u1@example.com"),
    }
    params.update(overrides)
    return DispatchRequest(**params)


class EngineHarness:
    def __init__(self, store, handler, token_store_backend=None, state_store=None):
        self.calls: list[httpx.Request] = []

        def recording(request):
            self.calls.append(request)
            return handler(request)

        async def no_sleep(seconds):
            return None

        state_store = state_store or store
        self.token_store = TokenStore(token_store_backend or store)
        self.quota = QuotaLedger(state_store, daily_limit=100)
        self.cooldowns = CooldownTracker(state_store, window=timedelta(days=14))
        self.suppression = SuppressionList(state_store)
        self.coordinator = AsyncMock()
        self.coordinator.acquire_token.return_value = AccessToken(
            value="ya29.consented", expires_at=datetime.now(UTC) + timedelta(hours=1)
        )
        self.observer = AsyncMock()
        self.engine = DispatchEngine(
            token_store=self.token_store,
            coordinator=self.coordinator,
            quota=self.quota,
            cooldowns=self.cooldowns,
            suppression=self.suppression,
            gmail=GoogleGmailService(transport=httpx.MockTransport(recording), sleep=no_sleep),
            observer=self.observer,
        )


def _ok(request):
    return httpx.Response(200, json={"id": "msg-1", "threadId": "thread-1"})


def _status(code):
    def handler(request):
        return httpx.Response(code, json={"error": {"code": code, "message": "nope"}})

    return handler


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"recipient_address": None}, {"recipient_address": "  "}, {"subject": ""}, {"body": " "}],
)
async def test_invalid_request_skipped(store, overrides):
    harness = EngineHarness(store, _ok)

    outcome = await harness.engine.send(_request(**overrides))

    assert isinstance(outcome, Skipped)
    assert outcome.reason == SkipReason.INVALID
    assert harness.calls == []


@pytest.mark.asyncio
async def test_unsubscribed_recipient_skipped(store):
    harness = EngineHarness(store, _ok)
    await harness.suppression.unsubscribe("HR@acme.example")

    outcome = await harness.engine.send(_request())

    assert outcome.reason == SkipReason.UNSUBSCRIBED
    assert harness.calls == []


@pytest.mark.asyncio
async def test_cooldown_skipped_with_retry_after(store):
    harness = EngineHarness(store, _ok)
    await harness.cooldowns.record("u1", "acme")

    outcome = await harness.engine.send(_request())

    assert outcome.reason == SkipReason.COOLDOWN
    assert outcome.retry_after > timedelta(days=13)
    assert outcome.user_message == "You can nudge Acme again in 14 days"
    harness.coordinator.acquire_token.assert_not_awaited()


@pytest.mark.asyncio
async def test_success_records_cooldown_and_quota(store):
    harness = EngineHarness(store, _ok)
    await harness.token_store.put("u1", "ya29.cached", ttl_seconds=3600)

    outcome = await harness.engine.send(_request())

    assert outcome == Sent(message_id="msg-1", thread_id="thread-1")
    assert harness.calls[0].headers["Authorization"] == "Bearer ya29.cached"
    harness.coordinator.acquire_token.assert_not_awaited()
    assert await harness.quota.remaining("u1") == 99
    assert (await harness.cooldowns.check("u1", "acme")).allowed is False


@pytest.mark.asyncio
async def test_missing_token_runs_consent(store):
    harness = EngineHarness(store, _ok)

    outcome = await harness.engine.send(_request())

    assert isinstance(outcome, Sent)
    harness.coordinator.acquire_token.assert_awaited_once_with("u1")
    assert harness.calls[0].headers["Authorization"] == "Bearer ya29.consented"


@pytest.mark.asyncio
async def test_unauthorized_clears_token(store):
    harness = EngineHarness(store, _status(401))
    await harness.token_store.put("u1", "ya29.revoked", ttl_seconds=3600)

    outcome = await harness.engine.send(_request())

    assert outcome == Failed(error=FailureKind.AUTH_EXPIRED)
    assert await harness.token_store.get("u1") is None
    assert await harness.quota.remaining("u1") == 100
    assert (await harness.cooldowns.check("u1", "acme")).allowed is True


@pytest.mark.asyncio
async def test_rate_limited(store):
    harness = EngineHarness(store, _status(429))

    outcome = await harness.engine.send(_request())

    assert outcome.error == FailureKind.RATE_LIMITED
    assert len(harness.calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("code", [400, 403, 500, 503])
async def test_provider_error(store, code):
    harness = EngineHarness(store, _status(code))

    outcome = await harness.engine.send(_request())

    assert outcome.error == FailureKind.PROVIDER_ERROR
    assert outcome.message
    assert await harness.quota.remaining("u1") == 100


@pytest.mark.asyncio
async def test_timeout(store):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    harness = EngineHarness(store, handler)

    outcome = await harness.engine.send(_request())

    assert outcome.error == FailureKind.TIMEOUT


@pytest.mark.asyncio
async def test_consent_error_propagates(store):
    harness = EngineHarness(store, _ok)
    harness.coordinator.acquire_token.side_effect = AuthTimeout("Authentication timed out", "u1")

    with pytest.raises(AuthTimeout):
        await harness.engine.send(_request())
    assert harness.calls == []


@pytest.mark.asyncio
async def test_quota_not_checked_inside_send(store):
    harness = EngineHarness(store, _ok)
    harness.quota.daily_limit = 0

    assert isinstance(await harness.engine.send(_request()), Sent)


@pytest.mark.asyncio
async def test_storage_outage_still_sends(store, failing_store):
    harness = EngineHarness(store, _ok, token_store_backend=failing_store, state_store=failing_store)

    outcome = await harness.engine.send(_request())

    assert isinstance(outcome, Sent)
    harness.coordinator.acquire_token.assert_awaited_once()


@pytest.mark.asyncio
async def test_observer_notified(store):
    harness = EngineHarness(store, _ok)

    outcome = await harness.engine.send(_request())
    await asyncio.sleep(0)

    harness.observer.on_outcome.assert_awaited_once()
    request, observed, duration_ms = harness.observer.on_outcome.await_args.args
    assert request.target_id == "acme"
    assert observed == outcome
    assert duration_ms >= 0


@pytest.mark.asyncio
async def test_failing_observer_does_not_affect_outcome(store):
    harness = EngineHarness(store, _ok)
    harness.observer.on_outcome.side_effect = RuntimeError("metrics sink down")

    outcome = await harness.engine.send(_request())
    await asyncio.sleep(0)

    assert isinstance(outcome, Sent)
