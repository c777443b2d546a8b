from unittest.mock import AsyncMock

import httpx
import pytest

from nudge.services.consent.callback_service import ConsentCallbackService, InvalidConsentState
from nudge.services.consent.channel import ConsentChannelError
from nudge.services.consent.signals import ConsentSignalStore
from nudge.services.google_oauth_service import GoogleOAuthService
from nudge.services.infrastructure.document_store import StorageError
from nudge.services.infrastructure.encryption_service import decrypt_token
from nudge.services.oauth_state_service import OAuthStateService
from nudge.services.token_store import TokenStore


def _service(store, oauth_service, channel=None) -> ConsentCallbackService:
    return ConsentCallbackService(
        state_service=OAuthStateService(store),
        oauth_service=oauth_service,
        token_store=TokenStore(store),
        signal_store=ConsentSignalStore(store),
        channel=channel,
    )


@pytest.mark.asyncio
async def test_success_stores_token_and_broadcasts_encrypted(store, oauth_service, channel):
    state = await OAuthStateService(store).generate_state("u1")

    signal = await _service(store, oauth_service, channel).complete(state, code="auth-code")

    assert signal.status == "success"
    assert (await TokenStore(store).get("u1")).value == "ya29.fresh-token"
    assert store.documents["consent_signal:u1"]["status"] == "success"
    assert "token" not in store.documents["consent_signal:u1"]

    owner_id, published = channel.published[0]
    assert owner_id == "u1"
    assert published.token != "ya29.fresh-token"
    assert decrypt_token(published.token) == "ya29.fresh-token"
    assert published.expires_in == 3599


@pytest.mark.asyncio
async def test_provider_error_is_reported(store, oauth_service, channel):
    state = await OAuthStateService(store).generate_state("u1")

    signal = await _service(store, oauth_service, channel).complete(state, error="access_denied")

    assert signal.status == "error"
    assert signal.error == "access_denied"
    assert store.documents["consent_signal:u1"]["error"] == "access_denied"
    assert await TokenStore(store).get("u1") is None


@pytest.mark.asyncio
async def test_failed_exchange_is_reported(store, channel):
    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant"})

    oauth = GoogleOAuthService(
        client_id="client-123",
        client_secret="secret",
        redirect_uri="http://localhost:8000/oauth2callback",
        transport=httpx.MockTransport(handler),
        backoff_factor=0,
    )
    state = await OAuthStateService(store).generate_state("u1")

    signal = await _service(store, oauth, channel).complete(state, code="stale-code")

    assert signal.status == "error"
    assert "already used" in signal.error
    assert channel.published[0][1].status == "error"


@pytest.mark.asyncio
async def test_missing_code_is_reported(store, oauth_service):
    state = await OAuthStateService(store).generate_state("u1")

    signal = await _service(store, oauth_service).complete(state)

    assert signal.status == "error"
    assert signal.error == "No authorization code received"


@pytest.mark.asyncio
async def test_unknown_state_rejected(store, oauth_service):
    with pytest.raises(InvalidConsentState):
        await _service(store, oauth_service).complete("forged-state", code="auth-code")


@pytest.mark.asyncio
async def test_state_cannot_be_replayed(store, oauth_service):
    state = await OAuthStateService(store).generate_state("u1")
    service = _service(store, oauth_service)
    await service.complete(state, code="auth-code")

    with pytest.raises(InvalidConsentState):
        await service.complete(state, code="auth-code")


@pytest.mark.asyncio
async def test_broadcast_failure_still_records_signal(store, oauth_service):
    channel = AsyncMock()
    channel.publish.side_effect = ConsentChannelError("redis down")
    state = await OAuthStateService(store).generate_state("u1")

    signal = await _service(store, oauth_service, channel).complete(state, code="auth-code")

    assert signal.status == "success"
    assert store.documents["consent_signal:u1"]["status"] == "success"
    channel.publish.assert_awaited_once()


@pytest.mark.asyncio
async def test_token_save_failure_reported_as_error(store, oauth_service, channel, monkeypatch):
    state = await OAuthStateService(store).generate_state("u1")
    merge = store.merge

    async def merge_without_tokens(key, fields, ttl_s=None):
        if key.startswith("gmail_token:"):
            raise StorageError("store unavailable", key=key, operation="merge")
        await merge(key, fields, ttl_s=ttl_s)

    monkeypatch.setattr(store, "merge", merge_without_tokens)

    signal = await _service(store, oauth_service, channel).complete(state, code="auth-code")

    assert signal.status == "error"
    assert signal.error == "Could not save Gmail authorization"
    assert signal.token is None
    assert store.documents["consent_signal:u1"]["status"] == "error"
    assert channel.published[0][1].status == "error"
