"""
Consent landing step.

Runs where Google redirects after the consent screen. Resolves the owner from
the single-use state, exchanges the code, stores the token, then reports the
outcome both durably (signal document) and by push (consent channel).
"""

from nudge.infrastructure.observability.logging import get_logger
from nudge.models.domain.nudge_domain import ConsentSignal
from nudge.services.consent.channel import ConsentChannel, ConsentChannelError
from nudge.services.consent.signals import ConsentSignalStore
from nudge.services.google_oauth_service import GoogleOAuthError, GoogleOAuthService
from nudge.services.infrastructure.document_store import StorageError
from nudge.services.infrastructure.encryption_service import EncryptionError, encrypt_token
from nudge.services.oauth_state_service import OAuthStateError, OAuthStateService
from nudge.services.token_store import TokenStore

logger = get_logger(__name__)


class InvalidConsentState(Exception):
    """The state parameter is unknown, expired or already used."""

    pass


class ConsentCallbackService:
    def __init__(
        self,
        state_service: OAuthStateService,
        oauth_service: GoogleOAuthService,
        token_store: TokenStore,
        signal_store: ConsentSignalStore,
        channel: ConsentChannel | None = None,
    ):
        self._state_service = state_service
        self._oauth = oauth_service
        self._token_store = token_store
        self._signal_store = signal_store
        self._channel = channel

    async def complete(
        self, state: str, code: str | None = None, error: str | None = None
    ) -> ConsentSignal:
        """
        Finish a consent attempt and notify the waiting coordinator.

        Returns:
            ConsentSignal: What was reported (token field encrypted)

        Raises:
            InvalidConsentState: If the state does not resolve to an owner
        """
        try:
            owner_id = await self._state_service.consume_state(state)
        except OAuthStateError as e:
            raise InvalidConsentState(str(e)) from e
        if not owner_id:
            raise InvalidConsentState("Unknown or expired state")

        if error:
            logger.warning("Provider returned consent error", owner_id=owner_id, error=error)
            return await self._report(owner_id, ConsentSignal(status="error", error=error))
        if not code:
            return await self._report(
                owner_id, ConsentSignal(status="error", error="No authorization code received")
            )

        try:
            token_response = await self._oauth.exchange_code_for_token(code)
            sealed = encrypt_token(token_response.access_token)
        except (GoogleOAuthError, EncryptionError) as e:
            logger.error(
                "Consent completion failed",
                owner_id=owner_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return await self._report(owner_id, ConsentSignal(status="error", error=str(e)))

        try:
            await self._token_store.put(
                owner_id, token_response.access_token, token_response.expires_in, strict=True
            )
        except (StorageError, EncryptionError) as e:
            logger.error("Could not persist granted token", owner_id=owner_id, error=str(e))
            return await self._report(
                owner_id, ConsentSignal(status="error", error="Could not save Gmail authorization")
            )

        return await self._report(
            owner_id,
            ConsentSignal(status="success", token=sealed, expires_in=token_response.expires_in),
        )

    async def _report(self, owner_id: str, signal: ConsentSignal) -> ConsentSignal:
        try:
            await self._signal_store.write(owner_id, signal)
        except StorageError as e:
            logger.error("Failed to write consent signal", owner_id=owner_id, error=str(e))

        if self._channel is not None:
            try:
                await self._channel.publish(owner_id, signal)
            except ConsentChannelError as e:
                logger.warning("Consent broadcast failed", owner_id=owner_id, error=str(e))

        return signal
