"""
Google OAuth client for the gmail.send scope.

Builds the consent URL the surface opens and redeems the authorization code
the landing step receives. Transient token-endpoint failures are retried with
exponential backoff.
"""

import asyncio
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ValidationError, field_validator

from nudge.config import settings
from nudge.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

TOKEN_REQUEST_TIMEOUT = 10.0
TOKEN_REQUEST_ATTEMPTS = 3
BACKOFF_BASE = 2  # waits 2s, then 4s
TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})

FRIENDLY_ERRORS = {
    "invalid_grant": "Authorization code expired or already used. Please try again.",
    "invalid_client": "Gmail integration is misconfigured.",
    "access_denied": "Gmail access was denied.",
    "invalid_request": "Invalid authorization request.",
}


class GoogleOAuthError(Exception):
    """Consent URL or token exchange failure. `error_code` is Google's code when known."""

    def __init__(
        self, message: str, error_code: str | None = None, response_data: dict | None = None
    ):
        super().__init__(message)
        self.error_code = error_code
        self.response_data = response_data or {}


class GrantedToken(BaseModel):
    """Token endpoint payload for an authorization_code grant."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int = settings.DEFAULT_TOKEN_TTL_SECONDS
    scope: str = ""

    @field_validator("access_token")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("empty access token")
        return value

    @property
    def can_send(self) -> bool:
        return "gmail.send" in self.scope


class GoogleOAuthService:
    """
    OAuth 2.0 web-server flow for delegated Gmail sending.

    `transport` lets tests route requests to an httpx.MockTransport.
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        scope: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff_factor: float = BACKOFF_BASE,
    ):
        self.client_id = client_id or settings.GOOGLE_CLIENT_ID
        self.client_secret = client_secret or settings.GOOGLE_CLIENT_SECRET
        self.redirect_uri = redirect_uri or settings.gmail_redirect_uri()
        self.scope = scope or settings.GMAIL_SCOPE
        self._transport = transport
        self._backoff_factor = backoff_factor

        if not self.client_id:
            raise GoogleOAuthError("GOOGLE_CLIENT_ID not configured", error_code="config_error")
        logger.info(
            "Gmail OAuth client ready",
            client_preview=self.client_id[:12] + "...",
            redirect_uri=self.redirect_uri,
        )

    def generate_consent_url(self, state: str) -> str:
        """
        Authorization URL for the consent surface.

        Args:
            state: Single-use CSRF value that also identifies the owner on return
        """
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": self.scope,
                "response_type": "code",
                "state": state,
                "prompt": "consent",
                "include_granted_scopes": "true",
            }
        )
        logger.debug("Consent URL built", state_preview=state[:8] + "...")
        return f"{GOOGLE_AUTH_URL}?{query}"

    async def exchange_code_for_token(self, authorization_code: str) -> GrantedToken:
        """
        Redeem an authorization code for an access token.

        Raises:
            GoogleOAuthError: Misconfiguration, network failure, or a rejected grant
        """
        if not self.client_secret:
            raise GoogleOAuthError("GOOGLE_CLIENT_SECRET not configured", error_code="config_error")

        form = {
            "grant_type": "authorization_code",
            "code": authorization_code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
        }
        try:
            response = await self._post_form(GOOGLE_TOKEN_URL, form)
        except httpx.RequestError as e:
            logger.error("Token endpoint unreachable", error=str(e), error_type=type(e).__name__)
            raise GoogleOAuthError(f"Could not reach Google token endpoint: {e}") from e

        return self._parse_grant(response)

    async def _post_form(self, url: str, form: dict) -> httpx.Response:
        async with httpx.AsyncClient(timeout=TOKEN_REQUEST_TIMEOUT, transport=self._transport) as client:
            attempt = 1
            while True:
                last_try = attempt >= TOKEN_REQUEST_ATTEMPTS
                try:
                    response = await client.post(url, data=form)
                except httpx.RequestError as e:
                    if last_try:
                        raise
                    logger.warning("Token request failed, backing off", attempt=attempt, error=str(e))
                else:
                    if response.status_code not in TRANSIENT_STATUSES or last_try:
                        return response
                    logger.warning(
                        "Token endpoint busy, backing off",
                        attempt=attempt,
                        status_code=response.status_code,
                    )

                await asyncio.sleep(self._backoff_factor**attempt)
                attempt += 1

    def _parse_grant(self, response: httpx.Response) -> GrantedToken:
        if response.is_error:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            error_code = payload.get("error") or f"http_{response.status_code}"
            logger.error(
                "Code exchange rejected",
                status_code=response.status_code,
                error_code=error_code,
                error_description=payload.get("error_description"),
            )
            message = FRIENDLY_ERRORS.get(error_code, f"Google OAuth error: {error_code}")
            raise GoogleOAuthError(message, error_code=error_code, response_data=payload)

        try:
            grant = GrantedToken.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise GoogleOAuthError("Token response missing access token", error_code="invalid_response") from e

        if not grant.can_send:
            logger.warning("Granted token lacks gmail.send scope", scope=grant.scope)
        logger.info("Code exchange succeeded", expires_in=grant.expires_in)
        return grant
