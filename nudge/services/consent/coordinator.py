"""
Consent Flow Coordinator

Acquires a delegated Gmail access token for an owner by driving the
interactive consent flow:

    IDLE -> AWAITING_SIGNAL -> SUCCEEDED | FAILED | TIMED_OUT

While awaiting, two observers race to settle one result: a push listener on
the consent channel and a poller on the durable signal document. Whichever
settles first wins; every later signal is ignored. The hard timeout, the
surface-closure grace period and an explicit error signal are the only ways
an attempt fails after the surface opened.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial

from nudge.config import settings
from nudge.infrastructure.observability.logging import get_logger
from nudge.models.domain.nudge_domain import AccessToken
from nudge.services.consent.channel import ConsentChannel, ConsentChannelError
from nudge.services.consent.signals import ConsentSignalStore
from nudge.services.consent.surface import ConsentSurface
from nudge.services.google_oauth_service import GoogleOAuthService
from nudge.services.infrastructure.encryption_service import EncryptionError, decrypt_token
from nudge.services.oauth_state_service import OAuthStateError, OAuthStateService
from nudge.services.token_store import TokenStore

logger = get_logger(__name__)


class ConsentState(str, Enum):
    IDLE = "idle"
    AWAITING_SIGNAL = "awaiting_signal"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ConsentFlowError(Exception):
    """Base class for consent flow failures."""

    def __init__(self, message: str, owner_id: str | None = None):
        super().__init__(message)
        self.owner_id = owner_id


class AuthCancelled(ConsentFlowError):
    """The user abandoned the consent surface."""

    pass


class AuthDenied(AuthCancelled):
    """The provider reported an explicit error (access denied, bad grant)."""

    pass


class AuthTimeout(ConsentFlowError):
    pass


class AuthBlocked(ConsentFlowError):
    """The host refused to open the consent surface."""

    pass


@dataclass
class ConsentAttempt:
    owner_id: str
    started_at: float
    state: ConsentState = ConsentState.IDLE
    surface: ConsentSurface | None = None
    result: asyncio.Future | None = None
    tasks: list[asyncio.Task] = field(default_factory=list)
    surface_closed_at: float | None = None
    settled_by: str | None = None
    cleaned_up: bool = False


class ConsentFlowCoordinator:
    """
    One in-flight attempt per owner; concurrent callers for the same owner
    share it. A cached, non-expiring token short-circuits the flow.
    """

    def __init__(
        self,
        token_store: TokenStore,
        signal_store: ConsentSignalStore,
        state_service: OAuthStateService,
        oauth_service: GoogleOAuthService,
        surface_factory,
        channel: ConsentChannel | None = None,
        timeout_s: float = settings.CONSENT_TIMEOUT_SECONDS,
        poll_interval_s: float = settings.CONSENT_POLL_INTERVAL_SECONDS,
        min_close_check_s: float = settings.CONSENT_MIN_CLOSE_CHECK_SECONDS,
        close_grace_s: float = settings.CONSENT_CLOSE_GRACE_SECONDS,
        window_width: int = settings.CONSENT_WINDOW_WIDTH,
        window_height: int = settings.CONSENT_WINDOW_HEIGHT,
        clock=time.monotonic,
    ):
        self._token_store = token_store
        self._signal_store = signal_store
        self._state_service = state_service
        self._oauth = oauth_service
        self._surface_factory = surface_factory
        self._channel = channel
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s
        self.min_close_check_s = min_close_check_s
        self.close_grace_s = close_grace_s
        self.window_width = window_width
        self.window_height = window_height
        self._clock = clock

        self._inflight: dict[str, asyncio.Task] = {}
        self._attempts: dict[str, ConsentAttempt] = {}

    def current_state(self, owner_id: str) -> ConsentState:
        attempt = self._attempts.get(owner_id)
        return attempt.state if attempt else ConsentState.IDLE

    async def acquire_token(self, owner_id: str) -> AccessToken:
        """
        Return a usable access token, running the consent flow if needed.

        Raises:
            AuthBlocked: The consent surface could not be opened
            AuthCancelled: The user closed the surface or the provider refused
            AuthTimeout: No outcome arrived before the hard timeout
        """
        task = self._inflight.get(owner_id)
        if task is None:
            task = asyncio.create_task(self._run_attempt(owner_id))
            self._inflight[owner_id] = task
            task.add_done_callback(partial(self._forget, owner_id))
        else:
            logger.info("Joining in-flight consent attempt", owner_id=owner_id)

        # A cancelled caller must not tear down the attempt other callers share
        return await asyncio.shield(task)

    def _forget(self, owner_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(owner_id) is task:
            del self._inflight[owner_id]

    async def _run_attempt(self, owner_id: str) -> AccessToken:
        cached = await self._token_store.get(owner_id)
        if cached is not None:
            logger.debug("Using cached access token", owner_id=owner_id)
            return cached

        attempt = ConsentAttempt(owner_id=owner_id, started_at=self._clock())
        self._attempts[owner_id] = attempt

        await self._signal_store.clear(owner_id)
        try:
            state = await self._state_service.generate_state(owner_id)
        except OAuthStateError as e:
            attempt.state = ConsentState.FAILED
            raise ConsentFlowError("Unable to start Gmail sign-in", owner_id) from e
        consent_url = self._oauth.generate_consent_url(state)

        attempt.surface = self._surface_factory()
        attempt.result = asyncio.get_running_loop().create_future()

        logger.info("Opening consent surface", owner_id=owner_id)
        if not attempt.surface.open(consent_url, self.window_width, self.window_height):
            attempt.state = ConsentState.FAILED
            await self.cleanup(attempt)
            logger.warning("Consent surface blocked", owner_id=owner_id)
            raise AuthBlocked(
                "Popups are blocked. Allow popups for this site and try again.", owner_id
            )

        attempt.state = ConsentState.AWAITING_SIGNAL
        if self._channel is not None:
            attempt.tasks.append(asyncio.create_task(self._listen(attempt)))
        attempt.tasks.append(asyncio.create_task(self._poll(attempt)))

        try:
            return await asyncio.wait_for(asyncio.shield(attempt.result), timeout=self.timeout_s)
        except TimeoutError:
            attempt.state = ConsentState.TIMED_OUT
            logger.warning("Consent flow timed out", owner_id=owner_id, timeout_s=self.timeout_s)
            raise AuthTimeout("Authentication timed out. Please try again.", owner_id) from None
        finally:
            await self.cleanup(attempt)

    def _settle(
        self,
        attempt: ConsentAttempt,
        source: str,
        token: AccessToken | None = None,
        error: ConsentFlowError | None = None,
    ) -> bool:
        """Resolve the attempt once. Later calls are no-ops."""
        if attempt.result is None or attempt.result.done():
            return False

        attempt.settled_by = source
        elapsed_ms = round((self._clock() - attempt.started_at) * 1000, 2)
        if error is not None:
            attempt.state = ConsentState.FAILED
            attempt.result.set_exception(error)
            logger.warning(
                "Consent flow failed",
                owner_id=attempt.owner_id,
                source=source,
                error=str(error),
                error_type=type(error).__name__,
                elapsed_ms=elapsed_ms,
            )
        else:
            attempt.state = ConsentState.SUCCEEDED
            attempt.result.set_result(token)
            logger.info(
                "Consent flow succeeded",
                owner_id=attempt.owner_id,
                source=source,
                elapsed_ms=elapsed_ms,
            )
        return True

    async def _listen(self, attempt: ConsentAttempt) -> None:
        owner_id = attempt.owner_id
        try:
            async with self._channel.subscribe(owner_id) as signals:
                async for signal in signals:
                    if signal.status == "error":
                        self._settle(
                            attempt,
                            "push",
                            error=AuthDenied(signal.error or "Authentication failed", owner_id),
                        )
                        return

                    if not signal.token:
                        continue
                    try:
                        value = decrypt_token(signal.token)
                    except EncryptionError as e:
                        logger.warning("Undecryptable consent token", owner_id=owner_id, error=str(e))
                        continue

                    ttl = signal.expires_in or settings.DEFAULT_TOKEN_TTL_SECONDS
                    token = await self._token_store.put(owner_id, value, ttl)
                    if token.expires_within(self._token_store.buffer_seconds):
                        self._settle(attempt, "push", error=self._short_lived(owner_id, ttl))
                    else:
                        self._settle(attempt, "push", token=token)
                    return
        except ConsentChannelError as e:
            logger.info("Push channel unavailable, relying on polling", owner_id=owner_id, error=str(e))

    async def _poll(self, attempt: ConsentAttempt) -> None:
        owner_id = attempt.owner_id
        while not attempt.result.done():
            signal = await self._signal_store.read(owner_id)
            if signal is not None and signal.status == "error":
                self._settle(
                    attempt, "poll", error=AuthDenied(signal.error or "Authentication failed", owner_id)
                )
                return
            if signal is not None:
                token = await self._token_store.get(owner_id)
                if token is not None:
                    self._settle(attempt, "poll", token=token)
                    return
                if self._too_short(signal.expires_in):
                    self._settle(attempt, "poll", error=self._short_lived(owner_id, signal.expires_in))
                    return

            if self._clock() - attempt.started_at >= self.min_close_check_s:
                if await self._check_closed(attempt):
                    return

            await asyncio.sleep(self.poll_interval_s)

    def _too_short(self, expires_in: int | None) -> bool:
        return expires_in is not None and expires_in <= self._token_store.buffer_seconds

    def _short_lived(self, owner_id: str, expires_in: int) -> ConsentFlowError:
        logger.warning("Granted token inside expiry buffer", owner_id=owner_id, expires_in=expires_in)
        return ConsentFlowError("Granted token expires too soon. Please try again.", owner_id)

    async def _check_closed(self, attempt: ConsentAttempt) -> bool:
        """Closure starts a grace period; only its expiry cancels. True when settled."""
        if attempt.surface_closed_at is None:
            try:
                closed = attempt.surface.is_closed()
            except Exception as e:  # foreign window state can be unreadable
                logger.debug("Surface state unreadable", owner_id=attempt.owner_id, error=str(e))
                closed = False
            if not closed:
                return False
            attempt.surface_closed_at = self._clock()
            logger.info("Consent surface closed, waiting for late signal", owner_id=attempt.owner_id)

        token = await self._token_store.get(attempt.owner_id)
        if token is not None:
            return self._settle(attempt, "poll_after_close", token=token)

        if self._clock() - attempt.surface_closed_at >= self.close_grace_s:
            return self._settle(
                attempt,
                "surface_closed",
                error=AuthCancelled("Sign-in was cancelled. Please try again.", attempt.owner_id),
            )
        return False

    async def cleanup(self, attempt: ConsentAttempt) -> None:
        """Stop observers, close the surface and clear the signal. Idempotent."""
        if attempt.cleaned_up:
            return
        attempt.cleaned_up = True

        for task in attempt.tasks:
            task.cancel()
        if attempt.tasks:
            await asyncio.gather(*attempt.tasks, return_exceptions=True)
        attempt.tasks.clear()

        if attempt.surface is not None:
            try:
                if not attempt.surface.is_closed():
                    attempt.surface.close()
            except Exception as e:
                logger.debug("Surface close failed", owner_id=attempt.owner_id, error=str(e))

        await self._signal_store.clear(attempt.owner_id)
