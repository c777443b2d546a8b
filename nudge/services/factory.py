"""
Service wiring. Every component gets its collaborators here; nothing is a
module-level singleton, so the API process and the CLI each build their own.
"""

from dataclasses import dataclass

from nudge.config import settings
from nudge.services.batch_service import BatchOrchestrator
from nudge.services.consent.callback_service import ConsentCallbackService
from nudge.services.consent.channel import ConsentChannel, RedisConsentChannel
from nudge.services.consent.coordinator import ConsentFlowCoordinator
from nudge.services.consent.signals import ConsentSignalStore
from nudge.services.consent.surface import BrowserConsentSurface
from nudge.services.cooldown_tracker import CooldownTracker
from nudge.services.dispatch_observer import DispatchObserver, LoggingDispatchObserver
from nudge.services.dispatch_service import DispatchEngine
from nudge.services.google_gmail_service import GoogleGmailService
from nudge.services.google_oauth_service import GoogleOAuthService
from nudge.services.infrastructure.document_store import DocumentStore, RedisDocumentStore
from nudge.services.infrastructure.redis_client import RedisClient
from nudge.services.nudge_service import NudgeService
from nudge.services.oauth_state_service import OAuthStateService
from nudge.services.quota_ledger import QuotaLedger
from nudge.services.suppression_service import SuppressionList
from nudge.services.token_store import TokenStore


@dataclass
class NudgeServices:
    redis: RedisClient
    token_store: TokenStore
    quota: QuotaLedger
    cooldowns: CooldownTracker
    suppression: SuppressionList
    coordinator: ConsentFlowCoordinator
    callback: ConsentCallbackService
    engine: DispatchEngine
    nudges: NudgeService
    batch: BatchOrchestrator


def build_services(
    redis_client: RedisClient,
    surface_factory=BrowserConsentSurface,
    oauth_service: GoogleOAuthService | None = None,
    gmail_service: GoogleGmailService | None = None,
    observer: DispatchObserver | None = None,
    store: DocumentStore | None = None,
    channel: ConsentChannel | None = None,
) -> NudgeServices:
    store = store or RedisDocumentStore(redis_client)
    channel = channel or RedisConsentChannel(redis_client)
    oauth = oauth_service or GoogleOAuthService()

    token_store = TokenStore(store)
    quota = QuotaLedger(store)
    cooldowns = CooldownTracker(store)
    suppression = SuppressionList(store)
    signal_store = ConsentSignalStore(store)
    state_service = OAuthStateService(store)

    coordinator = ConsentFlowCoordinator(
        token_store=token_store,
        signal_store=signal_store,
        state_service=state_service,
        oauth_service=oauth,
        surface_factory=surface_factory,
        channel=channel,
        **settings.get_consent_config(),
    )
    callback = ConsentCallbackService(
        state_service=state_service,
        oauth_service=oauth,
        token_store=token_store,
        signal_store=signal_store,
        channel=channel,
    )
    engine = DispatchEngine(
        token_store=token_store,
        coordinator=coordinator,
        quota=quota,
        cooldowns=cooldowns,
        suppression=suppression,
        gmail=gmail_service or GoogleGmailService(),
        observer=observer or LoggingDispatchObserver(),
    )

    return NudgeServices(
        redis=redis_client,
        token_store=token_store,
        quota=quota,
        cooldowns=cooldowns,
        suppression=suppression,
        coordinator=coordinator,
        callback=callback,
        engine=engine,
        nudges=NudgeService(engine, quota, cooldowns, suppression, token_store=token_store),
        batch=BatchOrchestrator(engine, quota, cooldowns, suppression),
    )
