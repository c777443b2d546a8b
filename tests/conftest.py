import asyncio
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from cryptography.fernet import Fernet

from nudge.config import settings
from nudge.services.consent.channel import ConsentChannel
from nudge.services.consent.surface import ConsentSurface
from nudge.services.google_oauth_service import GoogleOAuthService
from nudge.services.infrastructure.document_store import DocumentStore, StorageError


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    key = Fernet.generate_key().decode("utf-8")
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", key)
    return key


class FakeDocumentStore(DocumentStore):
    def __init__(self):
        self.documents: dict[str, dict] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str) -> dict | None:
        document = self.documents.get(key)
        return dict(document) if document else None

    async def merge(self, key: str, fields: dict, ttl_s: int | None = None) -> None:
        self.documents.setdefault(key, {}).update(fields)
        if ttl_s:
            self.ttls[key] = ttl_s

    async def increment(self, key: str, field: str, amount: int = 1) -> int:
        document = self.documents.setdefault(key, {})
        document[field] = int(document.get(field, 0)) + amount
        return document[field]

    async def delete(self, key: str) -> bool:
        self.ttls.pop(key, None)
        return self.documents.pop(key, None) is not None

    async def scan(self, prefix: str) -> list[tuple[str, dict]]:
        return [(key, dict(doc)) for key, doc in self.documents.items() if key.startswith(prefix)]


class FailingDocumentStore(DocumentStore):
    """Every operation fails, as during a storage outage."""

    async def get(self, key):
        raise StorageError("store unavailable", key=key, operation="get")

    async def merge(self, key, fields, ttl_s=None):
        raise StorageError("store unavailable", key=key, operation="merge")

    async def increment(self, key, field, amount=1):
        raise StorageError("store unavailable", key=key, operation="increment")

    async def delete(self, key):
        raise StorageError("store unavailable", key=key, operation="delete")

    async def scan(self, prefix):
        raise StorageError("store unavailable", key=prefix, operation="scan")


class FakeConsentChannel(ConsentChannel):
    def __init__(self):
        self.published: list[tuple[str, object]] = []
        self.queues: dict[str, asyncio.Queue] = {}
        self.open_subscriptions = 0

    def _queue(self, owner_id: str) -> asyncio.Queue:
        return self.queues.setdefault(owner_id, asyncio.Queue())

    async def publish(self, owner_id, signal):
        self.published.append((owner_id, signal))
        self._queue(owner_id).put_nowait(signal)

    @asynccontextmanager
    async def subscribe(self, owner_id):
        queue = self._queue(owner_id)
        self.open_subscriptions += 1

        async def signals():
            while True:
                yield await queue.get()

        try:
            yield signals()
        finally:
            self.open_subscriptions -= 1


class FakeSurface(ConsentSurface):
    """Records calls. `on_open` runs when opened, standing in for the user."""

    def __init__(self, open_result: bool = True, on_open=None):
        self.open_result = open_result
        self.on_open = on_open
        self.opened_urls: list[str] = []
        self.closed = False
        self.close_calls = 0

    def open(self, url, width, height):
        self.opened_urls.append(url)
        if self.open_result and self.on_open:
            self.on_open(url)
        return self.open_result

    def is_closed(self):
        return self.closed

    def close(self):
        self.close_calls += 1
        self.closed = True


class MutableClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def store():
    return FakeDocumentStore()


@pytest.fixture
def failing_store():
    return FailingDocumentStore()


@pytest.fixture
def channel():
    return FakeConsentChannel()


@pytest.fixture
def clock():
    return MutableClock()


def token_exchange_handler(access_token: str = "ya29.fresh-token", expires_in: int = 3599):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "access_token": access_token,
                "token_type": "Bearer",
                "expires_in": expires_in,
                "scope": "https://www.googleapis.com/auth/gmail.send",
            },
        )

    return handler


@pytest.fixture
def oauth_service():
    return GoogleOAuthService(
        client_id="client-123.apps.googleusercontent.com",
        client_secret="client-secret",
        redirect_uri="http://localhost:8000/oauth2callback",
        transport=httpx.MockTransport(token_exchange_handler()),
        backoff_factor=0,
    )


@pytest.fixture
def make_surface():
    return FakeSurface
