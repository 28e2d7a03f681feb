"""Shared fixtures: isolated services under tmp_path and an app wired to them."""
import asyncio
import secrets

import httpx
import pytest

from devicesync.api import dependencies
from devicesync.main import app as fastapi_app
from devicesync.services.device_store import IdentityRecordStore
from devicesync.services.identity_service import IdentityService
from devicesync.services.session_manager import SessionManager
from devicesync.services.sync_service import SyncService
from devicesync.services.user_registry_service import UserRegistryService
from devicesync.services.verification_service import VerificationCache


class RecordingSmsSender:
    """Keeps outgoing messages in memory."""

    def __init__(self):
        self.messages = []

    async def send_sms(self, phone, message):
        self.messages.append((phone, message))
        return True


def new_device_id():
    return secrets.token_hex(32)


@pytest.fixture
def store(tmp_path):
    store = IdentityRecordStore(root=str(tmp_path / "devices"), scan_cache_ttl=0)
    store.initialize()
    return store


@pytest.fixture
def registry(tmp_path):
    registry = UserRegistryService(registry_path=str(tmp_path / "shared" / "user_registry.db"))
    asyncio.run(registry.initialize())
    return registry


@pytest.fixture
def sms():
    return RecordingSmsSender()


@pytest.fixture
def sessions():
    return SessionManager()


@pytest.fixture
def verification_cache():
    return VerificationCache(ttl_minutes=15, single_use=True)


@pytest.fixture
def identity(store, registry, verification_cache, sessions, sms):
    return IdentityService(
        store=store,
        user_registry=registry,
        verification_cache=verification_cache,
        session_manager=sessions,
        sms_sender=sms,
    )


@pytest.fixture
def sync(identity):
    return SyncService(identity)


@pytest.fixture
def register_user(identity):
    """Async helper that verifies a phone for a device and returns the user."""

    async def _register(phone="+447700900123", handle="@alice", device_id=None):
        device_id = device_id or new_device_id()
        await identity.issue_verification(phone, handle=handle, device_id=device_id)
        code = identity.verification_cache.peek(phone).code
        outcome = await identity.consume_verification(phone, code, device_id=device_id, handle=handle)
        return outcome.user, device_id

    return _register


@pytest.fixture
def app(identity, sync, sessions):
    fastapi_app.dependency_overrides[dependencies.identity_service] = lambda: identity
    fastapi_app.dependency_overrides[dependencies.sync_service] = lambda: sync
    fastapi_app.dependency_overrides[dependencies.session_manager] = lambda: sessions
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def asgi_transport(app):
    return httpx.ASGITransport(app=app)
