"""Tests for device recognition."""
import asyncio
import secrets
from datetime import timedelta

from devicesync.core.timeutil import utcnow
from devicesync.models.identity import IdentityRecord, SyncStatus, UserHints, UserIdentity
from devicesync.models.recognition import (
    Authenticated,
    MatchKind,
    NeedsVerification,
    RecognitionStatus,
    Unregistered,
)
from devicesync.services.recognition_service import RecognitionService

ALICE = UserIdentity(guid="guid-alice", handle="@alice", phone="+447700900123")


async def _link(store, device_id, verified_days_ago):
    record = IdentityRecord(device_id=device_id)
    record.link(ALICE, verified_at=utcnow() - timedelta(days=verified_days_ago))
    await store.put(record, status=SyncStatus.LINKED_TO_USER)
    return record


class TestExactMatch:
    """Recognition of the device id that was presented."""

    def test_unseen_device_is_unregistered(self, store):
        service = RecognitionService(store)
        device_id = secrets.token_hex(32)

        async def run():
            first = await service.recognize(device_id)
            second = await service.recognize(device_id, registration_flow=True)
            return first, second, await store.get(device_id)

        first, second, record = asyncio.run(run())
        assert isinstance(first, Unregistered)
        assert isinstance(second, Unregistered)
        assert first.to_dict() == {"status": "unregistered", "device_not_registered": True}
        # The id is remembered for later linking
        assert record is not None
        assert not record.is_linked

    def test_fresh_device_is_authenticated(self, store):
        service = RecognitionService(store)
        device_id = secrets.token_hex(32)

        async def run():
            await _link(store, device_id, verified_days_ago=29)
            return await service.recognize(device_id)

        result = asyncio.run(run())
        assert isinstance(result, Authenticated)
        assert result.match == MatchKind.EXACT
        assert result.handle == "@alice"
        assert not result.cross_browser

    def test_stale_device_needs_verification(self, store):
        service = RecognitionService(store)
        device_id = secrets.token_hex(32)

        async def run():
            await _link(store, device_id, verified_days_ago=31)
            return await service.recognize(device_id)

        result = asyncio.run(run())
        assert isinstance(result, NeedsVerification)
        assert result.masked_phone == "*******0123"
        assert result.to_dict()["status"] == RecognitionStatus.NEEDS_VERIFICATION.value

    def test_freshness_window_is_configurable(self, store):
        service = RecognitionService(store, freshness_days=7)
        device_id = secrets.token_hex(32)

        async def run():
            await _link(store, device_id, verified_days_ago=8)
            return await service.recognize(device_id)

        assert isinstance(asyncio.run(run()), NeedsVerification)

    def test_registration_flow_never_authenticates(self, store):
        service = RecognitionService(store)
        device_id = secrets.token_hex(32)

        async def run():
            await _link(store, device_id, verified_days_ago=0)
            return await service.recognize(device_id, registration_flow=True)

        result = asyncio.run(run())
        assert isinstance(result, NeedsVerification)
        assert result.registration_flow

    def test_malformed_id_without_hints(self, store):
        service = RecognitionService(store)

        async def run():
            result = await service.recognize("not-a-device-id")
            return result, await store.scan()

        result, records = asyncio.run(run())
        assert isinstance(result, Unregistered)
        assert records == []


class TestCrossBrowser:
    """Matches found through user hints from another device."""

    def test_handle_hint_authenticates_new_browser(self, store):
        service = RecognitionService(store)
        device_a, device_b = secrets.token_hex(32), secrets.token_hex(32)

        async def run():
            await _link(store, device_a, verified_days_ago=1)
            result = await service.recognize(device_b, hints=UserHints(user_handle="@alice"))
            return result, await store.get(device_b)

        result, record_b = asyncio.run(run())
        assert isinstance(result, Authenticated)
        assert result.cross_browser
        assert result.match == MatchKind.HANDLE
        assert result.device_id == device_b
        assert record_b.user_guid == ALICE.guid
        assert record_b.last_status == SyncStatus.CROSS_BROWSER_LINKED

    def test_registration_flow_cross_browser_needs_verification(self, store):
        service = RecognitionService(store)
        device_a, device_b = secrets.token_hex(32), secrets.token_hex(32)

        async def run():
            await _link(store, device_a, verified_days_ago=1)
            result = await service.recognize(
                device_b, hints=UserHints(user_handle="@alice"), registration_flow=True
            )
            return result, await store.get(device_b), await store.sync_states(device_b)

        result, record_b, states = asyncio.run(run())
        assert isinstance(result, NeedsVerification)
        assert result.cross_browser
        assert not record_b.is_linked
        assert states[-1].status == SyncStatus.PENDING_REGISTRATION

    def test_guid_hint_wins_over_handle(self, store):
        service = RecognitionService(store)

        async def run():
            await _link(store, secrets.token_hex(32), verified_days_ago=1)
            return await service.recognize(
                secrets.token_hex(32),
                hints=UserHints(user_guid=ALICE.guid, user_handle="@someone_else"),
            )

        assert asyncio.run(run()).match == MatchKind.GUID

    def test_malformed_id_with_hint(self, store):
        service = RecognitionService(store)

        async def run():
            await _link(store, secrets.token_hex(32), verified_days_ago=1)
            return await service.recognize("garbage", hints=UserHints(user_phone=ALICE.phone))

        result = asyncio.run(run())
        assert isinstance(result, Authenticated)
        assert result.match == MatchKind.PHONE
        assert result.device_id is None

    def test_unknown_hint_is_unregistered(self, store):
        service = RecognitionService(store)
        result = asyncio.run(service.recognize(secrets.token_hex(32), hints=UserHints(user_handle="@nobody")))

        assert isinstance(result, Unregistered)


class TestSessionContext:
    """Recognition with an explicit login session."""

    def test_authenticated_result_is_cached(self, store, sessions):
        service = RecognitionService(store)
        session = sessions.create_session()
        device_id = secrets.token_hex(32)

        async def run():
            await _link(store, device_id, verified_days_ago=1)
            first = await service.recognize(device_id, session=session)
            await store.unlink(device_id)
            second = await service.recognize(device_id, session=session)
            return first, second

        first, second = asyncio.run(run())
        assert isinstance(first, Authenticated)
        assert second is first
        assert session.device_id == device_id

    def test_session_registration_flow_applies(self, store, sessions):
        service = RecognitionService(store)
        session = sessions.create_session(registration_flow=True)
        device_id = secrets.token_hex(32)

        async def run():
            await _link(store, device_id, verified_days_ago=0)
            return await service.recognize(device_id, session=session)

        assert isinstance(asyncio.run(run()), NeedsVerification)

    def test_previous_hints_survive_logout(self, store, sessions):
        service = RecognitionService(store)
        session = sessions.create_session()
        session.hints = UserHints(user_handle="@alice")
        session.logout()

        async def run():
            await _link(store, secrets.token_hex(32), verified_days_ago=1)
            return await service.recognize(secrets.token_hex(32), session=session)

        result = asyncio.run(run())
        assert isinstance(result, Authenticated)
        assert result.cross_browser
