"""HTTP tests for the FastAPI app, with services injected through dependency overrides."""
import asyncio

import httpx

from devicesync.api.dependencies import SESSION_HEADER

PHONE = "+447700900123"
BASE = "/api/v1"


def _client(asgi_transport):
    return httpx.AsyncClient(transport=asgi_transport, base_url="http://testserver")


async def _verify(client, identity, device_key, phone=PHONE, handle="@alice"):
    issued = await client.post(f"{BASE}/verification", json={
        "phone": phone, "handle": handle, "device_key": device_key,
    })
    session_id = issued.headers[SESSION_HEADER]
    code = identity.verification_cache.peek(phone).code
    confirmed = await client.post(
        f"{BASE}/verification/confirm",
        json={"phone": phone, "code": code, "device_key": device_key, "handle": handle},
        headers={SESSION_HEADER: session_id},
    )
    return issued, confirmed


class TestVerificationFlow:
    """Code request, confirmation and the session header."""

    def test_new_user_is_linked(self, asgi_transport, identity):
        device_key = "ab" * 32

        async def run():
            async with _client(asgi_transport) as client:
                return await _verify(client, identity, device_key)

        issued, confirmed = asyncio.run(run())
        assert issued.status_code == 200
        assert issued.json()["masked_phone"] == "*******0123"
        assert issued.json()["session_id"] == issued.headers[SESSION_HEADER]
        assert confirmed.status_code == 200
        body = confirmed.json()
        assert body["linked"]
        assert body["device_key"] == device_key
        assert body["user"]["handle"] == "@alice"
        assert body["session_id"] == issued.headers[SESSION_HEADER]

    def test_handle_step_for_new_number(self, asgi_transport, identity):
        async def run():
            async with _client(asgi_transport) as client:
                issued = await client.post(f"{BASE}/verification", json={"phone": PHONE})
                headers = {SESSION_HEADER: issued.headers[SESSION_HEADER]}
                code = identity.verification_cache.peek(PHONE).code
                confirmed = await client.post(
                    f"{BASE}/verification/confirm", json={"phone": PHONE, "code": code}, headers=headers
                )
                finished = await client.post(
                    f"{BASE}/verification/handle", json={"handle": "@alice"}, headers=headers
                )
                return confirmed, finished

        confirmed, finished = asyncio.run(run())
        assert confirmed.json()["needs_handle"]
        assert not confirmed.json()["linked"]
        assert finished.json()["linked"]
        assert finished.json()["user"]["handle"] == "@alice"

    def test_wrong_code(self, asgi_transport, identity):
        async def run():
            async with _client(asgi_transport) as client:
                await client.post(f"{BASE}/verification", json={"phone": PHONE, "handle": "@alice"})
                live = identity.verification_cache.peek(PHONE).code
                wrong = "000000" if live != "000000" else "111111"
                return await client.post(f"{BASE}/verification/confirm", json={"phone": PHONE, "code": wrong})

        response = asyncio.run(run())
        assert response.status_code == 422
        assert response.json()["success"] is False

    def test_invalid_phone(self, asgi_transport):
        async def run():
            async with _client(asgi_transport) as client:
                return await client.post(f"{BASE}/verification", json={"phone": "12345"})

        response = asyncio.run(run())
        assert response.status_code == 422
        assert response.json()["success"] is False
        assert response.json()["path"] == f"{BASE}/verification"

    def test_missing_phone_is_a_validation_error(self, asgi_transport):
        async def run():
            async with _client(asgi_transport) as client:
                return await client.post(f"{BASE}/verification", json={})

        response = asyncio.run(run())
        assert response.status_code == 422
        assert response.json()["message"] == "Validation error"

    def test_taken_handle_is_a_conflict(self, asgi_transport, identity, register_user):
        async def run():
            await register_user(PHONE, "@alice")
            async with _client(asgi_transport) as client:
                _, confirmed = await _verify(client, identity, "cd" * 32, phone="+447700900456")
                return confirmed

        response = asyncio.run(run())
        assert response.status_code == 409
        assert response.json()["error_code"] == "conflict"
        assert response.json()["field"] == "handle"


class TestRecognition:
    """The recognize endpoint."""

    def test_unknown_device(self, asgi_transport):
        async def run():
            async with _client(asgi_transport) as client:
                return await client.post(f"{BASE}/devices/recognize", json={"device_key": "ef" * 32})

        response = asyncio.run(run())
        assert response.status_code == 200
        assert response.json()["status"] == "unregistered"
        assert response.json()["device_not_registered"]
        assert response.headers[SESSION_HEADER] == response.json()["session_id"]

    def test_verified_device_is_authenticated(self, asgi_transport, register_user):
        async def run():
            user, device_id = await register_user()
            async with _client(asgi_transport) as client:
                response = await client.post(f"{BASE}/devices/recognize", json={"device_key": device_id})
            return user, device_id, response

        user, device_id, response = asyncio.run(run())
        body = response.json()
        assert body["status"] == "authenticated"
        assert body["guid"] == user.guid
        assert body["device_key"] == device_id
        assert body["match"] == "exact"

    def test_session_is_reused(self, asgi_transport, sessions):
        async def run():
            async with _client(asgi_transport) as client:
                first = await client.post(f"{BASE}/devices/recognize", json={"device_key": "ef" * 32})
                second = await client.post(
                    f"{BASE}/devices/recognize",
                    json={"device_key": "ef" * 32},
                    headers={SESSION_HEADER: first.headers[SESSION_HEADER]},
                )
                return first, second

        first, second = asyncio.run(run())
        assert first.json()["session_id"] == second.json()["session_id"]
        assert sessions.get_active_sessions_count() == 1


class TestAuthVersion:
    """Credential checks on protected endpoints."""

    def test_current_version_is_valid(self, asgi_transport, register_user):
        async def run():
            user, device_id = await register_user()
            async with _client(asgi_transport) as client:
                return await client.get(f"{BASE}/auth/version", headers={
                    "X-Device-Key": device_id, "X-Auth-Version": "1",
                })

        body = asyncio.run(run()).json()
        assert body["status"] == "valid"
        assert body["auth_version"] == 1

    def test_version_endpoint_reports_stale(self, asgi_transport, register_user, identity):
        async def run():
            user, device_id = await register_user()
            await identity.change_handle(user.guid, "@alice_new")
            async with _client(asgi_transport) as client:
                return await client.get(f"{BASE}/auth/version", headers={
                    "X-Device-Key": device_id, "X-Auth-Version": "1",
                })

        response = asyncio.run(run())
        assert response.status_code == 200
        assert response.json()["status"] == "stale"
        assert response.json()["auth_version"] == 2

    def test_sync_with_stale_version(self, asgi_transport, register_user):
        async def run():
            _, device_id = await register_user()
            async with _client(asgi_transport) as client:
                return await client.get(f"{BASE}/sync", headers={
                    "X-Device-Key": device_id, "X-Auth-Version": "0",
                })

        response = asyncio.run(run())
        assert response.status_code == 401
        assert response.json()["error"] == "AuthVersionMismatch"
        assert response.json()["current_version"] == 1

    def test_sync_without_credentials(self, asgi_transport):
        async def run():
            async with _client(asgi_transport) as client:
                return await client.get(f"{BASE}/sync")

        response = asyncio.run(run())
        assert response.status_code == 401
        assert response.json()["error"] == "NotAuthenticated"


class TestSyncEndpoints:
    """Push and pull over HTTP."""

    def test_push_then_pull(self, asgi_transport, register_user):
        async def run():
            _, device_id = await register_user()
            headers = {"X-Device-Key": device_id, "X-Auth-Version": "1"}
            async with _client(asgi_transport) as client:
                pushed = await client.post(f"{BASE}/sync", headers=headers, json={"changes": [{
                    "id": "7",
                    "table_name": "devices",
                    "record_id": device_id,
                    "operation": "update",
                    "data": {"device_name": "Kitchen iPad"},
                }]})
                pulled = await client.get(f"{BASE}/sync", headers=headers)
            return device_id, pushed, pulled

        device_id, pushed, pulled = asyncio.run(run())
        assert pushed.status_code == 200
        assert pushed.json()["success"]
        assert pushed.json()["processed"] == ["7"]
        assert pushed.json()["auth_version"] == 1
        device = next(c for c in pulled.json()["changes"] if c["table_name"] == "devices")
        assert device["record_id"] == device_id
        assert device["data"]["device_name"] == "Kitchen iPad"
        assert pulled.json()["current_time"]
        assert pushed.json()["corrections"] == []

    def test_rejected_push_returns_server_row(self, asgi_transport, register_user):
        async def run():
            user, device_id = await register_user()
            headers = {"X-Device-Key": device_id, "X-Auth-Version": "1"}
            async with _client(asgi_transport) as client:
                return user, await client.post(f"{BASE}/sync", headers=headers, json={"changes": [{
                    "id": "8",
                    "table_name": "users",
                    "record_id": user.guid,
                    "data": {"handle": "not valid"},
                }]})

        user, pushed = asyncio.run(run())
        body = pushed.json()
        assert body["rejected"] == ["8"]
        users = [c for c in body["corrections"] if c["table_name"] == "users"]
        assert [c["record_id"] for c in users] == [user.guid]
        assert users[0]["data"]["handle"] == "@alice"

    def test_bad_since(self, asgi_transport, register_user):
        async def run():
            _, device_id = await register_user()
            async with _client(asgi_transport) as client:
                return await client.get(
                    f"{BASE}/sync",
                    params={"since": "yesterday"},
                    headers={"X-Device-Key": device_id, "X-Auth-Version": "1"},
                )

        assert asyncio.run(run()).status_code == 422


class TestHealth:
    """Health endpoints."""

    def test_healthy(self, asgi_transport):
        async def run():
            async with _client(asgi_transport) as client:
                return await client.get(f"{BASE}/health/")

        body = asyncio.run(run()).json()
        assert body["status"] == "healthy"
        assert body["device_store"] == "available"
        assert body["user_registry"] == "connected"

    def test_root(self, asgi_transport):
        async def run():
            async with _client(asgi_transport) as client:
                return await client.get("/")

        assert asyncio.run(run()).status_code == 200

    def test_error_bodies_are_documented(self, asgi_transport):
        async def run():
            async with _client(asgi_transport) as client:
                return await client.get("/openapi.json")

        paths = asyncio.run(run()).json()["paths"]
        unauthorized = paths[f"{BASE}/sync"]["get"]["responses"]["401"]
        conflict = paths[f"{BASE}/verification/confirm"]["post"]["responses"]["409"]
        for response in (unauthorized, conflict):
            assert response["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")
