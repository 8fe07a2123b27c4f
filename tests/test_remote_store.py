import asyncio
import json

import httpx
import pytest

from chatsync.errors import CredentialExpiredError, RemoteStoreError, TransientStoreError
from chatsync.services.remote_store import HttpRemoteStore
from tests.fakes import FakeAuth, chat

EXPIRED = {"detail": {"message": "Token expired. Please sign in again.", "code": "token_expired"}}


def run(handler, action, auth=None):
    auth = auth or FakeAuth("u1")

    async def scenario():
        client = httpx.AsyncClient(base_url="http://chatsync.test", transport=httpx.MockTransport(handler))
        store = HttpRemoteStore("http://chatsync.test", auth, client=client)
        try:
            return await action(store)
        finally:
            await store.aclose()

    return asyncio.run(scenario())


def test_expired_credential_is_refreshed_and_retried_once():
    seen = []

    def handler(request):
        seen.append(request.headers["Authorization"])
        if request.headers["Authorization"] == "Bearer stale-token":
            return httpx.Response(401, json=EXPIRED)
        return httpx.Response(200, json={"success": True, "id": "c1"})

    auth = FakeAuth("u1")
    run(handler, lambda store: store.put(chat("c1")), auth)

    assert seen == ["Bearer stale-token", "Bearer fresh-token-1"]
    assert auth.refreshes == 1


def test_still_expired_after_refresh_raises():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json=EXPIRED)

    auth = FakeAuth("u1")
    with pytest.raises(CredentialExpiredError):
        run(handler, lambda store: store.put(chat("c1")), auth)
    assert len(calls) == 2
    assert auth.refreshes == 1


def test_invalid_token_is_not_refreshed():
    def handler(request):
        return httpx.Response(401, json={"detail": {"message": "bad audience", "code": "invalid_token"}})

    auth = FakeAuth("u1")
    with pytest.raises(RemoteStoreError) as excinfo:
        run(handler, lambda store: store.get("c1"), auth)
    assert excinfo.value.status_code == 401
    assert auth.refreshes == 0


def test_server_errors_are_transient():
    def handler(request):
        return httpx.Response(503, text="unavailable")

    with pytest.raises(TransientStoreError):
        run(handler, lambda store: store.put(chat("c1")))


def test_network_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientStoreError):
        run(handler, lambda store: store.list("u1"))


def test_get_missing_chat_returns_none():
    def handler(request):
        return httpx.Response(404, json={"detail": "Chat c1 not found."})

    assert run(handler, lambda store: store.get("c1")) is None


def test_put_sends_camel_case_record():
    bodies = []

    def handler(request):
        bodies.append(request)
        return httpx.Response(200, json={"success": True, "id": "c1"})

    run(handler, lambda store: store.put(chat("c1", updated_at=5.0, owner_id="u1")))

    request = bodies[0]
    assert request.method == "PUT"
    assert request.url.path == "/chats/c1"
    payload = json.loads(request.content)
    assert payload["updatedAt"] == 5.0
    assert payload["ownerId"] == "u1"


def test_list_skips_records_of_other_owners():
    def handler(request):
        return httpx.Response(200, json={"chats": [
            chat("c1", owner_id="u1").to_wire(),
            chat("c2", owner_id="u2").to_wire(),
        ]})

    records = run(handler, lambda store: store.list("u1"))
    assert [r.id for r in records] == ["c1"]


def test_delete_of_missing_chat_succeeds():
    def handler(request):
        return httpx.Response(404, json={"detail": "Chat c1 not found."})

    assert run(handler, lambda store: store.delete("c1")) is None
