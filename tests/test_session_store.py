import asyncio

import pytest

from chatsync.errors import DeleteFailedError, InputValidationError, RemoteStoreError, TransientStoreError
from chatsync.services.local_slot import LocalSlot
from chatsync.services.session_store import SessionStore, bind_session
from tests.fakes import FakeAuth, FakeRemote, chat, make_settings, transient


def make_store(remote=None, auth=None, **overrides):
    remote = remote if remote is not None else FakeRemote()
    auth = auth if auth is not None else FakeAuth("u1")
    local_slot = overrides.pop("local_slot", None)
    store = SessionStore(remote, auth=auth, local_slot=local_slot, settings=make_settings(**overrides))
    return store, remote, auth


async def settle(store, seconds=0.05):
    await asyncio.sleep(seconds)
    await store.drain()


def test_upsert_is_visible_before_any_network_call():
    async def scenario():
        store, remote, _ = make_store()
        stored = store.upsert_optimistic(chat("c1", n=2))

        assert [r.id for r in store.list_chats()] == ["c1"]
        assert store.get_local("c1").messages == stored.messages
        assert stored.owner_id == "u1"
        assert stored.updated_at is not None
        assert remote.put_attempts == 0
        await settle(store)
        return remote

    remote = asyncio.run(scenario())
    assert [r.id for r in remote.puts] == ["c1"]


def test_rapid_upserts_coalesce_into_one_write_with_latest_data():
    async def scenario():
        store, remote, _ = make_store()
        for n in range(1, 6):
            store.upsert_optimistic(chat("c1", n=n))
        await settle(store)
        return remote

    remote = asyncio.run(scenario())
    assert len(remote.puts) == 1
    assert len(remote.puts[0].messages) == 5


def test_upsert_never_moves_updated_at_backwards():
    async def scenario():
        store, _, _ = make_store()
        store.upsert_optimistic(chat("c1", updated_at=200))
        return store.upsert_optimistic(chat("c1", n=2, updated_at=100))

    assert asyncio.run(scenario()).updated_at == 200


def test_transient_failures_are_retried_then_reported():
    reports = []

    async def scenario():
        remote = FakeRemote()
        remote.put_errors = transient(3)
        store, _, _ = make_store(remote)
        store.on_persist_error(reports.append)

        store.upsert_optimistic(chat("c1", n=2))
        await settle(store)
        assert remote.put_attempts == 3
        assert remote.puts == []
        assert store.get_local("c1") is not None
        assert "c1" in store.failed_ids

        # The next change to the chat triggers a fresh write.
        store.upsert_optimistic(chat("c1", n=3))
        await settle(store)
        return store, remote

    store, remote = asyncio.run(scenario())
    assert len(reports) == 1
    assert reports[0].chat_id == "c1"
    assert reports[0].attempts == 3
    assert len(remote.puts) == 1
    assert "c1" not in store.failed_ids


def test_retry_succeeds_before_attempts_run_out():
    async def scenario():
        remote = FakeRemote()
        remote.put_errors = transient(2)
        store, _, _ = make_store(remote)
        store.upsert_optimistic(chat("c1"))
        await settle(store)
        return store, remote

    store, remote = asyncio.run(scenario())
    assert remote.put_attempts == 3
    assert len(remote.puts) == 1
    assert not store.failed_ids


def test_terminal_errors_are_not_retried():
    reports = []

    async def scenario():
        remote = FakeRemote()
        remote.put_errors = [RemoteStoreError("forbidden", 403)]
        store, _, _ = make_store(remote)
        store.on_persist_error(reports.append)
        store.upsert_optimistic(chat("c1"))
        await settle(store)
        return remote

    remote = asyncio.run(scenario())
    assert remote.put_attempts == 1
    assert reports[0].attempts == 1


def test_persist_now_bypasses_debounce():
    async def scenario():
        store, remote, _ = make_store(persist_debounce=10)
        store.upsert_optimistic(chat("c1"))
        saved = await store.persist_now("c1")
        return saved, remote

    saved, remote = asyncio.run(scenario())
    assert saved is True
    assert len(remote.puts) == 1


def test_empty_chats_are_not_persisted():
    async def scenario():
        store, remote, _ = make_store()
        store.upsert_optimistic(chat("c1", n=0))
        await settle(store)
        return remote

    assert asyncio.run(scenario()).put_attempts == 0


def test_load_all_dedupes_by_newest_version():
    remote = FakeRemote([
        chat("c9", n=1, updated_at=100),
        chat("c9", n=4, updated_at=200),
        chat("c3", n=2, created_at=50),
    ])

    async def scenario():
        store, _, _ = make_store(remote)
        loaded = await store.load_all("u1")
        await store.drain()
        return loaded

    loaded = asyncio.run(scenario())
    assert [r.id for r in loaded] == ["c9", "c3"]
    assert len(loaded[0].messages) == 4


def test_load_all_returns_first_batch_and_merges_the_rest():
    remote = FakeRemote([chat(f"c{i}", updated_at=float(i)) for i in range(1, 8)])

    async def scenario():
        store, _, _ = make_store(remote, progressive_load_batch=3)
        first = await store.load_all("u1")
        first_ids = [r.id for r in first]
        await store.drain()
        return first_ids, [r.id for r in store.list_chats()]

    first_ids, all_ids = asyncio.run(scenario())
    assert first_ids == ["c7", "c6", "c5"]
    assert all_ids == ["c7", "c6", "c5", "c4", "c3", "c2", "c1"]


def test_local_edit_during_progressive_load_is_kept():
    remote = FakeRemote([chat(f"c{i}", n=1, updated_at=100.0 + i) for i in range(1, 6)])

    async def scenario():
        store, _, _ = make_store(remote, progressive_load_batch=2)
        await store.load_all("u1")
        # c1 has not been merged yet; edit it locally with an older stamp.
        store.upsert_optimistic(chat("c1", n=3, updated_at=1.0))
        await store.drain()
        return store.get_local("c1")

    local = asyncio.run(scenario())
    assert len(local.messages) == 3


def test_delete_failure_still_removes_locally():
    async def scenario():
        remote = FakeRemote()
        remote.delete_error = TransientStoreError("service unavailable", 503)
        store, _, _ = make_store(remote)
        store.upsert_optimistic(chat("c1"))
        with pytest.raises(DeleteFailedError) as excinfo:
            await store.delete("c1")
        await settle(store)
        return store, remote, excinfo.value

    store, remote, error = asyncio.run(scenario())
    assert error.chat_id == "c1"
    assert store.get_local("c1") is None
    assert store.list_chats() == []
    assert remote.puts == []


def test_delete_calls_remote():
    async def scenario():
        store, remote, _ = make_store()
        store.upsert_optimistic(chat("c1"))
        await store.delete("c1")
        return remote

    assert asyncio.run(scenario()).deletes == ["c1"]


def test_anonymous_session_uses_local_slot(tmp_path):
    slot = LocalSlot(tmp_path / "local_storage.json")

    async def scenario():
        store, remote, _ = make_store(auth=FakeAuth(None), local_slot=slot)
        store.upsert_optimistic(chat("c1", n=2))
        await settle(store)
        return remote

    remote = asyncio.run(scenario())
    assert remote.put_attempts == 0
    assert [r.id for r in slot.load_chats()] == ["c1"]

    async def reload():
        store, _, _ = make_store(auth=FakeAuth(None), local_slot=slot)
        return store.load_local()

    assert [r.id for r in asyncio.run(reload())] == ["c1"]


def test_folders_move_and_delete_with_chats():
    async def scenario():
        store, remote, _ = make_store()
        store.upsert_optimistic(chat("c1"))
        store.upsert_optimistic(chat("c2"))
        folder = store.create_folder("Work")
        store.move_chat("c1", folder.id)
        assert store.list_folders()[0].chat_ids == ["c1"]
        assert store.get_local("c1").folder_id == folder.id
        await settle(store)
        assert remote.folder_puts >= 1

        await store.delete_folder(folder.id)
        return store, remote

    store, remote = asyncio.run(scenario())
    assert store.list_folders() == []
    assert [r.id for r in store.list_chats()] == ["c2"]
    assert remote.deletes == ["c1"]


def test_folder_name_must_not_be_blank():
    async def scenario():
        store, _, _ = make_store()
        store.create_folder("   ")

    with pytest.raises(InputValidationError):
        asyncio.run(scenario())


def test_sign_out_clears_state_and_sign_in_loads_new_user():
    remote = FakeRemote([chat("theirs", updated_at=10.0, owner_id="u2")])
    changes = []

    async def scenario():
        auth = FakeAuth("u1")
        store, _, _ = make_store(remote, auth=auth)
        bind_session(auth, store)
        store.subscribe(changes.append)
        store.upsert_optimistic(chat("mine"))

        auth.user_id = None
        await auth._notify(None)
        assert store.list_chats() == []

        auth.user_id = "u2"
        await auth._notify("u2")
        await store.drain()
        return store

    store = asyncio.run(scenario())
    assert [r.id for r in store.list_chats()] == ["theirs"]
    assert [] in changes


def test_background_sweep_evicts_idle_cache_entries():
    async def scenario():
        store, _, _ = make_store(cache_ttl=0, cache_sweep_interval=0.01)
        store.start()
        store.upsert_optimistic(chat("c1"))
        await asyncio.sleep(0.05)
        cached = len(store._cache)
        await store.close()
        return store, cached

    store, cached = asyncio.run(scenario())
    assert cached == 0
    # Memory stays authoritative after eviction.
    assert store.get_local("c1") is not None


class GatedPutRemote(FakeRemote):
    """Remote whose writes block until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.put_started = asyncio.Event()
        self.gate = asyncio.Event()

    async def put(self, record):
        self.put_started.set()
        await self.gate.wait()
        await super().put(record)


def test_delete_waits_for_in_flight_write():
    async def scenario():
        remote = GatedPutRemote()
        store, _, _ = make_store(remote)
        store.upsert_optimistic(chat("c1"))
        await remote.put_started.wait()

        deleting = asyncio.create_task(store.delete("c1"))
        await asyncio.sleep(0.01)
        assert not deleting.done()

        remote.gate.set()
        await deleting
        await settle(store)
        return remote

    remote = asyncio.run(scenario())
    assert remote.deletes == ["c1"]
    assert "c1" not in remote.records


def test_remote_hit_survives_cache_eviction():
    remote = FakeRemote()
    remote.records["r1"] = chat("r1", n=6, updated_at=10.0, owner_id="u1")

    async def scenario():
        store, _, _ = make_store(remote, cache_max_entries=1)
        opened = await store.get("r1")
        assert len(opened.messages) == 6
        # Push r1 out of the one-entry cache.
        store.upsert_optimistic(chat("other"))
        assert "r1" not in store._cache

        record = store.get_local("r1")
        record.messages.extend(chat("x", n=2).messages)
        store.upsert_optimistic(record)
        await store.flush()
        return store

    store = asyncio.run(scenario())
    assert "r1" in store
    assert len(remote.records["r1"].messages) == 8


def test_retry_delays_grow_linearly():
    delays = []

    async def record_sleep(seconds):
        delays.append(seconds)

    async def scenario():
        remote = FakeRemote()
        remote.put_errors = transient(3)
        store = SessionStore(remote, auth=FakeAuth("u1"), sleep=record_sleep,
                             settings=make_settings(persist_retry_delay=1.0))
        store.upsert_optimistic(chat("c1"))
        await store.flush()
        return remote

    remote = asyncio.run(scenario())
    assert remote.put_attempts == 3
    assert delays == [1.0, 2.0]


def test_close_pushes_out_dirty_records_before_debounce():
    async def scenario():
        store, remote, _ = make_store(persist_debounce=10)
        store.upsert_optimistic(chat("c1", n=2))
        await store.close()
        return remote

    remote = asyncio.run(scenario())
    assert len(remote.puts) == 1
    assert remote.puts[0].id == "c1"


def test_sign_in_keeps_anonymous_edits_in_local_slot(tmp_path):
    slot = LocalSlot(tmp_path / "local_storage.json")

    async def scenario():
        auth = FakeAuth(None)
        store, _, _ = make_store(auth=auth, local_slot=slot, persist_debounce=10)
        store.upsert_optimistic(chat("draft", n=1))
        auth.user_id = "u1"
        store.reset()

    asyncio.run(scenario())
    assert [r.id for r in slot.load_chats()] == ["draft"]
