import asyncio
import json

import pytest

from relay.assembler import build_model_turn, build_user_turn
from relay.core.errors import StorageFailure
from relay.core.memory import JsonConversationStore


def test_store_creates_empty_table(convo_path):
    assert not convo_path.exists()
    JsonConversationStore(convo_path)
    assert json.loads(convo_path.read_text(encoding="utf-8")) == {}


def test_load_unknown_user_is_empty(store):
    assert asyncio.run(store.load("nobody")) == []


def test_replace_then_load_roundtrip(store, convo_path):
    msgs = [build_user_turn("hi"), build_model_turn("hello")]

    async def scenario():
        await store.replace("42", msgs)
        return await store.load("42")

    loaded = asyncio.run(scenario())
    assert [m.role for m in loaded] == ["user", "model"]
    assert loaded[1].parts[0].text == "hello"

    raw = json.loads(convo_path.read_text(encoding="utf-8"))
    assert raw["42"][0] == {"role": "user", "parts": [{"text": "hi"}]}


def test_load_returns_independent_copies(store):
    async def scenario():
        await store.replace("u", [build_user_turn("a")])
        first = await store.load("u")
        first.append(build_model_turn("mutated"))
        return await store.load("u")

    assert len(asyncio.run(scenario())) == 1


def test_delete_removes_and_missing_is_noop(store, convo_path):
    async def scenario():
        await store.replace("u", [build_user_turn("a")])
        await store.replace("other", [build_user_turn("b")])
        await store.delete("u")
        await store.delete("never-existed")
        return await store.load("u"), await store.load("other")

    cleared, other = asyncio.run(scenario())
    assert cleared == []
    assert len(other) == 1
    assert "u" not in json.loads(convo_path.read_text(encoding="utf-8"))


def test_session_without_commit_writes_nothing(store):
    async def scenario():
        async with store.session("u") as session:
            session.messages.append(build_user_turn("orphan"))
        return await store.load("u")

    assert asyncio.run(scenario()) == []


def test_session_serialises_same_user(store):
    order = []

    async def turn(tag):
        async with store.session("u") as session:
            order.append(f"{tag}-start")
            await asyncio.sleep(0.01)
            session.messages.append(build_user_turn(tag))
            await session.commit()
            order.append(f"{tag}-end")

    async def scenario():
        await asyncio.gather(turn("a"), turn("b"))
        return await store.load("u")

    loaded = asyncio.run(scenario())
    assert order in (["a-start", "a-end", "b-start", "b-end"], ["b-start", "b-end", "a-start", "a-end"])
    assert sorted(m.parts[0].text for m in loaded) == ["a", "b"]


def test_session_does_not_block_other_users(store):
    inside = []

    async def turn(uid):
        async with store.session(uid) as session:
            inside.append(uid)
            await asyncio.sleep(0.1)
            assert len(inside) == 2
            session.messages.append(build_user_turn(uid))
            await session.commit()

    async def scenario():
        await asyncio.gather(turn("x"), turn("y"))
        return await store.load("x"), await store.load("y")

    x, y = asyncio.run(scenario())
    assert len(x) == 1 and len(y) == 1


def test_user_locks_are_released(store):
    async def scenario():
        async with store.session("u") as session:
            await session.commit([build_user_turn("a")])

    asyncio.run(scenario())
    assert store._user_locks == {}


def test_corrupt_table_raises_storage_failure(convo_path):
    convo_path.write_text("{not json", encoding="utf-8")
    store = JsonConversationStore(convo_path)
    with pytest.raises(StorageFailure) as exc:
        asyncio.run(store.load("u"))
    assert exc.value.code == "STORE_CORRUPT"


def test_non_object_table_raises_storage_failure(convo_path):
    convo_path.write_text("[]", encoding="utf-8")
    store = JsonConversationStore(convo_path)
    with pytest.raises(StorageFailure):
        asyncio.run(store.replace("u", [build_user_turn("a")]))


def test_invalid_message_shape_raises_storage_failure(convo_path):
    convo_path.write_text(json.dumps({"u": [{"role": "user", "parts": []}]}), encoding="utf-8")
    store = JsonConversationStore(convo_path)
    with pytest.raises(StorageFailure):
        asyncio.run(store.load("u"))


def test_write_failure_leaves_table_and_no_temp_file(store, convo_path, monkeypatch):
    asyncio.run(store.replace("u", [build_user_turn("kept")]))
    before = convo_path.read_text(encoding="utf-8")

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("relay.core.memory.os.replace", broken_replace)
    with pytest.raises(StorageFailure) as exc:
        asyncio.run(store.replace("u", [build_user_turn("lost")]))

    assert exc.value.code == "STORE_WRITE_ERROR"
    assert convo_path.read_text(encoding="utf-8") == before
    assert list(convo_path.parent.glob("*.tmp")) == []
