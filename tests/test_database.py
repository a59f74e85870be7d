import asyncio
import json

import pytest

from app.errors import PersistenceFailure
from app.models.conversation import ConversationState, ImageRef, Phase, RawFacts, UploadedImage
from app.models.database import (
    get_events,
    get_messages,
    get_state_row,
    list_sessions,
    log_event,
    save_message,
    upsert_state_row,
)
from app.services.state_store import ConversationStateStore


async def test_state_row_upsert_replaces_state(db_path):
    await upsert_state_row(db_path, "s1", "collecting_facts", "{}")
    await upsert_state_row(db_path, "s1", "done", '{"x": 1}')

    row = await get_state_row(db_path, "s1")
    assert row["phase"] == "done"
    assert json.loads(row["state"]) == {"x": 1}
    assert await get_state_row(db_path, "missing") is None


async def test_messages_are_kept_in_order(db_path):
    await upsert_state_row(db_path, "s1", "collecting_facts", "{}")
    await save_message(db_path, "s1", "user", "Hello!")
    await save_message(db_path, "s1", "bot", "Hi! How can I help?")

    messages = await get_messages(db_path, "s1")
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "Hello!"),
        ("bot", "Hi! How can I help?"),
    ]

    sessions = await list_sessions(db_path)
    assert sessions[0]["id"] == "s1"
    assert sessions[0]["message_count"] == 2


async def test_events_store_json_payload(db_path):
    await log_event(db_path, "s1", "product_created", {"product_id": 12})
    await log_event(db_path, "s1", "session_reset")

    events = await get_events(db_path, "s1")
    assert [e["event_type"] for e in events] == ["product_created", "session_reset"]
    assert json.loads(events[0]["event_data"]) == {"product_id": 12}
    assert events[1]["event_data"] is None


async def test_store_round_trips_state_with_inline_images(db_path):
    store = ConversationStateStore(db_path)
    state = ConversationState(
        session_id="s1",
        phase=Phase.COLLECTING_FACTS,
        raw_facts=RawFacts(product_name="Leather Sofa", price="5000"),
        pending_images=[ImageRef(data=b"\x89PNG\r\n\x1a\nbinary", filename="sofa.png")],
        uploaded_images=[UploadedImage(media_id=3, url="https://shop.test/a.jpg")],
        awaiting_fact="material",
    )
    await store.save(state)

    loaded = await store.load("s1")
    assert loaded == state
    assert loaded.pending_images[0].data == b"\x89PNG\r\n\x1a\nbinary"


async def test_store_load_unknown_session_is_fresh(db_path):
    store = ConversationStateStore(db_path)

    state = await store.load("nobody")
    assert state.phase is Phase.COLLECTING_FACTS
    assert state.raw_facts == RawFacts()
    assert not await store.exists("nobody")


async def test_store_reset_clears_state(db_path):
    store = ConversationStateStore(db_path)
    await store.save(ConversationState(session_id="s1", phase=Phase.DONE))

    await store.reset("s1")
    assert (await store.load("s1")).phase is Phase.COLLECTING_FACTS
    assert await store.exists("s1")


async def test_store_lock_serializes_one_session(db_path):
    store = ConversationStateStore(db_path)
    order = []

    async def turn(name):
        async with store.lock("s1"):
            order.append(f"{name}-start")
            await asyncio.sleep(0.01)
            order.append(f"{name}-end")

    await asyncio.gather(turn("a"), turn("b"))

    assert order == ["a-start", "a-end", "b-start", "b-end"]
    assert store._locks == {}


async def test_store_lock_does_not_block_other_sessions(db_path):
    store = ConversationStateStore(db_path)

    async def other_session():
        async with store.lock("s2"):
            return True

    async with store.lock("s1"):
        assert await asyncio.wait_for(other_session(), timeout=1)


async def test_store_errors_become_persistence_failures(tmp_path):
    store = ConversationStateStore(str(tmp_path / "uninitialised.db"))

    with pytest.raises(PersistenceFailure):
        await store.save(ConversationState(session_id="s1"))
    with pytest.raises(PersistenceFailure):
        await store.load("s1")
