import asyncio
import sqlite3
from pathlib import Path

import pytest
import pytest_asyncio

from coding_agent.config import Config
from coding_agent.exceptions import PersistenceError, SessionError
from coding_agent.session import (
    PREVIOUS_RESPONSE_ID_KEY,
    ConversationTurn,
    InMemoryStore,
    SessionID,
    SQLiteStore,
    ToolCallRecord,
    create_session_store,
    ensure_session_id,
    new_session_id,
)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path: Path):
    if request.param == "memory":
        instance = InMemoryStore()
    else:
        instance = SQLiteStore(tmp_path / "sessions.db")
    try:
        yield instance
    finally:
        await instance.close()


_REJECT_ASSISTANT_TURNS = """
CREATE TRIGGER reject_assistant_turns BEFORE INSERT ON conversation_turns
WHEN NEW.role = 'assistant'
BEGIN SELECT RAISE(ABORT, 'assistant turn rejected'); END
"""


def _assistant_turn(text: str, response_id: str = "") -> ConversationTurn:
    return ConversationTurn(
        role="assistant",
        content=text,
        tool_calls=[ToolCallRecord(name="read_file", arguments='{"path": "a.txt"}', result='{"content":"x"}')],
        metadata={PREVIOUS_RESPONSE_ID_KEY: response_id} if response_id else {},
    )


@pytest.mark.asyncio
async def test_unknown_session_lists_empty(store):
    assert await store.list(SessionID("missing")) == []


@pytest.mark.asyncio
async def test_append_then_list_round_trip_in_order(store):
    sid = SessionID("s1")
    await store.append(sid, ConversationTurn(role="user", content="hello"))
    await store.append(sid, _assistant_turn("hi", "resp_1"))

    turns = await store.list(sid)

    assert [turn.role for turn in turns] == ["user", "assistant"]
    assert turns[0].content == "hello"
    assert turns[0].tool_calls == []
    assert turns[0].metadata == {}
    assert turns[1].content == "hi"
    assert turns[1].tool_calls == [
        ToolCallRecord(name="read_file", arguments='{"path": "a.txt"}', result='{"content":"x"}')
    ]
    assert turns[1].metadata == {PREVIOUS_RESPONSE_ID_KEY: "resp_1"}


@pytest.mark.asyncio
async def test_sessions_are_isolated(store):
    await store.append(SessionID("a"), ConversationTurn(role="user", content="for a"))
    await store.append(SessionID("b"), ConversationTurn(role="user", content="for b"))

    assert [turn.content for turn in await store.list(SessionID("a"))] == ["for a"]
    assert [turn.content for turn in await store.list(SessionID("b"))] == ["for b"]


@pytest.mark.asyncio
async def test_mutating_appended_or_listed_turns_does_not_change_stored_data(store):
    sid = SessionID("s1")
    turn = ConversationTurn(role="assistant", content="original", metadata={"k": "v"})
    await store.append(sid, turn)

    turn.content = "changed"
    turn.metadata["k"] = "changed"
    listed = await store.list(sid)
    listed[0].metadata["other"] = "x"
    listed[0].tool_calls.append(ToolCallRecord(name="n", arguments="{}", result="r"))

    again = await store.list(sid)
    assert again[0].content == "original"
    assert again[0].metadata == {"k": "v"}
    assert again[0].tool_calls == []


@pytest.mark.asyncio
async def test_append_many_adds_turns_in_order_and_ignores_empty_batches(store):
    sid = SessionID("s1")
    await store.append_many(sid, [ConversationTurn(role="user", content="q"), _assistant_turn("a")])
    await store.append_many(SessionID("empty"), [])

    assert [turn.role for turn in await store.list(sid)] == ["user", "assistant"]
    assert [summary.session_id for summary in await store.list_sessions()] == ["s1"]


@pytest.mark.asyncio
async def test_concurrent_exchanges_keep_per_session_order_and_never_split_pairs(store):
    sessions = [SessionID(f"s{i}") for i in range(5)]
    rounds = 10
    snapshots: list[tuple[SessionID, list[str]]] = []

    def expected(sid: SessionID) -> list[str]:
        return [text for n in range(rounds) for text in (f"{sid}:q{n}", f"{sid}:a{n}")]

    async def write(sid: SessionID) -> None:
        for n in range(rounds):
            await store.append_many(
                sid,
                [
                    ConversationTurn(role="user", content=f"{sid}:q{n}"),
                    ConversationTurn(role="assistant", content=f"{sid}:a{n}"),
                ],
            )
            await asyncio.sleep(0)

    async def read(sid: SessionID) -> None:
        for _ in range(rounds):
            turns = await store.list(sid)
            snapshots.append((sid, [turn.content for turn in turns]))
            await asyncio.sleep(0)

    await asyncio.gather(*(write(sid) for sid in sessions), *(read(sid) for sid in sessions))

    for sid in sessions:
        assert [turn.content for turn in await store.list(sid)] == expected(sid)
    for sid, contents in snapshots:
        assert len(contents) % 2 == 0
        assert contents == expected(sid)[: len(contents)]


@pytest.mark.asyncio
async def test_delete_removes_session_and_is_idempotent(store):
    sid = SessionID("s1")
    await store.append(sid, ConversationTurn(role="user", content="hello"))
    await store.append(SessionID("keep"), ConversationTurn(role="user", content="stay"))

    await store.delete(sid)
    await store.delete(sid)
    await store.delete(SessionID("never-existed"))

    assert await store.list(sid) == []
    assert len(await store.list(SessionID("keep"))) == 1


@pytest.mark.asyncio
async def test_list_sessions_orders_by_recent_activity(store):
    await store.append(SessionID("first"), ConversationTurn(role="user", content="1"))
    await store.append(SessionID("second"), ConversationTurn(role="user", content="2"))
    await store.append(SessionID("first"), ConversationTurn(role="assistant", content="3"))

    sessions = await store.list_sessions(limit=10)

    assert [summary.session_id for summary in sessions] == ["first", "second"]
    assert sessions[0].turn_count == 2
    assert sessions[1].turn_count == 1
    assert len(await store.list_sessions(limit=1)) == 1


@pytest.mark.asyncio
async def test_sqlite_store_persists_across_reopen(tmp_path: Path):
    db_path = tmp_path / "nested" / "sessions.db"
    first = SQLiteStore(db_path)
    try:
        await first.append(SessionID("s1"), _assistant_turn("kept", "resp_9"))
    finally:
        await first.close()

    second = SQLiteStore(db_path)
    try:
        turns = await second.list(SessionID("s1"))
    finally:
        await second.close()

    assert db_path.exists()
    assert len(turns) == 1
    assert turns[0].content == "kept"
    assert turns[0].metadata[PREVIOUS_RESPONSE_ID_KEY] == "resp_9"


@pytest.mark.asyncio
async def test_sqlite_store_writes_null_for_empty_json_columns(tmp_path: Path):
    db_path = tmp_path / "sessions.db"
    store = SQLiteStore(db_path)
    try:
        await store.append(SessionID("s1"), ConversationTurn(role="user", content="hello"))
    finally:
        await store.close()

    with sqlite3.connect(db_path) as conn:
        row = conn.execute("SELECT tool_calls, metadata FROM conversation_turns").fetchone()
    assert row == (None, None)


@pytest.mark.asyncio
async def test_sqlite_append_many_rolls_back_every_row_on_failure(tmp_path: Path):
    db_path = tmp_path / "sessions.db"
    sid = SessionID("s1")
    store = SQLiteStore(db_path)
    try:
        assert await store.list(sid) == []
        with sqlite3.connect(db_path) as conn:
            conn.execute(_REJECT_ASSISTANT_TURNS)

        with pytest.raises(PersistenceError, match="assistant turn rejected"):
            await store.append_many(sid, [ConversationTurn(role="user", content="q"), _assistant_turn("a")])
        assert await store.list(sid) == []

        await store.append(sid, ConversationTurn(role="user", content="still writable"))
        assert [turn.content for turn in await store.list(sid)] == ["still writable"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_rejects_corrupt_json(tmp_path: Path):
    db_path = tmp_path / "sessions.db"
    store = SQLiteStore(db_path)
    try:
        await store.append(SessionID("s1"), ConversationTurn(role="user", content="hello"))
        with sqlite3.connect(db_path) as conn:
            conn.execute("UPDATE conversation_turns SET metadata = '{not json'")

        with pytest.raises(PersistenceError, match="metadata"):
            await store.list(SessionID("s1"))
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_accepts_in_memory_database():
    store = SQLiteStore(":memory:")
    try:
        await store.append(SessionID("s1"), ConversationTurn(role="user", content="hello"))
        assert len(await store.list(SessionID("s1"))) == 1
    finally:
        await store.close()


def test_create_session_store_follows_config(tmp_path: Path):
    memory_cfg = Config()
    memory_cfg.session.storage = "memory"
    assert isinstance(create_session_store(memory_cfg), InMemoryStore)

    sqlite_cfg = Config()
    sqlite_cfg.session.path = str(tmp_path / "db" / "sessions.db")
    store = create_session_store(sqlite_cfg)
    assert isinstance(store, SQLiteStore)
    assert store.db_path == tmp_path / "db" / "sessions.db"


def test_session_ids():
    assert new_session_id() != new_session_id()
    assert ensure_session_id("  abc ") == "abc"
    with pytest.raises(SessionError):
        ensure_session_id("   ")
