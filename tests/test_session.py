"""Tests for SessionManager — append-only turns, atomic persistence, per-session locks."""

import asyncio
import json
from pathlib import Path

import pytest

from errand.errors import LockTimeout, SessionNotFound, StoreIOFailure
from errand.session import manager as manager_module
from errand.session.manager import SessionManager, Turn


@pytest.fixture
def sessions(tmp_path: Path) -> SessionManager:
    return SessionManager(tmp_path / "sessions", lock_timeout=0.2)


def _tool_call(call_id: str = "c1", name: str = "exec") -> dict:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": "{}"}}


# ── Turns ──────────────────────────────────────────────────


def test_turn_rejects_unknown_role():
    with pytest.raises(ValueError):
        Turn(role="system", content="nope")


def test_tool_turn_message_shape():
    msg = Turn.tool("c1", "exec", "hi").to_message()
    assert msg == {"role": "tool", "content": "hi", "tool_call_id": "c1", "name": "exec"}


def test_assistant_turn_keeps_tool_calls():
    msg = Turn.assistant(None, [_tool_call()]).to_message()
    assert msg["role"] == "assistant"
    assert msg["content"] is None
    assert msg["tool_calls"][0]["id"] == "c1"


# ── Append ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_append_assigns_increasing_sequences(sessions: SessionManager):
    first = await sessions.append("api:a", Turn.user("hello"))
    rest = await sessions.append("api:a", [Turn.assistant("hi"), Turn.user("again")])

    assert [t.sequence for t in first + rest] == [1, 2, 3]
    assert all(t.timestamp for t in first + rest)

    snap = await sessions.read("api:a")
    assert snap.roles == ["user", "assistant", "user"]
    assert len(snap) == 3


@pytest.mark.asyncio
async def test_append_empty_batch_is_noop(sessions: SessionManager):
    assert await sessions.append("api:a", []) == []
    assert not sessions.exists("api:a")


@pytest.mark.asyncio
async def test_turns_survive_reload(tmp_path: Path):
    store = SessionManager(tmp_path / "s")
    await store.append("telegram:42", [Turn.user("2+2?"), Turn.assistant(None, [_tool_call()])])
    await store.append("telegram:42", Turn.tool("c1", "exec", "4", error=None))

    fresh = SessionManager(tmp_path / "s")
    snap = await fresh.read("telegram:42")

    assert snap.roles == ["user", "assistant", "tool"]
    assert snap.turns[1].tool_calls[0]["function"]["name"] == "exec"
    assert snap.turns[2].tool_call_id == "c1"
    assert [t.sequence for t in snap.turns] == [1, 2, 3]


@pytest.mark.asyncio
async def test_similar_keys_keep_separate_files(tmp_path: Path):
    store = SessionManager(tmp_path / "s")
    await store.append("telegram:42", Turn.user("secret for colon session"))
    await store.append("telegram_42", Turn.user("other session"))
    await store.append("telegram/42", Turn.user("slash session"))

    fresh = SessionManager(tmp_path / "s")
    assert [t.content for t in (await fresh.read("telegram:42")).turns] == ["secret for colon session"]
    assert [t.content for t in (await fresh.read("telegram_42")).turns] == ["other session"]
    assert [t.content for t in (await fresh.read("telegram/42")).turns] == ["slash session"]
    assert {s["key"] for s in fresh.list_sessions()} == {"telegram:42", "telegram_42", "telegram/42"}


@pytest.mark.asyncio
async def test_unreadable_file_is_never_overwritten(tmp_path: Path):
    store = SessionManager(tmp_path / "s")
    await store.append("api:a", [Turn.user("one"), Turn.assistant("two")])
    path = store._get_session_path("api:a")
    with open(path, "a", encoding="utf-8") as f:
        f.write("{not json\n")
    original = path.read_text(encoding="utf-8")

    fresh = SessionManager(tmp_path / "s")
    with pytest.raises(StoreIOFailure):
        await fresh.read("api:a")
    with pytest.raises(StoreIOFailure):
        await fresh.append("api:a", Turn.user("three"))

    assert path.read_text(encoding="utf-8") == original


@pytest.mark.asyncio
async def test_file_is_jsonl_with_metadata_line(sessions: SessionManager):
    await sessions.append("api:x", Turn.user("hi"))
    path = sessions._get_session_path("api:x")
    lines = path.read_text(encoding="utf-8").splitlines()

    assert json.loads(lines[0])["_type"] == "metadata"
    assert json.loads(lines[1])["content"] == "hi"


@pytest.mark.asyncio
async def test_failed_write_leaves_session_unchanged(sessions: SessionManager, monkeypatch):
    await sessions.append("api:a", Turn.user("kept"))

    def broken_write(path, content):
        raise OSError("disk full")

    monkeypatch.setattr(manager_module, "atomic_write_text", broken_write)

    with pytest.raises(StoreIOFailure):
        await sessions.append("api:a", [Turn.assistant("lost"), Turn.user("lost too")])

    snap = await sessions.read("api:a")
    assert [t.content for t in snap.turns] == ["kept"]


@pytest.mark.asyncio
async def test_snapshot_is_isolated_from_later_appends(sessions: SessionManager):
    await sessions.append("api:a", Turn.user("one"))
    snap = await sessions.read("api:a")
    await sessions.append("api:a", Turn.user("two"))

    assert len(snap) == 1
    assert len(await sessions.read("api:a")) == 2


# ── Reads ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_read_unknown_session_raises(sessions: SessionManager):
    with pytest.raises(SessionNotFound) as exc:
        await sessions.read("api:ghost")
    assert exc.value.kind == "NotFound"


@pytest.mark.asyncio
async def test_history_window_skips_orphaned_tool_turns(sessions: SessionManager):
    await sessions.append("api:a", [
        Turn.user("q"),
        Turn.assistant(None, [_tool_call()]),
        Turn.tool("c1", "exec", "out"),
        Turn.assistant("done"),
    ])
    history = sessions.get_or_create("api:a").get_history(max_turns=2)

    assert [m["role"] for m in history] == ["assistant"]
    assert history[0]["content"] == "done"


@pytest.mark.asyncio
async def test_clear_and_list(sessions: SessionManager):
    await sessions.append("api:a", Turn.user("x"))
    await sessions.append("api:b", Turn.user("y"))
    await sessions.clear("api:a")

    assert len(await sessions.read("api:a")) == 0
    keys = {s["key"] for s in sessions.list_sessions()}
    assert keys == {"api:a", "api:b"}

    assert sessions.delete("api:b") is True
    assert sessions.delete("api:b") is False


# ── Locking ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_lock_times_out_when_held_by_another_task(sessions: SessionManager):
    held = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with sessions.lock("api:a"):
            held.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await held.wait()

    with pytest.raises(LockTimeout) as exc:
        await sessions.append("api:a", Turn.user("blocked"))
    assert exc.value.key == "api:a"

    release.set()
    await task
    await sessions.append("api:a", Turn.user("now fine"))
    assert len(await sessions.read("api:a")) == 1


@pytest.mark.asyncio
async def test_lock_is_reentrant_for_owner(sessions: SessionManager):
    async with sessions.lock("api:a"):
        await sessions.append("api:a", Turn.user("inside"))
        assert sessions.is_locked("api:a")
    assert not sessions.is_locked("api:a")


@pytest.mark.asyncio
async def test_other_sessions_are_not_blocked(sessions: SessionManager):
    async with sessions.lock("api:a"):
        await sessions.append("api:b", Turn.user("independent"))
    assert len(await sessions.read("api:b")) == 1
