"""Tests for memory storage, keyword retrieval and context assembly."""

from pathlib import Path

import pytest

from errand.agent.context import ContextBuilder
from errand.agent.memory import KeywordRetriever, MemoryExcerpt, MemoryRetriever, MemoryStore


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def store(workspace: Path) -> MemoryStore:
    s = MemoryStore(workspace)
    s.write_long_term(
        "# Long-term memory\n\n"
        "The user's dog is called Biscuit and loves the beach.\n\n"
        "Server backups run nightly on the NAS.\n\n"
        "The user prefers green tea over coffee."
    )
    return s


# ── MemoryStore ────────────────────────────────────────────


def test_append_long_term_is_timestamped(workspace: Path):
    s = MemoryStore(workspace)
    s.append_long_term("likes jazz")
    text = s.read_long_term()
    assert "likes jazz" in text
    assert text.strip().startswith("[")


def test_daily_notes(workspace: Path):
    s = MemoryStore(workspace)
    s.append_today("met Alex")
    s.append_today("fixed the router")

    today = s.read_today()
    assert today.startswith("# ")
    assert "met Alex" in today and "fixed the router" in today
    assert len(s.get_recent_notes()) == 1


# ── KeywordRetriever ───────────────────────────────────────


def test_retriever_ranks_by_overlap(store: MemoryStore):
    results = KeywordRetriever(store).query("s1", "what is my dog called?", limit=3)

    assert results
    assert "Biscuit" in results[0].text
    assert results[0].source == "MEMORY.md"
    assert all(r.score > 0 for r in results)


def test_retriever_skips_headings_and_unrelated(store: MemoryStore):
    results = KeywordRetriever(store).query("s1", "long-term memory", limit=5)
    assert all(not r.text.startswith("# ") for r in results)

    assert KeywordRetriever(store).query("s1", "quantum chromodynamics") == []


def test_retriever_respects_limit(store: MemoryStore):
    assert len(KeywordRetriever(store).query("s1", "user dog tea backups", limit=2)) == 2
    assert KeywordRetriever(store).query("s1", "dog", limit=0) == []


def test_keyword_retriever_satisfies_protocol(store: MemoryStore):
    assert isinstance(KeywordRetriever(store), MemoryRetriever)


# ── ContextBuilder ─────────────────────────────────────────


def test_system_prompt_includes_bootstrap_and_relevant_memory(workspace: Path, store: MemoryStore):
    (workspace / "SOUL.md").write_text("Be brief.", encoding="utf-8")
    builder = ContextBuilder(workspace)

    prompt = builder.build_system_prompt("s1", "tell me about my dog")

    assert prompt.startswith("# errand")
    assert "## SOUL.md\n\nBe brief." in prompt
    assert "# Memory" in prompt
    assert "[MEMORY.md] The user's dog is called Biscuit" in prompt


def test_no_memory_section_without_matches(workspace: Path, store: MemoryStore):
    prompt = ContextBuilder(workspace).build_system_prompt("s1", "zzz qqq")
    assert "# Memory" not in prompt


def test_custom_retriever_is_used(workspace: Path):
    class Fixed:
        def __init__(self):
            self.calls = []

        def query(self, session_id, topic, limit=5):
            self.calls.append((session_id, topic, limit))
            return [MemoryExcerpt(text="remember the milk", source="db", score=1.0)]

    retriever = Fixed()
    prompt = ContextBuilder(workspace, retriever=retriever, memory_limit=3).build_system_prompt("api:a", "groceries")

    assert "[db] remember the milk" in prompt
    assert retriever.calls == [("api:a", "groceries", 3)]


def test_failing_retriever_does_not_break_prompt(workspace: Path):
    class Broken:
        def query(self, session_id, topic, limit=5):
            raise RuntimeError("index offline")

    prompt = ContextBuilder(workspace, retriever=Broken()).build_system_prompt("s", "anything")
    assert "# Memory" not in prompt


def test_build_messages_order(workspace: Path):
    history = [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
        {"role": "user", "content": "2+2?"},
    ]
    messages = ContextBuilder(workspace).build_messages(
        history, "2+2?", session_id="local:c", channel="local", chat_id="c",
    )

    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[-1]["content"] == "2+2?"
    assert "Channel: local\nChat ID: c" in messages[0]["content"]
    # History dicts are copied, not shared
    messages[1]["content"] = "changed"
    assert history[0]["content"] == "hi"


def test_images_are_attached_to_last_user_message(workspace: Path):
    image = workspace / "pic.png"
    image.write_bytes(b"\x89PNG fake")
    messages = ContextBuilder(workspace).build_messages(
        [{"role": "user", "content": "what is this?"}], "what is this?", media=[str(image), "missing.png"],
    )

    content = messages[-1]["content"]
    assert content[0]["type"] == "image_url"
    assert content[0]["image_url"]["url"].startswith("data:image/png;base64,")
    assert content[-1] == {"type": "text", "text": "what is this?"}


def test_tool_round_helpers(workspace: Path):
    builder = ContextBuilder(workspace)
    messages: list[dict] = []
    calls = [{"id": "c1", "type": "function", "function": {"name": "exec", "arguments": "{}"}}]

    builder.add_assistant_message(messages, None, calls, reasoning_content="thinking")
    builder.add_tool_result(messages, "c1", "exec", "hi")

    assert messages[0] == {"role": "assistant", "content": "", "tool_calls": calls, "reasoning_content": "thinking"}
    assert messages[1] == {"role": "tool", "tool_call_id": "c1", "name": "exec", "content": "hi"}
