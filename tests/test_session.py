"""Tests for the JSON-lines session store."""

import json

from rachel.agent.session import CONTEXT_FILENAME, SessionStore, session_path
from tests.conftest import assistant, assistant_tool_call, tool_result, turn_pairs, user


def _store(tmp_path, chat_id="chat-1") -> SessionStore:
    return SessionStore(session_path(tmp_path, chat_id), chat_id)


def test_session_path_layout(tmp_path):
    path = session_path(tmp_path, "42")
    assert path == tmp_path / "42" / CONTEXT_FILENAME


async def test_missing_file_is_empty(tmp_path):
    store = _store(tmp_path)
    assert await store.open() == []
    assert not store.path.exists()


async def test_append_then_open(tmp_path):
    store = _store(tmp_path)
    messages = [user("hi"), assistant_tool_call("t1"), tool_result("t1", content="out"), assistant("done")]
    for message in messages:
        assert await store.append_one(message)

    loaded = await _store(tmp_path).open()
    assert loaded == messages


async def test_header_written_once(tmp_path):
    store = _store(tmp_path)
    await store.append_one(user("a"))
    await store.append_one(assistant("b"))
    lines = store.path.read_text().splitlines()
    assert len(lines) == 3
    header = json.loads(lines[0])
    assert header["type"] == "session"
    assert header["chat_id"] == "chat-1"
    assert all(json.loads(line)["type"] == "message" for line in lines[1:])


async def test_chat_id_defaults_to_directory(tmp_path):
    store = SessionStore(session_path(tmp_path, "from-dir"))
    assert store.chat_id == "from-dir"


async def test_torn_line_is_skipped(tmp_path):
    store = _store(tmp_path)
    await store.append_one(user("first"))
    with store.path.open("a", encoding="utf-8") as f:
        f.write('{"type": "message", "message": {"role": "us')  # crash mid-write

    assert await store.append_one(assistant("second"))
    loaded = await store.open()
    assert [m.text() for m in loaded] == ["first", "second"]


async def test_torn_multibyte_character_is_skipped(tmp_path):
    store = _store(tmp_path)
    await store.append_one(user("héllo"))
    with store.path.open("ab") as f:
        f.write('{"type": "message", "message": {"role": "user", "content": "caf'.encode() + b"\xc3")

    loaded = await store.open()
    assert [m.text() for m in loaded] == ["héllo"]

    assert await store.append_one(assistant("after"))
    assert [m.text() for m in await store.open()] == ["héllo", "after"]


async def test_unknown_entries_ignored(tmp_path):
    store = _store(tmp_path)
    await store.append_one(user("kept"))
    with store.path.open("a", encoding="utf-8") as f:
        f.write(json.dumps({"type": "model_change", "model": "x"}) + "\n")
        f.write(json.dumps({"type": "message", "message": {"role": "bogus"}}) + "\n")
    loaded = await store.open()
    assert [m.text() for m in loaded] == ["kept"]


async def test_rewrite_all_replaces_contents(tmp_path):
    store = _store(tmp_path)
    for message in turn_pairs(5):
        await store.append_one(message)

    replacement = [user("summary"), assistant("fresh")]
    assert await store.rewrite_all(replacement)

    assert await store.open() == replacement
    leftovers = [p for p in store.path.parent.iterdir() if p.name != CONTEXT_FILENAME]
    assert leftovers == []


async def test_append_after_rewrite(tmp_path):
    store = _store(tmp_path)
    await store.rewrite_all([user("a")])
    await store.append_one(assistant("b"))
    assert [m.text() for m in await store.open()] == ["a", "b"]


async def test_reset_discards_record(tmp_path):
    store = _store(tmp_path)
    await store.append_one(user("old"))
    assert await store.reset()
    assert await store.open() == []
    assert await store.reset()  # already gone

    await store.append_one(user("new"))
    assert [m.text() for m in await store.open()] == ["new"]


async def test_write_failure_reports_false(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")
    store = SessionStore(blocker / "context.jsonl", "chat-x")

    assert await store.append_one(user("hi")) is False
    assert await store.rewrite_all([user("hi")]) is False
