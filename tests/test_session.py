import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

from orchestrator.client import RelayError, StreamCancelled
from orchestrator import session as session_module
from orchestrator.session import ChatSession, TaskBoard
from orchestrator.storage import LocalStore, SharedStore, Task


class StubRelay:
    """Deterministic relay: echoes the last user turn with a prefix."""

    def __init__(self, chunks: Optional[List[str]] = None, fail: bool = False) -> None:
        self.chunks = chunks or []
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []
        self.store: Optional[LocalStore] = None
        self.seen_during_stream: List[int] = []

    def complete(self, messages: Sequence[Dict[str, str]], *, tasks=None, conversation_id=None) -> str:
        self.calls.append({"messages": list(messages), "tasks": tasks, "conversation_id": conversation_id})
        if self.fail:
            raise RelayError("LLM request failed.")
        return f"stubbed:{messages[-1]['content']}"

    def stream(self, messages, *, tasks=None, conversation_id=None, cancel=None):
        self.calls.append({"messages": list(messages), "tasks": tasks, "conversation_id": conversation_id})
        for chunk in self.chunks:
            if cancel is not None and cancel.is_set():
                raise StreamCancelled()
            if self.store is not None:
                self.seen_during_stream.append(len(self.store.list_messages(conversation_id)))
            yield chunk


def _contents(store: LocalStore, conversation_id: str) -> List[str]:
    return [f"{m.role}:{m.content}" for m in store.list_messages(conversation_id)]


def test_conversation_scenario(store: LocalStore) -> None:
    session = ChatSession(store, StubRelay())
    conversation = session.new_conversation()

    reply = session.ask("hello")
    assert reply is not None and reply.content == "stubbed:hello"
    assert _contents(store, conversation.id) == ["user:hello", "assistant:stubbed:hello"]

    session.ask("world")
    assert _contents(store, conversation.id) == [
        "user:hello",
        "assistant:stubbed:hello",
        "user:world",
        "assistant:stubbed:world",
    ]
    assert [m.content for m in session.messages] == [
        "hello",
        "stubbed:hello",
        "world",
        "stubbed:world",
    ]


def test_history_is_sent_with_each_turn(store: LocalStore) -> None:
    relay = StubRelay()
    session = ChatSession(store, relay)
    session.ask("first")
    session.ask("second")
    assert relay.calls[1]["messages"] == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "stubbed:first"},
        {"role": "user", "content": "second"},
    ]
    assert relay.calls[1]["conversation_id"] == session.conversation_id
    assert relay.calls[1]["tasks"] is None


def test_threads_stay_isolated(store: LocalStore) -> None:
    session = ChatSession(store, StubRelay())
    first = session.new_conversation()
    session.ask("first")
    second = session.new_conversation()
    session.ask("second")

    assert _contents(store, first.id) == ["user:first", "assistant:stubbed:first"]
    assert _contents(store, second.id) == ["user:second", "assistant:stubbed:second"]
    assert [m.content for m in session.select(first.id)] == ["first", "stubbed:first"]


def test_ask_creates_titled_conversation(store: LocalStore) -> None:
    session = ChatSession(store, StubRelay())
    session.ask("  Plan the launch\nwith details ")
    conversations = session.conversations()
    assert len(conversations) == 1
    assert conversations[0].title == "Plan the launch"
    with pytest.raises(ValueError):
        session.ask("   ")


def test_task_context_is_forwarded(store: LocalStore) -> None:
    store.put_task(Task(id="t1", text="Water plants"))
    relay = StubRelay()
    session = ChatSession(store, relay, include_tasks=True)
    session.ask("what now?")
    assert relay.calls[0]["tasks"][0]["text"] == "Water plants"


def test_relay_failure_keeps_user_message(store: LocalStore) -> None:
    session = ChatSession(store, StubRelay(fail=True))
    with pytest.raises(RelayError):
        session.ask("hello")
    assert _contents(store, session.conversation_id) == ["user:hello"]


def test_streamed_reply_persisted_only_when_complete(store: LocalStore) -> None:
    relay = StubRelay(chunks=["Hel", "lo", "!"])
    relay.store = store
    session = ChatSession(store, relay)
    deltas: List[str] = []

    reply = session.ask("hi", stream=True, on_delta=deltas.append)

    assert deltas == ["Hel", "lo", "!"]
    assert reply is not None and reply.content == "Hello!"
    assert relay.seen_during_stream == [1, 1, 1]
    assert _contents(store, session.conversation_id) == ["user:hi", "assistant:Hello!"]


def test_cancelled_stream_saves_nothing_partial(store: LocalStore) -> None:
    cancel = threading.Event()
    session = ChatSession(store, StubRelay(chunks=["a", "b", "c"]))

    def on_delta(delta: str) -> None:
        cancel.set()

    reply = session.ask("hi", stream=True, on_delta=on_delta, cancel=cancel)

    assert reply is None
    assert _contents(store, session.conversation_id) == ["user:hi"]
    assert [m.role for m in session.messages] == ["user"]


def test_stream_failure_drops_placeholder(store: LocalStore) -> None:
    class FailingRelay(StubRelay):
        def stream(self, messages, **kwargs):
            yield "partial"
            raise RelayError("Stream failed.")

    session = ChatSession(store, FailingRelay())
    with pytest.raises(RelayError):
        session.ask("hi", stream=True)
    assert [m.role for m in session.messages] == ["user"]
    assert _contents(store, session.conversation_id) == ["user:hi"]


def test_delete_and_rename(store: LocalStore) -> None:
    session = ChatSession(store, StubRelay())
    session.ask("hello")
    conversation_id = session.conversation_id
    assert session.rename(conversation_id, "Renamed").title == "Renamed"

    assert session.delete_conversation(conversation_id) == 2
    assert session.conversation_id is None
    assert session.messages == []
    assert store.list_messages(conversation_id) == []
    with pytest.raises(KeyError):
        session.select(conversation_id)


def test_prompt_is_stored_as_typed(store: LocalStore) -> None:
    relay = StubRelay()
    session = ChatSession(store, relay)
    session.ask("  indented\nprompt ")

    assert _contents(store, session.conversation_id)[0] == "user:  indented\nprompt "
    assert relay.calls[0]["messages"][-1]["content"] == "  indented\nprompt "
    assert session.conversations()[0].title == "indented"


def test_default_store_is_shared(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(session_module, "shared_store", SharedStore(tmp_path / "store.json"))

    chat = ChatSession(None, StubRelay())
    board = TaskBoard()
    board.add("Buy milk")
    chat.ask("hello")

    assert chat.store is board.store
    assert [task.text for task in chat.store.list_tasks()] == ["Buy milk"]
    assert LocalStore(tmp_path / "store.json").list_conversations()[0].id == chat.conversation_id
