from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional
from uuid import uuid4

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

SCHEMA_VERSION = 2
COLLECTIONS = ("tasks", "conversations", "messages", "outbox")

logger = logging.getLogger("orchestrator.storage")


def utcnow() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def new_id() -> str:
    return uuid4().hex


class StoreError(RuntimeError):
    """Raised when the local store is unavailable or its contents are corrupted."""


class IntegrityError(StoreError):
    """Raised when a record references an entity that does not exist."""


@dataclass
class Task:
    id: str
    text: str
    completed: bool = False
    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "completed": self.completed,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=str(data["id"]),
            text=str(data["text"]),
            completed=bool(data.get("completed", False)),
            created_at=data.get("createdAt") or utcnow(),
        )


@dataclass
class Conversation:
    id: str
    title: Optional[str] = None
    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "createdAt": self.created_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(data["id"]),
            title=data.get("title"),
            created_at=data.get("createdAt") or utcnow(),
        )


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at,
        }

    def to_turn(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=str(data["id"]),
            conversation_id=str(data["conversationId"]),
            role=str(data["role"]),
            content=str(data.get("content") or ""),
            created_at=data.get("createdAt") or utcnow(),
        )


@dataclass
class OutboxItem:
    id: str
    action: Dict[str, Any]
    timestamp: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "action": self.action, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutboxItem":
        return cls(
            id=str(data["id"]),
            action=dict(data.get("action") or {}),
            timestamp=data.get("timestamp") or utcnow(),
        )


def _empty_document() -> Dict[str, Any]:
    document: Dict[str, Any] = {"version": SCHEMA_VERSION}
    for name in COLLECTIONS:
        document[name] = {}
    return document


_DECODERS = {
    "tasks": Task.from_dict,
    "conversations": Conversation.from_dict,
    "messages": Message.from_dict,
    "outbox": OutboxItem.from_dict,
}


def _validate_records(data: Dict[str, Any]) -> None:
    for name, decode in _DECODERS.items():
        for key, record in data[name].items():
            try:
                decode(record)
            except (KeyError, TypeError, ValueError) as exc:
                raise StoreError(f"Local store record {name}/{key} is corrupted: {exc!r}") from exc


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", delete=False, dir=str(path.parent), suffix=".tmp"
    ) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    try:
        os.replace(tmp_name, path)
    except OSError:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


class LocalStore:
    """
    Durable store for tasks, conversations, messages and the offline outbox.

    All collections live in a single JSON document that is rewritten atomically
    on every mutation, so multi-collection changes (such as deleting a conversation
    together with its messages) either land completely or not at all.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._data = self._load()
        self._message_index = _index_messages(self._data["messages"])

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return _empty_document()
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, UnicodeDecodeError) as exc:
            raise StoreError(f"Local store at {self.path} is unavailable: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise StoreError(f"Local store at {self.path} is corrupted: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError(f"Local store at {self.path} is corrupted: expected an object.")
        version = data.get("version", 1)
        if not isinstance(version, int) or isinstance(version, bool):
            raise StoreError(f"Local store at {self.path} has an invalid version: {version!r}")
        # Upgrades only ever add collections.
        for name in COLLECTIONS:
            if not isinstance(data.get(name), dict):
                if name in data:
                    raise StoreError(f"Local store collection '{name}' is corrupted.")
                data[name] = {}
        if version < SCHEMA_VERSION:
            logger.info("Upgrading local store schema from v%s to v%s", version, SCHEMA_VERSION)
            data["version"] = SCHEMA_VERSION
        _validate_records(data)
        return data

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[Dict[str, Any]]:
        with self._lock:
            working = copy.deepcopy(self._data)
            yield working
            try:
                _atomic_write_text(self.path, json.dumps(working, ensure_ascii=False))
            except OSError as exc:
                raise StoreError(f"Failed to write local store at {self.path}: {exc}") from exc
            self._data = working
            self._message_index = _index_messages(working["messages"])

    # Tasks

    def list_tasks(self) -> List[Task]:
        with self._lock:
            return [Task.from_dict(item) for item in self._data["tasks"].values()]

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            record = self._data["tasks"].get(task_id)
        return Task.from_dict(record) if record else None

    def put_task(self, task: Task) -> Task:
        with self._transaction() as data:
            data["tasks"][task.id] = task.to_dict()
        return task

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            if task_id not in self._data["tasks"]:
                return False
            with self._transaction() as data:
                data["tasks"].pop(task_id, None)
        return True

    # Conversations

    def list_conversations(self) -> List[Conversation]:
        with self._lock:
            items = [Conversation.from_dict(item) for item in self._data["conversations"].values()]
        items.sort(key=lambda item: item.created_at)
        return items

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            record = self._data["conversations"].get(conversation_id)
        return Conversation.from_dict(record) if record else None

    def put_conversation(self, conversation: Conversation) -> Conversation:
        with self._transaction() as data:
            data["conversations"][conversation.id] = conversation.to_dict()
        return conversation

    def delete_conversation(self, conversation_id: str) -> int:
        """
        Delete a conversation and every message that belongs to it.

        Returns the number of messages removed alongside the conversation.
        """
        with self._lock:
            if conversation_id not in self._data["conversations"]:
                return 0
            doomed = list(self._message_index.get(conversation_id, ()))
            with self._transaction() as data:
                data["conversations"].pop(conversation_id, None)
                for message_id in doomed:
                    data["messages"].pop(message_id, None)
        logger.debug("Deleted conversation %s with %d messages", conversation_id, len(doomed))
        return len(doomed)

    # Messages

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._lock:
            records = self._data["messages"]
            return [
                Message.from_dict(records[message_id])
                for message_id in self._message_index.get(conversation_id, ())
            ]

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            record = self._data["messages"].get(message_id)
        return Message.from_dict(record) if record else None

    def put_message(self, message: Message) -> Message:
        with self._lock:
            if message.conversation_id not in self._data["conversations"]:
                raise IntegrityError(
                    f"Message {message.id} references unknown conversation {message.conversation_id}."
                )
            with self._transaction() as data:
                data["messages"][message.id] = message.to_dict()
        return message

    # Outbox

    def add_to_outbox(self, action: Dict[str, Any]) -> OutboxItem:
        item = OutboxItem(id=new_id(), action=dict(action))
        with self._transaction() as data:
            data["outbox"][item.id] = item.to_dict()
        return item

    def list_outbox(self) -> List[OutboxItem]:
        with self._lock:
            return [OutboxItem.from_dict(item) for item in self._data["outbox"].values()]

    def remove_outbox_items(self, item_ids: Iterable[str]) -> int:
        targets = set(item_ids)
        with self._lock:
            present = targets.intersection(self._data["outbox"])
            if not present:
                return 0
            with self._transaction() as data:
                for item_id in present:
                    data["outbox"].pop(item_id, None)
        return len(present)

    def clear_outbox(self) -> int:
        with self._lock:
            count = len(self._data["outbox"])
            if not count:
                return 0
            with self._transaction() as data:
                data["outbox"].clear()
        return count


def _index_messages(messages: Dict[str, Dict[str, Any]]) -> Dict[str, List[str]]:
    index: Dict[str, List[str]] = {}
    for message_id, record in messages.items():
        index.setdefault(record.get("conversationId"), []).append(message_id)
    return index


class SharedStore:
    """
    Lazily opens one LocalStore per process and hands the same instance to every caller.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._store: Optional[LocalStore] = None
        self._lock = threading.Lock()

    def get(self) -> LocalStore:
        store = self._store
        if store is not None:
            return store
        with self._lock:
            if self._store is None:
                logger.debug("Opening local store at %s", self.path)
                self._store = LocalStore(self.path)
            return self._store

    def reset(self) -> None:
        with self._lock:
            self._store = None


def build_title(text: str) -> str:
    lines = text.strip().splitlines()
    snippet = lines[0] if lines else ""
    return snippet[:80] + ("…" if len(snippet) > 80 else "")
