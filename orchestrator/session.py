from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .client import StreamCancelled, turns_from
from .outbox import CREATE_TASK, DELETE_TASK, UPDATE_TASK, ConnectivityMonitor
from .storage import (
    Conversation,
    LocalStore,
    Message,
    SharedStore,
    Task,
    build_title,
    new_id,
)

logger = logging.getLogger("orchestrator.session")

STORE_PATH = Path(os.environ.get("ORCHESTRATOR_DATA_DIR", "data")) / "store.json"
shared_store = SharedStore(STORE_PATH)


class Relay(Protocol):
    def complete(
        self,
        messages: Sequence[Dict[str, str]],
        *,
        tasks: Optional[Sequence[Dict[str, Any]]] = ...,
        conversation_id: Optional[str] = ...,
    ) -> str:
        ...

    def stream(
        self,
        messages: Sequence[Dict[str, str]],
        *,
        tasks: Optional[Sequence[Dict[str, Any]]] = ...,
        conversation_id: Optional[str] = ...,
        cancel: Optional[threading.Event] = ...,
    ) -> Any:
        ...


class ChatSession:
    """
    Coordinates one user's conversations between the local store and the relay.

    ``messages`` mirrors the active conversation; the store stays the source of truth.
    """

    def __init__(
        self, store: Optional[LocalStore], relay: Relay, *, include_tasks: bool = False
    ) -> None:
        self.store = store or shared_store.get()
        self.relay = relay
        self.include_tasks = include_tasks
        self.conversation_id: Optional[str] = None
        self.messages: List[Message] = []

    def conversations(self) -> List[Conversation]:
        return self.store.list_conversations()

    def new_conversation(self, title: Optional[str] = None) -> Conversation:
        conversation = self.store.put_conversation(Conversation(id=new_id(), title=title))
        self.conversation_id = conversation.id
        self.messages = []
        logger.info("Started new conversation %s", conversation.id)
        return conversation

    def select(self, conversation_id: str) -> List[Message]:
        if self.store.get_conversation(conversation_id) is None:
            raise KeyError(f"Unknown conversation {conversation_id}")
        self.conversation_id = conversation_id
        self.messages = self.store.list_messages(conversation_id)
        return list(self.messages)

    def rename(self, conversation_id: str, title: str) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise KeyError(f"Unknown conversation {conversation_id}")
        conversation.title = title
        return self.store.put_conversation(conversation)

    def delete_conversation(self, conversation_id: str) -> int:
        removed = self.store.delete_conversation(conversation_id)
        if conversation_id == self.conversation_id:
            self.conversation_id = None
            self.messages = []
        return removed

    def _ensure_conversation(self, prompt: str) -> str:
        if self.conversation_id and self.store.get_conversation(self.conversation_id):
            return self.conversation_id
        return self.new_conversation(title=build_title(prompt)).id

    def _task_context(self) -> Optional[List[Dict[str, Any]]]:
        if not self.include_tasks:
            return None
        return [task.to_dict() for task in self.store.list_tasks()]

    def ask(
        self,
        prompt: str,
        *,
        stream: bool = False,
        on_delta: Optional[Callable[[str], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[Message]:
        """
        Send ``prompt`` in the active conversation and return the assistant reply.

        The user message is persisted before the relay is called. A streamed reply
        is only persisted once complete; if ``cancel`` is set mid-stream nothing
        partial is kept and None is returned. Relay failures propagate after the
        user message has been saved.
        """
        if not prompt.strip():
            raise ValueError("Prompt must not be empty.")
        conversation_id = self._ensure_conversation(prompt)
        user_message = self.store.put_message(
            Message(id=new_id(), conversation_id=conversation_id, role="user", content=prompt)
        )
        self.messages.append(user_message)
        history = turns_from(self.messages)
        tasks = self._task_context()

        if not stream:
            reply = self.relay.complete(history, tasks=tasks, conversation_id=conversation_id)
            assistant = self.store.put_message(
                Message(id=new_id(), conversation_id=conversation_id, role="assistant", content=reply)
            )
            self.messages.append(assistant)
            return assistant

        placeholder = Message(
            id=new_id(), conversation_id=conversation_id, role="assistant", content=""
        )
        self.messages.append(placeholder)
        try:
            for delta in self.relay.stream(
                history, tasks=tasks, conversation_id=conversation_id, cancel=cancel
            ):
                placeholder.content += delta
                if on_delta is not None:
                    on_delta(delta)
        except StreamCancelled:
            self.messages.remove(placeholder)
            logger.info("Streamed reply cancelled in conversation %s", conversation_id)
            return None
        except BaseException:
            self.messages.remove(placeholder)
            raise
        return self.store.put_message(placeholder)


class TaskBoard:
    """
    Task list operations against the local store.

    While the monitor reports offline, every mutation is also queued in the outbox.
    """

    def __init__(
        self, store: Optional[LocalStore] = None, monitor: Optional[ConnectivityMonitor] = None
    ) -> None:
        self.store = store or shared_store.get()
        self.monitor = monitor

    @property
    def online(self) -> bool:
        return self.monitor is None or self.monitor.online

    def _record(self, kind: str, payload: Dict[str, Any]) -> None:
        if self.online:
            return
        self.store.add_to_outbox({"type": kind, "payload": payload})
        logger.debug("Queued %s while offline", kind)

    def list(self) -> List[Task]:
        tasks = self.store.list_tasks()
        tasks.sort(key=lambda task: task.created_at)
        return tasks

    def add(self, text: str) -> Task:
        cleaned = text.strip()
        if not cleaned:
            raise ValueError("Task text must not be empty.")
        task = self.store.put_task(Task(id=new_id(), text=cleaned))
        self._record(CREATE_TASK, task.to_dict())
        return task

    def toggle(self, task_id: str) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise KeyError(f"Unknown task {task_id}")
        task.completed = not task.completed
        self.store.put_task(task)
        self._record(UPDATE_TASK, task.to_dict())
        return task

    def remove(self, task_id: str) -> bool:
        removed = self.store.delete_task(task_id)
        if removed:
            self._record(DELETE_TASK, {"id": task_id})
        return removed
