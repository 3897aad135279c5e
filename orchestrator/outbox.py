from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .storage import LocalStore, Task

CREATE_TASK = "CREATE_TASK"
UPDATE_TASK = "UPDATE_TASK"
DELETE_TASK = "DELETE_TASK"

logger = logging.getLogger("orchestrator.outbox")


@dataclass(frozen=True)
class CreateTask:
    task: Task
    kind: str = CREATE_TASK


@dataclass(frozen=True)
class UpdateTask:
    task: Task
    kind: str = UPDATE_TASK


@dataclass(frozen=True)
class DeleteTask:
    task_id: str
    kind: str = DELETE_TASK


@dataclass(frozen=True)
class Unrecognized:
    kind: str
    payload: Any = None


OutboxAction = Union[CreateTask, UpdateTask, DeleteTask, Unrecognized]


def parse_action(raw: Dict[str, Any]) -> OutboxAction:
    """
    Turn a stored ``{type, payload}`` pair into a typed action.

    Raises ValueError when a known action kind carries an unusable payload.
    """
    kind = str(raw.get("type") or "")
    payload = raw.get("payload")
    if kind in (CREATE_TASK, UPDATE_TASK):
        if not isinstance(payload, dict):
            raise ValueError(f"{kind} payload must be an object.")
        try:
            task = Task.from_dict(payload)
        except KeyError as exc:
            raise ValueError(f"{kind} payload is missing {exc}.") from exc
        return CreateTask(task) if kind == CREATE_TASK else UpdateTask(task)
    if kind == DELETE_TASK:
        task_id = payload.get("id") if isinstance(payload, dict) else payload
        if not task_id:
            raise ValueError(f"{kind} payload must name a task id.")
        return DeleteTask(str(task_id))
    return Unrecognized(kind, payload)


def action_to_dict(action: OutboxAction) -> Dict[str, Any]:
    if isinstance(action, (CreateTask, UpdateTask)):
        return {"type": action.kind, "payload": action.task.to_dict()}
    if isinstance(action, DeleteTask):
        return {"type": action.kind, "payload": {"id": action.task_id}}
    return {"type": action.kind, "payload": action.payload}


@dataclass
class DrainResult:
    processed: List[str] = field(default_factory=list)
    unrecognized: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    cleared: int = 0

    @property
    def discarded_unprocessed(self) -> bool:
        return self.cleared > len(self.processed)


def drain_outbox(store: LocalStore, *, clear_unprocessed: bool = True) -> DrainResult:
    """
    Reconcile the outbox after connectivity returns.

    Task mutations are applied to the local store when they happen, so known
    actions only need to be discarded. Unrecognized or unparsable entries are
    logged and skipped. With ``clear_unprocessed`` (the default) the whole outbox
    is emptied afterwards, skipped entries included; otherwise only processed
    entries are removed and the rest stay queued.
    """
    result = DrainResult()
    items = store.list_outbox()
    if not items:
        return result

    for item in items:
        try:
            action = parse_action(item.action)
        except ValueError as exc:
            logger.error("Failed to process outbox item %s: %s", item.id, exc)
            result.failed.append(item.id)
            continue
        if isinstance(action, Unrecognized):
            logger.info("Unknown outbox action: %s", action.kind or "<missing>")
            result.unrecognized.append(item.id)
            continue
        result.processed.append(item.id)

    if clear_unprocessed:
        result.cleared = store.clear_outbox()
    else:
        result.cleared = store.remove_outbox_items(result.processed)

    if result.discarded_unprocessed:
        logger.warning(
            "Cleared %d outbox items without processing them (unrecognized=%d failed=%d).",
            result.cleared - len(result.processed),
            len(result.unrecognized),
            len(result.failed),
        )
    logger.debug(
        "Outbox drained: processed=%d cleared=%d", len(result.processed), result.cleared
    )
    return result


class ConnectivityMonitor:
    """
    Tracks connectivity and drains the outbox on each offline to online transition.
    """

    def __init__(
        self,
        store: LocalStore,
        probe: Optional[Callable[[], bool]] = None,
        *,
        online: bool = True,
        clear_unprocessed: bool = True,
    ) -> None:
        self.store = store
        self.probe = probe
        self.clear_unprocessed = clear_unprocessed
        self._online = online

    @property
    def online(self) -> bool:
        return self._online

    def update(self, online: bool) -> Optional[DrainResult]:
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Connectivity restored, draining outbox.")
            return drain_outbox(self.store, clear_unprocessed=self.clear_unprocessed)
        if was_online and not online:
            logger.info("Connectivity lost, queuing task operations.")
        return None

    def check(self) -> Optional[DrainResult]:
        if self.probe is None:
            return None
        return self.update(bool(self.probe()))

    async def loop(self, interval: float = 5.0) -> None:
        while True:
            await asyncio.sleep(interval)
            await asyncio.to_thread(self.check)
